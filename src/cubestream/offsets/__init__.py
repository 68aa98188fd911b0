from cubestream.offsets.merger import merge_segment_offsets
from cubestream.offsets.seeker import OffsetSeeker
from cubestream.offsets.types import PartitionOffsetRange, SegmentOffsets, SegmentTimeRange

__all__ = [
    "OffsetSeeker",
    "PartitionOffsetRange",
    "SegmentOffsets",
    "SegmentTimeRange",
    "merge_segment_offsets",
]
