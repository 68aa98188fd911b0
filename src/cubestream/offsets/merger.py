from __future__ import annotations

from collections import defaultdict
from typing import Sequence

from cubestream.errors import ConsistencyError
from cubestream.offsets.types import PartitionOffsetRange, SegmentOffsets


def merge_segment_offsets(segments: Sequence[SegmentOffsets]) -> SegmentOffsets:
    """Union of contiguous segment ranges, per partition.

    Inputs may arrive in any order; per partition they are sorted by start offset
    and each range must begin exactly where the previous one ended.
    """
    if not segments:
        raise ConsistencyError("nothing to merge")

    by_partition: dict[int, list[PartitionOffsetRange]] = defaultdict(list)
    for seg in segments:
        for r in seg:
            by_partition[r.partition].append(r)

    merged: list[PartitionOffsetRange] = []
    for partition, ranges in by_partition.items():
        ranges.sort(key=lambda r: (r.start_offset, r.end_offset))
        for prev, cur in zip(ranges, ranges[1:]):
            if cur.start_offset > prev.end_offset:
                raise ConsistencyError(
                    f"partition {partition}: gap between offsets {prev.end_offset} and {cur.start_offset}"
                )
            if cur.start_offset < prev.end_offset:
                raise ConsistencyError(
                    f"partition {partition}: ranges [{prev.start_offset}, {prev.end_offset}) and "
                    f"[{cur.start_offset}, {cur.end_offset}) overlap"
                )
        merged.append(
            PartitionOffsetRange(
                partition,
                min(r.start_offset for r in ranges),
                max(r.end_offset for r in ranges),
            )
        )
    return SegmentOffsets.of(merged)
