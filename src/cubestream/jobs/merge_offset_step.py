from __future__ import annotations

from cubestream.errors import ConsistencyError
from cubestream.jobs import JobContext, StepResult
from cubestream.jobs.constants import ARG_SEGMENT_OFFSETS, STEP_MERGE_OFFSETS
from cubestream.jobs.segment_step import SegmentStep
from cubestream.jobs.state import BuildState
from cubestream.metadata import SegmentInfo
from cubestream.offsets.merger import merge_segment_offsets
from cubestream.offsets.types import SegmentTimeRange


class MergeOffsetStep(SegmentStep):
    name = STEP_MERGE_OFFSETS
    state = BuildState.SEEK_OFFSETS

    async def run(self, ctx: JobContext, segment: SegmentInfo) -> StepResult:
        merging = await self.metadata.merging_segments(segment.id)
        missing = [s.id for s in merging if s.offsets is None]
        if missing:
            raise ConsistencyError(f"segments {missing} have no committed offsets")

        offsets = merge_segment_offsets([s.offsets for s in merging])
        time_range = SegmentTimeRange.union(s.time_range for s in merging if s.time_range is not None)

        await self.metadata.commit_merge(segment.id, offsets, time_range, [s.id for s in merging])
        return StepResult(
            state=BuildState.DONE,
            output={ARG_SEGMENT_OFFSETS: offsets.to_json()},
            stats={"merged_segments": len(merging), "messages": offsets.total_messages},
        )
