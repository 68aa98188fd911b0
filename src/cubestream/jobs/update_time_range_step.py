from __future__ import annotations

from cubestream.errors import ConsistencyError
from cubestream.jobs import JobContext, StepResult
from cubestream.jobs.constants import STEP_UPDATE_TIME_RANGE
from cubestream.jobs.segment_step import SegmentStep
from cubestream.jobs.state import BuildState
from cubestream.logger import log
from cubestream.metadata import SegmentInfo
from cubestream.offsets.types import SegmentTimeRange
from cubestream.staging import read_manifest, read_partition_table, timestamp_bounds


class UpdateTimeRangeStep(SegmentStep):
    name = STEP_UPDATE_TIME_RANGE
    state = BuildState.FINALIZE_TIME_RANGE

    async def run(self, ctx: JobContext, segment: SegmentInfo) -> StepResult:
        table_dir = self.output_dir(ctx, segment)
        manifest = await read_manifest(self.config.store, table_dir)
        if manifest.segment_id != segment.id:
            raise ConsistencyError(
                f"flat table under {table_dir} belongs to segment {manifest.segment_id}, not {segment.id}"
            )
        if segment.offsets is None or manifest.segment_offsets != segment.offsets.to_json():
            raise ConsistencyError(f"flat table under {table_dir} was built from different offsets")

        min_ts: int | None = None
        max_ts: int | None = None
        for staged in manifest.partitions:
            if staged.rows == 0:
                continue
            table = await read_partition_table(self.config.store, staged.path)
            lo, hi = timestamp_bounds(table)
            if lo is not None:
                min_ts = lo if min_ts is None else min(min_ts, lo)
            if hi is not None:
                max_ts = hi if max_ts is None else max(max_ts, hi)

        time_range = None
        if min_ts is not None and max_ts is not None:
            time_range = SegmentTimeRange.from_min_max(min_ts, max_ts)
        else:
            log.warning("no timestamps in flat table, time range left unset", segment=segment.id)

        await self.metadata.commit_time_range(segment.id, time_range, BuildState.DONE)
        stats = {}
        if time_range is not None:
            stats = {"start_ms": time_range.start_ms, "end_ms": time_range.end_ms}
        return StepResult(state=BuildState.DONE, stats=stats)
