from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

from cubestream.config import Config
from cubestream.jobs import JobContext, StepResult
from cubestream.jobs.constants import ARG_CUBE_NAME, ARG_OUTPUT, ARG_SEGMENT_ID
from cubestream.jobs.state import BuildState
from cubestream.logger import log
from cubestream.metadata import SegmentInfo, SegmentMetadataStore
from cubestream.staging import flat_table_dir


class SegmentStep(ABC):
    """A retryable unit of a segment build.

    ``execute`` checks the segment is waiting on this step, runs it, and on failure
    records the failed state and cause before re-raising to the scheduler.
    Cancellation leaves the segment untouched so the step can simply be re-run.
    """

    name: str = ""
    state: BuildState

    def __init__(self, config: Config, metadata: SegmentMetadataStore):
        self.config = config
        self.metadata = metadata

    async def execute(self, ctx: JobContext) -> StepResult:
        segment_id = ctx.require(ARG_SEGMENT_ID)
        info = await self.metadata.begin_step(segment_id, self.state, ctx.job_id)
        log.info("step started", step=self.name, segment=segment_id, job=ctx.job_id)
        try:
            return await self.run(ctx, info)
        except asyncio.CancelledError:
            log.warning("step cancelled, nothing committed", step=self.name, segment=segment_id)
            raise
        except Exception as e:
            await self.metadata.mark_failed(segment_id, self.state, e)
            raise

    @abstractmethod
    async def run(self, ctx: JobContext, segment: SegmentInfo) -> StepResult: ...

    def output_dir(self, ctx: JobContext, segment: SegmentInfo) -> str:
        explicit = ctx.params.get(ARG_OUTPUT)
        if explicit:
            return explicit
        cube_name = ctx.params.get(ARG_CUBE_NAME) or segment.cube_name
        return flat_table_dir(self.config, ctx.job_id, cube_name, segment.id)
