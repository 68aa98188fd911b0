from __future__ import annotations

from cubestream.config import Config
from cubestream.jobs import JobContext, StepResult
from cubestream.jobs.constants import ARG_SEGMENT_OFFSETS, STEP_SEEK_OFFSETS
from cubestream.jobs.segment_step import SegmentStep
from cubestream.jobs.state import BuildState
from cubestream.metadata import SegmentInfo, SegmentMetadataStore
from cubestream.offsets.seeker import OffsetSeeker
from cubestream.source import SourceClientFactory


class SeekOffsetStep(SegmentStep):
    name = STEP_SEEK_OFFSETS
    state = BuildState.SEEK_OFFSETS

    def __init__(self, config: Config, metadata: SegmentMetadataStore, client_factory: SourceClientFactory):
        super().__init__(config, metadata)
        self.client_factory = client_factory

    async def run(self, ctx: JobContext, segment: SegmentInfo) -> StepResult:
        source = await self.metadata.get_source(segment.source_identity)
        prior = await self.metadata.prior_segment_offsets(segment.id)
        # ranges requested at creation or committed by an earlier attempt pin the result
        requested = segment.offsets

        client = self.client_factory(source)
        try:
            offsets = await OffsetSeeker(self.config, client).seek(
                source.identity, prior=prior, requested=requested
            )
        finally:
            await client.close()

        if offsets.is_empty and not self.config.ALLOW_EMPTY_SEGMENTS:
            await self.metadata.discard(segment.id, "no new messages since the prior segment")
            return StepResult(state=BuildState.DISCARDED, stats={"messages": 0})

        await self.metadata.commit_offsets(segment.id, offsets, BuildState.MATERIALIZE)
        return StepResult(
            state=BuildState.MATERIALIZE,
            output={ARG_SEGMENT_OFFSETS: offsets.to_json()},
            stats={"messages": offsets.total_messages, "partitions": len(offsets)},
        )
