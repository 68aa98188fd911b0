import asyncio
from unittest.mock import MagicMock

import pytest

from cubestream.errors import TransientSourceError
from cubestream.jobs import ChainedJob, JobContext, StepResult
from cubestream.jobs.segment_step import SegmentStep
from cubestream.jobs.state import BuildState


class RecordingStep:
    def __init__(self, name: str, result: StepResult | None = None, error: BaseException | None = None):
        self.name = name
        self.state = BuildState.SEEK_OFFSETS
        self.result = result or StepResult(state=BuildState.MATERIALIZE)
        self.error = error
        self.seen: dict[str, str] | None = None

    async def execute(self, ctx: JobContext) -> StepResult:
        self.seen = dict(ctx.params)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.mark.asyncio
async def test_outputs_flow_into_later_steps():
    first = RecordingStep("first", StepResult(state=BuildState.MATERIALIZE, output={"segment_offsets": "[[0,0,5]]"}))
    second = RecordingStep("second", StepResult(state=BuildState.DONE))
    job = ChainedJob("job-1", "test", {"segment_id": "s"})
    job.add_task(first)
    job.add_task(second)

    results = await job.run()

    assert [r.state for r in results] == [BuildState.MATERIALIZE, BuildState.DONE]
    assert second.seen == {"segment_id": "s", "segment_offsets": "[[0,0,5]]"}


@pytest.mark.asyncio
async def test_chain_stops_on_discard():
    first = RecordingStep("first", StepResult(state=BuildState.DISCARDED))
    second = RecordingStep("second")
    job = ChainedJob("job-1", "test")
    job.add_task(first)
    job.add_task(second)

    results = await job.run()

    assert len(results) == 1
    assert second.seen is None


@pytest.mark.asyncio
async def test_failure_propagates_and_stops_chain():
    first = RecordingStep("first", error=TransientSourceError("broker down"))
    second = RecordingStep("second")
    job = ChainedJob("job-1", "test")
    job.add_task(first)
    job.add_task(second)

    with pytest.raises(TransientSourceError):
        await job.run()
    assert second.seen is None


@pytest.mark.asyncio
async def test_cancellation_propagates():
    job = ChainedJob("job-1", "test")
    job.add_task(RecordingStep("first", error=asyncio.CancelledError()))
    with pytest.raises(asyncio.CancelledError):
        await job.run()


def test_require_missing_param():
    ctx = JobContext(job_id="j", params={"a": ""})
    with pytest.raises(KeyError):
        ctx.require("a")
    assert JobContext(job_id="j", params={"a": "1"}).require("a") == "1"


def test_segment_step_without_run_cannot_be_built():
    with pytest.raises(TypeError):
        SegmentStep(MagicMock(), MagicMock())
