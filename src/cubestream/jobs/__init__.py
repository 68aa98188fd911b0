from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

from cubestream.errors import IngestError
from cubestream.jobs.state import BuildState
from cubestream.logger import log


@dataclass
class JobContext:
    """What the scheduler hands each step: the job id and the shared params mapping."""

    job_id: str
    params: dict[str, str] = field(default_factory=dict)

    def require(self, key: str) -> str:
        value = self.params.get(key)
        if not value:
            raise KeyError(f"job {self.job_id} is missing param {key!r}")
        return value


@dataclass(frozen=True)
class StepResult:
    state: BuildState
    output: dict[str, str] = field(default_factory=dict)
    stats: dict[str, Any] = field(default_factory=dict)

    @property
    def stops_chain(self) -> bool:
        return self.state.is_terminal


class Step(Protocol):
    name: str
    state: BuildState

    async def execute(self, ctx: JobContext) -> StepResult: ...


class ChainedJob:
    """Runs steps one after another, the way the external scheduler sequences them.

    Each step's output is merged into the params so later steps see it. A failing
    step stops the chain and its exception propagates; the step has already
    recorded the failure on the segment.
    """

    def __init__(self, job_id: str, name: str, params: dict[str, str] | None = None):
        self.ctx = JobContext(job_id=job_id, params=dict(params or {}))
        self.name = name
        self.steps: list[Step] = []

    @property
    def id(self) -> str:
        return self.ctx.job_id

    def add_task(self, step: Step) -> None:
        self.steps.append(step)

    async def run(self) -> list[StepResult]:
        results: list[StepResult] = []
        log.info("job started", job=self.id, name=self.name, steps=[s.name for s in self.steps])
        for step in self.steps:
            try:
                result = await step.execute(self.ctx)
            except asyncio.CancelledError:
                log.warning("job cancelled", job=self.id, step=step.name)
                raise
            except IngestError as e:
                log.error(
                    "job step failed",
                    job=self.id,
                    step=step.name,
                    error=str(e),
                    retryable=e.retryable,
                )
                raise
            self.ctx.params.update(result.output)
            results.append(result)
            log.info("job step finished", job=self.id, step=step.name, state=result.state.value, **result.stats)
            if result.stops_chain:
                break
        log.info("job finished", job=self.id, name=self.name)
        return results
