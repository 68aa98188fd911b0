from __future__ import annotations

from enum import StrEnum

from cubestream.errors import ConsistencyError


class BuildState(StrEnum):
    PENDING = "PENDING"
    SEEK_OFFSETS = "SEEK_OFFSETS"
    MATERIALIZE = "MATERIALIZE"
    FINALIZE_TIME_RANGE = "FINALIZE_TIME_RANGE"
    DONE = "DONE"
    DISCARDED = "DISCARDED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (BuildState.DONE, BuildState.DISCARDED)


# state a step may be entered from, besides retrying itself
_ENTERED_FROM: dict[BuildState, frozenset[BuildState]] = {
    BuildState.SEEK_OFFSETS: frozenset({BuildState.PENDING}),
    BuildState.MATERIALIZE: frozenset(),
    BuildState.FINALIZE_TIME_RANGE: frozenset(),
}

# where a step's commit moves the segment
NEXT_STATES: dict[BuildState, frozenset[BuildState]] = {
    # merge builds skip materialization, empty fresh builds are discarded
    BuildState.SEEK_OFFSETS: frozenset({BuildState.MATERIALIZE, BuildState.DONE, BuildState.DISCARDED}),
    BuildState.MATERIALIZE: frozenset({BuildState.FINALIZE_TIME_RANGE}),
    BuildState.FINALIZE_TIME_RANGE: frozenset({BuildState.DONE}),
}


def check_can_run(step: BuildState, current: BuildState, failed_state: BuildState | None) -> None:
    """Raise unless ``step`` may run now.

    A step runs when the segment is waiting on it, when it failed there last time,
    or, for the first step, when the build has not started.
    """
    if step not in NEXT_STATES:
        raise ValueError(f"{step} is not a step state")
    if current == step:
        return
    if current == BuildState.FAILED and failed_state == step:
        return
    if current in _ENTERED_FROM[step]:
        return
    raise ConsistencyError(f"cannot run {step} while segment is in {current}")


def check_transition(step: BuildState, target: BuildState) -> None:
    if target not in NEXT_STATES[step]:
        raise ConsistencyError(f"{step} cannot complete into {target}")
