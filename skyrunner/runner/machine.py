"""Placement state machine.

States:
    AttemptPlacement(i)  launch an instance into placement i
    AwaitCompletion(i)   instance in placement i is running the job
    Success, Failure     terminal

Transitions are data (``TRANSITIONS``); both the in-process orchestrator and
the Step Functions compiler walk the same table, so placement order and the
retry set are defined in one place.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType

from skyrunner.exceptions import ConfigurationError, InvalidTransitionError


class StateKind(StrEnum):
    ATTEMPT_PLACEMENT = "AttemptPlacement"
    AWAIT_COMPLETION = "AwaitCompletion"
    SUCCESS = "Success"
    FAILURE = "Failure"


class Signal(StrEnum):
    LAUNCHED = "launched"
    RETRYABLE_ERROR = "retryable_error"
    FATAL_ERROR = "fatal_error"
    TASK_SUCCEEDED = "task_succeeded"
    TASK_FAILED = "task_failed"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"


class Target(StrEnum):
    NEXT_PLACEMENT = "next_placement"
    AWAIT = "await"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True, slots=True)
class State:
    kind: StateKind
    index: int | None = None

    @property
    def terminal(self) -> bool:
        return self.kind in (StateKind.SUCCESS, StateKind.FAILURE)

    def __str__(self) -> str:
        return self.kind.value if self.index is None else f"{self.kind.value}({self.index})"


SUCCESS = State(StateKind.SUCCESS)
FAILURE = State(StateKind.FAILURE)

TRANSITIONS: Mapping[tuple[StateKind, Signal], Target] = MappingProxyType({
    (StateKind.ATTEMPT_PLACEMENT, Signal.LAUNCHED): Target.AWAIT,
    (StateKind.ATTEMPT_PLACEMENT, Signal.RETRYABLE_ERROR): Target.NEXT_PLACEMENT,
    (StateKind.ATTEMPT_PLACEMENT, Signal.FATAL_ERROR): Target.FAILURE,
    (StateKind.AWAIT_COMPLETION, Signal.TASK_SUCCEEDED): Target.SUCCESS,
    (StateKind.AWAIT_COMPLETION, Signal.TASK_FAILED): Target.FAILURE,
    (StateKind.AWAIT_COMPLETION, Signal.HEARTBEAT_TIMEOUT): Target.FAILURE,
})


class PlacementMachine:
    """The placement chain for a fixed number of placements."""

    def __init__(self, placement_count: int) -> None:
        if placement_count < 1:
            raise ConfigurationError("A runner provider needs at least one placement")
        self.placement_count = placement_count

    @property
    def initial(self) -> State:
        return State(StateKind.ATTEMPT_PLACEMENT, 0)

    def next(self, state: State, signal: Signal) -> State:
        """Follow the edge for ``signal`` out of ``state``.

        Raises:
            InvalidTransitionError: If ``state`` has no edge for ``signal``.
        """
        target = TRANSITIONS.get((state.kind, signal))
        if target is None:
            raise InvalidTransitionError(f"No transition from {state} on {signal.value}")

        match target:
            case Target.AWAIT:
                return State(StateKind.AWAIT_COMPLETION, state.index)
            case Target.NEXT_PLACEMENT:
                assert state.index is not None
                following = state.index + 1
                if following < self.placement_count:
                    return State(StateKind.ATTEMPT_PLACEMENT, following)
                return FAILURE
            case Target.SUCCESS:
                return SUCCESS
            case Target.FAILURE:
                return FAILURE

    def states(self) -> list[State]:
        attempts = [State(StateKind.ATTEMPT_PLACEMENT, i) for i in range(self.placement_count)]
        awaits = [State(StateKind.AWAIT_COMPLETION, i) for i in range(self.placement_count)]
        return [*attempts, *awaits, SUCCESS, FAILURE]
