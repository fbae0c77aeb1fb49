"""Lifecycle state machine for a single environment.

The state is a closed variant: a ``Phase`` plus, for ``FAILED`` only, a reason.
``transition`` is total over every (phase, event) pair: it either returns the
next state or raises ``InvalidTransitionError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from burrow.exceptions import InvalidTransitionError


class Phase(str, Enum):
    """Lifecycle phase of an environment."""

    REQUESTED = "Requested"
    PROVISIONING = "Provisioning"
    LAUNCHED = "Launched"
    BOOTING = "Booting"
    READY = "Ready"
    TERMINATING = "Terminating"
    TERMINATED = "Terminated"
    FAILED = "Failed"


class Event(str, Enum):
    """Triggers that move an environment between phases."""

    UP = "up"
    INFRA_READY = "infra_ready"
    LAUNCHED = "launched"
    BOOTED = "booted"
    FAIL = "fail"
    DESTROY = "destroy"
    TERMINATED = "terminated"


TERMINAL_PHASES = frozenset((Phase.TERMINATED, Phase.FAILED))

_FORWARD = {
    (Phase.REQUESTED, Event.UP): Phase.PROVISIONING,
    (Phase.PROVISIONING, Event.INFRA_READY): Phase.LAUNCHED,
    (Phase.LAUNCHED, Event.LAUNCHED): Phase.BOOTING,
    (Phase.BOOTING, Event.BOOTED): Phase.READY,
    (Phase.TERMINATING, Event.TERMINATED): Phase.TERMINATED,
}


@dataclass(frozen=True)
class LifecycleState:
    """Immutable lifecycle state.

    Attributes
    ----------
    phase : Phase
        Current phase
    reason : str | None
        Failure reason; set only when ``phase`` is ``FAILED``
    """

    phase: Phase
    reason: str | None = None

    def __post_init__(self) -> None:
        if self.phase is Phase.FAILED and not self.reason:
            raise ValueError("Failed state requires a reason")
        if self.phase is not Phase.FAILED and self.reason is not None:
            raise ValueError(f"{self.phase.value} state cannot carry a reason")

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def is_ready(self) -> bool:
        return self.phase is Phase.READY

    def __str__(self) -> str:
        if self.reason:
            return f"{self.phase.value}({self.reason})"
        return self.phase.value

    def to_dict(self) -> dict[str, str | None]:
        return {"phase": self.phase.value, "reason": self.reason}

    @classmethod
    def from_dict(cls, data: dict[str, str | None]) -> LifecycleState:
        return cls(phase=Phase(data["phase"]), reason=data.get("reason"))


REQUESTED = LifecycleState(Phase.REQUESTED)


def failed(reason: str) -> LifecycleState:
    """Build a ``Failed(reason)`` state."""
    return LifecycleState(Phase.FAILED, reason)


def transition(
    state: LifecycleState, event: Event, reason: str | None = None
) -> LifecycleState:
    """Compute the state that follows ``state`` on ``event``.

    Parameters
    ----------
    state : LifecycleState
        Current state
    event : Event
        Trigger
    reason : str | None
        Failure reason, required for ``Event.FAIL``

    Returns
    -------
    LifecycleState
        Next state

    Raises
    ------
    InvalidTransitionError
        If the event is not valid in the current state
    """
    if event is Event.FAIL:
        if state.is_terminal:
            raise InvalidTransitionError(f"cannot fail from terminal state {state}")
        return failed(reason or "unspecified")

    if event is Event.DESTROY:
        # Failed environments may still own a running instance.
        if state.phase in (Phase.TERMINATING, Phase.TERMINATED):
            raise InvalidTransitionError(f"cannot destroy from {state}")
        return LifecycleState(Phase.TERMINATING)

    next_phase = _FORWARD.get((state.phase, event))
    if next_phase is None:
        raise InvalidTransitionError(f"event '{event.value}' is not valid in state {state}")

    return LifecycleState(next_phase)
