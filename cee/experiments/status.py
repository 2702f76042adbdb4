"""Experiment lifecycle state machine.

Variants carry the same statuses but never transition on their own; the
orchestration service cascades every experiment transition to all of them.
"""

from enum import Enum


class ExperimentStatus(str, Enum):
    """Status of a content experiment."""

    DRAFT = "draft"  # Being configured, variants may be added
    ACTIVE = "active"  # Running, results expected
    PAUSED = "paused"  # Temporarily halted, results still accepted
    STOPPED = "stopped"  # Ended early by an operator (terminal)
    COMPLETED = "completed"  # Ended with enough data (terminal)


class Transition(str, Enum):
    """Operator actions that change an experiment's status."""

    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    COMPLETE = "complete"


# action -> (legal source statuses, target status)
TRANSITIONS: dict[Transition, tuple[frozenset[ExperimentStatus], ExperimentStatus]] = {
    Transition.START: (
        frozenset({ExperimentStatus.DRAFT}),
        ExperimentStatus.ACTIVE,
    ),
    Transition.PAUSE: (
        frozenset({ExperimentStatus.ACTIVE}),
        ExperimentStatus.PAUSED,
    ),
    Transition.RESUME: (
        frozenset({ExperimentStatus.PAUSED}),
        ExperimentStatus.ACTIVE,
    ),
    Transition.STOP: (
        frozenset({ExperimentStatus.ACTIVE, ExperimentStatus.PAUSED}),
        ExperimentStatus.STOPPED,
    ),
    Transition.COMPLETE: (
        frozenset({ExperimentStatus.ACTIVE, ExperimentStatus.PAUSED}),
        ExperimentStatus.COMPLETED,
    ),
}

TERMINAL_STATUSES = frozenset({ExperimentStatus.STOPPED, ExperimentStatus.COMPLETED})

# Statuses in which incoming results are stored
RECORDING_STATUSES = frozenset(
    {
        ExperimentStatus.ACTIVE,
        ExperimentStatus.PAUSED,
        ExperimentStatus.STOPPED,
        ExperimentStatus.COMPLETED,
    }
)

# Statuses for which reports carry data
REPORTABLE_STATUSES = frozenset(
    {
        ExperimentStatus.ACTIVE,
        ExperimentStatus.PAUSED,
        ExperimentStatus.STOPPED,
        ExperimentStatus.COMPLETED,
    }
)


def can_transition(current: ExperimentStatus | str, action: Transition) -> bool:
    """Check whether ``action`` is legal from ``current``."""
    sources, _ = TRANSITIONS[action]
    return ExperimentStatus(current) in sources


def target_status(action: Transition) -> ExperimentStatus:
    """Status an experiment ends up in after ``action``."""
    return TRANSITIONS[action][1]


def transition_error(current: ExperimentStatus | str, action: Transition) -> str:
    """Human-readable message for an illegal transition."""
    sources, _ = TRANSITIONS[action]
    allowed = " or ".join(sorted(s.value for s in sources))
    return (
        f"Cannot {action.value} experiment in status {ExperimentStatus(current).value}"
        f" (must be {allowed})"
    )
