"""
Dialogue phase transitions.

next_phase() is a pure function of the current phase, the event the
orchestrator observed and a few facts about the active task. The
orchestrator owns sequencing; this module only decides where a turn lands.
"""

from enum import Enum
from typing import Sequence

from ..context.conversation import Phase


class TurnEvent(str, Enum):
    GREETED = "greeted"
    INTENT_RESOLVED = "intent_resolved"
    INTENT_UNCLEAR = "intent_unclear"
    FIELDS_UPDATED = "fields_updated"
    CORRECTED = "corrected"
    CONFIRMED = "confirmed"
    DENIED = "denied"
    CANCELLED = "cancelled"
    EXECUTION_SUCCEEDED = "execution_succeeded"
    EXECUTION_FAILED = "execution_failed"
    TASK_CLEARED = "task_cleared"


class InvalidTransition(ValueError):
    def __init__(self, phase: Phase, event: TurnEvent) -> None:
        super().__init__(f"event {event.value!r} is not valid in phase {phase.value!r}")
        self.phase = phase
        self.event = event


# Phases each event may legally arrive in
_ALLOWED = {
    TurnEvent.GREETED: {Phase.GREETING},
    TurnEvent.INTENT_RESOLVED: {Phase.GREETING, Phase.INTENT_DETECTION},
    TurnEvent.INTENT_UNCLEAR: {Phase.GREETING, Phase.INTENT_DETECTION},
    TurnEvent.FIELDS_UPDATED: {Phase.INFORMATION_GATHERING, Phase.CONFIRMATION},
    TurnEvent.CORRECTED: {Phase.CONFIRMATION},
    TurnEvent.CONFIRMED: {Phase.CONFIRMATION},
    TurnEvent.DENIED: {Phase.CONFIRMATION},
    TurnEvent.CANCELLED: {Phase.INFORMATION_GATHERING, Phase.CONFIRMATION},
    TurnEvent.EXECUTION_SUCCEEDED: {Phase.EXECUTION},
    TurnEvent.EXECUTION_FAILED: {Phase.EXECUTION},
    TurnEvent.TASK_CLEARED: {Phase.COMPLETION},
}


def _ready_phase(requires_confirmation: bool) -> Phase:
    return Phase.CONFIRMATION if requires_confirmation else Phase.EXECUTION


def next_phase(
    phase: Phase,
    event: TurnEvent,
    has_task: bool = False,
    missing_fields: Sequence[str] = (),
    requires_confirmation: bool = False,
    retryable: bool = False,
) -> Phase:
    """
    Compute the phase after ``event`` is observed in ``phase``.

    Raises InvalidTransition when the event cannot happen in that phase.
    """
    if phase not in _ALLOWED[event]:
        raise InvalidTransition(phase, event)

    if event is TurnEvent.GREETED:
        return Phase.INTENT_DETECTION

    if event is TurnEvent.INTENT_UNCLEAR:
        return Phase.INTENT_DETECTION

    if event is TurnEvent.TASK_CLEARED:
        return Phase.INTENT_DETECTION

    # Everything below needs an active task
    if not has_task:
        return Phase.INTENT_DETECTION

    if event in (TurnEvent.INTENT_RESOLVED, TurnEvent.FIELDS_UPDATED):
        if missing_fields:
            return Phase.INFORMATION_GATHERING
        return _ready_phase(requires_confirmation)

    if event is TurnEvent.CORRECTED:
        if missing_fields:
            return Phase.INFORMATION_GATHERING
        return Phase.CONFIRMATION

    if event is TurnEvent.CONFIRMED:
        if missing_fields:
            return Phase.INFORMATION_GATHERING
        return Phase.EXECUTION

    if event is TurnEvent.DENIED:
        return Phase.INFORMATION_GATHERING

    if event is TurnEvent.CANCELLED:
        return Phase.COMPLETION

    if event is TurnEvent.EXECUTION_SUCCEEDED:
        return Phase.COMPLETION

    # EXECUTION_FAILED: retryable failures keep the task
    if retryable:
        return Phase.INFORMATION_GATHERING if missing_fields else Phase.CONFIRMATION
    return Phase.COMPLETION
