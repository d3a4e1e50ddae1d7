"""
Конечный автомат SOS-сессии

Переходы - чистая функция (фаза, событие) -> (фаза, эффекты). Сервис
выполняет эффекты сам; автомат только решает, допустим ли переход.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from db.models import SOS_ABANDONED, SOS_ANALYZING, SOS_RESOLVED

from .errors import InvalidStateError


class Phase(str, Enum):
    INITIATION = "initiation"
    INPUT_COLLECTION = "input_collection"
    EMERGENCY_PROTOCOL = "emergency_protocol"
    WAITING_FOR_PARTNER = "waiting_for_partner"
    ANALYZING = "analyzing"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


class Event(str, Enum):
    INITIATE = "initiate"
    ANSWER = "answer"
    FINAL_ANSWER = "final_answer"
    EMERGENCY_TRIGGERED = "emergency_triggered"
    EMERGENCY_CONTINUE = "emergency_continue"
    EMERGENCY_FINAL_CONTINUE = "emergency_final_continue"
    EMERGENCY_ESCALATE = "emergency_escalate"
    EMERGENCY_ABANDON = "emergency_abandon"
    PARTNER_COMPLETED = "partner_completed"
    ANALYSIS_SUCCEEDED = "analysis_succeeded"
    ANALYSIS_FAILED = "analysis_failed"
    ABORT = "abort"


class Effect(str, Enum):
    CREATE_SESSION = "create_session"
    NOTIFY_PARTNER = "notify_partner"
    START_QUESTIONS = "start_questions"
    RECORD_ANSWER = "record_answer"
    ACKNOWLEDGE = "acknowledge"
    HOLD_ANSWER = "hold_answer"
    PRESENT_RESOURCES = "present_resources"
    PERSIST_INPUT = "persist_input"
    CHECK_BARRIER = "check_barrier"
    RUN_ANALYSIS = "run_analysis"
    PERSIST_ANALYSIS = "persist_analysis"
    ASSIGN_CHALLENGES = "assign_challenges"
    NOTIFY_RESULTS = "notify_results"
    MARK_ABANDONED = "mark_abandoned"


@dataclass(frozen=True)
class Transition:
    phase: Phase
    effects: Tuple[Effect, ...] = ()

    def has(self, effect: Effect) -> bool:
        return effect in self.effects


TERMINAL_PHASES = (Phase.RESOLVED, Phase.ABANDONED)

_PERSIST_AND_CHECK = (Effect.RECORD_ANSWER, Effect.ACKNOWLEDGE, Effect.PERSIST_INPUT, Effect.CHECK_BARRIER)

TRANSITIONS: Dict[Tuple[Phase, Event], Transition] = {
    (Phase.INITIATION, Event.INITIATE): Transition(
        Phase.INPUT_COLLECTION,
        (Effect.CREATE_SESSION, Effect.NOTIFY_PARTNER, Effect.START_QUESTIONS),
    ),
    (Phase.INPUT_COLLECTION, Event.ANSWER): Transition(
        Phase.INPUT_COLLECTION, (Effect.RECORD_ANSWER, Effect.ACKNOWLEDGE),
    ),
    (Phase.INPUT_COLLECTION, Event.EMERGENCY_TRIGGERED): Transition(
        Phase.EMERGENCY_PROTOCOL, (Effect.HOLD_ANSWER, Effect.PRESENT_RESOURCES),
    ),
    (Phase.INPUT_COLLECTION, Event.FINAL_ANSWER): Transition(
        Phase.WAITING_FOR_PARTNER, _PERSIST_AND_CHECK,
    ),
    (Phase.EMERGENCY_PROTOCOL, Event.EMERGENCY_CONTINUE): Transition(
        Phase.INPUT_COLLECTION, (Effect.RECORD_ANSWER, Effect.ACKNOWLEDGE),
    ),
    (Phase.EMERGENCY_PROTOCOL, Event.EMERGENCY_FINAL_CONTINUE): Transition(
        Phase.WAITING_FOR_PARTNER, _PERSIST_AND_CHECK,
    ),
    (Phase.EMERGENCY_PROTOCOL, Event.EMERGENCY_ESCALATE): Transition(
        Phase.EMERGENCY_PROTOCOL, (Effect.PRESENT_RESOURCES,),
    ),
    (Phase.EMERGENCY_PROTOCOL, Event.EMERGENCY_ABANDON): Transition(
        Phase.ABANDONED, (Effect.MARK_ABANDONED,),
    ),
    (Phase.WAITING_FOR_PARTNER, Event.PARTNER_COMPLETED): Transition(
        Phase.ANALYZING, (Effect.RUN_ANALYSIS,),
    ),
    (Phase.ANALYZING, Event.ANALYSIS_SUCCEEDED): Transition(
        Phase.RESOLVED, (Effect.PERSIST_ANALYSIS, Effect.ASSIGN_CHALLENGES, Effect.NOTIFY_RESULTS),
    ),
    (Phase.ANALYZING, Event.ANALYSIS_FAILED): Transition(
        Phase.ABANDONED, (Effect.MARK_ABANDONED,),
    ),
    # Повторный abort уже брошенной сессии ничего не меняет
    (Phase.ABANDONED, Event.ABORT): Transition(Phase.ABANDONED),
}

for _phase in Phase:
    if _phase not in TERMINAL_PHASES:
        TRANSITIONS[(_phase, Event.ABORT)] = Transition(Phase.ABANDONED, (Effect.MARK_ABANDONED,))


def transition(phase: Phase, event: Event) -> Transition:
    """
    Следующая фаза и эффекты

    Raises:
        InvalidStateError: переход не определён
    """
    try:
        return TRANSITIONS[(phase, event)]
    except KeyError:
        raise InvalidStateError(
            f"Cannot {event.value.replace('_', ' ')} while the session is {phase.value.replace('_', ' ')}."
        ) from None


def can(phase: Phase, event: Event) -> bool:
    return (phase, event) in TRANSITIONS


def phase_for(session_status: Optional[str], draft=None, has_input: bool = False) -> Phase:
    """
    Фаза конкретного партнёра по статусу сессии, его черновику и вводу

    Args:
        session_status: статус SOSSession (None - сессии ещё нет)
        draft: SOSDraft партнёра или None
        has_input: есть ли уже SOSInput партнёра
    """
    if session_status is None:
        return Phase.INITIATION
    if session_status == SOS_RESOLVED:
        return Phase.RESOLVED
    if session_status == SOS_ABANDONED:
        return Phase.ABANDONED
    if session_status == SOS_ANALYZING:
        return Phase.ANALYZING
    if has_input:
        return Phase.WAITING_FOR_PARTNER
    if draft is not None and draft.pending_emergency:
        return Phase.EMERGENCY_PROTOCOL
    return Phase.INPUT_COLLECTION
