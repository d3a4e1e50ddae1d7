"""
Тесты конечного автомата SOS-сессии
"""

from types import SimpleNamespace

import pytest

from services.errors import InvalidStateError
from services.sos_machine import Effect, Event, Phase, can, phase_for, transition


class TestTransitions:

    def test_initiate(self):
        step = transition(Phase.INITIATION, Event.INITIATE)
        assert step.phase == Phase.INPUT_COLLECTION
        assert step.has(Effect.CREATE_SESSION)
        assert step.has(Effect.NOTIFY_PARTNER)

    def test_final_answer_checks_barrier(self):
        step = transition(Phase.INPUT_COLLECTION, Event.FINAL_ANSWER)
        assert step.phase == Phase.WAITING_FOR_PARTNER
        assert step.has(Effect.PERSIST_INPUT)
        assert step.has(Effect.CHECK_BARRIER)

    def test_emergency_round_trip(self):
        assert transition(Phase.INPUT_COLLECTION, Event.EMERGENCY_TRIGGERED).phase == Phase.EMERGENCY_PROTOCOL
        assert transition(Phase.EMERGENCY_PROTOCOL, Event.EMERGENCY_ESCALATE).phase == Phase.EMERGENCY_PROTOCOL
        assert transition(Phase.EMERGENCY_PROTOCOL, Event.EMERGENCY_CONTINUE).phase == Phase.INPUT_COLLECTION
        assert transition(Phase.EMERGENCY_PROTOCOL, Event.EMERGENCY_ABANDON).phase == Phase.ABANDONED

    def test_analysis_outcomes(self):
        assert transition(Phase.WAITING_FOR_PARTNER, Event.PARTNER_COMPLETED).has(Effect.RUN_ANALYSIS)
        success = transition(Phase.ANALYZING, Event.ANALYSIS_SUCCEEDED)
        assert success.phase == Phase.RESOLVED
        assert success.has(Effect.ASSIGN_CHALLENGES)
        assert transition(Phase.ANALYZING, Event.ANALYSIS_FAILED).has(Effect.MARK_ABANDONED)

    @pytest.mark.parametrize("phase", [
        Phase.INITIATION, Phase.INPUT_COLLECTION, Phase.EMERGENCY_PROTOCOL,
        Phase.WAITING_FOR_PARTNER, Phase.ANALYZING,
    ])
    def test_abort_from_open_phases(self, phase):
        step = transition(phase, Event.ABORT)
        assert step.phase == Phase.ABANDONED
        assert step.has(Effect.MARK_ABANDONED)

    def test_abort_abandoned_is_noop(self):
        assert transition(Phase.ABANDONED, Event.ABORT).effects == ()

    def test_resolved_is_terminal(self):
        assert not can(Phase.RESOLVED, Event.ABORT)
        with pytest.raises(InvalidStateError):
            transition(Phase.RESOLVED, Event.ABORT)

    def test_answer_during_emergency_is_rejected(self):
        with pytest.raises(InvalidStateError):
            transition(Phase.EMERGENCY_PROTOCOL, Event.ANSWER)


class TestPhaseFor:

    def test_session_statuses(self):
        assert phase_for(None) == Phase.INITIATION
        assert phase_for("resolved") == Phase.RESOLVED
        assert phase_for("abandoned") == Phase.ABANDONED
        assert phase_for("analyzing") == Phase.ANALYZING
        assert phase_for("active") == Phase.INPUT_COLLECTION

    def test_per_partner_phase(self):
        assert phase_for("partner-pending", has_input=True) == Phase.WAITING_FOR_PARTNER
        held = SimpleNamespace(pending_emergency={"question_id": "trigger-event"})
        assert phase_for("active", held) == Phase.EMERGENCY_PROTOCOL
        clear = SimpleNamespace(pending_emergency=None)
        assert phase_for("partner-pending", clear) == Phase.INPUT_COLLECTION
