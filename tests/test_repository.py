"""
Тесты хранилища: пары, уникальность сессий и позиций, журнал
"""

import pytest

from db.models import SOS_ANALYZING, SOS_PARTNER_PENDING
from services.errors import ConflictError, DuplicateSubmissionError, NotFoundError, ValidationError

FIELDS = {
    "emotional_state": "sad",
    "severity_level": 2,
    "trigger_event": "The dishes.",
    "perspective": "It was not my turn.",
    "desired_outcome": "A schedule.",
}


class TestCouples:

    async def test_join_couple(self, repository, clock):
        couple = await repository.create_couple(1, clock())
        assert couple.is_complete is False

        joined = await repository.join_couple(couple.id, 2)

        assert joined.partner2_user_id == 2
        assert joined.partner_of(1) == 2
        assert (await repository.get_couple_for_user(2)).id == couple.id

    async def test_join_errors(self, repository, clock):
        couple = await repository.create_couple(1, clock())

        with pytest.raises(NotFoundError):
            await repository.join_couple(couple.id + 1, 2)
        with pytest.raises(ValidationError):
            await repository.join_couple(couple.id, 1)

        await repository.join_couple(couple.id, 2)
        with pytest.raises(ConflictError):
            await repository.join_couple(couple.id, 3)


class TestSessions:

    async def test_one_open_session_per_couple(self, repository, couple, clock):
        await repository.create_session(couple.id, 101, clock())
        with pytest.raises(ConflictError):
            await repository.create_session(couple.id, 202, clock())

    async def test_closed_session_frees_the_slot(self, repository, couple, clock):
        first = await repository.create_session(couple.id, 101, clock())
        assert await repository.abandon_session(first.id) is True

        second = await repository.create_session(couple.id, 202, clock())
        assert (await repository.find_open_session(couple.id)).id == second.id

    async def test_input_moves_session_to_partner_pending(self, repository, couple, clock):
        session = await repository.create_session(couple.id, 101, clock())

        await repository.create_input(session.id, 101, FIELDS, {}, clock())

        assert (await repository.get_session(session.id)).status == SOS_PARTNER_PENDING
        with pytest.raises(DuplicateSubmissionError):
            await repository.create_input(session.id, 101, FIELDS, {}, clock())

    async def test_duplicate_input_is_rejected_without_side_effects(self, repository, couple, clock):
        session = await repository.create_session(couple.id, 101, clock())
        await repository.create_input(session.id, 101, FIELDS, {}, clock())
        await repository.create_input(session.id, 202, FIELDS, {}, clock())
        assert await repository.claim_for_analysis(session.id) is True

        with pytest.raises(DuplicateSubmissionError):
            await repository.create_input(session.id, 202, FIELDS, {}, clock())

        assert len(await repository.list_inputs(session.id)) == 2
        assert (await repository.get_session(session.id)).status == SOS_ANALYZING

    async def test_claim_is_won_once(self, repository, couple, clock):
        session = await repository.create_session(couple.id, 101, clock())

        assert await repository.claim_for_analysis(session.id) is True
        assert await repository.claim_for_analysis(session.id) is False
        assert (await repository.get_session(session.id)).status == SOS_ANALYZING

    async def test_resolution_requires_analyzing(self, repository, couple, clock):
        session = await repository.create_session(couple.id, 101, clock())

        resolution = await repository.record_resolution(
            session_id=session.id,
            couple_id=couple.id,
            analysis_values={},
            challenge_categories=["communication"],
            notifications=[],
            conversations=[],
            now=clock(),
        )

        assert resolution is None
        assert await repository.get_analysis(session.id) is None

    async def test_draft_is_created_once(self, repository, couple, clock):
        session = await repository.create_session(couple.id, 101, clock())

        first = await repository.create_draft(session.id, 101, "emotional-state", clock())
        second = await repository.create_draft(session.id, 101, "severity-level", clock())

        assert second.id == first.id
        assert second.cursor == "emotional-state"


class TestConversationLog:

    async def test_log_and_list(self, repository, clock):
        await repository.log_conversation(5, None, "check-in", {"step": 1}, "hi", {"message": "hello"}, clock())
        clock.advance(minutes=1)
        await repository.log_conversation(5, None, "check-in", {"step": 2}, "again", {"message": "yes?"}, clock())

        entries = await repository.list_conversations(5)
        assert [entry.user_message for entry in entries] == ["again", "hi"]
