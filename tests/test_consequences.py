"""
Тесты движка последствий
"""

from types import SimpleNamespace

import pytest

from db.database import build_session_maker
from db.models import (
    CONSEQUENCE_ACTIVE, CONSEQUENCE_CANCELLED, CONSEQUENCE_COMPLETED, CONSEQUENCE_PENDING_CONSENT,
    Challenge, ConsequenceRule,
)
from services.consequences import (
    DEFAULT_BLOCKED_APPS, SPAM_MESSAGE_LIMIT, block_duration, makeup_category, rule_allowed,
    screensaver_category, spam_duration,
)
from services.errors import AuthorizationError, InvalidStateError, NotFoundError, ValidationError

USER, OTHER = 101, 202


@pytest.fixture
def add_rule(bare_engine):
    session_maker = build_session_maker(bare_engine)

    async def _add(triggered_by, rule_type, requires_consent=False, max_duration=None):
        async with session_maker() as session:
            rule = ConsequenceRule(
                triggered_by=triggered_by,
                severity="medium",
                type=rule_type,
                description=f"{rule_type} for {triggered_by}",
                requires_consent=requires_consent,
                max_duration=max_duration,
                is_active=True,
            )
            session.add(rule)
            await session.commit()
            await session.refresh(rule)
            return rule

    return _add


@pytest.fixture
def add_challenge(bare_engine):
    session_maker = build_session_maker(bare_engine)

    async def _add(title, category, difficulty):
        async with session_maker() as session:
            challenge = Challenge(title=title, category=category, difficulty_level=difficulty,
                                  description=f"{title} description")
            session.add(challenge)
            await session.commit()
            await session.refresh(challenge)
            return challenge

    return _add


class TestCauseTables:

    def test_screensaver_categories(self):
        assert screensaver_category("missed_challenge") == "guilt-trip"
        assert screensaver_category("low_score") == "motivational"
        assert screensaver_category("skipped_task") == "humorous"
        assert screensaver_category("game_abandoned") == "romantic"
        assert screensaver_category("streak_broken") == "motivational"

    def test_durations(self):
        assert [block_duration(c) for c in ("missed_challenge", "low_score", "skipped_task", "game_abandoned")] \
            == [60, 30, 45, 90]
        assert block_duration("fight_unresolved") == 30
        assert [spam_duration(c) for c in ("missed_challenge", "low_score", "skipped_task", "game_abandoned")] \
            == [120, 60, 90, 180]
        assert spam_duration("streak_broken") == 60

    def test_makeup_categories(self):
        assert makeup_category("missed_challenge") == "communication"
        assert makeup_category("low_score") == "trust"
        assert makeup_category("skipped_task") == "fun"
        assert makeup_category("game_abandoned") == "conflict-resolution"
        assert makeup_category("fight_unresolved") == "communication"

    def test_rule_allowed_by_preferences(self):
        preferences = SimpleNamespace(
            allow_screensaver_changes=True, allow_app_blocking=False, allow_notification_spam=False
        )
        assert rule_allowed(SimpleNamespace(type="screensaver"), preferences)
        assert not rule_allowed(SimpleNamespace(type="app_block"), preferences)
        assert not rule_allowed(SimpleNamespace(type="notification_spam"), preferences)
        assert rule_allowed(SimpleNamespace(type="challenge_assignment"), preferences)


class TestTrigger:

    async def test_only_allowed_rule_is_selected(self, consequence_engine, add_rule, emitter):
        screensaver = await add_rule("missed_challenge", "screensaver")
        await add_rule("missed_challenge", "app_block", requires_consent=True)
        await add_rule("missed_challenge", "notification_spam", requires_consent=True)
        await consequence_engine.update_preferences(USER, allow_notification_spam=False)

        for _ in range(5):
            consequence = await consequence_engine.trigger_consequence(
                USER, None, "missed_challenge", "missed the Daily Check-In"
            )
            assert consequence.rule_id == screensaver.id
            assert consequence.status == CONSEQUENCE_ACTIVE
            assert consequence.user_consent is True

        assert emitter.names().count("screensaver_changed") == 5
        assert emitter.names().count("consequence_triggered") == 5

    async def test_no_allowed_rule_returns_none(self, consequence_engine, add_rule):
        await add_rule("missed_challenge", "screensaver")
        await add_rule("missed_challenge", "app_block", requires_consent=True)
        await add_rule("missed_challenge", "notification_spam", requires_consent=True)
        await consequence_engine.update_preferences(
            USER, allow_notification_spam=False, allow_screensaver_changes=False
        )

        result = await consequence_engine.trigger_consequence(USER, None, "missed_challenge", "missed it")

        assert result is None
        assert await consequence_engine.get_active_consequences(USER) == []

    async def test_no_rules_for_cause(self, consequence_engine):
        assert await consequence_engine.trigger_consequence(USER, None, "streak_broken", "broke it") is None

    async def test_unknown_cause(self, consequence_engine):
        with pytest.raises(ValidationError):
            await consequence_engine.trigger_consequence(USER, None, "forgot_birthday", "oops")

    async def test_screensaver_metadata(self, consequence_engine, add_rule, bare_repository):
        await add_rule("missed_challenge", "screensaver")

        consequence = await consequence_engine.trigger_consequence(USER, None, "missed_challenge", "missed it")

        metadata = consequence.metadata_
        assert metadata["image_category"] == "guilt-trip"
        assert metadata["original_screensaver"] == "default"
        assert metadata["dr_marcie_caption"] == "Your partner is waiting. Still avoiding that?"
        assert len(metadata["dr_marcie_caption"]) <= 50
        assert consequence.dr_marcie_commentary

        notifications = await bare_repository.list_notifications(USER)
        assert [n.type for n in notifications] == ["consequence"]

    async def test_app_block_uses_preferred_apps(self, consequence_engine, add_rule, emitter):
        await add_rule("skipped_task", "app_block")
        await consequence_engine.update_preferences(USER, allow_app_blocking=True)

        consequence = await consequence_engine.trigger_consequence(USER, None, "skipped_task", "skipped it")

        assert consequence.metadata_["blocked_apps"] == DEFAULT_BLOCKED_APPS
        assert consequence.metadata_["block_duration"] == 45
        payload = emitter.payloads("apps_blocked")[0]
        assert payload["duration"] == 45

        await consequence_engine.update_preferences(USER, blocked_app_categories=["games"])
        consequence = await consequence_engine.trigger_consequence(USER, None, "skipped_task", "skipped again")
        assert consequence.metadata_["blocked_apps"] == ["games"]

    async def test_challenge_assignment(self, consequence_engine, add_rule, add_challenge, bare_repository, clock,
                                        emitter):
        await add_rule("skipped_task", "challenge_assignment")
        await add_challenge("Pillow Fort", "fun", 2)
        easy = await add_challenge("Silly Date Night", "fun", 1)
        couple = await bare_repository.create_couple(USER, clock())

        consequence = await consequence_engine.trigger_consequence(USER, couple.id, "skipped_task", "skipped it")

        assert consequence.metadata_["challenge_assigned"] == easy.id
        attempts = await bare_repository.list_challenge_attempts(couple.id)
        assert [(a.challenge_id, a.source) for a in attempts] == [(easy.id, "consequence")]
        assert emitter.payloads("challenge_assigned")[0]["source"] == "consequence"

    async def test_challenge_assignment_without_couple(self, consequence_engine, add_rule, add_challenge):
        await add_rule("skipped_task", "challenge_assignment")
        await add_challenge("Silly Date Night", "fun", 1)

        consequence = await consequence_engine.trigger_consequence(USER, None, "skipped_task", "skipped it")
        assert consequence.metadata_["challenge_assigned"] is None


class TestConsent:

    async def test_decline_never_activates(self, consequence_engine, add_rule, scheduler, emitter):
        await add_rule("skipped_task", "notification_spam", requires_consent=True)

        consequence = await consequence_engine.trigger_consequence(USER, None, "skipped_task", "skipped it")
        assert consequence.status == CONSEQUENCE_PENDING_CONSENT
        assert consequence.started_at is None
        assert scheduler.jobs == []

        declined = await consequence_engine.give_consent(consequence.id, False, USER)

        assert declined.status == CONSEQUENCE_CANCELLED
        assert declined.cancelled_at is not None
        assert declined.user_consent is False
        assert scheduler.jobs == []
        assert "consequence_declined" in emitter.names()
        assert "spam_notification" not in emitter.names()

        with pytest.raises(InvalidStateError):
            await consequence_engine.give_consent(consequence.id, True, USER)

    async def test_accept_schedules_reminders(self, consequence_engine, add_rule, scheduler, clock):
        await add_rule("skipped_task", "notification_spam", requires_consent=True)
        consequence = await consequence_engine.trigger_consequence(USER, None, "skipped_task", "skipped it")

        accepted = await consequence_engine.give_consent(consequence.id, True, USER)

        assert accepted.status == CONSEQUENCE_ACTIVE
        assert accepted.user_consent is True
        assert accepted.started_at == clock()
        assert accepted.metadata_["notification_count"] == 18
        assert accepted.metadata_["scheduled_count"] == 18
        assert len(scheduler.jobs) == 18
        assert {job[0] for job in scheduler.jobs} == {f"consequence:{consequence.id}:spam"}
        assert [job[3]["notification_number"] for job in scheduler.jobs] == list(range(1, 19))
        assert scheduler.jobs[1][1].total_seconds() == 5 * 60

    async def test_consent_belongs_to_user(self, consequence_engine, add_rule):
        await add_rule("skipped_task", "notification_spam", requires_consent=True)
        consequence = await consequence_engine.trigger_consequence(USER, None, "skipped_task", "skipped it")

        with pytest.raises(AuthorizationError):
            await consequence_engine.give_consent(consequence.id, True, OTHER)
        with pytest.raises(NotFoundError):
            await consequence_engine.give_consent(consequence.id + 100, True, USER)


class TestNotificationSpam:

    async def test_reminders_are_capped(self, consequence_engine, add_rule, scheduler):
        await add_rule("game_abandoned", "notification_spam")

        consequence = await consequence_engine.trigger_consequence(USER, None, "game_abandoned", "left the game")

        assert consequence.metadata_["notification_count"] == 36
        assert consequence.metadata_["scheduled_count"] == 20
        assert len(scheduler.jobs) == 20
        assert len(consequence.metadata_["messages"]) == 20
        assert all(len(message) <= SPAM_MESSAGE_LIMIT for message in consequence.metadata_["messages"][10:])

    async def test_exemption_window_skips_slots(self, consequence_engine, add_rule, scheduler):
        await add_rule("low_score", "notification_spam")
        await consequence_engine.update_preferences(
            USER, max_notification_frequency=30, exemption_hours=[{"start": "10:15", "end": "11:00"}]
        )

        consequence = await consequence_engine.trigger_consequence(USER, None, "low_score", "scored 2/10")

        assert consequence.metadata_["notification_count"] == 2
        assert consequence.metadata_["scheduled_count"] == 1
        assert [job[1].total_seconds() for job in scheduler.jobs] == [0]

    async def test_delivery_while_active(self, consequence_engine, add_rule, scheduler, bare_repository, emitter):
        await add_rule("low_score", "notification_spam")
        await consequence_engine.trigger_consequence(USER, None, "low_score", "scored 2/10")

        _, _, job, payload = scheduler.jobs[0]
        await job(payload)

        titles = [n.title for n in await bare_repository.list_notifications(USER)]
        assert "💕 Dr. Marcie Reminder" in titles
        assert emitter.payloads("spam_notification")[0]["notification_number"] == 1

    async def test_complete_cancels_reminders(self, consequence_engine, add_rule, scheduler, bare_repository,
                                              emitter):
        await add_rule("low_score", "notification_spam")
        consequence = await consequence_engine.trigger_consequence(USER, None, "low_score", "scored 2/10")
        payload = scheduler.jobs[0][3]

        completed = await consequence_engine.complete_consequence(consequence.id, USER)

        assert completed.status == CONSEQUENCE_COMPLETED
        assert completed.completed_at is not None
        assert scheduler.cancelled == [f"consequence:{consequence.id}:spam"]
        assert scheduler.jobs == []
        assert emitter.payloads("consequence_completed")[0]["cleanup"] == "stop_notifications"

        before = len(await bare_repository.list_notifications(USER))
        await consequence_engine.deliver_spam_notification(payload)
        assert len(await bare_repository.list_notifications(USER)) == before

        with pytest.raises(InvalidStateError):
            await consequence_engine.complete_consequence(consequence.id, USER)


class TestCompletion:

    async def test_cleanup_intents(self, consequence_engine, add_rule, emitter):
        await add_rule("missed_challenge", "screensaver")
        consequence = await consequence_engine.trigger_consequence(USER, None, "missed_challenge", "missed it")

        await consequence_engine.complete_consequence(consequence.id)

        assert emitter.payloads("consequence_completed")[0]["cleanup"] == "restore_screensaver"
        assert await consequence_engine.get_active_consequences(USER) == []

    async def test_active_list_includes_pending(self, consequence_engine, add_rule):
        await add_rule("skipped_task", "notification_spam", requires_consent=True)
        consequence = await consequence_engine.trigger_consequence(USER, None, "skipped_task", "skipped it")

        active = await consequence_engine.get_active_consequences(USER)
        assert [item.id for item in active] == [consequence.id]
        assert active[0].rule.type == "notification_spam"


class TestPreferences:

    async def test_defaults(self, consequence_engine):
        preferences = await consequence_engine.get_preferences(USER)

        assert preferences.allow_screensaver_changes is True
        assert preferences.allow_app_blocking is False
        assert preferences.allow_notification_spam is True
        assert preferences.max_notification_frequency == 5
        assert preferences.exemption_hours == []
        assert preferences.emergency_bypass is True

    async def test_update(self, consequence_engine):
        updated = await consequence_engine.update_preferences(
            USER, allow_app_blocking=True, exemption_hours=[{"start": "22:00", "end": "07:00"}]
        )
        assert updated.allow_app_blocking is True
        assert updated.exemption_hours == [{"start": "22:00", "end": "07:00"}]

        again = await consequence_engine.get_preferences(USER)
        assert again.allow_app_blocking is True

    @pytest.mark.parametrize("changes", [
        {"allow_everything": True},
        {"max_notification_frequency": 0},
        {"max_notification_frequency": True},
        {"max_notification_frequency": "5"},
        {"exemption_hours": [{"start": "25:00", "end": "07:00"}]},
        {"exemption_hours": [{"start": "22:00"}]},
    ])
    async def test_invalid_updates(self, consequence_engine, changes):
        with pytest.raises(ValidationError):
            await consequence_engine.update_preferences(USER, **changes)
