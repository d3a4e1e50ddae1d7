"""
Тесты вспомогательных функций, планировщика и уведомлений
"""

import asyncio
from datetime import datetime, time, timedelta

import pytest

from services.events import CompositeEmitter, KeyedScheduler, Notifier
from services.utils import (
    generate_join_link, in_exemption_window, parse_clock, parse_join_payload, start_of_day,
    strip_markdown, truncate,
)

from .conftest import RecordingEmitter


class TestUtils:

    def test_join_link_round_trip(self):
        link = generate_join_link("drmarcie_bot", 42)
        assert link == "https://t.me/drmarcie_bot?start=join_42"
        assert parse_join_payload(link.split("start=")[1]) == 42

    @pytest.mark.parametrize("payload", ["", None, "join_", "join_abc", "invite_3", "join_3x"])
    def test_bad_join_payloads(self, payload):
        assert parse_join_payload(payload) is None

    def test_start_of_day(self):
        assert start_of_day(datetime(2024, 5, 14, 23, 59)) == datetime(2024, 5, 14)

    def test_parse_clock(self):
        assert parse_clock("07:30") == time(7, 30)

    def test_exemption_windows(self):
        office = [{"start": "09:00", "end": "17:00"}]
        assert in_exemption_window(datetime(2024, 5, 14, 9, 0), office)
        assert not in_exemption_window(datetime(2024, 5, 14, 17, 0), office)

        night = [{"start": "22:00", "end": "07:00"}]
        assert in_exemption_window(datetime(2024, 5, 14, 23, 30), night)
        assert in_exemption_window(datetime(2024, 5, 14, 6, 59), night)
        assert not in_exemption_window(datetime(2024, 5, 14, 12, 0), night)
        assert not in_exemption_window(datetime(2024, 5, 14, 12, 0), None)

    def test_text_helpers(self):
        assert strip_markdown("**Bold** `code` #tag") == "Bold code tag"
        assert truncate("  short  ", 10) == "short"
        assert truncate("a sentence that is long", 10) == "a sentence"


@pytest.fixture
async def keyed_scheduler():
    scheduler = KeyedScheduler()
    yield scheduler
    scheduler.shutdown()


class TestScheduler:

    async def test_job_runs_after_delay(self, keyed_scheduler):
        seen = []

        async def job(payload):
            seen.append(payload["n"])

        keyed_scheduler.enqueue("k", timedelta(0), job, {"n": 1})
        keyed_scheduler.enqueue("k", timedelta(seconds=0.05), job, {"n": 2})
        await asyncio.sleep(0.3)

        assert seen == [1, 2]

    async def test_finished_jobs_are_not_pending(self, keyed_scheduler):
        seen = []

        async def job(payload):
            seen.append(payload["n"])

        for n in range(5):
            keyed_scheduler.enqueue(f"consequence:{n}:spam", timedelta(0), job, {"n": n})
        await asyncio.sleep(0.3)

        assert sorted(seen) == [0, 1, 2, 3, 4]
        assert keyed_scheduler.pending() == 0

    async def test_cancel_by_key(self, keyed_scheduler):
        seen = []

        async def job(payload):
            seen.append(payload)

        keyed_scheduler.enqueue("a", timedelta(seconds=0.2), job, {"key": "a"})
        keyed_scheduler.enqueue("a", timedelta(seconds=0.2), job, {"key": "a"})
        keyed_scheduler.enqueue("ab", timedelta(seconds=0.2), job, {"key": "ab"})
        assert keyed_scheduler.pending() == 3
        assert keyed_scheduler.pending("a") == 2

        assert keyed_scheduler.cancel("a") == 2
        await asyncio.sleep(0.5)

        assert seen == [{"key": "ab"}]
        assert keyed_scheduler.cancel("missing") == 0

    async def test_failing_job_is_logged(self, keyed_scheduler, caplog):
        async def job(payload):
            raise RuntimeError("boom")

        keyed_scheduler.enqueue("k", timedelta(0), job, {})
        await asyncio.sleep(0.3)

        assert "boom" in caplog.text


class TestNotifier:

    async def test_notification_is_stored_and_emitted(self, repository):
        emitter = RecordingEmitter()
        notifier = Notifier(repository, CompositeEmitter(emitter))

        notification = await notifier.notify(7, type="sos", title="Hi", message="There", priority="high")

        stored = await repository.list_notifications(7)
        assert [n.id for n in stored] == [notification.id]
        payload = emitter.payloads("notification")[0]
        assert payload["notification_id"] == notification.id
        assert payload["priority"] == "high"

        assert await repository.mark_notifications_read(7) == 1
        assert await repository.list_notifications(7, unread_only=True) == []
