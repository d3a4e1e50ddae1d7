"""
События реального времени, отложенные задачи и уведомления
"""

import itertools
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

Job = Callable[[dict], Awaitable[None]]


class EventEmitter:
    """Канал событий для интерфейса: fire-and-forget, без подтверждений"""

    def emit(self, event_name: str, payload: dict) -> None:
        raise NotImplementedError


class LoggingEmitter(EventEmitter):
    """Эмиттер по умолчанию: только пишет событие в лог"""

    def emit(self, event_name: str, payload: dict) -> None:
        logger.info("Событие %s: %s", event_name, payload)


class CompositeEmitter(EventEmitter):
    """Рассылка события нескольким эмиттерам"""

    def __init__(self, *emitters: EventEmitter):
        self.emitters = list(emitters)

    def emit(self, event_name: str, payload: dict) -> None:
        for emitter in self.emitters:
            emitter.emit(event_name, payload)


class Scheduler:
    """Отложенные задачи: enqueue с задержкой и отмена по ключу"""

    def enqueue(self, key: str, delay: timedelta, job: Job, payload: dict) -> None:
        raise NotImplementedError

    def cancel(self, key: str) -> int:
        raise NotImplementedError


class KeyedScheduler(Scheduler):
    """
    Отложенные задачи на APScheduler (AsyncIOScheduler, одноразовый "date"-триггер)

    id задачи - "<key>:<n>", поэтому отмена по ключу снимает все задачи
    с этим префиксом. Задачи живут только в памяти процесса; при
    перезапуске бота запланированные напоминания теряются.
    """

    def __init__(self, scheduler: AsyncIOScheduler = None):
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._ids = itertools.count(1)

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def enqueue(self, key: str, delay: timedelta, job: Job, payload: dict) -> None:
        self.start()
        self._scheduler.add_job(
            _guarded,
            "date",
            run_date=datetime.now(timezone.utc) + max(delay, timedelta(0)),
            id=f"{key}:{next(self._ids)}",
            args=[job, payload],
            misfire_grace_time=None,
        )

    def _jobs(self, key: Optional[str] = None):
        jobs = self._scheduler.get_jobs()
        if key is None:
            return jobs
        return [job for job in jobs if job.id.startswith(f"{key}:")]

    def cancel(self, key: str) -> int:
        jobs = self._jobs(key)
        for job in jobs:
            job.remove()
        return len(jobs)

    def pending(self, key: Optional[str] = None) -> int:
        return len(self._jobs(key))


async def _guarded(job: Job, payload: dict) -> None:
    try:
        await job(payload)
    except Exception:
        logger.exception("Отложенная задача завершилась с ошибкой: %s", payload)


class Notifier:
    """Уведомления: строка в notifications + событие 'notification'"""

    def __init__(self, repository, emitter: EventEmitter):
        self.repository = repository
        self.emitter = emitter

    async def notify(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        action_url: str = None,
        priority: str = "medium",
    ):
        notification = await self.repository.create_notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            action_url=action_url,
            priority=priority,
        )
        self.deliver([notification])
        return notification

    def deliver(self, notifications) -> None:
        """Событие для уже сохранённых уведомлений (после commit)"""
        for notification in notifications:
            self.emitter.emit("notification", {
                "notification_id": notification.id,
                "user_id": notification.user_id,
                "type": notification.type,
                "title": notification.title,
                "message": notification.message,
                "action_url": notification.action_url,
                "priority": notification.priority,
            })
