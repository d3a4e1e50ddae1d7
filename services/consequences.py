"""
Движок последствий: реакция на пропущенные задания и слабые результаты

Правило выбирается случайно среди разрешённых настройками пользователя.
Длительность и содержимое активации зависят только от причины, поэтому
поведение для одной и той же причины воспроизводимо.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from db.models import (
    CONSEQUENCE_ACTIVE, CONSEQUENCE_CANCELLED, CONSEQUENCE_COMPLETED, CONSEQUENCE_PENDING_CONSENT,
)

from .dr_marcie import ConversationContext, DrMarcie, PersonaConfig
from .errors import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from .events import EventEmitter, LoggingEmitter, Notifier, Scheduler
from .utils import in_exemption_window, parse_clock, strip_markdown, truncate

logger = logging.getLogger(__name__)

TRIGGER_CAUSES = (
    "missed_challenge",
    "low_score",
    "skipped_task",
    "fight_unresolved",
    "streak_broken",
    "game_abandoned",
)

TYPE_SCREENSAVER = "screensaver"
TYPE_APP_BLOCK = "app_block"
TYPE_NOTIFICATION_SPAM = "notification_spam"
TYPE_CHALLENGE_ASSIGNMENT = "challenge_assignment"

SCREENSAVER_CATEGORIES = {
    "missed_challenge": "guilt-trip",
    "low_score": "motivational",
    "skipped_task": "humorous",
    "game_abandoned": "romantic",
}
BLOCK_MINUTES = {
    "missed_challenge": 60,
    "low_score": 30,
    "skipped_task": 45,
    "game_abandoned": 90,
}
SPAM_MINUTES = {
    "missed_challenge": 120,
    "low_score": 60,
    "skipped_task": 90,
    "game_abandoned": 180,
}
MAKEUP_CATEGORIES = {
    "missed_challenge": "communication",
    "low_score": "trust",
    "skipped_task": "fun",
    "game_abandoned": "conflict-resolution",
}

SCREENSAVER_IMAGES = {
    "guilt-trip": (
        "https://images.pexels.com/photos/3184291/pexels-photo-3184291.jpeg",
        "Your partner is waiting. Still avoiding that?",
    ),
    "motivational": (
        "https://images.pexels.com/photos/1509428/pexels-photo-1509428.jpeg",
        "Growth happens outside your comfort zone.",
    ),
    "humorous": (
        "https://images.pexels.com/photos/1108099/pexels-photo-1108099.jpeg",
        "This cat has more commitment than you.",
    ),
    "romantic": (
        "https://images.pexels.com/photos/1024993/pexels-photo-1024993.jpeg",
        "Remember why you're doing this together.",
    ),
}

DEFAULT_BLOCKED_APPS = ["instagram", "tiktok", "twitter", "facebook", "snapchat"]
DEFAULT_FREQUENCY_MINUTES = 5
SPAM_MESSAGE_LIMIT = 60

SPAM_MESSAGES = [
    "Your relationship is calling! 📞💕",
    "Don't ignore your partner's needs! 💔",
    "Dr. Marcie reminder: Love requires effort! 💪❤️",
    "Your couple goals are waiting! ⏰👫",
    "Relationship maintenance in progress... 🔧💕",
    "Skipping again? I'm starting to think you're hiding something... 👀",
    "Your partner deserves better than excuses. Step up! 💪",
    "This is your conscience speaking. Well, it's actually me, Dr. Marcie. 😏",
    "Commitment issues are so last season, darling. 💅",
    "Your relationship won't fix itself. Get back in there! 🏃‍♀️💨",
]

CLEANUP_INTENTS = {
    TYPE_SCREENSAVER: "restore_screensaver",
    TYPE_APP_BLOCK: "unblock_apps",
    TYPE_NOTIFICATION_SPAM: "stop_notifications",
}

PREFERENCE_FIELDS = (
    "allow_screensaver_changes",
    "allow_app_blocking",
    "allow_notification_spam",
    "max_notification_frequency",
    "blocked_app_categories",
    "exemption_hours",
    "emergency_bypass",
)

_TYPE_PREFERENCE = {
    TYPE_SCREENSAVER: "allow_screensaver_changes",
    TYPE_APP_BLOCK: "allow_app_blocking",
    TYPE_NOTIFICATION_SPAM: "allow_notification_spam",
}


def screensaver_category(cause: str) -> str:
    return SCREENSAVER_CATEGORIES.get(cause, "motivational")


def block_duration(cause: str) -> int:
    """Минуты блокировки приложений"""
    return BLOCK_MINUTES.get(cause, 30)


def spam_duration(cause: str) -> int:
    """Минуты кампании напоминаний"""
    return SPAM_MINUTES.get(cause, 60)


def makeup_category(cause: str) -> str:
    return MAKEUP_CATEGORIES.get(cause, "communication")


def rule_allowed(rule, preferences) -> bool:
    """Тип правила разрешён настройками (challenge_assignment разрешён всегда)"""
    flag = _TYPE_PREFERENCE.get(rule.type)
    return True if flag is None else bool(getattr(preferences, flag))


class ConsequenceEngine:
    """Выбор, согласие, активация и завершение последствий"""

    def __init__(
        self,
        repository,
        dr_marcie: DrMarcie,
        notifier: Notifier,
        scheduler: Scheduler,
        emitter: EventEmitter = None,
        rng: random.Random = None,
        now: Callable[[], datetime] = datetime.now,
        spam_cap: int = 20,
        caption_limit: int = 50,
    ):
        self.repository = repository
        self.dr_marcie = dr_marcie
        self.notifier = notifier
        self.scheduler = scheduler
        self.emitter = emitter or LoggingEmitter()
        self.rng = rng or random.Random()
        self.now = now
        self.spam_cap = spam_cap
        self.caption_limit = caption_limit

    # --- Запуск ---

    async def trigger_consequence(self, user_id: int, couple_id: Optional[int], trigger_cause: str,
                                  context_text: str):
        """
        Последствие за пропуск или слабый результат

        Args:
            trigger_cause: причина из TRIGGER_CAUSES
            context_text: свободное описание для Dr. Marcie

        Returns:
            ActiveConsequence или None, если настройки не разрешают ни одно правило
        """
        if trigger_cause not in TRIGGER_CAUSES:
            raise ValidationError(f"Unknown consequence trigger: {trigger_cause}")

        now = self.now()
        preferences = await self.repository.get_or_create_preferences(user_id, now)
        rule = await self.select_rule(trigger_cause, preferences)
        if rule is None:
            logger.info("Последствие для пользователя %s не выбрано: %s", user_id, trigger_cause)
            return None

        message = await self.dr_marcie.generate(
            f"The user has triggered a consequence for: {context_text}\n"
            f"Consequence type: {rule.type}\n"
            f"Consequence description: {rule.description}\n\n"
            'Deliver this consequence with your signature "sweet-but-savage" style. Be firm but caring. '
            "Explain why this matters for their relationship growth. Keep it under 100 words.",
            self._context(user_id, couple_id),
            PersonaConfig(tone="direct", sass_level=4, context="consequence"),
        )

        consequence = await self.repository.create_consequence(
            rule_id=rule.id,
            user_id=user_id,
            couple_id=couple_id,
            status=CONSEQUENCE_PENDING_CONSENT if rule.requires_consent else CONSEQUENCE_ACTIVE,
            trigger_cause=trigger_cause,
            triggered_by=context_text,
            assigned_at=now,
            started_at=None if rule.requires_consent else now,
            user_consent=not rule.requires_consent,
            metadata_={},
            dr_marcie_commentary=[message.message],
        )
        logger.info(
            "Последствие %s (%s) для пользователя %s: %s",
            consequence.id, rule.type, user_id, consequence.status,
        )

        if not rule.requires_consent:
            consequence = await self._activate(consequence)

        self.emitter.emit("consequence_triggered", {
            "user_id": user_id,
            "consequence_id": consequence.id,
            "type": rule.type,
            "requires_consent": rule.requires_consent,
            "message": message.message,
        })
        return consequence

    async def select_rule(self, trigger_cause: str, preferences):
        rules = [
            rule for rule in await self.repository.list_rules(trigger_cause)
            if rule_allowed(rule, preferences)
        ]
        if not rules:
            return None
        return self.rng.choice(rules)

    # --- Согласие и завершение ---

    async def give_consent(self, consequence_id: int, consent: bool, user_id: int = None):
        """
        Ответ пользователя на запрос согласия

        Отказ никогда не приводит к активации.
        """
        consequence = await self._require(consequence_id, user_id)
        if consequence.status != CONSEQUENCE_PENDING_CONSENT:
            raise InvalidStateError("This consequence is not waiting for your consent.")

        now = self.now()
        if not consent:
            updated = await self.repository.update_consequence(
                consequence_id,
                only_from=[CONSEQUENCE_PENDING_CONSENT],
                status=CONSEQUENCE_CANCELLED,
                user_consent=False,
                cancelled_at=now,
            )
            if updated is None:
                raise InvalidStateError("This consequence is not waiting for your consent.")
            logger.info("Последствие %s отклонено пользователем", consequence_id)
            self.emitter.emit("consequence_declined", {
                "user_id": updated.user_id,
                "consequence_id": consequence_id,
            })
            return updated

        updated = await self.repository.update_consequence(
            consequence_id,
            only_from=[CONSEQUENCE_PENDING_CONSENT],
            status=CONSEQUENCE_ACTIVE,
            user_consent=True,
            started_at=now,
        )
        if updated is None:
            raise InvalidStateError("This consequence is not waiting for your consent.")
        return await self._activate(updated)

    async def complete_consequence(self, consequence_id: int, user_id: int = None):
        """Завершение: отмена отложенных напоминаний и событие с намерением очистки"""
        consequence = await self._require(consequence_id, user_id)
        updated = await self.repository.update_consequence(
            consequence_id,
            only_from=[CONSEQUENCE_PENDING_CONSENT, CONSEQUENCE_ACTIVE],
            status=CONSEQUENCE_COMPLETED,
            completed_at=self.now(),
        )
        if updated is None:
            raise InvalidStateError("This consequence has already ended.")

        cancelled = self.scheduler.cancel(self._job_key(consequence_id))
        cleanup = CLEANUP_INTENTS.get(consequence.rule.type, "none")
        logger.info("Последствие %s завершено, отменено напоминаний: %s", consequence_id, cancelled)
        self.emitter.emit("consequence_completed", {
            "user_id": updated.user_id,
            "consequence_id": consequence_id,
            "type": consequence.rule.type,
            "cleanup": cleanup,
        })
        return updated

    async def get_active_consequences(self, user_id: int):
        return await self.repository.list_consequences(
            user_id, [CONSEQUENCE_PENDING_CONSENT, CONSEQUENCE_ACTIVE]
        )

    # --- Настройки ---

    async def get_preferences(self, user_id: int):
        return await self.repository.get_or_create_preferences(user_id, self.now())

    async def update_preferences(self, user_id: int, **changes):
        unknown = set(changes) - set(PREFERENCE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown preference: {', '.join(sorted(unknown))}")
        if "max_notification_frequency" in changes:
            frequency = changes["max_notification_frequency"]
            if isinstance(frequency, bool) or not isinstance(frequency, int) or frequency < 1:
                raise ValidationError("Notification frequency must be a whole number of minutes (1 or more).")
        for window in changes.get("exemption_hours") or []:
            try:
                parse_clock(window["start"])
                parse_clock(window["end"])
            except (KeyError, TypeError, ValueError):
                raise ValidationError('Exemption hours look like {"start": "22:00", "end": "07:00"}.') from None
        return await self.repository.update_preferences(user_id, self.now(), **changes)

    # --- Активация ---

    async def _activate(self, consequence):
        activations = {
            TYPE_SCREENSAVER: self._activate_screensaver,
            TYPE_APP_BLOCK: self._activate_app_block,
            TYPE_NOTIFICATION_SPAM: self._activate_notification_spam,
            TYPE_CHALLENGE_ASSIGNMENT: self._activate_challenge_assignment,
        }
        activation = activations.get(consequence.rule.type)
        if activation is None:
            logger.warning("Неизвестный тип последствия %s", consequence.rule.type)
            return consequence

        metadata = await activation(consequence)
        logger.info("Последствие %s активировано (%s)", consequence.id, consequence.rule.type)
        updated = await self.repository.update_consequence(consequence.id, metadata_=metadata)
        return updated or consequence

    async def _activate_screensaver(self, consequence) -> dict:
        category = screensaver_category(consequence.trigger_cause)
        image_url, base_caption = SCREENSAVER_IMAGES[category]

        response = await self.dr_marcie.generate(
            f"Personalize this screensaver message for a user who {consequence.trigger_cause.replace('_', ' ')}:\n"
            f'Base message: "{base_caption}"\n\n'
            "Make it Dr. Marcie's signature style - sweet but savage. "
            f"Keep it under {self.caption_limit} characters for mobile display.",
            self._context(consequence.user_id, consequence.couple_id),
            PersonaConfig(tone="sweet-savage", sass_level=4, context="consequence"),
        )
        source = base_caption if response.fallback else strip_markdown(response.message)
        caption = truncate(source, self.caption_limit)

        await self.notifier.notify(
            consequence.user_id,
            type="consequence",
            title="📱 Dr. Marcie Has Redecorated Your Phone!",
            message=caption,
            action_url="/consequences/active",
        )
        self.emitter.emit("screensaver_changed", {
            "user_id": consequence.user_id,
            "consequence_id": consequence.id,
            "image_url": image_url,
            "caption": caption,
        })
        return {
            "screensaver_image": image_url,
            "original_screensaver": "default",
            "dr_marcie_caption": caption,
            "image_category": category,
        }

    async def _activate_app_block(self, consequence) -> dict:
        preferences = await self.repository.get_or_create_preferences(consequence.user_id, self.now())
        apps = list(preferences.blocked_app_categories or []) or list(DEFAULT_BLOCKED_APPS)
        duration = block_duration(consequence.trigger_cause)

        response = await self.dr_marcie.generate(
            f"Generate a message about blocking these apps: {', '.join(apps)} for {duration} minutes.\n\n"
            "Be Dr. Marcie - firm but caring. Explain why this helps their relationship growth.",
            self._context(consequence.user_id, consequence.couple_id),
            PersonaConfig(tone="direct", sass_level=3, context="consequence"),
        )

        await self.notifier.notify(
            consequence.user_id,
            type="consequence",
            title="🚫 Apps Temporarily Blocked",
            message=response.message,
            action_url="/consequences/active",
            priority="high",
        )
        # блокировку выполняет устройство, здесь только намерение
        self.emitter.emit("apps_blocked", {
            "user_id": consequence.user_id,
            "consequence_id": consequence.id,
            "blocked_apps": apps,
            "duration": duration,
            "message": response.message,
        })
        return {
            "blocked_apps": apps,
            "block_duration": duration,
            "block_start_time": self.now().isoformat(),
            "dr_marcie_block_message": response.message,
        }

    async def _activate_notification_spam(self, consequence) -> dict:
        preferences = await self.repository.get_or_create_preferences(consequence.user_id, self.now())
        frequency = preferences.max_notification_frequency or DEFAULT_FREQUENCY_MINUTES
        total = spam_duration(consequence.trigger_cause)
        count = total // frequency
        messages = await self._spam_messages(consequence, min(count, self.spam_cap))

        start = self.now()
        scheduled = 0
        skipped = 0
        for index in range(count):
            if scheduled >= self.spam_cap:
                break
            delay = timedelta(minutes=index * frequency)
            if in_exemption_window(start + delay, preferences.exemption_hours):
                skipped += 1
                continue
            scheduled += 1
            self.scheduler.enqueue(
                self._job_key(consequence.id),
                delay,
                self.deliver_spam_notification,
                {
                    "consequence_id": consequence.id,
                    "user_id": consequence.user_id,
                    "message": messages[index % len(messages)],
                    "notification_number": scheduled,
                    "total_notifications": count,
                },
            )

        logger.info(
            "Последствие %s: запланировано напоминаний %s из %s (пропущено в окнах тишины: %s)",
            consequence.id, scheduled, count, skipped,
        )
        return {
            "notification_count": count,
            "scheduled_count": scheduled,
            "frequency": frequency,
            "total_duration": total,
            "messages": messages,
            "start_time": start.isoformat(),
        }

    async def _spam_messages(self, consequence, count: int) -> List[str]:
        """Статический набор + сгенерированные сообщения, пока не наберётся count"""
        messages = list(SPAM_MESSAGES)
        while len(messages) < count:
            response = await self.dr_marcie.generate(
                f"Generate a short, witty reminder message for someone who "
                f"{consequence.trigger_cause.replace('_', ' ')}. "
                f"Keep it under {SPAM_MESSAGE_LIMIT} characters. Be Dr. Marcie - sweet but savage.",
                self._context(consequence.user_id, consequence.couple_id),
                PersonaConfig(tone="sweet-savage", sass_level=3, context="consequence"),
            )
            messages.append(truncate(strip_markdown(response.message), SPAM_MESSAGE_LIMIT))
        return messages[:max(count, 1)]

    async def deliver_spam_notification(self, payload: dict) -> None:
        """Отложенная задача: одно напоминание, если последствие ещё активно"""
        consequence = await self.repository.get_consequence(payload["consequence_id"])
        if consequence is None or consequence.status != CONSEQUENCE_ACTIVE:
            return
        await self.notifier.notify(
            payload["user_id"],
            type="consequence",
            title="💕 Dr. Marcie Reminder",
            message=payload["message"],
            action_url="/challenges",
        )
        self.emitter.emit("spam_notification", {
            "user_id": payload["user_id"],
            "consequence_id": payload["consequence_id"],
            "message": payload["message"],
            "notification_number": payload["notification_number"],
            "total_notifications": payload["total_notifications"],
        })

    async def _activate_challenge_assignment(self, consequence) -> dict:
        category = makeup_category(consequence.trigger_cause)
        if consequence.couple_id is None:
            logger.warning("Последствие %s: нет пары для задания", consequence.id)
            return {"challenge_category": category, "challenge_assigned": None}

        assigned = await self.repository.assign_challenge(
            consequence.couple_id, category, source="consequence", now=self.now()
        )
        if assigned is None:
            logger.warning("Последствие %s: нет заданий категории %s", consequence.id, category)
            return {"challenge_category": category, "challenge_assigned": None}

        attempt, challenge = assigned
        response = await self.dr_marcie.generate(
            f'Generate a message assigning the "{challenge.title}" challenge as a consequence for '
            f"{consequence.triggered_by}.\n\n"
            "Be Dr. Marcie - firm but fair. Explain why this specific challenge will help them grow.",
            self._context(consequence.user_id, consequence.couple_id),
            PersonaConfig(tone="direct", sass_level=3, context="consequence"),
        )

        await self.notifier.notify(
            consequence.user_id,
            type="consequence",
            title="📋 Makeup Challenge Assigned",
            message=response.message,
            action_url=f"/challenges/{challenge.id}",
            priority="high",
        )
        self.emitter.emit("challenge_assigned", {
            "user_id": consequence.user_id,
            "couple_id": consequence.couple_id,
            "attempt_id": attempt.id,
            "challenge_id": challenge.id,
            "title": challenge.title,
            "category": challenge.category,
            "source": "consequence",
            "message": response.message,
        })
        return {
            "challenge_category": category,
            "challenge_assigned": challenge.id,
            "challenge_attempt_id": attempt.id,
            "challenge_title": challenge.title,
            "assignment_message": response.message,
        }

    # --- Внутреннее ---

    async def _require(self, consequence_id: int, user_id: Optional[int]):
        consequence = await self.repository.get_consequence(consequence_id)
        if consequence is None:
            raise NotFoundError("Consequence not found.")
        if user_id is not None and consequence.user_id != user_id:
            raise AuthorizationError("This consequence belongs to someone else.")
        return consequence

    @staticmethod
    def _context(user_id: int, couple_id: Optional[int]) -> ConversationContext:
        return ConversationContext(session_type="consequence", current_mood="frustrated",
                                   user_id=user_id, couple_id=couple_id)

    @staticmethod
    def _job_key(consequence_id: int) -> str:
        return f"consequence:{consequence_id}:spam"
