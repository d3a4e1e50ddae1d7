"""
Доступ к данным: все запросы ядра к базе проходят здесь

Каждый метод - отдельная транзакция. Нарушения уникальности переводятся
в ошибки ядра (ConflictError / DuplicateSubmissionError).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from services.errors import ConflictError, DuplicateSubmissionError, NotFoundError, ValidationError
from .models import (
    ActiveConsequence, Challenge, ChallengeAttempt, ConsequencePreferences, ConsequenceRule,
    Couple, DrMarcieConversation, Notification, SOSAnalysis, SOSDraft, SOSInput, SOSSession,
    INPUT_SOS_STATUSES, OPEN_SOS_STATUSES,
    SOS_ABANDONED, SOS_ACTIVE, SOS_ANALYZING, SOS_PARTNER_PENDING, SOS_RESOLVED,
)

logger = logging.getLogger(__name__)

_NO_SYNC = {"synchronize_session": False}


@dataclass
class Resolution:
    """Результат записи вердикта"""
    analysis: SOSAnalysis
    attempts: List[Tuple[ChallengeAttempt, Challenge]] = field(default_factory=list)
    notifications: List[Notification] = field(default_factory=list)


class Repository:
    """Обёртка над async_sessionmaker"""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    # --- Пары ---

    async def create_couple(self, user_id: int, now: datetime) -> Couple:
        async with self.session_maker() as session:
            couple = Couple(partner1_user_id=user_id, created_at=now)
            session.add(couple)
            await session.commit()
            await session.refresh(couple)
            return couple

    async def join_couple(self, couple_id: int, user_id: int) -> Couple:
        """Присоединение второго партнёра (защита от гонки: условный UPDATE)"""
        async with self.session_maker() as session:
            couple = await session.get(Couple, couple_id)
            if couple is None:
                raise NotFoundError("Couple not found. Please check the invite link.")
            if couple.partner1_user_id == user_id:
                raise ValidationError("You can't pair with yourself. Send the link to your partner!")
            if couple.partner2_user_id == user_id:
                return couple

            result = await session.execute(
                update(Couple)
                .where(Couple.id == couple_id, Couple.partner2_user_id.is_(None))
                .values(partner2_user_id=user_id)
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise ConflictError("Someone has already joined this couple.")
            await session.commit()
            await session.refresh(couple)
            return couple

    async def get_couple(self, couple_id: int) -> Optional[Couple]:
        async with self.session_maker() as session:
            return await session.get(Couple, couple_id)

    async def get_couple_for_user(self, user_id: int) -> Optional[Couple]:
        """Самая свежая пара пользователя"""
        async with self.session_maker() as session:
            result = await session.execute(
                select(Couple).where(
                    or_(Couple.partner1_user_id == user_id, Couple.partner2_user_id == user_id)
                ).order_by(Couple.created_at.desc(), Couple.id.desc()).limit(1)
            )
            return result.scalar_one_or_none()

    # --- SOS-сессии ---

    async def create_session(self, couple_id: int, user_id: int, now: datetime) -> SOSSession:
        async with self.session_maker() as session:
            sos_session = SOSSession(
                couple_id=couple_id,
                initiated_by=user_id,
                status=SOS_ACTIVE,
                created_at=now,
            )
            session.add(sos_session)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ConflictError("An SOS session is already active for this couple.") from None
            await session.refresh(sos_session)
            return sos_session

    async def get_session(self, session_id: int) -> Optional[SOSSession]:
        async with self.session_maker() as session:
            return await session.get(SOSSession, session_id)

    async def find_open_session(self, couple_id: int) -> Optional[SOSSession]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(SOSSession).where(
                    SOSSession.couple_id == couple_id,
                    SOSSession.status.in_(OPEN_SOS_STATUSES),
                ).limit(1)
            )
            return result.scalar_one_or_none()

    async def count_sessions_initiated_since(self, user_id: int, since: datetime) -> int:
        async with self.session_maker() as session:
            return await session.scalar(
                select(func.count()).select_from(SOSSession).where(
                    SOSSession.initiated_by == user_id,
                    SOSSession.created_at >= since,
                )
            )

    async def list_sessions_initiated_by(self, user_id: int, limit: int = 10) -> List[SOSSession]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(SOSSession)
                .where(SOSSession.initiated_by == user_id)
                .order_by(SOSSession.created_at.desc(), SOSSession.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def latest_session(self, couple_id: int, status: str = None) -> Optional[SOSSession]:
        async with self.session_maker() as session:
            query = select(SOSSession).where(SOSSession.couple_id == couple_id)
            if status:
                query = query.where(SOSSession.status == status)
            result = await session.execute(
                query.order_by(SOSSession.created_at.desc(), SOSSession.id.desc()).limit(1)
            )
            return result.scalar_one_or_none()

    async def claim_for_analysis(self, session_id: int) -> bool:
        """
        Перевод сессии в analyzing

        Условный UPDATE: из гонки двух последних ответов выигрывает ровно один.
        """
        async with self.session_maker() as session:
            result = await session.execute(
                update(SOSSession)
                .where(SOSSession.id == session_id, SOSSession.status.in_(INPUT_SOS_STATUSES))
                .values(status=SOS_ANALYZING)
                .execution_options(**_NO_SYNC)
            )
            await session.commit()
            return result.rowcount == 1

    async def abandon_session(self, session_id: int) -> bool:
        """Сессия -> abandoned (кроме уже решённых)"""
        async with self.session_maker() as session:
            result = await session.execute(
                update(SOSSession)
                .where(SOSSession.id == session_id, SOSSession.status != SOS_RESOLVED)
                .values(status=SOS_ABANDONED)
                .execution_options(**_NO_SYNC)
            )
            await session.commit()
            return result.rowcount == 1

    # --- Черновики ---

    async def get_draft(self, session_id: int, user_id: int) -> Optional[SOSDraft]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(SOSDraft).where(SOSDraft.session_id == session_id, SOSDraft.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def create_draft(self, session_id: int, user_id: int, cursor: str, now: datetime) -> SOSDraft:
        async with self.session_maker() as session:
            draft = SOSDraft(
                session_id=session_id,
                user_id=user_id,
                cursor=cursor,
                answers={},
                updated_at=now,
            )
            session.add(draft)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self.get_draft(session_id, user_id)
                if existing is None:
                    raise
                return existing
            await session.refresh(draft)
            return draft

    async def update_draft(self, draft_id: int, now: datetime, **values) -> SOSDraft:
        async with self.session_maker() as session:
            await session.execute(
                update(SOSDraft)
                .where(SOSDraft.id == draft_id)
                .values(updated_at=now, **values)
                .execution_options(**_NO_SYNC)
            )
            await session.commit()
            return await session.get(SOSDraft, draft_id)

    # --- Позиции партнёров ---

    async def create_input(
        self,
        session_id: int,
        user_id: int,
        fields: dict,
        supplementary: dict,
        now: datetime,
    ) -> SOSInput:
        """
        Запись SOSInput

        В той же транзакции сессия active -> partner-pending.

        Raises:
            DuplicateSubmissionError: ввод этого партнёра уже есть
        """
        async with self.session_maker() as session:
            sos_input = SOSInput(
                session_id=session_id,
                user_id=user_id,
                supplementary=supplementary,
                submitted_at=now,
                **fields,
            )
            try:
                await session.execute(
                    update(SOSSession)
                    .where(SOSSession.id == session_id, SOSSession.status == SOS_ACTIVE)
                    .values(status=SOS_PARTNER_PENDING)
                    .execution_options(**_NO_SYNC)
                )
                session.add(sos_input)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateSubmissionError(
                    "You have already submitted your input for this SOS session."
                ) from None
            await session.refresh(sos_input)
            return sos_input

    async def get_input(self, session_id: int, user_id: int) -> Optional[SOSInput]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(SOSInput).where(SOSInput.session_id == session_id, SOSInput.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def list_inputs(self, session_id: int) -> List[SOSInput]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(SOSInput)
                .where(SOSInput.session_id == session_id)
                .order_by(SOSInput.submitted_at, SOSInput.id)
            )
            return list(result.scalars().all())

    # --- Вердикт ---

    async def get_analysis(self, session_id: int) -> Optional[SOSAnalysis]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(SOSAnalysis).where(SOSAnalysis.session_id == session_id)
            )
            return result.scalar_one_or_none()

    async def record_resolution(
        self,
        session_id: int,
        couple_id: int,
        analysis_values: dict,
        challenge_categories: Sequence[str],
        notifications: Iterable[dict],
        conversations: Iterable[dict],
        now: datetime,
    ) -> Optional[Resolution]:
        """
        Вердикт, статус resolved, задания, уведомления и журнал - одной транзакцией

        Returns:
            Resolution или None, если сессия уже не в analyzing (например, её прервали)
        """
        async with self.session_maker() as session:
            result = await session.execute(
                update(SOSSession)
                .where(SOSSession.id == session_id, SOSSession.status == SOS_ANALYZING)
                .values(status=SOS_RESOLVED, resolved_at=now)
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                await session.rollback()
                return None

            challenges = []
            for category in challenge_categories:
                challenge = await self._lowest_difficulty_challenge(session, category)
                if challenge is None:
                    logger.warning("Нет заданий категории %s для SOS-сессии %s", category, session_id)
                    continue
                challenges.append(challenge)

            # Новые строки добавляются после всех SELECT: без промежуточного autoflush
            analysis = SOSAnalysis(session_id=session_id, created_at=now, **analysis_values)
            session.add(analysis)

            attempts = []
            for challenge in challenges:
                attempt = ChallengeAttempt(
                    couple_id=couple_id,
                    challenge_id=challenge.id,
                    status="pending",
                    source="sos",
                    created_at=now,
                )
                session.add(attempt)
                attempts.append((attempt, challenge))

            rows = [Notification(created_at=now, is_read=False, **values) for values in notifications]
            session.add_all(rows)
            session.add_all([
                DrMarcieConversation(created_at=now, **values) for values in conversations
            ])

            await session.commit()
            return Resolution(analysis=analysis, attempts=attempts, notifications=rows)

    # --- Уведомления ---

    async def create_notification(self, user_id: int, type: str, title: str, message: str,
                                  action_url: str = None, priority: str = "medium") -> Notification:
        async with self.session_maker() as session:
            notification = Notification(
                user_id=user_id,
                type=type,
                title=title,
                message=message,
                action_url=action_url,
                priority=priority,
                is_read=False,
                created_at=datetime.now(),
            )
            session.add(notification)
            await session.commit()
            await session.refresh(notification)
            return notification

    async def list_notifications(self, user_id: int, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        async with self.session_maker() as session:
            query = select(Notification).where(Notification.user_id == user_id)
            if unread_only:
                query = query.where(Notification.is_read.is_(False))
            result = await session.execute(
                query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def mark_notifications_read(self, user_id: int) -> int:
        async with self.session_maker() as session:
            result = await session.execute(
                update(Notification)
                .where(Notification.user_id == user_id, Notification.is_read.is_(False))
                .values(is_read=True)
                .execution_options(**_NO_SYNC)
            )
            await session.commit()
            return result.rowcount

    # --- Задания ---

    @staticmethod
    async def _lowest_difficulty_challenge(session, category: str) -> Optional[Challenge]:
        result = await session.execute(
            select(Challenge)
            .where(Challenge.category == category)
            .order_by(Challenge.difficulty_level, Challenge.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def assign_challenge(self, couple_id: int, category: str, source: str,
                               now: datetime) -> Optional[Tuple[ChallengeAttempt, Challenge]]:
        """Самое простое задание категории -> паре"""
        async with self.session_maker() as session:
            challenge = await self._lowest_difficulty_challenge(session, category)
            if challenge is None:
                return None
            attempt = ChallengeAttempt(
                couple_id=couple_id,
                challenge_id=challenge.id,
                status="pending",
                source=source,
                created_at=now,
            )
            session.add(attempt)
            await session.commit()
            await session.refresh(attempt)
            return attempt, challenge

    async def list_challenge_attempts(self, couple_id: int, status: str = None) -> List[ChallengeAttempt]:
        async with self.session_maker() as session:
            query = (
                select(ChallengeAttempt)
                .options(selectinload(ChallengeAttempt.challenge))
                .where(ChallengeAttempt.couple_id == couple_id)
            )
            if status:
                query = query.where(ChallengeAttempt.status == status)
            result = await session.execute(
                query.order_by(ChallengeAttempt.created_at, ChallengeAttempt.id)
            )
            return list(result.scalars().all())

    async def set_attempt_status(self, attempt_id: int, status: str, only_from: str = "pending") -> bool:
        async with self.session_maker() as session:
            result = await session.execute(
                update(ChallengeAttempt)
                .where(ChallengeAttempt.id == attempt_id, ChallengeAttempt.status == only_from)
                .values(status=status)
                .execution_options(**_NO_SYNC)
            )
            await session.commit()
            return result.rowcount == 1

    async def get_attempt(self, attempt_id: int) -> Optional[ChallengeAttempt]:
        async with self.session_maker() as session:
            return await session.get(
                ChallengeAttempt, attempt_id, options=[selectinload(ChallengeAttempt.challenge)]
            )

    # --- Последствия ---

    async def list_rules(self, triggered_by: str) -> List[ConsequenceRule]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(ConsequenceRule)
                .where(ConsequenceRule.triggered_by == triggered_by, ConsequenceRule.is_active.is_(True))
                .order_by(ConsequenceRule.id)
            )
            return list(result.scalars().all())

    async def get_or_create_preferences(self, user_id: int, now: datetime) -> ConsequencePreferences:
        """Настройки пользователя; при первом обращении создаются безопасные значения"""
        async with self.session_maker() as session:
            query = select(ConsequencePreferences).where(ConsequencePreferences.user_id == user_id)
            preferences = await session.scalar(query)
            if preferences is not None:
                return preferences

            preferences = ConsequencePreferences(
                user_id=user_id,
                allow_screensaver_changes=True,
                allow_app_blocking=False,
                allow_notification_spam=True,
                max_notification_frequency=5,
                blocked_app_categories=[],
                exemption_hours=[],
                emergency_bypass=True,
                updated_at=now,
            )
            session.add(preferences)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return await session.scalar(query)
            await session.refresh(preferences)
            return preferences

    async def update_preferences(self, user_id: int, now: datetime, **changes) -> ConsequencePreferences:
        await self.get_or_create_preferences(user_id, now)
        async with self.session_maker() as session:
            await session.execute(
                update(ConsequencePreferences)
                .where(ConsequencePreferences.user_id == user_id)
                .values(updated_at=now, **changes)
                .execution_options(**_NO_SYNC)
            )
            await session.commit()
            return await session.scalar(
                select(ConsequencePreferences).where(ConsequencePreferences.user_id == user_id)
            )

    async def create_consequence(self, **values) -> ActiveConsequence:
        async with self.session_maker() as session:
            consequence = ActiveConsequence(**values)
            session.add(consequence)
            await session.commit()
            consequence_id = consequence.id
        return await self.get_consequence(consequence_id)

    async def get_consequence(self, consequence_id: int) -> Optional[ActiveConsequence]:
        async with self.session_maker() as session:
            return await session.get(ActiveConsequence, consequence_id)

    async def update_consequence(self, consequence_id: int, only_from: Sequence[str] = None,
                                 **values) -> Optional[ActiveConsequence]:
        """
        Обновление последствия

        Returns:
            обновлённое последствие или None, если статус не из only_from
        """
        async with self.session_maker() as session:
            conditions = [ActiveConsequence.id == consequence_id]
            if only_from:
                conditions.append(ActiveConsequence.status.in_(only_from))
            result = await session.execute(
                update(ActiveConsequence)
                .where(and_(*conditions))
                # ключи - имена атрибутов (metadata_ хранится в колонке metadata)
                .values({getattr(ActiveConsequence, key): value for key, value in values.items()})
                .execution_options(**_NO_SYNC)
            )
            await session.commit()
            if result.rowcount != 1:
                return None
        return await self.get_consequence(consequence_id)

    async def list_consequences(self, user_id: int, statuses: Sequence[str]) -> List[ActiveConsequence]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(ActiveConsequence)
                .where(ActiveConsequence.user_id == user_id, ActiveConsequence.status.in_(statuses))
                .order_by(ActiveConsequence.assigned_at, ActiveConsequence.id)
            )
            return list(result.unique().scalars().all())

    # --- Журнал Dr. Marcie ---

    async def log_conversation(self, user_id: int, couple_id: Optional[int], session_type: str,
                               context: dict, user_message: str, response: dict,
                               now: datetime) -> DrMarcieConversation:
        async with self.session_maker() as session:
            entry = DrMarcieConversation(
                user_id=user_id,
                couple_id=couple_id,
                session_type=session_type,
                context=context,
                user_message=user_message,
                response=response,
                created_at=now,
            )
            session.add(entry)
            await session.commit()
            await session.refresh(entry)
            return entry

    async def list_conversations(self, user_id: int, limit: int = 20) -> List[DrMarcieConversation]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(DrMarcieConversation)
                .where(DrMarcieConversation.user_id == user_id)
                .order_by(DrMarcieConversation.created_at.desc(), DrMarcieConversation.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
