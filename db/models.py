"""
SQLAlchemy модели для базы данных
"""

from sqlalchemy import (
    Boolean, Column, Integer, String, Text, DateTime, ForeignKey, JSON, func,
    UniqueConstraint, Index, text
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# Статусы SOS-сессии
SOS_ACTIVE = "active"
SOS_PARTNER_PENDING = "partner-pending"
SOS_ANALYZING = "analyzing"
SOS_RESOLVED = "resolved"
SOS_ABANDONED = "abandoned"

OPEN_SOS_STATUSES = (SOS_ACTIVE, SOS_PARTNER_PENDING, SOS_ANALYZING)
INPUT_SOS_STATUSES = (SOS_ACTIVE, SOS_PARTNER_PENDING)

# Статусы последствий
CONSEQUENCE_PENDING_CONSENT = "pending_consent"
CONSEQUENCE_ACTIVE = "active"
CONSEQUENCE_COMPLETED = "completed"
CONSEQUENCE_CANCELLED = "cancelled"

_OPEN_SOS_WHERE = text("status IN ('active', 'partner-pending', 'analyzing')")


class Couple(Base):
    """Пара: первый партнёр создаёт, второй присоединяется по ссылке"""
    __tablename__ = "couples"

    id = Column(Integer, primary_key=True, index=True)
    partner1_user_id = Column(Integer, nullable=False, index=True)
    partner2_user_id = Column(Integer, nullable=True, index=True)
    created_at = Column(DateTime, default=func.now())

    sos_sessions = relationship("SOSSession", back_populates="couple")

    def has_member(self, user_id: int) -> bool:
        return user_id in (self.partner1_user_id, self.partner2_user_id)

    def partner_of(self, user_id: int):
        if user_id == self.partner1_user_id:
            return self.partner2_user_id
        if user_id == self.partner2_user_id:
            return self.partner1_user_id
        return None

    @property
    def is_complete(self) -> bool:
        return self.partner2_user_id is not None


class SOSSession(Base):
    """Один эпизод разрешения конфликта для пары"""
    __tablename__ = "sos_sessions"
    __table_args__ = (
        # Не больше одной открытой сессии на пару
        Index(
            "uq_sos_open_session_per_couple", "couple_id",
            unique=True,
            sqlite_where=_OPEN_SOS_WHERE,
            postgresql_where=_OPEN_SOS_WHERE,
        ),
        Index("idx_sos_initiator_created", "initiated_by", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    couple_id = Column(Integer, ForeignKey("couples.id"), nullable=False)
    initiated_by = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=SOS_ACTIVE)
    created_at = Column(DateTime, default=func.now())
    resolved_at = Column(DateTime, nullable=True)

    couple = relationship("Couple", back_populates="sos_sessions")
    inputs = relationship("SOSInput", back_populates="session", cascade="all, delete-orphan")
    analysis = relationship("SOSAnalysis", back_populates="session", uselist=False, cascade="all, delete-orphan")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_SOS_STATUSES


class SOSDraft(Base):
    """Незавершённые ответы партнёра (приватная "кабинка")"""
    __tablename__ = "sos_drafts"
    __table_args__ = (
        UniqueConstraint("session_id", "user_id", name="uq_draft_session_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sos_sessions.id"), nullable=False)
    user_id = Column(Integer, nullable=False)
    cursor = Column(String, nullable=True)  # id текущего вопроса, None когда всё отвечено
    answers = Column(JSON, nullable=False, default=dict)
    pending_emergency = Column(JSON, nullable=True)
    resume_question = Column(String, nullable=True)  # куда вернуться после вопроса эскалации
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class SOSInput(Base):
    """Итоговая позиция партнёра по конфликту"""
    __tablename__ = "sos_inputs"
    __table_args__ = (
        UniqueConstraint("session_id", "user_id", name="uq_sos_input_session_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sos_sessions.id"), nullable=False)
    user_id = Column(Integer, nullable=False)
    perspective = Column(Text, nullable=False)
    emotional_state = Column(String, nullable=False)
    severity_level = Column(Integer, nullable=False)
    trigger_event = Column(Text, nullable=False)
    desired_outcome = Column(Text, nullable=False)
    supplementary = Column(JSON, nullable=False, default=dict)
    submitted_at = Column(DateTime, default=func.now())

    session = relationship("SOSSession", back_populates="inputs")


class SOSAnalysis(Base):
    """Вердикт Dr. Marcie по сессии"""
    __tablename__ = "sos_analyses"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sos_sessions.id"), nullable=False, unique=True)
    ai_provider = Column(String, nullable=False)
    partner1_user_id = Column(Integer, nullable=False)
    partner2_user_id = Column(Integer, nullable=False)
    analysis = Column(JSON, nullable=False)
    dr_marcie_response = Column(JSON, nullable=False)
    raw_response = Column(Text, nullable=False)
    created_at = Column(DateTime, default=func.now())

    session = relationship("SOSSession", back_populates="analysis")

    def role_of(self, user_id: int):
        if user_id == self.partner1_user_id:
            return "partner1"
        if user_id == self.partner2_user_id:
            return "partner2"
        return None


class Notification(Base):
    """Уведомление пользователю"""
    __tablename__ = "notifications"
    __table_args__ = (
        Index("idx_notifications_user_read", "user_id", "is_read"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False)
    type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    action_url = Column(String, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    priority = Column(String, default="medium", nullable=False)
    created_at = Column(DateTime, default=func.now())


class Challenge(Base):
    """Каталог заданий для пар"""
    __tablename__ = "challenges"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    category = Column(String, nullable=False, index=True)
    difficulty_level = Column(Integer, nullable=False, default=1)
    description = Column(Text, nullable=False, default="")


class ChallengeAttempt(Base):
    """Назначенное паре задание"""
    __tablename__ = "challenge_attempts"

    id = Column(Integer, primary_key=True, index=True)
    couple_id = Column(Integer, ForeignKey("couples.id"), nullable=False, index=True)
    challenge_id = Column(Integer, ForeignKey("challenges.id"), nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending, completed, skipped
    source = Column(String, nullable=False, default="sos")  # sos, consequence
    created_at = Column(DateTime, default=func.now())

    challenge = relationship("Challenge")


class ConsequenceRule(Base):
    """Правило последствия (настраивается, во время работы только читается)"""
    __tablename__ = "consequence_rules"

    id = Column(Integer, primary_key=True, index=True)
    triggered_by = Column(String, nullable=False, index=True)
    severity = Column(String, nullable=False, default="light")  # light, medium, heavy
    type = Column(String, nullable=False)  # screensaver, app_block, notification_spam, challenge_assignment
    description = Column(Text, nullable=False, default="")
    requires_consent = Column(Boolean, nullable=False, default=True)
    max_duration = Column(Integer, nullable=True)  # минуты
    is_active = Column(Boolean, nullable=False, default=True)


class ActiveConsequence(Base):
    """Сработавшее последствие"""
    __tablename__ = "active_consequences"
    __table_args__ = (
        Index("idx_consequences_user_status", "user_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    rule_id = Column(Integer, ForeignKey("consequence_rules.id"), nullable=False)
    user_id = Column(Integer, nullable=False)
    couple_id = Column(Integer, ForeignKey("couples.id"), nullable=True)
    status = Column(String, nullable=False)
    trigger_cause = Column(String, nullable=False)
    triggered_by = Column(Text, nullable=False)
    assigned_at = Column(DateTime, default=func.now())
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    user_consent = Column(Boolean, nullable=False, default=False)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    dr_marcie_commentary = Column(JSON, nullable=False, default=list)

    rule = relationship("ConsequenceRule", lazy="joined")


class ConsequencePreferences(Base):
    """Согласия пользователя на последствия"""
    __tablename__ = "consequence_preferences"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, unique=True)
    allow_screensaver_changes = Column(Boolean, nullable=False, default=True)
    allow_app_blocking = Column(Boolean, nullable=False, default=False)
    allow_notification_spam = Column(Boolean, nullable=False, default=True)
    max_notification_frequency = Column(Integer, nullable=False, default=5)  # минуты
    blocked_app_categories = Column(JSON, nullable=False, default=list)
    exemption_hours = Column(JSON, nullable=False, default=list)  # [{"start": "09:00", "end": "17:00"}]
    emergency_bypass = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class DrMarcieConversation(Base):
    """Журнал сообщений Dr. Marcie"""
    __tablename__ = "dr_marcie_conversations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    couple_id = Column(Integer, nullable=True)
    session_type = Column(String, nullable=False)
    context = Column(JSON, nullable=False, default=dict)
    user_message = Column(Text, nullable=False)
    response = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=func.now())
