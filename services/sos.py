"""
SOS Fight Solver: оркестрация сессии разрешения конфликта

Каждый партнёр отвечает на вопросы в своём "приватном" черновике. Когда
обе позиции сохранены, ровно один из вызовов захватывает сессию и
запускает анализ Dr. Marcie.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from db.models import INPUT_SOS_STATUSES, SOS_ABANDONED, SOS_RESOLVED

from .analysis_parser import (
    AnalysisFields, build_apology_scripts, healing_challenge_categories, parse_analysis,
)
from .dr_marcie import (
    ConversationContext, DrMarcie, DrMarcieResponse, PersonaConfig,
    PROVIDER_REASONING, PROVIDER_STANDARD,
)
from .errors import (
    AuthorizationError, ConflictError, DuplicateSubmissionError, InvalidStateError,
    NotFoundError, RateLimitError, ValidationError,
)
from .events import EventEmitter, LoggingEmitter, Notifier
from .questions import Question, QuestionFlow, fight_solver_flow
from .sos_machine import Effect, Event, Phase, phase_for, transition
from .utils import start_of_day

logger = logging.getLogger(__name__)

HEAVY_EMOTIONS = ("angry", "hurt")
HEAVY_SEVERITY = 4
LONG_PERSPECTIVE = 200

EMERGENCY_CONTINUE = "continue"
EMERGENCY_ESCALATE = "escalate"
EMERGENCY_ABANDON = "abandon"

DEFAULT_NEXT_STEP = "Take a quiet moment to reread your partner's side, then start a calm conversation about it."

INITIATION_PROMPT = (
    "The user just activated the SOS Fight Solver. They're in conflict with their partner. "
    "Welcome them, explain the process, and get them ready to share their side of the story. "
    "Be supportive but establish that you're going to get to the truth."
)

INPUT_RECEIVED_PROMPT = (
    "Acknowledge that you've received their input about the conflict. Let them know you're waiting "
    "for their partner's perspective before providing analysis. Be reassuring but maintain your authority."
)

ANALYSIS_PROMPT = """You are Dr. Marcie Liss, analyzing a relationship conflict with your signature "sweet-but-savage" approach. Be direct, honest, and solution-focused.

CONFLICT ANALYSIS REQUEST:

PARTNER 1 PERSPECTIVE:
{partner1}

PARTNER 2 PERSPECTIVE:
{partner2}

PROVIDE A COMPREHENSIVE ANALYSIS INCLUDING:

1. ROOT CAUSE ANALYSIS: What's really going on beneath the surface?

2. FAULT ASSIGNMENT: Give a percentage of fault for Partner 1 and for Partner 2 (for example "Partner 1 bears 60% of the responsibility") and explain who bears responsibility for what.

3. COMMUNICATION BREAKDOWN: Where did the conversation go wrong?

4. EMOTIONAL VALIDATION: Acknowledge legitimate feelings while calling out unreasonable reactions.

5. IMMEDIATE ACTION PLAN: Say what Partner 1 should do and what Partner 2 should do, who should apologize and what each will commit to.

6. HEALING ROADMAP: Name a challenge or exercise that will prevent this from happening again.

Use your direct, no-nonsense style. Call out bad behavior, celebrate good intentions, and focus on practical solutions. Be the therapist they need, not the one they want."""

PARTNER_BLOCK = """- Emotional State: {emotional_state}
- Severity Level: {severity_level}/5
- What Triggered This: {trigger_event}
- Their Side of the Story: {perspective}
- What They Want to Happen: {desired_outcome}"""

FEEDBACK_PROMPT = """Give personalized feedback to {role} based on this conflict analysis:

Their input: "{perspective}"
Their emotional state: {emotional_state}
Their fault level: {fault}%
Partner's perspective: "{partner_perspective}"

{guidance}

Be Dr. Marcie: direct, caring, but no-nonsense. Give them specific action steps."""

AT_FAULT_GUIDANCE = "They bear primary responsibility. Be direct about what they did wrong and what they need to do to fix it."
LESS_AT_FAULT_GUIDANCE = "They are less at fault but still need guidance. Validate their feelings while giving constructive advice."

RATE_LIMIT_REASON = (
    "You have reached the daily limit of {limit} SOS sessions. "
    "Take some time to work on the feedback you've already received."
)

SOS_STARTED_TITLE = "🚨 SOS Fight Solver Activated"
SOS_STARTED_MESSAGE = "Your partner needs help resolving a conflict. Dr. Marcie is waiting for your perspective."
VERDICT_TITLE = "📋 Dr. Marcie Has Delivered Her Verdict"
VERDICT_MESSAGE = "Your conflict analysis is ready. Time to face the music and start healing!"


@dataclass
class Eligibility:
    can_initiate: bool
    reason: Optional[str] = None


@dataclass
class Initiation:
    """Созданная сессия, приветствие Dr. Marcie и первый вопрос"""
    session: object
    message: DrMarcieResponse
    first_question: Question


@dataclass
class EmergencyNotice:
    question_id: str
    triggers: List[str]
    message: DrMarcieResponse
    resources: List[str]
    professional_referral: bool = False


@dataclass
class AnswerOutcome:
    """Результат ответа на вопрос (или выбора в экстренном протоколе)"""
    phase: Phase
    next_question: Optional[Question] = None
    acknowledgment: Optional[DrMarcieResponse] = None
    emergency: Optional[EmergencyNotice] = None
    sos_input: object = None
    analysis: object = None
    progress: float = 0.0


def choose_provider(partner1_input, partner2_input) -> str:
    """
    Бэкенд для анализа

    Более сильная модель - только когда сигнал конфликта это оправдывает.
    """
    inputs = (partner1_input, partner2_input)
    heavy = (
        any(item.severity_level >= HEAVY_SEVERITY for item in inputs)
        or any(item.emotional_state in HEAVY_EMOTIONS for item in inputs)
        or any(len(item.perspective or "") > LONG_PERSPECTIVE for item in inputs)
    )
    return PROVIDER_REASONING if heavy else PROVIDER_STANDARD


def _partner_block(sos_input) -> str:
    return PARTNER_BLOCK.format(
        emotional_state=sos_input.emotional_state,
        severity_level=sos_input.severity_level,
        trigger_event=sos_input.trigger_event,
        perspective=sos_input.perspective,
        desired_outcome=sos_input.desired_outcome,
    )


def build_analysis_prompt(partner1_input, partner2_input) -> str:
    return ANALYSIS_PROMPT.format(
        partner1=_partner_block(partner1_input),
        partner2=_partner_block(partner2_input),
    )


@dataclass
class _BoothLock:
    lock: asyncio.Lock
    users: int = 0


class SOSService:
    """
    Сервис SOS-сессий

    Все внешние зависимости передаются в конструктор: хранилище,
    генератор Dr. Marcie, уведомления, эмиттер событий и часы.
    """

    def __init__(
        self,
        repository,
        dr_marcie: DrMarcie,
        notifier: Notifier,
        emitter: EventEmitter = None,
        flow: QuestionFlow = None,
        daily_limit: int = 3,
        emergency_triggers: Sequence[str] = (),
        crisis_resources: Sequence[str] = (),
        now: Callable[[], datetime] = datetime.now,
    ):
        self.repository = repository
        self.dr_marcie = dr_marcie
        self.notifier = notifier
        self.emitter = emitter or LoggingEmitter()
        self.flow = flow or fight_solver_flow()
        self.daily_limit = daily_limit
        self.emergency_triggers = [word.lower() for word in emergency_triggers]
        self.crisis_resources = list(crisis_resources)
        self.now = now
        # ответы одного партнёра обрабатываются строго по очереди
        self._locks: Dict[tuple, _BoothLock] = {}

    @asynccontextmanager
    async def _booth_lock(self, session_id: int, user_id: int):
        """Очередь ответов партнёра; запись удаляется, когда очередь пуста"""
        key = (session_id, user_id)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _BoothLock(asyncio.Lock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(key, None)

    # --- Запуск ---

    async def can_initiate(self, user_id: int) -> Eligibility:
        started_today = await self.repository.count_sessions_initiated_since(
            user_id, start_of_day(self.now())
        )
        if started_today >= self.daily_limit:
            return Eligibility(False, RATE_LIMIT_REASON.format(limit=self.daily_limit))
        return Eligibility(True)

    async def initiate(self, couple_id: int, user_id: int) -> Initiation:
        """
        Запуск SOS-сессии

        Raises:
            NotFoundError: пары нет
            AuthorizationError: пользователь не из этой пары
            ValidationError: партнёр ещё не присоединился
            RateLimitError: дневной лимит исчерпан
            ConflictError: у пары уже есть открытая сессия
        """
        couple = await self._require_couple(couple_id, user_id)
        if not couple.is_complete:
            raise ValidationError("Your partner hasn't joined yet. Share your invite link first!")

        eligibility = await self.can_initiate(user_id)
        if not eligibility.can_initiate:
            raise RateLimitError(eligibility.reason)

        if await self.repository.find_open_session(couple_id):
            raise ConflictError("An SOS session is already active for this couple.")

        step = transition(Phase.INITIATION, Event.INITIATE)
        now = self.now()
        sos_session = await self.repository.create_session(couple_id, user_id, now)
        logger.info("SOS-сессия %s создана: пара %s, инициатор %s", sos_session.id, couple_id, user_id)

        message = await self.dr_marcie.generate(
            INITIATION_PROMPT,
            ConversationContext(session_type="fight-solver", current_mood="frustrated",
                                user_id=user_id, couple_id=couple_id),
            PersonaConfig(tone="supportive", sass_level=2, context="fight-solver"),
        )
        await self.repository.log_conversation(
            user_id=user_id,
            couple_id=couple_id,
            session_type="fight-solver",
            context={"sos_session_id": sos_session.id, "phase": "initiation"},
            user_message="SOS_INITIATED",
            response=message.to_dict(),
            now=now,
        )

        if step.has(Effect.NOTIFY_PARTNER):
            await self.notifier.notify(
                couple.partner_of(user_id),
                type="sos",
                title=SOS_STARTED_TITLE,
                message=SOS_STARTED_MESSAGE,
                action_url=f"/sos/{sos_session.id}",
                priority="high",
            )

        first_question = self.flow.first()
        if step.has(Effect.START_QUESTIONS):
            await self.repository.create_draft(sos_session.id, user_id, first_question.id, now)

        self._emit_status(sos_session.id, couple_id, sos_session.status)
        return Initiation(session=sos_session, message=message, first_question=first_question)

    # --- Опрос ---

    async def current_question(self, session_id: int, user_id: int) -> Optional[Question]:
        """Текущий вопрос партнёра (None - позиция уже отправлена)"""
        sos_session, _ = await self._load_member_session(session_id, user_id)
        if sos_session.status not in INPUT_SOS_STATUSES:
            raise InvalidStateError("This SOS session is no longer collecting answers.")
        if await self.repository.get_input(session_id, user_id):
            return None
        draft = await self._ensure_draft(session_id, user_id)
        return self.flow.get(draft.cursor) if draft.cursor else None

    async def submit_answer(self, session_id: int, user_id: int, question_id: str, answer) -> AnswerOutcome:
        """
        Ответ на текущий вопрос

        Raises:
            ValidationError: вопрос не текущий или ответ не подходит по типу
            InvalidStateError: сессия не принимает ответы или ждёт решения по экстренному протоколу
            DuplicateSubmissionError: позиция уже отправлена
        """
        async with self._booth_lock(session_id, user_id):
            sos_session, couple = await self._load_member_session(session_id, user_id)
            if sos_session.status not in INPUT_SOS_STATUSES:
                raise InvalidStateError("This SOS session is no longer collecting answers.")
            if await self.repository.get_input(session_id, user_id):
                raise DuplicateSubmissionError("You have already submitted your input for this SOS session.")

            draft = await self._ensure_draft(session_id, user_id)
            phase = phase_for(sos_session.status, draft)
            if phase == Phase.EMERGENCY_PROTOCOL:
                raise InvalidStateError("Please choose whether to continue, get support, or stop before moving on.")
            if draft.cursor != question_id:
                raise ValidationError("Please answer the current question first.")

            question = self.flow.get(question_id)
            value = self.flow.validate(question, answer)

            triggers = self.flow.matched_triggers(question, value, self.emergency_triggers)
            if triggers:
                step = transition(phase, Event.EMERGENCY_TRIGGERED)
                await self.repository.update_draft(
                    draft.id, self.now(),
                    pending_emergency={"question_id": question.id, "answer": value, "triggers": triggers},
                )
                logger.warning(
                    "Экстренный протокол: сессия %s, пользователь %s, вопрос %s", session_id, user_id, question.id
                )
                notice = await self._emergency_notice(sos_session, user_id, question, triggers)
                self.emitter.emit("sos_emergency", {
                    "session_id": session_id,
                    "user_id": user_id,
                    "question_id": question.id,
                })
                return AnswerOutcome(
                    phase=step.phase,
                    next_question=question,
                    emergency=notice,
                    progress=self.flow.progress(draft.answers or {}),
                )

            return await self._advance(sos_session, couple, draft, question, value, phase)

    async def resolve_emergency(self, session_id: int, user_id: int, choice: str) -> AnswerOutcome:
        """
        Выбор в экстренном протоколе: continue / escalate / abandon

        continue отправляет удержанный ответ без повторной проверки триггеров.
        """
        async with self._booth_lock(session_id, user_id):
            sos_session, couple = await self._load_member_session(session_id, user_id)
            if sos_session.status not in INPUT_SOS_STATUSES:
                raise InvalidStateError("This SOS session is no longer collecting answers.")
            draft = await self.repository.get_draft(session_id, user_id)
            if draft is None or not draft.pending_emergency:
                raise InvalidStateError("There is no safety check waiting for your answer.")

            phase = Phase.EMERGENCY_PROTOCOL
            pending = draft.pending_emergency
            question = self.flow.get(pending["question_id"])

            if choice == EMERGENCY_ESCALATE:
                step = transition(phase, Event.EMERGENCY_ESCALATE)
                notice = await self._emergency_notice(
                    sos_session, user_id, question, pending.get("triggers", []), professional_referral=True
                )
                return AnswerOutcome(phase=step.phase, next_question=question, emergency=notice)

            if choice == EMERGENCY_ABANDON:
                step = transition(phase, Event.EMERGENCY_ABANDON)
                await self.repository.update_draft(draft.id, self.now(), pending_emergency=None)
                if step.has(Effect.MARK_ABANDONED):
                    await self.repository.abandon_session(session_id)
                logger.info("SOS-сессия %s остановлена из экстренного протокола", session_id)
                self._emit_status(session_id, sos_session.couple_id, SOS_ABANDONED)
                return AnswerOutcome(phase=step.phase)

            if choice == EMERGENCY_CONTINUE:
                return await self._advance(
                    sos_session, couple, draft, question, pending["answer"], phase, escalate=True
                )

            raise ValidationError("Please choose to continue, get support, or stop the session.")

    async def _advance(self, sos_session, couple, draft, question: Question, value, phase: Phase,
                       escalate: bool = False) -> AnswerOutcome:
        answers = dict(draft.answers or {})
        answers[question.id] = value

        next_id, resume = self._next_question(draft, question, value, answers, escalate)
        final = next_id is None
        if phase == Phase.EMERGENCY_PROTOCOL:
            event = Event.EMERGENCY_FINAL_CONTINUE if final else Event.EMERGENCY_CONTINUE
        else:
            event = Event.FINAL_ANSWER if final else Event.ANSWER
        step = transition(phase, event)
        now = self.now()

        if not final:
            await self.repository.update_draft(
                draft.id, now,
                answers=answers, cursor=next_id, pending_emergency=None, resume_question=resume,
            )
            acknowledgment = await self._acknowledge(sos_session, draft.user_id, question, answers)
            return AnswerOutcome(
                phase=step.phase,
                next_question=self.flow.get(next_id),
                acknowledgment=acknowledgment,
                progress=self.flow.progress(answers),
            )

        fields, supplementary = self.flow.assemble_input(answers)
        sos_input = await self.repository.create_input(
            sos_session.id, draft.user_id, fields, supplementary, now
        )
        await self.repository.update_draft(
            draft.id, now,
            answers=answers, cursor=None, pending_emergency=None, resume_question=None,
        )
        logger.info("SOS-сессия %s: позиция пользователя %s сохранена", sos_session.id, draft.user_id)

        acknowledgment = await self.dr_marcie.generate(
            INPUT_RECEIVED_PROMPT,
            ConversationContext(session_type="fight-solver", current_mood=fields.get("emotional_state", "neutral"),
                                user_id=draft.user_id, couple_id=couple.id),
            PersonaConfig(tone="supportive", sass_level=1, context="fight-solver"),
        )
        await self.repository.log_conversation(
            user_id=draft.user_id,
            couple_id=couple.id,
            session_type="fight-solver",
            context={"sos_session_id": sos_session.id, "phase": "input_received"},
            user_message="SOS_INPUT_SUBMITTED",
            response=acknowledgment.to_dict(),
            now=now,
        )
        self.emitter.emit("sos_input_submitted", {
            "session_id": sos_session.id,
            "couple_id": couple.id,
            "user_id": draft.user_id,
        })

        outcome = AnswerOutcome(
            phase=step.phase,
            acknowledgment=acknowledgment,
            sos_input=sos_input,
            progress=100.0,
        )
        if step.has(Effect.CHECK_BARRIER):
            await self._check_barrier(sos_session.id, couple, outcome)
        return outcome

    def _next_question(self, draft, question: Question, value, answers: dict, escalate: bool):
        """(следующий вопрос, вопрос для возврата после вопроса вне основного пути)"""
        resume = draft.resume_question
        if escalate:
            target = self.flow.escalation_target(question)
            if target and target not in answers:
                return target, self.flow.next_on_main_path(question.id) or resume

        target = self.flow.branch_target(question, value)
        if target and target not in answers:
            return target, self.flow.next_on_main_path(question.id) or resume

        if not question.main_path:
            return resume, None
        return self.flow.next_on_main_path(question.id), resume

    async def _check_barrier(self, session_id: int, couple, outcome: AnswerOutcome) -> None:
        """Обе позиции есть -> захват сессии и анализ"""
        inputs = await self.repository.list_inputs(session_id)
        if len(inputs) < 2:
            return

        step = transition(Phase.WAITING_FOR_PARTNER, Event.PARTNER_COMPLETED)
        if not await self.repository.claim_for_analysis(session_id):
            # анализ уже запустил второй партнёр
            outcome.phase = Phase.ANALYZING
            return
        if step.has(Effect.RUN_ANALYSIS):
            outcome.analysis = await self._analyze(session_id, couple, inputs)
            outcome.phase = Phase.RESOLVED

    async def _acknowledge(self, sos_session, user_id: int, question: Question, answers: dict) -> DrMarcieResponse:
        prompt = (
            f'The user just answered the question "{question.text}". '
            "Acknowledge it in one or two sentences and encourage them to keep going. "
            "Don't analyze the conflict yet."
        )
        return await self.dr_marcie.generate(
            prompt,
            ConversationContext(session_type="fight-solver",
                                current_mood=str(answers.get("emotional-state", "neutral")),
                                user_id=user_id, couple_id=sos_session.couple_id),
            PersonaConfig(tone="supportive", sass_level=1, context="fight-solver"),
        )

    async def _emergency_notice(self, sos_session, user_id: int, question: Question, triggers: List[str],
                                professional_referral: bool = False) -> EmergencyNotice:
        prompt = (
            f"The user mentioned something concerning ({', '.join(triggers)}). "
            "Provide immediate support and guidance. Ask if they need professional help or emergency services."
        )
        if professional_referral:
            prompt += " They asked for support resources: encourage them to reach out to a professional now."
        message = await self.dr_marcie.generate(
            prompt,
            ConversationContext(session_type="fight-solver", current_mood="concerned",
                                user_id=user_id, couple_id=sos_session.couple_id),
            PersonaConfig(tone="concerned", sass_level=1, context="fight-solver"),
        )
        return EmergencyNotice(
            question_id=question.id,
            triggers=list(triggers),
            message=message,
            resources=list(self.crisis_resources),
            professional_referral=professional_referral,
        )

    # --- Анализ ---

    async def run_analysis(self, session_id: int):
        """
        Анализ сессии, у которой уже есть обе позиции

        Raises:
            InvalidStateError: позиций меньше двух или анализ уже идёт/завершён
            GenerationFailure: модель не ответила (сессия -> abandoned)
        """
        sos_session = await self.repository.get_session(session_id)
        if sos_session is None:
            raise NotFoundError("SOS session not found.")
        inputs = await self.repository.list_inputs(session_id)
        if len(inputs) < 2:
            raise InvalidStateError("Both partners need to share their side before the analysis.")
        if not await self.repository.claim_for_analysis(session_id):
            raise InvalidStateError("This SOS session is already being analyzed or has ended.")
        couple = await self.repository.get_couple(sos_session.couple_id)
        return await self._analyze(session_id, couple, inputs)

    async def _analyze(self, session_id: int, couple, inputs):
        logger.info("SOS-сессия %s: запуск анализа", session_id)
        try:
            partner1_input, partner2_input = self._order_inputs(couple, inputs)
            provider = choose_provider(partner1_input, partner2_input)
            response = await self.dr_marcie.generate(
                build_analysis_prompt(partner1_input, partner2_input),
                ConversationContext(session_type="fight-solver", current_mood="frustrated",
                                    user_id=partner1_input.user_id, couple_id=couple.id),
                PersonaConfig(tone="direct", sass_level=4, context="fight-solver"),
                provider=provider,
                strict=True,
            )

            fields = parse_analysis(response.message)
            if fields.degraded_fields:
                logger.warning(
                    "SOS-сессия %s: поля анализа по умолчанию: %s", session_id, ", ".join(fields.degraded_fields)
                )
            feedback1 = await self.personalized_feedback(partner1_input, partner2_input, fields, "partner1")
            feedback2 = await self.personalized_feedback(partner2_input, partner1_input, fields, "partner2")

            now = self.now()
            document = self._analysis_document(
                fields, build_apology_scripts(fields, partner1_input, partner2_input), feedback1, feedback2
            )
            resolution = await self.repository.record_resolution(
                session_id=session_id,
                couple_id=couple.id,
                analysis_values={
                    "ai_provider": provider,
                    "partner1_user_id": partner1_input.user_id,
                    "partner2_user_id": partner2_input.user_id,
                    "analysis": document,
                    "dr_marcie_response": response.to_dict(),
                    "raw_response": response.message,
                },
                challenge_categories=healing_challenge_categories(fields),
                notifications=[
                    {
                        "user_id": item.user_id,
                        "type": "sos",
                        "title": VERDICT_TITLE,
                        "message": VERDICT_MESSAGE,
                        "action_url": f"/sos/{session_id}/results",
                        "priority": "high",
                    }
                    for item in (partner1_input, partner2_input)
                ],
                conversations=[
                    {
                        "user_id": item.user_id,
                        "couple_id": couple.id,
                        "session_type": "fight-solver",
                        "context": {"sos_session_id": session_id, "phase": "analysis_complete"},
                        "user_message": "REQUEST_ANALYSIS_RESULTS",
                        "response": feedback.to_dict(),
                    }
                    for item, feedback in ((partner1_input, feedback1), (partner2_input, feedback2))
                ],
                now=now,
            )
        except Exception:
            logger.exception("SOS-сессия %s: анализ не удался, сессия закрыта", session_id)
            if transition(Phase.ANALYZING, Event.ANALYSIS_FAILED).has(Effect.MARK_ABANDONED):
                await self.repository.abandon_session(session_id)
            self._emit_status(session_id, couple.id, SOS_ABANDONED)
            raise

        if resolution is None:
            logger.warning("SOS-сессия %s закрыта во время анализа, вердикт не сохранён", session_id)
            raise InvalidStateError("The SOS session was ended before the analysis finished.")

        transition(Phase.ANALYZING, Event.ANALYSIS_SUCCEEDED)
        logger.info(
            "SOS-сессия %s решена: бэкенд %s, вина %s/%s",
            session_id, provider, fields.partner1_fault, fields.partner2_fault,
        )
        self.notifier.deliver(resolution.notifications)
        for attempt, challenge in resolution.attempts:
            self.emitter.emit("challenge_assigned", {
                "couple_id": couple.id,
                "attempt_id": attempt.id,
                "challenge_id": challenge.id,
                "title": challenge.title,
                "category": challenge.category,
                "source": "sos",
            })
        self._emit_status(session_id, couple.id, SOS_RESOLVED, analysis_id=resolution.analysis.id)
        return resolution.analysis

    async def personalized_feedback(self, user_input, partner_input, fields: AnalysisFields, role: str) -> DrMarcieResponse:
        """
        Отзыв одному партнёру

        Больше вины - прямой тон и дерзость 4, иначе (в том числе при 50/50)
        поддерживающий тон и дерзость 2.
        """
        if role == "partner1":
            own, other, actions = fields.partner1_fault, fields.partner2_fault, fields.partner1_actions
        else:
            own, other, actions = fields.partner2_fault, fields.partner1_fault, fields.partner2_actions
        at_fault = own > other

        response = await self.dr_marcie.generate(
            FEEDBACK_PROMPT.format(
                role=role,
                perspective=user_input.perspective,
                emotional_state=user_input.emotional_state,
                fault=own,
                partner_perspective=partner_input.perspective,
                guidance=AT_FAULT_GUIDANCE if at_fault else LESS_AT_FAULT_GUIDANCE,
            ),
            ConversationContext(session_type="fight-solver", current_mood=user_input.emotional_state,
                                user_id=user_input.user_id),
            PersonaConfig(tone="direct" if at_fault else "supportive",
                          sass_level=4 if at_fault else 2, context="fight-solver"),
        )
        if not response.action_items:
            response.action_items = (list(actions) + list(fields.joint_actions))[:3] or [DEFAULT_NEXT_STEP]
        return response

    @staticmethod
    def _order_inputs(couple, inputs):
        """Partner 1 в вердикте - первый партнёр пары"""
        by_user = {item.user_id: item for item in inputs}
        try:
            return by_user[couple.partner1_user_id], by_user[couple.partner2_user_id]
        except KeyError:
            raise InvalidStateError("SOS inputs do not belong to this couple.") from None

    @staticmethod
    def _analysis_document(fields: AnalysisFields, scripts: dict, feedback1: DrMarcieResponse,
                           feedback2: DrMarcieResponse) -> dict:
        return {
            "summary": fields.summary,
            "root_cause": fields.root_cause,
            "fault_assignment": {
                "partner1_fault": fields.partner1_fault,
                "partner2_fault": fields.partner2_fault,
                "explanation": fields.fault_explanation,
            },
            "recommendations": {
                "partner1_actions": fields.partner1_actions,
                "partner2_actions": fields.partner2_actions,
                "joint_actions": fields.joint_actions,
            },
            "apology_required": {
                "partner1_should_apologize": fields.partner1_should_apologize,
                "partner2_should_apologize": fields.partner2_should_apologize,
                "apology_scripts": scripts,
            },
            "healing_challenges": fields.healing_challenges,
            "communication_breakdown": fields.communication_breakdown,
            "emotional_validation": fields.emotional_validation,
            "personalized_feedback": {
                "partner1": feedback1.to_dict(),
                "partner2": feedback2.to_dict(),
            },
            "degraded_fields": fields.degraded_fields,
        }

    # --- Отмена ---

    async def abort_session(self, session_id: int, user_id: int):
        """
        Отмена сессии инициатором

        Raises:
            AuthorizationError: вызывает не инициатор
            InvalidStateError: сессия уже решена
        """
        sos_session = await self.repository.get_session(session_id)
        if sos_session is None:
            raise NotFoundError("SOS session not found.")
        if sos_session.initiated_by != user_id:
            raise AuthorizationError("Only the partner who started this SOS session can abort it.")
        if sos_session.status == SOS_RESOLVED:
            raise InvalidStateError("This SOS session has already been resolved.")

        step = transition(phase_for(sos_session.status), Event.ABORT)
        if step.has(Effect.MARK_ABANDONED):
            if not await self.repository.abandon_session(session_id):
                raise InvalidStateError("This SOS session has already been resolved.")
            logger.info("SOS-сессия %s отменена инициатором", session_id)
            self._emit_status(session_id, sos_session.couple_id, SOS_ABANDONED)
        return await self.repository.get_session(session_id)

    # --- Чтение ---

    async def get_session(self, session_id: int):
        return await self.repository.get_session(session_id)

    async def get_active_session(self, user_id: int):
        """Открытая сессия пары пользователя"""
        couple = await self.repository.get_couple_for_user(user_id)
        if couple is None:
            return None
        return await self.repository.find_open_session(couple.id)

    async def get_analysis(self, session_id: int, user_id: int):
        await self._load_member_session(session_id, user_id)
        return await self.repository.get_analysis(session_id)

    async def get_inputs(self, session_id: int, user_id: int):
        """До вердикта партнёр видит только свою позицию"""
        await self._load_member_session(session_id, user_id)
        if await self.repository.get_analysis(session_id) is not None:
            return await self.repository.list_inputs(session_id)
        own = await self.repository.get_input(session_id, user_id)
        return [own] if own else []

    async def get_user_history(self, user_id: int):
        return await self.repository.list_sessions_initiated_by(user_id, limit=10)

    # --- Внутреннее ---

    async def _require_couple(self, couple_id: int, user_id: int):
        couple = await self.repository.get_couple(couple_id)
        if couple is None:
            raise NotFoundError("Couple not found.")
        if not couple.has_member(user_id):
            raise AuthorizationError("You are not a member of this couple.")
        return couple

    async def _load_member_session(self, session_id: int, user_id: int):
        sos_session = await self.repository.get_session(session_id)
        if sos_session is None:
            raise NotFoundError("SOS session not found.")
        couple = await self._require_couple(sos_session.couple_id, user_id)
        return sos_session, couple

    async def _ensure_draft(self, session_id: int, user_id: int):
        draft = await self.repository.get_draft(session_id, user_id)
        if draft is None:
            draft = await self.repository.create_draft(session_id, user_id, self.flow.first().id, self.now())
        return draft

    def _emit_status(self, session_id: int, couple_id: int, status: str, **extra) -> None:
        payload = {"session_id": session_id, "couple_id": couple_id, "status": status}
        payload.update(extra)
        self.emitter.emit("sos_update", payload)
