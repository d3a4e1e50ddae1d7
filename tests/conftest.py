"""
Общие фикстуры: временная SQLite, фейковая модель, записывающие эмиттер и планировщик
"""

import random
from datetime import datetime, timedelta

import pytest

from db.database import build_engine, build_session_maker, init_db
from db.repository import Repository
from services.consequences import ConsequenceEngine
from services.dr_marcie import DrMarcie, PROVIDER_REASONING, PROVIDER_STANDARD
from services.errors import GenerationFailure
from services.events import EventEmitter, Notifier, Scheduler
from services.sos import SOSService

TRIGGER_WORDS = ["unsafe", "abuse", "hurt me", "hit me", "scared of"]
CRISIS_RESOURCES = ["Call your local emergency number.", "Hotline 1-800-799-7233"]

VERDICT_TEXT = (
    "In summary, this fight was about feeling unheard. "
    "The root cause is a lack of communication about plans. "
    "Partner 1 bears 70% of the responsibility and Partner 2 bears 30% of the responsibility. "
    "Partner 1 should apologize for cancelling last minute. "
    "Partner 1 will call ahead when plans change. "
    "Partner 2 needs to say what they need instead of going silent. "
    "Both of you should schedule a weekly planning talk. "
    "Your feelings of disappointment are valid. "
    "Challenge: Five-Minute Listening Swap."
)
CHAT_TEXT = "Thanks for sharing that with me. Try to take a slow breath and keep going."

SAMPLE_ANALYSIS = {
    "summary": "This fight was about **feeling unheard**.",
    "root_cause": "A lack of communication about plans.",
    "fault_assignment": {"partner1_fault": 70, "partner2_fault": 30, "explanation": "Partner 1 cancelled."},
    "recommendations": {
        "partner1_actions": ["apologize for cancelling"],
        "partner2_actions": ["say what you need"],
        "joint_actions": ["plan the week together"],
    },
    "apology_required": {
        "partner1_should_apologize": True,
        "partner2_should_apologize": False,
        "apology_scripts": {"partner1": "I'm sorry for my actions."},
    },
    "healing_challenges": ["Five-Minute Listening Swap."],
    "communication_breakdown": "The conversation stopped.",
    "emotional_validation": "Your feelings are valid 💛",
    "personalized_feedback": {
        "partner1": {"message": "Own it, honey.", "action_items": ["Call ahead"]},
        "partner2": {"message": "You did fine.", "action_items": []},
    },
}


class FakeBackend:
    """Бэкенд модели без сети: вердикт на запрос анализа, короткий ответ на остальное"""

    def __init__(self, verdict: str = VERDICT_TEXT, fail_analysis: bool = False, on_analysis=None):
        self.verdict = verdict
        self.fail_analysis = fail_analysis
        self.on_analysis = on_analysis
        self.prompts = []

    @property
    def analysis_calls(self) -> int:
        return sum(1 for prompt in self.prompts if "CONFLICT ANALYSIS REQUEST" in prompt)

    async def complete(self, system_prompt: str, prompt: str) -> str:
        self.prompts.append(prompt)
        if "CONFLICT ANALYSIS REQUEST" in prompt:
            if self.on_analysis is not None:
                await self.on_analysis()
            if self.fail_analysis:
                raise GenerationFailure("model unavailable")
            return self.verdict
        return CHAT_TEXT


class RecordingEmitter(EventEmitter):
    def __init__(self):
        self.events = []

    def emit(self, event_name: str, payload: dict) -> None:
        self.events.append((event_name, payload))

    def names(self):
        return [name for name, _ in self.events]

    def payloads(self, event_name: str):
        return [payload for name, payload in self.events if name == event_name]


class RecordingScheduler(Scheduler):
    def __init__(self):
        self.jobs = []
        self.cancelled = []

    def enqueue(self, key, delay, job, payload) -> None:
        self.jobs.append((key, delay, job, payload))

    def cancel(self, key) -> int:
        removed = [job for job in self.jobs if job[0] == key]
        self.jobs = [job for job in self.jobs if job[0] != key]
        self.cancelled.append(key)
        return len(removed)


class Clock:
    """Управляемые часы"""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def bare_engine(tmp_path):
    """База без стартовых правил и заданий"""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'bare.db'}", echo=False)
    await init_db(engine, seed=False)
    yield engine
    await engine.dispose()


@pytest.fixture
def repository(engine):
    return Repository(build_session_maker(engine))


@pytest.fixture
def bare_repository(bare_engine):
    return Repository(build_session_maker(bare_engine))


@pytest.fixture
def clock():
    return Clock(datetime(2024, 5, 14, 10, 0, 0))


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def standard_backend():
    return FakeBackend()


@pytest.fixture
def reasoning_backend():
    return FakeBackend()


@pytest.fixture
def dr_marcie(standard_backend, reasoning_backend):
    return DrMarcie(
        backends={PROVIDER_STANDARD: standard_backend, PROVIDER_REASONING: reasoning_backend},
        timeout=5,
    )


@pytest.fixture
def sos_service(repository, dr_marcie, emitter, clock):
    return SOSService(
        repository,
        dr_marcie,
        Notifier(repository, emitter),
        emitter=emitter,
        daily_limit=3,
        emergency_triggers=TRIGGER_WORDS,
        crisis_resources=CRISIS_RESOURCES,
        now=clock,
    )


@pytest.fixture
def consequence_engine(bare_repository, emitter, scheduler, clock):
    return ConsequenceEngine(
        bare_repository,
        DrMarcie(),
        Notifier(bare_repository, emitter),
        scheduler,
        emitter=emitter,
        rng=random.Random(7),
        now=clock,
    )


@pytest.fixture
async def couple(repository, clock):
    couple = await repository.create_couple(101, clock())
    return await repository.join_couple(couple.id, 202)


async def complete_input(service, session_id, user_id, severity=3, emotion="frustrated",
                         trigger="They cancelled our dinner plans at the last minute.",
                         perspective="I had been looking forward to it all week and felt dismissed.",
                         desired="I want us to agree on how to change plans."):
    """Прохождение всего опроса одним партнёром"""
    await service.submit_answer(session_id, user_id, "emotional-state", emotion)
    await service.submit_answer(session_id, user_id, "severity-level", severity)
    if severity >= 4:
        await service.submit_answer(session_id, user_id, "emergency-check", "I can continue")
    await service.submit_answer(session_id, user_id, "trigger-event", trigger)
    await service.submit_answer(session_id, user_id, "your-perspective", perspective)
    return await service.submit_answer(session_id, user_id, "desired-outcome", desired)
