"""
Dr. Marcie: генерация ответов персонажа через языковую модель
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from .errors import GenerationFailure

logger = logging.getLogger(__name__)

# Имена бэкендов
PROVIDER_STANDARD = "standard"
PROVIDER_REASONING = "reasoning"
PROVIDER_TEMPLATE = "template"


@dataclass
class PersonaConfig:
    """Настройки персонажа для одного ответа"""
    tone: str = "sweet-savage"  # sweet-savage, supportive, direct, playful, concerned
    sass_level: int = 3  # 1-5
    context: str = "general"  # general, fight-solver, challenge, consequence


@dataclass
class ConversationContext:
    """Контекст разговора"""
    session_type: str = "check-in"  # check-in, fight-solver, challenge, consequence
    current_mood: str = "neutral"
    recent_history: List[str] = field(default_factory=list)
    user_id: Optional[int] = None
    couple_id: Optional[int] = None


@dataclass
class DrMarcieResponse:
    """Ответ Dr. Marcie с извлечёнными полями"""
    message: str
    tone: str
    sass_level: int
    provider: str
    action_items: List[str] = field(default_factory=list)
    follow_up_questions: List[str] = field(default_factory=list)
    fallback: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class OpenAIBackend:
    """Бэкенд на OpenAI Chat Completions"""

    def __init__(self, client: AsyncOpenAI, model: str, max_tokens: int = 800, temperature: float = 0.8):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def complete(self, system_prompt: str, prompt: str) -> str:
        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except OpenAIError as e:
            raise GenerationFailure(f"OpenAI request failed: {e}") from e

        content = completion.choices[0].message.content if completion.choices else None
        return content or ""


TEMPLATE_RESPONSES = {
    "sweet-savage": [
        "Oh honey, we need to talk about this. And by 'talk', I mean I'm going to tell you exactly what's going on here.",
        "Listen sweetie, I've seen this pattern before, and it's not cute. Let's fix this before it gets worse.",
        "Okay, let's be real for a second. This isn't working, and we both know it. Time for some tough love.",
    ],
    "supportive": [
        "I can see you're really trying, and that means everything. Let's work through this together.",
        "You're taking the right steps by being here. That shows real commitment to your relationship.",
        "This is challenging, but you have the strength to work through it. I believe in you both.",
    ],
    "direct": [
        "Here's what needs to happen: you need to stop making excuses and start making changes.",
        "I'm going to be straight with you because that's what you need right now.",
        "No more dancing around the issue. Let's address this head-on.",
    ],
    "playful": [
        "Alright lovebirds, time for some relationship homework! Don't worry, it's the fun kind.",
        "Let's shake things up a bit! I have just the challenge for you two.",
        "Ready to have some fun while fixing your relationship? That's my specialty!",
    ],
    "concerned": [
        "I'm really glad you told me that. Your safety matters more than any argument.",
        "Let's pause for a moment. What you just shared is important, and I want to make sure you're okay.",
        "Thank you for trusting me with this. Before anything else, let's make sure you are safe.",
    ],
}

FALLBACK_RESPONSES = [
    "Hmm, seems like I'm having a moment here. But let's keep going - relationships don't pause for technical difficulties!",
    "Well, that's awkward. Even therapists have off days. What were we talking about?",
    "Oops! Looks like my brain took a little vacation. Where were we in fixing your relationship?",
]

SESSION_GUIDANCE = {
    "fight-solver": (
        "You're helping resolve a conflict. Be direct about who's at fault, what needs to happen, "
        "and don't let anyone off the hook. Use tough love when necessary. Analyze both perspectives "
        "and give clear action steps."
    ),
    "challenge": (
        "You're guiding a therapy game/challenge. Be encouraging but keep them accountable. "
        "Add some playful competition and light teasing. Make it fun but meaningful."
    ),
    "consequence": (
        "You're delivering consequences for missed tasks. Be firm but fair. Explain why this matters "
        "for their relationship growth. Use your sweet-but-savage tone to motivate them."
    ),
}

DEFAULT_GUIDANCE = (
    "You're having a general check-in. Be supportive but probe deeper when you sense they're not "
    "being fully honest. Ask follow-up questions and provide insights."
)

_ACTION_PATTERNS = [
    re.compile(r"\b(?:try|practice|work on|focus on|start|begin)\s+[^.!?\n]+", re.IGNORECASE),
    re.compile(r"\b(?:you should|you need to|i want you to)\s+[^.!?\n]+", re.IGNORECASE),
]
_QUESTION_PATTERN = re.compile(r"[^.!?\n]*\?")


def extract_action_items(text: str, limit: int = 3) -> List[str]:
    """Извлечение пунктов действий из свободного текста"""
    actions = []
    for pattern in _ACTION_PATTERNS:
        for match in pattern.finditer(text):
            item = match.group(0).strip()
            if item and item not in actions:
                actions.append(item)
    return actions[:limit]


def extract_follow_up_questions(text: str, limit: int = 2) -> List[str]:
    """Извлечение уточняющих вопросов"""
    questions = [q.strip() for q in _QUESTION_PATTERN.findall(text)]
    return [q for q in questions if len(q) > 1][:limit]


class DrMarcie:
    """
    Генератор ответов Dr. Marcie

    Бэкенды передаются снаружи (словарь имя -> объект с методом complete),
    чтобы в тестах можно было подставить детерминированные фейки.
    """

    def __init__(
        self,
        backends: Optional[Dict[str, object]] = None,
        default_provider: str = PROVIDER_STANDARD,
        timeout: float = 30.0,
    ):
        self.backends = dict(backends or {})
        self.default_provider = default_provider
        self.timeout = timeout

    @classmethod
    def from_openai(cls, api_key: str, model: str, reasoning_model: str, timeout: float = 30.0):
        """Сборка генератора из настроек OpenAI (без ключа - только шаблоны)"""
        if not api_key:
            logger.warning("OPENAI_API_KEY не задан, Dr. Marcie отвечает шаблонами")
            return cls(timeout=timeout)

        client = AsyncOpenAI(api_key=api_key)
        return cls(
            backends={
                PROVIDER_STANDARD: OpenAIBackend(client, model),
                PROVIDER_REASONING: OpenAIBackend(client, reasoning_model, max_tokens=1200, temperature=0.7),
            },
            timeout=timeout,
        )

    @property
    def is_available(self) -> bool:
        return bool(self.backends)

    def resolve_provider(self, provider: Optional[str]) -> Optional[str]:
        """Имя реально доступного бэкенда (или None, если нет ни одного)"""
        if provider in self.backends:
            return provider
        if self.default_provider in self.backends:
            return self.default_provider
        return next(iter(self.backends), None)

    async def generate(
        self,
        prompt: str,
        context: Optional[ConversationContext] = None,
        persona: Optional[PersonaConfig] = None,
        provider: Optional[str] = None,
        strict: bool = False,
    ) -> DrMarcieResponse:
        """
        Ответ персонажа на prompt

        Args:
            prompt: запрос
            context: контекст разговора
            persona: тон, уровень дерзости, контекст
            provider: желаемый бэкенд (standard / reasoning)
            strict: True - ошибка модели пробрасывается как GenerationFailure,
                False - возвращается шаблонный ответ в образе

        Returns:
            DrMarcieResponse
        """
        context = context or ConversationContext()
        persona = persona or PersonaConfig()

        name = self.resolve_provider(provider)
        if name is None:
            return self.templated_response(persona)

        system_prompt = self.build_system_prompt(persona, context)
        try:
            text = await asyncio.wait_for(
                self.backends[name].complete(system_prompt, prompt),
                timeout=self.timeout,
            )
            if not text.strip():
                raise GenerationFailure("Empty response from language model")
        except asyncio.TimeoutError as e:
            if strict:
                raise GenerationFailure(f"Language model timed out after {self.timeout}s") from e
            logger.warning("Dr. Marcie: таймаут бэкенда %s, отвечаем заглушкой", name)
            return self.fallback_response(persona)
        except GenerationFailure:
            if strict:
                raise
            logger.warning("Dr. Marcie: ошибка бэкенда %s, отвечаем заглушкой", name)
            return self.fallback_response(persona)
        except Exception as e:
            if strict:
                raise GenerationFailure(f"Language model backend error: {e}") from e
            logger.exception("Dr. Marcie: непредвиденная ошибка бэкенда %s, отвечаем заглушкой", name)
            return self.fallback_response(persona)

        return self.parse_response(text.strip(), persona, name)

    def build_system_prompt(self, persona: PersonaConfig, context: ConversationContext) -> str:
        base = (
            'You are Dr. Marcie Liss, a couples therapist with a unique "sweet-but-savage" approach. '
            "You're caring and supportive but also direct, witty, and sometimes sarcastic when needed. "
            "You don't sugarcoat things - you tell couples what they need to hear, not what they want to hear.\n\n"
            "Your personality traits:\n"
            "- Warm but no-nonsense\n"
            "- Playfully sarcastic when appropriate\n"
            "- Encouraging but realistic\n"
            "- Sometimes blunt about uncomfortable truths\n"
            "- Always ultimately supportive of the relationship\n"
            "- Calls out bad behavior directly\n"
            "- Celebrates progress genuinely\n\n"
            f"Current tone: {persona.tone}\n"
            f"Current sass level: {persona.sass_level}/5\n"
            f"Current context: {persona.context}\n"
            f"Session type: {context.session_type}\n"
            f"User's current mood: {context.current_mood}"
        )
        if context.recent_history:
            history = "\n".join(f"- {item}" for item in context.recent_history[-5:])
            base += f"\n\nRecent history:\n{history}"

        guidance = SESSION_GUIDANCE.get(context.session_type, DEFAULT_GUIDANCE)
        return (
            f"{base}\n\n{guidance}\n\n"
            "Respond in character as Dr. Marcie Liss. Keep responses conversational and include "
            "specific actionable advice when appropriate. Match your tone to the sass level and context."
        )

    def parse_response(self, text: str, persona: PersonaConfig, provider: str) -> DrMarcieResponse:
        return DrMarcieResponse(
            message=text,
            tone=persona.tone,
            sass_level=persona.sass_level,
            provider=provider,
            action_items=extract_action_items(text),
            follow_up_questions=extract_follow_up_questions(text),
        )

    def templated_response(self, persona: PersonaConfig) -> DrMarcieResponse:
        """Детерминированный ответ без модели (выбор по тону и уровню дерзости)"""
        options = TEMPLATE_RESPONSES.get(persona.tone, TEMPLATE_RESPONSES["supportive"])
        message = options[persona.sass_level % len(options)]
        return DrMarcieResponse(
            message=message,
            tone=persona.tone,
            sass_level=persona.sass_level,
            provider=PROVIDER_TEMPLATE,
            action_items=extract_action_items(message),
            follow_up_questions=extract_follow_up_questions(message),
            fallback=True,
        )

    def fallback_response(self, persona: PersonaConfig) -> DrMarcieResponse:
        """Ответ в образе при сбое модели"""
        message = FALLBACK_RESPONSES[persona.sass_level % len(FALLBACK_RESPONSES)]
        return DrMarcieResponse(
            message=message,
            tone=persona.tone,
            sass_level=persona.sass_level,
            provider=PROVIDER_TEMPLATE,
            follow_up_questions=["What would you like to talk about?"],
            fallback=True,
        )
