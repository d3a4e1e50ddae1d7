"""
Адаптивный опросник SOS
"""

import operator
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import ValidationError

EMOTIONS = ("angry", "hurt", "confused", "frustrated", "sad")

QUESTION_TEXT = "text"
QUESTION_SCALE = "scale"
QUESTION_CHOICE = "choice"
QUESTION_EMOTION = "emotion"

SCALE_MIN = 1
SCALE_MAX = 5
MAX_TEXT_LENGTH = 4000

# Вопрос -> поле SOSInput
INPUT_FIELDS = {
    "emotional-state": "emotional_state",
    "severity-level": "severity_level",
    "trigger-event": "trigger_event",
    "your-perspective": "perspective",
    "desired-outcome": "desired_outcome",
}

_OPERATORS = {
    ">=": operator.ge,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    "<": operator.lt,
}
_CONDITION_RE = re.compile(r"^\s*value\s*(>=|<=|==|!=|>|<)\s*(.+?)\s*$")


def evaluate_condition(condition: str, value) -> bool:
    """
    Условие вида "value >= 4" над ответом

    Числовое сравнение, если обе стороны числа, иначе строковое
    (без учёта регистра). Непонятное условие считается ложным.
    """
    match = _CONDITION_RE.match(condition or "")
    if not match:
        return False
    op = _OPERATORS[match.group(1)]
    expected = match.group(2).strip("'\"")
    try:
        return op(float(value), float(expected))
    except (TypeError, ValueError):
        return op(str(value).lower(), expected.lower())


@dataclass(frozen=True)
class FollowUp:
    condition: str
    next_question: str


@dataclass(frozen=True)
class AdaptiveLogic:
    emotional_triggers: Tuple[str, ...] = ()
    escalation_questions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Question:
    id: str
    text: str
    type: str
    required: bool = True
    options: Tuple[str, ...] = ()
    follow_up: Optional[FollowUp] = None
    adaptive_logic: Optional[AdaptiveLogic] = None
    main_path: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "question": self.text,
            "type": self.type,
            "required": self.required,
            "options": list(self.options),
        }


class QuestionFlow:
    """
    Порядок вопросов с переходами

    Вопросы вне основного пути (main_path=False) достижимы только через
    follow_up или эскалацию; после них опрос возвращается к следующему
    вопросу основного пути.
    """

    def __init__(self, questions: Sequence[Question]):
        self.questions = list(questions)
        self._by_id: Dict[str, Question] = {q.id: q for q in self.questions}
        self.main_path = [q.id for q in self.questions if q.main_path]

    def __len__(self):
        return len(self.main_path)

    def first(self) -> Question:
        return self._by_id[self.main_path[0]]

    def get(self, question_id: str) -> Question:
        try:
            return self._by_id[question_id]
        except KeyError:
            raise ValidationError(f"Unknown question: {question_id}") from None

    def has(self, question_id: str) -> bool:
        return question_id in self._by_id

    def next_on_main_path(self, question_id: str) -> Optional[str]:
        """Следующий вопрос основного пути после question_id"""
        if question_id not in self.main_path:
            return None
        index = self.main_path.index(question_id)
        return self.main_path[index + 1] if index + 1 < len(self.main_path) else None

    def branch_target(self, question: Question, value) -> Optional[str]:
        """Цель ветвления, если условие follow_up выполнено"""
        if question.follow_up and evaluate_condition(question.follow_up.condition, value):
            if self.has(question.follow_up.next_question):
                return question.follow_up.next_question
        return None

    def escalation_target(self, question: Question) -> Optional[str]:
        """Первый вопрос эскалации, который есть в этом опроснике"""
        if not question.adaptive_logic:
            return None
        for question_id in question.adaptive_logic.escalation_questions:
            if self.has(question_id):
                return question_id
        return None

    def progress(self, answers: Dict[str, object]) -> float:
        answered = sum(1 for question_id in self.main_path if question_id in answers)
        return round(100 * answered / len(self.main_path), 1) if self.main_path else 100.0

    def validate(self, question: Question, answer):
        """
        Проверка и нормализация ответа по типу вопроса

        Raises:
            ValidationError: ответ пустой или не подходит по типу
        """
        if answer is None or (isinstance(answer, str) and not answer.strip()):
            if question.required:
                raise ValidationError("This question needs an answer before we can move on.")
            return None

        if question.type in (QUESTION_EMOTION, QUESTION_CHOICE):
            if not isinstance(answer, str):
                raise ValidationError(f"Please choose one of: {', '.join(question.options)}.")
            for option in question.options:
                if option.lower() == answer.strip().lower():
                    return option
            raise ValidationError(f"Please choose one of: {', '.join(question.options)}.")

        if question.type == QUESTION_SCALE:
            if isinstance(answer, bool):
                raise ValidationError(f"Please answer with a number from {SCALE_MIN} to {SCALE_MAX}.")
            try:
                value = int(str(answer).strip())
            except ValueError:
                raise ValidationError(f"Please answer with a number from {SCALE_MIN} to {SCALE_MAX}.") from None
            if not SCALE_MIN <= value <= SCALE_MAX:
                raise ValidationError(f"Please answer with a number from {SCALE_MIN} to {SCALE_MAX}.")
            return value

        if not isinstance(answer, str):
            raise ValidationError("Please answer in your own words.")
        text = answer.strip()
        if len(text) > MAX_TEXT_LENGTH:
            raise ValidationError(f"Please keep your answer under {MAX_TEXT_LENGTH} characters.")
        return text

    def matched_triggers(self, question: Question, answer, global_triggers: Sequence[str] = ()) -> List[str]:
        """Слова-триггеры, найденные в ответе (подстрока без учёта регистра)"""
        if not isinstance(answer, str):
            return []
        triggers = list(question.adaptive_logic.emotional_triggers) if question.adaptive_logic else []
        if question.type == QUESTION_TEXT:
            triggers.extend(global_triggers)
        lowered = answer.lower()
        matched = []
        for trigger in triggers:
            trigger = trigger.lower()
            if trigger and trigger in lowered and trigger not in matched:
                matched.append(trigger)
        return matched

    def assemble_input(self, answers: Dict[str, object]) -> Tuple[dict, dict]:
        """
        Сборка полей SOSInput из накопленных ответов

        Returns:
            (поля SOSInput, ответы вне основного пути)

        Raises:
            ValidationError: пропущен обязательный ответ
        """
        missing = [
            question_id for question_id in self.main_path
            if self._by_id[question_id].required and answers.get(question_id) in (None, "")
        ]
        if missing:
            raise ValidationError(f"Missing required answers: {', '.join(missing)}")

        fields = {
            field_name: answers[question_id]
            for question_id, field_name in INPUT_FIELDS.items()
            if question_id in answers
        }
        supplementary = {
            question_id: value for question_id, value in answers.items()
            if question_id not in INPUT_FIELDS
        }
        return fields, supplementary


def fight_solver_flow() -> QuestionFlow:
    """Новый экземпляр опросника для SOS-сессии"""
    return QuestionFlow([
        Question(
            id="emotional-state",
            text="First, let's check in with your emotions. How are you feeling right now?",
            type=QUESTION_EMOTION,
            options=EMOTIONS,
        ),
        Question(
            id="severity-level",
            text="On a scale of 1-5, how serious is this conflict?",
            type=QUESTION_SCALE,
            follow_up=FollowUp(condition="value >= 4", next_question="emergency-check"),
        ),
        Question(
            id="emergency-check",
            text="This seems intense. Do you feel safe and able to continue, or do you need immediate support?",
            type=QUESTION_CHOICE,
            options=("I can continue", "I need immediate support", "I want to pause this"),
            adaptive_logic=AdaptiveLogic(emotional_triggers=("immediate support",)),
            main_path=False,
        ),
        Question(
            id="trigger-event",
            text="What specifically triggered this conflict? Be as detailed as you can.",
            type=QUESTION_TEXT,
            adaptive_logic=AdaptiveLogic(
                emotional_triggers=("betrayal", "lying", "cheating", "abuse"),
                escalation_questions=("safety-check", "support-network"),
            ),
        ),
        Question(
            id="your-perspective",
            text="Now tell me your side of the story. What happened from your perspective?",
            type=QUESTION_TEXT,
        ),
        Question(
            id="desired-outcome",
            text="What would you like to see happen to resolve this? What's your ideal outcome?",
            type=QUESTION_TEXT,
        ),
        Question(
            id="safety-check",
            text="I need to ask - do you feel physically and emotionally safe in this relationship?",
            type=QUESTION_CHOICE,
            options=("Yes, completely safe", "Mostly safe", "Sometimes unsafe", "No, I don't feel safe"),
            main_path=False,
        ),
    ])
