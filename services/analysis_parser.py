"""
Разбор свободного текста вердикта в структуру анализа

Разбор "best-effort": любое поле, которое не удалось извлечь, получает
значение по умолчанию, исключений наружу не бывает.
"""

import re
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional

DEFAULT_SUMMARY = "Dr. Marcie reviewed both sides of this conflict."
DEFAULT_ROOT_CAUSE = "Communication breakdown and unmet expectations"
DEFAULT_FAULT_EXPLANATION = "Both partners contributed to this conflict"
DEFAULT_COMMUNICATION_BREAKDOWN = "Communication breakdown occurred"
DEFAULT_EMOTIONAL_VALIDATION = "Both partners have valid emotional responses"
DEFAULT_COMMITMENT = "work on better communication"

MAX_ACTIONS = 3

_MODAL = r"(?:needs?\s+to|should|must|has\s+to)"

_APOLOGIZE = rf"{_MODAL}\s+(?:[^.!?]*?\s)?apologi[sz]e"

_FAULT_RE = re.compile(
    r"(\d{1,3}(?:\.\d+)?)\s*(?:%|percent)\s*(?:of\s+the\s+)?(?:at\s+)?(?:fault|responsibility|blame)",
    re.IGNORECASE,
)
_PARTNER_LABEL_RE = re.compile(r"\bpartner\s*([12])\b", re.IGNORECASE)
_SENTENCE_END_RE = re.compile(r"[.!?](?=\s|$)")
_SUMMARY_RE = re.compile(r"(?:in summary|to summarize|summary)[:\s,-]*([^.!?]*[.!?])", re.IGNORECASE)
_ROOT_CAUSE_RE = re.compile(
    r"(?:root cause|underlying issue|real problem)(?:\s+analysis)?[:\s-]*(?:is\s+(?:that\s+)?)?([^.!?]*[.!?])",
    re.IGNORECASE,
)
_FAULT_EXPLANATION_RE = re.compile(r"([^.!?]*\b(?:fault|responsibility|blame)\b[^.!?]*[.!?])", re.IGNORECASE)
_JOINT_RE = re.compile(rf"\b(?:both(?:\s+of\s+you|\s+partners)?|together|jointly)\b[^.!?]*?\b{_MODAL}\s+([^.!?]+)", re.IGNORECASE)
_CHALLENGE_RE = re.compile(r"\b(?:challenge|exercise|practice|activity)\b[:\s-]+([^.!?]*[.!?])", re.IGNORECASE)
_COMMUNICATION_RE = re.compile(r"([^.!?]*\b(?:communication|conversation)\b[^.!?]*[.!?])", re.IGNORECASE)
_VALIDATION_RE = re.compile(r"([^.!?]*\b(?:feel|feelings|emotion|emotions|valid)\b[^.!?]*[.!?])", re.IGNORECASE)
_BOTH_APOLOGIZE_RE = re.compile(rf"\bboth\b[^.!?]*?\b{_APOLOGIZE}", re.IGNORECASE)
_HEADING_RE = re.compile(r"^(?:\d+[.)]\s*)?[A-Z][A-Z /&-]+:\s*")


def _partner_re(partner: int) -> str:
    return rf"\bpartner\s*{partner}\b"


@dataclass
class AnalysisFields:
    """Структурированный вердикт"""
    summary: str = DEFAULT_SUMMARY
    root_cause: str = DEFAULT_ROOT_CAUSE
    partner1_fault: int = 50
    partner2_fault: int = 50
    fault_explanation: str = DEFAULT_FAULT_EXPLANATION
    partner1_actions: List[str] = field(default_factory=list)
    partner2_actions: List[str] = field(default_factory=list)
    joint_actions: List[str] = field(default_factory=list)
    partner1_should_apologize: bool = False
    partner2_should_apologize: bool = False
    partner1_commitment: str = DEFAULT_COMMITMENT
    partner2_commitment: str = DEFAULT_COMMITMENT
    healing_challenges: List[str] = field(default_factory=list)
    communication_breakdown: str = DEFAULT_COMMUNICATION_BREAKDOWN
    emotional_validation: str = DEFAULT_EMOTIONAL_VALIDATION
    degraded_fields: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_fault(first: float, second: float):
    """
    Приводим пару процентов к сумме 100

    partner2 всегда выводится из partner1, поэтому сумма ровно 100.
    """
    first = max(0.0, first)
    second = max(0.0, second)
    total = first + second
    if total <= 0:
        return 50, 50
    partner1 = int(round(100 * first / total))
    partner1 = min(100, max(0, partner1))
    return partner1, 100 - partner1


def _clean(sentence: str) -> str:
    sentence = sentence.replace("**", "").strip().strip("*#-: ").strip()
    return _HEADING_RE.sub("", sentence).strip()


def _first_sentence(text: str) -> str:
    # пропускаем нумерацию и заголовки вроде "1."
    for match in re.finditer(r"[^.!?]+[.!?]", text):
        sentence = _clean(match.group(0))
        if len(sentence.split()) >= 3:
            return sentence
    return ""


def _fault_owner(text: str, position: int) -> Optional[int]:
    """Ближайшая метка "Partner N" перед position в том же предложении"""
    boundaries = [match.end() for match in _SENTENCE_END_RE.finditer(text, 0, position)]
    start = boundaries[-1] if boundaries else 0
    labels = _PARTNER_LABEL_RE.findall(text, start, position)
    return int(labels[-1]) if labels else None


def extract_fault(text: str):
    """
    Проценты вины (None, если найдено меньше двух значений)

    Число относится к партнёру, названному перед ним в том же предложении;
    порядок в тексте решает только для чисел без метки.
    """
    owned = {}
    unowned = []
    for match in _FAULT_RE.finditer(text):
        value = float(match.group(1))
        partner = _fault_owner(text, match.start())
        if partner is not None and partner not in owned:
            owned[partner] = value
        else:
            unowned.append(value)
    for partner in (1, 2):
        if partner not in owned and unowned:
            owned[partner] = unowned.pop(0)
    if len(owned) < 2:
        return None
    return normalize_fault(owned[1], owned[2])


def extract_partner_actions(text: str, partner: int) -> List[str]:
    pattern = re.compile(rf"{_partner_re(partner)}[^.!?]*?\b{_MODAL}\s+([^.!?]+)", re.IGNORECASE)
    actions = []
    for match in pattern.finditer(text):
        action = _clean(match.group(1))
        if action and action not in actions:
            actions.append(action)
    return actions[:MAX_ACTIONS]


def extract_joint_actions(text: str) -> List[str]:
    actions = []
    for match in _JOINT_RE.finditer(text):
        action = _clean(match.group(1))
        if action and action not in actions:
            actions.append(action)
    return actions[:MAX_ACTIONS]


def should_apologize(text: str, partner: int) -> bool:
    pattern = re.compile(rf"{_partner_re(partner)}[^.!?]*?\b{_APOLOGIZE}", re.IGNORECASE)
    return bool(pattern.search(text) or _BOTH_APOLOGIZE_RE.search(text))


def extract_commitment(text: str, partner: int) -> Optional[str]:
    pattern = re.compile(rf"{_partner_re(partner)}[^.!?]*?\b(?:will|commit(?:s)?\s+to|promise(?:s)?\s+to)\s+([^.!?]+)", re.IGNORECASE)
    match = pattern.search(text)
    return _clean(match.group(1)) if match else None


def extract_healing_challenges(text: str) -> List[str]:
    titles = []
    for match in _CHALLENGE_RE.finditer(text):
        title = _clean(match.group(1))
        if title and title not in titles:
            titles.append(title)
    return titles[:MAX_ACTIONS]


def _search_sentence(pattern, text: str) -> Optional[str]:
    match = pattern.search(text)
    if not match:
        return None
    sentence = _clean(match.group(1))
    return sentence or None


def parse_analysis(text: str) -> AnalysisFields:
    """
    Разбор ответа модели в AnalysisFields

    Args:
        text: свободный текст вердикта

    Returns:
        AnalysisFields: поля, которые не удалось извлечь, перечислены в degraded_fields
    """
    fields = AnalysisFields()
    text = text or ""

    summary = _search_sentence(_SUMMARY_RE, text)
    if summary is None and text.strip():
        summary = _first_sentence(text) or None
    if summary:
        fields.summary = summary
    else:
        fields.degraded_fields.append("summary")

    root_cause = _search_sentence(_ROOT_CAUSE_RE, text)
    if root_cause:
        fields.root_cause = root_cause
    else:
        fields.degraded_fields.append("root_cause")

    fault = extract_fault(text)
    if fault:
        fields.partner1_fault, fields.partner2_fault = fault
    else:
        fields.degraded_fields.append("fault")

    explanation = _search_sentence(_FAULT_EXPLANATION_RE, text)
    if explanation:
        fields.fault_explanation = explanation
    else:
        fields.degraded_fields.append("fault_explanation")

    fields.partner1_actions = extract_partner_actions(text, 1)
    fields.partner2_actions = extract_partner_actions(text, 2)
    fields.joint_actions = extract_joint_actions(text)
    if not (fields.partner1_actions or fields.partner2_actions or fields.joint_actions):
        fields.degraded_fields.append("actions")

    fields.partner1_should_apologize = should_apologize(text, 1)
    fields.partner2_should_apologize = should_apologize(text, 2)
    fields.partner1_commitment = extract_commitment(text, 1) or DEFAULT_COMMITMENT
    fields.partner2_commitment = extract_commitment(text, 2) or DEFAULT_COMMITMENT

    fields.healing_challenges = extract_healing_challenges(text)

    breakdown = _search_sentence(_COMMUNICATION_RE, text)
    if breakdown:
        fields.communication_breakdown = breakdown
    else:
        fields.degraded_fields.append("communication_breakdown")

    validation = _search_sentence(_VALIDATION_RE, text)
    if validation:
        fields.emotional_validation = validation
    else:
        fields.degraded_fields.append("emotional_validation")

    return fields


def apology_reason(trigger_event: str) -> str:
    return "what I said" if "said" in (trigger_event or "").lower() else "my actions"


def build_apology_scripts(fields: AnalysisFields, partner1_input, partner2_input) -> Dict[str, str]:
    """
    Сценарии извинений только для тех, кому нужно извиниться

    Используется эмоция другого партнёра и триггер извиняющегося.
    """
    scripts = {}
    if fields.partner1_should_apologize:
        scripts["partner1"] = (
            f"I'm sorry for {apology_reason(partner1_input.trigger_event)}. "
            f"I understand how that made you feel {partner2_input.emotional_state}. "
            f"I will {fields.partner1_commitment} going forward."
        )
    if fields.partner2_should_apologize:
        scripts["partner2"] = (
            f"I'm sorry for {apology_reason(partner2_input.trigger_event)}. "
            f"I understand how that made you feel {partner1_input.emotional_state}. "
            f"I will {fields.partner2_commitment} going forward."
        )
    return scripts


def healing_challenge_categories(fields: AnalysisFields) -> List[str]:
    """Категории заданий для восстановления (не больше двух)"""
    categories = []
    root_cause = fields.root_cause.lower()
    if "communication" in root_cause:
        categories.append("communication")
    if "trust" in root_cause:
        categories.append("trust")
    if fields.partner1_should_apologize or fields.partner2_should_apologize:
        categories.append("conflict-resolution")
    if not categories:
        categories.append("communication")
    return categories[:2]
