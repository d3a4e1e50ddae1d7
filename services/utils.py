"""
Вспомогательные функции
"""

import re
from datetime import datetime, time


def generate_join_link(bot_username: str, couple_id: int) -> str:
    """
    Генерация deep link для присоединения партнёра к паре

    Args:
        bot_username: username бота
        couple_id: ID пары

    Returns:
        str: ссылка вида https://t.me/<bot>?start=join_<id>
    """
    return f"https://t.me/{bot_username}?start=join_{couple_id}"


def parse_join_payload(payload: str):
    """
    Разбор параметра deep link

    Returns:
        int | None: ID пары или None, если формат неверный
    """
    match = re.fullmatch(r"join_(\d+)", payload or "")
    return int(match.group(1)) if match else None


def start_of_day(moment: datetime) -> datetime:
    """Начало календарных суток для переданного момента"""
    return datetime.combine(moment.date(), time.min, tzinfo=moment.tzinfo)


def parse_clock(value: str) -> time:
    """'HH:MM' -> time"""
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def in_exemption_window(moment: datetime, windows: list) -> bool:
    """
    Проверка, попадает ли момент в одно из окон тишины

    Окно может переходить через полночь (например 22:00-07:00).
    """
    current = moment.time()
    for window in windows or []:
        start = parse_clock(window["start"])
        end = parse_clock(window["end"])
        if start <= end:
            if start <= current < end:
                return True
        elif current >= start or current < end:
            return True
    return False


def strip_markdown(text: str) -> str:
    """Убираем markdown-символы из ответа модели"""
    return text.replace("**", "").replace("*", "").replace("#", "").replace("`", "")


def truncate(text: str, limit: int) -> str:
    """Обрезка строки до limit символов"""
    text = text.strip()
    return text if len(text) <= limit else text[:limit].rstrip()
