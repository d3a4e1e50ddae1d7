"""
Конфигурация бота Dr. Marcie
"""

import os
from dotenv import load_dotenv

load_dotenv()

# Telegram Bot Token
BOT_TOKEN = os.getenv("BOT_TOKEN", "your-telegram-token")

# OpenAI: лёгкая модель для повседневных ответов и "тяжёлая" для сложных конфликтов
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_REASONING_MODEL = os.getenv("OPENAI_REASONING_MODEL", "gpt-4o")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))

# Database URL (SQLite для MVP, легко заменить на PostgreSQL)
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./drmarcie.db")
SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() == "true"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# SOS
SOS_DAILY_LIMIT = int(os.getenv("SOS_DAILY_LIMIT", "3"))

EMERGENCY_TRIGGER_WORDS = [
    word.strip().lower()
    for word in os.getenv(
        "EMERGENCY_TRIGGER_WORDS",
        "unsafe,abuse,hurt me,hit me,scared of"
    ).split(",")
    if word.strip()
]

CRISIS_RESOURCES = [
    item.strip()
    for item in os.getenv(
        "CRISIS_RESOURCES",
        "If you are in immediate danger, call your local emergency number.;"
        "US: National Domestic Violence Hotline 1-800-799-7233 (text START to 88788).;"
        "US: 988 Suicide & Crisis Lifeline, call or text 988."
    ).split(";")
    if item.strip()
]

# Последствия
SPAM_NOTIFICATION_CAP = int(os.getenv("SPAM_NOTIFICATION_CAP", "20"))

# Длина подписи к заставке (мобильный экран)
SCREENSAVER_CAPTION_LIMIT = 50
