"""
Главный файл для запуска Telegram-бота
"""

import asyncio
import logging
from aiogram import Bot, Dispatcher
from aiogram.fsm.storage.memory import MemoryStorage

from config import (
    BOT_TOKEN, CRISIS_RESOURCES, EMERGENCY_TRIGGER_WORDS, LLM_TIMEOUT_SECONDS, LOG_LEVEL,
    OPENAI_API_KEY, OPENAI_MODEL, OPENAI_REASONING_MODEL, SCREENSAVER_CAPTION_LIMIT,
    SOS_DAILY_LIMIT, SPAM_NOTIFICATION_CAP,
)
from db.database import async_session_maker, init_db
from db.repository import Repository
from handlers import consequences, results, sos, start
from services.consequences import ConsequenceEngine
from services.dr_marcie import DrMarcie
from services.events import CompositeEmitter, KeyedScheduler, LoggingEmitter, Notifier
from services.sos import SOSService
from services.telegram_emitter import TelegramEmitter

# Настройка логирования
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main():
    """Основная функция запуска бота"""
    # Инициализация базы данных
    logger.info("Инициализация базы данных...")
    await init_db()
    logger.info("База данных инициализирована ✓")

    # Создание бота и диспетчера
    bot = Bot(token=BOT_TOKEN)
    storage = MemoryStorage()
    dp = Dispatcher(storage=storage)

    # Сервисы собираются здесь и попадают в хендлеры через workflow_data
    repository = Repository(async_session_maker)
    emitter = CompositeEmitter(LoggingEmitter(), TelegramEmitter(bot))
    notifier = Notifier(repository, emitter)
    scheduler = KeyedScheduler()
    dr_marcie = DrMarcie.from_openai(
        OPENAI_API_KEY, OPENAI_MODEL, OPENAI_REASONING_MODEL, timeout=LLM_TIMEOUT_SECONDS
    )

    dp["repository"] = repository
    dp["sos_service"] = SOSService(
        repository,
        dr_marcie,
        notifier,
        emitter=emitter,
        daily_limit=SOS_DAILY_LIMIT,
        emergency_triggers=EMERGENCY_TRIGGER_WORDS,
        crisis_resources=CRISIS_RESOURCES,
    )
    dp["consequence_engine"] = ConsequenceEngine(
        repository,
        dr_marcie,
        notifier,
        scheduler,
        emitter=emitter,
        spam_cap=SPAM_NOTIFICATION_CAP,
        caption_limit=SCREENSAVER_CAPTION_LIMIT,
    )

    # Подключение роутеров
    dp.include_router(start.router)
    dp.include_router(sos.router)
    dp.include_router(results.router)
    dp.include_router(consequences.router)

    scheduler.start()
    logger.info("Бот запущен ✓")

    # Запуск polling
    try:
        await dp.start_polling(bot, allowed_updates=dp.resolve_used_update_types())
    finally:
        scheduler.shutdown()
        await bot.session.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Бот остановлен")
