"""
Подключение к базе данных
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from .models import Base
from .seed import seed_defaults
from config import DATABASE_URL, SQL_ECHO


def build_engine(url: str = DATABASE_URL, echo: bool = SQL_ECHO) -> AsyncEngine:
    """Создание асинхронного движка"""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo, future=True, poolclass=NullPool)
    return create_async_engine(url, echo=echo, future=True, pool_pre_ping=True)


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    """Фабрика сессий"""
    return async_sessionmaker(
        engine,
        expire_on_commit=False,
        class_=AsyncSession
    )


engine = build_engine()
async_session_maker = build_session_maker(engine)


async def init_db(target_engine: AsyncEngine = None, seed: bool = True):
    """Инициализация базы данных (создание таблиц и стартовых данных)"""
    target_engine = target_engine or engine
    async with target_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if seed:
        await seed_defaults(build_session_maker(target_engine))
