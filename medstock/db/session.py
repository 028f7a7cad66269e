# medstock/db/session.py
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from medstock.core.config import AppSettings
from medstock.db.engine import create_async_engine_safe


def build_engine(settings: AppSettings) -> AsyncEngine:
    return create_async_engine_safe(settings.DATABASE_URL, echo=settings.SQL_ECHO)


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to one engine; callers own both and dispose the engine."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
