"""Database engine, session factory and declarative base."""

from datetime import datetime, timezone
from functools import lru_cache
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from vodpipeline.core.config import Settings, get_settings


class Base(DeclarativeBase):
    """Declarative base for all models."""


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_engine(settings: Settings) -> AsyncEngine:
    """Create an async engine for the configured database."""
    kwargs = {"echo": settings.DATABASE_ECHO, "pool_pre_ping": True}
    if not settings.DATABASE_URL.startswith("sqlite"):
        kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
    return create_async_engine(settings.DATABASE_URL, **kwargs)


def create_session_maker(
    engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@lru_cache
def get_engine(settings: Optional[Settings] = None) -> AsyncEngine:
    return create_engine(settings or get_settings())


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    return _default_session_maker()


@lru_cache
def _default_session_maker() -> async_sessionmaker[AsyncSession]:
    return create_session_maker(get_engine())


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a database session.

    The session is committed when the request handler returns normally and
    rolled back otherwise.
    """
    async with get_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
