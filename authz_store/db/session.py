"""Async SQLAlchemy engine and session factory for the identity repositories."""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from authz_store.config import get_settings


@lru_cache
def get_engine() -> AsyncEngine:
    """Build and cache the async SQLAlchemy engine."""
    settings = get_settings()
    return create_async_engine(settings.database.url, pool_pre_ping=True)


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Repositories open one short-lived session per call from this factory."""
    return async_sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)


async def dispose_engine() -> None:
    """Close pooled connections; required before switching event loops."""
    await get_engine().dispose()
