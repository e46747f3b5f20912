"""Registered client lookups needed before an authorization can be rebuilt."""

from __future__ import annotations

from functools import lru_cache
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from authz_store.db.session import get_session_factory
from authz_store.models.client import RegisteredClient


class RegisteredClientLookup(Protocol):
    """Client registration capability consumed by the codec."""

    async def find_by_id(self, registered_client_id: str) -> RegisteredClient | None: ...


class RegisteredClientRepository:
    """SQLAlchemy-backed registered client lookup."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def find_by_id(self, registered_client_id: str) -> RegisteredClient | None:
        """Fetch a non-deleted registered client by primary key."""
        statement = select(RegisteredClient).where(
            RegisteredClient.id == registered_client_id,
            RegisteredClient.deleted_at.is_(None),
        )
        async with self._session_factory() as db_session:
            result = await db_session.execute(statement)
            return result.scalar_one_or_none()


@lru_cache
def get_registered_client_repository() -> RegisteredClientRepository:
    """Build and cache the registered client repository."""
    return RegisteredClientRepository(session_factory=get_session_factory())
