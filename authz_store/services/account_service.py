"""Account lookups used when rebuilding stored principals."""

from __future__ import annotations

from functools import lru_cache
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from authz_store.db.session import get_session_factory
from authz_store.models.account import Account


class AccountLookup(Protocol):
    """Account repository capability consumed by identity reconstruction."""

    async def find_by_email(self, client_id: str, email: str) -> Account | None: ...

    async def find_by_id(self, account_id: str) -> Account | None: ...

    async def save(self, account: Account) -> Account: ...


class AccountRepository:
    """SQLAlchemy-backed account repository; one short session per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def find_by_email(self, client_id: str, email: str) -> Account | None:
        """Fetch the oldest non-deleted account by client and case-insensitive email."""
        statement = (
            select(Account)
            .where(
                Account.client_id == client_id,
                func.lower(Account.email) == email.lower(),
                Account.deleted_at.is_(None),
            )
            .order_by(Account.created_at, Account.id)
        )
        async with self._session_factory() as db_session:
            result = await db_session.execute(statement)
            return result.scalars().first()

    async def find_by_id(self, account_id: str) -> Account | None:
        """Fetch a non-deleted account by primary key."""
        statement = select(Account).where(
            Account.id == account_id,
            Account.deleted_at.is_(None),
        )
        async with self._session_factory() as db_session:
            result = await db_session.execute(statement)
            return result.scalar_one_or_none()

    async def save(self, account: Account) -> Account:
        """Insert or update an account and commit."""
        async with self._session_factory() as db_session:
            try:
                merged = await db_session.merge(account)
                await db_session.flush()
            except Exception:
                await db_session.rollback()
                raise
            await db_session.commit()
            return merged


@lru_cache
def get_account_repository() -> AccountRepository:
    """Build and cache the account repository."""
    return AccountRepository(session_factory=get_session_factory())
