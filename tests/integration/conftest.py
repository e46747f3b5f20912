"""Shared integration-test fixtures using Postgres and Redis testcontainers."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Callable, Iterator
from typing import Any

import pytest
from alembic import command
from alembic.config import Config
from redis import asyncio as redis_async
from redis.asyncio.client import Redis
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from testcontainers.postgres import PostgresContainer
from testcontainers.redis import RedisContainer

from docker.errors import DockerException


def _clear_dependency_caches() -> None:
    """Clear all lru-cached factories between test phases."""
    from authz_store.config import get_settings
    from authz_store.core.authorization_store import get_authorization_store, get_redis_client
    from authz_store.core.codec import get_authorization_codec
    from authz_store.db.session import get_engine, get_session_factory
    from authz_store.services.account_reconstructor import get_sso_account_reconstructor
    from authz_store.services.account_service import get_account_repository
    from authz_store.services.client_service import get_registered_client_repository

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()
    get_redis_client.cache_clear()
    get_account_repository.cache_clear()
    get_registered_client_repository.cache_clear()
    get_sso_account_reconstructor.cache_clear()
    get_authorization_codec.cache_clear()
    get_authorization_store.cache_clear()


async def _close_async_client(client: Any) -> None:
    """Close async client instances regardless of redis-py close API version."""
    close = getattr(client, "aclose", None)
    if callable(close):
        await close()
        return

    close = getattr(client, "close", None)
    if callable(close):
        result = close()
        if hasattr(result, "__await__"):
            await result


async def _dispose_async_singletons() -> None:
    """Dispose loop-bound async resources before changing event loops."""
    from authz_store.core.authorization_store import get_redis_client
    from authz_store.db.session import dispose_engine, get_engine

    if get_redis_client.cache_info().currsize:
        await _close_async_client(get_redis_client())
    if get_engine.cache_info().currsize:
        await dispose_engine()


def _redis_connection_url(redis: RedisContainer) -> str:
    """Return a redis:// URL across testcontainers versions."""
    get_url = getattr(redis, "get_connection_url", None)
    if callable(get_url):
        redis_url = get_url()
    else:
        host = redis.get_container_host_ip()
        port = redis.get_exposed_port(6379)
        redis_url = f"redis://{host}:{port}"
    if not redis_url.endswith("/0"):
        redis_url = f"{redis_url}/0"
    return redis_url


def _postgres_async_url(postgres: PostgresContainer) -> str:
    """Return a postgresql+asyncpg URL across testcontainers versions."""
    try:
        # testcontainers>=4 supports explicitly disabling default psycopg2 driver.
        postgres_url = postgres.get_connection_url(driver=None)
    except TypeError:
        postgres_url = postgres.get_connection_url()

    if postgres_url.startswith("postgresql+"):
        postgres_url = "postgresql://" + postgres_url.split("://", 1)[1]

    return postgres_url.replace("postgresql://", "postgresql+asyncpg://", 1)


def _set_env_values(env_values: dict[str, str]) -> Callable[[], None]:
    """Apply env vars and return a restore callback."""
    original = {key: os.environ.get(key) for key in env_values}
    os.environ.update(env_values)

    def _restore() -> None:
        for key, value in original.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    return _restore


@pytest.fixture(scope="session")
def integration_env() -> Iterator[dict[str, str]]:
    """Start Postgres/Redis containers and point settings at them."""
    try:
        postgres = PostgresContainer("postgres:16")
        redis = RedisContainer("redis:7")
        postgres.start()
        redis.start()
    except DockerException as exc:
        if os.environ.get("CI", "").lower() in {"1", "true", "yes"}:
            pytest.fail(f"Docker daemon unavailable in CI for integration tests: {exc}")
        pytest.skip(f"Docker daemon unavailable for integration tests: {exc}")

    database_url = _postgres_async_url(postgres)
    redis_url = _redis_connection_url(redis)

    restore_env = _set_env_values(
        {
            "APP__ENVIRONMENT": "development",
            "APP__LOG_LEVEL": "INFO",
            "DATABASE__URL": database_url,
            "REDIS__URL": redis_url,
            "AUTHORIZATION__KEY_PREFIX": "it:auth:",
            "AUTHORIZATION__IDX_PREFIX": "it:idx",
            "AUTHORIZATION__DEFAULT_CLIENT_ID": "CLIENT001",
        }
    )
    _clear_dependency_caches()

    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(alembic_cfg, "head")

    try:
        yield {"database_url": database_url, "redis_url": redis_url}
    finally:
        try:
            _clear_dependency_caches()
        finally:
            restore_env()
            postgres.stop()
            redis.stop()


@pytest.fixture(scope="function", autouse=True)
async def reset_state(integration_env: dict[str, str]) -> AsyncIterator[None]:
    """Clear identity tables and flush Redis; isolate async singletons per event loop."""
    del integration_env
    from authz_store.core.authorization_store import get_redis_client
    from authz_store.db.session import get_session_factory
    from authz_store.models.account import Account
    from authz_store.models.client import RegisteredClient

    await _dispose_async_singletons()
    _clear_dependency_caches()

    session_factory = get_session_factory()
    async with session_factory() as session:
        await session.execute(delete(Account))
        await session.execute(delete(RegisteredClient))
        await session.commit()

    await get_redis_client().flushdb()
    try:
        yield
    finally:
        await _dispose_async_singletons()
        _clear_dependency_caches()


@pytest.fixture(scope="function")
async def db_session_factory(
    integration_env: dict[str, str],
    reset_state: None,
) -> async_sessionmaker[AsyncSession]:
    """Expose async session factory bound to integration Postgres."""
    del integration_env, reset_state
    from authz_store.db.session import get_session_factory

    return get_session_factory()


@pytest.fixture(scope="function")
async def redis_client(integration_env: dict[str, str]) -> AsyncIterator[Redis]:
    """Raw Redis client for TTL and key assertions."""
    client = redis_async.from_url(integration_env["redis_url"], decode_responses=True)
    try:
        yield client
    finally:
        await _close_async_client(client)


@pytest.fixture(scope="function")
async def registered_client_factory(
    db_session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[str], Any]:
    """Insert registered client rows that stored authorizations can point at."""
    from authz_store.models.client import RegisteredClient

    async def _create(client_id: str) -> RegisteredClient:
        async with db_session_factory() as session:
            row = RegisteredClient(
                id=client_id,
                client_id=client_id,
                client_name=f"{client_id} app",
                redirect_uris=["http://localhost:8000/callback"],
                scopes=["openid", "profile"],
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return row

    return _create
