"""Unit tests for the Redis authorization store and its token indexes."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from hashlib import sha256
from typing import Any

import pytest
from redis.exceptions import RedisError

from authz_store.core.authorization_store import (
    AuthorizationStoreError,
    RedisAuthorizationStore,
    seconds_until,
)
from authz_store.core.codec import AuthorizationCodec, MissingRegisteredClientError
from authz_store.core.coercion import AttributeCoercer
from authz_store.core.extractors import default_extractor_chain
from authz_store.core.keyspace import AuthorizationKeySpace
from authz_store.models.account import Account
from authz_store.models.client import RegisteredClient
from authz_store.schemas.authorization import AccessToken, Authorization, Token
from authz_store.services.account_reconstructor import SsoAccountReconstructor

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def _digest(raw_token: str) -> str:
    return sha256(raw_token.encode("utf-8")).hexdigest()


class _FakePipeline:
    """Queues commands and applies them together on execute."""

    def __init__(self, redis: _FakeRedis) -> None:
        self._redis = redis
        self._commands: list[tuple[Any, ...]] = []

    async def __aenter__(self) -> _FakePipeline:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self._commands.clear()

    def setex(self, key: str, ttl: int, value: str) -> _FakePipeline:
        """Queue a SETEX."""
        self._commands.append(("setex", key, ttl, value))
        return self

    def delete(self, *keys: str) -> _FakePipeline:
        """Queue a DEL."""
        self._commands.append(("delete", *keys))
        return self

    async def execute(self) -> list[Any]:
        """Apply every queued command or none of them."""
        if self._redis.fail_execute:
            raise RedisError("redis unavailable")
        results: list[Any] = []
        for command, *args in self._commands:
            if command == "setex":
                key, ttl, value = args
                results.append(self._redis.apply_setex(key, ttl, value))
            else:
                results.append(self._redis.apply_delete(*args))
        self._redis.transactions.append(list(self._commands))
        return results


class _FakeRedis:
    """Minimal async Redis stub used for authorization store unit tests."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.transactions: list[list[tuple[Any, ...]]] = []
        self.evals: list[tuple[str, str]] = []
        self.fail_get = False
        self.fail_execute = False
        self.yield_on_get = False

    async def get(self, key: str) -> str | None:
        """Return stored value for key."""
        if self.fail_get:
            raise RedisError("redis unavailable")
        value = self.values.get(key)
        if self.yield_on_get:
            await asyncio.sleep(0)
        return value

    async def delete(self, *keys: str) -> int:
        """Delete keys."""
        return self.apply_delete(*keys)

    async def eval(self, script: str, numkeys: int, *keys_and_args: str) -> int:
        """Run the conditional index delete atomically."""
        assert numkeys == 2
        auth_key, index_key = keys_and_args
        self.evals.append((auth_key, index_key))
        if auth_key in self.values:
            return 0
        return self.apply_delete(index_key)

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        """Return a transactional pipeline."""
        assert transaction is True
        return _FakePipeline(self)

    def apply_setex(self, key: str, ttl: int, value: str) -> bool:
        if ttl <= 0:
            raise RedisError("invalid expire time in 'setex' command")
        self.values[key] = value
        self.ttls[key] = ttl
        return True

    def apply_delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed


class _AccountRepositoryStub:
    """In-memory account repository."""

    def __init__(self) -> None:
        self.accounts: dict[str, Account] = {}

    async def find_by_email(self, client_id: str, email: str) -> Account | None:
        """Match on client and email."""
        for account in self.accounts.values():
            if account.client_id == client_id and account.email == email:
                return account
        return None

    async def find_by_id(self, account_id: str) -> Account | None:
        """Return account by id."""
        return self.accounts.get(account_id)

    async def save(self, account: Account) -> Account:
        """Persist account."""
        self.accounts[account.id] = account
        return account


class _ClientRepositoryStub:
    """Registered client lookup backed by a dict."""

    def __init__(self, *client_ids: str) -> None:
        self.clients = {
            client_id: RegisteredClient(id=client_id, client_id=client_id, client_name=client_id)
            for client_id in client_ids
        }

    async def find_by_id(self, registered_client_id: str) -> RegisteredClient | None:
        """Return client by id."""
        return self.clients.get(registered_client_id)


def _store(
    redis: _FakeRedis,
    clients: _ClientRepositoryStub | None = None,
) -> RedisAuthorizationStore:
    """Store wired to fakes with a frozen clock."""
    coercer = AttributeCoercer(
        reconstructor=SsoAccountReconstructor(
            extractor_chain=default_extractor_chain(), default_client_id="CLIENT001"
        ),
        accounts=_AccountRepositoryStub(),
    )
    codec = AuthorizationCodec(coercer=coercer, clients=clients or _ClientRepositoryStub("web"))
    return RedisAuthorizationStore(
        redis_client=redis,
        codec=codec,
        keyspace=AuthorizationKeySpace(),
        state_ttl_seconds=600,
        default_ttl_seconds=3600,
        now=lambda: NOW,
    )


def _authorization(authorization_id: str = "authz-1", **slots: Any) -> Authorization:
    """Build an authorization with only the given token slots."""
    return Authorization(
        id=authorization_id,
        registered_client_id="web",
        principal_name="jdoe@example.com",
        authorization_grant_type="authorization_code",
        **slots,
    )


def _access_token(value: str, lifetime: timedelta = timedelta(hours=1)) -> AccessToken:
    return AccessToken(token_value=value, issued_at=NOW, expires_at=NOW + lifetime)


@pytest.mark.asyncio
async def test_save_access_token_writes_body_and_hashed_index() -> None:
    """An access-only authorization produces one body and one index with equal TTLs."""
    redis = _FakeRedis()
    store = _store(redis)

    await store.save(_authorization(access_token=_access_token("A")))

    index_key = f"app:idx:access:{_digest('A')}"
    assert set(redis.values) == {"app:auth:authz-1", index_key}
    assert redis.ttls["app:auth:authz-1"] == 3600
    assert redis.ttls[index_key] == 3600
    assert redis.values[index_key] == "authz-1"
    assert len(redis.transactions) == 1

    found = await store.find_by_token("A", "access_token")
    assert found is not None
    assert found.id == "authz-1"


@pytest.mark.asyncio
async def test_body_ttl_follows_latest_expiring_token() -> None:
    """Body outlives its shortest token; each index keeps its own TTL."""
    redis = _FakeRedis()
    store = _store(redis)

    await store.save(
        _authorization(
            state="s-1",
            authorization_code=Token(token_value="C", expires_at=NOW + timedelta(minutes=5)),
            access_token=_access_token("A"),
            refresh_token=Token(token_value="R", expires_at=NOW + timedelta(days=1)),
        )
    )

    assert redis.ttls["app:auth:authz-1"] == 86400
    assert redis.ttls["app:idx:state:s-1"] == 600
    assert redis.ttls[f"app:idx:code:{_digest('C')}"] == 300
    assert redis.ttls[f"app:idx:access:{_digest('A')}"] == 3600
    assert redis.ttls[f"app:idx:refresh:{_digest('R')}"] == 86400


@pytest.mark.asyncio
async def test_authorization_without_tokens_uses_default_ttl() -> None:
    """No expiry information falls back to the configured default."""
    redis = _FakeRedis()
    store = _store(redis)

    await store.save(_authorization(state="s-2"))

    assert redis.ttls["app:auth:authz-1"] == 3600
    assert redis.ttls["app:idx:state:s-2"] == 600


@pytest.mark.asyncio
async def test_token_without_expiry_index_lives_as_long_as_body() -> None:
    """Indexes for tokens with no expiry reuse the body TTL."""
    redis = _FakeRedis()
    store = _store(redis)

    await store.save(
        _authorization(
            access_token=_access_token("A", timedelta(minutes=30)),
            refresh_token=Token(token_value="R"),
        )
    )

    assert redis.ttls["app:auth:authz-1"] == 1800
    assert redis.ttls[f"app:idx:refresh:{_digest('R')}"] == 1800


@pytest.mark.asyncio
async def test_expired_token_index_is_deleted_not_written() -> None:
    """Expired tokens never produce a non-positive TTL."""
    redis = _FakeRedis()
    expired_key = f"app:idx:code:{_digest('C')}"
    redis.values[expired_key] = "authz-1"
    store = _store(redis)

    await store.save(
        _authorization(
            authorization_code=Token(token_value="C", expires_at=NOW - timedelta(seconds=5)),
            access_token=_access_token("A"),
        )
    )

    assert expired_key not in redis.values
    assert all(ttl >= 1 for ttl in redis.ttls.values())
    assert await store.find_by_token("C", "code") is None


@pytest.mark.asyncio
async def test_fully_expired_authorization_gets_minimum_body_ttl() -> None:
    """Body TTL is clamped to one second."""
    redis = _FakeRedis()
    store = _store(redis)

    await store.save(_authorization(access_token=_access_token("A", timedelta(seconds=-30))))

    assert redis.ttls == {"app:auth:authz-1": 1}


@pytest.mark.asyncio
async def test_token_rotation_removes_previous_index() -> None:
    """Replacing the access token drops the old index in the same transaction."""
    redis = _FakeRedis()
    store = _store(redis)
    await store.save(_authorization(access_token=_access_token("A1")))

    await store.save(_authorization(access_token=_access_token("A2")))

    assert f"app:idx:access:{_digest('A1')}" not in redis.values
    assert redis.values[f"app:idx:access:{_digest('A2')}"] == "authz-1"
    assert await store.find_by_token("A1") is None
    rotated = await store.find_by_token("A2")
    assert rotated is not None
    assert rotated.access_token is not None
    assert rotated.access_token.token_value == "A2"
    assert ("delete", f"app:idx:access:{_digest('A1')}") in redis.transactions[-1]


@pytest.mark.asyncio
async def test_untyped_lookup_prefers_state_over_access_token() -> None:
    """State is probed first when the same string indexes two authorizations."""
    redis = _FakeRedis()
    store = _store(redis)
    await store.save(_authorization("authz-state", state="collide"))
    await store.save(_authorization("authz-access", access_token=_access_token("collide")))

    found = await store.find_by_token("collide")

    assert found is not None
    assert found.id == "authz-state"
    typed = await store.find_by_token("collide", "access_token")
    assert typed is not None
    assert typed.id == "authz-access"


@pytest.mark.asyncio
async def test_unsupported_token_type_returns_none() -> None:
    """Device and user codes have no index."""
    redis = _FakeRedis()
    store = _store(redis)
    await store.save(_authorization(access_token=_access_token("A")))

    assert await store.find_by_token("A", "device_code") is None
    assert await store.find_by_token("A", "user_code") is None


@pytest.mark.asyncio
async def test_remove_deletes_body_and_all_indexes() -> None:
    """Nothing is left behind after remove."""
    redis = _FakeRedis()
    store = _store(redis)
    authorization = _authorization(
        state="s-3",
        access_token=_access_token("A"),
        refresh_token=Token(token_value="R", expires_at=NOW + timedelta(days=1)),
    )
    await store.save(authorization)

    await store.remove(authorization)

    assert redis.values == {}
    assert await store.find_by_id("authz-1") is None
    assert await store.find_by_token("R") is None


@pytest.mark.asyncio
async def test_dangling_index_is_removed_on_lookup() -> None:
    """An index whose body vanished resolves to None and is cleaned up."""
    redis = _FakeRedis()
    store = _store(redis)
    await store.save(_authorization(access_token=_access_token("A")))
    del redis.values["app:auth:authz-1"]

    assert await store.find_by_token("A") is None
    assert f"app:idx:access:{_digest('A')}" not in redis.values


@pytest.mark.asyncio
async def test_dangling_cleanup_keeps_index_rewritten_by_concurrent_save() -> None:
    """A save landing between the lookup and the cleanup keeps its fresh index."""
    redis = _FakeRedis()
    index_key = f"app:idx:access:{_digest('A')}"
    redis.values[index_key] = "authz-1"
    store = _store(redis)
    redis.yield_on_get = True

    lookup, _ = await asyncio.gather(
        store.find_by_token("A", "access_token"),
        store.save(_authorization(access_token=_access_token("A"))),
    )

    assert lookup is None
    assert redis.evals == [("app:auth:authz-1", index_key)]
    assert "app:auth:authz-1" in redis.values
    assert redis.values[index_key] == "authz-1"
    redis.yield_on_get = False
    found = await store.find_by_token("A")
    assert found is not None
    assert found.id == "authz-1"


@pytest.mark.asyncio
async def test_remove_with_stale_copy_clears_rotated_indexes() -> None:
    """Removing a pre-rotation copy also drops the stored body's current indexes."""
    redis = _FakeRedis()
    store = _store(redis)
    stale_copy = _authorization(access_token=_access_token("A1"))
    await store.save(stale_copy)
    await store.save(
        _authorization(
            access_token=_access_token("A2"),
            refresh_token=Token(token_value="R2", expires_at=NOW + timedelta(days=1)),
        )
    )

    await store.remove(stale_copy)

    assert redis.values == {}
    assert await store.find_by_token("A2") is None
    assert await store.find_by_token("R2", "refresh_token") is None


@pytest.mark.asyncio
async def test_undecodable_body_is_reported_as_absent() -> None:
    """Corrupt documents degrade to None instead of raising."""
    redis = _FakeRedis()
    redis.values["app:auth:broken"] = '{"id": "broken", '
    redis.values[f"app:idx:access:{_digest('A')}"] = "broken"
    store = _store(redis)

    assert await store.find_by_id("broken") is None
    assert await store.find_by_token("A") is None


@pytest.mark.asyncio
async def test_corrupt_previous_body_does_not_block_save() -> None:
    """A malformed stored body is overwritten without a stale-index scan."""
    redis = _FakeRedis()
    redis.values["app:auth:authz-1"] = "not json"
    store = _store(redis)

    await store.save(_authorization(access_token=_access_token("A")))

    found = await store.find_by_id("authz-1")
    assert found is not None
    assert found.access_token is not None


@pytest.mark.asyncio
async def test_missing_registered_client_propagates_from_lookup() -> None:
    """Client resolution failures are configuration errors, not absent records."""
    redis = _FakeRedis()
    store = _store(redis)
    await store.save(_authorization(access_token=_access_token("A")))
    orphaned = _store(redis, clients=_ClientRepositoryStub())

    with pytest.raises(MissingRegisteredClientError):
        await orphaned.find_by_id("authz-1")


@pytest.mark.asyncio
async def test_backend_failures_are_wrapped() -> None:
    """Redis errors surface as store errors on reads and writes."""
    redis = _FakeRedis()
    store = _store(redis)

    redis.fail_execute = True
    with pytest.raises(AuthorizationStoreError) as save_error:
        await store.save(_authorization(access_token=_access_token("A")))
    assert save_error.value.code == "store_unavailable"
    assert isinstance(save_error.value.__cause__, RedisError)
    assert redis.values == {}

    redis.fail_get = True
    with pytest.raises(AuthorizationStoreError):
        await store.find_by_id("authz-1")
    with pytest.raises(AuthorizationStoreError):
        await store.find_by_token("A")


@pytest.mark.asyncio
async def test_concurrent_saves_of_same_id_can_leave_orphaned_index() -> None:
    """Both writers read the same previous body, so the first writer's index survives."""
    redis = _FakeRedis()
    store = _store(redis)
    await store.save(_authorization(access_token=_access_token("A0")))
    redis.yield_on_get = True

    await asyncio.gather(
        store.save(_authorization(access_token=_access_token("A1"))),
        store.save(_authorization(access_token=_access_token("A2"))),
    )

    assert f"app:idx:access:{_digest('A0')}" not in redis.values
    assert redis.values[f"app:idx:access:{_digest('A1')}"] == "authz-1"
    redis.yield_on_get = False
    orphan_hit = await store.find_by_token("A1")
    assert orphan_hit is not None
    assert orphan_hit.access_token is not None
    assert orphan_hit.access_token.token_value == "A2"


def test_index_ttl_helpers() -> None:
    """TTL helpers clamp to whole positive seconds or signal deletion."""
    assert seconds_until(NOW + timedelta(seconds=90, milliseconds=500), NOW) == 90
    assert RedisAuthorizationStore.compute_index_ttl(None, NOW, fallback=120) == 120
    assert RedisAuthorizationStore.compute_index_ttl(NOW, NOW, fallback=120) is None
    assert (
        RedisAuthorizationStore.compute_index_ttl(NOW + timedelta(seconds=1), NOW, fallback=0)
        == 1
    )
