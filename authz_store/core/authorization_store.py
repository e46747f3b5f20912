"""Redis-backed authorization store with hashed secondary token indexes."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from functools import lru_cache

import structlog
from pydantic import ValidationError
from redis import asyncio as redis_async
from redis.asyncio.client import Redis
from redis.exceptions import RedisError

from authz_store.config import get_settings
from authz_store.core.codec import (
    AuthorizationCodec,
    AuthorizationDecodeError,
    get_authorization_codec,
)
from authz_store.core.keyspace import (
    SEARCH_ORDER,
    AuthorizationKeySpace,
    TokenKind,
    resolve_token_kind,
)
from authz_store.core.masking import mask_principal
from authz_store.schemas.authorization import Authorization
from authz_store.schemas.documents import AuthorizationDocument

logger = structlog.get_logger(__name__)

MIN_TTL_SECONDS = 1

# KEYS[1] = body key, KEYS[2] = index key; the index goes only while the body is absent.
DELETE_INDEX_IF_BODY_MISSING = """
if redis.call("EXISTS", KEYS[1]) == 0 then
    return redis.call("DEL", KEYS[2])
end
return 0
"""


class AuthorizationStoreError(Exception):
    """Raised when the Redis backend cannot complete a store operation."""

    def __init__(self, detail: str, code: str) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code


def seconds_until(expires_at: datetime, now: datetime) -> int:
    """Whole seconds from ``now`` until ``expires_at``; may be zero or negative."""
    return int(expires_at.timestamp()) - int(now.timestamp())


class RedisAuthorizationStore:
    """Persist authorization bodies and their token indexes with independent TTLs.

    Each save replaces the stored body and every index derived from the previous
    body in one MULTI/EXEC transaction. Reading the previous body happens before
    the transaction, so two concurrent saves of the same id can still leave an
    index written by the loser behind; callers that need strict consistency must
    serialize saves per authorization id.
    """

    def __init__(
        self,
        redis_client: Redis,
        codec: AuthorizationCodec,
        keyspace: AuthorizationKeySpace,
        state_ttl_seconds: int = 600,
        default_ttl_seconds: int = 3600,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._redis = redis_client
        self._codec = codec
        self._keyspace = keyspace
        self._state_ttl_seconds = state_ttl_seconds
        self._default_ttl_seconds = default_ttl_seconds
        self._now = now or (lambda: datetime.now(UTC))

    async def save(self, authorization: Authorization) -> None:
        """Replace the stored body and indexes for this authorization id."""
        auth_key = self._keyspace.auth_key(authorization.id)
        stale_index_keys = await self._stale_index_keys(auth_key)
        document = self._codec.serialize(authorization)

        now = self._now()
        body_ttl = self.compute_body_ttl(authorization, now)
        index_writes: list[tuple[str, int]] = []
        index_deletes: list[str] = []
        for key, ttl in self._plan_indexes(authorization, now, body_ttl):
            if ttl is None:
                index_deletes.append(key)
            else:
                index_writes.append((key, ttl))

        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                if stale_index_keys:
                    pipe.delete(*stale_index_keys)
                pipe.setex(auth_key, body_ttl, document)
                for key, ttl in index_writes:
                    pipe.setex(key, ttl, authorization.id)
                if index_deletes:
                    pipe.delete(*index_deletes)
                await pipe.execute()
        except RedisError as exc:
            raise AuthorizationStoreError(
                "Authorization backend unavailable.", "store_unavailable"
            ) from exc

        logger.info(
            "authorization_saved",
            authorization_id=authorization.id,
            principal=mask_principal(authorization.principal_name),
            body_ttl_seconds=body_ttl,
            indexes_written=len(index_writes),
            indexes_expired=len(index_deletes),
            stale_indexes_removed=len(stale_index_keys),
        )

    async def remove(self, authorization: Authorization) -> None:
        """Delete the body plus the indexes of both the given and the stored authorization.

        The caller may hold a copy taken before a token rotation; the stored body's
        indexes are removed as well so rotated tokens stop resolving immediately.
        """
        auth_key = self._keyspace.auth_key(authorization.id)
        index_keys = self._index_keys(authorization)
        for key in await self._stale_index_keys(auth_key):
            if key not in index_keys:
                index_keys.append(key)
        await self._delete(auth_key, *index_keys)
        logger.info("authorization_removed", authorization_id=authorization.id)

    async def find_by_id(self, authorization_id: str) -> Authorization | None:
        """Fetch and decode a body; undecodable bodies are reported as absent."""
        raw_document = await self._get(self._keyspace.auth_key(authorization_id))
        if raw_document is None:
            return None
        return await self._decode(raw_document, authorization_id)

    async def find_by_token(
        self,
        token: str,
        token_type: str | TokenKind | None = None,
    ) -> Authorization | None:
        """Resolve a token through its index; untyped lookups probe kinds in search order."""
        if token_type is None:
            kinds = SEARCH_ORDER
        else:
            kind = resolve_token_kind(token_type)
            if kind is None:
                logger.debug("token_type_unsupported", token_type=str(token_type))
                return None
            kinds = (kind,)

        for kind in kinds:
            index_key = self._keyspace.index_key(kind, token)
            authorization_id = await self._get(index_key)
            if authorization_id:
                break
        else:
            return None

        auth_key = self._keyspace.auth_key(authorization_id)
        raw_document = await self._get(auth_key)
        if raw_document is None:
            # Body expired or was removed while the index survived.
            if await self._delete_dangling_index(auth_key, index_key):
                logger.warning(
                    "dangling_index_removed",
                    authorization_id=authorization_id,
                    token_kind=kind.value,
                )
            return None
        return await self._decode(raw_document, authorization_id)

    def compute_body_ttl(self, authorization: Authorization, now: datetime) -> int:
        """Body lives until the latest-expiring token; default when no expiry is known."""
        expiries = [
            token.expires_at
            for _, token in authorization.tokens()
            if token.expires_at is not None
        ]
        if not expiries:
            return self._default_ttl_seconds
        return max(MIN_TTL_SECONDS, seconds_until(max(expiries), now))

    @staticmethod
    def compute_index_ttl(expires_at: datetime | None, now: datetime, fallback: int) -> int | None:
        """Index TTL for one token; None means the token already expired and the index goes."""
        if expires_at is None:
            return max(MIN_TTL_SECONDS, fallback)
        remaining = seconds_until(expires_at, now)
        if remaining <= 0:
            return None
        return max(MIN_TTL_SECONDS, remaining)

    def _plan_indexes(
        self,
        authorization: Authorization,
        now: datetime,
        body_ttl: int,
    ) -> list[tuple[str, int | None]]:
        plan: list[tuple[str, int | None]] = []
        if authorization.state:
            plan.append(
                (
                    self._keyspace.index_key(TokenKind.STATE, authorization.state),
                    self._state_ttl_seconds,
                )
            )
        for kind, token in authorization.tokens():
            plan.append(
                (
                    self._keyspace.index_key(kind, token.token_value),
                    self.compute_index_ttl(token.expires_at, now, fallback=body_ttl),
                )
            )
        return plan

    def _index_keys(self, authorization: Authorization) -> list[str]:
        keys: list[str] = []
        if authorization.state:
            keys.append(self._keyspace.index_key(TokenKind.STATE, authorization.state))
        for kind, token in authorization.tokens():
            keys.append(self._keyspace.index_key(kind, token.token_value))
        return keys

    async def _stale_index_keys(self, auth_key: str) -> list[str]:
        """Index keys of the currently stored body, read from the raw document."""
        raw_document = await self._get(auth_key)
        if raw_document is None:
            return []
        try:
            document = AuthorizationDocument.model_validate_json(raw_document)
        except ValidationError:
            logger.warning("stale_index_scan_skipped", authorization_key=auth_key)
            return []

        keys: list[str] = []
        if document.state:
            keys.append(self._keyspace.index_key(TokenKind.STATE, document.state))
        slots = (
            (TokenKind.CODE, document.authorization_code),
            (TokenKind.ACCESS, document.access_token),
            (TokenKind.REFRESH, document.refresh_token),
            (TokenKind.ID_TOKEN, document.oidc_id_token),
        )
        for kind, token in slots:
            if token is not None:
                keys.append(self._keyspace.index_key(kind, token.token_value))
        return keys

    async def _decode(self, raw_document: str, authorization_id: str) -> Authorization | None:
        try:
            return await self._codec.deserialize(raw_document)
        except AuthorizationDecodeError as exc:
            logger.error(
                "authorization_decode_failed",
                authorization_id=authorization_id,
                detail=exc.detail,
            )
            return None

    async def _get(self, key: str) -> str | None:
        try:
            return await self._redis.get(key)
        except RedisError as exc:
            raise AuthorizationStoreError(
                "Authorization backend unavailable.", "store_unavailable"
            ) from exc

    async def _delete_dangling_index(self, auth_key: str, index_key: str) -> bool:
        try:
            removed = await self._redis.eval(DELETE_INDEX_IF_BODY_MISSING, 2, auth_key, index_key)
        except RedisError as exc:
            raise AuthorizationStoreError(
                "Authorization backend unavailable.", "store_unavailable"
            ) from exc
        return bool(removed)

    async def _delete(self, *keys: str) -> None:
        try:
            await self._redis.delete(*keys)
        except RedisError as exc:
            raise AuthorizationStoreError(
                "Authorization backend unavailable.", "store_unavailable"
            ) from exc


@lru_cache
def get_redis_client() -> Redis:
    """Create and cache Redis client for authorization storage."""
    settings = get_settings()
    return redis_async.from_url(settings.redis.url, decode_responses=True)


@lru_cache
def get_authorization_store() -> RedisAuthorizationStore:
    """Create and cache the authorization store."""
    settings = get_settings()
    return RedisAuthorizationStore(
        redis_client=get_redis_client(),
        codec=get_authorization_codec(),
        keyspace=AuthorizationKeySpace(
            key_prefix=settings.authorization.key_prefix,
            idx_prefix=settings.authorization.idx_prefix,
        ),
        state_ttl_seconds=settings.authorization.state_ttl_seconds,
        default_ttl_seconds=settings.authorization.default_ttl_seconds,
    )
