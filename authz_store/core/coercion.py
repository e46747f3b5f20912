"""Restore typed request and principal attributes after a JSON round trip."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from authz_store.models.account import ACCOUNT_STATUS_ACTIVE, Account
from authz_store.schemas.authorization import (
    AUTHORIZATION_REQUEST_ATTRIBUTE,
    PRINCIPAL_ATTRIBUTE,
    AuthorizationRequest,
    BasicPrincipal,
    Principal,
    SsoPrincipal,
)
from authz_store.services.account_reconstructor import (
    IdentityExtractionError,
    SsoAccountReconstructor,
)
from authz_store.services.account_service import AccountLookup

logger = structlog.get_logger(__name__)


class CoercionStatus(str, Enum):
    """What happened to one well-known attribute during coercion."""

    ABSENT = "absent"
    UNCHANGED = "unchanged"
    RECONSTRUCTED = "reconstructed"
    DROPPED = "dropped"


@dataclass(frozen=True)
class CoercionOutcome:
    """Per-attribute coercion result."""

    status: CoercionStatus
    value: Any = None
    reason: str | None = None

    @classmethod
    def absent(cls) -> CoercionOutcome:
        return cls(CoercionStatus.ABSENT)

    @classmethod
    def unchanged(cls, value: Any) -> CoercionOutcome:
        return cls(CoercionStatus.UNCHANGED, value=value)

    @classmethod
    def reconstructed(cls, value: Any) -> CoercionOutcome:
        return cls(CoercionStatus.RECONSTRUCTED, value=value)

    @classmethod
    def dropped(cls, reason: str) -> CoercionOutcome:
        return cls(CoercionStatus.DROPPED, reason=reason)


@dataclass(frozen=True)
class CoercionResult:
    """Coerced attribute map plus the outcome for each well-known key."""

    attributes: dict[str, Any]
    outcomes: dict[str, CoercionOutcome] = field(default_factory=dict)


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _string_set(value: Any) -> frozenset[str]:
    if not isinstance(value, list | tuple | set | frozenset):
        return frozenset()
    return frozenset(item for item in value if isinstance(item, str))


def _string_keyed(value: Any) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        return {}
    return {str(key): item for key, item in value.items()}


def extract_authorities(src: Mapping[str, Any]) -> frozenset[str]:
    """Read granted authorities given as bare strings or ``{authority: ...}`` maps."""
    raw = src.get("authorities")
    if not isinstance(raw, list | tuple | set | frozenset):
        return frozenset()
    authorities: set[str] = set()
    for entry in raw:
        if isinstance(entry, str):
            authorities.add(entry)
        elif isinstance(entry, Mapping) and isinstance(entry.get("authority"), str):
            authorities.add(entry["authority"])
    return frozenset(authorities)


def rebuild_authorization_request(src: Mapping[str, Any]) -> CoercionOutcome:
    """Rebuild an authorization request; ``authorizationUri`` and ``clientId`` are required."""
    authorization_uri = _text(src.get("authorizationUri"))
    if authorization_uri is None:
        return CoercionOutcome.dropped("authorizationUri missing")
    client_id = _text(src.get("clientId"))
    if client_id is None:
        return CoercionOutcome.dropped("clientId missing")
    return CoercionOutcome.reconstructed(
        AuthorizationRequest(
            authorization_uri=authorization_uri,
            client_id=client_id,
            redirect_uri=_text(src.get("redirectUri")),
            scopes=_string_set(src.get("scopes")),
            state=_text(src.get("state")),
            additional_parameters=_string_keyed(src.get("additionalParameters")),
            attributes=_string_keyed(src.get("attributes")),
        )
    )


def rebuild_account(src: Mapping[str, Any]) -> Account | None:
    """Rebuild a password-authenticated account from its stored fields."""
    account_id = _text(src.get("id"))
    client_id = _text(src.get("clientId"))
    login_id = _text(src.get("loginId"))
    if account_id is None or client_id is None or login_id is None:
        return None
    return Account(
        id=account_id,
        client_id=client_id,
        user_id=_text(src.get("userId")) or account_id,
        login_id=login_id,
        email=_text(src.get("email")),
        phone=_text(src.get("phone")),
        name=_text(src.get("name")),
        status=_text(src.get("status")) or ACCOUNT_STATUS_ACTIVE,
        is_email_verified=src.get("isEmailVerified") is True,
    )


class AttributeCoercer:
    """Best-effort coercion: failures drop the attribute, never the whole decode."""

    def __init__(self, reconstructor: SsoAccountReconstructor, accounts: AccountLookup) -> None:
        self._reconstructor = reconstructor
        self._accounts = accounts

    async def coerce(self, attributes: Mapping[str, Any]) -> CoercionResult:
        """Coerce the authorization request and principal attributes."""
        outcomes = {
            AUTHORIZATION_REQUEST_ATTRIBUTE: self._coerce_authorization_request(
                attributes.get(AUTHORIZATION_REQUEST_ATTRIBUTE)
            ),
            PRINCIPAL_ATTRIBUTE: await self._coerce_principal(attributes.get(PRINCIPAL_ATTRIBUTE)),
        }

        coerced = dict(attributes)
        for key, outcome in outcomes.items():
            if outcome.status is CoercionStatus.DROPPED:
                coerced.pop(key, None)
                logger.warning("attribute_dropped", attribute=key, reason=outcome.reason)
            elif outcome.status is CoercionStatus.RECONSTRUCTED:
                coerced[key] = outcome.value
                logger.debug("attribute_reconstructed", attribute=key)
        return CoercionResult(attributes=coerced, outcomes=outcomes)

    def _coerce_authorization_request(self, raw: Any) -> CoercionOutcome:
        if raw is None:
            return CoercionOutcome.absent()
        if isinstance(raw, AuthorizationRequest):
            return CoercionOutcome.unchanged(raw)
        if isinstance(raw, Mapping):
            return rebuild_authorization_request(raw)
        return CoercionOutcome.dropped(f"unsupported shape {type(raw).__name__}")

    async def _coerce_principal(self, raw: Any) -> CoercionOutcome:
        if raw is None:
            return CoercionOutcome.absent()
        if isinstance(raw, BasicPrincipal | SsoPrincipal):
            return CoercionOutcome.unchanged(raw)
        if isinstance(raw, Mapping):
            return await self.rebuild_principal(raw)
        return CoercionOutcome.dropped(f"unsupported shape {type(raw).__name__}")

    async def rebuild_principal(self, src: Mapping[str, Any]) -> CoercionOutcome:
        """Rebuild a principal, dispatching on the ``type`` tag or the stored shape."""
        kind = src.get("type")
        principal_data = src.get("principal")
        if principal_data is None:
            principal_data = src
        account_map = (
            principal_data.get("account") if isinstance(principal_data, Mapping) else None
        )

        if kind == BasicPrincipal.type or (kind is None and isinstance(account_map, Mapping)):
            if not isinstance(account_map, Mapping):
                return CoercionOutcome.dropped("basic principal without account")
            return self._rebuild_basic_principal(src, account_map)
        if kind in (None, SsoPrincipal.type):
            if not isinstance(principal_data, Mapping):
                return CoercionOutcome.dropped("SSO principal data is not a mapping")
            return await self._rebuild_sso_principal(src, principal_data)
        return CoercionOutcome.dropped(f"unknown principal type {kind!r}")

    def _rebuild_basic_principal(
        self,
        src: Mapping[str, Any],
        account_map: Mapping[str, Any],
    ) -> CoercionOutcome:
        account = rebuild_account(account_map)
        if account is None:
            return CoercionOutcome.dropped("account missing id, clientId or loginId")
        principal: Principal = BasicPrincipal(
            account=account,
            authorities=extract_authorities(src),
            details=src.get("details"),
        )
        return CoercionOutcome.reconstructed(principal)

    async def _rebuild_sso_principal(
        self,
        src: Mapping[str, Any],
        claims: Mapping[str, Any],
    ) -> CoercionOutcome:
        logger.debug("sso_principal_rebuilding", claim_keys=[str(key) for key in claims])
        try:
            account = await self._reconstructor.find_or_create_account(claims, self._accounts)
        except IdentityExtractionError as exc:
            return CoercionOutcome.dropped(exc.detail)
        principal: Principal = SsoPrincipal(
            account=account,
            claims=_string_keyed(claims),
            authorities=extract_authorities(src),
            details=src.get("details"),
        )
        return CoercionOutcome.reconstructed(principal)
