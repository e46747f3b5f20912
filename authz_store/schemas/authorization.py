"""Typed authorization records as seen by the protocol engine."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Literal

from authz_store.core.keyspace import TokenKind
from authz_store.models.account import Account
from authz_store.models.client import RegisteredClient

AUTHORIZATION_REQUEST_ATTRIBUTE = "authorization_request"
PRINCIPAL_ATTRIBUTE = "principal"
BEARER_TOKEN_TYPE = "Bearer"


@dataclass(frozen=True)
class Token:
    """One issued credential embedded in an authorization."""

    token_value: str = field(repr=False)
    issued_at: datetime | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AccessToken(Token):
    """Access token with its type label and granted scopes."""

    token_type: str = BEARER_TOKEN_TYPE
    scopes: frozenset[str] = frozenset()


@dataclass(frozen=True)
class OidcIdToken(Token):
    """OIDC ID token; claims are restored from metadata on decode."""

    claims: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthorizationRequest:
    """Authorization endpoint request captured when the grant began."""

    authorization_uri: str
    client_id: str
    redirect_uri: str | None = None
    scopes: frozenset[str] = frozenset()
    state: str | None = None
    additional_parameters: dict[str, Any] = field(default_factory=dict)
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_document(self) -> dict[str, Any]:
        """Render the request in its stored mapping shape."""
        return {
            "authorizationUri": self.authorization_uri,
            "clientId": self.client_id,
            "redirectUri": self.redirect_uri,
            "scopes": sorted(self.scopes),
            "state": self.state,
            "additionalParameters": dict(self.additional_parameters),
            "attributes": dict(self.attributes),
        }


def account_to_document(account: Account) -> dict[str, Any]:
    """Render the non-secret account fields needed to rebuild a principal."""
    return {
        "id": account.id,
        "clientId": account.client_id,
        "userId": account.user_id,
        "loginId": account.login_id,
        "email": account.email,
        "phone": account.phone,
        "name": account.name,
        "status": account.status,
        "isEmailVerified": bool(account.is_email_verified),
    }


@dataclass(frozen=True)
class BasicPrincipal:
    """Principal authenticated with an account already known to the system."""

    type: ClassVar[Literal["basic"]] = "basic"

    account: Account
    authorities: frozenset[str] = frozenset()
    details: Any = None

    @property
    def name(self) -> str:
        return self.account.login_id

    def to_document(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "authorities": sorted(self.authorities),
            "details": self.details,
            "principal": {"account": account_to_document(self.account)},
        }


@dataclass(frozen=True)
class SsoPrincipal:
    """Principal authenticated by an external identity provider."""

    type: ClassVar[Literal["sso"]] = "sso"

    account: Account
    claims: dict[str, Any] = field(default_factory=dict)
    authorities: frozenset[str] = frozenset()
    details: Any = None

    @property
    def name(self) -> str:
        return self.account.login_id

    def to_document(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "authorities": sorted(self.authorities),
            "details": self.details,
            "principal": dict(self.claims),
        }


Principal = BasicPrincipal | SsoPrincipal


@dataclass
class Authorization:
    """Stored OAuth2 authorization: who consented to what, with which tokens."""

    id: str
    registered_client_id: str
    principal_name: str
    authorization_grant_type: str
    attributes: dict[str, Any] = field(default_factory=dict)
    state: str | None = None
    authorization_code: Token | None = None
    access_token: AccessToken | None = None
    refresh_token: Token | None = None
    oidc_id_token: OidcIdToken | None = None
    registered_client: RegisteredClient | None = field(default=None, compare=False, repr=False)

    @property
    def principal(self) -> Principal | None:
        value = self.attributes.get(PRINCIPAL_ATTRIBUTE)
        return value if isinstance(value, BasicPrincipal | SsoPrincipal) else None

    @property
    def authorization_request(self) -> AuthorizationRequest | None:
        value = self.attributes.get(AUTHORIZATION_REQUEST_ATTRIBUTE)
        return value if isinstance(value, AuthorizationRequest) else None

    def tokens(self) -> Iterator[tuple[TokenKind, Token]]:
        """Yield every non-null token slot with its index kind."""
        slots: tuple[tuple[TokenKind, Token | None], ...] = (
            (TokenKind.CODE, self.authorization_code),
            (TokenKind.ACCESS, self.access_token),
            (TokenKind.REFRESH, self.refresh_token),
            (TokenKind.ID_TOKEN, self.oidc_id_token),
        )
        for kind, token in slots:
            if token is not None:
                yield kind, token
