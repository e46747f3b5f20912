"""Wire documents for authorizations stored in Redis."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from authz_store.schemas.authorization import BEARER_TOKEN_TYPE


class _WireModel(BaseModel):
    """Camel-case field names are the storage contract."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class TokenDocument(_WireModel):
    """Stored token slot."""

    token_value: str
    issued_at: datetime | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("issued_at", "expires_at")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        """Treat naive timestamps as UTC."""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class AccessTokenDocument(TokenDocument):
    """Stored access token slot with type label and scopes."""

    token_type: str = BEARER_TOKEN_TYPE
    scopes: list[str] = Field(default_factory=list)


class IdTokenDocument(TokenDocument):
    """Stored ID token slot; claims are absent on documents written by older releases."""

    claims: dict[str, Any] | None = None


class AuthorizationDocument(_WireModel):
    """Single JSON document holding a whole authorization."""

    id: str = Field(min_length=1)
    registered_client_id: str = Field(min_length=1)
    principal_name: str
    authorization_grant_type: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    state: str | None = None
    authorization_code: TokenDocument | None = None
    access_token: AccessTokenDocument | None = None
    refresh_token: TokenDocument | None = None
    oidc_id_token: IdTokenDocument | None = None
