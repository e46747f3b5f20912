"""JSON codec between authorizations and their stored Redis documents."""

from __future__ import annotations

from collections.abc import Mapping
from functools import lru_cache
from typing import Any

import structlog
from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from authz_store.config import get_settings
from authz_store.core.coercion import AttributeCoercer
from authz_store.models.client import RegisteredClient
from authz_store.schemas.authorization import (
    BEARER_TOKEN_TYPE,
    AccessToken,
    Authorization,
    AuthorizationRequest,
    BasicPrincipal,
    OidcIdToken,
    SsoPrincipal,
    Token,
)
from authz_store.schemas.documents import (
    AccessTokenDocument,
    AuthorizationDocument,
    IdTokenDocument,
    TokenDocument,
)
from authz_store.services.account_reconstructor import get_sso_account_reconstructor
from authz_store.services.account_service import get_account_repository
from authz_store.services.client_service import (
    RegisteredClientLookup,
    get_registered_client_repository,
)

logger = structlog.get_logger(__name__)

# Metadata entries older documents kept ID token claims under, in lookup order.
ID_TOKEN_CLAIM_KEYS = ("claims", "claimsSet")


class AuthorizationCodecError(Exception):
    """Base class for codec failures."""

    def __init__(self, detail: str, code: str) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code


class AuthorizationDecodeError(AuthorizationCodecError):
    """Raised when a stored document is blank, unparseable, or structurally invalid."""

    def __init__(self, detail: str, preview: str) -> None:
        super().__init__(f"{detail} Document preview: {preview!r}", "decode_failed")
        self.preview = preview


class AuthorizationEncodeError(AuthorizationCodecError):
    """Raised when an authorization holds attributes that cannot be written as JSON."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, "encode_failed")


class MissingRegisteredClientError(Exception):
    """Raised when a stored authorization references a client that no longer resolves."""

    def __init__(self, registered_client_id: str) -> None:
        detail = f"Registered client not found: {registered_client_id}"
        super().__init__(detail)
        self.detail = detail
        self.code = "missing_registered_client"
        self.registered_client_id = registered_client_id


def _attribute_to_document(value: Any) -> Any:
    if isinstance(value, AuthorizationRequest | BasicPrincipal | SsoPrincipal):
        return value.to_document()
    return value


def _token_to_document(token: Token) -> TokenDocument:
    return TokenDocument(
        token_value=token.token_value,
        issued_at=token.issued_at,
        expires_at=token.expires_at,
        metadata=dict(token.metadata),
    )


def _access_token_to_document(token: AccessToken) -> AccessTokenDocument:
    return AccessTokenDocument(
        token_value=token.token_value,
        issued_at=token.issued_at,
        expires_at=token.expires_at,
        token_type=token.token_type or BEARER_TOKEN_TYPE,
        scopes=sorted(token.scopes),
        metadata=dict(token.metadata),
    )


def _id_token_to_document(token: OidcIdToken) -> IdTokenDocument:
    return IdTokenDocument(
        token_value=token.token_value,
        issued_at=token.issued_at,
        expires_at=token.expires_at,
        metadata=dict(token.metadata),
        claims=dict(token.claims) or None,
    )


def _id_token_claims(metadata: Mapping[str, Any]) -> dict[str, Any]:
    for key in ID_TOKEN_CLAIM_KEYS:
        claims = metadata.get(key)
        if isinstance(claims, Mapping):
            return dict(claims)
    return {}


class AuthorizationCodec:
    """Serialize authorizations to one JSON document and rebuild them faithfully."""

    def __init__(
        self,
        coercer: AttributeCoercer,
        clients: RegisteredClientLookup,
        preview_length: int = 200,
    ) -> None:
        self._coercer = coercer
        self._clients = clients
        self._preview_length = preview_length

    def serialize(self, authorization: Authorization) -> str:
        """Render an authorization as its stored JSON document."""
        document = AuthorizationDocument(
            id=authorization.id,
            registered_client_id=authorization.registered_client_id,
            principal_name=authorization.principal_name,
            authorization_grant_type=authorization.authorization_grant_type,
            attributes={
                key: _attribute_to_document(value)
                for key, value in authorization.attributes.items()
            },
            state=authorization.state,
            authorization_code=(
                _token_to_document(authorization.authorization_code)
                if authorization.authorization_code is not None
                else None
            ),
            access_token=(
                _access_token_to_document(authorization.access_token)
                if authorization.access_token is not None
                else None
            ),
            refresh_token=(
                _token_to_document(authorization.refresh_token)
                if authorization.refresh_token is not None
                else None
            ),
            oidc_id_token=(
                _id_token_to_document(authorization.oidc_id_token)
                if authorization.oidc_id_token is not None
                else None
            ),
        )
        try:
            return document.model_dump_json(by_alias=True)
        except PydanticSerializationError as exc:
            raise AuthorizationEncodeError(
                f"Authorization {authorization.id} has non-serializable attributes."
            ) from exc

    async def deserialize(self, raw_document: str) -> Authorization:
        """Parse a stored document and rebuild the typed authorization."""
        if not raw_document or not raw_document.strip():
            raise AuthorizationDecodeError("Stored authorization document is blank.", preview="")
        try:
            document = AuthorizationDocument.model_validate_json(raw_document)
        except ValidationError as exc:
            raise AuthorizationDecodeError(
                "Stored authorization document is malformed.",
                preview=self._preview(raw_document),
            ) from exc

        registered_client = await self._resolve_client(document.registered_client_id)
        coerced = await self._coercer.coerce(document.attributes)

        return Authorization(
            id=document.id,
            registered_client_id=document.registered_client_id,
            principal_name=document.principal_name,
            authorization_grant_type=document.authorization_grant_type,
            attributes=coerced.attributes,
            state=document.state,
            authorization_code=self._token(document.authorization_code),
            access_token=self._access_token(document.access_token),
            refresh_token=self._token(document.refresh_token),
            oidc_id_token=self._id_token(document.oidc_id_token),
            registered_client=registered_client,
        )

    async def _resolve_client(self, registered_client_id: str) -> RegisteredClient:
        registered_client = await self._clients.find_by_id(registered_client_id)
        if registered_client is None:
            logger.error("registered_client_missing", registered_client_id=registered_client_id)
            raise MissingRegisteredClientError(registered_client_id)
        return registered_client

    def _preview(self, raw_document: str) -> str:
        if len(raw_document) <= self._preview_length:
            return raw_document
        return raw_document[: self._preview_length] + "..."

    @staticmethod
    def _token(document: TokenDocument | None) -> Token | None:
        if document is None:
            return None
        return Token(
            token_value=document.token_value,
            issued_at=document.issued_at,
            expires_at=document.expires_at,
            metadata=dict(document.metadata),
        )

    @staticmethod
    def _access_token(document: AccessTokenDocument | None) -> AccessToken | None:
        if document is None:
            return None
        token_type = document.token_type
        if token_type.lower() == BEARER_TOKEN_TYPE.lower():
            token_type = BEARER_TOKEN_TYPE
        return AccessToken(
            token_value=document.token_value,
            issued_at=document.issued_at,
            expires_at=document.expires_at,
            metadata=dict(document.metadata),
            token_type=token_type,
            scopes=frozenset(document.scopes),
        )

    @staticmethod
    def _id_token(document: IdTokenDocument | None) -> OidcIdToken | None:
        if document is None:
            return None
        return OidcIdToken(
            token_value=document.token_value,
            issued_at=document.issued_at,
            expires_at=document.expires_at,
            metadata=dict(document.metadata),
            claims=(
                dict(document.claims)
                if document.claims is not None
                else _id_token_claims(document.metadata)
            ),
        )


@lru_cache
def get_authorization_codec() -> AuthorizationCodec:
    """Build and cache the codec with database-backed lookups."""
    settings = get_settings()
    coercer = AttributeCoercer(
        reconstructor=get_sso_account_reconstructor(),
        accounts=get_account_repository(),
    )
    return AuthorizationCodec(
        coercer=coercer,
        clients=get_registered_client_repository(),
        preview_length=settings.authorization.preview_length,
    )
