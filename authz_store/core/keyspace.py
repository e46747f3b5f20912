"""Redis key-space convention for authorization bodies and token indexes."""

from __future__ import annotations

from enum import Enum
from hashlib import sha256


class TokenKind(str, Enum):
    """Index kinds in the order an untyped token lookup probes them."""

    STATE = "state"
    CODE = "code"
    ACCESS = "access"
    REFRESH = "refresh"
    ID_TOKEN = "id_token"


# Order matters: an untyped find_by_token uses the first kind that resolves.
SEARCH_ORDER: tuple[TokenKind, ...] = (
    TokenKind.STATE,
    TokenKind.CODE,
    TokenKind.ACCESS,
    TokenKind.REFRESH,
    TokenKind.ID_TOKEN,
)

_TOKEN_TYPE_ALIASES: dict[str, TokenKind] = {
    "state": TokenKind.STATE,
    "code": TokenKind.CODE,
    "authorization_code": TokenKind.CODE,
    "access": TokenKind.ACCESS,
    "access_token": TokenKind.ACCESS,
    "refresh": TokenKind.REFRESH,
    "refresh_token": TokenKind.REFRESH,
    "id_token": TokenKind.ID_TOKEN,
}


def resolve_token_kind(token_type: str | TokenKind) -> TokenKind | None:
    """Map a protocol token type name to an index kind, or None when unsupported."""
    if isinstance(token_type, TokenKind):
        return token_type
    return _TOKEN_TYPE_ALIASES.get(token_type.strip().lower())


class AuthorizationKeySpace:
    """Builds body and index keys; token values only appear as SHA-256 digests."""

    def __init__(self, key_prefix: str = "app:auth:", idx_prefix: str = "app:idx") -> None:
        self._key_prefix = key_prefix
        self._idx_prefix = idx_prefix

    def auth_key(self, authorization_id: str) -> str:
        """Build the key holding the serialized authorization body."""
        return f"{self._key_prefix}{authorization_id}"

    def index_key(self, kind: TokenKind, value: str) -> str:
        """Build the secondary index key for a token value."""
        if kind is TokenKind.STATE:
            return f"{self._idx_prefix}:state:{value}"
        return f"{self._idx_prefix}:{kind.value}:{self.hash_token(value)}"

    @staticmethod
    def hash_token(raw_token: str) -> str:
        """Hash token with SHA-256 for key construction."""
        return sha256(raw_token.encode("utf-8")).hexdigest()
