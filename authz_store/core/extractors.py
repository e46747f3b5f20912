"""Provider-specific strategies for pulling a stable user id out of identity claims."""

from __future__ import annotations

import re
import sys
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)

_DIGITS = re.compile(r"^\d+$")


class ProviderUserIdExtractor(Protocol):
    """Strategy for one identity provider; lower priority values are tried first."""

    priority: int

    def can_handle(self, claims: Mapping[str, Any]) -> bool: ...

    def extract_user_id(self, claims: Mapping[str, Any]) -> str | None: ...


def _as_text(value: Any) -> str | None:
    """Render scalar claim values as text, rejecting blanks and containers."""
    if value is None or isinstance(value, bool | Mapping | list | tuple | set):
        return None
    text = str(value).strip()
    return text or None


class GoogleUserIdExtractor:
    """Google issues a stable ``sub`` claim."""

    priority = 10

    def can_handle(self, claims: Mapping[str, Any]) -> bool:
        issuer = claims.get("iss")
        if not isinstance(issuer, str):
            return False
        return "accounts.google.com" in issuer or "googleapis.com" in issuer

    def extract_user_id(self, claims: Mapping[str, Any]) -> str | None:
        if not self.can_handle(claims):
            return None
        return _as_text(claims.get("sub"))


class KakaoUserIdExtractor:
    """Kakao identifies users with a numeric ``id``."""

    priority = 20

    def can_handle(self, claims: Mapping[str, Any]) -> bool:
        if claims.get("response") is not None:
            return True
        raw_id = claims.get("id")
        if isinstance(raw_id, bool):
            return False
        if isinstance(raw_id, int):
            return True
        return isinstance(raw_id, str) and bool(_DIGITS.match(raw_id))

    def extract_user_id(self, claims: Mapping[str, Any]) -> str | None:
        if not self.can_handle(claims):
            return None
        return _as_text(claims.get("id"))


class NaverUserIdExtractor:
    """Naver nests the profile under a ``response`` object."""

    priority = 30

    def can_handle(self, claims: Mapping[str, Any]) -> bool:
        response = claims.get("response")
        if not isinstance(response, Mapping):
            return False
        return any(key in response for key in ("id", "email", "name"))

    def extract_user_id(self, claims: Mapping[str, Any]) -> str | None:
        if not self.can_handle(claims):
            return None
        response = claims["response"]
        return _as_text(response.get("id")) or _as_text(claims.get("id"))


class DefaultUserIdExtractor:
    """Catch-all tried last; accepts any common identity-claim shape."""

    priority = sys.maxsize
    candidate_claims: tuple[str, ...] = ("sub", "id", "oid", "preferred_username", "name", "email")

    def can_handle(self, claims: Mapping[str, Any]) -> bool:
        return True

    def extract_user_id(self, claims: Mapping[str, Any]) -> str | None:
        for claim in self.candidate_claims:
            value = _as_text(claims.get(claim))
            if value is not None:
                return value
        return None


class UserIdExtractorChain:
    """Extractors ranked once by ascending priority; first non-null result wins."""

    def __init__(self, extractors: Iterable[ProviderUserIdExtractor]) -> None:
        # sorted() is stable, so equal priorities keep registration order.
        self._extractors: tuple[ProviderUserIdExtractor, ...] = tuple(
            sorted(extractors, key=lambda extractor: extractor.priority)
        )

    @property
    def extractors(self) -> tuple[ProviderUserIdExtractor, ...]:
        return self._extractors

    def extract_user_id(self, claims: Mapping[str, Any]) -> str | None:
        """Return the first identifier any extractor produces, or None."""
        for extractor in self._extractors:
            user_id = extractor.extract_user_id(claims)
            if user_id is not None:
                logger.debug(
                    "provider_user_id_extracted",
                    extractor=type(extractor).__name__,
                )
                return user_id
        return None


def default_extractor_chain() -> UserIdExtractorChain:
    """Build the chain of built-in provider extractors."""
    return UserIdExtractorChain(
        [
            GoogleUserIdExtractor(),
            KakaoUserIdExtractor(),
            NaverUserIdExtractor(),
            DefaultUserIdExtractor(),
        ]
    )
