"""Resolve or create the durable account behind an SSO principal."""

from __future__ import annotations

from collections.abc import Mapping
from functools import lru_cache
from typing import Any

import structlog

from authz_store.config import get_settings
from authz_store.core.extractors import UserIdExtractorChain, default_extractor_chain
from authz_store.core.masking import mask_principal
from authz_store.models.account import ACCOUNT_STATUS_ACTIVE, Account
from authz_store.services.account_service import AccountLookup

logger = structlog.get_logger(__name__)

SSO_ACCOUNT_PREFIX = "sso_"
FALLBACK_LOGIN_DOMAIN = "sso.fallback"


class IdentityExtractionError(Exception):
    """Raised when no extractor can derive a user id from identity claims."""

    def __init__(self, claim_keys: list[str]) -> None:
        detail = (
            "Could not extract provider user ID from principal. "
            f"Available keys: [{', '.join(claim_keys)}]"
        )
        super().__init__(detail)
        self.detail = detail
        self.code = "identity_extraction_failed"
        self.claim_keys = claim_keys


def _text_claim(claims: Mapping[str, Any], key: str) -> str | None:
    value = claims.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class SsoAccountReconstructor:
    """Find-or-create accounts for provider-authenticated principals."""

    def __init__(self, extractor_chain: UserIdExtractorChain, default_client_id: str) -> None:
        self._extractor_chain = extractor_chain
        self._default_client_id = default_client_id

    async def find_or_create_account(
        self,
        claims: Mapping[str, Any],
        accounts: AccountLookup,
    ) -> Account:
        """Return the account for these claims, persisting a minimal one if none exists."""
        provider_user_id = self.extract_provider_user_id(claims)
        email = _text_claim(claims, "email")
        client_id = self.extract_client_id(claims)

        if email is not None:
            existing = await accounts.find_by_email(client_id, email)
            if existing is not None:
                logger.debug("sso_account_found_by_email", account_id=existing.id)
                return existing

        synthetic_id = f"{SSO_ACCOUNT_PREFIX}{provider_user_id}"
        existing = await accounts.find_by_id(synthetic_id)
        if existing is not None:
            logger.debug("sso_account_found_by_id", account_id=existing.id)
            return existing

        logger.warning(
            "sso_fallback_account_created",
            account_id=synthetic_id,
            email=mask_principal(email),
            client_id=client_id,
        )
        account = Account(
            id=synthetic_id,
            client_id=client_id,
            user_id=provider_user_id,
            login_id=email or f"{provider_user_id}@{FALLBACK_LOGIN_DOMAIN}",
            email=email,
            phone=None,
            name=self.extract_display_name(claims),
            status=ACCOUNT_STATUS_ACTIVE,
            is_email_verified=email is not None,
        )
        return await accounts.save(account)

    def extract_provider_user_id(self, claims: Mapping[str, Any]) -> str:
        """Run the extractor chain and fail loudly when nothing matches."""
        user_id = self._extractor_chain.extract_user_id(claims)
        if user_id is None:
            error = IdentityExtractionError([str(key) for key in claims])
            logger.error("provider_user_id_missing", claim_keys=error.claim_keys)
            raise error
        return user_id

    def extract_client_id(self, claims: Mapping[str, Any]) -> str:
        """Prefer an explicit client claim, then the audience, then the default."""
        client_id = _text_claim(claims, "client_id")
        if client_id is not None:
            return client_id
        audience = claims.get("aud")
        if isinstance(audience, list | tuple) and audience:
            audience = audience[0]
        if isinstance(audience, str) and audience.strip():
            return audience.strip()
        return self._default_client_id

    @staticmethod
    def extract_display_name(claims: Mapping[str, Any]) -> str | None:
        for key in ("name", "given_name", "nickname"):
            value = _text_claim(claims, key)
            if value is not None:
                return value
        response = claims.get("response")
        if isinstance(response, Mapping):
            return _text_claim(response, "name")
        return None


@lru_cache
def get_sso_account_reconstructor() -> SsoAccountReconstructor:
    """Build and cache the reconstructor with the built-in extractor chain."""
    settings = get_settings()
    return SsoAccountReconstructor(
        extractor_chain=default_extractor_chain(),
        default_client_id=settings.authorization.default_client_id,
    )
