"""Application settings and logging configuration."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_CONTEXT: dict[str, str] = {"environment": "development", "service": "authz-store"}


class AppSettings(BaseModel):
    """Application identity and runtime settings."""

    environment: Literal["development", "staging", "production"] = "development"
    service: str = "authz-store"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class DatabaseSettings(BaseModel):
    """Database connection settings."""

    url: str = Field(description="Async SQLAlchemy URL using asyncpg driver.")

    @field_validator("url")
    @classmethod
    def validate_asyncpg_url(cls, value: str) -> str:
        """Ensure SQLAlchemy uses the asyncpg driver."""
        if not value.startswith("postgresql+asyncpg://"):
            raise ValueError("database.url must start with 'postgresql+asyncpg://'.")
        return value


class RedisSettings(BaseModel):
    """Redis connection settings."""

    url: str = Field(description="Redis URL.")

    @field_validator("url")
    @classmethod
    def validate_redis_url(cls, value: str) -> str:
        """Ensure the Redis URL uses a supported scheme."""
        if not value.startswith(("redis://", "rediss://")):
            raise ValueError("redis.url must start with 'redis://' or 'rediss://'.")
        return value


class AuthorizationSettings(BaseModel):
    """Key-space and lifetime settings for stored authorizations."""

    key_prefix: str = "app:auth:"
    idx_prefix: str = "app:idx"
    state_ttl_seconds: int = Field(default=600, ge=1)
    default_ttl_seconds: int = Field(default=3600, ge=1)
    default_client_id: str = "CLIENT001"
    preview_length: int = Field(default=200, ge=16)

    @field_validator("idx_prefix")
    @classmethod
    def validate_idx_prefix(cls, value: str) -> str:
        """Index keys append their own ':' separator."""
        if value.endswith(":"):
            raise ValueError("authorization.idx_prefix must not end with ':'.")
        return value


class Settings(BaseSettings):
    """Root settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app: AppSettings = Field(default_factory=AppSettings)
    database: DatabaseSettings
    redis: RedisSettings
    authorization: AuthorizationSettings = Field(default_factory=AuthorizationSettings)


def _standard_log_fields(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Inject required structured logging fields."""
    context_vars = structlog.contextvars.get_contextvars()
    event_dict.setdefault("correlation_id", str(context_vars.get("correlation_id", "unknown")))
    event_dict.setdefault("environment", _LOG_CONTEXT["environment"])
    event_dict.setdefault("service", _LOG_CONTEXT["service"])
    event_dict.setdefault("timestamp", datetime.now(UTC).isoformat())
    return event_dict


def configure_structlog(settings: Settings) -> None:
    """Configure structlog for JSON output with required fields."""
    _LOG_CONTEXT["environment"] = settings.app.environment
    _LOG_CONTEXT["service"] = settings.app.service

    log_level = getattr(logging, settings.app.log_level, logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _standard_log_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@lru_cache
def get_settings() -> Settings:
    """Load and cache settings from environment variables."""
    return Settings()
