from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from aegis.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field("postgresql://localhost:5432/aegis", "DATABASE_URL")
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as generated JWT secrets.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("aegis", "JWT_ISSUER")
    jwt_audience: str = env_field(
        "aegis-clients",
        "JWT_AUDIENCE",
        description="Comma separated list of accepted token audiences",
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    clock_skew_leeway_seconds: int = env_field(
        0,
        "CLOCK_SKEW_LEEWAY_SECONDS",
        description="Tolerance applied to exp/nbf checks when validating access tokens",
    )
    default_role: str = env_field("user", "DEFAULT_ROLE")
    token_purge_enabled: bool = env_field(True, "TOKEN_PURGE_ENABLED")
    token_purge_interval_seconds: int = env_field(3600, "TOKEN_PURGE_INTERVAL_SECONDS")
    token_purge_retention_days: int = env_field(7, "TOKEN_PURGE_RETENTION_DAYS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "token_purge_interval_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("clock_skew_leeway_seconds", "token_purge_retention_days")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _check_jwt_secret(cls, value: str | None) -> str | None:
        if value is not None and len(value) < _MIN_SECRET_LENGTH:
            raise ValueError(f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters")
        return value

    def resolved_jwt_secret(self) -> str:
        """Return the signing secret, generating an ephemeral one in test mode."""
        if self.jwt_secret:
            return self.jwt_secret
        if not self.test_mode:
            raise RuntimeError("JWT_SECRET must be set outside of TEST_MODE")
        logger.warning("jwt_secret_generated", reason="test_mode")
        generated = secrets.token_urlsafe(48)
        self.jwt_secret = generated
        return generated

    @property
    def audiences(self) -> tuple[str, ...]:
        return tuple(part.strip() for part in self.jwt_audience.split(",") if part.strip())


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
