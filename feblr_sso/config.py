from __future__ import annotations

import json
import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from feblr_sso.logging import get_logger

logger = get_logger(__name__)

MAX_TICKET_TTL_SECONDS = 600

DEFAULT_ROUTE_LIMITS: dict[str, int] = {
    "POST /v1/tickets": 10,
    "POST /v1/tickets/preview": 30,
    "PATCH /v1/tickets/{code}": 30,
    "POST /v1/tokens": 30,
    "POST /v1/tokens/refresh": 30,
}


class JwtAlgorithm(str, Enum):
    """Access-token signing algorithms accepted by the codec."""

    HS256 = "HS256"
    HS512 = "HS512"
    RS256 = "RS256"
    ES256 = "ES256"

    @property
    def symmetric(self) -> bool:
        return self.value.startswith("HS")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity provider."""

    database_url: str = env_field("postgresql://localhost:5432/feblr_sso", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-process store fallbacks.",
    )
    store_timeout_seconds: float = env_field(
        2.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for a single durable or fast store operation",
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")

    jwt_algorithm: JwtAlgorithm = env_field(JwtAlgorithm.HS256, "JWT_ALGORITHM")
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_private_key: str | None = env_field(
        None, "JWT_PRIVATE_KEY", description="PEM private key for RS256/ES256"
    )
    jwt_public_key: str | None = env_field(
        None, "JWT_PUBLIC_KEY", description="PEM public key for RS256/ES256"
    )
    jwt_issuer: str = env_field("feblr-sso", "JWT_ISSUER")
    jwt_audience: str = env_field("feblr-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS")
    access_token_ttl_seconds: int = env_field(30 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(14 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS")
    revoke_family_on_reuse: bool = env_field(
        True,
        "REVOKE_FAMILY_ON_REUSE",
        description="Revoke every descendant of a refresh token presented after rotation",
    )

    ticket_ttl_seconds: int = env_field(120, "TICKET_TTL_SECONDS")
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS")
    totp_digits: int = env_field(6, "TOTP_DIGITS")
    second_factor_key: str | None = env_field(
        None,
        "SECOND_FACTOR_KEY",
        description="Fernet key used to encrypt TOTP secrets at rest",
    )
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST")
    password_memory_cost: int = env_field(65536, "PASSWORD_MEMORY_COST")
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM")

    quota_window_seconds: int = env_field(60, "QUOTA_WINDOW_SECONDS")
    quota_default_limit: int = env_field(120, "QUOTA_DEFAULT_LIMIT")
    quota_route_limits: dict[str, int] = env_field(
        dict(DEFAULT_ROUTE_LIMITS),
        "QUOTA_ROUTE_LIMITS",
        description='JSON object such as {"POST /v1/tickets": 3}',
    )
    quota_exempt_paths: list[str] = env_field(["/healthz"], "QUOTA_EXEMPT_PATHS")
    quota_fail_open: bool = env_field(
        False,
        "QUOTA_FAIL_OPEN",
        description="Let requests through when the counter store is unreachable",
    )

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

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: JwtAlgorithm) -> JwtAlgorithm:
        return JwtAlgorithm(value)

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "ticket_ttl_seconds",
        "totp_interval_seconds",
        "quota_window_seconds",
    )
    @classmethod
    def _positive_seconds(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive number of seconds")
        return value

    @field_validator("ticket_ttl_seconds")
    @classmethod
    def _bounded_ticket_ttl(cls, value: int) -> int:
        if value > MAX_TICKET_TTL_SECONDS:
            raise ValueError(f"ticket TTL may not exceed {MAX_TICKET_TTL_SECONDS} seconds")
        return value

    @field_validator("totp_digits")
    @classmethod
    def _validate_digits(cls, value: int) -> int:
        if value not in (6, 7, 8):
            raise ValueError("TOTP codes are 6, 7 or 8 digits")
        return value

    @field_validator("jwt_leeway_seconds")
    @classmethod
    def _non_negative_leeway(cls, value: int) -> int:
        if value < 0:
            raise ValueError("leeway cannot be negative")
        return value

    @field_validator("quota_route_limits", "quota_exempt_paths", mode="before")
    @classmethod
    def _decode_json_env(cls, value: Any, info: ValidationInfo) -> Any:
        # Values read from the environment arrive as JSON text
        if isinstance(value, str):
            if not value.strip():
                return [] if info.field_name == "quota_exempt_paths" else {}
            return json.loads(value)
        return value

    @model_validator(mode="after")
    def _ensure_signing_material(self) -> "Settings":
        if self.jwt_algorithm.symmetric:
            if not self.jwt_secret:
                if not self.test_mode:
                    raise ValueError("JWT_SECRET is required for HMAC access tokens")
                self.jwt_secret = secrets.token_urlsafe(48)
                logger.warning("jwt_secret_generated", reason="test_mode")
            elif len(self.jwt_secret) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
        elif not (self.jwt_private_key and self.jwt_public_key):
            raise ValueError(
                f"{self.jwt_algorithm.value} requires JWT_PRIVATE_KEY and JWT_PUBLIC_KEY"
            )
        return self


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
