from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)


class StoreStrategy(str, Enum):
    """Backing store used for counters, sessions and remember tokens."""

    REDIS = "redis"
    POSTGRES = "postgres"
    MEMORY = "memory"


class FingerprintMode(str, Enum):
    """How validation reacts when the device fingerprint no longer matches.

    - STRICT: revoke the session and reject the request
    - LENIENT: accept the request but flag the principal for step-up checks
    """

    STRICT = "strict"
    LENIENT = "lenient"


class VerificationPolicy(str, Enum):
    """Which identifier kinds must be verified before a login succeeds."""

    ENFORCE_ALL = "enforce_all"
    SKIP_EMAIL = "skip_email"
    SKIP_ALL = "skip_all"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and login-security core."""

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relaxes secret requirements for local runs and CI.",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("sessionguard", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionguard-clients", "JWT_AUDIENCE")
    token_ttl_minutes: int = env_field(
        15,
        "TOKEN_TTL_MINUTES",
        description="Lower bound for bearer token lifetime; raised to cover the session.",
    )
    session_ttl_minutes: int = env_field(24 * 60, "SESSION_TTL_MINUTES")
    remember_token_ttl_days: int = env_field(30, "REMEMBER_TOKEN_TTL_DAYS")
    fingerprint_mode: FingerprintMode = env_field(
        FingerprintMode.STRICT, "FINGERPRINT_MODE"
    )

    store_strategy: StoreStrategy = env_field(StoreStrategy.REDIS, "STORE_STRATEGY")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    database_url: str = env_field(
        "postgresql://localhost:5432/sessionguard", "DATABASE_URL"
    )
    store_timeout_seconds: float = env_field(
        2.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for any single store round-trip.",
    )

    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    login_attempt_window_seconds: int = env_field(15 * 60, "LOGIN_ATTEMPT_WINDOW_SECONDS")
    account_lockout_seconds: int = env_field(30 * 60, "ACCOUNT_LOCKOUT_SECONDS")
    ip_max_attempts: int = env_field(20, "IP_MAX_ATTEMPTS")
    ip_block_seconds: int = env_field(60 * 60, "IP_BLOCK_SECONDS")
    login_delay_enabled: bool = env_field(True, "LOGIN_DELAY_ENABLED")
    login_delay_threshold: int = env_field(
        2,
        "LOGIN_DELAY_THRESHOLD",
        description="Failures before progressive delays start; must stay below MAX_LOGIN_ATTEMPTS.",
    )
    login_base_delay_seconds: float = env_field(1.0, "LOGIN_BASE_DELAY_SECONDS")
    login_max_delay_seconds: float = env_field(10.0, "LOGIN_MAX_DELAY_SECONDS")
    captcha_enabled: bool = env_field(False, "CAPTCHA_ENABLED")
    captcha_threshold: int = env_field(3, "CAPTCHA_THRESHOLD")
    captcha_verify_url: str | None = env_field(None, "CAPTCHA_VERIFY_URL")
    captcha_secret: str | None = env_field(None, "CAPTCHA_SECRET")

    verification_policy: VerificationPolicy = env_field(
        VerificationPolicy.ENFORCE_ALL, "VERIFICATION_POLICY"
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

    @field_validator("store_strategy")
    @classmethod
    def _validate_store_strategy(cls, value: StoreStrategy) -> StoreStrategy:
        return StoreStrategy(value)

    @field_validator("fingerprint_mode")
    @classmethod
    def _validate_fingerprint_mode(cls, value: FingerprintMode) -> FingerprintMode:
        return FingerprintMode(value)

    @field_validator("verification_policy")
    @classmethod
    def _validate_verification_policy(
        cls, value: VerificationPolicy
    ) -> VerificationPolicy:
        return VerificationPolicy(value)

    @field_validator("jwt_issuer", "jwt_audience")
    @classmethod
    def _require_claim_value(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("issuer and audience must be non-empty")
        return value.strip()

    @field_validator(
        "token_ttl_minutes",
        "session_ttl_minutes",
        "remember_token_ttl_days",
        "max_login_attempts",
        "login_attempt_window_seconds",
        "ip_max_attempts",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _check_secret_and_thresholds(self) -> "Settings":
        if not self.jwt_secret:
            if not self.test_mode:
                raise ValueError("JWT_SECRET is required outside TEST_MODE")
            logger.warning("jwt_secret_test_default")
            self.jwt_secret = "sessionguard-test-secret"
        if self.login_delay_threshold >= self.max_login_attempts:
            raise ValueError("LOGIN_DELAY_THRESHOLD must be below MAX_LOGIN_ATTEMPTS")
        return self

    @property
    def remember_token_ttl_seconds(self) -> int:
        return self.remember_token_ttl_days * 24 * 60 * 60


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
