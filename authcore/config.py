from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from authcore.logging import get_logger
from authcore.service.errors import InvalidConfiguration
from authcore.service.tokens import parse_duration

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core.

    Every field can be supplied through the environment (or a ``.env`` file)
    under the name given to ``env_field``. Malformed values are fatal at
    startup rather than per request.
    """

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authcore-api", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-client", "JWT_AUDIENCE")
    access_token_ttl: str = env_field(
        "7d", "ACCESS_TOKEN_TTL", description="Access token lifetime, e.g. 15m, 12h, 7d"
    )
    refresh_token_ttl: str = env_field(
        "30d", "REFRESH_TOKEN_TTL", description="Refresh token lifetime, e.g. 30d"
    )

    # Password hashing cost (argon2id)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST", ge=8)
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)

    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", ge=1)
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES", ge=1)

    sms_code_ttl_minutes: int = env_field(5, "SMS_CODE_TTL_MINUTES", ge=1)
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT", ge=1)
    totp_issuer: str = env_field("Authcore", "TOTP_ISSUER")
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS", ge=1)
    totp_digits: int = env_field(6, "TOTP_DIGITS", ge=6, le=8)
    totp_skew_steps: int = env_field(1, "TOTP_SKEW_STEPS", ge=0, le=2)
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")

    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", ge=1)
    email_verification_ttl_hours: int = env_field(
        24, "EMAIL_VERIFICATION_TTL_HOURS", ge=1
    )
    require_verified_email: bool = env_field(True, "REQUIRE_VERIFIED_EMAIL")

    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        gt=0,
        description="Upper bound on every persistence call made by the services",
    )

    # Rate limits per protected endpoint class
    login_rate_limit_attempts: int = env_field(10, "LOGIN_RATE_LIMIT_ATTEMPTS")
    login_rate_limit_window_minutes: int = env_field(15, "LOGIN_RATE_LIMIT_WINDOW_MINUTES")
    register_rate_limit_attempts: int = env_field(10, "REGISTER_RATE_LIMIT_ATTEMPTS")
    register_rate_limit_window_minutes: int = env_field(
        60, "REGISTER_RATE_LIMIT_WINDOW_MINUTES"
    )
    password_reset_rate_limit_attempts: int = env_field(
        5, "PASSWORD_RESET_RATE_LIMIT_ATTEMPTS"
    )
    password_reset_rate_limit_window_minutes: int = env_field(
        60, "PASSWORD_RESET_RATE_LIMIT_WINDOW_MINUTES"
    )
    default_rate_limit_attempts: int = env_field(5, "DEFAULT_RATE_LIMIT_ATTEMPTS")
    default_rate_limit_window_minutes: int = env_field(
        15, "DEFAULT_RATE_LIMIT_WINDOW_MINUTES"
    )
    rate_limit_backend: str = env_field(
        "memory", "RATE_LIMIT_BACKEND", description="memory or redis"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    trusted_proxy_hops: int = env_field(
        0,
        "TRUSTED_PROXY_HOPS",
        ge=0,
        description="Reverse proxies in front of the app whose X-Forwarded-For entries are trusted",
    )

    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )

    suspicious_window_hours: int = env_field(24, "SUSPICIOUS_WINDOW_HOURS", ge=1)
    suspicious_max_distinct_ips: int = env_field(5, "SUSPICIOUS_MAX_DISTINCT_IPS")
    suspicious_max_sessions: int = env_field(10, "SUSPICIOUS_MAX_SESSIONS")

    # Email delivery for account mail and security alerts
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Authcore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

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
        try:
            return cls(**merged)
        except ValidationError as exc:
            fields = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
            logger.error("settings_invalid", fields=fields)
            raise InvalidConfiguration(
                f"invalid configuration: {', '.join(fields)}"
            ) from exc

    @field_validator("jwt_secret")
    @classmethod
    def _validate_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise InvalidConfiguration("JWT_SECRET is required")
        if len(value) < MIN_SECRET_LENGTH:
            raise InvalidConfiguration(
                f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("access_token_ttl", "refresh_token_ttl")
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        parse_duration(value)
        return value

    @field_validator("rate_limit_backend")
    @classmethod
    def _validate_rate_limit_backend(cls, value: str) -> str:
        normalized = (value or "memory").lower()
        if normalized not in {"memory", "redis"}:
            raise InvalidConfiguration(f"unknown rate limit backend: {value}")
        return normalized

    def rate_limit_rule(self, endpoint_class: str) -> tuple[int, int]:
        """Return ``(max_attempts, window_minutes)`` for an endpoint class."""
        rules = {
            "login": (self.login_rate_limit_attempts, self.login_rate_limit_window_minutes),
            "register": (
                self.register_rate_limit_attempts,
                self.register_rate_limit_window_minutes,
            ),
            "password_reset": (
                self.password_reset_rate_limit_attempts,
                self.password_reset_rate_limit_window_minutes,
            ),
        }
        return rules.get(
            endpoint_class,
            (self.default_rate_limit_attempts, self.default_rate_limit_window_minutes),
        )


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
