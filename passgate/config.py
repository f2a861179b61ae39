from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from passgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    """Declare a settings field bound to an environment variable name."""
    extra = kwargs.pop("json_schema_extra", None) or {}
    extra["env"] = env
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime configuration resolved from the environment and ``.env``."""

    # Storage backends
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    database_url: str | None = env_field(None, "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relaxes startup requirements for local runs and CI.",
    )

    # Tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("passgate", "JWT_ISSUER")
    jwt_audience: str = env_field("passgate-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        2 * 60 * 60,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Lifetime of access tokens and of the ACCESS_TOKEN cookie.",
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS"
    )

    # Verification codes and password transport
    verification_code_ttl_seconds: int = env_field(300, "VERIFICATION_CODE_TTL_SECONDS")
    password_transport_secret: str | None = env_field(
        None,
        "PASSWORD_TRANSPORT_SECRET",
        description="Passphrase shared with clients for encrypting password blobs.",
    )
    code_issue_limit: int = env_field(
        10,
        "CODE_ISSUE_LIMIT",
        description="Verification codes one IP may request per window; 0 disables.",
    )
    code_issue_window_seconds: int = env_field(3600, "CODE_ISSUE_WINDOW_SECONDS")
    code_max_failures: int = env_field(
        5,
        "CODE_MAX_FAILURES",
        description="Wrong guesses that burn a pending verification code; 0 disables.",
    )
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_attempt_window_seconds: int = env_field(900, "LOGIN_ATTEMPT_WINDOW_SECONDS")

    # QR login
    qr_code_ttl_seconds: int = env_field(120, "QR_CODE_EXPIRE")
    qr_result_retention_seconds: int = env_field(30, "QR_RESULT_RETENTION_SECONDS")
    qr_max_scan_attempts: int = env_field(5, "QR_MAX_SCAN_ATTEMPTS")
    qr_scan_window_seconds: int = env_field(3600, "QR_SCAN_WINDOW_SECONDS")

    # Gateway
    ip_blocklist_enabled: bool = env_field(False, "IP_BLOCKLIST_ENABLED")
    ip_blocklist_ttl_seconds: int = env_field(3600, "IP_BLOCKLIST_TTL_SECONDS")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Mail
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Passgate", "EMAIL_FROM_NAME")
    mail_dispatch_timeout_seconds: float = env_field(10.0, "MAIL_DISPATCH_TIMEOUT_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "verification_code_ttl_seconds",
        "qr_code_ttl_seconds",
        "qr_result_retention_seconds",
        "qr_scan_window_seconds",
        "login_attempt_window_seconds",
        "code_issue_window_seconds",
        "ip_blocklist_ttl_seconds",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL values must be positive")
        return value

    @field_validator(
        "qr_max_scan_attempts", "login_max_attempts", "code_issue_limit", "code_max_failures"
    )
    @classmethod
    def _non_negative_limit(cls, value: int) -> int:
        if value < 0:
            raise ValueError("limits cannot be negative")
        return value

    @model_validator(mode="after")
    def _ensure_secrets(self) -> "Settings":
        if not self.jwt_secret:
            if not self.test_mode:
                raise ValueError("JWT_SECRET must be set outside TEST_MODE")
            self.jwt_secret = secrets.token_urlsafe(48)
            logger.warning(
                "jwt_secret_generated",
                message="Tokens will not survive a restart; set JWT_SECRET.",
            )
        if not self.password_transport_secret:
            if not self.test_mode:
                raise ValueError("PASSWORD_TRANSPORT_SECRET must be set outside TEST_MODE")
            self.password_transport_secret = secrets.token_urlsafe(24)
            logger.warning("password_transport_secret_generated")
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
