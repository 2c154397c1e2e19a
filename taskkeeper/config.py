from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from taskkeeper.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, *, fallbacks: tuple[str, ...] = (), **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    if fallbacks:
        extra["env_fallbacks"] = list(fallbacks)
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core and its outbound integrations."""

    # Persistence backend (SurrealDB HTTP endpoint)
    surreal_url: str = env_field("http://127.0.0.1:8000", "SURREAL_URL")
    surreal_ns: str = env_field("taskkeeper", "SURREAL_NS")
    surreal_db: str = env_field("taskkeeper", "SURREAL_DB")
    surreal_user: str = env_field("root", "SURREAL_USER")
    surreal_pass: str | None = env_field(None, "SURREAL_PASS")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep users and sessions in process memory instead of the backend",
    )

    # Transactional email (Brevo)
    brevo_api_key: str | None = env_field(None, "BREVO_API_KEY", fallbacks=("API_KEY",))
    email_api_url: str = env_field(
        "https://api.brevo.com/v3/smtp/email", "EMAIL_API_URL"
    )
    email_from_address: str | None = env_field(
        None, "FROM_EMAIL", fallbacks=("SEND_FROM",)
    )
    email_from_name: str = env_field("Taskkeeper", "FROM_NAME")
    app_base_url: str = env_field("http://localhost:8080", "APP_BASE_URL")

    # Credentials
    legacy_hash_secret: str | None = env_field(
        None,
        "LEGACY_HASH_SECRET",
        description="Secret mixed into pre-argon2 password digests; unset disables legacy logins",
    )

    # Token lifetimes
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS", ge=1)
    verification_code_ttl_minutes: int = env_field(
        10, "VERIFICATION_CODE_TTL_MINUTES", ge=1
    )
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES", ge=1)

    # Rate limits (requests per window, keyed by client IP)
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT", ge=1)
    signup_rate_limit: int = env_field(3, "SIGNUP_RATE_LIMIT", ge=1)
    forgot_password_rate_limit: int = env_field(3, "FORGOT_PASSWORD_RATE_LIMIT", ge=1)
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS", ge=1)

    # Background sweeps
    rate_limit_cleanup_interval_seconds: int = env_field(
        60, "RATE_LIMIT_CLEANUP_INTERVAL_SECONDS", ge=1
    )
    session_cleanup_interval_seconds: int = env_field(
        3600, "SESSION_CLEANUP_INTERVAL_SECONDS", ge=1
    )

    # Outbound HTTP
    backend_retry_delays_ms: list[int] = env_field(
        [200, 500, 1000], "BACKEND_RETRY_DELAYS_MS"
    )
    email_retry_delays_ms: list[int] = env_field(
        [1000, 2000, 5000], "EMAIL_RETRY_DELAYS_MS"
    )
    http_max_attempts: int = env_field(3, "HTTP_MAX_ATTEMPTS", ge=1)
    http_timeout_seconds: float = env_field(10.0, "HTTP_TIMEOUT_SECONDS", gt=0)

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            if not isinstance(extra, dict):
                extra = {}
            candidates = [extra.get("env") or name.upper(), *extra.get("env_fallbacks", [])]
            for env_name in candidates:
                if env_name in os.environ:
                    merged[name] = os.environ[env_name]
                    break
                if env_file_values.get(env_name) is not None:
                    merged[name] = env_file_values[env_name]
                    break
        return cls(**merged)

    @field_validator("backend_retry_delays_ms", "email_retry_delays_ms", mode="before")
    @classmethod
    def _split_delays(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [int(part) for part in value.split(",") if part.strip()]
        return value

    @field_validator("backend_retry_delays_ms", "email_retry_delays_ms")
    @classmethod
    def _validate_delays(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("retry schedule needs at least one delay")
        if any(delay < 0 for delay in value):
            raise ValueError("retry delays must be non-negative")
        return value

    @field_validator("surreal_url", "app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _warn_missing_credentials(self) -> "Settings":
        if not self.use_memory_store and not self.surreal_pass:
            logger.warning("surreal_password_missing", surreal_url=self.surreal_url)
        if not self.brevo_api_key:
            logger.info("email_api_key_missing", message="emails will be logged only")
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
