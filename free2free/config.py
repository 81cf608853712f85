from __future__ import annotations

import os
from typing import Any
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core, read from the environment and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/free2free", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Optional Redis holding OAuth state for multi-node deployments",
    )
    shared_fs_root: str = env_field("/srv/free2free", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    session_ttl_minutes: int = env_field(24 * 60, "SESSION_TTL_MINUTES")
    oauth_state_ttl_minutes: int = env_field(10, "OAUTH_STATE_TTL_MINUTES")
    oauth_timeout_seconds: float = env_field(
        10.0,
        "OAUTH_TIMEOUT_SECONDS",
        description="Upper bound for each call to an OAuth provider",
    )

    facebook_client_id: str | None = env_field(None, "FACEBOOK_KEY")
    facebook_client_secret: str | None = env_field(None, "FACEBOOK_SECRET")
    instagram_client_id: str | None = env_field(None, "INSTAGRAM_KEY")
    instagram_client_secret: str | None = env_field(None, "INSTAGRAM_SECRET")

    app_base_url: str = env_field("http://localhost:8080", "BASE_URL")
    frontend_origin: str | None = env_field(
        None,
        "FRONTEND_ORIGIN",
        description="postMessage target origin for the OAuth completion page",
    )

    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(
        False, "LOG_DEV_MODE", description="Colored console output instead of JSON lines"
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

    @field_validator("app_base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in {"https", "http"}:
            raise ValueError("BASE_URL must be http(s)")
        if not parsed.netloc:
            raise ValueError("BASE_URL must include host")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValueError("Insecure BASE_URL not allowed outside localhost")
        return value.rstrip("/")

    @field_validator(
        "facebook_client_id",
        "facebook_client_secret",
        "instagram_client_id",
        "instagram_client_secret",
        "redis_url",
        "jwt_secret",
        "frontend_origin",
    )
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    def oauth_credentials(self, provider: str) -> tuple[str | None, str | None]:
        """Return ``(client_id, client_secret)`` for a provider name."""
        if provider == "facebook":
            return self.facebook_client_id, self.facebook_client_secret
        if provider == "instagram":
            return self.instagram_client_id, self.instagram_client_secret
        return None, None

    def oauth_redirect_uri(self, provider: str) -> str:
        return f"{self.app_base_url}/auth/{provider}/callback"

    def completion_origin(self) -> str:
        if self.frontend_origin:
            return self.frontend_origin
        parsed = urlparse(self.app_base_url)
        return f"{parsed.scheme}://{parsed.netloc}"


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
