from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from userkit.logging import get_logger

logger = get_logger(__name__)


# One year, the lifetime of a "remember me" login token.
PERSISTENT_LOGIN_TTL_SECONDS = 60 * 60 * 24 * 365


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and session layer."""

    database_url: str = env_field(
        "postgresql://localhost:5432/userkit", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/userkit", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Run without Redis and with deterministic defaults for CI.",
    )

    # Session handling
    session_name: str = env_field(
        "USERSESS",
        "SESSION_NAME",
        description="Cookie name of the interactive session; the persistent cookie appends '_persist'.",
    )
    session_ttl_seconds: int = env_field(
        3600,
        "SESSION_TTL_SECONDS",
        description="Default lifetime of an interactive session record",
    )
    persistent_login_ttl_seconds: int = env_field(
        PERSISTENT_LOGIN_TTL_SECONDS,
        "PERSISTENT_LOGIN_TTL_SECONDS",
        description="Lifetime of a remember-me token and its cookie",
    )
    session_tombstone_ttl_seconds: int = env_field(
        86400,
        "SESSION_TOMBSTONE_TTL_SECONDS",
        description="How long Redis remembers a destroyed session id",
    )
    gc_on_close: bool = env_field(
        True,
        "SESSION_GC_ON_CLOSE",
        description="Sweep expired session records whenever a session is closed",
    )

    # Cookie attributes handed to the transport layer
    cookie_path: str = env_field("/", "COOKIE_PATH")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    cookie_secure: bool = env_field(False, "COOKIE_SECURE")
    cookie_httponly: bool = env_field(True, "COOKIE_HTTPONLY")

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

    @property
    def persistent_cookie_name(self) -> str:
        return f"{self.session_name}_persist"

    @field_validator("session_name")
    @classmethod
    def _validate_session_name(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("session_name must not be empty")
        return value

    @field_validator(
        "session_ttl_seconds",
        "persistent_login_ttl_seconds",
        "session_tombstone_ttl_seconds",
    )
    @classmethod
    def _validate_positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("ttl values must be positive")
        return value

    @field_validator("redis_url")
    @classmethod
    def _normalize_redis_url(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            test_mode=_settings_cache.test_mode,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
