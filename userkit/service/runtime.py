from __future__ import annotations

import threading
from typing import Optional, Tuple
from urllib.parse import urlparse, urlunparse

from userkit.config import get_settings, reset_settings_cache
from userkit.logging import get_logger, set_correlation_id
from userkit.service.hooks import HookRegistry
from userkit.service.identity import User
from userkit.service.session import UserSession
from userkit.service.transport import RequestContext
from userkit.storage.memory import MemoryStore
from userkit.storage.postgres import PostgresStore
from userkit.storage.redis_cache import SessionCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the store, the optional session cache and the hook registry."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[SessionCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = SessionCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for session tombstones; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to run without it."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; destroyed sessions are "
                    "only recognised through the backing store."
                ),
                mode=fallback_mode,
            )

        self.hooks = HookRegistry()
        logger.info("runtime_init_completed", redis_enabled=self.cache is not None)

    def new_session(self, context: RequestContext) -> UserSession:
        return UserSession(
            self.store, self.settings, context, cache=self.cache, hooks=self.hooks
        )

    def begin_request(self, context: RequestContext) -> Tuple[User, UserSession]:
        """Start the session for ``context`` and resolve the caller."""
        set_correlation_id()
        session = self.new_session(context).start()
        user = session.get_user()
        return user, session

    def close(self) -> None:
        if self.cache is not None:
            self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))
        reset_settings_cache()
        runtime = Runtime()
        return runtime
