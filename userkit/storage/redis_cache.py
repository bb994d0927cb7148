from __future__ import annotations

from typing import Any, Optional

from redis import Redis
from redis.exceptions import RedisError

from userkit.logging import get_logger

logger = get_logger(__name__)


class SessionCache:
    """Redis tombstones for destroyed session ids.

    A tombstone only ever adds knowledge of invalidation; the backing store
    stays authoritative, so any Redis failure degrades to a store lookup.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Any] = None,
    ):
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _key(session_id: str) -> str:
        return f"session:invalidated:{session_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before relying on tombstones."""
        self.client.ping()

    def mark_invalidated(self, session_id: str, ttl_seconds: int) -> bool:
        if not session_id:
            return False
        try:
            self.client.set(self._key(session_id), "1", ex=max(1, int(ttl_seconds)))
        except RedisError as exc:
            logger.warning(
                "session_tombstone_write_failed", session_id=session_id, error=str(exc)
            )
            return False
        return True

    def is_invalidated(self, session_id: str) -> bool:
        if not session_id:
            return False
        try:
            return bool(self.client.exists(self._key(session_id)))
        except RedisError as exc:
            logger.warning(
                "session_tombstone_read_failed", session_id=session_id, error=str(exc)
            )
            return False

    def close(self) -> None:
        self.client.close()
