from __future__ import annotations

import json
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from userkit.config import Settings
from userkit.logging import get_logger
from userkit.service.errors import ValidationError
from userkit.service.hooks import HookRegistry
from userkit.service.identity import User
from userkit.service.resolver import IdentityResolver, Resolution
from userkit.service.transport import RequestContext
from userkit.storage.common import SESSIONS_TABLE, Store
from userkit.storage.models import GUEST_ID, SessionRecord, parse_identity_id, utcnow
from userkit.storage.redis_cache import SessionCache

logger = get_logger(__name__)


class SessionStore:
    """Durable session records behind the open/close/read/write/destroy/gc contract.

    One handler serves one request. Ids it has seen destroyed or invalidated
    are remembered in ``dead`` so a late write in the same request cannot
    bring them back; the optional Redis tombstones carry the same knowledge
    across requests.
    """

    def __init__(
        self,
        store: Store,
        settings: Settings,
        context: RequestContext,
        *,
        cache: Optional[SessionCache] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.context = context
        self.cache = cache
        self.dead: Set[str] = set()
        # user id written alongside the payload; bound by UserSession
        self.user_id: Optional[int] = None

    def _now(self) -> datetime:
        return utcnow()

    def open(self, save_path: str = "", session_name: str = "") -> bool:
        return True

    def close(self) -> bool:
        if self.settings.gc_on_close:
            self.gc(self.settings.session_ttl_seconds)
        return True

    def is_dead(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        if session_id in self.dead:
            return True
        if self.cache is not None and self.cache.is_invalidated(session_id):
            self.dead.add(session_id)
            return True
        return False

    def _mark_dead(self, session_id: str) -> None:
        if session_id not in self.dead:
            self.dead.add(session_id)
            self.context.jar.clear(self.settings.session_name)

    def read(self, session_id: str) -> str:
        if not session_id:
            return ""
        if session_id in self.dead:
            return ""
        if self.cache is not None and self.cache.is_invalidated(session_id):
            self._mark_dead(session_id)
            return ""
        row = self.store.get_one(SESSIONS_TABLE, {"session_id": session_id})
        if row is None:
            return ""
        record = SessionRecord.from_row(row)
        if record.invalidated:
            logger.info("session_read_invalidated", session_id=session_id)
            self._mark_dead(session_id)
            return ""
        return record.data

    def write(self, session_id: str, payload: str, ttl: Any = None) -> bool:
        if not session_id:
            return False
        if self.is_dead(session_id):
            logger.info("session_write_refused", session_id=session_id, reason="dead")
            return False
        now = self._now()
        lifetime = (
            ttl
            if isinstance(ttl, int) and not isinstance(ttl, bool) and ttl > 0
            else self.settings.session_ttl_seconds
        )
        expires_at = now + timedelta(seconds=lifetime)
        diagnostics = {
            "client_ip": self.context.client_ip,
            "request_uri": self.context.request_uri,
            "script_path": self.context.script_path,
        }
        row = self.store.get_one(SESSIONS_TABLE, {"session_id": session_id})
        if row is None:
            record = SessionRecord(
                session_id=session_id,
                data=payload,
                created_at=now,
                updated_at=now,
                expires_at=expires_at,
                user_id=self.user_id,
                **diagnostics,
            )
            return self.store.insert(SESSIONS_TABLE, record.to_row()) is not None
        if row.get("invalidated"):
            self.dead.add(session_id)
            logger.info("session_write_refused", session_id=session_id, reason="invalidated")
            return False
        updated = self.store.update(
            SESSIONS_TABLE,
            {
                "data": payload,
                "expires_at": expires_at,
                "updated_at": now,
                "user_id": self.user_id,
                **diagnostics,
            },
            # invalidated=False keeps a concurrent destroy from being overwritten
            {"session_id": session_id, "invalidated": False},
        )
        return updated > 0

    def destroy(self, session_id: str) -> bool:
        if not session_id:
            return True
        self.store.update(
            SESSIONS_TABLE,
            {"invalidated": True, "updated_at": self._now()},
            {"session_id": session_id},
        )
        self.dead.add(session_id)
        if self.cache is not None:
            self.cache.mark_invalidated(
                session_id, self.settings.session_tombstone_ttl_seconds
            )
        logger.info("session_destroyed", session_id=session_id)
        return True

    def gc(self, max_lifetime: Optional[int] = None) -> int:
        removed = self.store.delete_where(SESSIONS_TABLE, "expires_at < ?", [self._now()])
        if removed:
            logger.info("session_gc", removed=removed, max_lifetime=max_lifetime)
        return removed


def destroy_session(store: Store, session_id: str) -> bool:
    """Invalidate a session outside any request, e.g. from an admin tool."""

    if not session_id:
        return False
    store.update(
        SESSIONS_TABLE,
        {"invalidated": True, "updated_at": utcnow()},
        {"session_id": session_id},
    )
    logger.info("session_destroyed", session_id=session_id, manual=True)
    return True


def list_active(store: Store) -> List[SessionRecord]:
    rows = store.get_many(
        SESSIONS_TABLE, {"invalidated": False}, order={"created_at": "DESC"}
    )
    return [SessionRecord.from_row(row) for row in rows]


def encode_payload(data: Dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True) if data else ""


def decode_payload(payload: str) -> Dict[str, Any]:
    if not payload:
        return {}
    try:
        decoded = json.loads(payload)
    except (TypeError, ValueError):
        logger.warning("session_payload_garbled")
        return {}
    if not isinstance(decoded, dict):
        logger.warning("session_payload_garbled", payload_type=type(decoded).__name__)
        return {}
    return decoded


class UserSession:
    """Request-scoped login state on top of a ``SessionStore``."""

    def __init__(
        self,
        store: Store,
        settings: Settings,
        context: RequestContext,
        *,
        cache: Optional[SessionCache] = None,
        hooks: Optional[HookRegistry] = None,
        resolver: Optional[IdentityResolver] = None,
        handler: Optional[SessionStore] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.context = context
        self.hooks = hooks
        self.resolver = resolver or IdentityResolver()
        self.handler = handler or SessionStore(store, settings, context, cache=cache)
        self.session_id: Optional[str] = None
        self.data: Dict[str, Any] = {}
        self.user_id: int = GUEST_ID

    @property
    def logged_in(self) -> bool:
        return self.user_id is not None and self.user_id != GUEST_ID

    @staticmethod
    def new_session_id() -> str:
        return secrets.token_urlsafe(32)

    def start(self) -> "UserSession":
        self.handler.open("", self.settings.session_name)
        session_id = self.context.cookie(self.settings.session_name)
        self.data = {}
        if session_id is not None:
            self.data = decode_payload(self.handler.read(session_id))
            if self.handler.is_dead(session_id):
                # a fresh id is issued on save
                session_id = None
        self.session_id = session_id
        return self

    def _set_user_id(self, user_id: int) -> None:
        self.user_id = user_id
        self.handler.user_id = user_id

    def resolve(self) -> Resolution:
        self._set_user_id(GUEST_ID)
        resolution = self.resolver.resolve(self)
        if resolution.promote:
            self.login(resolution.user_id, persistent=False)
        else:
            self._set_user_id(resolution.user_id)
        return resolution

    def get_user(self) -> User:
        self.resolve()
        user = User.instance_by_id(
            self.store, self.user_id, fallback_to_guest=True, hooks=self.hooks
        )
        user.set_session(self)
        return user

    def login(self, user_id: Any, persistent: bool = False) -> bool:
        if user_id is None:
            parsed = GUEST_ID
        else:
            parsed = parse_identity_id(user_id)
            if parsed is None:
                raise ValidationError("invalid user id", detail={"user_id": repr(user_id)})

        if persistent and parsed != GUEST_ID:
            token = secrets.token_urlsafe(48)
            ttl = self.settings.persistent_login_ttl_seconds
            record = SessionRecord.new(
                token,
                ttl,
                user_id=parsed,
                persistent=True,
                client_ip=self.context.client_ip,
                request_uri=self.context.request_uri,
                script_path=self.context.script_path,
            )
            if not self.store.insert(SESSIONS_TABLE, record.to_row()):
                logger.warning("persistent_login_failed", user_id=parsed)
                return False
            self.context.jar.set(self.settings.persistent_cookie_name, token, max_age=ttl)
            logger.info("persistent_login_issued", user_id=parsed, token=token)

        self._set_user_id(parsed)
        self.data["user"] = parsed
        logger.info("session_login", user_id=parsed, persistent=persistent)
        return True

    def _persistent_token(self) -> Optional[str]:
        token = self.context.cookie(self.settings.persistent_cookie_name)
        if token is not None:
            return token
        # issued earlier in this same request
        issued = self.context.jar.latest(self.settings.persistent_cookie_name)
        if issued is not None and issued.value:
            return issued.value
        return None

    def logout(self, everywhere: bool = False) -> bool:
        user_id = self.user_id
        self.data = {}
        if self.session_id is not None:
            self.handler.destroy(self.session_id)
        self.context.jar.clear(self.settings.session_name)
        self.session_id = None

        token = self._persistent_token()
        if token is not None:
            self.store.delete(SESSIONS_TABLE, {"session_id": token, "persistent": True})
            self.context.jar.clear(self.settings.persistent_cookie_name)

        if everywhere and user_id is not None and user_id != GUEST_ID:
            removed = self.store.delete(SESSIONS_TABLE, {"user_id": user_id})
            logger.info("session_logout_everywhere", user_id=user_id, removed=removed)

        self._set_user_id(GUEST_ID)
        logger.info("session_logout", user_id=user_id, everywhere=everywhere)
        return True

    def save(self) -> bool:
        if self.session_id is None:
            if not self.data:
                return True
            self.session_id = self.new_session_id()
            self.context.jar.set(self.settings.session_name, self.session_id)
        return self.handler.write(self.session_id, encode_payload(self.data))

    def finish(self) -> bool:
        saved = self.save()
        self.handler.close()
        return saved
