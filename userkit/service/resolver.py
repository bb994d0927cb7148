"""Decide who the caller is.

Strategies are tried in order and the first one that returns a
``Resolution`` wins; ``None`` means "continue". When every strategy passes,
the caller is the guest. Missing or garbled cookies and payloads never
raise; only store failures escape.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, List, Optional, Protocol

from userkit.logging import get_logger
from userkit.storage.common import SESSIONS_TABLE
from userkit.storage.models import GUEST_ID, is_member_id, parse_identity_id

if TYPE_CHECKING:
    from userkit.service.session import UserSession

logger = get_logger(__name__)


@dataclass(frozen=True)
class Resolution:
    user_id: int
    source: str
    # re-bind the id to the interactive session as a non-persistent login
    promote: bool = False


class ResolutionStrategy(Protocol):
    name: str

    def resolve(self, session: "UserSession") -> Optional[Resolution]: ...


class ActiveSessionStrategy:
    """Use the user id already bound into the live session payload."""

    name = "session"

    def resolve(self, session: "UserSession") -> Optional[Resolution]:
        bound = session.data.get("user")
        if not is_member_id(bound):
            return None
        return Resolution(user_id=parse_identity_id(bound), source=self.name)


class PersistentLoginStrategy:
    """Trade a remember-me cookie for the user id on its token record."""

    name = "persistent_cookie"

    def resolve(self, session: "UserSession") -> Optional[Resolution]:
        token = session.context.cookie(session.settings.persistent_cookie_name)
        if token is None:
            return None
        row = session.store.get_one(
            SESSIONS_TABLE,
            {"session_id": token, "invalidated": False, "persistent": True},
        )
        if row is None:
            logger.info("persistent_login_unknown_token", token=token)
            return None
        user_id = row.get("user_id")
        if not is_member_id(user_id):
            return None
        return Resolution(
            user_id=parse_identity_id(user_id), source=self.name, promote=True
        )


def default_strategies() -> List[ResolutionStrategy]:
    return [ActiveSessionStrategy(), PersistentLoginStrategy()]


class IdentityResolver:
    def __init__(self, strategies: Optional[Iterable[ResolutionStrategy]] = None) -> None:
        self.strategies: List[ResolutionStrategy] = (
            list(strategies) if strategies is not None else default_strategies()
        )

    def resolve(self, session: "UserSession") -> Resolution:
        for strategy in self.strategies:
            resolution = strategy.resolve(session)
            if resolution is not None:
                logger.debug(
                    "identity_resolved",
                    source=resolution.source,
                    user_id=resolution.user_id,
                    promote=resolution.promote,
                )
                return resolution
        return Resolution(user_id=GUEST_ID, source="guest")
