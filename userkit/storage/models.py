from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union

# Reserved identity ids. The guest is never "logged in" and neither account
# can be deleted.
GUEST_ID = 0
ROOT_ID = 1

Scalar = Union[str, int, float, bool]

_ID_PATTERN = re.compile(r"^[0-9]+\Z")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_identity_id(value: Any) -> Optional[int]:
    """Return ``value`` as an identity id, or None when it is not one.

    Accepts non-negative ints and strings of ASCII digits. Bools are
    rejected even though they are ints.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and _ID_PATTERN.match(value):
        return int(value)
    return None


def is_member_id(value: Any) -> bool:
    """True for a syntactically valid id that is not the guest."""
    parsed = parse_identity_id(value)
    return parsed is not None and parsed != GUEST_ID


@dataclass
class SessionRecord:
    session_id: str
    data: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: datetime = field(default_factory=utcnow)
    user_id: Optional[int] = None
    client_ip: Optional[str] = None
    request_uri: Optional[str] = None
    script_path: Optional[str] = None
    persistent: bool = False
    invalidated: bool = False

    @classmethod
    def new(
        cls,
        session_id: str,
        ttl_seconds: int,
        *,
        data: str = "",
        user_id: Optional[int] = None,
        persistent: bool = False,
        client_ip: Optional[str] = None,
        request_uri: Optional[str] = None,
        script_path: Optional[str] = None,
    ) -> "SessionRecord":
        now = utcnow()
        return cls(
            session_id=session_id,
            data=data,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            user_id=user_id,
            client_ip=client_ip,
            request_uri=request_uri,
            script_path=script_path,
            persistent=persistent,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SessionRecord":
        user_id = row.get("user_id")
        return cls(
            session_id=str(row["session_id"]),
            data=row.get("data") or "",
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            expires_at=row.get("expires_at") or utcnow(),
            user_id=int(user_id) if user_id is not None else None,
            client_ip=row.get("client_ip"),
            request_uri=row.get("request_uri"),
            script_path=row.get("script_path"),
            persistent=bool(row.get("persistent", False)),
            invalidated=bool(row.get("invalidated", False)),
        )

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class IdentityRecord:
    id: Optional[int]
    username: str = ""
    name_short: str = ""
    name_full: str = ""
    image: str = ""
    deleted: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "IdentityRecord":
        return cls(
            id=int(row["id"]) if row.get("id") is not None else None,
            username=row.get("username") or "",
            name_short=row.get("name_short") or "",
            name_full=row.get("name_full") or "",
            image=row.get("image") or "",
            deleted=bool(row.get("deleted", False)),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PreferenceEntry:
    user_id: int
    component: str
    key: str
    value: Scalar
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PreferenceEntry":
        return cls(
            id=row.get("id"),
            user_id=int(row["user_id"]),
            component=row["component"],
            key=row["key"],
            value=row.get("value"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        if row["id"] is None:
            row.pop("id")
        return row
