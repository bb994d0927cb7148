"""Transport-neutral request values.

The session layer never touches a web framework. Inbound cookies and client
metadata arrive in a ``RequestContext`` and every cookie the layer wants the
client to store or forget is appended to its ``CookieJar`` as a
``CookieInstruction`` for the caller to translate into response headers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

# Any moment in the past tells a client to drop the cookie.
COOKIE_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class CookieInstruction:
    name: str
    value: str
    max_age: Optional[int] = None
    expires: Optional[datetime] = None
    path: str = "/"
    domain: Optional[str] = None
    secure: bool = False
    httponly: bool = True

    @property
    def clears(self) -> bool:
        return self.value == "" and self.expires is not None and self.expires <= datetime.now(
            timezone.utc
        )


class CookieJar:
    """Ordered outbound cookie instructions with shared attributes."""

    def __init__(
        self,
        *,
        path: str = "/",
        domain: Optional[str] = None,
        secure: bool = False,
        httponly: bool = True,
    ) -> None:
        self.path = path
        self.domain = domain
        self.secure = secure
        self.httponly = httponly
        self.instructions: List[CookieInstruction] = []

    @classmethod
    def from_settings(cls, settings: Any) -> "CookieJar":
        return cls(
            path=settings.cookie_path,
            domain=settings.cookie_domain,
            secure=settings.cookie_secure,
            httponly=settings.cookie_httponly,
        )

    def set(self, name: str, value: str, *, max_age: Optional[int] = None) -> CookieInstruction:
        expires = None
        if max_age is not None:
            expires = datetime.now(timezone.utc) + timedelta(seconds=max_age)
        instruction = CookieInstruction(
            name=name,
            value=value,
            max_age=max_age,
            expires=expires,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=self.httponly,
        )
        self.instructions.append(instruction)
        return instruction

    def clear(self, name: str) -> CookieInstruction:
        instruction = CookieInstruction(
            name=name,
            value="",
            max_age=0,
            expires=COOKIE_EPOCH,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=self.httponly,
        )
        self.instructions.append(instruction)
        return instruction

    def latest(self, name: str) -> Optional[CookieInstruction]:
        for instruction in reversed(self.instructions):
            if instruction.name == name:
                return instruction
        return None

    def __iter__(self):
        return iter(self.instructions)

    def __len__(self) -> int:
        return len(self.instructions)


@dataclass
class RequestContext:
    cookies: Dict[str, Any] = field(default_factory=dict)
    client_ip: Optional[str] = None
    request_uri: Optional[str] = None
    script_path: Optional[str] = None
    jar: CookieJar = field(default_factory=CookieJar)

    @classmethod
    def build(
        cls,
        cookies: Optional[Mapping[str, Any]] = None,
        *,
        settings: Any = None,
        client_ip: Optional[str] = None,
        request_uri: Optional[str] = None,
        script_path: Optional[str] = None,
    ) -> "RequestContext":
        jar = CookieJar.from_settings(settings) if settings is not None else CookieJar()
        return cls(
            cookies=dict(cookies or {}),
            client_ip=client_ip,
            request_uri=request_uri,
            script_path=script_path,
            jar=jar,
        )

    def cookie(self, name: str) -> Optional[str]:
        """Return a non-empty string cookie; anything else counts as absent."""
        value = self.cookies.get(name)
        if not isinstance(value, str) or not value:
            return None
        return value
