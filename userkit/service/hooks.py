from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable, Dict, List

from userkit.logging import get_logger

logger = get_logger(__name__)

HOOK_EVENTS = frozenset({"login", "logout", "delete", "undelete"})

Hook = Callable[..., Any]


class HookRegistry:
    """Explicit callbacks for identity lifecycle events.

    A failing hook is logged and reported through the return value of
    ``run``; the state change it observed has already happened and stays.
    """

    def __init__(self) -> None:
        self._hooks: Dict[str, List[Hook]] = defaultdict(list)

    def register(self, event: str, callback: Hook) -> None:
        if event not in HOOK_EVENTS:
            raise ValueError(f"unknown hook event: {event}")
        if not callable(callback):
            raise TypeError("hook callback must be callable")
        self._hooks[event].append(callback)

    def registered(self, event: str) -> List[Hook]:
        return list(self._hooks.get(event, []))

    def run(self, event: str, *args: Any, **kwargs: Any) -> bool:
        if event not in HOOK_EVENTS:
            raise ValueError(f"unknown hook event: {event}")
        ok = True
        for callback in list(self._hooks.get(event, [])):
            name = getattr(callback, "__qualname__", repr(callback))
            try:
                result = callback(*args, **kwargs)
            except Exception as exc:
                logger.warning(
                    "hook_failed",
                    hook_event=event,
                    hook=name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                ok = False
                continue
            if result is False:
                logger.warning("hook_failed", hook_event=event, hook=name, error="returned False")
                ok = False
        return ok
