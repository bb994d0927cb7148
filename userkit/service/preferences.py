from __future__ import annotations

import copy
from typing import Any, Dict, Optional

from userkit.logging import get_logger
from userkit.service.errors import ValidationError
from userkit.storage.common import PREFERENCES_TABLE, Store
from userkit.storage.models import PreferenceEntry, Scalar, parse_identity_id, utcnow

logger = get_logger(__name__)

# component -> key -> value
PreferenceMap = Dict[str, Dict[str, Scalar]]


def is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


class PreferenceStore:
    """Per-user scalar preferences, loaded in full on first access.

    A user that was never loaded has no cache entry at all, which is distinct
    from a loaded user with no preferences (an empty map).
    """

    def __init__(self, store: Store) -> None:
        self.store = store
        self._cache: Dict[int, PreferenceMap] = {}

    @staticmethod
    def _require_id(user_id: Any) -> int:
        parsed = parse_identity_id(user_id)
        if parsed is None:
            raise ValidationError(
                "preferences need a saved user id", detail={"user_id": repr(user_id)}
            )
        return parsed

    def load(self, user_id: Any) -> PreferenceMap:
        uid = self._require_id(user_id)
        prefs: PreferenceMap = {}
        for row in self.store.get_many(PREFERENCES_TABLE, {"user_id": uid}):
            entry = PreferenceEntry.from_row(row)
            prefs.setdefault(entry.component, {})[entry.key] = entry.value
        self._cache[uid] = prefs
        return prefs

    def loaded(self, user_id: Any) -> bool:
        uid = parse_identity_id(user_id)
        return uid is not None and uid in self._cache

    def snapshot(self, user_id: Any) -> Optional[PreferenceMap]:
        uid = parse_identity_id(user_id)
        if uid is None or uid not in self._cache:
            return None
        return copy.deepcopy(self._cache[uid])

    def forget(self, user_id: Any) -> None:
        uid = parse_identity_id(user_id)
        if uid is not None:
            self._cache.pop(uid, None)

    def _ensure(self, user_id: Any) -> PreferenceMap:
        uid = self._require_id(user_id)
        if uid not in self._cache:
            return self.load(uid)
        return self._cache[uid]

    def get(self, user_id: Any, component: str, key: str, default: Any = None) -> Any:
        return self._ensure(user_id).get(component, {}).get(key, default)

    def set(self, user_id: Any, component: str, key: str, value: Any) -> None:
        if not is_scalar(value):
            raise ValidationError(
                "preference value must be scalar",
                detail={"component": component, "key": key, "type": type(value).__name__},
            )
        uid = self._require_id(user_id)
        prefs = self._ensure(uid)
        now = utcnow()
        if key not in prefs.get(component, {}):
            entry = PreferenceEntry(
                user_id=uid,
                component=component,
                key=key,
                value=value,
                created_at=now,
                updated_at=now,
            )
            self.store.insert(PREFERENCES_TABLE, entry.to_row())
        else:
            self.store.update(
                PREFERENCES_TABLE,
                {"value": value, "updated_at": now},
                {"user_id": uid, "component": component, "key": key},
            )
        prefs.setdefault(component, {})[key] = value
        logger.debug("preference_set", user_id=uid, component=component, key=key)
