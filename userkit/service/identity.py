from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Union

from userkit.logging import get_logger
from userkit.service.errors import ValidationError
from userkit.service.hooks import HookRegistry
from userkit.service.preferences import PreferenceStore
from userkit.storage.common import (
    IDENTITIES_TABLE,
    PREFERENCES_TABLE,
    SESSIONS_TABLE,
    Store,
    is_collection,
)
from userkit.storage.models import (
    GUEST_ID,
    ROOT_ID,
    IdentityRecord,
    parse_identity_id,
    utcnow,
)

if TYPE_CHECKING:
    from userkit.service.session import UserSession

logger = get_logger(__name__)

# columns a caller may change through ``User.set``
EDITABLE_FIELDS = ("username", "name_short", "name_full", "image", "deleted")
SEARCH_FIELDS = ("id", "username", "name_short", "name_full", "deleted")
SEARCH_COLUMNS = ("name_full", "username", "name_short")


class IdentityState(str, Enum):
    NEW = "new"
    ACTIVE = "active"
    SOFT_DELETED = "soft_deleted"
    PURGED = "purged"


class User:
    """A user identity with soft-delete, purge and undelete.

    ``NEW`` users have never been saved. Once saved they are ``ACTIVE`` or
    ``SOFT_DELETED`` depending on the ``deleted`` flag. ``PURGED`` is
    terminal: the row is gone and ``id`` is None. The guest and root
    accounts can never leave ``ACTIVE`` through this class.
    """

    def __init__(
        self,
        store: Store,
        hooks: Optional[HookRegistry] = None,
        prefs: Optional[PreferenceStore] = None,
    ) -> None:
        self.store = store
        self.hooks = hooks or HookRegistry()
        self.prefs = prefs or PreferenceStore(store)
        self.session: Optional["UserSession"] = None
        self.logged_in = False
        self.state = IdentityState.NEW
        self.id: Optional[int] = None
        self.username = ""
        self.name_short = ""
        self.name_full = ""
        self.image = ""
        self.deleted = False
        self.created_at = None
        self.updated_at = None

    def __repr__(self) -> str:
        return f"<User id={self.id!r} state={self.state.value}>"

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------
    @classmethod
    def from_row(
        cls, store: Store, row: Dict[str, Any], hooks: Optional[HookRegistry] = None
    ) -> "User":
        user = cls(store, hooks=hooks)
        user._apply(IdentityRecord.from_row(row))
        return user

    @classmethod
    def guest_instance(cls, store: Store, hooks: Optional[HookRegistry] = None) -> "User":
        user = cls(store, hooks=hooks)
        user._load_guest()
        return user

    @classmethod
    def instance_by_id(
        cls,
        store: Store,
        user_id: Any,
        fallback_to_guest: bool = False,
        hooks: Optional[HookRegistry] = None,
    ) -> Optional["User"]:
        user = cls(store, hooks=hooks)
        if user.load(user_id):
            return user
        if fallback_to_guest:
            return cls.guest_instance(store, hooks=hooks)
        return None

    def _apply(self, record: IdentityRecord) -> None:
        self.id = record.id
        self.username = record.username
        self.name_short = record.name_short
        self.name_full = record.name_full
        self.image = record.image
        self.deleted = record.deleted
        self.created_at = record.created_at
        self.updated_at = record.updated_at
        self.state = IdentityState.SOFT_DELETED if self.deleted else IdentityState.ACTIVE

    def _load_guest(self) -> None:
        row = self.store.get_one(IDENTITIES_TABLE, {"id": GUEST_ID})
        if row is not None:
            self._apply(IdentityRecord.from_row(row))
        else:
            # the guest works without a seeded row
            self._apply(IdentityRecord(id=GUEST_ID, username="guest", name_short="Guest"))
        # a guest is never deleted, whatever the row says
        self.deleted = False
        self.state = IdentityState.ACTIVE

    def load(self, user_id: Any) -> bool:
        """Load the identity row for ``user_id``.

        An id that is not an id at all switches this object to the guest and
        reports False, as does a valid id without a row (leaving the object
        untouched).
        """
        parsed = parse_identity_id(user_id)
        if parsed is None:
            logger.info("identity_invalid_id", user_id=repr(user_id))
            self._load_guest()
            return False
        if parsed == GUEST_ID:
            self._load_guest()
            return True
        row = self.store.get_one(IDENTITIES_TABLE, {"id": parsed})
        if row is None:
            return False
        self._apply(IdentityRecord.from_row(row))
        return True

    def reload(self) -> bool:
        if self.id is None:
            return False
        uid = self.id
        if self.load(uid):
            return True
        self.state = IdentityState.PURGED
        logger.info("identity_missing", user_id=uid)
        return False

    # ------------------------------------------------------------------
    # attributes
    # ------------------------------------------------------------------
    @property
    def is_guest(self) -> bool:
        return self.id == GUEST_ID

    @property
    def is_admin(self) -> bool:
        return self.id == ROOT_ID

    def set(self, **fields: Any) -> None:
        unknown = [name for name in fields if name not in EDITABLE_FIELDS]
        if unknown:
            raise ValidationError(
                "unknown identity field(s)", detail={"fields": sorted(unknown)}
            )
        for name, value in fields.items():
            setattr(self, name, value)

    def export(self) -> IdentityRecord:
        return IdentityRecord(
            id=self.id,
            username=self.username,
            name_short=self.name_short,
            name_full=self.name_full,
            image=self.image,
            deleted=self.deleted,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def visible_ident(self) -> str:
        if self.name_full:
            return self.name_full
        if self.name_short:
            return self.name_short
        return f"User #{self.id}"

    def path(self) -> str:
        if self.id is None:
            raise ValidationError("cannot build a path for an unsaved user")
        return f"/core/users/{self.id}"

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    def save(self) -> bool:
        if self.state is IdentityState.PURGED:
            return False
        now = utcnow()
        if self.id is None:
            record = self.export()
            record.created_at = record.created_at or now
            record.updated_at = now
            row = record.to_row()
            row.pop("id")
            new_id = self.store.insert(IDENTITIES_TABLE, row)
            if new_id is None:
                return False
            self.id = int(new_id)
            self.created_at = record.created_at
            self.updated_at = record.updated_at
            self.state = IdentityState.SOFT_DELETED if self.deleted else IdentityState.ACTIVE
            logger.info("identity_created", user_id=self.id)
            return True

        fields = {name: getattr(self, name) for name in EDITABLE_FIELDS}
        fields["updated_at"] = now
        updated = self.store.update(IDENTITIES_TABLE, fields, {"id": self.id})
        if not updated:
            return False
        self.updated_at = now
        self.state = IdentityState.SOFT_DELETED if self.deleted else IdentityState.ACTIVE
        return True

    def delete(self, remove_all_traces: bool = False, **opts: Any) -> bool:
        if self.id is None or self.id in (GUEST_ID, ROOT_ID):
            return False

        snapshot = self.export()
        options = {"remove_all_traces": remove_all_traces, **opts}

        if remove_all_traces:
            uid = self.id
            # dependents before the parent: a crash mid-purge must not
            # leave traces without an identity
            sessions_removed = self.store.delete(SESSIONS_TABLE, {"user_id": uid})
            prefs_removed = self.store.delete(PREFERENCES_TABLE, {"user_id": uid})
            self.store.delete(IDENTITIES_TABLE, {"id": uid})
            self.prefs.forget(uid)
            self.id = None
            self.logged_in = False
            self.state = IdentityState.PURGED
            logger.info(
                "identity_purged",
                user_id=uid,
                sessions_removed=sessions_removed,
                preferences_removed=prefs_removed,
            )
        else:
            was_deleted = self.deleted
            self.deleted = True
            if not self.save():
                self.deleted = was_deleted
                self.state = IdentityState.PURGED
                logger.info("identity_soft_delete_missing", user_id=self.id)
                return False
            logger.info("identity_soft_deleted", user_id=self.id)

        self.hooks.run("delete", snapshot, options)
        return True

    def undelete(self) -> bool:
        if self.id is None or self.id in (GUEST_ID, ROOT_ID):
            return False
        now = utcnow()
        updated = self.store.update(
            IDENTITIES_TABLE, {"deleted": False, "updated_at": now}, {"id": self.id}
        )
        if not updated:
            self.state = IdentityState.PURGED
            logger.info("identity_undelete_missing", user_id=self.id)
            return False
        self.deleted = False
        self.updated_at = now
        self.state = IdentityState.ACTIVE
        logger.info("identity_undeleted", user_id=self.id)
        self.hooks.run("undelete", self)
        return True

    # ------------------------------------------------------------------
    # session binding
    # ------------------------------------------------------------------
    def set_session(self, session: "UserSession") -> None:
        self.session = session
        self.logged_in = (
            self.id is not None and self.id != GUEST_ID and self.id == session.user_id
        )

    def _require_session(self) -> "UserSession":
        if self.session is None:
            raise ValidationError("no session bound to this user")
        return self.session

    def login(self, user_id: Any, persistent: bool = False) -> bool:
        session = self._require_session()
        if not session.login(user_id, persistent):
            return False
        if not self.load(session.user_id):
            self._load_guest()
        self.logged_in = session.logged_in and self.id == session.user_id
        self.hooks.run("login", self)
        return True

    def logout(self, everywhere: bool = False) -> bool:
        if self.logged_in:
            self._require_session().logout(everywhere=everywhere)
            self.logged_in = False
            self.hooks.run("logout", self)
        return True

    # ------------------------------------------------------------------
    # preferences
    # ------------------------------------------------------------------
    def load_prefs(self):
        return self.prefs.load(self.id)

    def get_pref(self, component: str, key: str, default: Any = None) -> Any:
        return self.prefs.get(self.id, component, key, default)

    def set_pref(self, component: str, key: str, value: Any) -> None:
        self.prefs.set(self.id, component, key, value)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    @staticmethod
    def search(store: Store, q: str, include_deleted: bool = False) -> List[Dict[str, Any]]:
        filter = {} if include_deleted else {"deleted": False}
        rows = store.get_matching(
            IDENTITIES_TABLE,
            SEARCH_COLUMNS,
            q,
            filter=filter,
            exclude={"id": GUEST_ID},
            order={"id": "ASC"},
        )
        return [{name: row.get(name) for name in SEARCH_FIELDS} for row in rows]

    @classmethod
    def get_by_ids(
        cls,
        store: Store,
        ids: Union[str, Iterable[Any]],
        include_deleted: bool = False,
        hooks: Optional[HookRegistry] = None,
    ) -> Dict[int, "User"]:
        """Users for ``ids`` keyed by id, highest id first.

        ``"all"``, or a collection containing ``"*"``, lifts the id filter.
        """
        if not ids:
            return {}
        filter: Dict[str, Any] = {}
        wildcard = ids == "all" or (is_collection(ids) and "*" in ids)
        if not wildcard:
            if isinstance(ids, str):
                ids = [ids]
            parsed = [parse_identity_id(value) for value in ids]
            filter["id"] = [value for value in parsed if value is not None]
        if not include_deleted:
            filter["deleted"] = False
        rows = store.get_many(IDENTITIES_TABLE, filter, order={"id": "DESC"})
        users: Dict[int, User] = {}
        for row in rows:
            user = cls.from_row(store, row, hooks=hooks)
            users[user.id] = user
        return users

    @staticmethod
    def empty_or_deleted(user: Optional["User"] = None) -> bool:
        return not (isinstance(user, User) and user.id is not None and user.deleted is False)
