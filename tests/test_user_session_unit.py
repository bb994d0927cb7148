"""Tests for login, logout, identity resolution and the persistent-login path."""

from datetime import timedelta

import pytest

from userkit.service.errors import ValidationError
from userkit.service.resolver import (
    ActiveSessionStrategy,
    IdentityResolver,
    PersistentLoginStrategy,
    Resolution,
)
from userkit.service.session import UserSession, encode_payload
from userkit.service.transport import RequestContext
from userkit.storage.common import SESSIONS_TABLE
from userkit.storage.models import GUEST_ID, SessionRecord, utcnow


def _request(settings, **cookies):
    return RequestContext.build(cookies, settings=settings, client_ip="198.51.100.2")


def _start(store, settings, context, **kwargs):
    return UserSession(store, settings, context, **kwargs).start()


def _persistent_rows(store, user_id):
    return store.get_many(SESSIONS_TABLE, {"user_id": user_id, "persistent": True})


class TestResolution:
    def test_no_cookies_resolves_guest(self, seeded_store, settings):
        session = _start(seeded_store, settings, _request(settings))
        user = session.get_user()
        assert user.id == GUEST_ID
        assert user.is_guest
        assert user.logged_in is False
        assert session.logged_in is False

    def test_active_session_wins(self, seeded_store, settings):
        seeded_store.insert(
            SESSIONS_TABLE,
            SessionRecord.new("sid-1", 600, data=encode_payload({"user": 42})).to_row(),
        )
        context = _request(settings, USERSESS="sid-1")

        session = _start(seeded_store, settings, context)
        user = session.get_user()

        assert user.id == 42
        assert user.logged_in is True
        assert session.user_id == 42

    def test_active_session_beats_persistent_cookie(self, seeded_store, settings, make_identity):
        make_identity(seeded_store, 7, "other")
        seeded_store.insert(
            SESSIONS_TABLE,
            SessionRecord.new("sid-1", 600, data=encode_payload({"user": 42})).to_row(),
        )
        seeded_store.insert(
            SESSIONS_TABLE,
            SessionRecord.new("tok", 600, user_id=7, persistent=True).to_row(),
        )
        context = _request(settings, USERSESS="sid-1", USERSESS_persist="tok")

        resolution = _start(seeded_store, settings, context).resolve()

        assert resolution == Resolution(user_id=42, source="session")

    @pytest.mark.parametrize(
        "payload",
        ["not json", "[1, 2]", encode_payload({"user": "abc"}), encode_payload({"user": True})],
    )
    def test_garbled_payload_degrades_to_guest(self, seeded_store, settings, payload):
        seeded_store.insert(SESSIONS_TABLE, SessionRecord.new("sid-1", 600, data=payload).to_row())
        session = _start(seeded_store, settings, _request(settings, USERSESS="sid-1"))
        assert session.get_user().id == GUEST_ID

    @pytest.mark.parametrize("cookie", ["", "unknown-token", 12345, None])
    def test_bad_persistent_cookie_degrades_to_guest(self, seeded_store, settings, cookie):
        context = RequestContext.build({"USERSESS_persist": cookie}, settings=settings)
        assert _start(seeded_store, settings, context).get_user().id == GUEST_ID

    def test_invalidated_persistent_token_ignored(self, seeded_store, settings):
        record = SessionRecord.new("tok", 600, user_id=42, persistent=True)
        record.invalidated = True
        seeded_store.insert(SESSIONS_TABLE, record.to_row())
        context = _request(settings, USERSESS_persist="tok")
        assert _start(seeded_store, settings, context).get_user().id == GUEST_ID

    def test_interactive_record_is_not_a_persistent_token(self, seeded_store, settings):
        seeded_store.insert(SESSIONS_TABLE, SessionRecord.new("sid", 600, user_id=42).to_row())
        context = _request(settings, USERSESS_persist="sid")
        assert _start(seeded_store, settings, context).get_user().id == GUEST_ID

    def test_unknown_user_falls_back_to_guest(self, seeded_store, settings):
        seeded_store.insert(
            SESSIONS_TABLE,
            SessionRecord.new("sid-1", 600, data=encode_payload({"user": 999})).to_row(),
        )
        session = _start(seeded_store, settings, _request(settings, USERSESS="sid-1"))
        user = session.get_user()
        assert user.id == GUEST_ID
        assert user.logged_in is False

    def test_strategies_are_pluggable(self, seeded_store, settings):
        class Fixed:
            name = "fixed"

            def resolve(self, session):
                return Resolution(user_id=42, source=self.name)

        resolver = IdentityResolver([Fixed(), ActiveSessionStrategy()])
        session = _start(seeded_store, settings, _request(settings), resolver=resolver)
        assert session.get_user().id == 42

    def test_empty_strategy_list_yields_guest(self, seeded_store, settings):
        session = _start(seeded_store, settings, _request(settings))
        assert IdentityResolver([]).resolve(session) == Resolution(GUEST_ID, "guest")

    def test_persistent_strategy_in_isolation(self, seeded_store, settings):
        seeded_store.insert(
            SESSIONS_TABLE, SessionRecord.new("tok", 600, user_id=42, persistent=True).to_row()
        )
        session = _start(seeded_store, settings, _request(settings, USERSESS_persist="tok"))
        resolution = PersistentLoginStrategy().resolve(session)
        assert resolution == Resolution(42, "persistent_cookie", promote=True)


class TestLogin:
    def test_login_binds_user(self, seeded_store, settings):
        session = _start(seeded_store, settings, _request(settings))
        assert session.login(42) is True
        assert session.data["user"] == 42
        assert session.logged_in is True
        assert _persistent_rows(seeded_store, 42) == []

    @pytest.mark.parametrize("user_id", [None, GUEST_ID, "0"])
    def test_guest_login_is_not_logged_in(self, seeded_store, settings, user_id):
        context = _request(settings)
        session = _start(seeded_store, settings, context)
        assert session.login(user_id, persistent=True) is True
        assert session.logged_in is False
        assert seeded_store.get_many(SESSIONS_TABLE) == []
        assert context.jar.latest(settings.persistent_cookie_name) is None

    @pytest.mark.parametrize("user_id", [-1, "abc", 1.5, True, [42]])
    def test_invalid_id_raises(self, seeded_store, settings, user_id):
        session = _start(seeded_store, settings, _request(settings))
        with pytest.raises(ValidationError):
            session.login(user_id)

    def test_persistent_login_scenario(self, seeded_store, settings):
        """A remember-me token alone resolves the user on a later request."""
        context = _request(settings)
        session = _start(seeded_store, settings, context)
        before = utcnow()

        assert session.login(42, persistent=True) is True

        rows = _persistent_rows(seeded_store, 42)
        assert len(rows) == 1
        token_row = rows[0]
        assert token_row["user_id"] == 42
        expected = before + timedelta(seconds=31536000)
        assert abs((token_row["expires_at"] - expected).total_seconds()) < 5
        cookie = context.jar.latest("USERSESS_persist")
        assert cookie.value == token_row["session_id"]
        assert len(cookie.value) == 64
        assert cookie.max_age == 31536000

        # next request: only the persistent cookie
        later = _request(settings, USERSESS_persist=cookie.value)
        next_session = _start(seeded_store, settings, later)
        user = next_session.get_user()
        assert user.id == 42
        assert user.logged_in is True
        assert next_session.data["user"] == 42

        # the interactive session is refreshed, the token is not regenerated
        assert next_session.finish() is True
        assert len(_persistent_rows(seeded_store, 42)) == 1
        issued = later.jar.latest(settings.session_name)
        interactive = seeded_store.get_one(SESSIONS_TABLE, {"session_id": issued.value})
        assert interactive["persistent"] is False
        assert interactive["user_id"] == 42
        assert later.jar.latest("USERSESS_persist") is None

    def test_repeat_persistent_logins_keep_old_tokens(self, seeded_store, settings):
        for _ in range(2):
            session = _start(seeded_store, settings, _request(settings))
            session.login(42, persistent=True)
        assert len(_persistent_rows(seeded_store, 42)) == 2

    def test_failed_token_insert_leaves_session_untouched(self, seeded_store, settings):
        class RefusingStore:
            def __init__(self, inner):
                self.inner = inner

            def insert(self, table, fields):
                return None

            def __getattr__(self, name):
                return getattr(self.inner, name)

        context = _request(settings)
        session = _start(RefusingStore(seeded_store), settings, context)

        assert session.login(42, persistent=True) is False
        assert session.logged_in is False
        assert "user" not in session.data
        assert context.jar.latest("USERSESS_persist") is None


class TestLogout:
    def _logged_in(self, store, settings, persistent=False):
        context = _request(settings)
        session = _start(store, settings, context)
        session.login(42, persistent=persistent)
        session.finish()
        token = context.jar.latest("USERSESS_persist")
        cookies = {"USERSESS": session.session_id}
        if token is not None:
            cookies["USERSESS_persist"] = token.value
        return cookies

    def test_logout_destroys_interactive_and_persistent(self, seeded_store, settings):
        cookies = self._logged_in(seeded_store, settings, persistent=True)
        context = _request(settings, **cookies)
        session = _start(seeded_store, settings, context)
        session.get_user()

        assert session.logout() is True

        interactive = seeded_store.get_one(SESSIONS_TABLE, {"session_id": cookies["USERSESS"]})
        assert interactive["invalidated"] is True
        assert _persistent_rows(seeded_store, 42) == []
        assert context.jar.latest("USERSESS").clears
        assert context.jar.latest("USERSESS_persist").clears
        assert session.user_id == GUEST_ID
        assert session.data == {}

    def test_logout_leaves_other_devices(self, seeded_store, settings):
        self._logged_in(seeded_store, settings, persistent=True)
        cookies = self._logged_in(seeded_store, settings)
        session = _start(seeded_store, settings, _request(settings, **cookies))
        session.get_user()
        session.logout()
        assert len(_persistent_rows(seeded_store, 42)) == 1

    def test_logout_everywhere_removes_all_rows(self, seeded_store, settings):
        self._logged_in(seeded_store, settings, persistent=True)
        cookies = self._logged_in(seeded_store, settings)
        session = _start(seeded_store, settings, _request(settings, **cookies))
        session.get_user()

        session.logout(everywhere=True)

        assert seeded_store.get_many(SESSIONS_TABLE, {"user_id": 42}) == []

    def test_destroyed_session_cannot_be_resumed(self, seeded_store, settings):
        cookies = self._logged_in(seeded_store, settings)
        session = _start(seeded_store, settings, _request(settings, **cookies))
        session.get_user()
        session.logout()
        session.finish()

        replay = _request(settings, **cookies)
        resumed = _start(seeded_store, settings, replay)
        assert resumed.get_user().id == GUEST_ID
        assert replay.jar.latest("USERSESS").clears
        assert resumed.session_id is None


class TestSave:
    def test_guest_without_data_writes_nothing(self, seeded_store, settings):
        context = _request(settings)
        session = _start(seeded_store, settings, context)
        session.get_user()
        assert session.finish() is True
        assert seeded_store.get_many(SESSIONS_TABLE) == []
        assert len(context.jar) == 0

    def test_new_session_issues_cookie(self, seeded_store, settings):
        context = _request(settings)
        session = _start(seeded_store, settings, context)
        session.login(42)
        session.save()
        cookie = context.jar.latest("USERSESS")
        assert cookie.value == session.session_id
        assert cookie.max_age is None
        row = seeded_store.get_one(SESSIONS_TABLE, {"session_id": session.session_id})
        assert row["user_id"] == 42
        assert row["client_ip"] == "198.51.100.2"
