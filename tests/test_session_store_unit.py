"""Tests for the session handler: read/write/destroy/gc and their invariants."""

from datetime import timedelta

import pytest

from userkit.service.session import SessionStore, destroy_session, list_active
from userkit.storage.common import SESSIONS_TABLE
from userkit.storage.models import SessionRecord, utcnow


class FakeTombstones:
    def __init__(self):
        self.marked = {}

    def mark_invalidated(self, session_id, ttl_seconds):
        self.marked[session_id] = ttl_seconds
        return True

    def is_invalidated(self, session_id):
        return session_id in self.marked


@pytest.fixture
def handler(memory_store, settings, context):
    return SessionStore(memory_store, settings, context)


def _row(store, session_id):
    return store.get_one(SESSIONS_TABLE, {"session_id": session_id})


class TestReadWrite:
    def test_open_and_close_succeed(self, handler):
        assert handler.open("", "USERSESS") is True
        assert handler.close() is True

    def test_read_missing_returns_empty(self, handler, context):
        assert handler.read("nope") == ""
        assert len(context.jar) == 0

    def test_write_inserts_then_read_returns_payload(self, handler, memory_store):
        handler.user_id = 42
        assert handler.write("sid-1", '{"user": 42}') is True

        row = _row(memory_store, "sid-1")
        assert row["user_id"] == 42
        assert row["persistent"] is False
        assert row["invalidated"] is False
        assert row["client_ip"] == "203.0.113.7"
        assert row["request_uri"] == "/dashboard"
        assert handler.read("sid-1") == '{"user": 42}'

    def test_write_updates_existing(self, handler, memory_store):
        handler.write("sid-1", "first")
        created_at = _row(memory_store, "sid-1")["created_at"]

        assert handler.write("sid-1", "second") is True

        row = _row(memory_store, "sid-1")
        assert row["data"] == "second"
        assert row["created_at"] == created_at

    def test_write_empty_id_fails(self, handler):
        assert handler.write("", "payload") is False

    def test_write_uses_positive_int_ttl(self, handler, memory_store):
        before = utcnow()
        handler.write("sid-ttl", "x", ttl=60)
        expires_at = _row(memory_store, "sid-ttl")["expires_at"]
        assert before + timedelta(seconds=59) <= expires_at <= utcnow() + timedelta(seconds=61)

    @pytest.mark.parametrize("ttl", [None, 0, -5, True, "60", 1.5])
    def test_write_falls_back_to_default_ttl(self, handler, memory_store, settings, ttl):
        before = utcnow()
        handler.write("sid-default", "x", ttl=ttl)
        expires_at = _row(memory_store, "sid-default")["expires_at"]
        lower = before + timedelta(seconds=settings.session_ttl_seconds - 1)
        assert expires_at >= lower


class TestInvalidation:
    def test_destroy_is_monotone(self, handler, memory_store):
        """Once destroyed, writes fail and reads come back empty."""
        handler.write("sid-1", "payload")
        assert handler.destroy("sid-1") is True

        assert handler.write("sid-1", "resurrect") is False
        assert handler.read("sid-1") == ""
        assert _row(memory_store, "sid-1")["invalidated"] is True
        assert _row(memory_store, "sid-1")["data"] == "payload"

    def test_destroyed_session_refused_by_fresh_handler(
        self, memory_store, settings, context
    ):
        first = SessionStore(memory_store, settings, context)
        first.write("sid-1", "payload")
        first.destroy("sid-1")

        second = SessionStore(memory_store, settings, context)
        assert second.write("sid-1", "late") is False
        assert second.read("sid-1") == ""
        assert _row(memory_store, "sid-1")["invalidated"] is True

    def test_read_invalidated_clears_cookie(self, memory_store, settings, context):
        record = SessionRecord.new("sid-dead", 60)
        record.invalidated = True
        memory_store.insert(SESSIONS_TABLE, record.to_row())

        handler = SessionStore(memory_store, settings, context)
        assert handler.read("sid-dead") == ""

        instruction = context.jar.latest(settings.session_name)
        assert instruction is not None
        assert instruction.clears
        assert handler.is_dead("sid-dead")

    def test_destroy_is_idempotent(self, handler):
        assert handler.destroy("missing") is True
        assert handler.destroy("missing") is True
        assert handler.destroy("") is True

    def test_tombstone_written_and_honoured(self, memory_store, settings, context):
        tombstones = FakeTombstones()
        handler = SessionStore(memory_store, settings, context, cache=tombstones)
        handler.write("sid-1", "payload")
        handler.destroy("sid-1")
        assert tombstones.marked["sid-1"] == settings.session_tombstone_ttl_seconds

        other = SessionStore(memory_store, settings, context, cache=tombstones)
        assert other.read("sid-1") == ""
        assert other.write("sid-1", "late") is False

    def test_manual_destroy(self, memory_store, handler):
        handler.write("sid-1", "payload")
        assert destroy_session(memory_store, "") is False
        assert destroy_session(memory_store, "sid-1") is True
        assert _row(memory_store, "sid-1")["invalidated"] is True


class TestGarbageCollection:
    def test_gc_removes_only_expired(self, handler, memory_store):
        now = utcnow()
        handler.write("fresh", "x")
        handler.write("stale", "x")
        memory_store.update(
            SESSIONS_TABLE,
            {"expires_at": now - timedelta(seconds=1)},
            {"session_id": "stale"},
        )
        boundary = SessionRecord.new("boundary", 60)
        boundary.expires_at = now
        memory_store.insert(SESSIONS_TABLE, boundary.to_row())
        handler._now = lambda: now

        assert handler.gc(3600) == 1
        assert _row(memory_store, "stale") is None
        assert _row(memory_store, "fresh") is not None
        # expires_at == now is not yet expired
        assert _row(memory_store, "boundary") is not None

    def test_close_runs_gc(self, handler, memory_store):
        handler.write("stale", "x")
        memory_store.update(
            SESSIONS_TABLE,
            {"expires_at": utcnow() - timedelta(days=1)},
            {"session_id": "stale"},
        )
        handler.close()
        assert _row(memory_store, "stale") is None

    def test_close_skips_gc_when_disabled(self, memory_store, settings, context):
        quiet = settings.model_copy(update={"gc_on_close": False})
        handler = SessionStore(memory_store, quiet, context)
        handler.write("stale", "x")
        memory_store.update(
            SESSIONS_TABLE,
            {"expires_at": utcnow() - timedelta(days=1)},
            {"session_id": "stale"},
        )
        handler.close()
        assert _row(memory_store, "stale") is not None

    def test_expired_rows_still_readable_until_gc(self, handler, memory_store):
        handler.write("stale", "payload")
        memory_store.update(
            SESSIONS_TABLE,
            {"expires_at": utcnow() - timedelta(days=1)},
            {"session_id": "stale"},
        )
        assert handler.read("stale") == "payload"


def test_list_active_newest_first(memory_store):
    older = SessionRecord.new("older", 60)
    older.created_at = utcnow() - timedelta(minutes=5)
    memory_store.insert(SESSIONS_TABLE, older.to_row())
    memory_store.insert(SESSIONS_TABLE, SessionRecord.new("newer", 60).to_row())
    dead = SessionRecord.new("dead", 60)
    dead.invalidated = True
    memory_store.insert(SESSIONS_TABLE, dead.to_row())

    assert [r.session_id for r in list_active(memory_store)] == ["newer", "older"]
