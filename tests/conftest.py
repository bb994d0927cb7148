import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="userkit_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Tombstones are optional; unit tests exercise the Redis cache with a fake client
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from userkit.config import Settings  # noqa: E402
from userkit.service.runtime import reset_runtime_for_tests  # noqa: E402
from userkit.service.transport import RequestContext  # noqa: E402
from userkit.storage.common import IDENTITIES_TABLE  # noqa: E402
from userkit.storage.memory import MemoryStore  # noqa: E402
from userkit.storage.models import GUEST_ID, ROOT_ID, IdentityRecord, utcnow  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # each test gets its own state file so memory-store data never leaks
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(session_ttl_seconds=3600, redis_url=None)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def context(settings):
    return RequestContext.build(
        settings=settings,
        client_ip="203.0.113.7",
        request_uri="/dashboard",
        script_path="/srv/app/index.py",
    )


def insert_identity(store, user_id, username, **fields):
    now = utcnow()
    record = IdentityRecord(
        id=user_id, username=username, created_at=now, updated_at=now, **fields
    )
    return store.insert(IDENTITIES_TABLE, record.to_row())


@pytest.fixture
def seeded_store(memory_store):
    """Memory store holding the reserved accounts plus one regular user (id 42)."""
    insert_identity(memory_store, GUEST_ID, "guest", name_short="Guest")
    insert_identity(memory_store, ROOT_ID, "root", name_short="Root")
    insert_identity(memory_store, 42, "alice", name_full="Alice Example")
    return memory_store


@pytest.fixture
def make_identity():
    return insert_identity
