#!/usr/bin/env python3
"""Seed the reserved guest and root identities.

Usage:
    # Using environment variables:
    ROOT_USERNAME=admin python scripts/bootstrap_accounts.py

    # Or with command line args, also sweeping expired sessions:
    python scripts/bootstrap_accounts.py --root-username admin --sweep-sessions

Environment Variables:
    ROOT_USERNAME: Username for the root account (id 1)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def seed_identity(store, user_id: int, username: str, name_short: str, dry_run: bool) -> str:
    from userkit.storage.common import IDENTITIES_TABLE
    from userkit.storage.models import IdentityRecord, utcnow

    if store.get_one(IDENTITIES_TABLE, {"id": user_id}) is not None:
        return "exists"
    if dry_run:
        return "dry_run"
    now = utcnow()
    record = IdentityRecord(
        id=user_id,
        username=username,
        name_short=name_short,
        created_at=now,
        updated_at=now,
    )
    store.insert(IDENTITIES_TABLE, record.to_row())
    return "created"


def bootstrap_accounts(root_username: str, *, sweep: bool = False, dry_run: bool = False) -> dict:
    """Create the guest and root rows if missing.

    Returns:
        dict with the status of each account and the number of swept sessions
    """
    # Import here to avoid loading config before env vars are set
    from userkit.service.runtime import get_runtime
    from userkit.storage.common import SESSIONS_TABLE
    from userkit.storage.models import GUEST_ID, ROOT_ID, utcnow

    runtime = get_runtime()
    store = runtime.store

    result = {
        "guest": seed_identity(store, GUEST_ID, "guest", "Guest", dry_run),
        "root": seed_identity(store, ROOT_ID, root_username, "Root", dry_run),
        "swept": 0,
    }
    if sweep and not dry_run:
        result["swept"] = store.delete_where(SESSIONS_TABLE, "expires_at < ?", [utcnow()])
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Seed the guest and root identities for userkit",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--root-username",
        default=os.environ.get("ROOT_USERNAME", "root"),
        help="Root username (or set ROOT_USERNAME env var)",
    )
    parser.add_argument(
        "--sweep-sessions",
        action="store_true",
        help="Also delete expired session records",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.root_username.strip():
        print("Error: --root-username must not be empty")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/userkit-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_accounts(
            args.root_username, sweep=args.sweep_sessions, dry_run=args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    prefix = "[DRY RUN] " if args.dry_run else ""
    print(f"{prefix}guest account: {result['guest']}")
    print(f"{prefix}root account: {result['root']}")
    if args.sweep_sessions:
        print(f"{prefix}expired sessions removed: {result['swept']}")


if __name__ == "__main__":
    main()
