#!/usr/bin/env python3
"""Scheduled housekeeping for login defenses and impersonation records.

Usage:
    # Terminate expired impersonations, abandoned 2FA logins and stale
    # trusted devices (run e.g. hourly):
    python scripts/authguard_maintenance.py sweep

    # Delete ended impersonation records older than the retention window (daily):
    python scripts/authguard_maintenance.py cleanup --days 90

    # Lift a lockout on behalf of an administrator:
    python scripts/authguard_maintenance.py unlock --identifier user@example.com --admin-id <id>

Environment Variables:
    SHARED_FS_ROOT: Directory holding the persisted session/impersonation state
    REDIS_URL: Redis holding login counters and lockouts (optional)
    IMPERSONATION_RETENTION_DAYS: Default for cleanup --days

The state file is locked while it is read or written, so these commands are
safe to run while the server is up.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def run_sweep(runtime, dry_run: bool = False) -> dict:
    if dry_run:
        now = runtime.impersonation._clock()
        pending = [
            r
            for r in runtime.store.list_impersonations()
            if r.terminated_at is None and r.expires_at <= now
        ]
        stale = runtime.two_factor.stale_sessions()
        print(
            f"[DRY RUN] Would terminate {len(pending)} expired impersonation session(s) "
            f"and {len(stale)} abandoned two-factor login(s)"
        )
        return {"status": "dry_run", "count": len(pending), "challenges": len(stale)}
    count = runtime.auth.sweep_expired_impersonations()
    challenges = runtime.auth.sweep_expired_challenges()
    devices = runtime.auth.purge_expired_trusted_devices()
    print(f"Terminated {count} expired impersonation session(s)")
    print(f"Removed {challenges} abandoned two-factor login(s)")
    print(f"Removed {devices} expired trusted device(s)")
    return {
        "status": "swept",
        "count": count,
        "challenges": challenges,
        "trusted_devices": devices,
    }


def run_cleanup(runtime, days: Optional[int], dry_run: bool = False) -> dict:
    retention = days if days is not None else runtime.settings.impersonation_retention_days
    if dry_run:
        print(f"[DRY RUN] Would delete ended impersonation records older than {retention} day(s)")
        return {"status": "dry_run", "days": retention}
    count = runtime.auth.cleanup_old_impersonation_records(retention)
    print(f"Deleted {count} impersonation record(s) older than {retention} day(s)")
    return {"status": "cleaned", "count": count, "days": retention}


def run_unlock(runtime, identifier: str, admin_id: str, dry_run: bool = False) -> dict:
    status = runtime.auth.lockout_status(identifier)
    if dry_run:
        print(
            f"[DRY RUN] Would unlock account (locked={status.locked}, "
            f"failed_count={status.failed_count})"
        )
        return {"status": "dry_run", "locked": status.locked}
    existed = runtime.auth.unlock_account(identifier, admin_id)
    print("Lockout cleared" if existed else "No lockout record found")
    return {"status": "unlocked" if existed else "no_record", "was_locked": status.locked}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Housekeeping for authguard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("sweep", help="Expire impersonations, 2FA challenges and trusted devices")
    cleanup = sub.add_parser("cleanup", help="Delete old ended impersonation records")
    cleanup.add_argument(
        "--days",
        type=int,
        default=None,
        help="Retention window in days (default: IMPERSONATION_RETENTION_DAYS)",
    )
    unlock = sub.add_parser("unlock", help="Clear an account lockout")
    unlock.add_argument("--identifier", required=True, help="Login identifier (email)")
    unlock.add_argument(
        "--admin-id",
        default=os.environ.get("AUTHGUARD_ADMIN_ID"),
        help="Administrator performing the unlock (or set AUTHGUARD_ADMIN_ID)",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "unlock" and not args.admin_id:
        print("Error: --admin-id or AUTHGUARD_ADMIN_ID environment variable required")
        return 1

    # Import here to avoid loading config before env vars are set
    from authguard.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if args.command == "sweep":
            run_sweep(runtime, args.dry_run)
        elif args.command == "cleanup":
            run_cleanup(runtime, args.days, args.dry_run)
        else:
            run_unlock(runtime, args.identifier, args.admin_id, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
