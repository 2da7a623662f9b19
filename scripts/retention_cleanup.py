#!/usr/bin/env python3
"""Run the retention sweep on demand.

Permanently deletes every soft-deleted record whose retention window has
elapsed, exactly like the nightly 02:00 job. Safe to run while the service
is live: each purge is conditioned on the row's deletion age, so an
overlapping scheduled run finds nothing left to do.

Usage:
    python scripts/retention_cleanup.py              # purge now
    python scripts/retention_cleanup.py --dry-run    # list pending purges only
    python scripts/retention_cleanup.py --dry-run --due-only --json

Environment:
    DATABASE_URL   async SQLAlchemy URL (postgresql+asyncpg://... or sqlite+aiosqlite://...)
    LOG_LEVEL      structlog level (default INFO)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

_RESET = "\033[0m"
_GREEN = "\033[32m"
_YELLOW = "\033[33m"
_BOLD = "\033[1m"


def _header(msg: str) -> None:
    print(f"\n{_BOLD}{msg}{_RESET}")


def _ok(msg: str) -> None:
    print(f"{_GREEN}  [OK]{_RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"{_YELLOW} [WARN]{_RESET} {msg}")


async def _dry_run(due_only: bool, as_json: bool) -> int:
    from kitagov.database import session_scope
    from kitagov.lifecycle import RetentionScheduler

    async with session_scope() as db:
        scheduler = RetentionScheduler(db)
        pending = await scheduler.list_pending_purges()
        if due_only:
            pending = [p for p in pending if p.days_until_purge <= 0]
        policy = scheduler.policy.as_dict()

    if as_json:
        print(json.dumps([p.to_dict() for p in pending], indent=2))
        return 0

    _header("Retention policy (days)")
    for entity_type, days in sorted(policy.items()):
        print(f"   {entity_type:<16} {days:>6}")

    _header(f"Soft-deleted records: {len(pending)}")
    if not pending:
        _ok("Nothing pending")
        return 0
    for item in pending:
        marker = "DUE " if item.days_until_purge <= 0 else f"{item.days_until_purge:>4}d"
        print(
            f"   [{marker}] {item.entity_type:<14} {item.entity_id}  "
            f"deleted {item.deleted_at:%Y-%m-%d}  purge {item.purge_due_at:%Y-%m-%d}"
        )
    return 0


async def _run(as_json: bool) -> int:
    from kitagov.database import get_session_factory
    from kitagov.lifecycle import RetentionJobRunner

    result = await RetentionJobRunner(get_session_factory()).run_once()

    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
        return 0

    _header("Retention cleanup")
    for entity_type, count in result.purged_counts.items():
        if count:
            print(f"   {entity_type:<16} {count:>6}")
    if result.total:
        _ok(f"Permanently deleted {result.total} expired records ({result.duration_ms} ms)")
    else:
        _warn("No expired records found")
    return 0


async def main(argv: list[str] | None = None) -> int:
    from kitagov.config import get_settings
    from kitagov.database import close_db, init_db
    from kitagov.telemetry import configure_logging

    parser = argparse.ArgumentParser(
        prog="retention_cleanup",
        description="Purge soft-deleted records past their retention window.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List soft-deleted records and their purge dates without deleting",
    )
    parser.add_argument(
        "--due-only",
        action="store_true",
        help="With --dry-run: only show records that are already due",
    )
    parser.add_argument("--json", action="store_true", help="Machine-readable output")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
    init_db(settings)
    try:
        if args.dry_run:
            return await _dry_run(args.due_only, args.json)
        return await _run(args.json)
    finally:
        await close_db()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
