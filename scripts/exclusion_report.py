#!/usr/bin/env python
"""Read-only report on the exclusion store.

Prints the table size, each user's rows broken down by type and reason,
stored visible counts, and deferred recomputes still pending. Writes nothing.

Usage:
    python scripts/exclusion_report.py
    python scripts/exclusion_report.py --user 42
"""

import asyncio
import argparse
import sys
from pathlib import Path

# Add app to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.db.database import async_session_maker
from app.services.diagnostics import build_exclusion_report


def print_report(report: dict) -> None:
    print("=" * 60)
    print("EXCLUSION STORE")
    print("=" * 60)
    print(f"Total rows: {report['total_rows']:,}")

    for user in report["users"]:
        uid = user["user_id"]
        print(f"\nUser {uid}: {user['total']:,} excluded")
        visible = report["visible_counts"].get(uid, {})
        for entity_type, reasons in sorted(user["by_type"].items()):
            breakdown = ", ".join(f"{reason}={count:,}" for reason, count in sorted(reasons.items()))
            shown = visible.get(entity_type)
            shown_str = f" | visible {shown:,}" if shown is not None else ""
            print(f"  {entity_type:<10} {breakdown}{shown_str}")

    pending = report["pending_recomputes"]
    print(f"\nPending deferred recomputes: {len(pending)}")
    for row in pending:
        error = f" last error: {row['last_error']}" if row["last_error"] else ""
        print(f"  user {row['user_id']} ({row['reason']}) since {row['requested_at']} attempts={row['attempts']}{error}")


async def main() -> int:
    parser = argparse.ArgumentParser(description="Report exclusion store contents")
    parser.add_argument("--user", type=int, help="Only show this user")
    args = parser.parse_args()

    async with async_session_maker() as db:
        report = await build_exclusion_report(db, args.user)

    print_report(report)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
