#!/usr/bin/env python
"""
Force a full exclusion recompute outside the API.

Useful after restoring a backup, after a sync that ran without notifying the
API, or when a user's visible counts look wrong.

Usage:
    python scripts/recompute_exclusions.py --user 42
    python scripts/recompute_exclusions.py --all
    python scripts/recompute_exclusions.py --pending   # run the reconciliation sweep once
"""

import asyncio
import argparse
import logging
import sys
from pathlib import Path

# Add app to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.core.errors import ExclusionError
from app.db.database import init_db
from app.services.exclusion_service import get_exclusion_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


async def main() -> int:
    parser = argparse.ArgumentParser(description="Recompute per-user exclusion sets")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--user", type=int, help="Recompute a single user")
    target.add_argument("--all", action="store_true", help="Recompute every user")
    target.add_argument("--pending", action="store_true", help="Run queued deferred recomputes")
    args = parser.parse_args()

    await init_db()
    service = get_exclusion_service()

    if args.user is not None:
        try:
            result = await service.recompute_for_user(args.user)
        except ExclusionError as e:
            logger.error(e.message)
            return 1
        logger.info(f"User {args.user}: excluded {result['excluded']} in {result['duration_ms']}ms")
        for entity_type, count in sorted(result["visible"].items()):
            logger.info(f"  {entity_type}: {count:,} visible")
        return 0

    if args.pending:
        processed = await service.reconcile_pending()
        logger.info(f"Processed {processed} pending recomputes")
        return 0

    report = await service.recompute_all_users()
    logger.info(f"Recomputed {report['success']} users, {report['failed']} failed")
    for error in report["errors"]:
        logger.error(f"  user {error['user_id']} ({error['phase']}): {error['error']}")
    return 1 if report["failed"] else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
