#!/usr/bin/env python
"""Apply pending Alembic revisions for the exclusion store before the API starts.

Usage:
    python scripts/run_migrations.py            # upgrade to head
    python scripts/run_migrations.py --sql      # print the SQL instead of running it
"""

import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from alembic.config import Config
from alembic import command

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

ROOT = Path(__file__).parent.parent


def run_migrations(sql_only: bool = False) -> bool:
    """Upgrade the exclusion store schema to the latest revision."""
    alembic_cfg = Config(str(ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(ROOT / "alembic"))

    try:
        logger.info("Upgrading exclusion store schema to head")
        command.upgrade(alembic_cfg, "head", sql=sql_only)
    except Exception as e:
        logger.error(f"Migration failed: {e}", exc_info=True)
        return False

    logger.info("Exclusion store schema is up to date")
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run exclusion store migrations")
    parser.add_argument("--sql", action="store_true", help="Emit SQL without executing it")
    args = parser.parse_args()
    sys.exit(0 if run_migrations(args.sql) else 1)
