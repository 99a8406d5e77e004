#!/usr/bin/env python3
"""
Run one saved-search scheduler pass outside Celery beat.

Useful for forcing a run for a single tenant or previewing what a pass
would find without importing anything.

Usage:
    # All tenants
    rfp-intake-scheduler

    # One tenant, search only (no imports, last_run_at untouched)
    rfp-intake-scheduler --org-id <uuid> --dry-run

    # Local SQLite database: create missing tables first
    rfp-intake-scheduler --init-db
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional
from uuid import UUID

from rfp_intake.core.scheduling.saved_search_scheduler import run_scheduler
from rfp_intake.core.shared.database_service import database_service
from rfp_intake.logging_config import configure_logging

logger = logging.getLogger("rfp_intake.commands.scheduler")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run due saved searches and import their results")
    parser.add_argument(
        "--org-id",
        type=UUID,
        help="Only run saved searches for this organization",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Search only; skip imports and leave last_run_at unchanged",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create missing tables before running",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Override LOG_LEVEL (DEBUG, INFO, WARNING, ...)",
    )
    return parser


async def _run(org_id: Optional[UUID], dry_run: bool, init_db: bool = False) -> dict:
    try:
        if init_db:
            await database_service.init_db()
        report = await run_scheduler(organization_id=org_id, dry_run=dry_run)
        return report.to_dict()
    finally:
        await database_service.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        report = asyncio.run(_run(args.org_id, args.dry_run, args.init_db))
    except Exception as e:
        logger.exception(f"Scheduler pass failed: {e}")
        print(json.dumps({"ok": False, "error": str(e)}, indent=2))
        return 1

    print(json.dumps(report, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
