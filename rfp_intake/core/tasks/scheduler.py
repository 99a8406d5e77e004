"""
Saved-search scheduler Celery task.

Triggered by Celery beat (see celery_app.py). Passes are serialized with a
distributed lock; a pass that finds the lock held is skipped, not queued.
"""
import asyncio
import logging
from typing import Any, Dict, Optional
from uuid import UUID

from celery import shared_task

from rfp_intake.config import settings

logger = logging.getLogger("rfp_intake.tasks.scheduler")

LOCK_RESOURCE = "saved_search_scheduler"


async def _run_saved_searches(organization_id: Optional[str], dry_run: bool) -> Dict[str, Any]:
    from rfp_intake.core.scheduling.saved_search_scheduler import run_scheduler
    from rfp_intake.core.shared.lock_service import lock_service
    from rfp_intake.core.tasks.ingestion import refresh_ingestion_service

    # Refresh loop-bound HTTP clients used by attachment imports
    refresh_ingestion_service()

    async with lock_service.lock(LOCK_RESOURCE, timeout=settings.scheduler_lock_timeout_seconds) as acquired:
        if not acquired:
            logger.info("Scheduler pass already running, skipping")
            return {"ok": True, "skipped": "locked"}

        report = await run_scheduler(
            organization_id=UUID(organization_id) if organization_id else None,
            dry_run=dry_run,
        )
        return report.to_dict()


@shared_task(name="rfp_intake.tasks.run_saved_searches", bind=True)
def run_saved_searches_task(self, organization_id: Optional[str] = None, dry_run: bool = False) -> Dict[str, Any]:
    logger.info(f"Saved-search pass requested (org={organization_id or 'all'}, dry_run={dry_run})")
    return asyncio.run(_run_saved_searches(organization_id, dry_run))
