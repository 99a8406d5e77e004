"""
Saved-search queries and run bookkeeping for the scheduler.

Usage:
    from rfp_intake.core.scheduling.saved_search_service import saved_search_service, is_due

    for search in await saved_search_service.list_enabled(session, org_id):
        if is_due(search, now):
            ...
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rfp_intake.config import settings
from rfp_intake.core.database.models import Organization, Project, SavedSearch
from rfp_intake.core.errors import StaleWriteRejected

logger = logging.getLogger("rfp_intake.scheduler.searches")

CADENCES: Dict[str, timedelta] = {
    "HOURLY": timedelta(hours=1),
    "DAILY": timedelta(days=1),
    "WEEKLY": timedelta(days=7),
}
DEFAULT_CADENCE = timedelta(days=1)


@dataclass(frozen=True)
class SavedSearchSnapshot:
    """Detached copy of a SavedSearch row, safe to use across rollbacks."""
    id: UUID
    organization_id: UUID
    name: str
    source: str
    frequency: str
    auto_import: bool
    is_enabled: bool
    last_run_at: Optional[datetime]
    criteria: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, search: SavedSearch) -> "SavedSearchSnapshot":
        """
        Raises:
            ValueError: The stored criteria are not a JSON object
        """
        criteria = search.criteria or {}
        if not isinstance(criteria, dict):
            raise ValueError(f"criteria must be an object, got {type(criteria).__name__}")
        return cls(
            id=search.id,
            organization_id=search.organization_id,
            name=search.name,
            source=search.source or "SAM_GOV",
            frequency=search.frequency,
            auto_import=bool(search.auto_import),
            is_enabled=bool(search.is_enabled),
            last_run_at=search.last_run_at,
            criteria=dict(criteria),
        )


def naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def cadence(frequency: Optional[str]) -> timedelta:
    return CADENCES.get((frequency or "").upper(), DEFAULT_CADENCE)


def is_due(search, now: datetime) -> bool:
    """
    Whether a saved search should run at ``now``.

    Disabled searches never run; never-run searches always do; otherwise
    the frequency's cadence must have fully elapsed since the last run.
    """
    if not search.is_enabled:
        return False
    if search.last_run_at is None:
        return True
    return naive_utc(now) - naive_utc(search.last_run_at) >= cadence(search.frequency)


def build_runtime_criteria(
    search,
    now: datetime,
    format_date: Callable[[datetime], str],
    lookback_days: Optional[int] = None,
    default_limit: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Saved criteria plus this run's incremental window.

    postedFrom is the last run time when there is one, else the saved
    postedFrom, else a lookback from now. postedTo is always now.
    """
    lookback_days = settings.default_lookback_days if lookback_days is None else lookback_days
    default_limit = settings.default_result_limit if default_limit is None else default_limit
    base = dict(search.criteria or {})

    if search.last_run_at is not None:
        posted_from = format_date(naive_utc(search.last_run_at))
    else:
        posted_from = base.get("postedFrom") or format_date(naive_utc(now) - timedelta(days=lookback_days))

    base.update(
        postedFrom=posted_from,
        postedTo=format_date(naive_utc(now)),
        limit=base.get("limit") or default_limit,
        offset=0,
    )
    return base


class SavedSearchService:

    async def list_organization_ids(self, session: AsyncSession) -> List[UUID]:
        result = await session.execute(
            select(Organization.id)
            .where(Organization.is_active.is_(True))
            .order_by(Organization.created_at, Organization.id)
        )
        return list(result.scalars().all())

    async def list_enabled(self, session: AsyncSession, organization_id: UUID) -> List[SavedSearchSnapshot]:
        result = await session.execute(
            select(SavedSearch)
            .where(
                SavedSearch.organization_id == organization_id,
                SavedSearch.is_enabled.is_(True),
            )
            .order_by(SavedSearch.created_at, SavedSearch.id)
        )
        snapshots = []
        for search in result.scalars().all():
            try:
                snapshots.append(SavedSearchSnapshot.from_model(search))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid saved search {search.id}: {e}")
        return snapshots

    async def get_default_project_id(self, session: AsyncSession, organization_id: UUID) -> Optional[UUID]:
        """The organization's most recently created project, or None."""
        result = await session.execute(
            select(Project.id)
            .where(Project.organization_id == organization_id)
            .order_by(Project.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def advance_last_run_at(self, session: AsyncSession, saved_search_id: UUID, run_at: datetime) -> None:
        """
        Move last_run_at forward to ``run_at``.

        Raises:
            StaleWriteRejected: The search was deleted, or already ran at or
                after ``run_at``
        """
        run_at = naive_utc(run_at)
        result = await session.execute(
            update(SavedSearch)
            .where(
                SavedSearch.id == saved_search_id,
                or_(SavedSearch.last_run_at.is_(None), SavedSearch.last_run_at < run_at),
            )
            .values(last_run_at=run_at, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StaleWriteRejected(f"Saved search {saved_search_id}: last_run_at not advanced to {run_at}")
        logger.debug(f"Saved search {saved_search_id}: last_run_at -> {run_at.isoformat()}")


saved_search_service = SavedSearchService()
