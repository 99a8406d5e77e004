"""
Opportunity persistence with idempotent create.

(organization_id, project_id, source_system_id) identifies an opportunity.
Rediscovering the same solicitation updates the existing row in place; a
concurrent insert that loses the unique-index race falls back to the same
update path.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rfp_intake.core.database.models import Opportunity

logger = logging.getLogger("rfp_intake.opportunities")

_UPDATABLE = {
    "title", "solicitation_number", "notice_type", "posted_date", "response_deadline",
    "naics_code", "psc_code", "set_aside_code", "agency_name", "description",
    "base_and_all_options_value", "active", "ui_link",
}


class OpportunityService:

    async def get_by_dedup_key(
        self,
        session: AsyncSession,
        organization_id: UUID,
        project_id: UUID,
        source_system_id: str,
    ) -> Optional[Opportunity]:
        result = await session.execute(
            select(Opportunity).where(
                Opportunity.organization_id == organization_id,
                Opportunity.project_id == project_id,
                Opportunity.source_system_id == source_system_id,
            )
        )
        return result.scalar_one_or_none()

    def _apply(self, opportunity: Opportunity, fields: Dict[str, Any], raw_data: Optional[dict]) -> None:
        for name, value in fields.items():
            if name in _UPDATABLE:
                setattr(opportunity, name, value)
        if raw_data is not None:
            opportunity.raw_data = raw_data
        opportunity.updated_at = datetime.utcnow()

    async def upsert_opportunity(
        self,
        session: AsyncSession,
        *,
        organization_id: UUID,
        project_id: UUID,
        source: str,
        source_system_id: str,
        fields: Dict[str, Any],
        raw_data: Optional[dict] = None,
    ) -> Tuple[Opportunity, bool]:
        """
        Create or update an opportunity by its dedup key.

        Must be called at the start of a unit of work: losing the insert race
        rolls the session back before retrying as an update.

        Returns:
            (opportunity, created)
        """
        existing = await self.get_by_dedup_key(session, organization_id, project_id, source_system_id)
        if existing is not None:
            self._apply(existing, fields, raw_data)
            await session.flush()
            logger.info(f"Updated opportunity {existing.id} ({source} {source_system_id})")
            return existing, False

        opportunity = Opportunity(
            organization_id=organization_id,
            project_id=project_id,
            source=source,
            source_system_id=source_system_id,
        )
        self._apply(opportunity, fields, raw_data)
        session.add(opportunity)
        try:
            await session.flush()
        except IntegrityError:
            await session.rollback()
            existing = await self.get_by_dedup_key(session, organization_id, project_id, source_system_id)
            if existing is None:
                raise
            self._apply(existing, fields, raw_data)
            await session.flush()
            logger.info(f"Opportunity {source} {source_system_id} created concurrently; updated {existing.id}")
            return existing, False

        logger.info(f"Created opportunity {opportunity.id} ({source} {source_system_id})")
        return opportunity, True


opportunity_service = OpportunityService()
