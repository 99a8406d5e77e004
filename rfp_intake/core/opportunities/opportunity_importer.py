"""
Import one solicitation: detail fetch, opportunity upsert, attachments.

Shared by the saved-search scheduler and the manual import entry point.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from rfp_intake.connectors.base import ProviderAdapter, QueryWindow
from rfp_intake.core.attachments.attachment_import_service import (
    AttachmentImportResult,
    AttachmentImportService,
)
from rfp_intake.core.opportunities.opportunity_service import OpportunityService, opportunity_service

logger = logging.getLogger("rfp_intake.opportunities.importer")


@dataclass
class OpportunityImportResult:
    opportunity_id: UUID
    source_system_id: str
    created: bool
    attachments: List[AttachmentImportResult] = field(default_factory=list)

    @property
    def imported_file_count(self) -> int:
        return sum(1 for a in self.attachments if a.imported)


class OpportunityImporter:

    def __init__(
        self,
        attachment_importer: AttachmentImportService,
        opportunities: Optional[OpportunityService] = None,
    ):
        self.attachment_importer = attachment_importer
        self.opportunities = opportunities or opportunity_service

    async def import_opportunity(
        self,
        session: AsyncSession,
        *,
        provider: ProviderAdapter,
        api_key: str,
        organization_id: UUID,
        project_id: UUID,
        source_system_id: str,
        window: Optional[QueryWindow] = None,
        source_document_id: Optional[str] = None,
    ) -> OpportunityImportResult:
        """
        Fetch, upsert and import attachments for one solicitation.

        The opportunity is committed before its attachments are imported, so
        attachment failures never roll it back.

        Raises:
            ProviderError: If the detail fetch fails
        """
        detail = await provider.fetch_detail(source_system_id, api_key, window)
        refs = provider.extract_attachments(detail)

        opportunity, created = await self.opportunities.upsert_opportunity(
            session,
            organization_id=organization_id,
            project_id=project_id,
            source=provider.SOURCE,
            source_system_id=source_system_id,
            fields=provider.to_opportunity_fields(detail),
            raw_data=detail,
        )
        opportunity_id = opportunity.id
        await session.commit()

        attachments = await self.attachment_importer.import_attachments(
            session,
            organization_id=organization_id,
            project_id=project_id,
            opportunity_id=opportunity_id,
            source_id=source_system_id,
            refs=refs,
            source_document_id=source_document_id,
        )
        result = OpportunityImportResult(
            opportunity_id=opportunity_id,
            source_system_id=source_system_id,
            created=created,
            attachments=attachments,
        )
        logger.info(
            f"{provider.SOURCE} {source_system_id}: opportunity {opportunity_id} "
            f"({'created' if created else 'updated'}), {result.imported_file_count} file(s) imported"
        )
        return result
