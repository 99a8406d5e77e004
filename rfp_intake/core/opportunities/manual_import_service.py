"""
Manual (user-initiated) solicitation import.

Synchronous entry point for the API layer. Every failure surfaces as a
ManualImportError carrying a status code and a message that is safe to show
to the user; internal details only go to the log.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from rfp_intake.config import settings
from rfp_intake.connectors.base import QueryWindow, get_provider
from rfp_intake.core.attachments.attachment_import_service import AttachmentImportResult
from rfp_intake.core.errors import ManualImportError, ProviderError
from rfp_intake.core.opportunities.opportunity_importer import OpportunityImporter
from rfp_intake.core.shared.connection_service import connection_service

logger = logging.getLogger("rfp_intake.opportunities.manual_import")


@dataclass
class ManualImportResult:
    opportunity_id: UUID
    imported_file_count: int
    files: List[AttachmentImportResult] = field(default_factory=list)


async def import_manual(
    session: AsyncSession,
    organization_id: UUID,
    project_id: UUID,
    source: str,
    source_id: str,
    api_key: Optional[str] = None,
    *,
    client: httpx.AsyncClient,
    importer: OpportunityImporter,
    posted_from: Optional[str] = None,
    posted_to: Optional[str] = None,
    source_document_id: Optional[str] = None,
) -> ManualImportResult:
    """
    Import one solicitation and its attachments into a project.

    Args:
        session: Database session
        organization_id: Tenant UUID
        project_id: Target project UUID
        source: ``SAM_GOV`` or ``DIBBS``
        source_id: Notice id (SAM.gov) or solicitation number (DIBBS)
        api_key: Explicit key; resolved from the tenant's connections when omitted
        client: Shared HTTP client
        importer: Opportunity importer wired to storage and ingestion
        posted_from / posted_to: SAM.gov lookup window (MM/DD/YYYY)
        source_document_id: Optional originating catalog attachment id

    Returns:
        ManualImportResult(opportunity_id, imported_file_count)

    Raises:
        ManualImportError: 400 unknown source, 404 missing key or unknown
            solicitation, 502 provider failure, 500 anything else
    """
    try:
        provider = get_provider(source, client)
    except ProviderError:
        raise ManualImportError(400, f"Unsupported source: {source}") from None

    if not source_id or not str(source_id).strip():
        raise ManualImportError(400, "A solicitation identifier is required")

    api_key = api_key or await connection_service.get_api_key(
        session, organization_id, provider.CONNECTION_TYPE
    )
    if not api_key:
        raise ManualImportError(404, f"{provider.DISPLAY_NAME} API key not configured for this organization")

    now = datetime.utcnow()
    window = QueryWindow(
        posted_from=posted_from or provider.format_date(now - timedelta(days=settings.default_lookback_days)),
        posted_to=posted_to or provider.format_date(now),
    )

    try:
        result = await importer.import_opportunity(
            session,
            provider=provider,
            api_key=api_key,
            organization_id=organization_id,
            project_id=project_id,
            source_system_id=str(source_id).strip(),
            window=window,
            source_document_id=source_document_id,
        )
    except ProviderError as e:
        logger.error(f"Manual import of {source} {source_id} for org {organization_id} failed: {e}")
        if e.status_code == 404:
            raise ManualImportError(404, f"{source_id} was not found in {provider.DISPLAY_NAME}") from None
        raise ManualImportError(502, f"{provider.DISPLAY_NAME} request failed; please try again later") from None
    except Exception:
        logger.exception(f"Manual import of {source} {source_id} for org {organization_id} failed")
        raise ManualImportError(500, "Import failed due to an internal error") from None

    return ManualImportResult(
        opportunity_id=result.opportunity_id,
        imported_file_count=result.imported_file_count,
        files=result.attachments,
    )
