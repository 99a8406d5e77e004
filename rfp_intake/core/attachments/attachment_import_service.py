"""
Attachment import pipeline.

For each remote attachment of an opportunity: fetch once, write the bytes
to object storage under a deterministic key, create an UPLOADED tracking
record and start ingestion. Attachments are processed sequentially and
independently; one failure never stops its siblings.

Usage:
    service = AttachmentImportService(fetcher, storage, ingestion_service)
    results = await service.import_attachments(
        session, organization_id=org_id, project_id=project_id,
        opportunity_id=opp.id, source_id=opp.source_system_id, refs=refs,
    )
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from rfp_intake.config import settings
from rfp_intake.connectors.base import AttachmentRef
from rfp_intake.connectors.http_utils import format_error
from rfp_intake.core.attachments.attachment_fetcher import AttachmentFetcher, build_storage_key
from rfp_intake.core.ingestion.document_service import DocumentService, document_service
from rfp_intake.core.ingestion.ingestion_service import IngestionService
from rfp_intake.core.storage.minio_service import ObjectStore

logger = logging.getLogger("rfp_intake.attachments")


@dataclass
class AttachmentImportResult:
    url: str
    filename: Optional[str] = None
    storage_key: Optional[str] = None
    document_id: Optional[UUID] = None
    execution_ref: Optional[str] = None
    deduplicated: bool = False
    error: Optional[str] = None

    @property
    def imported(self) -> bool:
        return self.error is None and not self.deduplicated and self.execution_ref is not None


class AttachmentImportService:

    def __init__(
        self,
        fetcher: AttachmentFetcher,
        storage: ObjectStore,
        ingestion_service: IngestionService,
        bucket: Optional[str] = None,
        documents: Optional[DocumentService] = None,
    ):
        self.fetcher = fetcher
        self.storage = storage
        self.ingestion_service = ingestion_service
        self.bucket = bucket or settings.minio_bucket_documents
        self.documents = documents or document_service

    async def import_attachment(
        self,
        session: AsyncSession,
        *,
        organization_id: UUID,
        project_id: UUID,
        opportunity_id: UUID,
        source_id: str,
        ref: AttachmentRef,
        source_document_id: Optional[str] = None,
    ) -> AttachmentImportResult:
        """
        Import one attachment and start its ingestion.

        An active document already tracking the same storage key is reused:
        the bytes are overwritten in place and no second record is created.

        Raises:
            AttachmentFetchError, IngestionStartError, storage or database errors
        """
        fetched = await self.fetcher.fetch(ref)
        storage_key = build_storage_key(
            organization_id, project_id, source_id, ref.url, fetched.filename
        )
        result = AttachmentImportResult(url=ref.url, filename=fetched.filename, storage_key=storage_key)

        await self.storage.put_object(self.bucket, storage_key, fetched.content, fetched.content_type)

        existing = await self.documents.find_active_document(
            session, project_id, opportunity_id, storage_key
        )
        if existing is not None:
            logger.info(
                f"Attachment {fetched.filename} already tracked by document {existing.id} "
                f"({existing.status}); not creating another"
            )
            result.document_id = existing.id
            result.deduplicated = True
            return result

        document = await self.documents.create_document(
            session,
            organization_id=organization_id,
            project_id=project_id,
            opportunity_id=opportunity_id,
            storage_bucket=self.bucket,
            storage_key=storage_key,
            original_file_name=fetched.filename,
            mime_type=fetched.content_type,
            source_document_id=source_document_id,
        )
        result.document_id = document.id
        await session.commit()

        result.execution_ref = await self.ingestion_service.start_ingestion(session, document.id)
        return result

    async def import_attachments(
        self,
        session: AsyncSession,
        *,
        organization_id: UUID,
        project_id: UUID,
        opportunity_id: UUID,
        source_id: str,
        refs: Sequence[AttachmentRef],
        source_document_id: Optional[str] = None,
    ) -> List[AttachmentImportResult]:
        """Import attachments in order; each failure is recorded and skipped."""
        results: List[AttachmentImportResult] = []
        for ref in refs:
            try:
                result = await self.import_attachment(
                    session,
                    organization_id=organization_id,
                    project_id=project_id,
                    opportunity_id=opportunity_id,
                    source_id=source_id,
                    ref=ref,
                    source_document_id=source_document_id,
                )
            except Exception as e:
                await session.rollback()
                error = format_error(e)
                logger.error(f"Failed to import attachment {ref.url} for {source_id}: {error}")
                result = AttachmentImportResult(url=ref.url, error=error)
            results.append(result)

        imported = sum(1 for r in results if r.imported)
        logger.info(f"Imported {imported}/{len(refs)} attachment(s) for {source_id}")
        return results
