"""
Persistence for IngestionDocument records.

Every status change goes through ``transition``: a conditional UPDATE keyed
on the document id and its expected source status (and, for resumes, the
expected resume token). A rowcount of zero means another writer got there
first; callers treat that as "not applied", never as an overwrite.

Usage:
    from rfp_intake.core.ingestion.document_service import document_service

    moved = await document_service.transition(
        session, doc_id, DocumentStatus.PROCESSING, DocumentStatus.AWAITING_OCR,
        resume_token=token,
    )
"""

import logging
from datetime import datetime
from typing import Any, Iterable, Optional, Union
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rfp_intake.core.database.models import IngestionDocument
from rfp_intake.core.errors import InvalidTransitionError
from rfp_intake.core.ingestion.ingestion_state_machine import (
    TERMINAL_STATUSES,
    DocumentStatus,
    can_transition,
    carries_resume_token,
)

logger = logging.getLogger("rfp_intake.ingestion.documents")

StatusLike = Union[DocumentStatus, str]

# Columns only the state machine may write
_PROTECTED_FIELDS = {"status", "resume_token", "id"}


def _as_uuid(value) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class DocumentService:

    async def create_document(
        self,
        session: AsyncSession,
        *,
        organization_id: UUID,
        project_id: UUID,
        opportunity_id: UUID,
        storage_bucket: str,
        storage_key: str,
        original_file_name: str,
        mime_type: Optional[str] = None,
        source_document_id: Optional[str] = None,
    ) -> IngestionDocument:
        """
        Create a tracking record at UPLOADED.

        Returns:
            The new IngestionDocument (flushed, not committed)
        """
        document = IngestionDocument(
            organization_id=organization_id,
            project_id=project_id,
            opportunity_id=opportunity_id,
            storage_bucket=storage_bucket,
            storage_key=storage_key,
            original_file_name=original_file_name,
            mime_type=mime_type,
            source_document_id=source_document_id,
            status=DocumentStatus.UPLOADED.value,
        )
        session.add(document)
        await session.flush()
        logger.info(f"Created ingestion document {document.id} ({original_file_name})")
        return document

    async def get_document(self, session: AsyncSession, document_id) -> Optional[IngestionDocument]:
        result = await session.execute(
            select(IngestionDocument)
            .where(IngestionDocument.id == _as_uuid(document_id))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_active_document(
        self,
        session: AsyncSession,
        project_id: UUID,
        opportunity_id: UUID,
        storage_key: str,
    ) -> Optional[IngestionDocument]:
        """Non-terminal document already tracking this storage key, if any."""
        result = await session.execute(
            select(IngestionDocument)
            .where(
                IngestionDocument.project_id == project_id,
                IngestionDocument.opportunity_id == opportunity_id,
                IngestionDocument.storage_key == storage_key,
                IngestionDocument.status.notin_(TERMINAL_STATUSES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        session: AsyncSession,
        document_id,
        from_statuses: Union[StatusLike, Iterable[StatusLike]],
        to_status: StatusLike,
        *,
        resume_token: Optional[str] = None,
        expected_token: Optional[str] = None,
        **fields: Any,
    ) -> bool:
        """
        Conditionally move a document between states.

        Args:
            session: Database session
            document_id: Document UUID
            from_statuses: Status (or statuses) the document must currently be in
            to_status: Target status
            resume_token: Token to park; required for and only accepted by AWAITING_OCR
            expected_token: Additional precondition on the stored resume token
            **fields: Other columns to write with the transition

        Returns:
            True if the row was updated, False if a precondition failed

        Raises:
            InvalidTransitionError: If any source status cannot reach to_status
        """
        if isinstance(from_statuses, (str, DocumentStatus)):
            from_statuses = [from_statuses]
        sources = [s.value if isinstance(s, DocumentStatus) else s for s in from_statuses]
        target = to_status.value if isinstance(to_status, DocumentStatus) else to_status

        for source in sources:
            if not can_transition(source, target):
                raise InvalidTransitionError(document_id, source, target)

        if carries_resume_token(target):
            if not resume_token:
                raise ValueError(f"{target} requires a resume token")
        elif resume_token is not None:
            raise ValueError(f"{target} cannot carry a resume token")

        protected = _PROTECTED_FIELDS.intersection(fields)
        if protected:
            raise ValueError(f"Cannot write {sorted(protected)} outside a transition")

        stmt = update(IngestionDocument).where(
            IngestionDocument.id == _as_uuid(document_id),
            IngestionDocument.status.in_(sources),
        )
        if expected_token is not None:
            stmt = stmt.where(IngestionDocument.resume_token == expected_token)

        values = dict(fields)
        values["status"] = target
        values["resume_token"] = resume_token
        values["updated_at"] = datetime.utcnow()

        result = await session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        moved = result.rowcount > 0
        if moved:
            logger.info(f"Document {document_id}: {'/'.join(sources)} -> {target}")
        else:
            logger.debug(f"Document {document_id}: transition to {target} not applied (precondition failed)")
        return moved

    async def set_fields(self, session: AsyncSession, document_id, **fields: Any) -> bool:
        """Write non-lifecycle columns (execution_ref, ocr_job_id ...)."""
        protected = _PROTECTED_FIELDS.intersection(fields)
        if protected:
            raise ValueError(f"Cannot write {sorted(protected)} outside a transition")
        fields["updated_at"] = datetime.utcnow()
        result = await session.execute(
            update(IngestionDocument)
            .where(IngestionDocument.id == _as_uuid(document_id))
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0


document_service = DocumentService()
