"""
Ingestion state machine operations.

Drives an IngestionDocument from UPLOADED through OCR to PROCESSED:

    start_ingestion  UPLOADED -> PROCESSING, starts the workflow execution
    begin_ocr        PROCESSING -> AWAITING_OCR, parks the execution, submits OCR
    resume           AWAITING_OCR -> TEXT_READY | FAILED, consumes the token
    continue_after_ocr  TEXT_READY -> PROCESSED (OCR text + question extraction)
    cancel           PROCESSING | AWAITING_OCR | TEXT_READY -> CANCELLED
    retry            CANCELLED -> UPLOADED, then start_ingestion

Each status write is committed before the orchestrator is called, so a
concurrent writer (a late notification, a cancel) always sees the
committed state and a conditional update decides the winner.

Usage:
    from rfp_intake.core.ingestion.ingestion_service import get_ingestion_service

    execution_ref = await get_ingestion_service().start_ingestion(session, document.id)
"""

import asyncio
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from rfp_intake.config import settings
from rfp_intake.connectors.http_utils import format_error
from rfp_intake.core.errors import (
    DocumentNotFoundError,
    IngestionStartError,
    InvalidTransitionError,
    OcrFailed,
    OcrInputError,
    OcrSubmissionError,
    ResumeTokenExpired,
)
from rfp_intake.core.ingestion.document_service import DocumentService, document_service
from rfp_intake.core.ingestion.ingestion_state_machine import (
    CANCELLABLE_STATUSES,
    DocumentStatus,
    is_terminal,
)
from rfp_intake.core.ingestion.ocr_client import OcrProvider, get_ocr_provider, is_supported_for_ocr
from rfp_intake.core.ingestion.question_extraction_client import (
    QuestionExtractor,
    get_question_extractor,
)
from rfp_intake.core.ingestion.workflow_orchestrator import WorkflowOrchestrator, get_orchestrator
from rfp_intake.core.storage.minio_service import ObjectStore, get_minio_service

logger = logging.getLogger("rfp_intake.ingestion")

SUCCEEDED = "SUCCEEDED"


@dataclass(frozen=True)
class OcrOutcome:
    """Result of an OCR job as reported by the provider."""
    job_id: Optional[str]
    status: str

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED


def expired_token_message(job_id: Optional[str]) -> str:
    return (
        f"Pipeline task expired (jobId: {job_id}). "
        "The document was processed but the pipeline could not continue. "
        "Please retry the upload."
    )


class IngestionService:
    """
    Owns every lifecycle write to IngestionDocument.

    Collaborators are injected so tests and alternative deployments can
    replace the workflow engine, OCR provider, storage and extractor.
    """

    def __init__(
        self,
        orchestrator: WorkflowOrchestrator,
        ocr_provider: OcrProvider,
        storage: ObjectStore,
        question_extractor: QuestionExtractor,
        documents: Optional[DocumentService] = None,
        ocr_submit_max_retries: Optional[int] = None,
        ocr_submit_retry_delay_seconds: Optional[float] = None,
    ):
        self.orchestrator = orchestrator
        self.ocr_provider = ocr_provider
        self.storage = storage
        self.question_extractor = question_extractor
        self.documents = documents or document_service
        self.ocr_submit_max_retries = (
            settings.ocr_submit_max_retries if ocr_submit_max_retries is None else ocr_submit_max_retries
        )
        self.ocr_submit_retry_delay_seconds = (
            settings.ocr_submit_retry_delay_seconds
            if ocr_submit_retry_delay_seconds is None
            else ocr_submit_retry_delay_seconds
        )

    async def _require(self, session: AsyncSession, document_id):
        document = await self.documents.get_document(session, document_id)
        if document is None:
            raise DocumentNotFoundError(f"Ingestion document {document_id} not found")
        return document

    # ------------------------------------------------------------------
    # start / retry
    # ------------------------------------------------------------------

    async def start_ingestion(self, session: AsyncSession, document_id) -> str:
        """
        Start the workflow for an UPLOADED document.

        Args:
            session: Database session (committed by this method)
            document_id: Document UUID

        Returns:
            Execution reference for later cancellation

        Raises:
            DocumentNotFoundError: No such document
            InvalidTransitionError: Document is not UPLOADED
            IngestionStartError: The orchestrator failed; the document is FAILED
        """
        document = await self._require(session, document_id)
        if document.status != DocumentStatus.UPLOADED.value:
            raise InvalidTransitionError(document_id, document.status, DocumentStatus.PROCESSING.value)

        moved = await self.documents.transition(
            session, document_id, DocumentStatus.UPLOADED, DocumentStatus.PROCESSING
        )
        await session.commit()
        if not moved:
            current = await self._require(session, document_id)
            raise InvalidTransitionError(document_id, current.status, DocumentStatus.PROCESSING.value)

        workflow_input = {
            "document_id": str(document.id),
            "organization_id": str(document.organization_id),
            "project_id": str(document.project_id),
            "opportunity_id": str(document.opportunity_id),
        }
        try:
            execution_ref = await self.orchestrator.start(workflow_input)
        except Exception as e:
            message = f"Failed to start ingestion: {format_error(e)}"
            logger.error(f"Document {document_id}: {message}")
            await self.documents.transition(
                session, document_id, DocumentStatus.PROCESSING, DocumentStatus.FAILED,
                error_message=message,
            )
            await session.commit()
            raise IngestionStartError(message) from e

        await self.documents.set_fields(session, document_id, execution_ref=execution_ref)
        await session.commit()
        logger.info(f"Document {document_id}: ingestion started (execution={execution_ref})")
        return execution_ref

    async def retry(self, session: AsyncSession, document_id) -> str:
        """
        Restart a CANCELLED document from scratch.

        Raises:
            InvalidTransitionError: Document is not CANCELLED
        """
        document = await self._require(session, document_id)
        if document.status != DocumentStatus.CANCELLED.value:
            raise InvalidTransitionError(document_id, document.status, DocumentStatus.UPLOADED.value)

        moved = await self.documents.transition(
            session, document_id, DocumentStatus.CANCELLED, DocumentStatus.UPLOADED,
            error_message=None, execution_ref=None, ocr_job_id=None, text_key=None,
            total_questions=None,
        )
        await session.commit()
        if not moved:
            current = await self._require(session, document_id)
            raise InvalidTransitionError(document_id, current.status, DocumentStatus.UPLOADED.value)

        logger.info(f"Document {document_id}: retry requested")
        return await self.start_ingestion(session, document_id)

    # ------------------------------------------------------------------
    # OCR step (suspension point)
    # ------------------------------------------------------------------

    async def _resume_cancelled(self, document_id, resume_token: str) -> None:
        outcome = {"document_id": str(document_id), "status": DocumentStatus.CANCELLED.value, "cancelled": True}
        try:
            await self.orchestrator.resume(resume_token, outcome)
        except ResumeTokenExpired:
            logger.debug(f"Document {document_id}: cancelled execution already released")

    async def _fail_step(
        self,
        session: AsyncSession,
        document_id,
        from_status: DocumentStatus,
        resume_token: str,
        error_kind: str,
        message: str,
    ) -> None:
        moved = await self.documents.transition(
            session, document_id, from_status, DocumentStatus.FAILED,
            expected_token=resume_token if from_status == DocumentStatus.AWAITING_OCR else None,
            error_message=message,
        )
        await session.commit()
        logger.error(f"Document {document_id}: {error_kind}: {message}")
        if not moved:
            return
        try:
            await self.orchestrator.fail(resume_token, error_kind, message)
        except ResumeTokenExpired:
            logger.debug(f"Document {document_id}: execution already released")

    async def _submit_with_retry(self, bucket: str, key: str, correlation_tag: str) -> str:
        attempt = 0
        while True:
            try:
                return await self.ocr_provider.submit_job(bucket, key, correlation_tag)
            except OcrInputError:
                raise
            except OcrSubmissionError as e:
                if attempt >= self.ocr_submit_max_retries:
                    raise
                wait_time = self.ocr_submit_retry_delay_seconds * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"OCR submission failed (attempt {attempt}/{self.ocr_submit_max_retries + 1}): {e}. "
                    f"Waiting {wait_time}s before retry..."
                )
                await asyncio.sleep(wait_time)

    async def begin_ocr(
        self,
        session: AsyncSession,
        document_id,
        correlation_tag: str,
        resume_token: str,
    ) -> Optional[str]:
        """
        Park the workflow on the document and submit the OCR job.

        The token is persisted and committed before the job is submitted, so
        a completion notification can never arrive ahead of it.

        Args:
            session: Database session (committed by this method)
            document_id: Document UUID
            correlation_tag: Value the OCR provider echoes back on completion
            resume_token: Token issued by the orchestrator for this step

        Returns:
            OCR job id, or None if the document was cancelled, missing or failed
        """
        document = await self.documents.get_document(session, document_id)
        if document is None or document.status == DocumentStatus.CANCELLED.value:
            logger.info(f"Document {document_id}: cancelled or deleted before OCR; releasing execution")
            await self._resume_cancelled(document_id, resume_token)
            return None
        if document.status != DocumentStatus.PROCESSING.value:
            raise InvalidTransitionError(document_id, document.status, DocumentStatus.AWAITING_OCR.value)

        if not document.storage_key:
            await self._fail_step(
                session, document_id, DocumentStatus.PROCESSING, resume_token,
                "MissingFileKey", "Document has no storage key",
            )
            return None
        if not is_supported_for_ocr(document.storage_key):
            await self._fail_step(
                session, document_id, DocumentStatus.PROCESSING, resume_token,
                "UnsupportedFileType",
                f"Unsupported file type for OCR: {document.original_file_name}",
            )
            return None

        moved = await self.documents.transition(
            session, document_id, DocumentStatus.PROCESSING, DocumentStatus.AWAITING_OCR,
            resume_token=resume_token,
        )
        await session.commit()
        if not moved:
            logger.info(f"Document {document_id}: left PROCESSING before OCR; releasing execution")
            await self._resume_cancelled(document_id, resume_token)
            return None

        try:
            job_id = await self._submit_with_retry(
                document.storage_bucket, document.storage_key, correlation_tag
            )
        except OcrSubmissionError as e:
            error_kind = "OcrInputError" if isinstance(e, OcrInputError) else "OcrSubmissionError"
            await self._fail_step(
                session, document_id, DocumentStatus.AWAITING_OCR, resume_token, error_kind, str(e)
            )
            return None

        await self.documents.set_fields(session, document_id, ocr_job_id=job_id)
        await session.commit()
        logger.info(f"Document {document_id}: awaiting OCR job {job_id}")
        return job_id

    # ------------------------------------------------------------------
    # resume
    # ------------------------------------------------------------------

    async def resume(self, session: AsyncSession, document_id, outcome: OcrOutcome) -> bool:
        """
        Apply an OCR outcome to a suspended document, exactly once.

        The resume token is cleared by the same conditional update that moves
        the document out of AWAITING_OCR, so duplicate deliveries find no
        token and do nothing.

        Returns:
            True if the parked workflow was resumed or failed; False for
            duplicates, stale deliveries, cancelled documents and expired tokens

        Raises:
            DocumentNotFoundError: No such document
        """
        document = await self._require(session, document_id)

        if document.status == DocumentStatus.CANCELLED.value:
            logger.warning(
                f"Document {document_id}: ignoring OCR result for cancelled document (job={outcome.job_id})"
            )
            return False
        if document.status != DocumentStatus.AWAITING_OCR.value or not document.resume_token:
            logger.info(
                f"Document {document_id}: no parked step (status={document.status}); "
                f"duplicate or stale OCR notification for job {outcome.job_id}"
            )
            return False

        token = document.resume_token
        job_id = outcome.job_id or document.ocr_job_id

        if outcome.succeeded:
            moved = await self.documents.transition(
                session, document_id, DocumentStatus.AWAITING_OCR, DocumentStatus.TEXT_READY,
                expected_token=token, ocr_job_id=job_id,
            )
        else:
            failure = OcrFailed(job_id, outcome.status)
            moved = await self.documents.transition(
                session, document_id, DocumentStatus.AWAITING_OCR, DocumentStatus.FAILED,
                expected_token=token, ocr_job_id=job_id, error_message=failure.cause,
            )
        await session.commit()

        if not moved:
            logger.info(f"Document {document_id}: concurrent update won; OCR result for job {job_id} discarded")
            return False

        try:
            if outcome.succeeded:
                await self.orchestrator.resume(
                    token, {"document_id": str(document_id), "job_id": job_id, "status": outcome.status}
                )
            else:
                await self.orchestrator.fail(token, failure.error_kind, failure.cause)
        except ResumeTokenExpired:
            logger.error(f"Document {document_id}: resume token expired for job {job_id}")
            if outcome.succeeded:
                await self.documents.transition(
                    session, document_id, DocumentStatus.TEXT_READY, DocumentStatus.FAILED,
                    error_message=expired_token_message(job_id),
                )
                await session.commit()
            return False
        except Exception as e:
            if outcome.succeeded:
                await self.documents.transition(
                    session, document_id, DocumentStatus.TEXT_READY, DocumentStatus.FAILED,
                    error_message=f"Failed to resume pipeline: {format_error(e)}",
                )
                await session.commit()
            raise

        logger.info(
            f"Document {document_id}: OCR job {job_id} {'succeeded' if outcome.succeeded else 'failed'}"
        )
        return True

    # ------------------------------------------------------------------
    # continuation
    # ------------------------------------------------------------------

    async def continue_after_ocr(self, session: AsyncSession, document_id, job_id: Optional[str]) -> bool:
        """
        Store OCR text, extract questions and finish the document.

        Any failure leaves the document FAILED with the error text.
        """
        document = await self.documents.get_document(session, document_id)
        if document is None or document.status != DocumentStatus.TEXT_READY.value:
            logger.info(
                f"Document {document_id}: not TEXT_READY "
                f"({document.status if document else 'missing'}); skipping continuation"
            )
            return False

        job_id = job_id or document.ocr_job_id
        text_key = f"{document.storage_key}.txt"
        try:
            text = await self.ocr_provider.get_text(job_id)
            await self.storage.put_object(
                document.storage_bucket, text_key, text.encode("utf-8"), "text/plain; charset=utf-8"
            )
            total_questions = await self.question_extractor.extract_questions(
                text,
                document_id=str(document.id),
                project_id=str(document.project_id),
                opportunity_id=str(document.opportunity_id),
            )
        except Exception as e:
            message = f"Question extraction failed: {format_error(e)}"
            logger.error(f"Document {document_id}: {message}")
            await self.documents.transition(
                session, document_id, DocumentStatus.TEXT_READY, DocumentStatus.FAILED,
                error_message=message,
            )
            await session.commit()
            return False

        moved = await self.documents.transition(
            session, document_id, DocumentStatus.TEXT_READY, DocumentStatus.PROCESSED,
            text_key=text_key, total_questions=total_questions,
        )
        await session.commit()
        if moved:
            logger.info(f"Document {document_id}: processed ({total_questions} questions)")
        return moved

    # ------------------------------------------------------------------
    # cancel
    # ------------------------------------------------------------------

    async def cancel(self, session: AsyncSession, document_id) -> bool:
        """
        Cancel an in-flight document.

        Idempotent: a terminal document is left untouched.

        Returns:
            True if the document was cancelled by this call

        Raises:
            DocumentNotFoundError: No such document
            InvalidTransitionError: Document is UPLOADED (not started yet)
        """
        document = await self._require(session, document_id)
        if is_terminal(document.status):
            logger.info(f"Document {document_id}: already {document.status}; cancel is a no-op")
            return False
        if document.status not in CANCELLABLE_STATUSES:
            raise InvalidTransitionError(document_id, document.status, DocumentStatus.CANCELLED.value)

        moved = await self.documents.transition(
            session, document_id, sorted(CANCELLABLE_STATUSES), DocumentStatus.CANCELLED,
        )
        await session.commit()
        if not moved:
            logger.info(f"Document {document_id}: reached a terminal state before cancel applied")
            return False

        if document.execution_ref:
            try:
                await self.orchestrator.cancel(document.execution_ref)
            except Exception as e:
                logger.error(
                    f"Document {document_id}: cancelled, but aborting execution "
                    f"{document.execution_ref} failed: {format_error(e)}"
                )
        logger.info(f"Document {document_id}: cancelled")
        return True


@lru_cache()
def get_ingestion_service() -> IngestionService:
    return IngestionService(
        orchestrator=get_orchestrator(),
        ocr_provider=get_ocr_provider(),
        storage=get_minio_service(),
        question_extractor=get_question_extractor(),
    )
