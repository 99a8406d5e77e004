"""
Ingestion workflow Celery tasks.

Two steps make up an execution. ``ingestion_ocr_step`` parks the execution
under a resume token and submits the OCR job; ``ingestion_continue`` is
dispatched by the orchestrator once the OCR notification resumes the token.
"""
import asyncio
import logging
from typing import Any, Dict, Optional
from uuid import UUID

from celery import shared_task

from rfp_intake.core.ingestion.ocr_client import get_ocr_provider
from rfp_intake.core.ingestion.question_extraction_client import get_question_extractor
from rfp_intake.core.ingestion.workflow_orchestrator import CONTINUE_TASK, OCR_STEP_TASK
from rfp_intake.core.shared.database_service import database_service

logger = logging.getLogger("rfp_intake.tasks")


def refresh_ingestion_service():
    """
    Ingestion service for the current event loop.

    Every task body runs under its own ``asyncio.run``; cached HTTP clients
    from a previous loop cannot be reused.
    """
    from rfp_intake.core.ingestion.ingestion_service import get_ingestion_service

    get_ingestion_service.cache_clear()
    get_ocr_provider.cache_clear()
    get_question_extractor.cache_clear()
    return get_ingestion_service()


# ============================================================================
# WORKFLOW STEPS
# ============================================================================


async def _ocr_step(document_id: str, execution_ref: str) -> Dict[str, Any]:
    service = refresh_ingestion_service()
    token = await service.orchestrator.issue_resume_token(execution_ref, document_id)
    async with database_service.get_session() as session:
        job_id = await service.begin_ocr(
            session,
            UUID(document_id),
            correlation_tag=document_id,
            resume_token=token,
        )
    return {"document_id": document_id, "execution_ref": execution_ref, "ocr_job_id": job_id}


@shared_task(name=OCR_STEP_TASK, bind=True)
def ingestion_ocr_step(
    self,
    document_id: str,
    execution_ref: str,
    organization_id: Optional[str] = None,
    project_id: Optional[str] = None,
    opportunity_id: Optional[str] = None,
) -> Dict[str, Any]:
    logger.info(f"Execution {execution_ref}: OCR step for document {document_id}")
    return asyncio.run(_ocr_step(document_id, execution_ref))


async def _continue(document_id: str, job_id: Optional[str]) -> bool:
    service = refresh_ingestion_service()
    async with database_service.get_session() as session:
        return await service.continue_after_ocr(session, UUID(document_id), job_id)


@shared_task(name=CONTINUE_TASK, bind=True)
def ingestion_continue(
    self,
    document_id: str,
    execution_ref: str,
    outcome: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    outcome = outcome or {}
    if outcome.get("cancelled"):
        logger.info(f"Execution {execution_ref}: document {document_id} was cancelled, stopping")
        return {"document_id": document_id, "status": "CANCELLED"}
    if outcome.get("failed"):
        # The document is already FAILED; this only completes the execution
        logger.info(f"Execution {execution_ref}: document {document_id} failed ({outcome.get('error_kind')}), stopping")
        return {"document_id": document_id, "status": "FAILED", "error_kind": outcome.get("error_kind")}

    processed = asyncio.run(_continue(document_id, outcome.get("job_id")))
    return {"document_id": document_id, "processed": processed}


# ============================================================================
# OCR NOTIFICATIONS
# ============================================================================


async def _notify(batch) -> Dict[str, Any]:
    from rfp_intake.core.ingestion.ocr_callback_service import OcrCallbackCorrelator

    correlator = OcrCallbackCorrelator(refresh_ingestion_service(), database_service.session_factory)
    report = await correlator.notify_ocr_completion(batch)
    return report.to_dict()


@shared_task(name="rfp_intake.tasks.notify_ocr_completion")
def notify_ocr_completion_task(batch) -> Dict[str, Any]:
    """Correlate a batch of OCR completion notifications delivered through the broker."""
    return asyncio.run(_notify(batch))
