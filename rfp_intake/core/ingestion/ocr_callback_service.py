"""
OCR callback correlator.

Bridges the at-least-once OCR completion channel back to the single
suspended ingestion step of each document. The correlation tag is the
document's own id, so lookup is a primary-key read; a tag that is not a
valid id, or names a document that no longer exists, is logged and
dropped.

Usage:
    from rfp_intake.core.ingestion.ocr_callback_service import notify_ocr_completion

    report = await notify_ocr_completion(batch)
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from rfp_intake.core.errors import CorrelationNotFound, DocumentNotFoundError
from rfp_intake.core.ingestion.ingestion_service import IngestionService, OcrOutcome

logger = logging.getLogger("rfp_intake.ocr.callbacks")


class OcrNotification(BaseModel):
    """
    One OCR job completion.

    Accepts the provider's field spellings (``JobId``/``Status``/``JobTag``)
    as well as ``jobId``/``status``/``correlationTag``.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    job_id: str = Field(validation_alias="jobId")
    status: str
    correlation_tag: Optional[str] = Field(default=None, validation_alias="correlationTag")

    @classmethod
    def from_payload(cls, payload: dict) -> "OcrNotification":
        normalized = {
            "jobId": payload.get("jobId", payload.get("JobId")),
            "status": payload.get("status", payload.get("Status")),
            "correlationTag": payload.get("correlationTag", payload.get("JobTag")),
        }
        return cls.model_validate(normalized)


@dataclass
class CorrelationReport:
    resumed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "resumed": self.resumed,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def _unwrap(item: Any) -> List[dict]:
    """Flatten SNS-style envelopes ({"Records": [{"Sns": {"Message": "..."}}]})."""
    if isinstance(item, (str, bytes)):
        item = json.loads(item)
    if isinstance(item, dict) and isinstance(item.get("Records"), list):
        out: List[dict] = []
        for record in item["Records"]:
            message = (record.get("Sns") or {}).get("Message") if isinstance(record, dict) else None
            if message is not None:
                out.extend(_unwrap(message))
        return out
    if isinstance(item, dict):
        return [item]
    raise ValueError(f"Unsupported OCR notification payload: {type(item).__name__}")


def parse_notifications(batch: Union[dict, str, bytes, Iterable[Any]]) -> List[OcrNotification]:
    """
    Parse a raw notification batch.

    Malformed items are logged and skipped.
    """
    if isinstance(batch, (dict, str, bytes)):
        items = [batch]
    else:
        items = list(batch)

    notifications: List[OcrNotification] = []
    for item in items:
        try:
            payloads = _unwrap(item)
        except (ValueError, json.JSONDecodeError) as e:
            logger.warning(f"Dropping malformed OCR notification: {e}")
            continue
        for payload in payloads:
            try:
                notifications.append(OcrNotification.from_payload(payload))
            except ValidationError as e:
                logger.warning(f"Dropping invalid OCR notification {payload!r}: {e.errors()}")
    return notifications


def _document_id_for(notification: OcrNotification) -> UUID:
    tag = (notification.correlation_tag or "").strip()
    if not tag:
        raise CorrelationNotFound(tag, "notification carries no correlation tag")
    try:
        return UUID(tag)
    except ValueError:
        raise CorrelationNotFound(tag, "tag is not a document id") from None


class OcrCallbackCorrelator:

    def __init__(self, ingestion_service: IngestionService, session_factory: async_sessionmaker):
        self.ingestion_service = ingestion_service
        self.session_factory = session_factory

    async def handle(self, notification: OcrNotification) -> bool:
        """
        Resume the document named by one notification.

        Raises:
            CorrelationNotFound: Unknown tag or deleted document
        """
        document_id = _document_id_for(notification)
        outcome = OcrOutcome(job_id=notification.job_id, status=notification.status)
        async with self.session_factory() as session:
            try:
                return await self.ingestion_service.resume(session, document_id, outcome)
            except DocumentNotFoundError:
                raise CorrelationNotFound(str(document_id), "document not found") from None

    async def notify_ocr_completion(self, batch) -> CorrelationReport:
        """
        Entry point for the notification channel.

        Each notification is isolated: a failure is recorded and the rest of
        the batch still runs.
        """
        report = CorrelationReport()
        for notification in parse_notifications(batch):
            try:
                resumed = await self.handle(notification)
            except CorrelationNotFound as e:
                logger.warning(f"OCR job {notification.job_id}: {e}")
                report.skipped += 1
                continue
            except Exception as e:
                logger.error(
                    f"OCR job {notification.job_id} (tag={notification.correlation_tag}) "
                    f"could not be applied: {type(e).__name__}: {e}"
                )
                report.failed += 1
                report.errors.append(f"{notification.job_id}: {e}")
                continue

            if resumed:
                report.resumed += 1
            else:
                report.skipped += 1

        logger.info(
            f"OCR notifications processed: resumed={report.resumed}, "
            f"skipped={report.skipped}, failed={report.failed}"
        )
        return report


def get_correlator() -> OcrCallbackCorrelator:
    from rfp_intake.core.ingestion.ingestion_service import get_ingestion_service
    from rfp_intake.core.shared.database_service import database_service

    return OcrCallbackCorrelator(get_ingestion_service(), database_service.session_factory)


async def notify_ocr_completion(batch) -> CorrelationReport:
    return await get_correlator().notify_ocr_completion(batch)
