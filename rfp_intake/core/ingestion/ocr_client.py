# ============================================================================
# rfp_intake/core/ingestion/ocr_client.py
# ============================================================================
# HTTP client for the asynchronous OCR service.
#
# submit_job() starts a job over an object already in storage and returns the
# provider's job id. The provider echoes the correlation tag back verbatim in
# its completion notification ({jobId, status, correlationTag}) published on
# settings.ocr_notification_channel.
# ============================================================================

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Optional

import httpx

from rfp_intake.config import settings
from rfp_intake.core.errors import OcrInputError, OcrSubmissionError

logger = logging.getLogger("rfp_intake.ocr")

SUPPORTED_EXTENSIONS = ("pdf", "png", "jpg", "jpeg", "tiff", "tif")


def is_supported_for_ocr(key: str) -> bool:
    ext = key.rsplit(".", 1)[-1].lower() if "." in key.rsplit("/", 1)[-1] else ""
    return ext in SUPPORTED_EXTENSIONS


class OcrProvider(ABC):

    @abstractmethod
    async def submit_job(self, bucket: str, key: str, correlation_tag: str) -> str:
        """
        Start an OCR job.

        Raises:
            OcrInputError: The provider rejected the document (never retried)
            OcrSubmissionError: Any other submission failure
        """
        ...

    @abstractmethod
    async def get_text(self, job_id: str) -> str:
        ...


class HttpOcrProvider(OcrProvider):
    """Async client for the OCR service's job API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = (base_url or settings.ocr_service_url).rstrip("/")
        self.timeout = timeout or settings.ocr_timeout_seconds
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def submit_job(self, bucket: str, key: str, correlation_tag: str) -> str:
        payload = {
            "document": {"bucket": bucket, "key": key},
            "correlationTag": correlation_tag,
            "notificationChannel": settings.ocr_notification_channel,
        }
        try:
            response = await self._client.post("/v1/jobs", json=payload)
        except httpx.RequestError as e:
            raise OcrSubmissionError(f"OCR service unreachable: {type(e).__name__}: {e}") from e

        if response.status_code in (400, 413, 415, 422):
            raise OcrInputError(f"OCR rejected {key}: HTTP {response.status_code}: {response.text[:500]}")
        if response.status_code >= 400:
            raise OcrSubmissionError(f"OCR HTTP {response.status_code}: {response.text[:500]}")

        job_id = (response.json() or {}).get("jobId")
        if not job_id:
            raise OcrSubmissionError("OCR service returned no jobId")
        logger.info(f"Submitted OCR job {job_id} for {bucket}/{key} (tag={correlation_tag})")
        return str(job_id)

    async def get_text(self, job_id: str) -> str:
        response = await self._client.get(f"/v1/jobs/{job_id}/text")
        response.raise_for_status()
        ctype = response.headers.get("content-type", "")
        if "application/json" in ctype:
            text = response.json().get("text")
            if not isinstance(text, str):
                raise ValueError(f"OCR job {job_id} result is missing 'text'")
            return text
        return response.text


@lru_cache()
def get_ocr_provider() -> OcrProvider:
    return HttpOcrProvider()
