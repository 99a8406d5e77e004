# ============================================================================
# rfp_intake/core/ingestion/question_extraction_client.py
# ============================================================================
# Client for the external question extraction service. The service owns
# question storage; this side only hands over the OCR text and records how
# many questions were produced.
# ============================================================================

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Optional

import httpx

from rfp_intake.config import settings

logger = logging.getLogger("rfp_intake.questions")


class QuestionExtractionError(RuntimeError):
    """Raised when the question extractor fails or returns an invalid response."""


class QuestionExtractor(ABC):

    @abstractmethod
    async def extract_questions(
        self,
        text: str,
        *,
        document_id: str,
        project_id: str,
        opportunity_id: str,
    ) -> int:
        """Extract and store questions; return how many were found."""
        ...


class HttpQuestionExtractor(QuestionExtractor):

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: int = 2,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = (base_url or settings.question_extractor_url).rstrip("/")
        self.timeout = timeout or settings.question_extractor_timeout
        self.max_retries = max_retries
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)

    async def extract_questions(
        self,
        text: str,
        *,
        document_id: str,
        project_id: str,
        opportunity_id: str,
    ) -> int:
        payload = {
            "documentId": document_id,
            "projectId": project_id,
            "opportunityId": opportunity_id,
            "text": text,
        }
        attempt = 0
        last_error: Optional[BaseException] = None

        while attempt <= self.max_retries:
            try:
                response = await self._client.post("/v1/questions/extract", json=payload)
                if response.status_code >= 400:
                    raise QuestionExtractionError(
                        f"Extractor HTTP {response.status_code}: {response.text[:500]}"
                    )
                total = response.json().get("totalQuestions")
                if not isinstance(total, int):
                    raise QuestionExtractionError("Extractor JSON missing 'totalQuestions'")
                return total
            except (httpx.RequestError, QuestionExtractionError) as e:
                last_error = e
                if attempt >= self.max_retries:
                    break
                await asyncio.sleep(min(2 ** attempt * 0.5, 6.0))
                attempt += 1

        raise QuestionExtractionError(
            f"Question extraction failed after {self.max_retries + 1} attempt(s): {last_error!s}"
        )


@lru_cache()
def get_question_extractor() -> QuestionExtractor:
    return HttpQuestionExtractor()
