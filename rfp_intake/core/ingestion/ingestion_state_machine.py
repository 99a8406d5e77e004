"""
Lifecycle of an IngestionDocument.

    UPLOADED -> PROCESSING -> AWAITING_OCR -> TEXT_READY -> PROCESSED

FAILED is reachable from every non-terminal state. CANCELLED is reachable
from PROCESSING, AWAITING_OCR and TEXT_READY; the retry transition takes a
cancelled document back to UPLOADED.

AWAITING_OCR is the only state that carries a resume token.
"""

from enum import Enum
from typing import Dict, FrozenSet


class DocumentStatus(str, Enum):
    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    AWAITING_OCR = "AWAITING_OCR"
    TEXT_READY = "TEXT_READY"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES: FrozenSet[str] = frozenset({
    DocumentStatus.PROCESSED.value,
    DocumentStatus.FAILED.value,
    DocumentStatus.CANCELLED.value,
})


CANCELLABLE_STATUSES: FrozenSet[str] = frozenset({
    DocumentStatus.PROCESSING.value,
    DocumentStatus.AWAITING_OCR.value,
    DocumentStatus.TEXT_READY.value,
})


TRANSITIONS: Dict[str, FrozenSet[str]] = {
    DocumentStatus.UPLOADED.value: frozenset({
        DocumentStatus.PROCESSING.value,
        DocumentStatus.FAILED.value,
    }),
    DocumentStatus.PROCESSING.value: frozenset({
        DocumentStatus.AWAITING_OCR.value,
        DocumentStatus.FAILED.value,
        DocumentStatus.CANCELLED.value,
    }),
    DocumentStatus.AWAITING_OCR.value: frozenset({
        DocumentStatus.TEXT_READY.value,
        DocumentStatus.FAILED.value,
        DocumentStatus.CANCELLED.value,
    }),
    DocumentStatus.TEXT_READY.value: frozenset({
        DocumentStatus.PROCESSED.value,
        DocumentStatus.FAILED.value,
        DocumentStatus.CANCELLED.value,
    }),
    DocumentStatus.CANCELLED.value: frozenset({
        DocumentStatus.UPLOADED.value,
    }),
    DocumentStatus.PROCESSED.value: frozenset(),
    DocumentStatus.FAILED.value: frozenset(),
}


def _value(status) -> str:
    return status.value if isinstance(status, DocumentStatus) else str(status)


def can_transition(current, target) -> bool:
    return _value(target) in TRANSITIONS.get(_value(current), frozenset())


def is_terminal(status) -> bool:
    return _value(status) in TERMINAL_STATUSES


def carries_resume_token(status) -> bool:
    return _value(status) == DocumentStatus.AWAITING_OCR.value
