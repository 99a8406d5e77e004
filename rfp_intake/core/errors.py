"""
Error taxonomy for the intake workers.

Errors local to one unit of work (one saved search, one attachment, one
document) are caught by the loop that owns that unit, recorded, and the
loop continues. Only shared setup errors abort a whole batch.
"""

from typing import Optional


class IntakeError(RuntimeError):
    """Base class for intake errors."""


class ConfigurationError(IntakeError):
    """A tenant has no credentials configured for a provider."""

    def __init__(self, message: str, organization_id=None, connection_type: Optional[str] = None):
        super().__init__(message)
        self.organization_id = organization_id
        self.connection_type = connection_type


class ProviderError(IntakeError):
    """An upstream search or detail call failed."""

    def __init__(self, message: str, source: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.source = source
        self.status_code = status_code


class CorrelationNotFound(IntakeError):
    """An OCR notification could not be matched to a suspended document."""

    def __init__(self, correlation_tag: str, reason: str = "no matching document"):
        super().__init__(f"No document for correlation tag {correlation_tag!r}: {reason}")
        self.correlation_tag = correlation_tag
        self.reason = reason


class OcrFailed(IntakeError):
    """
    The OCR provider reported a job failure.

    Also used as the typed failure handed to the workflow orchestrator, so
    ``error_kind`` and ``cause`` are what ``orchestrator.fail`` receives.
    """

    error_kind = "OcrFailed"

    def __init__(self, job_id: Optional[str], status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(self.cause)

    @property
    def cause(self) -> str:
        return f"OCR job {self.job_id} finished with status={self.status}"


class StaleWriteRejected(IntakeError):
    """A conditional write found its precondition no longer holds."""


class InvalidTransitionError(IntakeError):
    """A lifecycle operation was invoked from a state that does not allow it."""

    def __init__(self, document_id, current: str, target: str):
        super().__init__(f"Document {document_id}: cannot move from {current} to {target}")
        self.document_id = document_id
        self.current = current
        self.target = target


class DocumentNotFoundError(IntakeError):
    """No ingestion document exists with the given id."""


class ResumeTokenExpired(IntakeError):
    """The orchestrator no longer holds the parked execution for a token."""


class IngestionStartError(IntakeError):
    """The orchestrator refused or failed to start a workflow execution."""


class OcrSubmissionError(IntakeError):
    """The OCR job could not be submitted."""


class OcrInputError(OcrSubmissionError):
    """The OCR provider rejected the document itself; never retried."""


class ManualImportError(IntakeError):
    """
    User-facing failure of the manual import entry point.

    ``user_message`` is safe to show; internal details only go to the log.
    """

    def __init__(self, status_code: int, user_message: str):
        super().__init__(user_message)
        self.status_code = status_code
        self.user_message = user_message
