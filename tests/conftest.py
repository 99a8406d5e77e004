import os

# Configure settings before importing rfp_intake modules.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("HTTP_RETRY_DELAY_SECONDS", "0")
os.environ.setdefault("HTTP_MAX_RETRIES", "2")
os.environ.setdefault("OCR_SUBMIT_RETRY_DELAY_SECONDS", "0")
os.environ.setdefault("SAM_API_KEY", "")
os.environ.setdefault("DIBBS_API_KEY", "")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from rfp_intake.core.database.base import Base
from rfp_intake.core.database.models import (
    Connection,
    IngestionDocument,
    Opportunity,
    Organization,
    Project,
    SavedSearch,
)
from rfp_intake.core.errors import OcrSubmissionError, ResumeTokenExpired
from rfp_intake.core.ingestion.ingestion_service import IngestionService
from rfp_intake.core.ingestion.ocr_client import OcrProvider
from rfp_intake.core.ingestion.question_extraction_client import QuestionExtractor
from rfp_intake.core.ingestion.workflow_orchestrator import WorkflowOrchestrator


# =============================================================================
# Fakes
# =============================================================================


class FakeOrchestrator(WorkflowOrchestrator):
    """In-memory workflow engine: tokens are consumed exactly once."""

    def __init__(self):
        self.started: List[Dict[str, Any]] = []
        self.tokens: Dict[str, str] = {}
        self.resumed: List[tuple] = []
        self.failed: List[tuple] = []
        self.cancelled: List[str] = []
        self.start_error: Optional[Exception] = None
        self.resume_error: Optional[Exception] = None

    async def start(self, workflow_input):
        if self.start_error:
            raise self.start_error
        self.started.append(workflow_input)
        return f"exec-{len(self.started)}"

    async def issue_resume_token(self, execution_ref, document_id):
        token = f"token-{uuid.uuid4().hex[:8]}"
        self.tokens[token] = execution_ref
        return token

    def _consume(self, token):
        if token not in self.tokens:
            raise ResumeTokenExpired(f"unknown token {token}")
        return self.tokens.pop(token)

    async def resume(self, resume_token, outcome):
        if self.resume_error:
            raise self.resume_error
        self._consume(resume_token)
        self.resumed.append((resume_token, outcome))

    async def fail(self, resume_token, error_kind, cause):
        self._consume(resume_token)
        self.failed.append((resume_token, error_kind, cause))

    async def cancel(self, execution_ref):
        self.cancelled.append(execution_ref)


class FakeOcrProvider(OcrProvider):
    def __init__(self, text: str = "1. Describe your approach?"):
        self.text = text
        self.submitted: List[tuple] = []
        self.submit_errors: List[Exception] = []

    async def submit_job(self, bucket, key, correlation_tag):
        self.submitted.append((bucket, key, correlation_tag))
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        return f"job-{len(self.submitted)}"

    async def get_text(self, job_id):
        return self.text


class InMemoryObjectStore:
    def __init__(self):
        self.objects: Dict[tuple, tuple] = {}

    async def put_object(self, bucket, key, data, content_type):
        self.objects[(bucket, key)] = (data, content_type)
        return key

    async def get_object(self, bucket, key):
        try:
            return self.objects[(bucket, key)][0]
        except KeyError:
            raise FileNotFoundError(key) from None


class FakeQuestionExtractor(QuestionExtractor):
    def __init__(self, total: int = 3, error: Optional[Exception] = None):
        self.total = total
        self.error = error
        self.calls: List[str] = []

    async def extract_questions(self, text, *, document_id, project_id, opportunity_id):
        self.calls.append(document_id)
        if self.error:
            raise self.error
        return self.total


# =============================================================================
# Database fixtures
# =============================================================================


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def tenant(session):
    """Organization, project and opportunity ids for one tenant."""
    org = Organization(name="Acme")
    session.add(org)
    await session.flush()
    project = Project(organization_id=org.id, name="Bids")
    session.add(project)
    await session.flush()
    opportunity = Opportunity(
        organization_id=org.id,
        project_id=project.id,
        source="SAM_GOV",
        source_system_id="N-1",
        title="Seed",
    )
    session.add(opportunity)
    await session.commit()
    return {"organization_id": org.id, "project_id": project.id, "opportunity_id": opportunity.id}


@pytest.fixture
def make_document(session, tenant):
    async def _make(
        status: str = "UPLOADED",
        storage_key: Optional[str] = "org/x/doc.pdf",
        resume_token: Optional[str] = None,
        execution_ref: Optional[str] = None,
        ocr_job_id: Optional[str] = None,
    ) -> uuid.UUID:
        document = IngestionDocument(
            organization_id=tenant["organization_id"],
            project_id=tenant["project_id"],
            opportunity_id=tenant["opportunity_id"],
            storage_bucket="rfp-documents",
            storage_key=storage_key,
            original_file_name=(storage_key or "doc.pdf").rsplit("/", 1)[-1],
            status=status,
            resume_token=resume_token,
            execution_ref=execution_ref,
            ocr_job_id=ocr_job_id,
        )
        session.add(document)
        await session.commit()
        return document.id

    return _make


@pytest.fixture
def add_connection(session):
    async def _add(organization_id, connection_type: str = "sam_gov", api_key: Optional[str] = "key-123"):
        connection = Connection(
            organization_id=organization_id,
            name=f"{connection_type} connection",
            connection_type=connection_type,
            config={"api_key": api_key} if api_key else {},
            is_active=True,
            is_default=True,
        )
        session.add(connection)
        await session.commit()
        return connection.id

    return _add


@pytest.fixture
def add_saved_search(session):
    async def _add(
        organization_id,
        name: str = "Cyber",
        source: str = "SAM_GOV",
        criteria: Optional[dict] = None,
        frequency: str = "DAILY",
        auto_import: bool = True,
        last_run_at: Optional[datetime] = None,
    ):
        search = SavedSearch(
            organization_id=organization_id,
            name=name,
            source=source,
            criteria=criteria or {"naics": ["541512"]},
            frequency=frequency,
            auto_import=auto_import,
            is_enabled=True,
            last_run_at=last_run_at,
        )
        session.add(search)
        await session.commit()
        return search.id

    return _add


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def orchestrator():
    return FakeOrchestrator()


@pytest.fixture
def ocr_provider():
    return FakeOcrProvider()


@pytest.fixture
def object_store():
    return InMemoryObjectStore()


@pytest.fixture
def question_extractor():
    return FakeQuestionExtractor()


@pytest.fixture
def ingestion_service(orchestrator, ocr_provider, object_store, question_extractor):
    return IngestionService(
        orchestrator=orchestrator,
        ocr_provider=ocr_provider,
        storage=object_store,
        question_extractor=question_extractor,
        ocr_submit_max_retries=2,
        ocr_submit_retry_delay_seconds=0,
    )
