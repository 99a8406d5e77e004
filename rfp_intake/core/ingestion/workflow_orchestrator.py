"""
Durable workflow orchestration for document ingestion.

The OCR step is the only suspension point: the step parks the execution
under an opaque resume token and returns; nothing polls. When the OCR
completion notification arrives, ``resume`` (or ``fail``) consumes the
token exactly once and dispatches the continuation.

CeleryWorkflowOrchestrator keeps parked tokens in Redis:

    rfp_intake:workflow:token:{token}       -> {"execution_ref", "document_id"}
    rfp_intake:workflow:execution:{ref}     -> set of tokens issued for the execution

Usage:
    from rfp_intake.core.ingestion.workflow_orchestrator import get_orchestrator

    execution_ref = await get_orchestrator().start({"document_id": str(doc.id)})
"""

import asyncio
import json
import logging
import secrets
import uuid
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, Dict, Optional

import redis.asyncio as redis

from rfp_intake.config import settings
from rfp_intake.core.errors import ResumeTokenExpired

logger = logging.getLogger("rfp_intake.ingestion.orchestrator")

OCR_STEP_TASK = "rfp_intake.tasks.ingestion_ocr_step"
CONTINUE_TASK = "rfp_intake.tasks.ingestion_continue"


class WorkflowOrchestrator(ABC):
    """Interface to the durable workflow engine driving ingestion."""

    @abstractmethod
    async def start(self, workflow_input: Dict[str, Any]) -> str:
        """Start an execution and return its reference."""
        ...

    @abstractmethod
    async def issue_resume_token(self, execution_ref: str, document_id: str) -> str:
        """Park the execution's current step and return the token that resumes it."""
        ...

    @abstractmethod
    async def resume(self, resume_token: str, outcome: Dict[str, Any]) -> None:
        """
        Continue a parked step with a success payload.

        Raises:
            ResumeTokenExpired: If the token is unknown or already consumed
        """
        ...

    @abstractmethod
    async def fail(self, resume_token: str, error_kind: str, cause: str) -> None:
        """
        Terminate a parked step with a typed failure.

        Raises:
            ResumeTokenExpired: If the token is unknown or already consumed
        """
        ...

    @abstractmethod
    async def cancel(self, execution_ref: str) -> None:
        ...


class CeleryWorkflowOrchestrator(WorkflowOrchestrator):
    """Celery tasks for steps, Redis for parked resume tokens."""

    def __init__(self, celery_app=None, redis_url: Optional[str] = None, token_ttl: Optional[int] = None):
        self._celery_app = celery_app
        self._redis_url = redis_url or settings.redis_url
        self._token_ttl = token_ttl or settings.workflow_token_ttl_seconds
        self._redis: Optional[redis.Redis] = None
        self._redis_loop: Optional[asyncio.AbstractEventLoop] = None
        self._token_prefix = "rfp_intake:workflow:token:"
        self._execution_prefix = "rfp_intake:workflow:execution:"

    @property
    def celery_app(self):
        if self._celery_app is None:
            from rfp_intake.celery_app import app

            self._celery_app = app
        return self._celery_app

    async def _get_redis(self) -> redis.Redis:
        loop = asyncio.get_running_loop()
        if self._redis is None or self._redis_loop is not loop:
            self._redis_loop = loop
            self._redis = redis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def start(self, workflow_input: Dict[str, Any]) -> str:
        execution_ref = str(uuid.uuid4())
        kwargs = dict(workflow_input, execution_ref=execution_ref)
        # send_task talks to the broker synchronously
        await asyncio.to_thread(
            self.celery_app.send_task, OCR_STEP_TASK, kwargs=kwargs, task_id=execution_ref
        )
        logger.info(f"Started ingestion execution {execution_ref} for document {workflow_input.get('document_id')}")
        return execution_ref

    async def issue_resume_token(self, execution_ref: str, document_id: str) -> str:
        r = await self._get_redis()
        token = secrets.token_urlsafe(32)
        record = json.dumps({"execution_ref": execution_ref, "document_id": str(document_id)})
        async with r.pipeline(transaction=True) as pipe:
            pipe.set(f"{self._token_prefix}{token}", record, ex=self._token_ttl)
            pipe.sadd(f"{self._execution_prefix}{execution_ref}", token)
            pipe.expire(f"{self._execution_prefix}{execution_ref}", self._token_ttl)
            await pipe.execute()
        logger.debug(f"Parked execution {execution_ref} (token={token[:8]}...)")
        return token

    async def _consume(self, resume_token: str) -> Dict[str, str]:
        r = await self._get_redis()
        raw = await r.getdel(f"{self._token_prefix}{resume_token}")
        if raw is None:
            raise ResumeTokenExpired(f"Resume token {resume_token[:8]}... is unknown or already used")
        record = json.loads(raw)
        await r.srem(f"{self._execution_prefix}{record['execution_ref']}", resume_token)
        return record

    async def resume(self, resume_token: str, outcome: Dict[str, Any]) -> None:
        record = await self._consume(resume_token)
        execution_ref = record["execution_ref"]
        kwargs = {
            "document_id": record["document_id"],
            "execution_ref": execution_ref,
            "outcome": outcome,
        }
        await asyncio.to_thread(
            self.celery_app.send_task, CONTINUE_TASK, kwargs=kwargs, task_id=f"{execution_ref}:continue"
        )
        logger.info(f"Resumed execution {execution_ref} for document {record['document_id']}")

    async def fail(self, resume_token: str, error_kind: str, cause: str) -> None:
        record = await self._consume(resume_token)
        execution_ref = record["execution_ref"]
        kwargs = {
            "document_id": record["document_id"],
            "execution_ref": execution_ref,
            "outcome": {"failed": True, "error_kind": error_kind, "cause": cause},
        }
        await asyncio.to_thread(
            self.celery_app.send_task, CONTINUE_TASK, kwargs=kwargs, task_id=f"{execution_ref}:continue"
        )
        logger.error(
            f"Execution {execution_ref} for document {record['document_id']} failed: {error_kind}: {cause}"
        )

    async def cancel(self, execution_ref: str) -> None:
        r = await self._get_redis()
        execution_key = f"{self._execution_prefix}{execution_ref}"
        tokens = await r.smembers(execution_key)
        if tokens:
            await r.delete(*[f"{self._token_prefix}{t}" for t in tokens])
        await r.delete(execution_key)
        await asyncio.to_thread(
            self.celery_app.control.revoke, [execution_ref, f"{execution_ref}:continue"]
        )
        logger.info(f"Cancelled execution {execution_ref} ({len(tokens)} parked token(s) dropped)")


@lru_cache()
def get_orchestrator() -> WorkflowOrchestrator:
    return CeleryWorkflowOrchestrator()
