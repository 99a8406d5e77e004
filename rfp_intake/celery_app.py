"""
Celery application setup for RFP intake.

Workers run the ingestion workflow steps and the saved-search scheduler.
Tasks live in rfp_intake.core.tasks.

Queue Architecture:
- ingestion_priority: OCR continuations (a parked document is waiting on them)
- ingestion: Workflow start steps (FIFO)
- maintenance: Scheduled saved-search runs and notification batches

Workers consume queues left-to-right, so priority queue is processed first.
"""
import os

from celery import Celery
from kombu import Queue

from rfp_intake.config import settings


def _bool(val: str, default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).lower() in {"1", "true", "yes", "on"}


app = Celery(
    "rfp_intake",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "rfp_intake.core.tasks.ingestion",
        "rfp_intake.core.tasks.scheduler",
    ],
)

app.conf.task_queues = (
    Queue("ingestion_priority", routing_key="ingestion_priority"),
    Queue("ingestion", routing_key="ingestion"),
    Queue("maintenance", routing_key="maintenance"),
)

app.conf.update(
    task_acks_late=_bool(os.getenv("CELERY_ACKS_LATE", "true"), True),
    worker_prefetch_multiplier=int(os.getenv("CELERY_PREFETCH_MULTIPLIER", "1")),
    worker_max_tasks_per_child=int(os.getenv("CELERY_MAX_TASKS_PER_CHILD", "50")),
    task_soft_time_limit=int(os.getenv("CELERY_TASK_SOFT_TIME_LIMIT", "600")),
    task_time_limit=int(os.getenv("CELERY_TASK_TIME_LIMIT", "900")),
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES", "259200")),  # 3 days
    task_default_queue=settings.celery_default_queue,
    task_routes={
        "rfp_intake.tasks.ingestion_ocr_step": {"queue": "ingestion"},
        "rfp_intake.tasks.ingestion_continue": {"queue": "ingestion_priority"},
        "rfp_intake.tasks.notify_ocr_completion": {"queue": "maintenance"},
        "rfp_intake.tasks.run_saved_searches": {"queue": "maintenance"},
    },
)

# ============================================================================
# Celery Beat Schedule (for periodic tasks)
# ============================================================================

beat_schedule = {}

if settings.scheduler_enabled:
    beat_schedule["run-saved-searches"] = {
        "task": "rfp_intake.tasks.run_saved_searches",
        "schedule": settings.scheduler_interval_seconds,  # Every N seconds (default: 900 = 15 min)
        "options": {"queue": "maintenance"},
    }

app.conf.beat_schedule = beat_schedule

app.conf.timezone = "UTC"
