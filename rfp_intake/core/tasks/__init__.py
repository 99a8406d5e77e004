"""
Celery tasks package for RFP intake.

Celery discovers tasks via the include= list in celery_app.py,
which references each submodule directly.
"""

from rfp_intake.core.tasks.ingestion import (
    ingestion_continue,
    ingestion_ocr_step,
    notify_ocr_completion_task,
)
from rfp_intake.core.tasks.scheduler import run_saved_searches_task

__all__ = [
    "ingestion_continue",
    "ingestion_ocr_step",
    "notify_ocr_completion_task",
    "run_saved_searches_task",
]
