"""
Logging setup for worker and command entry points.

Services log through named loggers (``rfp_intake.ingestion``,
``rfp_intake.scheduler`` ...); this module only wires the root handler.
"""

import logging
from typing import Optional

from rfp_intake.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    resolved = (level or ("DEBUG" if settings.debug else settings.log_level)).upper()
    logging.basicConfig(level=getattr(logging, resolved, logging.INFO), format=LOG_FORMAT)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
