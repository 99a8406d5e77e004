#!/usr/bin/env python3
"""
Long-running OCR completion listener.

Subscribes to the OCR notification channel and correlates each completion
back to its parked ingestion document. Stops cleanly on SIGINT/SIGTERM.

Usage:
    rfp-intake-ocr-listener
    rfp-intake-ocr-listener --channel rfp_intake:ocr:completions
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from rfp_intake.core.ingestion.ocr_notification_listener import OcrNotificationListener
from rfp_intake.core.shared.database_service import database_service
from rfp_intake.logging_config import configure_logging

logger = logging.getLogger("rfp_intake.commands.ocr_listener")


async def _run(channel: Optional[str]) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    listener = OcrNotificationListener(channel=channel)
    try:
        await listener.run(stop_event=stop_event)
    finally:
        await database_service.close()
        logger.info("OCR listener stopped")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Listen for OCR job completions")
    parser.add_argument("--channel", type=str, default=None, help="Override OCR_NOTIFICATION_CHANNEL")
    parser.add_argument("--log-level", type=str, default=None)
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    asyncio.run(_run(args.channel))
    return 0


if __name__ == "__main__":
    sys.exit(main())
