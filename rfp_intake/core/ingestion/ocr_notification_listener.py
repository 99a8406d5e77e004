"""
Redis pub/sub listener for OCR job completions.

Subscribes to ``settings.ocr_notification_channel`` and hands every message
to the callback correlator. Messages are processed one at a time in
arrival order.

Usage:
    listener = OcrNotificationListener()
    await listener.run()
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis

from rfp_intake.config import settings

logger = logging.getLogger("rfp_intake.ocr.listener")

Handler = Callable[[object], Awaitable[object]]


class OcrNotificationListener:

    def __init__(
        self,
        handler: Optional[Handler] = None,
        redis_url: Optional[str] = None,
        channel: Optional[str] = None,
    ):
        self._handler = handler
        self._redis_url = redis_url or settings.redis_url
        self._channel = channel or settings.ocr_notification_channel

    async def _handle(self, data) -> None:
        handler = self._handler
        if handler is None:
            from rfp_intake.core.ingestion.ocr_callback_service import notify_ocr_completion

            handler = notify_ocr_completion
        try:
            await handler(data)
        except Exception as e:
            logger.error(f"OCR notification handler failed: {type(e).__name__}: {e}")

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        subscriber = redis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
        pubsub = subscriber.pubsub()
        try:
            await pubsub.subscribe(self._channel)
            logger.info(f"Subscribed to channel: {self._channel}")

            while stop_event is None or not stop_event.is_set():
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message and message.get("type") == "message":
                    await self._handle(message["data"])
        except asyncio.CancelledError:
            logger.info(f"Subscription cancelled for channel: {self._channel}")
            raise
        finally:
            await pubsub.unsubscribe(self._channel)
            await pubsub.aclose()
            await subscriber.aclose()
            logger.info(f"Unsubscribed from channel: {self._channel}")
