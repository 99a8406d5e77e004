"""
Shared HTTP helpers for provider connectors.

Retries transient failures (connection drops, timeouts, 5xx, 429) with
exponential backoff and converts final failures into ProviderError.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from rfp_intake.config import settings
from rfp_intake.core.errors import ProviderError

logger = logging.getLogger("rfp_intake.connectors.http")

TRANSIENT_ERRORS = (
    "Server disconnected",
    "Connection reset",
    "Connection refused",
    "Read timed out",
    "Timeout",
    "TimeoutException",
    "ConnectError",
    "RemoteProtocolError",
)


def format_error(e: Exception) -> str:
    """
    Format exception with type name when message is empty.

    Some network exceptions (e.g., httpx.RemoteProtocolError) stringify to
    an empty string.
    """
    msg = str(e)
    if not msg or msg.isspace():
        return f"{type(e).__name__}: Connection error (no details available)"
    return f"{type(e).__name__}: {msg}"


async def retry_on_transient_error(
    func: Callable[..., Awaitable[Any]],
    *args,
    max_retries: Optional[int] = None,
    retry_delay_seconds: Optional[float] = None,
    **kwargs,
) -> Any:
    """
    Execute a coroutine function with retry logic for transient network errors.

    Args:
        func: Async function to execute
        max_retries: Maximum number of retry attempts (default from settings)
        retry_delay_seconds: Base seconds to wait between retries (default from settings)
        *args, **kwargs: Arguments to pass to func

    Returns:
        Result from func

    Raises:
        Last exception if all retries exhausted; 4xx (except 429) immediately
    """
    max_retries = settings.http_max_retries if max_retries is None else max_retries
    retry_delay_seconds = (
        settings.http_retry_delay_seconds if retry_delay_seconds is None else retry_delay_seconds
    )
    last_error: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except httpx.HTTPStatusError as e:
            if 400 <= e.response.status_code < 500 and e.response.status_code != 429:
                raise
            last_error = e
            error_msg = f"HTTP {e.response.status_code}"
        except (
            httpx.ConnectError,
            httpx.ReadTimeout,
            httpx.WriteTimeout,
            httpx.ConnectTimeout,
            httpx.RemoteProtocolError,
        ) as e:
            last_error = e
            error_msg = format_error(e)
        except Exception as e:
            error_str = str(e)
            if any(pattern.lower() in error_str.lower() for pattern in TRANSIENT_ERRORS):
                last_error = e
                error_msg = format_error(e)
            else:
                raise

        if attempt < max_retries:
            wait_time = retry_delay_seconds * (2 ** attempt)
            logger.warning(
                f"Transient error (attempt {attempt + 1}/{max_retries + 1}): {error_msg}. "
                f"Waiting {wait_time}s before retry..."
            )
            await asyncio.sleep(wait_time)

    raise last_error


async def get_json(
    client: httpx.AsyncClient,
    url: str,
    params: Any,
    source: str,
) -> Dict[str, Any]:
    """
    GET a JSON document from a provider, retrying transient failures.

    Raises:
        ProviderError: On any final HTTP, network or decoding failure
    """

    async def _request() -> httpx.Response:
        response = await client.get(url, params=params)
        response.raise_for_status()
        return response

    try:
        response = await retry_on_transient_error(_request)
    except httpx.HTTPStatusError as e:
        body = e.response.text[:500]
        raise ProviderError(
            f"{source} error: {e.response.status_code} - {body}",
            source=source,
            status_code=e.response.status_code,
        ) from e
    except httpx.HTTPError as e:
        raise ProviderError(f"{source} request failed: {format_error(e)}", source=source) from e

    try:
        return response.json()
    except ValueError as e:
        raise ProviderError(f"{source} returned invalid JSON", source=source) from e
