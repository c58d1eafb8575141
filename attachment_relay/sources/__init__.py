"""Attachment sources and the retrying open helper used by the relay."""

from __future__ import annotations

import asyncio
import random
from typing import Sequence

from ..errors import UploadTimeout, classify_error
from ..logger import get_logger
from .base import AttachmentSource, ChunkStream
from .line import LineContentSource, ResponseStream

DEFAULT_FETCH_TIMEOUTS = (30.0, 45.0, 60.0)
DEFAULT_FETCH_BACKOFF = 5.0
DEFAULT_FETCH_JITTER = 2.0

__all__ = [
    "AttachmentSource",
    "ChunkStream",
    "LineContentSource",
    "ResponseStream",
    "fetch_with_retry",
]


async def fetch_with_retry(
    source: AttachmentSource,
    message_id: str,
    *,
    timeouts: Sequence[float] = DEFAULT_FETCH_TIMEOUTS,
    backoff: float = DEFAULT_FETCH_BACKOFF,
    jitter: float = DEFAULT_FETCH_JITTER,
    logger=None,
) -> ChunkStream:
    """Open ``message_id`` on ``source``, one try per entry of ``timeouts``.

    Try ``n`` (1-based) gets ``timeouts[n-1]`` seconds to return a stream;
    between tries the helper sleeps ``backoff * n`` plus up to ``jitter``
    random seconds. Non-retryable errors (permission, validation) are raised
    at once.
    """
    logger = logger or get_logger()
    attempts = len(timeouts)
    if attempts == 0:
        raise ValueError("timeouts must not be empty")
    for attempt, timeout in enumerate(timeouts, start=1):
        try:
            async with asyncio.timeout(timeout):
                return await source.open(message_id)
        except Exception as exc:
            info = classify_error(exc, context="attachment fetch", metadata={"message_id": message_id})
            if not info.retryable or attempt >= attempts:
                logger.error("Fetching message %s failed after %d attempt(s): %s", message_id, attempt, info.technical)
                if isinstance(exc, TimeoutError):
                    raise UploadTimeout(f"Fetching message {message_id} timed out after {timeout:g}s", cause=exc) from exc
                raise
            delay = backoff * attempt + random.uniform(0, jitter)
            logger.warning(
                "Fetching message %s failed (attempt %d/%d, %s): retrying in %.1fs",
                message_id,
                attempt,
                attempts,
                info.technical,
                delay,
            )
            await asyncio.sleep(delay)
