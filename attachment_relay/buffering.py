"""Materialise an inbound attachment stream into a single in-memory buffer."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, AsyncIterable, Optional

import aiohttp

from .errors import NetworkError, SizeExceeded, UploadTimeout
from .logger import get_logger

MIB = 1024 * 1024

DEFAULT_BUFFER_TIMEOUT = 60.0
DEFAULT_MAX_BUFFER_BYTES = 50 * MIB
DEFAULT_STALL_CHECK_INTERVAL = 5.0
STALL_WARNING_MULTIPLE = 4


def progress_step(received: int) -> int:
    """Bytes to wait before the next progress line; widens as the file grows."""
    if received < 10 * MIB:
        return MIB
    if received < 50 * MIB:
        return 5 * MIB
    return 10 * MIB


async def close_stream(stream: Any) -> None:
    """Abort ``stream`` through whichever close hook it exposes."""
    closer = getattr(stream, "aclose", None) or getattr(stream, "close", None)
    if closer is None:
        return
    result = closer()
    if inspect.isawaitable(result):
        await result


async def bufferize(
    stream: AsyncIterable[bytes],
    timeout: float = DEFAULT_BUFFER_TIMEOUT,
    max_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
    *,
    stall_check_interval: float = DEFAULT_STALL_CHECK_INTERVAL,
    stall_warning_after: Optional[float] = None,
    label: str = "attachment",
    logger=None,
) -> bytes:
    """Read ``stream`` to the end and return its content as one ``bytes`` object.

    The deadline is counted from the call, not from the last chunk. Going over
    ``max_bytes`` aborts the source at once with :class:`SizeExceeded`; no
    partial buffer is ever returned. A chunk gap longer than
    ``stall_warning_after`` (default 4x ``stall_check_interval``) only logs a
    warning.
    """
    logger = logger or get_logger()
    loop = asyncio.get_running_loop()
    stall_after = stall_warning_after if stall_warning_after is not None else stall_check_interval * STALL_WARNING_MULTIPLE

    chunks: list[bytes] = []
    received = 0
    started = loop.time()
    last_chunk_at = started
    next_progress = progress_step(0)

    async def _watch_stall() -> None:
        while True:
            await asyncio.sleep(stall_check_interval)
            idle = loop.time() - last_chunk_at
            if idle >= stall_after:
                logger.warning(
                    "Stream for %s stalled: no data for %.0fs (%d bytes so far)",
                    label,
                    idle,
                    received,
                )

    watcher = asyncio.create_task(_watch_stall(), name=f"stall-watch-{label}")
    try:
        async with asyncio.timeout(timeout):
            async for chunk in stream:
                if not chunk:
                    continue
                if received + len(chunk) > max_bytes:
                    chunks.clear()
                    await close_stream(stream)
                    raise SizeExceeded(max_bytes, received + len(chunk))
                chunks.append(bytes(chunk))
                received += len(chunk)
                last_chunk_at = loop.time()
                if received >= next_progress:
                    logger.info("Buffering %s: %.1f MB received", label, received / MIB)
                    next_progress = received + progress_step(received)
    except TimeoutError as exc:
        chunks.clear()
        await close_stream(stream)
        raise UploadTimeout(
            f"Stream to buffer conversion timeout after {timeout:g}s ({received} bytes received)",
            cause=exc,
        ) from exc
    except (aiohttp.ClientError, ConnectionError, OSError) as exc:
        chunks.clear()
        await close_stream(stream)
        raise NetworkError(f"Stream for {label} failed after {received} bytes: {exc}", cause=exc) from exc
    finally:
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass

    buffer = b"".join(chunks)
    chunks.clear()
    logger.debug(
        "Buffered %s: %d bytes in %.2fs",
        label,
        len(buffer),
        loop.time() - started,
    )
    return buffer
