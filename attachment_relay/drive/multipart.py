"""Single-request ``multipart/related`` uploads for small files."""

from __future__ import annotations

import asyncio
from typing import Optional

from ..errors import RelayError
from .base import DriveTransport, TokenProvider, UploadResult, scaled_timeout

DEFAULT_MAX_RETRIES = 2
DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_BACKOFF_CAP = 8.0
DEFAULT_TIMEOUT_FLOOR = 30.0
DEFAULT_TIMEOUT_PER_MIB = 10.0


def backoff_delay(retry: int, base: float = DEFAULT_BACKOFF_BASE, cap: float = DEFAULT_BACKOFF_CAP) -> float:
    """Delay before retry number ``retry`` (0-based): ``min(base * 2**retry, cap)``."""
    return min(base * (2 ** retry), cap)


class MultipartUploader(DriveTransport):
    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        session_factory=None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_cap: float = DEFAULT_BACKOFF_CAP,
        timeout_floor: float = DEFAULT_TIMEOUT_FLOOR,
        timeout_per_mib: float = DEFAULT_TIMEOUT_PER_MIB,
        logger=None,
    ):
        super().__init__(token_provider, session_factory=session_factory, logger=logger)
        self.max_retries = max(0, int(max_retries))
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.timeout_floor = timeout_floor
        self.timeout_per_mib = timeout_per_mib

    async def upload(
        self,
        buffer: bytes,
        file_name: str,
        mime_type: str,
        folder_id: Optional[str] = "root",
    ) -> UploadResult:
        """Upload ``buffer`` in one request, retrying retryable failures with backoff."""
        timeout = scaled_timeout(len(buffer), self.timeout_floor, self.timeout_per_mib)
        retry = 0
        while True:
            try:
                result = await self.post_multipart(buffer, file_name, mime_type, folder_id, timeout=timeout)
            except RelayError as exc:
                if not exc.retryable or retry >= self.max_retries:
                    raise
                delay = backoff_delay(retry, self.backoff_base, self.backoff_cap)
                retry += 1
                self.logger.warning(
                    "Multipart upload of %s failed (retry %d/%d in %.0fs): %s",
                    file_name,
                    retry,
                    self.max_retries,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                continue
            self.logger.info("Multipart upload finished for %s (id=%s)", file_name, result.id)
            return result
