"""Google Drive storage backend.

:class:`DriveUploader` is the single entry point used by the upload queue: it
enforces the size ceiling, picks the transfer strategy, runs it under an
overall deadline and falls back to one plain multipart request when the
selected path fails.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from ..errors import FileTooLarge, ValidationFailed
from ..logger import get_logger
from ..mime import resolve_mime_type
from ..strategy import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CHUNKED_THRESHOLD,
    DEFAULT_MAX_FILE_SIZE,
    DEFAULT_MULTIPART_THRESHOLD,
    ensure_within_ceiling,
    select_strategy,
)
from .base import FileTokenProvider, StaticTokenProvider, TokenProvider, UploadResult, scaled_timeout
from .files import DriveFiles
from .multipart import MultipartUploader
from .resumable import ResumableSessionClient, SessionState, UploadSession
from .simple import SimpleUploader

DEFAULT_ATTEMPT_TIMEOUT_FLOOR = 45.0
DEFAULT_ATTEMPT_TIMEOUT_PER_MIB = 1.0

__all__ = [
    "DriveFiles",
    "DriveUploader",
    "FileTokenProvider",
    "MultipartUploader",
    "ResumableSessionClient",
    "SessionState",
    "SimpleUploader",
    "StaticTokenProvider",
    "TokenProvider",
    "UploadResult",
    "UploadSession",
]


class DriveUploader:
    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        folder_id: str = "root",
        session_factory=None,
        multipart_threshold: int = DEFAULT_MULTIPART_THRESHOLD,
        chunked_threshold: int = DEFAULT_CHUNKED_THRESHOLD,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        attempt_timeout_floor: float = DEFAULT_ATTEMPT_TIMEOUT_FLOOR,
        attempt_timeout_per_mib: float = DEFAULT_ATTEMPT_TIMEOUT_PER_MIB,
        resumable: Optional[ResumableSessionClient] = None,
        fallback: Optional[SimpleUploader] = None,
        files: Optional[DriveFiles] = None,
        metrics=None,
        logger=None,
    ):
        self.logger = logger or get_logger()
        self.folder_id = folder_id or "root"
        self.multipart_threshold = multipart_threshold
        self.chunked_threshold = chunked_threshold
        self.max_file_size = max_file_size
        self.attempt_timeout_floor = attempt_timeout_floor
        self.attempt_timeout_per_mib = attempt_timeout_per_mib
        self.metrics = metrics
        self.resumable = resumable or ResumableSessionClient(
            token_provider, session_factory=session_factory, chunk_size=chunk_size, logger=self.logger
        )
        self.fallback = fallback or SimpleUploader(token_provider, session_factory=session_factory, logger=self.logger)
        self.files = files or DriveFiles(token_provider, session_factory=session_factory, logger=self.logger)

    def attempt_timeout(self, byte_length: int) -> float:
        return scaled_timeout(byte_length, self.attempt_timeout_floor, self.attempt_timeout_per_mib)

    async def upload(self, file_name: str, buffer: bytes, folder_id: Optional[str] = None) -> UploadResult:
        """Store ``buffer`` as ``file_name`` and return the created file resource."""
        size = len(buffer)
        ensure_within_ceiling(size, self.max_file_size)
        folder = folder_id or self.folder_id
        mime_type = resolve_mime_type(file_name)
        strategy = select_strategy(
            size, multipart_threshold=self.multipart_threshold, chunked_threshold=self.chunked_threshold
        )
        if self.metrics:
            self.metrics.inc_strategy(strategy)
        self.logger.info(
            "Uploading %s (%.2f MB, %s) with strategy %s", file_name, size / (1024 * 1024), mime_type, strategy.value
        )
        try:
            async with asyncio.timeout(self.attempt_timeout(size)):
                return await self.resumable.upload(strategy, buffer, file_name, mime_type, folder)
        except (FileTooLarge, ValidationFailed):
            raise
        except Exception as exc:
            self.logger.warning("Upload of %s with %s failed, trying fallback upload: %s", file_name, strategy.value, exc)
            if self.metrics:
                self.metrics.inc_fallback()
            return await self.fallback.upload_simple(buffer, file_name, mime_type, folder)

    async def list_files(self, folder_id: Optional[str] = None, page_size: int = 50):
        return await self.files.list_files(folder_id or self.folder_id, page_size=page_size)
