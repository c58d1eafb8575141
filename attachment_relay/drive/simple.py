"""Last-resort upload path used when the selected strategy fails."""

from __future__ import annotations

from typing import Dict, Optional, Type

from ..errors import (
    ErrorKind,
    NetworkError,
    PermissionDenied,
    QuotaExceeded,
    RelayError,
    UploadTimeout,
    classify_error,
)
from .base import DriveTransport, TokenProvider, UploadResult

DEFAULT_FALLBACK_TIMEOUT = 55.0

_CAUSE_LABELS = {
    ErrorKind.TIMEOUT: "timeout",
    ErrorKind.NETWORK: "connection problem",
    ErrorKind.QUOTA_EXCEEDED: "storage quota exceeded",
    ErrorKind.PERMISSION_DENIED: "permission denied",
}

_KIND_ERRORS: Dict[ErrorKind, Type[RelayError]] = {
    ErrorKind.TIMEOUT: UploadTimeout,
    ErrorKind.NETWORK: NetworkError,
    ErrorKind.QUOTA_EXCEEDED: QuotaExceeded,
    ErrorKind.PERMISSION_DENIED: PermissionDenied,
}


def enrich_error(exc: BaseException) -> RelayError:
    """Return a typed error whose message names the probable cause of ``exc``."""
    info = classify_error(exc, context="fallback upload")
    label = _CAUSE_LABELS.get(info.kind, "unexpected error")
    error_cls = _KIND_ERRORS.get(info.kind, RelayError)
    return error_cls(f"Fallback upload failed ({label}): {info.technical}", cause=exc)


class SimpleUploader(DriveTransport):
    """One multipart request, no retries, fixed timeout."""

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        session_factory=None,
        timeout: float = DEFAULT_FALLBACK_TIMEOUT,
        logger=None,
    ):
        super().__init__(token_provider, session_factory=session_factory, logger=logger)
        self.timeout = timeout

    async def upload_simple(
        self,
        buffer: bytes,
        file_name: str,
        mime_type: str,
        folder_id: Optional[str] = "root",
    ) -> UploadResult:
        try:
            result = await self.post_multipart(
                buffer, file_name, mime_type, folder_id, timeout=self.timeout, context="fallback upload"
            )
        except Exception as exc:
            raise enrich_error(exc) from exc
        self.logger.info("Fallback upload finished for %s (id=%s)", file_name, result.id)
        return result
