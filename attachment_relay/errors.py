"""Error taxonomy shared by the buffering, upload and queue layers."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

import aiohttp

from .logger import get_logger


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    SIZE_EXCEEDED = "size_exceeded"
    FILE_TOO_LARGE = "file_too_large"
    SESSION_INIT_FAILED = "session_init_failed"
    INCOMPLETE_UPLOAD = "incomplete_upload"
    QUOTA_EXCEEDED = "quota_exceeded"
    PERMISSION_DENIED = "permission_denied"
    VALIDATION_FAILED = "validation_failed"
    UNKNOWN = "unknown"


NON_RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.SIZE_EXCEEDED,
        ErrorKind.FILE_TOO_LARGE,
        ErrorKind.QUOTA_EXCEEDED,
        ErrorKind.PERMISSION_DENIED,
        ErrorKind.VALIDATION_FAILED,
    }
)


class RelayError(RuntimeError):
    """Base class of every typed failure raised by the relay pipeline."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
        self.code = self.kind.value

    @property
    def retryable(self) -> bool:
        return self.kind not in NON_RETRYABLE_KINDS


class UploadTimeout(RelayError):
    """An operation (buffering or upload) exceeded its deadline."""

    kind = ErrorKind.TIMEOUT


class NetworkError(RelayError):
    """Connection reset, refused, DNS failure or a transient server answer."""

    kind = ErrorKind.NETWORK

    def __init__(self, message: str, *, cause: Optional[BaseException] = None, status: Optional[int] = None):
        super().__init__(message, cause=cause)
        self.status = status


class SizeExceeded(RelayError):
    """The inbound stream grew past the configured buffer ceiling."""

    kind = ErrorKind.SIZE_EXCEEDED

    def __init__(self, max_bytes: int, received: int):
        super().__init__(f"Stream exceeded the maximum size of {max_bytes} bytes (received {received})")
        self.max_bytes = max_bytes
        self.received = received


class FileTooLarge(RelayError):
    """A buffer larger than the upload ceiling was handed to the uploader."""

    kind = ErrorKind.FILE_TOO_LARGE

    def __init__(self, size: int, limit: int):
        super().__init__(f"File too large: {size} bytes (max {limit} bytes)")
        self.size = size
        self.limit = limit


class SessionInitFailed(RelayError):
    kind = ErrorKind.SESSION_INIT_FAILED


class IncompleteUpload(RelayError):
    kind = ErrorKind.INCOMPLETE_UPLOAD


class QuotaExceeded(RelayError):
    kind = ErrorKind.QUOTA_EXCEEDED


class PermissionDenied(RelayError):
    kind = ErrorKind.PERMISSION_DENIED


class ValidationFailed(RelayError):
    kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, errors: List[str]):
        super().__init__(f"File validation failed: {', '.join(errors)}")
        self.errors = list(errors)


USER_MESSAGES: Dict[ErrorKind, tuple[str, str]] = {
    ErrorKind.TIMEOUT: (
        "The upload timed out. The file may be too large or the network too slow.",
        "Try a smaller file or check the network speed",
    ),
    ErrorKind.NETWORK: (
        "A network problem interrupted the transfer. Please try again.",
        "Check the internet connection",
    ),
    ErrorKind.SIZE_EXCEEDED: (
        "The file is larger than the allowed maximum.",
        "Reduce the file size or split it into smaller parts",
    ),
    ErrorKind.FILE_TOO_LARGE: (
        "The file is larger than the allowed maximum.",
        "Reduce the file size or split it into smaller parts",
    ),
    ErrorKind.SESSION_INIT_FAILED: (
        "The storage service did not accept the upload session. Please try again.",
        "Wait a moment and retry",
    ),
    ErrorKind.INCOMPLETE_UPLOAD: (
        "The storage service received only part of the file. Please try again.",
        "Wait a moment and retry",
    ),
    ErrorKind.QUOTA_EXCEEDED: (
        "The Google Drive storage is full.",
        "Ask the administrator to free or add storage space",
    ),
    ErrorKind.PERMISSION_DENIED: (
        "The service has no permission to write to Google Drive.",
        "Ask the administrator to check the folder permissions",
    ),
    ErrorKind.VALIDATION_FAILED: (
        "The file is invalid or its type is not supported.",
        "Check the file type and size",
    ),
    ErrorKind.UNKNOWN: (
        "An unexpected error occurred. Please try again.",
        "Retry the upload",
    ),
}

_SEVERITY = {
    ErrorKind.QUOTA_EXCEEDED: "high",
    ErrorKind.PERMISSION_DENIED: "high",
    ErrorKind.SIZE_EXCEEDED: "low",
    ErrorKind.FILE_TOO_LARGE: "low",
    ErrorKind.VALIDATION_FAILED: "low",
}


@dataclass
class ErrorInfo:
    """Classification of a failure, used for user messaging and logging only."""

    kind: ErrorKind
    retryable: bool
    message: str
    suggested_action: str
    technical: str
    context: str = "unknown"
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""

    @property
    def severity(self) -> str:
        return _SEVERITY.get(self.kind, "medium")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "retryable": self.retryable,
            "message": self.message,
            "suggested_action": self.suggested_action,
            "technical": self.technical,
            "context": self.context,
            "severity": self.severity,
            "timestamp": self.timestamp,
        }


def _kind_from_exception(exc: BaseException) -> ErrorKind:
    if isinstance(exc, RelayError):
        return exc.kind
    # Timeouts first: several timeout classes also derive from OSError.
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, aiohttp.ServerTimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, ConnectionError, OSError)):
        return ErrorKind.NETWORK

    error_msg = str(exc).lower()
    patterns = [
        (ErrorKind.TIMEOUT, ("timeout", "timed out", "etimedout")),
        (ErrorKind.NETWORK, ("econnreset", "enotfound", "econnrefused", "connection reset", "connection refused", "network", "socket")),
        (ErrorKind.QUOTA_EXCEEDED, ("quota", "storage full", "insufficient")),
        (ErrorKind.PERMISSION_DENIED, ("permission", "unauthorized", "forbidden")),
        (ErrorKind.VALIDATION_FAILED, ("validation", "invalid file", "file type")),
        (ErrorKind.FILE_TOO_LARGE, ("too large", "size limit")),
    ]
    for kind, needles in patterns:
        if any(needle in error_msg for needle in needles):
            return kind
    return ErrorKind.UNKNOWN


def classify_error(
    exc: BaseException,
    context: str = "unknown",
    metadata: Optional[Dict[str, Any]] = None,
) -> ErrorInfo:
    """Map an exception to an :class:`ErrorInfo`.

    Typed :class:`RelayError` instances keep their own kind; anything else is
    classified by exception type and then by message patterns, defaulting to
    ``UNKNOWN`` (retryable).
    """
    kind = _kind_from_exception(exc)
    message, action = USER_MESSAGES[kind]
    return ErrorInfo(
        kind=kind,
        retryable=kind not in NON_RETRYABLE_KINDS,
        message=message,
        suggested_action=action,
        technical=str(exc) or exc.__class__.__name__,
        context=context,
        metadata=dict(metadata or {}),
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )


class ErrorTracker:
    """Keep a bounded history of classified errors and per-kind frequencies."""

    def __init__(self, max_recent: int = 50, frequent_threshold: int = 5, logger=None):
        self.logger = logger or get_logger()
        self._frequent_threshold = frequent_threshold
        self._recent: Deque[ErrorInfo] = deque(maxlen=max_recent)
        self._counts: Dict[str, int] = {}

    def record(
        self,
        exc: BaseException,
        context: str = "unknown",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ErrorInfo:
        """Classify, log and remember ``exc``; return its classification."""
        info = classify_error(exc, context, metadata)
        line = "[%s] %s - %s"
        if info.severity == "high":
            self.logger.error(line, info.context, info.kind.value, info.technical)
        elif info.severity == "medium":
            self.logger.warning(line, info.context, info.kind.value, info.technical)
        else:
            self.logger.info(line, info.context, info.kind.value, info.technical)

        key = f"{info.kind.value}_{info.context}"
        count = self._counts.get(key, 0) + 1
        self._counts[key] = count
        if count > self._frequent_threshold:
            self.logger.warning("Frequent error detected: %s (%d times)", key, count)
        self._recent.appendleft(info)
        return info

    def stats(self) -> Dict[str, Any]:
        by_kind: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        for info in self._recent:
            by_kind[info.kind.value] = by_kind.get(info.kind.value, 0) + 1
            by_severity[info.severity] = by_severity.get(info.severity, 0) + 1
        frequent = sorted(self._counts.items(), key=lambda item: item[1], reverse=True)[:5]
        return {
            "total": len(self._recent),
            "by_kind": by_kind,
            "by_severity": by_severity,
            "recent": [info.to_dict() for info in list(self._recent)[:10]],
            "frequent": [{"error": key, "count": count} for key, count in frequent],
        }

    def clear(self) -> None:
        self._counts.clear()
        self._recent.clear()
