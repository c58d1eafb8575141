"""Choose how a buffer is transferred to the storage backend."""

from __future__ import annotations

from enum import Enum

from .errors import FileTooLarge

MIB = 1024 * 1024

DEFAULT_MULTIPART_THRESHOLD = 5 * MIB
DEFAULT_CHUNKED_THRESHOLD = 25 * MIB
DEFAULT_CHUNK_SIZE = 8 * MIB
DEFAULT_MAX_FILE_SIZE = 50 * MIB

# Resumable chunks other than the last must be a multiple of this size.
CHUNK_GRANULARITY = 256 * 1024


class UploadStrategy(str, Enum):
    MULTIPART = "multipart"
    RESUMABLE = "resumable"
    CHUNKED_RESUMABLE = "resumable+chunked"

    @property
    def is_resumable(self) -> bool:
        return self is not UploadStrategy.MULTIPART


def select_strategy(
    byte_length: int,
    *,
    multipart_threshold: int = DEFAULT_MULTIPART_THRESHOLD,
    chunked_threshold: int = DEFAULT_CHUNKED_THRESHOLD,
) -> UploadStrategy:
    """Return the transfer strategy for a buffer of ``byte_length`` bytes.

    Below ``multipart_threshold`` one request carries metadata and data; up to
    ``chunked_threshold`` (inclusive) a resumable session takes a single PUT;
    anything larger is sent in fixed-size chunks.
    """
    if byte_length < 0:
        raise ValueError("byte_length must be non-negative")
    if multipart_threshold > chunked_threshold:
        raise ValueError("multipart_threshold cannot exceed chunked_threshold")
    if byte_length < multipart_threshold:
        return UploadStrategy.MULTIPART
    if byte_length <= chunked_threshold:
        return UploadStrategy.RESUMABLE
    return UploadStrategy.CHUNKED_RESUMABLE


def ensure_within_ceiling(byte_length: int, max_file_size: int = DEFAULT_MAX_FILE_SIZE) -> None:
    """Raise :class:`FileTooLarge` before any network call for oversized buffers."""
    if byte_length > max_file_size:
        raise FileTooLarge(byte_length, max_file_size)


def normalise_chunk_size(chunk_size: int) -> int:
    """Round ``chunk_size`` down to the resumable protocol granularity."""
    if chunk_size < CHUNK_GRANULARITY:
        return CHUNK_GRANULARITY
    return chunk_size - (chunk_size % CHUNK_GRANULARITY)
