"""Map file names to the content type declared to the storage backend."""

from __future__ import annotations

import mimetypes
import os

DEFAULT_MIME_TYPE = "application/octet-stream"

# Explicit table for the types the storage backend must see exactly as written,
# independent of the platform mime database.
MIME_TYPES = {
    # images
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "bmp": "image/bmp",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "heic": "image/heic",
    # video
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "wmv": "video/x-ms-wmv",
    "flv": "video/x-flv",
    "webm": "video/webm",
    # audio
    "m4a": "audio/mp4",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "flac": "audio/flac",
    "aac": "audio/aac",
    "ogg": "audio/ogg",
    # documents
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "ppt": "application/vnd.ms-powerpoint",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "txt": "text/plain",
    "rtf": "application/rtf",
    # archives
    "zip": "application/zip",
    "rar": "application/vnd.rar",
    "7z": "application/x-7z-compressed",
    "tar": "application/x-tar",
    "gz": "application/gzip",
    # other
    "json": "application/json",
    "xml": "application/xml",
    "csv": "text/csv",
    "html": "text/html",
    "css": "text/css",
    "js": "application/javascript",
}


def file_extension(file_name: str) -> str:
    """Return the lower-case extension of ``file_name`` without the dot."""
    return os.path.splitext(file_name or "")[1].lower().lstrip(".")


def resolve_mime_type(file_name: str) -> str:
    """Return the content type for ``file_name``.

    The explicit table wins, then the platform :mod:`mimetypes` database;
    unknown extensions fall back to ``application/octet-stream``.
    """
    ext = file_extension(file_name)
    if ext in MIME_TYPES:
        return MIME_TYPES[ext]
    guessed, _ = mimetypes.guess_type(file_name or "")
    return guessed or DEFAULT_MIME_TYPE
