"""Shared plumbing for the Google Drive v3 HTTP clients."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import aiohttp

from ..errors import (
    NetworkError,
    PermissionDenied,
    QuotaExceeded,
    RelayError,
    UploadTimeout,
)
from ..logger import get_logger
from ..strategy import MIB

DRIVE_API_URL = "https://www.googleapis.com/drive/v3"
UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
FILE_FIELDS = "id,name,webViewLink,mimeType,size"
VIEW_LINK_TEMPLATE = "https://drive.google.com/file/d/{file_id}/view"

# Errors raised by aiohttp / the socket layer that mean "the wire broke".
TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError, OSError)

SessionFactory = Callable[[], aiohttp.ClientSession]


class TokenProvider:
    """Interface implemented by objects able to hand out an OAuth access token."""

    async def get_access_token(self) -> str:
        raise NotImplementedError


class StaticTokenProvider(TokenProvider):
    """Token provider for a token obtained elsewhere (service account, CLI, tests)."""

    def __init__(self, token: str):
        self._token = token

    async def get_access_token(self) -> str:
        if not self._token:
            raise PermissionDenied("No Google Drive access token configured")
        return self._token


class FileTokenProvider(TokenProvider):
    """Read the token from a file kept fresh by an external refresher.

    The file is re-read whenever its modification time changes, so a rotated
    token is picked up by the next request without restarting the process.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._token: Optional[str] = None
        self._mtime: Optional[float] = None

    async def get_access_token(self) -> str:
        try:
            mtime = self.path.stat().st_mtime
            if self._token is None or mtime != self._mtime:
                self._token = self.path.read_text(encoding="utf-8").strip()
                self._mtime = mtime
        except OSError as exc:
            raise PermissionDenied(f"Cannot read Google Drive token file {self.path}: {exc}", cause=exc) from exc
        if not self._token:
            raise PermissionDenied(f"Google Drive token file {self.path} is empty")
        return self._token


@dataclass
class UploadResult:
    id: str
    name: str
    view_link: str
    mime_type: Optional[str] = None
    size: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "UploadResult":
        file_id = data.get("id") or ""
        size = data.get("size")
        return cls(
            id=file_id,
            name=data.get("name") or "",
            view_link=data.get("webViewLink") or VIEW_LINK_TEMPLATE.format(file_id=file_id),
            mime_type=data.get("mimeType"),
            size=int(size) if size is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "view_link": self.view_link,
            "mime_type": self.mime_type,
            "size": self.size,
        }


def scaled_timeout(byte_length: int, floor: float, per_mib: float) -> float:
    """Return ``max(floor, per_mib * size_in_MiB)`` in seconds."""
    return max(float(floor), (byte_length / MIB) * per_mib)


def error_for_response(status: int, body: str, context: str) -> RelayError:
    """Translate a non-success Drive answer into a typed error."""
    text = (body or "").strip()
    lowered = text.lower()
    summary = f"{context} failed with HTTP {status}: {text[:300]}"
    if status in (403, 429) and "ratelimitexceeded" in lowered.replace(" ", ""):
        return NetworkError(summary, status=status)
    if status == 403 and ("storagequotaexceeded" in lowered or "quotaexceeded" in lowered):
        return QuotaExceeded(summary)
    if status in (401, 403):
        return PermissionDenied(summary)
    if status in (404, 408, 429) or status >= 500:
        return NetworkError(summary, status=status)
    return RelayError(summary)


def transport_error(exc: BaseException, context: str) -> RelayError:
    """Wrap an aiohttp / socket exception into :class:`UploadTimeout` or :class:`NetworkError`."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, aiohttp.ServerTimeoutError)):
        return UploadTimeout(f"{context} timed out: {exc or exc.__class__.__name__}", cause=exc)
    return NetworkError(f"{context} failed: {exc or exc.__class__.__name__}", cause=exc)


class DriveTransport:
    """Base class holding the token provider, HTTP session factory and logger."""

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        session_factory: Optional[SessionFactory] = None,
        logger=None,
    ):
        self.token_provider = token_provider
        self._session_factory = session_factory or aiohttp.ClientSession
        self.logger = logger or get_logger()

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self.token_provider.get_access_token()
        return {"Authorization": f"Bearer {token}"}

    @staticmethod
    def _metadata(file_name: str, folder_id: Optional[str]) -> Dict[str, Any]:
        return {"name": file_name, "parents": [folder_id or "root"]}

    async def post_multipart(
        self,
        buffer: bytes,
        file_name: str,
        mime_type: str,
        folder_id: Optional[str],
        *,
        timeout: float,
        context: str = "multipart upload",
    ) -> UploadResult:
        """Create a file with metadata and content in one ``multipart/related`` request."""
        headers = await self._auth_headers()
        with aiohttp.MultipartWriter("related") as writer:
            writer.append_json(self._metadata(file_name, folder_id))
            writer.append(buffer, {"Content-Type": mime_type})
        try:
            async with self._session_factory() as http:
                async with http.post(
                    UPLOAD_URL,
                    params={"uploadType": "multipart", "fields": FILE_FIELDS},
                    data=writer,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=timeout),
                ) as resp:
                    if resp.status in (200, 201):
                        return UploadResult.from_api(await resp.json(content_type=None))
                    raise error_for_response(resp.status, await resp.text(), context)
        except RelayError:
            raise
        except TRANSPORT_ERRORS as exc:
            raise transport_error(exc, context) from exc
