"""Read-side helpers: list folder content, fetch one file, create folders."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import aiohttp

from ..errors import RelayError
from .base import (
    DRIVE_API_URL,
    FILE_FIELDS,
    TRANSPORT_ERRORS,
    DriveTransport,
    UploadResult,
    error_for_response,
    transport_error,
)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
DEFAULT_REQUEST_TIMEOUT = 30.0


class DriveFiles(DriveTransport):
    async def _request(self, method: str, url: str, context: str, **kwargs: Any) -> Dict[str, Any]:
        headers = await self._auth_headers()
        try:
            async with self._session_factory() as http:
                async with http.request(
                    method,
                    url,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=DEFAULT_REQUEST_TIMEOUT),
                    **kwargs,
                ) as resp:
                    if resp.status in (200, 201):
                        return await resp.json(content_type=None)
                    raise error_for_response(resp.status, await resp.text(), context)
        except RelayError:
            raise
        except TRANSPORT_ERRORS as exc:
            raise transport_error(exc, context) from exc

    async def list_files(self, folder_id: Optional[str] = "root", page_size: int = 50) -> List[UploadResult]:
        """Return the non-trashed files of ``folder_id``, newest first."""
        data = await self._request(
            "GET",
            f"{DRIVE_API_URL}/files",
            "list files",
            params={
                "q": f"'{folder_id or 'root'}' in parents and trashed = false",
                "orderBy": "createdTime desc",
                "pageSize": str(page_size),
                "fields": f"files({FILE_FIELDS})",
            },
        )
        return [UploadResult.from_api(item) for item in data.get("files", [])]

    async def get_file(self, file_id: str) -> UploadResult:
        data = await self._request(
            "GET", f"{DRIVE_API_URL}/files/{file_id}", "get file", params={"fields": FILE_FIELDS}
        )
        return UploadResult.from_api(data)

    async def create_folder(self, name: str, parent_id: Optional[str] = "root") -> UploadResult:
        data = await self._request(
            "POST",
            f"{DRIVE_API_URL}/files",
            "create folder",
            params={"fields": FILE_FIELDS},
            json={"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id or "root"]},
        )
        self.logger.info("Created folder %s (id=%s)", name, data.get("id"))
        return UploadResult.from_api(data)
