"""Resumable upload sessions against the Drive upload endpoint.

A session is opened with a metadata POST; the returned ``Location`` is the
session URI. Data is then PUT either in a single request or in fixed-size
``Content-Range`` chunks. The server answers ``308 Resume Incomplete`` while
it expects more bytes and ``200``/``201`` with the file resource once the
upload is complete.

Resuming from a server-acknowledged offset after the session is lost is not
supported: a failed session surfaces to the queue, which restarts the whole
transfer.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import aiohttp

from ..errors import IncompleteUpload, RelayError, SessionInitFailed
from ..strategy import DEFAULT_CHUNK_SIZE, UploadStrategy, normalise_chunk_size
from .base import (
    FILE_FIELDS,
    TRANSPORT_ERRORS,
    UPLOAD_URL,
    DriveTransport,
    TokenProvider,
    UploadResult,
    error_for_response,
    scaled_timeout,
    transport_error,
)
from .multipart import MultipartUploader

DEFAULT_INIT_TIMEOUT = 30.0
DEFAULT_PUT_TIMEOUT_FLOOR = 60.0
DEFAULT_PUT_TIMEOUT_PER_MIB = 15.0
DEFAULT_CHUNK_RETRY_DELAY = 2.0
DEFAULT_CHUNK_MAX_TRIES = 3

# Only connection-level failures are worth resending the same range for.
TRANSIENT_CHUNK_ERRORS = (
    aiohttp.ClientConnectionError,
    aiohttp.ClientPayloadError,
    asyncio.TimeoutError,
    ConnectionError,
)

_RANGE_RE = re.compile(r"bytes=(\d+)-(\d+)")


class SessionState(str, Enum):
    INITIATED = "initiated"
    CONTINUE = "continue"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class UploadSession:
    session_uri: str
    mime_type: str
    total_bytes: int
    bytes_sent: int = 0
    state: SessionState = SessionState.INITIATED

    @property
    def remaining(self) -> int:
        return self.total_bytes - self.bytes_sent

    def next_range(self, chunk_size: int) -> Tuple[int, int]:
        """Return the inclusive ``(start, end)`` byte range of the next chunk."""
        start = self.bytes_sent
        end = min(start + chunk_size, self.total_bytes) - 1
        return start, end

    def content_range(self, start: int, end: int) -> str:
        return f"bytes {start}-{end}/{self.total_bytes}"

    def acknowledge(self, range_header: Optional[str]) -> bool:
        """Move ``bytes_sent`` to the offset a 308 answer reports; return whether it advanced.

        A 308 without a ``Range`` header means the server kept no bytes at all.
        """
        match = _RANGE_RE.search(range_header or "")
        acknowledged = min(int(match.group(2)) + 1, self.total_bytes) if match else 0
        advanced = acknowledged > self.bytes_sent
        self.bytes_sent = acknowledged
        self.state = SessionState.CONTINUE
        return advanced


class ResumableSessionClient(DriveTransport):
    """Perform the transfer chosen by :func:`~attachment_relay.strategy.select_strategy`."""

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        session_factory=None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        init_timeout: float = DEFAULT_INIT_TIMEOUT,
        put_timeout_floor: float = DEFAULT_PUT_TIMEOUT_FLOOR,
        put_timeout_per_mib: float = DEFAULT_PUT_TIMEOUT_PER_MIB,
        chunk_retry_delay: float = DEFAULT_CHUNK_RETRY_DELAY,
        chunk_max_tries: int = DEFAULT_CHUNK_MAX_TRIES,
        multipart: Optional[MultipartUploader] = None,
        logger=None,
    ):
        super().__init__(token_provider, session_factory=session_factory, logger=logger)
        self.chunk_size = normalise_chunk_size(chunk_size)
        self.init_timeout = init_timeout
        self.put_timeout_floor = put_timeout_floor
        self.put_timeout_per_mib = put_timeout_per_mib
        self.chunk_retry_delay = chunk_retry_delay
        self.chunk_max_tries = max(1, int(chunk_max_tries))
        self.multipart = multipart or MultipartUploader(
            token_provider, session_factory=self._session_factory, logger=self.logger
        )

    async def upload(
        self,
        strategy: UploadStrategy,
        buffer: bytes,
        file_name: str,
        mime_type: str,
        folder_id: Optional[str] = "root",
    ) -> UploadResult:
        if strategy is UploadStrategy.MULTIPART:
            return await self.multipart.upload(buffer, file_name, mime_type, folder_id)

        async with self._session_factory() as http:
            session = await self.initiate(http, file_name, mime_type, len(buffer), folder_id)
            self.logger.debug("Resumable session initiated for %s (%d bytes)", file_name, len(buffer))
            if strategy is UploadStrategy.CHUNKED_RESUMABLE:
                data = await self._put_chunked(http, session, buffer)
            else:
                data = await self._put_single(http, session, buffer)
        result = UploadResult.from_api(data)
        self.logger.info("Resumable upload finished for %s (id=%s, strategy=%s)", file_name, result.id, strategy.value)
        return result

    async def initiate(
        self,
        http: aiohttp.ClientSession,
        file_name: str,
        mime_type: str,
        total_bytes: int,
        folder_id: Optional[str],
    ) -> UploadSession:
        """Open a resumable session and return it in the ``INITIATED`` state."""
        headers = await self._auth_headers()
        headers.update(
            {
                "Content-Type": "application/json; charset=UTF-8",
                "X-Upload-Content-Type": mime_type,
                "X-Upload-Content-Length": str(total_bytes),
            }
        )
        try:
            async with http.post(
                UPLOAD_URL,
                params={"uploadType": "resumable", "fields": FILE_FIELDS},
                json=self._metadata(file_name, folder_id),
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.init_timeout),
            ) as resp:
                if resp.status >= 400:
                    raise error_for_response(resp.status, await resp.text(), "resumable session init")
                location = resp.headers.get("Location")
        except RelayError:
            raise
        except TRANSPORT_ERRORS as exc:
            raise SessionInitFailed(f"Failed to initiate resumable session: {exc}", cause=exc) from exc
        if not location:
            raise SessionInitFailed("Failed to get resumable session URI")
        return UploadSession(session_uri=location, mime_type=mime_type, total_bytes=total_bytes)

    async def _put_single(self, http: aiohttp.ClientSession, session: UploadSession, buffer: bytes) -> Dict[str, Any]:
        timeout = scaled_timeout(len(buffer), self.put_timeout_floor, self.put_timeout_per_mib)
        try:
            async with http.put(
                session.session_uri,
                data=buffer,
                headers={"Content-Type": session.mime_type, "Content-Length": str(len(buffer))},
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if resp.status == 308:
                    session.state = SessionState.FAILED
                    raise IncompleteUpload(
                        f"Upload incomplete ({resp.headers.get('Range') or 'no range acknowledged'}); "
                        "the transfer has to be restarted"
                    )
                if resp.status in (200, 201):
                    session.bytes_sent = session.total_bytes
                    session.state = SessionState.COMPLETE
                    return await resp.json(content_type=None)
                session.state = SessionState.FAILED
                raise error_for_response(resp.status, await resp.text(), "resumable PUT")
        except RelayError:
            raise
        except TRANSPORT_ERRORS as exc:
            session.state = SessionState.FAILED
            raise transport_error(exc, "resumable PUT") from exc

    async def _put_chunked(self, http: aiohttp.ClientSession, session: UploadSession, buffer: bytes) -> Dict[str, Any]:
        chunks_sent = 0
        stalled = 0
        while session.bytes_sent < session.total_bytes:
            start, end = session.next_range(self.chunk_size)
            data = await self._put_chunk_with_retry(http, session, buffer[start:end + 1], start, end)
            chunks_sent += 1
            if data is not None:
                self.logger.debug("Chunked upload completed after %d chunks", chunks_sent)
                return data
            if session.bytes_sent > start:
                stalled = 0
                self.logger.debug(
                    "Chunk %d acknowledged: %d/%d bytes", chunks_sent, session.bytes_sent, session.total_bytes
                )
                continue
            # The server kept none of this range: resend from the offset it reported.
            stalled += 1
            if stalled >= self.chunk_max_tries:
                session.state = SessionState.FAILED
                raise IncompleteUpload(
                    f"Upload session made no progress after {stalled} tries "
                    f"(server acknowledged {session.bytes_sent} of {session.total_bytes} bytes)"
                )
            self.logger.warning(
                "Chunk %s not acknowledged (try %d/%d): resending from byte %d in %.1fs",
                session.content_range(start, end),
                stalled,
                self.chunk_max_tries,
                session.bytes_sent,
                self.chunk_retry_delay,
            )
            await asyncio.sleep(self.chunk_retry_delay)
        # Every byte acknowledged through 308 answers: ask the session for the file resource.
        return await self._query_status(http, session)

    async def _put_chunk_with_retry(
        self,
        http: aiohttp.ClientSession,
        session: UploadSession,
        chunk: bytes,
        start: int,
        end: int,
    ) -> Optional[Dict[str, Any]]:
        tries = 0
        while True:
            tries += 1
            try:
                return await self._put_chunk(http, session, chunk, start, end)
            except RelayError:
                raise
            except TRANSIENT_CHUNK_ERRORS as exc:
                if tries >= self.chunk_max_tries:
                    session.state = SessionState.FAILED
                    raise transport_error(exc, f"chunk {session.content_range(start, end)}") from exc
                self.logger.warning(
                    "Chunk %s failed (try %d/%d): %s - retrying in %.1fs",
                    session.content_range(start, end),
                    tries,
                    self.chunk_max_tries,
                    exc or exc.__class__.__name__,
                    self.chunk_retry_delay,
                )
                await asyncio.sleep(self.chunk_retry_delay)
            except TRANSPORT_ERRORS as exc:
                session.state = SessionState.FAILED
                raise transport_error(exc, f"chunk {session.content_range(start, end)}") from exc

    async def _put_chunk(
        self,
        http: aiohttp.ClientSession,
        session: UploadSession,
        chunk: bytes,
        start: int,
        end: int,
    ) -> Optional[Dict[str, Any]]:
        """PUT one range; return the file resource when the upload completes, else ``None``."""
        timeout = scaled_timeout(len(chunk), self.put_timeout_floor, self.put_timeout_per_mib)
        async with http.put(
            session.session_uri,
            data=chunk,
            headers={
                "Content-Length": str(len(chunk)),
                "Content-Range": session.content_range(start, end),
            },
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            if resp.status == 308:
                session.acknowledge(resp.headers.get("Range"))
                return None
            if resp.status in (200, 201):
                session.bytes_sent = session.total_bytes
                session.state = SessionState.COMPLETE
                return await resp.json(content_type=None)
            session.state = SessionState.FAILED
            raise error_for_response(resp.status, await resp.text(), "chunk PUT")

    async def _query_status(self, http: aiohttp.ClientSession, session: UploadSession) -> Dict[str, Any]:
        try:
            async with http.put(
                session.session_uri,
                data=b"",
                headers={"Content-Length": "0", "Content-Range": f"bytes */{session.total_bytes}"},
                timeout=aiohttp.ClientTimeout(total=self.init_timeout),
            ) as resp:
                if resp.status in (200, 201):
                    session.state = SessionState.COMPLETE
                    return await resp.json(content_type=None)
                session.state = SessionState.FAILED
                if resp.status == 308:
                    raise IncompleteUpload("All chunks sent but the upload session did not complete")
                raise error_for_response(resp.status, await resp.text(), "upload status query")
        except RelayError:
            raise
        except TRANSPORT_ERRORS as exc:
            session.state = SessionState.FAILED
            raise transport_error(exc, "upload status query") from exc
