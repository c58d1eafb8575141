"""Download attachments from the LINE Messaging API content endpoint."""

from __future__ import annotations

from typing import AsyncIterator, Optional

import aiohttp

from ..drive.base import error_for_response
from ..logger import get_logger
from .base import AttachmentSource

LINE_CONTENT_URL = "https://api-data.line.me/v2/bot/message/{message_id}/content"
DEFAULT_READ_CHUNK = 64 * 1024


class ResponseStream:
    """Chunk stream over an open aiohttp response; owns the client session."""

    def __init__(self, session: aiohttp.ClientSession, response: aiohttp.ClientResponse, chunk_size: int = DEFAULT_READ_CHUNK):
        self._session = session
        self._response = response
        self._chunk_size = chunk_size
        self._closed = False

    @property
    def content_length(self) -> Optional[int]:
        return self._response.content_length

    @property
    def content_type(self) -> Optional[str]:
        return self._response.headers.get("Content-Type")

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        async for chunk in self._response.content.iter_chunked(self._chunk_size):
            yield chunk

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.release()
        await self._session.close()


class LineContentSource(AttachmentSource):
    def __init__(
        self,
        channel_access_token: str,
        *,
        session_factory=None,
        chunk_size: int = DEFAULT_READ_CHUNK,
        logger=None,
    ):
        self._token = channel_access_token
        self._session_factory = session_factory or aiohttp.ClientSession
        self._chunk_size = chunk_size
        self.logger = logger or get_logger()

    async def open(self, message_id: str) -> ResponseStream:
        """GET the message content and return its body as a :class:`ResponseStream`."""
        url = LINE_CONTENT_URL.format(message_id=message_id)
        session = self._session_factory()
        try:
            response = await session.get(url, headers={"Authorization": f"Bearer {self._token}"})
            if response.status != 200:
                body = await response.text()
                response.release()
                raise error_for_response(response.status, body, f"content download of message {message_id}")
        except BaseException:
            await session.close()
            raise
        self.logger.debug(
            "Opened content stream for message %s (%s bytes announced)", message_id, response.content_length
        )
        return ResponseStream(session, response, self._chunk_size)
