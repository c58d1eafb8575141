"""Base protocol for attachment sources."""

from typing import AsyncIterator, Protocol


class ChunkStream(Protocol):
    """Async iterable of byte chunks that can be aborted with ``aclose``."""

    def __aiter__(self) -> AsyncIterator[bytes]:
        ...

    async def aclose(self) -> None:
        ...


class AttachmentSource:
    """Interface implemented by concrete attachment sources."""

    async def open(self, message_id: str) -> ChunkStream:
        """Start downloading the content of ``message_id`` and return its chunk stream."""
        raise NotImplementedError
