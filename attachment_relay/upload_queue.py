"""Single-worker in-memory upload queue.

Entries are processed one at a time in arrival order. A failed attempt puts
the entry back at the tail of the pending list until ``max_attempts`` is
reached; the completion callback of an entry fires exactly once, when it
reaches a terminal state. Terminal entries are kept for ``retention_seconds``
so that status queries can still see them, then purged.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from .errors import ErrorInfo, ErrorTracker
from .logger import get_logger
from .prometheus import UploadMetrics

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INTER_ITEM_DELAY = 1.0
DEFAULT_RETENTION_SECONDS = 3600

CompletionCallback = Callable[[bool, Any, Optional[ErrorInfo]], Any]
BufferLoader = Callable[[], Awaitable[bytes]]


class EntryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EntryStatus.COMPLETED, EntryStatus.FAILED)


@dataclass
class QueueEntry:
    owner_id: str
    file_name: str
    buffer: Optional[bytes]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: EntryStatus = EntryStatus.PENDING
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    size: int = 0
    added_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    last_error: Optional[ErrorInfo] = None
    last_exception: Optional[BaseException] = field(default=None, repr=False)
    result: Any = None
    loader: Optional[BufferLoader] = field(default=None, repr=False)
    on_complete: Optional[CompletionCallback] = field(default=None, repr=False)
    future: Optional[asyncio.Future] = field(default=None, repr=False)
    notified: bool = False

    def __post_init__(self) -> None:
        if self.buffer is not None and not self.size:
            self.size = len(self.buffer)

    def release_buffer(self) -> None:
        self.buffer = None
        self.loader = None

    def to_dict(self) -> Dict[str, Any]:
        result = self.result.to_dict() if hasattr(self.result, "to_dict") else self.result
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "file_name": self.file_name,
            "size": self.size,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "added_at": self.added_at,
            "completed_at": self.completed_at,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "result": result,
        }


class UploadQueue:
    """Feed buffered attachments to the uploader through one background worker."""

    def __init__(
        self,
        uploader,
        *,
        validator=None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        inter_item_delay: float = DEFAULT_INTER_ITEM_DELAY,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        error_tracker: ErrorTracker | None = None,
        metrics: UploadMetrics | None = None,
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        self.uploader = uploader
        self.validator = validator
        self.max_attempts = max(1, int(max_attempts))
        self.inter_item_delay = max(0.0, float(inter_item_delay))
        self.retention_seconds = retention_seconds
        self.logger = logger or get_logger()
        self.error_tracker = error_tracker or ErrorTracker(logger=self.logger)
        self.metrics = metrics or UploadMetrics()
        self._clock = clock

        self._entries: Dict[str, QueueEntry] = {}
        self._pending: Deque[str] = deque()
        self._by_owner: Dict[str, List[str]] = {}
        self._processing_id: Optional[str] = None
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # ----------------------------------------------------------------- lifecycle
    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the worker task if it is not already running."""
        if self.is_running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._worker_loop(), name="upload-queue-worker")
        self.logger.debug("Upload queue worker started")

    async def stop(self) -> None:
        """Let the current entry finish, then stop the worker."""
        self._stop.set()
        self._wake_event.set()
        if self._task:
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    # ------------------------------------------------------------------- public
    def enqueue(
        self,
        owner_id: str,
        file_name: str,
        buffer: Optional[bytes] = None,
        on_complete: Optional[CompletionCallback] = None,
        *,
        loader: Optional[BufferLoader] = None,
    ) -> str:
        """Append a file and return its entry id. Starts the worker if idle.

        Either ``buffer`` holds the content already, or ``loader`` is awaited
        by the worker to produce it; a failing loader counts as a failed
        attempt like a failing upload.
        """
        if buffer is None and loader is None:
            raise ValueError("either buffer or loader is required")
        entry = QueueEntry(
            owner_id=owner_id,
            file_name=file_name,
            buffer=buffer,
            max_attempts=self.max_attempts,
            added_at=self._clock(),
            loader=loader,
            on_complete=on_complete,
            future=asyncio.get_running_loop().create_future(),
        )
        self._entries[entry.id] = entry
        self._pending.append(entry.id)
        self._by_owner.setdefault(owner_id, []).append(entry.id)
        self.logger.info(
            "Queued %s for %s (%.2f MB, entry %s, %d pending)",
            file_name,
            owner_id,
            entry.size / (1024 * 1024),
            entry.id,
            len(self._pending),
        )
        self.metrics.set_pending(len(self._pending))
        self.start()
        self._wake_event.set()
        return entry.id

    def get(self, entry_id: str) -> Optional[QueueEntry]:
        return self._entries.get(entry_id)

    async def wait(self, entry_id: str):
        """Wait for ``entry_id`` to finish; return the upload result or raise the last error."""
        entry = self._entries.get(entry_id)
        if entry is None:
            raise KeyError(entry_id)
        await asyncio.shield(entry.future)
        if entry.status is EntryStatus.COMPLETED:
            return entry.result
        raise entry.last_exception

    def stats(self) -> Dict[str, Any]:
        counts = {status.value: 0 for status in EntryStatus}
        for entry in self._entries.values():
            counts[entry.status.value] += 1
        finished = counts["completed"] + counts["failed"]
        return {
            "total": len(self._entries),
            **counts,
            "success_rate": round(100.0 * counts["completed"] / finished, 1) if finished else None,
            "processing_id": self._processing_id,
            "is_running": self.is_running,
            "owners": len(self._by_owner),
        }

    def owner_status(self, owner_id: str) -> Dict[str, Any]:
        entries = [self._entries[entry_id] for entry_id in self._by_owner.get(owner_id, [])]
        counts = {status.value: 0 for status in EntryStatus}
        for entry in entries:
            counts[entry.status.value] += 1
        return {
            "owner_id": owner_id,
            "total": len(entries),
            **counts,
            "entries": [entry.to_dict() for entry in entries],
        }

    def purge(self, now: Optional[float] = None) -> int:
        """Drop terminal entries older than the retention window; return how many went."""
        now = self._clock() if now is None else now
        threshold = now - self.retention_seconds
        expired = [
            entry
            for entry in self._entries.values()
            if entry.status.is_terminal and entry.completed_at is not None and entry.completed_at < threshold
        ]
        for entry in expired:
            del self._entries[entry.id]
            owned = self._by_owner.get(entry.owner_id)
            if owned is not None:
                owned.remove(entry.id)
                if not owned:
                    del self._by_owner[entry.owner_id]
        if expired:
            self.logger.debug("Purged %d finished entries", len(expired))
        return len(expired)

    # ------------------------------------------------------------------- worker
    async def _worker_loop(self) -> None:
        while not self._stop.is_set():
            entry = self._next_pending()
            if entry is None:
                await self._wait_for_wakeup()
                continue
            try:
                await self._process(entry)
            except Exception as exc:
                self.logger.exception("Unhandled error while processing entry %s: %s", entry.id, exc)
            self.purge()
            await self._pause(self.inter_item_delay)
        self.logger.debug("Upload queue worker stopped")

    def _next_pending(self) -> Optional[QueueEntry]:
        while self._pending:
            entry = self._entries.get(self._pending.popleft())
            if entry is not None and entry.status is EntryStatus.PENDING:
                return entry
        return None

    async def _wait_for_wakeup(self) -> None:
        if self._stop.is_set():
            return
        await self._wake_event.wait()
        self._wake_event.clear()

    async def _pause(self, seconds: float) -> None:
        if seconds <= 0 or self._stop.is_set():
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(seconds):
                await self._stop.wait()
        except TimeoutError:
            return

    async def _process(self, entry: QueueEntry) -> None:
        loop = asyncio.get_running_loop()
        entry.status = EntryStatus.PROCESSING
        entry.attempts += 1
        self._processing_id = entry.id
        self.metrics.set_pending(len(self._pending))
        self.logger.info(
            "Processing %s for %s (attempt %d/%d)", entry.file_name, entry.owner_id, entry.attempts, entry.max_attempts
        )
        started = loop.time()
        try:
            if entry.buffer is None:
                entry.buffer = await entry.loader()
                entry.size = len(entry.buffer)
            if self.validator is not None:
                self.validator.ensure_valid(entry.file_name, entry.size, entry.buffer)
            result = await self.uploader.upload(entry.file_name, entry.buffer)
        except Exception as exc:
            elapsed = loop.time() - started
            info = self.error_tracker.record(
                exc,
                context="upload",
                metadata={"entry_id": entry.id, "file_name": entry.file_name, "attempt": entry.attempts},
            )
            entry.last_error = info
            entry.last_exception = exc
            if entry.attempts < entry.max_attempts:
                entry.status = EntryStatus.PENDING
                self._pending.append(entry.id)
                self.metrics.record_retry()
                self.logger.warning(
                    "Upload of %s failed (attempt %d/%d), requeued: %s",
                    entry.file_name,
                    entry.attempts,
                    entry.max_attempts,
                    info.technical,
                )
            else:
                entry.status = EntryStatus.FAILED
                entry.completed_at = self._clock()
                entry.release_buffer()
                self.metrics.record_failure(elapsed)
                self.logger.error(
                    "Upload of %s failed permanently after %d attempts: %s",
                    entry.file_name,
                    entry.attempts,
                    info.technical,
                )
                await self._complete(entry, False, None, info)
        else:
            entry.status = EntryStatus.COMPLETED
            entry.result = result
            entry.completed_at = self._clock()
            entry.release_buffer()
            self.metrics.record_success(entry.size, loop.time() - started)
            self.logger.info("Uploaded %s for %s (entry %s)", entry.file_name, entry.owner_id, entry.id)
            await self._complete(entry, True, result, None)
        finally:
            self._processing_id = None
            self.metrics.set_pending(len(self._pending))

    async def _complete(self, entry: QueueEntry, success: bool, result: Any, error: Optional[ErrorInfo]) -> None:
        if entry.notified:
            return
        entry.notified = True
        if entry.future is not None and not entry.future.done():
            entry.future.set_result(entry)
        if entry.on_complete is None:
            return
        try:
            outcome = entry.on_complete(success, result, error)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            self.logger.exception("Completion callback for entry %s raised", entry.id)
