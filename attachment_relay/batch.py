"""Per-owner debounce window grouping near-simultaneous attachments.

Every arrival for an owner re-arms that owner's timer. When the timer fires
without a new arrival the collected batch is processed: its files are handed
to the upload queue one at a time, in arrival order, each awaited before the
next. Arrivals after the timer fired open a new batch.
"""

from __future__ import annotations

import asyncio
import functools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .errors import classify_error
from .logger import get_logger

DEFAULT_DEBOUNCE_SECONDS = 30.0
DEFAULT_BATCH_RETENTION_SECONDS = 3600.0

Fetcher = Callable[[str, str], Awaitable[bytes]]


class BatchStatus(str, Enum):
    COLLECTING = "collecting"
    PROCESSING = "processing"
    COMPLETED = "completed"


@dataclass
class BatchFile:
    """Reference to an attachment that is fetched only when its turn comes."""

    file_name: str
    message_id: str
    added_at: float = 0.0
    status: str = "pending"
    entry_id: Optional[str] = None
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_name": self.file_name,
            "message_id": self.message_id,
            "status": self.status,
            "entry_id": self.entry_id,
            "view_link": getattr(self.result, "view_link", None),
            "error": self.error,
        }


@dataclass
class Batch:
    owner_id: str
    start_time: float
    files: List[BatchFile] = field(default_factory=list)
    status: BatchStatus = BatchStatus.COLLECTING
    processed_files: int = 0
    completed_at: Optional[float] = None

    @property
    def total_files(self) -> int:
        return len(self.files)

    def count(self, status: str) -> int:
        return sum(1 for item in self.files if item.status == status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "status": self.status.value,
            "total_files": self.total_files,
            "processed_files": self.processed_files,
            "start_time": self.start_time,
            "completed_at": self.completed_at,
            "files": [item.to_dict() for item in self.files],
        }


class BatchCollector:
    def __init__(
        self,
        queue,
        fetch: Fetcher,
        *,
        notifier=None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        retention_seconds: float = DEFAULT_BATCH_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        self.queue = queue
        self.fetch = fetch
        self.notifier = notifier
        self.debounce_seconds = debounce_seconds
        self.retention_seconds = retention_seconds
        self.logger = logger or get_logger()
        self._clock = clock
        self._collecting: Dict[str, Batch] = {}
        self._batches: Dict[str, List[Batch]] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._reapers: Set[asyncio.TimerHandle] = set()
        self._tasks: Set[asyncio.Task] = set()

    def add_file(self, owner_id: str, descriptor: BatchFile) -> int:
        """Append ``descriptor`` to the owner's collecting batch and re-arm its timer.

        Returns the size of the collecting batch after the append.
        """
        batch = self._collecting.get(owner_id)
        if batch is None:
            batch = Batch(owner_id=owner_id, start_time=self._clock())
            self._collecting[owner_id] = batch
            self._batches.setdefault(owner_id, []).append(batch)
        descriptor.added_at = self._clock()
        batch.files.append(descriptor)
        self._reset_timer(owner_id)
        self.logger.info(
            "Batch for %s now has %d file(s); processing in %.0fs without new arrivals",
            owner_id,
            batch.total_files,
            self.debounce_seconds,
        )
        return batch.total_files

    def batch_status(self, owner_id: str) -> Optional[Dict[str, Any]]:
        """Return the most recent batch of ``owner_id``, or ``None``."""
        batches = self._batches.get(owner_id)
        if not batches:
            return None
        return batches[-1].to_dict()

    def batches(self, owner_id: str) -> List[Batch]:
        return list(self._batches.get(owner_id, []))

    async def stop(self) -> None:
        """Cancel pending timers and any batch still being processed."""
        for handle in list(self._timers.values()) + list(self._reapers):
            handle.cancel()
        self._timers.clear()
        self._reapers.clear()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------ timers
    def _reset_timer(self, owner_id: str) -> None:
        handle = self._timers.pop(owner_id, None)
        if handle is not None:
            handle.cancel()
        loop = asyncio.get_running_loop()
        self._timers[owner_id] = loop.call_later(self.debounce_seconds, self._fire, owner_id)

    def _fire(self, owner_id: str) -> None:
        self._timers.pop(owner_id, None)
        batch = self._collecting.pop(owner_id, None)
        if batch is None or batch.status is not BatchStatus.COLLECTING:
            return
        batch.status = BatchStatus.PROCESSING
        self.logger.info("Debounce window closed for %s, processing %d file(s)", owner_id, batch.total_files)
        task = asyncio.create_task(self.process_batch(batch), name=f"batch-{owner_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _schedule_discard(self, batch: Batch) -> None:
        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def _discard() -> None:
            self._reapers.discard(handle)
            owned = self._batches.get(batch.owner_id)
            if owned and batch in owned:
                owned.remove(batch)
                if not owned:
                    del self._batches[batch.owner_id]
            self.logger.debug("Discarded finished batch of %s", batch.owner_id)

        handle = loop.call_later(self.retention_seconds, _discard)
        self._reapers.add(handle)

    # -------------------------------------------------------------- processing
    async def process_batch(self, batch: Batch) -> None:
        batch.status = BatchStatus.PROCESSING
        batch.processed_files = 0
        total = batch.total_files
        file_list = "\n".join(f"{index}. {item.file_name}" for index, item in enumerate(batch.files, start=1))
        await self._notify(
            batch.owner_id,
            f"Processing {total} file(s):\n{file_list}\n\nFiles are uploaded one at a time; progress will follow.",
        )
        try:
            for index, item in enumerate(batch.files, start=1):
                await self._process_file(batch, item, index)
        except Exception as exc:
            self.logger.exception("Unhandled error while processing batch of %s: %s", batch.owner_id, exc)
        finally:
            batch.status = BatchStatus.COMPLETED
            batch.completed_at = self._clock()
            self._schedule_discard(batch)

        elapsed = round(batch.completed_at - batch.start_time)
        succeeded = batch.count("completed")
        failed = batch.count("failed")
        self.logger.info(
            "Batch of %s finished: %d succeeded, %d failed in %ds", batch.owner_id, succeeded, failed, elapsed
        )
        await self._notify(
            batch.owner_id,
            f"Batch summary\nTotal: {total} file(s)\nSucceeded: {succeeded}\nFailed: {failed}\nElapsed: {elapsed}s",
        )

    async def _process_file(self, batch: Batch, item: BatchFile, index: int) -> None:
        total = batch.total_files
        item.status = "uploading"
        await self._notify(batch.owner_id, f"Processing file {index}/{total}\nFile: {item.file_name}")
        item.entry_id = self.queue.enqueue(
            batch.owner_id,
            item.file_name,
            loader=functools.partial(self.fetch, item.message_id, item.file_name),
        )
        next_step = "Moving on to the next file." if index < total else "All files handled."
        try:
            result = await self.queue.wait(item.entry_id)
        except Exception as exc:
            info = classify_error(exc, context="batch", metadata={"file_name": item.file_name})
            item.status = "failed"
            item.error = info.technical
            batch.processed_files += 1
            await self._notify(
                batch.owner_id,
                f"Upload failed {index}/{total}\nFile: {item.file_name}\nReason: {info.message}\n{next_step}",
            )
            return
        item.status = "completed"
        item.result = result
        batch.processed_files += 1
        await self._notify(
            batch.owner_id,
            f"Uploaded {index}/{total}\nFile: {item.file_name}\nLink: {result.view_link}\n{next_step}",
        )

    async def _notify(self, owner_id: str, text: str) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(owner_id, text)
        except Exception:
            self.logger.exception("Notification to %s failed", owner_id)
