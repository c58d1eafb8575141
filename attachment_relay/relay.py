"""Top-level service object wiring sources, queue, batches and notifications."""

from __future__ import annotations

import functools
from typing import Any, Dict, Optional, Sequence

from .batch import DEFAULT_DEBOUNCE_SECONDS, BatchCollector, BatchFile
from .buffering import DEFAULT_BUFFER_TIMEOUT, DEFAULT_MAX_BUFFER_BYTES, bufferize, close_stream
from .errors import ErrorInfo, ErrorTracker
from .logger import get_logger
from .prometheus import UploadMetrics
from .sources import DEFAULT_FETCH_BACKOFF, DEFAULT_FETCH_TIMEOUTS, fetch_with_retry
from .upload_queue import (
    DEFAULT_INTER_ITEM_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETENTION_SECONDS,
    UploadQueue,
)
from .validator import FileValidator


class AttachmentRelay:
    """Accept attachment references and see them through to storage.

    In direct mode each attachment becomes one queue entry whose completion is
    reported to the owner. In batch mode attachments are grouped per owner by
    the :class:`BatchCollector` first.
    """

    def __init__(
        self,
        *,
        uploader,
        source,
        notifier=None,
        validator: FileValidator | None = None,
        batch_enabled: bool = True,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
        buffer_timeout: float = DEFAULT_BUFFER_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        inter_item_delay: float = DEFAULT_INTER_ITEM_DELAY,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        fetch_timeouts: Sequence[float] = DEFAULT_FETCH_TIMEOUTS,
        fetch_backoff: float = DEFAULT_FETCH_BACKOFF,
        metrics: UploadMetrics | None = None,
        error_tracker: ErrorTracker | None = None,
        logger=None,
    ):
        self.logger = logger or get_logger()
        self.uploader = uploader
        self.source = source
        self.notifier = notifier
        self.batch_enabled = batch_enabled
        self.max_buffer_bytes = max_buffer_bytes
        self.buffer_timeout = buffer_timeout
        self.fetch_timeouts = tuple(fetch_timeouts)
        self.fetch_backoff = fetch_backoff
        self.metrics = metrics or UploadMetrics()
        self.error_tracker = error_tracker or ErrorTracker(logger=self.logger)
        self.queue = UploadQueue(
            uploader,
            validator=validator or FileValidator(max_file_size=max_buffer_bytes, logger=self.logger),
            max_attempts=max_attempts,
            inter_item_delay=inter_item_delay,
            retention_seconds=retention_seconds,
            error_tracker=self.error_tracker,
            metrics=self.metrics,
            logger=self.logger,
        )
        self.batches = BatchCollector(
            self.queue,
            self.load_attachment,
            notifier=notifier,
            debounce_seconds=debounce_seconds,
            retention_seconds=retention_seconds,
            logger=self.logger,
        )

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        self.queue.start()

    async def stop(self) -> None:
        await self.batches.stop()
        await self.queue.stop()

    # ------------------------------------------------------------------- intake
    async def load_attachment(self, message_id: str, file_name: str) -> bytes:
        """Open the attachment on the source and buffer it in memory."""
        stream = await fetch_with_retry(
            self.source, message_id, timeouts=self.fetch_timeouts, backoff=self.fetch_backoff, logger=self.logger
        )
        try:
            return await bufferize(
                stream,
                timeout=self.buffer_timeout,
                max_bytes=self.max_buffer_bytes,
                label=file_name,
                logger=self.logger,
            )
        finally:
            await close_stream(stream)

    async def handle_attachment(
        self,
        owner_id: str,
        message_id: str,
        file_name: str,
        *,
        batch: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Route one attachment reference to the batch collector or straight to the queue."""
        use_batch = self.batch_enabled if batch is None else batch
        if use_batch:
            size = self.batches.add_file(owner_id, BatchFile(file_name=file_name, message_id=message_id))
            return {"mode": "batch", "batch_size": size}

        entry_id = self.queue.enqueue(
            owner_id,
            file_name,
            loader=functools.partial(self.load_attachment, message_id, file_name),
            on_complete=functools.partial(self._report_direct, owner_id, file_name),
        )
        await self._notify(owner_id, f"Received {file_name}, uploading to Google Drive.")
        return {"mode": "direct", "entry_id": entry_id}

    async def _report_direct(
        self,
        owner_id: str,
        file_name: str,
        success: bool,
        result: Any,
        error: Optional[ErrorInfo],
    ) -> None:
        if success:
            await self._notify(owner_id, f"Uploaded {file_name}\nLink: {result.view_link}")
            return
        reason = error.message if error else "unknown error"
        action = f"\nSuggestion: {error.suggested_action}" if error else ""
        await self._notify(owner_id, f"Upload failed: {file_name}\nReason: {reason}{action}")

    async def _notify(self, owner_id: str, text: str) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(owner_id, text)
        except Exception:
            self.logger.exception("Notification to %s failed", owner_id)

    # ------------------------------------------------------------------ queries
    def status(self) -> Dict[str, Any]:
        return {
            "queue": self.queue.stats(),
            "batch_enabled": self.batch_enabled,
            "errors": self.error_tracker.stats()["total"],
        }
