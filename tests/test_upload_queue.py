import asyncio
import types
from typing import Any, List

import pytest

from attachment_relay.drive.base import UploadResult
from attachment_relay.errors import ErrorKind, NetworkError, ValidationFailed
from attachment_relay.prometheus import UploadMetrics
from attachment_relay.upload_queue import EntryStatus, UploadQueue
from attachment_relay.validator import FileValidator


def silent_logger():
    return types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )


class DummyUploader:
    def __init__(self):
        self.calls: List[str] = []
        self.failures: dict[str, List[Exception]] = {}
        self.active = 0
        self.max_active = 0
        self.gate: asyncio.Event | None = None

    def fail(self, file_name: str, *errors: Exception):
        self.failures[file_name] = list(errors)

    async def upload(self, file_name, buffer, folder_id=None):
        self.calls.append(file_name)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0)
            if self.gate is not None:
                await self.gate.wait()
            pending = self.failures.get(file_name)
            if pending:
                raise pending.pop(0)
            return UploadResult(id=f"id-{file_name}", name=file_name, view_link=f"link/{file_name}", size=len(buffer))
        finally:
            self.active -= 1


class Recorder:
    def __init__(self):
        self.calls: List[Any] = []

    def __call__(self, success, result, error):
        self.calls.append((success, result, error))


def make_queue(uploader, **kwargs):
    kwargs.setdefault("inter_item_delay", 0)
    return UploadQueue(uploader, logger=silent_logger(), **kwargs)


@pytest.mark.asyncio
async def test_successful_entry_reports_once_and_releases_buffer():
    uploader = DummyUploader()
    queue = make_queue(uploader)
    recorder = Recorder()

    entry_id = queue.enqueue("owner", "a.txt", b"x" * 2048, on_complete=recorder)
    result = await queue.wait(entry_id)
    await queue.stop()

    entry = queue.get(entry_id)
    assert result.id == "id-a.txt"
    assert entry.status is EntryStatus.COMPLETED
    assert entry.buffer is None
    assert entry.size == 2048
    assert entry.attempts == 1
    assert recorder.calls == [(True, result, None)]
    assert uploader.calls == ["a.txt"]


@pytest.mark.asyncio
async def test_failed_attempt_is_retried_behind_new_arrivals():
    uploader = DummyUploader()
    uploader.fail("a.txt", NetworkError("reset"))
    queue = make_queue(uploader)

    first = queue.enqueue("owner", "a.txt", b"a")
    second = queue.enqueue("owner", "b.txt", b"b")
    await queue.wait(first)
    await queue.wait(second)
    await queue.stop()

    assert uploader.calls == ["a.txt", "b.txt", "a.txt"]
    assert queue.get(first).attempts == 2
    assert queue.get(first).status is EntryStatus.COMPLETED


@pytest.mark.asyncio
async def test_entry_fails_after_max_attempts():
    uploader = DummyUploader()
    uploader.fail("a.txt", *[NetworkError("reset")] * 3)
    queue = make_queue(uploader, max_attempts=3)
    recorder = Recorder()

    entry_id = queue.enqueue("owner", "a.txt", b"a", on_complete=recorder)
    with pytest.raises(NetworkError):
        await queue.wait(entry_id)
    await queue.stop()

    entry = queue.get(entry_id)
    assert entry.status is EntryStatus.FAILED
    assert entry.attempts == 3
    assert entry.buffer is None
    assert len(recorder.calls) == 1
    success, result, error = recorder.calls[0]
    assert success is False and result is None
    assert error.kind is ErrorKind.NETWORK
    assert entry.last_error is error


@pytest.mark.asyncio
async def test_non_retryable_kind_still_uses_every_attempt():
    uploader = DummyUploader()
    queue = make_queue(uploader, max_attempts=2, validator=FileValidator(logger=silent_logger()))
    recorder = Recorder()

    entry_id = queue.enqueue("owner", "virus.exe", b"MZ....", on_complete=recorder)
    with pytest.raises(ValidationFailed):
        await queue.wait(entry_id)
    await queue.stop()

    assert queue.get(entry_id).attempts == 2
    assert uploader.calls == []
    assert recorder.calls[0][2].kind is ErrorKind.VALIDATION_FAILED


@pytest.mark.asyncio
async def test_loader_failures_are_retried_like_upload_failures():
    loads = []

    async def broken_loader():
        loads.append(1)
        raise NetworkError("stream reset after 1 MiB")

    uploader = DummyUploader()
    queue = make_queue(uploader)
    recorder = Recorder()

    entry_id = queue.enqueue("owner", "movie.mp4", loader=broken_loader, on_complete=recorder)
    with pytest.raises(NetworkError):
        await queue.wait(entry_id)
    await queue.stop()

    assert len(loads) == 3
    assert uploader.calls == []
    assert queue.get(entry_id).status is EntryStatus.FAILED
    assert recorder.calls[0][2].kind is ErrorKind.NETWORK


@pytest.mark.asyncio
async def test_loader_result_is_uploaded():
    async def loader():
        return b"loaded bytes"

    uploader = DummyUploader()
    queue = make_queue(uploader)

    entry_id = queue.enqueue("owner", "a.txt", loader=loader)
    result = await queue.wait(entry_id)
    await queue.stop()

    assert result.size == len(b"loaded bytes")
    assert queue.get(entry_id).size == len(b"loaded bytes")


@pytest.mark.asyncio
async def test_enqueue_requires_content():
    queue = make_queue(DummyUploader())
    with pytest.raises(ValueError):
        queue.enqueue("owner", "a.txt")


@pytest.mark.asyncio
async def test_only_one_entry_processing_at_a_time():
    uploader = DummyUploader()
    queue = make_queue(uploader)

    ids = [queue.enqueue(f"owner{n % 2}", f"f{n}.txt", b"x") for n in range(5)]
    for entry_id in ids:
        await queue.wait(entry_id)
    await queue.stop()

    assert uploader.max_active == 1
    assert uploader.calls == [f"f{n}.txt" for n in range(5)]


@pytest.mark.asyncio
async def test_callback_errors_do_not_stop_the_worker():
    def explode(success, result, error):
        raise RuntimeError("callback bug")

    async def async_recorder(success, result, error):
        seen.append(success)

    seen = []
    uploader = DummyUploader()
    queue = make_queue(uploader)

    first = queue.enqueue("owner", "a.txt", b"a", on_complete=explode)
    second = queue.enqueue("owner", "b.txt", b"b", on_complete=async_recorder)
    await queue.wait(first)
    await queue.wait(second)
    await asyncio.sleep(0)
    await queue.stop()

    assert queue.get(second).status is EntryStatus.COMPLETED
    assert seen == [True]


@pytest.mark.asyncio
async def test_purge_drops_only_old_terminal_entries():
    now = [1000.0]
    uploader = DummyUploader()
    queue = make_queue(uploader, retention_seconds=3600, clock=lambda: now[0])

    done = queue.enqueue("owner", "done.txt", b"a")
    await queue.wait(done)

    uploader.gate = asyncio.Event()
    busy = queue.enqueue("owner", "busy.txt", b"b")
    waiting = queue.enqueue("owner", "waiting.txt", b"c")
    await asyncio.sleep(0.01)
    assert queue.get(busy).status is EntryStatus.PROCESSING

    now[0] += 3599
    assert queue.purge() == 0
    now[0] += 2
    assert queue.purge() == 1
    assert queue.get(done) is None
    assert queue.get(busy) is not None
    assert queue.get(waiting).status is EntryStatus.PENDING

    uploader.gate.set()
    await queue.wait(waiting)
    await queue.stop()


@pytest.mark.asyncio
async def test_stats_and_owner_status():
    uploader = DummyUploader()
    uploader.fail("bad.txt", NetworkError("reset"))
    metrics = UploadMetrics()
    queue = make_queue(uploader, max_attempts=1, metrics=metrics)

    ok = queue.enqueue("alice", "good.txt", b"a")
    bad = queue.enqueue("bob", "bad.txt", b"b")
    await queue.wait(ok)
    with pytest.raises(NetworkError):
        await queue.wait(bad)
    await queue.stop()

    stats = queue.stats()
    assert stats["total"] == 2
    assert stats["completed"] == 1
    assert stats["failed"] == 1
    assert stats["success_rate"] == 50.0
    assert stats["owners"] == 2
    assert stats["is_running"] is False

    alice = queue.owner_status("alice")
    assert alice["total"] == 1
    assert alice["entries"][0]["result"]["view_link"] == "link/good.txt"
    bob = queue.owner_status("bob")
    assert bob["entries"][0]["last_error"]["kind"] == "network"
    assert queue.owner_status("nobody")["total"] == 0

    output = metrics.generate_latest()
    assert b'relay_uploads_total{status="completed"} 1.0' in output
    assert b'relay_uploads_total{status="failed"} 1.0' in output
