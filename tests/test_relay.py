import asyncio
import types

import pytest

from attachment_relay.drive.base import UploadResult
from attachment_relay.errors import ErrorKind, NetworkError, PermissionDenied, UploadTimeout
from attachment_relay.notifier import LoggingNotifier
from attachment_relay.relay import AttachmentRelay
from attachment_relay.sources import LineContentSource, fetch_with_retry
from attachment_relay.strategy import MIB
from attachment_relay.upload_queue import EntryStatus


def silent_logger():
    return types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )


class DummyStream:
    def __init__(self, chunks, error=None):
        self.chunks = chunks
        self.error = error
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    async def aclose(self):
        self.closed = True


class DummySource:
    def __init__(self, make_stream=None, failures=()):
        self.make_stream = make_stream or (lambda: DummyStream([b"hello ", b"world"]))
        self.failures = list(failures)
        self.opened = []
        self.streams = []

    async def open(self, message_id):
        self.opened.append(message_id)
        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, float):
                await asyncio.sleep(failure)
            else:
                raise failure
        stream = self.make_stream()
        self.streams.append(stream)
        return stream


class DummyUploader:
    def __init__(self):
        self.calls = []

    async def upload(self, file_name, buffer, folder_id=None):
        self.calls.append((file_name, buffer))
        return UploadResult(id="file-1", name=file_name, view_link="https://drive.google.com/file/d/file-1/view")


async def wait_until(predicate, timeout=2.0):
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def make_relay(source=None, **kwargs):
    uploader = DummyUploader()
    notifier = LoggingNotifier(logger=silent_logger())
    kwargs.setdefault("inter_item_delay", 0)
    kwargs.setdefault("fetch_backoff", 0)
    relay = AttachmentRelay(
        uploader=uploader,
        source=source or DummySource(),
        notifier=notifier,
        logger=silent_logger(),
        **kwargs,
    )
    return relay, uploader, notifier


@pytest.mark.asyncio
async def test_direct_mode_uploads_and_reports_link():
    source = DummySource()
    relay, uploader, notifier = make_relay(source, batch_enabled=False)
    await relay.start()

    outcome = await relay.handle_attachment("U123", "m-1", "notes.txt")
    assert outcome["mode"] == "direct"
    await relay.queue.wait(outcome["entry_id"])
    await wait_until(lambda: len(notifier.sent) == 2)
    await relay.stop()

    assert uploader.calls == [("notes.txt", b"hello world")]
    assert source.opened == ["m-1"]
    assert source.streams[0].closed
    assert notifier.sent[0] == ("U123", "Received notes.txt, uploading to Google Drive.")
    recipient, text = notifier.sent[1]
    assert recipient == "U123"
    assert text == "Uploaded notes.txt\nLink: https://drive.google.com/file/d/file-1/view"


@pytest.mark.asyncio
async def test_stream_error_during_buffering_is_retried_then_reported():
    source = DummySource(
        make_stream=lambda: DummyStream([b"x" * MIB], error=ConnectionResetError("peer reset"))
    )
    relay, uploader, notifier = make_relay(source, batch_enabled=False, fetch_timeouts=(1.0,))

    outcome = await relay.handle_attachment("U123", "m-2", "movie.mp4")
    with pytest.raises(NetworkError):
        await relay.queue.wait(outcome["entry_id"])
    await wait_until(lambda: len(notifier.sent) == 2)
    await relay.stop()

    entry = relay.queue.get(outcome["entry_id"])
    assert entry.status is EntryStatus.FAILED
    assert entry.attempts == 3
    assert entry.last_error.kind is ErrorKind.NETWORK
    assert len(source.opened) == 3
    assert all(stream.closed for stream in source.streams)
    assert uploader.calls == []
    assert notifier.sent[1][1].startswith("Upload failed: movie.mp4\nReason: ")
    assert "Suggestion: " in notifier.sent[1][1]
    assert relay.status()["errors"] == 3


@pytest.mark.asyncio
async def test_batch_mode_collects_attachments():
    relay, uploader, notifier = make_relay(debounce_seconds=0.05)

    first = await relay.handle_attachment("U1", "m-1", "a.jpg")
    second = await relay.handle_attachment("U1", "m-2", "b.jpg")
    assert first == {"mode": "batch", "batch_size": 1}
    assert second == {"mode": "batch", "batch_size": 2}

    await wait_until(lambda: (relay.batches.batch_status("U1") or {}).get("status") == "completed")
    await relay.stop()

    assert [name for name, _ in uploader.calls] == ["a.jpg", "b.jpg"]
    assert notifier.sent[-1][1].startswith("Batch summary")


@pytest.mark.asyncio
async def test_per_call_batch_flag_overrides_default():
    relay, _, _ = make_relay(batch_enabled=True)
    outcome = await relay.handle_attachment("U1", "m-1", "a.jpg", batch=False)
    await relay.queue.wait(outcome["entry_id"])
    await relay.stop()
    assert outcome["mode"] == "direct"
    assert relay.batches.batch_status("U1") is None


@pytest.mark.asyncio
async def test_status_reports_queue_and_mode():
    relay, _, _ = make_relay(batch_enabled=False)
    status = relay.status()
    assert status["batch_enabled"] is False
    assert status["queue"]["total"] == 0
    assert status["errors"] == 0


@pytest.mark.asyncio
async def test_fetch_retries_then_succeeds():
    source = DummySource(failures=[NetworkError("reset"), ConnectionResetError("again")])
    stream = await fetch_with_retry(
        source, "m-1", timeouts=(1.0, 1.0, 1.0), backoff=0, jitter=0, logger=silent_logger()
    )
    assert source.opened == ["m-1"] * 3
    assert stream is source.streams[0]


@pytest.mark.asyncio
async def test_fetch_gives_up_on_permission_errors():
    source = DummySource(failures=[PermissionDenied("bad token")])
    with pytest.raises(PermissionDenied):
        await fetch_with_retry(source, "m-1", timeouts=(1.0, 1.0), backoff=0, jitter=0, logger=silent_logger())
    assert source.opened == ["m-1"]


@pytest.mark.asyncio
async def test_fetch_timeout_becomes_upload_timeout():
    source = DummySource(failures=[0.5, 0.5])
    with pytest.raises(UploadTimeout):
        await fetch_with_retry(source, "m-1", timeouts=(0.01, 0.01), backoff=0, jitter=0, logger=silent_logger())
    assert len(source.opened) == 2


class DummyContent:
    def __init__(self, chunks):
        self.chunks = chunks
        self.sizes = []

    async def iter_chunked(self, size):
        self.sizes.append(size)
        for chunk in self.chunks:
            yield chunk


class DummyResponse:
    def __init__(self, status=200, chunks=(), body=""):
        self.status = status
        self.content = DummyContent(list(chunks))
        self.content_length = sum(len(chunk) for chunk in chunks)
        self.headers = {"Content-Type": "image/jpeg"}
        self.body = body
        self.released = False

    async def text(self):
        return self.body

    def release(self):
        self.released = True


class DummySession:
    def __init__(self, response):
        self.response = response
        self.requests = []
        self.closed = False

    async def get(self, url, headers=None):
        self.requests.append((url, headers))
        return self.response

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_line_source_streams_content():
    session = DummySession(DummyResponse(chunks=[b"ab", b"cd"]))
    source = LineContentSource("line-token", session_factory=lambda: session, chunk_size=2, logger=silent_logger())

    stream = await source.open("12345")
    assert stream.content_length == 4
    assert stream.content_type == "image/jpeg"
    data = [chunk async for chunk in stream]
    await stream.aclose()
    await stream.aclose()

    assert data == [b"ab", b"cd"]
    url, headers = session.requests[0]
    assert url == "https://api-data.line.me/v2/bot/message/12345/content"
    assert headers == {"Authorization": "Bearer line-token"}
    assert session.response.content.sizes == [2]
    assert session.response.released
    assert session.closed


@pytest.mark.asyncio
async def test_line_source_maps_rejections_and_closes_session():
    session = DummySession(DummyResponse(status=401, body="invalid token"))
    source = LineContentSource("bad", session_factory=lambda: session, logger=silent_logger())

    with pytest.raises(PermissionDenied):
        await source.open("12345")
    assert session.response.released
    assert session.closed
