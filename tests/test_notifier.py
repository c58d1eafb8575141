import aiohttp
import pytest

from attachment_relay.notifier import LINE_PUSH_URL, LineNotifier, LoggingNotifier


class DummyLogger:
    def __init__(self):
        self.warnings = []
        self.infos = []

    def warning(self, msg, *args):
        self.warnings.append(msg % args)

    def info(self, msg, *args):
        self.infos.append(msg % args)


class DummyResponse:
    def __init__(self, status, text=""):
        self.status = status
        self._text = text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def text(self):
        return self._text


class DummySession:
    def __init__(self, response=None, error=None):
        self.response = response or DummyResponse(200)
        self.error = error
        self.posts = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


@pytest.mark.asyncio
async def test_line_notifier_pushes_text_message():
    session = DummySession()
    notifier = LineNotifier("line-token", session_factory=lambda: session, logger=DummyLogger())

    await notifier.notify("U123", "x" * 6000)

    url, kwargs = session.posts[0]
    assert url == LINE_PUSH_URL
    assert kwargs["headers"]["Authorization"] == "Bearer line-token"
    message = kwargs["json"]["messages"][0]
    assert kwargs["json"]["to"] == "U123"
    assert message["type"] == "text"
    assert len(message["text"]) == 5000
    assert kwargs["timeout"].total == 10.0


@pytest.mark.asyncio
async def test_line_notifier_logs_rejections():
    logger = DummyLogger()
    session = DummySession(DummyResponse(400, text='{"message":"The request body has 1 error(s)"}'))
    notifier = LineNotifier("line-token", session_factory=lambda: session, logger=logger)

    await notifier.notify("U123", "hello")
    assert "rejected with HTTP 400" in logger.warnings[0]


@pytest.mark.asyncio
async def test_line_notifier_never_raises():
    logger = DummyLogger()
    session = DummySession(error=aiohttp.ClientConnectionError("refused"))
    notifier = LineNotifier("line-token", session_factory=lambda: session, logger=logger)

    await notifier.notify("U123", "hello")
    assert logger.warnings == ["Push to U123 failed: refused"]


@pytest.mark.asyncio
async def test_logging_notifier_keeps_history():
    logger = DummyLogger()
    notifier = LoggingNotifier(logger=logger)

    await notifier.notify("U1", "first")
    await notifier.notify("U2", "second")

    assert notifier.sent == [("U1", "first"), ("U2", "second")]
    assert logger.infos[0] == "Notification to U1: first"
