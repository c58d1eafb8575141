"""Fire-and-forget text notifications to the owner of an attachment."""

from __future__ import annotations

from typing import List, Tuple

import aiohttp

from .logger import get_logger

LINE_PUSH_URL = "https://api.line.me/v2/bot/message/push"
LINE_TEXT_LIMIT = 5000
DEFAULT_NOTIFY_TIMEOUT = 10.0


class Notifier:
    """Interface implemented by notification channels. ``notify`` must never raise."""

    async def notify(self, recipient: str, text: str) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Write notifications to the log and keep them in ``sent`` (development and tests)."""

    def __init__(self, logger=None):
        self.logger = logger or get_logger()
        self.sent: List[Tuple[str, str]] = []

    async def notify(self, recipient: str, text: str) -> None:
        self.sent.append((recipient, text))
        self.logger.info("Notification to %s: %s", recipient, text)


class LineNotifier(Notifier):
    """Push a text message through the LINE Messaging API."""

    def __init__(
        self,
        channel_access_token: str,
        *,
        session_factory=None,
        timeout: float = DEFAULT_NOTIFY_TIMEOUT,
        logger=None,
    ):
        self._token = channel_access_token
        self._session_factory = session_factory or aiohttp.ClientSession
        self._timeout = timeout
        self.logger = logger or get_logger()

    async def notify(self, recipient: str, text: str) -> None:
        payload = {"to": recipient, "messages": [{"type": "text", "text": text[:LINE_TEXT_LIMIT]}]}
        headers = {"Authorization": f"Bearer {self._token}", "Content-Type": "application/json"}
        try:
            async with self._session_factory() as session:
                async with session.post(
                    LINE_PUSH_URL,
                    json=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self._timeout),
                ) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        self.logger.warning("Push to %s rejected with HTTP %s: %s", recipient, resp.status, body[:200])
        except Exception as exc:
            self.logger.warning("Push to %s failed: %s", recipient, exc)
