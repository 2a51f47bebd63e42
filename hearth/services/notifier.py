"""
Notification channel used to reach tenants.

Uses the Telegram Bot API (via httpx). Progress updates are shown by editing a
single status message per chat; final results are sent as new messages and
split into chunks that fit Telegram's text limit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

TELEGRAM_BOT_API_BASE = "https://api.telegram.org"
TELEGRAM_MAX_TEXT_LEN = 4096

# (label, callback data)
Button = tuple[str, str]


@dataclass
class NotificationResult:
    """Result of a notification send operation."""

    success: bool
    message_id: int | None = None
    error: str | None = None


class Notifier(Protocol):
    async def send_message(
        self,
        destination: str,
        text: str,
        *,
        buttons: list[Button] | None = None,
    ) -> NotificationResult:
        ...

    async def update_progress(self, destination: str, text: str) -> NotificationResult:
        ...


def split_text(text: str, max_len: int = TELEGRAM_MAX_TEXT_LEN) -> list[str]:
    """Split text into chunks of at most max_len, preferring newline boundaries."""
    if len(text) <= max_len:
        return [text]

    chunks: list[str] = []
    buf = ""
    for line in text.splitlines(keepends=True):
        if len(line) > max_len:
            if buf:
                chunks.append(buf)
                buf = ""
            for i in range(0, len(line), max_len):
                chunks.append(line[i:i + max_len])
            continue
        if buf and len(buf) + len(line) > max_len:
            chunks.append(buf)
            buf = ""
        buf += line
    if buf:
        chunks.append(buf)
    return chunks


class LogNotifier:
    """Notifier that only logs; used when no bot token is configured."""

    async def send_message(
        self,
        destination: str,
        text: str,
        *,
        buttons: list[Button] | None = None,
    ) -> NotificationResult:
        logger.info("[to %s] %s", destination, text)
        return NotificationResult(success=True)

    async def update_progress(self, destination: str, text: str) -> NotificationResult:
        logger.debug("[progress %s] %s", destination, text)
        return NotificationResult(success=True)


class TelegramNotifier:
    """
    Service for sending messages via the Telegram Bot API.

    Uses a bot token to send and edit messages.
    """

    def __init__(
        self,
        token: str,
        *,
        parse_mode: str | None = "Markdown",
        transport: httpx.AsyncBaseTransport | None = None,
        api_base: str = TELEGRAM_BOT_API_BASE,
    ):
        """
        Initialize the notifier.

        Args:
            token: Telegram bot token
            parse_mode: Message format; retried as plain text when Telegram
                rejects the markup
            transport: Optional httpx transport (used by tests)
            api_base: Bot API base URL
        """
        self._token = token
        self._parse_mode = parse_mode
        self._transport = transport
        self._api_base = api_base
        self._status_messages: dict[str, int] = {}

    async def _call(self, method: str, payload: dict[str, Any]) -> NotificationResult:
        url = f"{self._api_base}/bot{self._token}/{method}"
        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
                response = await client.post(url, json=payload)
                if (
                    response.status_code == 400
                    and "parse_mode" in payload
                    and "parse entities" in response.text
                ):
                    plain = {k: v for k, v in payload.items() if k != "parse_mode"}
                    response = await client.post(url, json=plain)
        except httpx.TimeoutException as exc:
            logger.error("Telegram %s timeout: %s", method, exc)
            return NotificationResult(success=False, error=f"Request timeout: {exc}")
        except httpx.HTTPError as exc:
            logger.error("Telegram %s failed: %s", method, exc)
            return NotificationResult(success=False, error=str(exc))

        if response.status_code != 200:
            error = f"HTTP {response.status_code}: {response.text}"
            logger.error("Telegram API HTTP error on %s: %s", method, error)
            return NotificationResult(success=False, error=error)

        data = response.json()
        if not data.get("ok"):
            error = data.get("description", "Unknown error")
            logger.error("Telegram API error on %s: %s", method, error)
            return NotificationResult(success=False, error=error)

        result = data.get("result")
        message_id = result.get("message_id") if isinstance(result, dict) else None
        return NotificationResult(success=True, message_id=message_id)

    def _payload(self, destination: str, text: str) -> dict[str, Any]:
        payload: dict[str, Any] = {"chat_id": destination, "text": text}
        if self._parse_mode:
            payload["parse_mode"] = self._parse_mode
        return payload

    async def send_message(
        self,
        destination: str,
        text: str,
        *,
        buttons: list[Button] | None = None,
    ) -> NotificationResult:
        """Send text (chunked if needed); buttons attach to the last chunk."""
        self._status_messages.pop(destination, None)
        chunks = split_text(text or "")
        result = NotificationResult(success=False, error="nothing sent")
        for index, chunk in enumerate(chunks):
            payload = self._payload(destination, chunk)
            if buttons and index == len(chunks) - 1:
                payload["reply_markup"] = {
                    "inline_keyboard": [
                        [{"text": label, "callback_data": data} for label, data in buttons]
                    ]
                }
            result = await self._call("sendMessage", payload)
            if not result.success:
                return result
        logger.info("Sent %d message(s) to %s", len(chunks), destination)
        return result

    async def update_progress(self, destination: str, text: str) -> NotificationResult:
        """Create or edit the chat's status message."""
        message_id = self._status_messages.get(destination)
        if message_id is None:
            result = await self._call("sendMessage", self._payload(destination, text))
            if result.success and result.message_id is not None:
                self._status_messages[destination] = result.message_id
            return result

        payload = self._payload(destination, text)
        payload["message_id"] = message_id
        return await self._call("editMessageText", payload)
