"""
Message consolidator for rapid-fire chat messages.

Text messages arriving for the same chat within the debounce window are
combined into one prompt. Each new message restarts the window. Messages with
media, and messages for a chat that is currently streaming a response, are
not buffered; the caller processes them right away.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 2000


@dataclass
class PendingMessage:
    text: str
    sender_name: str | None
    timestamp: str  # ISO 8601


@dataclass
class ConsolidatedMessage:
    """Combined prompt built from one or more buffered messages."""

    chat_jid: str
    content: str  # Joined with newlines
    sender_name: str | None
    timestamp: str  # Timestamp of first message
    message_count: int


@dataclass
class _ChatBuffer:
    messages: list[PendingMessage] = field(default_factory=list)
    timer: asyncio.Task[None] | None = None


FlushCallback = Callable[[ConsolidatedMessage], Coroutine[Any, Any, None]]


class MessageConsolidator:
    """Per-chat debounce buffer."""

    def __init__(
        self,
        on_flush: FlushCallback | None = None,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        is_streaming: Callable[[str], bool] | None = None,
    ):
        """
        Args:
            on_flush: Async callback receiving each consolidated message
            debounce_ms: Quiet period after the last message before flushing
            is_streaming: Returns True while a chat has a response in progress
        """
        self._on_flush = on_flush
        self._debounce_seconds = debounce_ms / 1000
        self._is_streaming = is_streaming or (lambda _jid: False)
        self._buffers: dict[str, _ChatBuffer] = {}
        self._streaming: set[str] = set()

    def set_flush_callback(self, callback: FlushCallback) -> None:
        self._on_flush = callback

    def set_streaming(self, chat_jid: str, streaming: bool) -> None:
        """Mark a chat as streaming so its messages bypass the buffer."""
        if streaming:
            self._streaming.add(chat_jid)
        else:
            self._streaming.discard(chat_jid)

    def should_buffer(self, chat_jid: str, has_media: bool = False) -> bool:
        if has_media:
            return False
        return chat_jid not in self._streaming and not self._is_streaming(chat_jid)

    def add(
        self,
        chat_jid: str,
        text: str,
        sender_name: str | None = None,
        has_media: bool = False,
        timestamp: str | None = None,
    ) -> bool:
        """
        Buffer a message.

        Returns:
            True if buffered, False if the caller should process it immediately
        """
        if not self.should_buffer(chat_jid, has_media):
            return False

        entry = self._buffers.setdefault(chat_jid, _ChatBuffer())
        entry.messages.append(
            PendingMessage(
                text=text,
                sender_name=sender_name,
                timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
            )
        )
        if entry.timer is not None and not entry.timer.done():
            entry.timer.cancel()
        entry.timer = asyncio.create_task(self._flush_after_delay(chat_jid))

        logger.debug(
            "Buffered message for %s (count: %d)", chat_jid, len(entry.messages)
        )
        return True

    def has_pending(self, chat_jid: str) -> bool:
        return chat_jid in self._buffers

    def pending_count(self, chat_jid: str) -> int:
        entry = self._buffers.get(chat_jid)
        return len(entry.messages) if entry else 0

    async def _flush_after_delay(self, chat_jid: str) -> None:
        try:
            await asyncio.sleep(self._debounce_seconds)
        except asyncio.CancelledError:
            logger.debug("Flush timer reset for %s", chat_jid)
            return
        await self._do_flush(chat_jid)

    async def _do_flush(self, chat_jid: str) -> ConsolidatedMessage | None:
        entry = self._buffers.pop(chat_jid, None)
        if entry is None or not entry.messages:
            return None

        first = entry.messages[0]
        event = ConsolidatedMessage(
            chat_jid=chat_jid,
            content="\n".join(m.text for m in entry.messages),
            sender_name=first.sender_name,
            timestamp=first.timestamp,
            message_count=len(entry.messages),
        )
        if event.message_count > 1:
            logger.info(
                "Consolidated %d messages for %s", event.message_count, chat_jid
            )

        if self._on_flush:
            try:
                await self._on_flush(event)
            except Exception as e:
                logger.error("Error in flush callback for %s: %s", chat_jid, e, exc_info=True)
        return event

    async def flush(self, chat_jid: str) -> ConsolidatedMessage | None:
        """Flush one chat immediately, cancelling its timer."""
        entry = self._buffers.get(chat_jid)
        if entry is None:
            return None
        if entry.timer is not None and not entry.timer.done():
            entry.timer.cancel()
        return await self._do_flush(chat_jid)

    async def flush_all(self) -> list[ConsolidatedMessage]:
        events = []
        for chat_jid in list(self._buffers):
            event = await self.flush(chat_jid)
            if event:
                events.append(event)
        return events

    def destroy(self) -> None:
        """Drop all buffers without flushing."""
        for entry in self._buffers.values():
            if entry.timer is not None and not entry.timer.done():
                entry.timer.cancel()
        self._buffers.clear()
        self._streaming.clear()
