"""
Outbound rate limiter for the notification channel.

Progress updates for a destination are spaced at least ``min_interval``
seconds apart and capped per minute; denied updates are dropped. Final
results bypass the limiter and are delivered exactly once per invocation.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable

from hearth.models import ProgressEvent
from hearth.services.notifier import Button, Notifier

logger = logging.getLogger(__name__)

MIN_EDIT_INTERVAL_SECONDS = 2.0
MAX_EDITS_PER_MINUTE = 30
EDIT_COUNT_WINDOW_SECONDS = 60.0
CLEANUP_INTERVAL_SECONDS = 300.0
INACTIVE_THRESHOLD_SECONDS = 600.0

# Remember delivered invocation ids for this long to absorb late duplicates
DELIVERED_RETENTION_SECONDS = 3600.0

FINAL_SEND_ATTEMPTS = 2

TELEGRAM_MAX_TEXT_LEN = 4096

_ITALIC_MARKER = re.compile(r"(?<!\*)\*(?!\*)")


def safe_markdown_truncate(text: str, max_length: int = TELEGRAM_MAX_TEXT_LEN) -> str:
    """
    Truncate Markdown without leaving broken formatting behind.

    Avoids cutting inside a code fence, drops a dangling bold or italic
    marker, and closes a code fence the cut left open.
    """
    if len(text) <= max_length:
        return text

    truncate_at = max_length
    before = text[:truncate_at]
    if before.count("```") % 2 == 1:
        last_fence = before.rfind("```")
        truncate_at = last_fence + 3 if last_fence != -1 else truncate_at

    result = text[:truncate_at]

    if result.count("**") % 2 == 1:
        result = result[: result.rfind("**")]

    if len(_ITALIC_MARKER.findall(result)) % 2 == 1:
        last = result.rfind("*")
        before_char = result[last - 1] if last > 0 else ""
        after_char = result[last + 1] if last + 1 < len(result) else ""
        if last != -1 and before_char != "*" and after_char != "*":
            result = result[:last]

    if result.count("```") % 2 == 1:
        result += "\n```"

    return result.rstrip()


@dataclass
class _EditState:
    last_edit: float
    edit_count: int
    window_start: float


class OutboundLimiter:
    """
    Per-destination throttle with an explicit init/destroy lifecycle.

    One instance is constructed at startup and passed to whatever needs it.
    """

    def __init__(
        self,
        notifier: Notifier,
        min_interval: float = MIN_EDIT_INTERVAL_SECONDS,
        max_per_minute: int = MAX_EDITS_PER_MINUTE,
        clock: Callable[[], float] = time.monotonic,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
    ):
        self._notifier = notifier
        self._min_interval = min_interval
        self._max_per_minute = max_per_minute
        self._clock = clock
        self._cleanup_interval = cleanup_interval
        self._states: dict[str, _EditState] = {}
        self._streaming: set[str] = set()
        self._delivered: dict[str, float] = {}
        self._sending: set[str] = set()
        self._dropped = 0
        self._cleanup_task: asyncio.Task[None] | None = None

    @property
    def dropped_count(self) -> int:
        """Progress updates dropped by the limiter since startup."""
        return self._dropped

    async def start(self) -> None:
        """Start the periodic cleanup of idle destinations."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.create_task(
            self._cleanup_loop(), name="outbound-cleanup"
        )

    async def destroy(self) -> None:
        """Stop background cleanup and forget all state."""
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                logger.debug("Outbound cleanup task cancelled")
        self._states.clear()
        self._streaming.clear()
        self._delivered.clear()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            removed = self.cleanup()
            if removed:
                logger.debug("Dropped rate-limit state for %d idle destinations", removed)

    # Rate limiting

    def can_edit(self, destination: str) -> bool:
        """True when a progress update may be pushed to the destination now."""
        state = self._states.get(destination)
        if state is None:
            return True

        now = self._clock()
        if now - state.last_edit < self._min_interval:
            return False

        if now - state.window_start > EDIT_COUNT_WINDOW_SECONDS:
            state.edit_count = 0
            state.window_start = now

        return state.edit_count < self._max_per_minute

    def record_edit(self, destination: str) -> None:
        now = self._clock()
        state = self._states.get(destination)
        if state is None:
            self._states[destination] = _EditState(
                last_edit=now, edit_count=1, window_start=now
            )
            return

        if now - state.window_start > EDIT_COUNT_WINDOW_SECONDS:
            state.edit_count = 1
            state.window_start = now
        else:
            state.edit_count += 1
        state.last_edit = now

    def cleanup(self) -> int:
        """Forget destinations idle for longer than the inactivity threshold."""
        now = self._clock()
        stale = [
            key
            for key, state in self._states.items()
            if now - state.last_edit > INACTIVE_THRESHOLD_SECONDS
        ]
        for key in stale:
            del self._states[key]
        expired = [
            key
            for key, at in self._delivered.items()
            if now - at > DELIVERED_RETENTION_SECONDS
        ]
        for key in expired:
            del self._delivered[key]
        return len(stale)

    # Streaming lifecycle

    def start_streaming(self, destination: str) -> None:
        self._streaming.add(destination)

    def stop_streaming(self, destination: str) -> None:
        self._streaming.discard(destination)

    def is_streaming(self, destination: str) -> bool:
        return destination in self._streaming

    # Delivery

    async def push_progress(self, destination: str, text: str) -> bool:
        """
        Best-effort progress update.

        Returns:
            True if the update was sent, False if it was dropped
        """
        if not self.is_streaming(destination) or not self.can_edit(destination):
            self._dropped += 1
            return False
        self.record_edit(destination)
        try:
            await self._notifier.update_progress(destination, safe_markdown_truncate(text))
        except Exception as e:
            logger.debug("Progress update to %s failed: %s", destination, e)
            return False
        return True

    async def deliver_final(
        self,
        destination: str,
        invocation_id: str,
        text: str,
        buttons: list[Button] | None = None,
    ) -> bool:
        """
        Deliver the final result of an invocation.

        Ends streaming for the destination. The invocation id is only
        recorded once the notifier reports success, so a failed send can be
        followed by a failure notice for the same invocation. A send that
        reports failure is retried once. Errors raised by the notifier
        propagate.

        Returns:
            True if this call delivered the text, False if it was already
            delivered or the notifier could not deliver it
        """
        self.stop_streaming(destination)
        if invocation_id in self._delivered or invocation_id in self._sending:
            logger.debug("Final result for %s already delivered", invocation_id)
            return False

        self._sending.add(invocation_id)
        try:
            for attempt in range(1, FINAL_SEND_ATTEMPTS + 1):
                result = await self._notifier.send_message(destination, text, buttons=buttons)
                if result.success:
                    self._delivered[invocation_id] = self._clock()
                    return True
                logger.error(
                    "Final result for %s to %s not delivered (attempt %d/%d): %s",
                    invocation_id,
                    destination,
                    attempt,
                    FINAL_SEND_ATTEMPTS,
                    result.error,
                )
            return False
        finally:
            self._sending.discard(invocation_id)

    def get_status(self) -> dict[str, Any]:
        return {
            "tracked_destinations": len(self._states),
            "streaming": sorted(self._streaming),
            "dropped_progress_updates": self._dropped,
        }


@dataclass
class ProgressUpdate:
    """A progress event tagged with the tenant and invocation it belongs to."""

    folder: str
    invocation_id: str
    event: ProgressEvent


class ProgressChannel:
    """
    Fan-out of progress events to UI-facing subscribers.

    Each subscriber gets a bounded queue. Intermediate events are dropped when
    a subscriber's queue is full; a completion event evicts the oldest queued
    event so it is always enqueued.
    """

    def __init__(self, max_queue: int = 100):
        self._max_queue = max_queue
        self._subscribers: list[asyncio.Queue[ProgressUpdate]] = []
        self._dropped = 0

    @property
    def dropped_count(self) -> int:
        return self._dropped

    def subscribe(self) -> asyncio.Queue[ProgressUpdate]:
        queue: asyncio.Queue[ProgressUpdate] = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ProgressUpdate]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, update: ProgressUpdate) -> None:
        for queue in self._subscribers:
            try:
                queue.put_nowait(update)
                continue
            except asyncio.QueueFull:
                if not update.event.is_complete:
                    self._dropped += 1
                    continue
            queue.get_nowait()
            self._dropped += 1
            queue.put_nowait(update)
