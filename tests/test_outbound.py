"""
Tests for the outbound rate limiter, markdown truncation and the progress channel.
"""

import asyncio

import pytest

from hearth.models import ProgressEvent, ProgressType
from hearth.services.notifier import NotificationResult
from hearth.services.outbound import (
    OutboundLimiter,
    ProgressChannel,
    ProgressUpdate,
    safe_markdown_truncate,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(notifier, clock):
    return OutboundLimiter(notifier, min_interval=2.0, max_per_minute=30, clock=clock)


class TestRateLimiting:
    """Tests for progress throttling."""

    async def test_first_update_allowed(self, limiter, notifier):
        limiter.start_streaming("chat")
        assert await limiter.push_progress("chat", "thinking") is True
        assert notifier.progress == [("chat", "thinking")]

    async def test_min_interval(self, limiter, clock):
        limiter.start_streaming("chat")
        await limiter.push_progress("chat", "one")

        clock.advance(1.0)
        assert await limiter.push_progress("chat", "two") is False
        clock.advance(1.5)
        assert await limiter.push_progress("chat", "three") is True
        assert limiter.dropped_count == 1

    async def test_per_minute_cap(self, notifier, clock):
        limiter = OutboundLimiter(notifier, min_interval=0.5, max_per_minute=3, clock=clock)
        limiter.start_streaming("chat")

        sent = []
        for _ in range(5):
            sent.append(await limiter.push_progress("chat", "x"))
            clock.advance(1.0)
        assert sent == [True, True, True, False, False]

        clock.advance(60)
        assert await limiter.push_progress("chat", "x") is True

    async def test_destinations_are_independent(self, limiter):
        limiter.start_streaming("a")
        limiter.start_streaming("b")
        assert await limiter.push_progress("a", "x") is True
        assert await limiter.push_progress("b", "x") is True

    async def test_not_streaming_is_dropped(self, limiter, notifier):
        assert await limiter.push_progress("chat", "late") is False
        assert notifier.progress == []

    async def test_notifier_failure_is_not_raised(self, limiter, notifier):
        async def broken(destination, text):
            raise RuntimeError("edit failed")

        notifier.update_progress = broken
        limiter.start_streaming("chat")
        assert await limiter.push_progress("chat", "x") is False

    async def test_cleanup_forgets_idle_destinations(self, limiter, clock):
        limiter.start_streaming("chat")
        await limiter.push_progress("chat", "x")

        clock.advance(601)
        assert limiter.cleanup() == 1
        assert limiter.get_status()["tracked_destinations"] == 0


class TestFinalDelivery:
    """Tests for exactly-once final delivery."""

    async def test_delivered_once_per_invocation(self, limiter, notifier):
        assert await limiter.deliver_final("chat", "inv-1", "answer") is True
        assert await limiter.deliver_final("chat", "inv-1", "answer") is False
        assert notifier.texts_for("chat") == ["answer"]

    async def test_final_bypasses_rate_limit(self, limiter, notifier):
        limiter.start_streaming("chat")
        await limiter.push_progress("chat", "x")
        await limiter.deliver_final("chat", "inv-1", "answer")
        assert notifier.texts_for("chat") == ["answer"]

    async def test_final_stops_streaming(self, limiter):
        limiter.start_streaming("chat")
        await limiter.deliver_final("chat", "inv-1", "answer")
        assert limiter.is_streaming("chat") is False

    async def test_buttons_passed_through(self, limiter, notifier):
        await limiter.deliver_final("chat", "inv-1", "failed", buttons=[("Retry", "retry:inv-1")])
        assert notifier.sent[0][2] == [("Retry", "retry:inv-1")]

    async def test_rejected_send_retried_once(self, limiter, notifier):
        results = [
            NotificationResult(success=False, error="flood wait"),
            NotificationResult(success=True, message_id=7),
        ]

        async def flaky(destination, text, *, buttons=None):
            notifier.sent.append((destination, text, buttons))
            return results.pop(0)

        notifier.send_message = flaky
        assert await limiter.deliver_final("chat", "inv-1", "answer") is True
        assert notifier.texts_for("chat") == ["answer", "answer"]
        assert await limiter.deliver_final("chat", "inv-1", "answer") is False

    async def test_undelivered_result_not_recorded(self, limiter, notifier, caplog):
        async def rejected(destination, text, *, buttons=None):
            return NotificationResult(success=False, error="chat not found")

        original = notifier.send_message
        notifier.send_message = rejected
        assert await limiter.deliver_final("chat", "inv-1", "answer") is False
        assert "not delivered" in caplog.text

        notifier.send_message = original
        assert await limiter.deliver_final("chat", "inv-1", "failed", buttons=[("Retry", "retry:inv-1")]) is True
        assert notifier.texts_for("chat") == ["failed"]

    async def test_raising_send_not_recorded(self, limiter, notifier):
        notifier.fail = True
        with pytest.raises(RuntimeError):
            await limiter.deliver_final("chat", "inv-1", "answer")

        notifier.fail = False
        assert await limiter.deliver_final("chat", "inv-1", "failed") is True


class TestLifecycle:
    async def test_start_and_destroy(self, limiter):
        await limiter.start()
        limiter.start_streaming("chat")
        await limiter.destroy()
        assert limiter.is_streaming("chat") is False


class TestSafeMarkdownTruncate:
    """Tests for markdown-aware truncation."""

    def test_short_text_unchanged(self):
        assert safe_markdown_truncate("hello *world*", 100) == "hello *world*"

    def test_length_respected(self):
        assert len(safe_markdown_truncate("a" * 5000)) <= 4096

    def test_closes_open_code_fence(self):
        text = "intro\n```python\n" + "x = 1\n" * 50
        result = safe_markdown_truncate(text, 60)
        assert result.count("```") % 2 == 0

    def test_drops_dangling_bold(self):
        text = "start **bold text that goes on and on**"
        result = safe_markdown_truncate(text, 20)
        assert result.count("**") % 2 == 0


class TestProgressChannel:
    """Tests for the bounded progress fan-out."""

    def _update(self, n: int, complete: bool = False) -> ProgressUpdate:
        return ProgressUpdate(
            "acme",
            "inv",
            ProgressEvent(type=ProgressType.MESSAGE, content_snapshot=str(n), is_complete=complete),
        )

    def test_fan_out(self):
        channel = ProgressChannel()
        a = channel.subscribe()
        b = channel.subscribe()
        channel.publish(self._update(1))
        assert a.qsize() == 1 and b.qsize() == 1

    def test_intermediate_events_dropped_when_full(self):
        channel = ProgressChannel(max_queue=2)
        queue = channel.subscribe()
        for n in range(5):
            channel.publish(self._update(n))
        assert queue.qsize() == 2
        assert channel.dropped_count == 3

    def test_completion_always_enqueued(self):
        channel = ProgressChannel(max_queue=2)
        queue = channel.subscribe()
        channel.publish(self._update(1))
        channel.publish(self._update(2))
        channel.publish(self._update(3, complete=True))

        items = [queue.get_nowait() for _ in range(queue.qsize())]
        assert items[-1].event.is_complete is True
        assert [i.event.content_snapshot for i in items] == ["2", "3"]

    def test_unsubscribe(self):
        channel = ProgressChannel()
        queue = channel.subscribe()
        channel.unsubscribe(queue)
        channel.publish(self._update(1))
        assert queue.empty()


async def test_cleanup_loop_runs(notifier):
    clock = FakeClock()
    limiter = OutboundLimiter(notifier, clock=clock, cleanup_interval=0.01)
    limiter.start_streaming("chat")
    await limiter.push_progress("chat", "x")
    clock.advance(601)

    await limiter.start()
    await asyncio.sleep(0.05)
    assert limiter.get_status()["tracked_destinations"] == 0
    await limiter.destroy()
