"""
Tests for bounded reconnection tracking
"""
import asyncio

import pytest
from unittest.mock import AsyncMock

from app.services.reconnection_tracker import ReconnectionTracker, is_transient_disconnect

TIMEOUT = 0.05


def make_tracker(on_exhausted=None, clock=None, max_attempts=3):
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    return ReconnectionTracker(
        on_exhausted=on_exhausted or AsyncMock(),
        max_attempts=max_attempts,
        reconnection_timeout=TIMEOUT,
        **kwargs,
    )


class TestTransientReasons:

    @pytest.mark.parametrize("reason", ["transport close", "transport error", "ping timeout", "Transport Close"])
    def test_transport_failures_are_transient(self, reason):
        assert is_transient_disconnect(reason)

    @pytest.mark.parametrize("reason", ["client disconnect", "server disconnect", "", None])
    def test_deliberate_leaves_are_not_transient(self, reason):
        assert not is_transient_disconnect(reason)


class TestAttempts:
    """Attempt counting and reconnection"""

    @pytest.mark.asyncio
    async def test_attempts_increment_up_to_max(self):
        tracker = make_tracker()

        for expected in (1, 2, 3):
            entry = await tracker.register_disconnect(10, "exam-1")
            assert entry.attempts == expected

        await tracker.shutdown()

    @pytest.mark.asyncio
    async def test_reconnect_with_matching_exam_clears_entry(self):
        on_exhausted = AsyncMock()
        tracker = make_tracker(on_exhausted)
        await tracker.register_disconnect(10, "exam-1")

        assert tracker.reconnect(10, "exam-1") is True
        assert not tracker.is_pending(10)

        await asyncio.sleep(TIMEOUT * 3)
        on_exhausted.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reconnect_with_mismatched_exam_is_rejected(self):
        tracker = make_tracker()
        await tracker.register_disconnect(10, "exam-1")

        assert tracker.reconnect(10, "exam-2") is False
        assert tracker.get(10).attempts == 1

        await tracker.shutdown()

    @pytest.mark.asyncio
    async def test_reconnect_without_entry_is_rejected(self):
        assert make_tracker().reconnect(10, "exam-1") is False

    @pytest.mark.asyncio
    async def test_stale_entry_resets_attempt_count(self, clock):
        tracker = make_tracker(clock=clock)
        await tracker.register_disconnect(10, "exam-1")
        await tracker.register_disconnect(10, "exam-1")

        clock.advance(TIMEOUT * 2 + 1)
        entry = await tracker.register_disconnect(10, "exam-1")

        assert entry.attempts == 1
        await tracker.shutdown()


class TestExhaustion:
    """Permanent disconnection once every attempt is used up"""

    @pytest.mark.asyncio
    async def test_exhausted_after_max_attempts_notifies_once(self):
        on_exhausted = AsyncMock()
        tracker = make_tracker(on_exhausted)

        for _ in range(3):
            await tracker.register_disconnect(10, "exam-1")
        await asyncio.sleep(TIMEOUT * 3)

        on_exhausted.assert_awaited_once_with(10, "exam-1")
        assert not tracker.is_pending(10)
        assert tracker.is_exhausted(10, "exam-1")
        assert not tracker.is_exhausted(10, "exam-2")

    @pytest.mark.asyncio
    async def test_disconnect_beyond_limit_exhausts_immediately(self):
        on_exhausted = AsyncMock()
        tracker = make_tracker(on_exhausted)
        for _ in range(3):
            await tracker.register_disconnect(10, "exam-1")

        assert await tracker.register_disconnect(10, "exam-1") is None

        on_exhausted.assert_awaited_once_with(10, "exam-1")
        await asyncio.sleep(TIMEOUT * 3)
        on_exhausted.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_entry_under_limit_expires_silently(self):
        on_exhausted = AsyncMock()
        tracker = make_tracker(on_exhausted)
        await tracker.register_disconnect(10, "exam-1")

        await asyncio.sleep(TIMEOUT * 4)

        assert not tracker.is_pending(10)
        on_exhausted.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_callback_failure_is_contained(self):
        on_exhausted = AsyncMock(side_effect=RuntimeError("socket gone"))
        tracker = make_tracker(on_exhausted)
        for _ in range(3):
            await tracker.register_disconnect(10, "exam-1")

        await asyncio.sleep(TIMEOUT * 3)

        on_exhausted.assert_awaited_once()
        assert not tracker.is_pending(10)

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_timers(self):
        on_exhausted = AsyncMock()
        tracker = make_tracker(on_exhausted)
        for _ in range(3):
            await tracker.register_disconnect(10, "exam-1")

        await tracker.shutdown()
        await asyncio.sleep(TIMEOUT * 2)

        on_exhausted.assert_not_awaited()
        assert not tracker.is_pending(10)

    @pytest.mark.asyncio
    async def test_fresh_disconnect_clears_exhaustion(self):
        tracker = make_tracker()
        for _ in range(4):
            await tracker.register_disconnect(10, "exam-1")
        assert tracker.is_exhausted(10, "exam-1")

        await tracker.register_disconnect(10, "exam-1")

        assert not tracker.is_exhausted(10, "exam-1")
        assert tracker.get(10).attempts == 1
        await tracker.shutdown()
