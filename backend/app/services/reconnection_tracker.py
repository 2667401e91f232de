import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

# Disconnect reasons that indicate a network/transport failure rather than a
# deliberate leave by the client or the server.
TRANSIENT_DISCONNECT_REASONS = frozenset({
    "transport close",
    "transport error",
    "ping timeout",
})

ExhaustedCallback = Callable[[int, str], Awaitable[None]]


def is_transient_disconnect(reason: Optional[str]) -> bool:
    return (reason or "").strip().lower() in TRANSIENT_DISCONNECT_REASONS


@dataclass
class ReconnectionAttempt:
    attempts: int
    last_attempt: float
    exam_id: str


class ReconnectionTracker:
    """
    Bounded-retry bookkeeping for participants that dropped off transiently.

    Each transient disconnect records an attempt and (re)arms a timer for the
    identity. When the timer fires with every allowed attempt spent, the entry is
    exhausted: ``on_exhausted`` is awaited once and the entry is dropped. An
    entry that sees no further attempts for another timeout window expires
    silently. A successful ``reconnect`` cancels the timer and drops the entry.
    """

    def __init__(
        self,
        on_exhausted: ExhaustedCallback,
        max_attempts: int = 3,
        reconnection_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.on_exhausted = on_exhausted
        self.max_attempts = max_attempts
        self.reconnection_timeout = reconnection_timeout
        self.clock = clock
        self._attempts: Dict[int, ReconnectionAttempt] = {}
        self._timers: Dict[int, asyncio.Task] = {}
        # user id -> exam id of the last exhausted entry
        self._exhausted: Dict[int, str] = {}

    def get(self, user_id: int) -> Optional[ReconnectionAttempt]:
        return self._attempts.get(user_id)

    def is_pending(self, user_id: int) -> bool:
        return user_id in self._attempts

    def is_exhausted(self, user_id: int, exam_id: str) -> bool:
        return self._exhausted.get(user_id) == exam_id

    async def register_disconnect(self, user_id: int, exam_id: str) -> Optional[ReconnectionAttempt]:
        """Record a transient disconnect; returns None when the attempts were already used up"""
        now = self.clock()
        entry = self._attempts.get(user_id)

        if entry is not None and entry.attempts >= self.max_attempts:
            await self._exhaust(user_id)
            return None

        if entry is None or now - entry.last_attempt > self.reconnection_timeout * 2:
            entry = ReconnectionAttempt(attempts=1, last_attempt=now, exam_id=exam_id)
            self._exhausted.pop(user_id, None)
        else:
            entry.attempts = min(entry.attempts + 1, self.max_attempts)
            entry.last_attempt = now
            entry.exam_id = exam_id
        self._attempts[user_id] = entry

        self._cancel_timer(user_id)
        self._timers[user_id] = asyncio.create_task(self._run_timer(user_id, entry.last_attempt))
        logger.info(f"User {user_id} disconnected transiently from exam {exam_id} (attempt {entry.attempts}/{self.max_attempts})")
        return entry

    def reconnect(self, user_id: int, exam_id: str) -> bool:
        entry = self._attempts.get(user_id)
        if entry is None or entry.exam_id != exam_id:
            return False

        self._cancel_timer(user_id)
        del self._attempts[user_id]
        logger.info(f"User {user_id} reconnected to exam {exam_id} after {entry.attempts} attempt(s)")
        return True

    def clear(self, user_id: int) -> None:
        self._cancel_timer(user_id)
        self._attempts.pop(user_id, None)
        self._exhausted.pop(user_id, None)

    async def _run_timer(self, user_id: int, armed_at: float) -> None:
        await asyncio.sleep(self.reconnection_timeout)
        entry = self._attempts.get(user_id)
        if entry is None or entry.last_attempt != armed_at:
            return

        if entry.attempts >= self.max_attempts:
            self._timers.pop(user_id, None)
            await self._exhaust(user_id)
            return

        await asyncio.sleep(self.reconnection_timeout)
        entry = self._attempts.get(user_id)
        if entry is not None and entry.last_attempt == armed_at:
            del self._attempts[user_id]
            self._timers.pop(user_id, None)
            logger.debug(f"Reconnection entry for user {user_id} expired")

    async def _exhaust(self, user_id: int) -> None:
        self._cancel_timer(user_id)
        entry = self._attempts.pop(user_id, None)
        if entry is None:
            return

        self._exhausted[user_id] = entry.exam_id
        logger.warning(f"User {user_id} exceeded reconnection attempts")
        try:
            await self.on_exhausted(user_id, entry.exam_id)
        except Exception as e:
            logger.error(f"Failed to notify permanent disconnection of user {user_id}: {e}", exc_info=True)

    def _cancel_timer(self, user_id: int) -> None:
        timer = self._timers.pop(user_id, None)
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    async def shutdown(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        self._attempts.clear()
        self._exhausted.clear()
