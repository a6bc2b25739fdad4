"""Per-chat advisory lock for the payment finalisation step.

The lock is non-blocking: a second caller for the same chat gets the
:data:`LOCKED` sentinel back instead of waiting. Locks expire on their own
after ``timeout`` seconds so a crashed handler cannot hold one forever.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional

logger = logging.getLogger(__name__)


class _Locked:
    def __repr__(self) -> str:
        return "LOCKED"

    def __bool__(self) -> bool:
        return False


LOCKED = _Locked()


class SessionLock:
    def __init__(
        self,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self._clock = clock
        self._locks: Dict[Hashable, float] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def is_locked(self, chat_id: Hashable) -> bool:
        """Tell whether a chat holds a live lock, clearing a stale one."""
        acquired_at = self._locks.get(chat_id)
        if acquired_at is None:
            return False

        if self._clock() - acquired_at > self.timeout:
            logger.warning(f"Lock for chat {chat_id} expired after {self.timeout}s, releasing")
            del self._locks[chat_id]
            return False
        return True

    def acquire(self, chat_id: Hashable) -> bool:
        if self.is_locked(chat_id):
            return False
        self._locks[chat_id] = self._clock()
        return True

    def release(self, chat_id: Hashable) -> None:
        self._locks.pop(chat_id, None)

    async def with_lock(self, chat_id: Hashable, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``fn`` while holding the chat's lock.

        Returns:
            Whatever ``fn`` returns, or :data:`LOCKED` if the chat is busy.
        """
        if not self.acquire(chat_id):
            logger.info(f"Chat {chat_id} is locked, dropping duplicate request")
            return LOCKED
        try:
            return await fn()
        finally:
            self.release(chat_id)

    def cleanup(self) -> int:
        now = self._clock()
        stale = [key for key, ts in self._locks.items() if now - ts > self.timeout]
        for key in stale:
            del self._locks[key]
        if stale:
            logger.warning(f"Swept {len(stale)} orphaned session locks")
        return len(stale)

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                self.cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in session lock sweep: {e}")

    def start_sweeper(self, interval: float = 60.0) -> asyncio.Task:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(interval), name="session-lock-sweep")
        return self._sweeper

    async def stop(self) -> None:
        if self._sweeper and not self._sweeper.done():
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
        self._sweeper = None
