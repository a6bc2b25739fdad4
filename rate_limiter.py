"""Per-key request throttling.

A limiter runs in one of two modes:

* cooldown: a key may be used again only ``limit`` seconds after its last use;
* quota: a key may be used at most ``max_requests`` times per ``window`` seconds.

Rejections are reported as ``False`` and never raise.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Hashable, List, Optional

logger = logging.getLogger(__name__)

# Extra time a cooldown entry is kept after it stopped mattering.
_COOLDOWN_GRACE_SECONDS = 5.0


class RateLimiter:
    def __init__(
        self,
        limit: Optional[float] = None,
        window: Optional[float] = None,
        max_requests: Optional[int] = None,
        name: str = "rate-limiter",
        clock: Callable[[], float] = time.monotonic,
    ):
        if window is None and limit is None:
            raise ValueError("Either limit (cooldown) or window/max_requests (quota) is required")
        if window is not None and not max_requests:
            raise ValueError("Quota mode needs max_requests")

        self.limit = limit
        self.window = window
        self.max_requests = max_requests
        self.name = name
        self._clock = clock
        self._last_seen: Dict[Hashable, float] = {}
        self._history: Dict[Hashable, List[float]] = {}
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def is_quota(self) -> bool:
        return self.window is not None

    def can_request(self, key: Hashable) -> bool:
        """Record a request for ``key`` if it is allowed.

        Returns:
            True if the request is allowed, False if it is throttled.
        """
        now = self._clock()

        if self.is_quota:
            recent = [t for t in self._history.get(key, []) if now - t < self.window]
            if len(recent) >= self.max_requests:
                self._history[key] = recent
                return False
            recent.append(now)
            self._history[key] = recent
            return True

        last = self._last_seen.get(key)
        if last is not None and now - last < self.limit:
            return False
        self._last_seen[key] = now
        return True

    def reset(self, key: Hashable) -> None:
        self._last_seen.pop(key, None)
        self._history.pop(key, None)

    def cleanup(self) -> int:
        """Drop entries that can no longer affect a decision.

        Returns:
            The number of keys removed.
        """
        now = self._clock()
        removed = 0

        if self.is_quota:
            for key in list(self._history):
                recent = [t for t in self._history[key] if now - t < self.window]
                if recent:
                    self._history[key] = recent
                else:
                    del self._history[key]
                    removed += 1
        else:
            for key, last in list(self._last_seen.items()):
                if now - last > self.limit + _COOLDOWN_GRACE_SECONDS:
                    del self._last_seen[key]
                    removed += 1

        if removed:
            logger.debug(f"{self.name}: swept {removed} stale entries")
        return removed

    def __len__(self) -> int:
        return len(self._history) if self.is_quota else len(self._last_seen)

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                self.cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in {self.name} sweep: {e}")

    def start_sweeper(self, interval: float) -> asyncio.Task:
        """Start the periodic cleanup on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(interval), name=f"{self.name}-sweep")
        return self._sweeper

    async def stop(self) -> None:
        if self._sweeper and not self._sweeper.done():
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
        self._sweeper = None
