# /cartresq/utils/rate_limiter.py

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Optional

# Process-wide outbound email throttle. Counters live in memory and are shared by
# every job running in this worker.

logger = logging.getLogger(__name__)

MINUTE = 60.0
HOUR = 3600.0


class SendRateLimiter:
    def __init__(
        self,
        per_minute: int,
        per_hour: int,
        min_interval_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.per_minute = per_minute
        self.per_hour = per_hour
        self.min_interval_seconds = min_interval_seconds
        self.clock = clock
        self.sleep = sleep
        self._minute_window: deque = deque()
        self._hour_window: deque = deque()
        self._last_send: Optional[float] = None
        self._lock = asyncio.Lock()

    def _prune(self, now: float):
        while self._minute_window and now - self._minute_window[0] >= MINUTE:
            self._minute_window.popleft()
        while self._hour_window and now - self._hour_window[0] >= HOUR:
            self._hour_window.popleft()

    async def acquire(self) -> Optional[str]:
        """
        Reserves a send slot. Returns None when the caller may send now (after the
        minimum spacing has elapsed), or the name of the exhausted window
        ("minute" / "hour") when the send must be deferred.
        """
        async with self._lock:
            now = self.clock()
            self._prune(now)
            if len(self._minute_window) >= self.per_minute:
                return "minute"
            if len(self._hour_window) >= self.per_hour:
                return "hour"

            if self._last_send is not None:
                wait = self.min_interval_seconds - (now - self._last_send)
                if wait > 0:
                    # Holding the lock serializes sends at the minimum spacing.
                    await self.sleep(wait)
                    now = self.clock()

            self._minute_window.append(now)
            self._hour_window.append(now)
            self._last_send = now
            return None

    def snapshot(self) -> dict:
        now = self.clock()
        self._prune(now)
        return {
            "sent_last_minute": len(self._minute_window),
            "sent_last_hour": len(self._hour_window),
            "per_minute": self.per_minute,
            "per_hour": self.per_hour,
        }
