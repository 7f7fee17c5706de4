from __future__ import annotations

import math
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Optional, Protocol

from authwarden.logging import get_logger
from authwarden.storage.models import Clock, utc_now

logger = get_logger(__name__)


class AttemptThrottle(Protocol):
    """TTL counter keyed by client address.

    The window is fixed: it opens at the first increment and the counter
    disappears once ``window_seconds`` have elapsed, no matter how many
    increments arrived in between.
    """

    window_seconds: int

    async def increment(self, key: str) -> int:
        ...

    async def release(self, key: str) -> int:
        """Undo one increment inside the current window; never goes below zero."""
        ...

    async def get(self, key: str) -> int:
        ...

    async def retry_after(self, key: str) -> int:
        ...


class MemoryAttemptThrottle:
    """Single-process throttle counter.

    Expired windows are dropped lazily on access and swept at most once per
    ``cleanup_interval_seconds``; the oldest entries are evicted once
    ``max_keys`` addresses are tracked.
    """

    def __init__(
        self,
        window_seconds: int = 15 * 60,
        *,
        clock: Optional[Clock] = None,
        max_keys: int = 50_000,
        cleanup_interval_seconds: int = 60,
    ) -> None:
        self.window_seconds = window_seconds
        self._clock = clock or utc_now
        self._max_keys = max_keys
        self._cleanup_interval = timedelta(seconds=cleanup_interval_seconds)
        # key -> (count, window_started_at)
        self._counters: OrderedDict[str, tuple[int, datetime]] = OrderedDict()
        self._lock = threading.Lock()
        self._last_cleanup = self._clock()

    def _window_end(self, started_at: datetime) -> datetime:
        return started_at + timedelta(seconds=self.window_seconds)

    def _live_entry(self, key: str, now: datetime) -> Optional[tuple[int, datetime]]:
        entry = self._counters.get(key)
        if entry is None:
            return None
        if self._window_end(entry[1]) <= now:
            self._counters.pop(key, None)
            return None
        return entry

    def maybe_cleanup(self) -> int:
        """Drop expired windows if the sweep interval has passed."""
        now = self._clock()
        with self._lock:
            if now - self._last_cleanup < self._cleanup_interval:
                return 0
            self._last_cleanup = now
            expired = [
                key
                for key, (_, started) in self._counters.items()
                if self._window_end(started) <= now
            ]
            for key in expired:
                self._counters.pop(key, None)
        if expired:
            logger.debug("throttle_cleanup", removed=len(expired))
        return len(expired)

    async def increment(self, key: str) -> int:
        self.maybe_cleanup()
        now = self._clock()
        with self._lock:
            entry = self._live_entry(key, now)
            if entry is None:
                if len(self._counters) >= self._max_keys:
                    self._counters.popitem(last=False)
                entry = (0, now)
            count = entry[0] + 1
            self._counters[key] = (count, entry[1])
            return count

    async def release(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            entry = self._live_entry(key, now)
            if entry is None:
                return 0
            count = max(0, entry[0] - 1)
            self._counters[key] = (count, entry[1])
            return count

    async def get(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            entry = self._live_entry(key, now)
            return entry[0] if entry else 0

    async def retry_after(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            entry = self._live_entry(key, now)
            if entry is None:
                return 0
            remaining = (self._window_end(entry[1]) - now).total_seconds()
        return max(1, math.ceil(remaining))


__all__ = ["AttemptThrottle", "MemoryAttemptThrottle"]
