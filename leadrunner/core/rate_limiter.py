"""
Rolling-window rate limiter.

Tracks completed-action timestamps per scope (platform, session) over the
trailing hour and answers whether another action may proceed. Bookkeeping only:
callers do the waiting, or use ``acquire`` which waits, re-checks and records as
one serialized operation.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional

from .state_store import StateStore

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 3600.0
RATE_LIMITS_KEY = "rateLimitWindows"
MIN_WAIT_SECONDS = 0.01


class RateLimiter:
    def __init__(
        self,
        limits: Optional[Dict[str, int]] = None,
        default_max_per_hour: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        store: Optional[StateStore] = None,
        window_seconds: float = WINDOW_SECONDS,
    ):
        self.limits: Dict[str, int] = dict(limits or {})
        self.default_max_per_hour = default_max_per_hour
        self.clock = clock
        self.store = store
        self.window_seconds = window_seconds
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()

    def set_limit(self, scope: str, max_per_hour: int):
        self.limits[scope] = max_per_hour

    def limit_for(self, scope: str) -> Optional[int]:
        return self.limits.get(scope, self.default_max_per_hour)

    def _prune(self, scope: str) -> Deque[float]:
        window = self._windows.setdefault(scope, deque())
        cutoff = self.clock() - self.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    def count(self, scope: str) -> int:
        return len(self._prune(scope))

    def can_proceed(self, scope: str) -> bool:
        limit = self.limit_for(scope)
        if limit is None:
            return True
        return len(self._prune(scope)) < limit

    def record_action(self, scope: str):
        self._prune(scope).append(self.clock())

    def time_until_available(self, scope: str) -> float:
        """Seconds until the oldest in-window action ages out (0 when free now)."""
        limit = self.limit_for(scope)
        window = self._prune(scope)
        if limit is None or len(window) < limit:
            return 0.0
        # Entries past index len-limit have to age out before one slot frees up
        blocking = window[len(window) - limit]
        cutoff = self.clock() - self.window_seconds
        return max(0.0, blocking - cutoff)

    def time_until_clear(self, scope: str) -> float:
        """Seconds until every recorded action has left the window."""
        window = self._prune(scope)
        if not window:
            return 0.0
        return max(0.0, window[-1] + self.window_seconds - self.clock())

    def reset(self, scope: Optional[str] = None):
        if scope is None:
            self._windows.clear()
        else:
            self._windows.pop(scope, None)

    async def acquire(
        self,
        scope: str,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> float:
        """
        Wait until ``scope`` has capacity, then record one action.

        Returns the total time waited. The check is repeated after every wait, so
        other navigators sharing the scope can never push it past the ceiling.
        """
        waited = 0.0
        while True:
            async with self._lock:
                if self.can_proceed(scope):
                    self.record_action(scope)
                    await self.persist()
                    return waited
                delay = max(self.time_until_available(scope), MIN_WAIT_SECONDS)
            logger.info(f"Rate limit reached for {scope}, waiting {delay:.0f}s")
            await sleep(delay)
            waited += delay

    async def load(self):
        if self.store is None:
            return
        stored = await self.store.get(RATE_LIMITS_KEY, {})
        self._windows = {scope: deque(sorted(stamps)) for scope, stamps in stored.items()}
        for scope in list(self._windows):
            self._prune(scope)

    async def persist(self):
        if self.store is None:
            return
        snapshot = {scope: list(self._prune(scope)) for scope in list(self._windows)}
        await self.store.set(RATE_LIMITS_KEY, snapshot)
