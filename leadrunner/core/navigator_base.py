"""
Shared pieces of the queue navigators: status, qualification gate, saved-lead
counters and the start/stop/pause plumbing.
"""

import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence

from leadrunner.api.logging_config import log_navigator_event
from leadrunner.core.error_handler import DriverBusy, LeadrunnerError
from leadrunner.core.models import Analysis
from leadrunner.core.rate_limiter import RateLimiter
from leadrunner.core.state_store import DriverLock, StateStore
from leadrunner.core.timing import Pacer

logger = logging.getLogger(__name__)

LEAD_STATS_KEYS = ("leadsToday", "leadsMonth", "leadStatsPeriod")


class NavigatorStopped(Exception):
    """Raised out of a rate-limit wait once a stop has been requested."""


class NavigatorStatus(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    RATE_LIMITED = "RATE_LIMITED"
    STOPPED = "STOPPED"
    FINISHED = "FINISHED"


class QualificationGate:
    """
    Decides whether an analyzed lead is persisted.

    Precedence: a disabled gate or empty criteria lets everything through; a
    failed analysis lets the lead through; otherwise ``min_score`` decides when
    set, and the service's own ``qualified`` verdict decides when it is not.
    """

    def __init__(self, enabled: bool = True, min_score: Optional[float] = None):
        self.enabled = enabled
        self.min_score = min_score

    def passes(self, analysis: Optional[Analysis], criteria: Optional[str]) -> bool:
        if not self.enabled or not criteria:
            return True
        if analysis is None:
            return True
        if self.min_score is not None:
            return analysis.score is not None and analysis.score >= self.min_score
        return analysis.qualified

    def describe(self) -> str:
        if not self.enabled:
            return "disabled"
        return f"score >= {self.min_score}" if self.min_score is not None else "server verdict"


class LeadStats:
    """Persisted saved-lead counters, rolled over at day and month boundaries."""

    def __init__(self, store: StateStore, now: Callable[[], datetime] = datetime.now):
        self.store = store
        self.now = now
        self._lock = asyncio.Lock()

    def _period(self) -> Dict[str, str]:
        current = self.now()
        return {"day": current.strftime("%Y-%m-%d"), "month": current.strftime("%Y-%m")}

    async def get(self) -> Dict[str, int]:
        values = await self.store.get_many(LEAD_STATS_KEYS)
        period = values.get("leadStatsPeriod") or {}
        current = self._period()
        today = values.get("leadsToday", 0) if period.get("day") == current["day"] else 0
        month = values.get("leadsMonth", 0) if period.get("month") == current["month"] else 0
        return {"leadsToday": today, "leadsMonth": month}

    async def increment(self) -> Dict[str, int]:
        async with self._lock:
            stats = await self.get()
            stats = {"leadsToday": stats["leadsToday"] + 1, "leadsMonth": stats["leadsMonth"] + 1}
            await self.store.set_many({**stats, "leadStatsPeriod": self._period()})
            return stats


class NavigatorBase:
    """Start/stop lifecycle, flag-aware pauses and lead persistence for one navigator."""

    name = "navigator"

    def __init__(
        self,
        platform: str,
        surfaces,
        agent,
        leads,
        qualification,
        limiter: RateLimiter,
        driver_lock: DriverLock,
        store: StateStore,
        stats: LeadStats,
        notifier,
        pacer: Optional[Pacer] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.platform = platform
        self.surfaces = surfaces
        self.agent = agent
        self.leads = leads
        self.qualification = qualification
        self.limiter = limiter
        self.driver_lock = driver_lock
        self.store = store
        self.stats = stats
        self.notifier = notifier
        self.pacer = pacer or Pacer()
        self.clock = clock

        self.last_message = ""
        self._task: Optional[asyncio.Task] = None
        self._stop_requested = False
        self._waiting = False

    @property
    def scope(self) -> str:
        return self.platform

    @property
    def owner(self) -> str:
        return f"navigator:{self.name}"

    @property
    def is_processing(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def publish(self, message: str, level: str = "info", **data: Any):
        self.last_message = message
        log_navigator_event(self.name, message)
        self.notifier.feed.publish(self.name, message, level=level, **data)

    async def _claim_driver(self):
        if not await self.driver_lock.acquire(self.owner):
            owner = await self.driver_lock.owner()
            raise DriverBusy(f"Browser is being driven by {owner}")

    def _spawn(self):
        self._stop_requested = False
        self._task = asyncio.create_task(self._supervise(), name=self.owner)

    async def _supervise(self):
        try:
            await self._run()
        except asyncio.CancelledError:
            logger.info(f"{self.name} cancelled")
        except Exception as e:
            logger.exception(f"{self.name} crashed: {e}")
            self.publish(f"Stopped after error: {e}", level="error")
        finally:
            try:
                await self._cleanup()
            finally:
                await self.driver_lock.release(self.owner)

    async def _run(self):
        raise NotImplementedError

    async def _cleanup(self):
        """Release navigator-owned surfaces and persist the final status."""

    async def stop(self):
        """Cooperative stop: the loop exits at its next check; a pending pause is cut short."""
        if not self.is_processing:
            return
        self._stop_requested = True
        log_navigator_event(self.name, "stop requested")
        if self._waiting:
            self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)

    async def join(self):
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _pause(self, seconds: float):
        if self._stop_requested:
            return
        self._waiting = True
        try:
            await self.pacer.wait(seconds)
        finally:
            self._waiting = False

    async def _pause_range(self, bounds: Sequence[float]) -> float:
        delay = self.pacer.draw_range(bounds)
        await self._pause(delay)
        return delay

    async def _limiter_sleep(self, seconds: float):
        if self._stop_requested:
            raise NavigatorStopped(self.name)
        await self._pause(seconds)
        if self._stop_requested:
            raise NavigatorStopped(self.name)

    async def acquire_slot(self) -> bool:
        """Take one hourly slot for this navigator's scope; False when a stop arrived first."""
        if self._stop_requested:
            return False
        try:
            await self.limiter.acquire(self.scope, sleep=self._limiter_sleep)
        except NavigatorStopped:
            logger.info(f"{self.name} stopped while waiting for the hourly limit")
            return False
        return True

    async def save_lead(self, lead: Dict[str, Any], source: str) -> Optional[Dict[str, Any]]:
        """Import one lead upstream and bump the saved-lead counters; None when the import failed."""
        try:
            result = await self.leads.import_leads(self.platform, lead.get("profileUrl"), [lead], source=source)
        except LeadrunnerError as e:
            logger.error(f"{self.name} failed to save lead {lead.get('username') or lead.get('profileUrl')}: {e}")
            return None
        await self.stats.increment()
        return result
