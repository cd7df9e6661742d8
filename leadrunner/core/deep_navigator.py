#!/usr/bin/env python3
"""
Deep per-profile navigator.

Works through a queue of known leads for one platform: open an isolated surface
per profile, wait a humanized load delay, extract the profile, optionally
qualify it, persist it when it passes the gate, close the surface, pause, and
take a longer break every N profiles. An hourly cap per platform makes the
navigator sleep until the window clears and start a fresh session.
"""

import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from leadrunner.api.config import DeepNavigatorConfig
from leadrunner.core.error_handler import LeadrunnerError, SurfaceLost
from leadrunner.core.navigator_base import NavigatorBase, NavigatorStatus, QualificationGate

logger = logging.getLogger(__name__)


def lead_identity(lead: Dict[str, Any]) -> Optional[str]:
    return lead.get("username") or lead.get("profileUrl")


class DeepProfileNavigator(NavigatorBase):
    def __init__(self, *args, config: DeepNavigatorConfig, **kwargs):
        self.config = config
        super().__init__(config.platform, *args, **kwargs)
        self.name = f"deep:{config.platform}"
        self.limiter.set_limit(self.scope, config.max_profiles_per_hour)

        self.status = NavigatorStatus.IDLE
        self.queue: Deque[Dict[str, Any]] = deque()
        self.processed: set = set()
        self.criteria = ""
        self.gate = QualificationGate(config.only_qualified, config.min_score)
        self.deep_scan = config.deep_scan
        self.total = 0
        self.processed_count = 0
        self.profiles_this_session = 0
        self.session_start: Optional[float] = None
        self.qualified_count = 0
        self.discarded_count = 0
        self.failed_count = 0
        self.current_surface: Optional[str] = None

    @property
    def processed_key(self) -> str:
        return f"deepProcessed:{self.platform}"

    def snapshot(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "status": self.status.value,
            "message": self.last_message,
            "current": self.processed_count,
            "total": self.total,
            "queued": len(self.queue),
            "qualified": self.qualified_count,
            "discarded": self.discarded_count,
            "failed": self.failed_count,
            "profilesThisSession": self.profiles_this_session,
            "sessionStartTime": self.session_start,
            "filter": self.gate.describe(),
            "isProcessing": self.is_processing,
        }

    async def _persist_processed(self):
        await self.store.set(self.processed_key, sorted(self.processed))

    async def start(
        self,
        leads: List[Dict[str, Any]],
        criteria: str = "",
        only_qualified: Optional[bool] = None,
        min_score: Optional[float] = None,
        deep_scan: Optional[bool] = None,
    ) -> bool:
        if self.is_processing:
            logger.info(f"{self.name} already processing")
            return False

        await self._claim_driver()
        self.processed = set(await self.store.get(self.processed_key, []))

        queued, seen = [], set()
        for lead in leads:
            identity = lead_identity(lead)
            if not lead.get("profileUrl") or identity in self.processed or identity in seen:
                continue
            seen.add(identity)
            queued.append(dict(lead))

        self.queue = deque(queued)
        self.criteria = criteria
        self.gate = QualificationGate(
            self.config.only_qualified if only_qualified is None else only_qualified,
            min_score if min_score is not None else self.config.min_score,
        )
        self.deep_scan = self.config.deep_scan if deep_scan is None else deep_scan
        self.total = len(queued)
        self.processed_count = 0
        self.profiles_this_session = 0
        self.session_start = self.clock()
        self.qualified_count = 0
        self.discarded_count = 0
        self.failed_count = 0
        self.status = NavigatorStatus.RUNNING

        logger.info(f"{self.name} starting deep import for {self.total} leads ({len(leads) - self.total} skipped)")
        logger.info(f"{self.name} AI filter: {self.gate.describe() if criteria else 'no criteria'}")
        logger.info(f"{self.name} rate limit: {self.config.max_profiles_per_hour} profiles/hour")
        self._spawn()
        return True

    async def _cleanup(self):
        await self.surfaces.close_surface(self.current_surface)
        self.current_surface = None
        if self.stop_requested:
            self.status = NavigatorStatus.STOPPED
            self.publish("Stopped by user")
        else:
            self.status = NavigatorStatus.FINISHED
            self.publish(
                f"Done! {self.qualified_count} imported, {self.discarded_count} discarded",
                qualified=self.qualified_count,
                discarded=self.discarded_count,
            )

    async def _run(self):
        while self.queue and not self.stop_requested:
            await self._respect_hourly_cap()
            if self.stop_requested:
                break

            lead = self.queue.popleft()
            self.processed_count += 1
            self.profiles_this_session += 1
            self.publish(f"Visiting {lead.get('username') or lead.get('fullName') or lead.get('profileUrl')}...",
                         current=self.processed_count, total=self.total)

            await self._process(lead)

            identity = lead_identity(lead)
            if identity:
                self.processed.add(identity)
                await self._persist_processed()

            await self._pause_range(self.config.delay_between_profiles)
            if self.profiles_this_session % self.config.long_break_every == 0:
                pause = self.pacer.draw_range(self.config.long_break)
                self.publish(f"Safety pause ({pause:.0f}s)...")
                await self._pause(pause)

    async def _respect_hourly_cap(self):
        """Sleep until the platform window clears once the cap is hit, then start a new session."""
        if not self.limiter.can_proceed(self.scope):
            wait = self.limiter.time_until_clear(self.scope) + self.config.rate_limit_buffer_seconds
            self.status = NavigatorStatus.RATE_LIMITED
            self.publish(f"Rate limit reached. Waiting {wait / 60:.0f}min...", wait=wait)
            await self._pause(wait)
            if self.stop_requested:
                return
            self.session_start = self.clock()
            self.profiles_this_session = 0
            self.status = NavigatorStatus.RUNNING
        await self.acquire_slot()

    async def _process(self, lead: Dict[str, Any]):
        label = lead.get("username") or lead.get("fullName") or lead.get("profileUrl")
        try:
            self.current_surface = await self.surfaces.open_surface(lead["profileUrl"], active=False)
            await self._pause_range(self.config.page_load_wait)
            if self.stop_requested:
                return

            record = await self._extract(lead)
            analysis = await self._analyze(record, label)
            if analysis is not None:
                record["score"] = analysis.score
                record["analysisReason"] = analysis.reason

            if self.gate.passes(analysis, self.criteria):
                self.qualified_count += 1
                await self._save(record)
                self.publish(f"{label} qualified ({self.qualified_count}/{self.processed_count})",
                             qualified=self.qualified_count, discarded=self.discarded_count)
            else:
                self.discarded_count += 1
                logger.info(f"{self.name} discarding {label}: score {analysis.score} fails {self.gate.describe()}")
                self.publish(f"{label} discarded (score: {analysis.score or 0})",
                             qualified=self.qualified_count, discarded=self.discarded_count)
        except LeadrunnerError as e:
            self.failed_count += 1
            logger.error(f"{self.name} error processing {label}: {e}")
            # Keep whatever we already had
            await self._save(lead)
        finally:
            await self.surfaces.close_surface(self.current_surface)
            self.current_surface = None

    async def _extract(self, lead: Dict[str, Any]) -> Dict[str, Any]:
        try:
            data = await self.agent.extract_profile(self.current_surface, deep=self.deep_scan)
        except SurfaceLost:
            raise
        except LeadrunnerError as e:
            logger.warning(f"{self.name} extract failed for {lead.get('profileUrl')}: {e}")
            return dict(lead)
        return {**lead, **data, "platform": self.platform}

    async def _analyze(self, record: Dict[str, Any], label: str):
        if not self.criteria:
            return None
        self.publish(f"Analyzing {label} with AI...")
        try:
            return await self.qualification.analyze({**record, "platform": self.platform}, self.criteria)
        except LeadrunnerError as e:
            logger.warning(f"{self.name} AI analysis failed for {label}: {e}")
            return None

    async def _save(self, record: Dict[str, Any]):
        result = await self.save_lead(record, source=self.config.source)
        if result is None or not (self.deep_scan and self.config.behavioral_analysis):
            return

        results = result.get("leadResults") or []
        lead_id = results[0].get("id") if results and isinstance(results[0], dict) else None
        if not lead_id:
            return
        logger.info(f"{self.name} triggering deep behavioral analysis for {lead_id}")
        try:
            await self.leads.analyze_deep(lead_id, record, record.get("posts") or [])
        except LeadrunnerError as e:
            logger.error(f"{self.name} deep analysis failed for {lead_id}: {e}")
