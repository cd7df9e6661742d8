#!/usr/bin/env python3
"""
Profile enricher.

Fills in profile counters and contact fields for leads that already exist
upstream. Each lead gets its own container, opened in the background; the
page agent reads the profile and only the fields it actually found are patched
onto the lead. Profiles are spaced at least ``min_gap_seconds`` apart and capped
per rolling hour.
"""

import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from leadrunner.api.config import EnricherConfig
from leadrunner.core.error_handler import ActionError, AgentError, LeadrunnerError, SurfaceLost
from leadrunner.core.navigator_base import NavigatorBase, NavigatorStatus

logger = logging.getLogger(__name__)

ENRICHED_FIELDS = ("bio", "followersCount", "followingCount", "postsCount", "website", "email")


def enrichment_fields(profile: Dict[str, Any]) -> Dict[str, Any]:
    """The subset of ``profile`` worth writing; missing values never overwrite stored ones."""
    return {key: profile[key] for key in ENRICHED_FIELDS if profile.get(key) is not None}


class ProfileEnricher(NavigatorBase):
    name = "enricher"

    def __init__(self, *args, config: Optional[EnricherConfig] = None, **kwargs):
        self.config = config or EnricherConfig()
        super().__init__(self.config.platform, *args, **kwargs)
        self.limiter.set_limit(self.scope, self.config.max_profiles_per_hour)

        self.status = NavigatorStatus.IDLE
        self.queue: Deque[Dict[str, Any]] = deque()
        self.total = 0
        self.completed = 0
        self.failed = 0
        self.current_lead: Optional[Dict[str, Any]] = None
        self.last_processed: Optional[float] = None

    @property
    def scope(self) -> str:
        return f"enrich:{self.platform}"

    def snapshot(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "status": self.status.value,
            "message": self.last_message,
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "queued": len(self.queue),
            "currentLead": (self.current_lead or {}).get("username"),
            "isProcessing": self.is_processing,
        }

    def profile_url(self, lead: Dict[str, Any]) -> str:
        url = lead.get("instagramProfileUrl") or lead.get("profileUrl")
        if url and url.startswith(("http://", "https://")):
            return url
        return self.config.profile_url_template.format(username=lead["username"])

    async def start(self, leads: List[Dict[str, Any]]) -> bool:
        """Queue ``leads`` (each with the upstream ``id`` and a ``username``) for enrichment."""
        if self.is_processing:
            logger.warning(f"{self.name} already active")
            return False
        if not leads:
            raise ValueError("At least one lead is required")

        await self._claim_driver()
        self.queue = deque(dict(lead) for lead in leads)
        self.total = len(self.queue)
        self.completed = 0
        self.failed = 0
        self.status = NavigatorStatus.RUNNING

        logger.info(f"{self.name} starting for {self.total} leads "
                    f"({self.config.max_profiles_per_hour}/hour, {self.config.min_gap_seconds:.0f}s apart)")
        self._spawn()
        return True

    async def _cleanup(self):
        self.current_lead = None
        if self.stop_requested:
            self.status = NavigatorStatus.STOPPED
            self.publish("Enrichment stopped", completed=self.completed, failed=self.failed)
        else:
            self.status = NavigatorStatus.FINISHED
            self.publish(
                f"Enrichment complete: {self.completed} succeeded, {self.failed} failed",
                completed=self.completed,
                failed=self.failed,
            )

    async def _run(self):
        while self.queue and not self.stop_requested:
            await self._process(self.queue.popleft())

    async def _wait_for_gap(self, label: str):
        if self.last_processed is None:
            return
        remaining = self.config.min_gap_seconds - (self.clock() - self.last_processed)
        if remaining > 0:
            logger.debug(f"{self.name} waiting {remaining:.1f}s before {label}")
            await self._pause(remaining)

    async def _process(self, lead: Dict[str, Any]):
        username = lead.get("username")
        label = username or lead.get("id") or "lead"
        container_id = None
        try:
            if not lead.get("id") or not username:
                raise ActionError("Invalid lead: missing id or username")

            await self._wait_for_gap(label)
            if not await self.acquire_slot():
                return

            self.current_lead = lead
            position = self.completed + self.failed + 1
            self.publish(f"Enriching {username} ({position}/{self.total})...", current=position, total=self.total)

            container_id, surface_id = await self.surfaces.open_container(self.profile_url(lead))
            await self._pause(self.config.page_load_wait)
            if self.stop_requested:
                return
            if not await self.surfaces.surface_exists(surface_id):
                raise SurfaceLost("Window was closed by user or failed to load")

            await self.surfaces.inject_agent(surface_id)
            await self._pause(self.config.agent_init_wait)
            profile = await self.agent.enrich_profile(surface_id, username)

            fields = enrichment_fields(profile)
            if not fields:
                raise AgentError(f"No profile fields found for {username}")
            await self.leads.patch_lead(lead["id"], fields)
            self.completed += 1
            logger.info(f"{self.name} enriched {username} ({', '.join(sorted(fields))})")
        except LeadrunnerError as e:
            self.failed += 1
            logger.error(f"{self.name} error enriching {label}: {e}")
        finally:
            if container_id:
                await self.surfaces.close_container(container_id)
            if self.current_lead is not None:
                self.last_processed = self.clock()
            self.current_lead = None
