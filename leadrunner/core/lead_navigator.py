#!/usr/bin/env python3
"""
Keyword discovery navigator.

For each keyword: search (interactive search first, direct tag URL as the
fallback), collect a bounded batch of post links, then visit the posts one at a
time, extract the author, optionally qualify it and import it. Authors already
processed are never visited twice within a run, and the processed set survives
restarts.
"""

import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional
from urllib.parse import quote

from leadrunner.api.config import DiscoveryConfig
from leadrunner.core.error_handler import LeadrunnerError, SurfaceLost
from leadrunner.core.navigator_base import NavigatorBase, QualificationGate
from leadrunner.core.state_machine import DiscoveryStatus, check_discovery_transition

logger = logging.getLogger(__name__)

DISCOVERY_STATE_KEY = "autoModeState"
PROCESSED_PROFILES_KEY = "processedProfiles"
DISCOVERY_SOURCE = "autonomous_agent"


class LeadNavigator(NavigatorBase):
    name = "discovery"

    def __init__(self, *args, config: Optional[DiscoveryConfig] = None, **kwargs):
        self.config = config or DiscoveryConfig()
        super().__init__(self.config.platform, *args, **kwargs)
        self.limiter.set_limit(self.scope, self.config.max_profiles_per_hour)
        self.gate = QualificationGate(enabled=True, min_score=self.config.min_score)

        self.status = DiscoveryStatus.IDLE
        self.keywords: List[str] = []
        self.criteria = ""
        self.current_keyword_index = 0
        self.post_queue: Deque[str] = deque()
        self.total_posts_for_keyword = 0
        self.processed_profiles: set = set()
        self.saved_this_session = 0
        self.discarded_count = 0
        self.surface_id: Optional[str] = None
        self.container_id: Optional[str] = None

    @property
    def scope(self) -> str:
        return f"discovery:{self.platform}"

    @property
    def current_keyword(self) -> Optional[str]:
        if self.current_keyword_index < len(self.keywords):
            return self.keywords[self.current_keyword_index]
        return None

    # ============== Status ==============

    def status_message(self) -> str:
        keyword = self.current_keyword
        return {
            DiscoveryStatus.IDLE: "Waiting for command.",
            DiscoveryStatus.NAVIGATING_TO_SEARCH: f'Searching for "{keyword}"...',
            DiscoveryStatus.COLLECTING_POSTS: f"Collecting posts... ({len(self.post_queue)} found)",
            DiscoveryStatus.VISITING_PROFILE: "Visiting profile...",
            DiscoveryStatus.EXTRACTING_DATA: "Analyzing profile...",
            DiscoveryStatus.ANALYZING_LEAD: "Running AI qualification...",
            DiscoveryStatus.NEXT_KEYWORD: "Switching topic...",
            DiscoveryStatus.STOPPED: "Stopped.",
        }[self.status]

    def progress(self) -> Dict[str, Any]:
        status = self.status
        keyword = self.current_keyword
        if not status.is_active:
            progress, detailed = 0.0, ""
        elif status is DiscoveryStatus.NAVIGATING_TO_SEARCH:
            progress, detailed = 10.0, f'Starting search for "{keyword}"'
        elif status is DiscoveryStatus.COLLECTING_POSTS:
            progress, detailed = 20.0, "Collecting posts from the results page"
        elif self.total_posts_for_keyword:
            processed = self.total_posts_for_keyword - len(self.post_queue)
            progress = 20 + (processed / self.total_posts_for_keyword) * 80
            detailed = f'Processing lead {processed + 1} of {self.total_posts_for_keyword} for "{keyword}"'
        else:
            progress, detailed = 15.0, ""

        message = self.status_message()
        return {
            "status": status.value,
            "message": message,
            "progress": min(round(progress), 100),
            "detailedStatus": detailed or message,
        }

    async def _set_status(self, target: DiscoveryStatus):
        self.status = check_discovery_transition(self.status, target)
        await self._save_state()

    async def _save_state(self):
        state = self.progress()
        await self.store.set_many({
            DISCOVERY_STATE_KEY: state,
            PROCESSED_PROFILES_KEY: sorted(self.processed_profiles),
        })
        self.publish(state["detailedStatus"], status=state["status"], progress=state["progress"])

    async def load_state(self):
        self.processed_profiles = set(await self.store.get(PROCESSED_PROFILES_KEY, []))

    def snapshot(self) -> Dict[str, Any]:
        return {
            **self.progress(),
            "keywords": list(self.keywords),
            "currentKeyword": self.current_keyword,
            "queued": len(self.post_queue),
            "processedProfiles": len(self.processed_profiles),
            "saved": self.saved_this_session,
            "discarded": self.discarded_count,
            "isProcessing": self.is_processing,
        }

    # ============== Lifecycle ==============

    async def start(self, keywords: List[str], criteria: str = "") -> bool:
        if self.status.is_active or self.is_processing:
            return False
        keywords = [k.strip() for k in keywords if k and k.strip()]
        if not keywords:
            raise ValueError("At least one keyword is required")

        await self._claim_driver()
        await self.load_state()
        self.keywords = keywords
        self.criteria = criteria
        self.current_keyword_index = 0
        self.post_queue.clear()
        self.total_posts_for_keyword = 0
        self.saved_this_session = 0
        self.discarded_count = 0

        try:
            self.container_id, self.surface_id = await self.surfaces.open_container(self.config.home_url)
        except LeadrunnerError:
            await self.driver_lock.release(self.owner)
            raise

        logger.info(f"Discovery started for {len(keywords)} keywords (criteria: {'yes' if criteria else 'no'})")
        self._spawn()
        return True

    async def _cleanup(self):
        if self.status is not DiscoveryStatus.STOPPED:
            self.status = check_discovery_transition(self.status, DiscoveryStatus.STOPPED)
            await self._save_state()
        await self.surfaces.close_container(self.container_id)
        self.container_id = self.surface_id = None

    # ============== Loop ==============

    async def _run(self):
        while not self.stop_requested:
            keyword = self.current_keyword
            if keyword is None:
                logger.info("All keywords processed")
                break

            if not self.post_queue:
                await self._set_status(DiscoveryStatus.NAVIGATING_TO_SEARCH)
                await self.navigate_to_search(keyword)
                if self.stop_requested:
                    break

                await self._set_status(DiscoveryStatus.COLLECTING_POSTS)
                posts = await self.collect_posts()
                if not posts:
                    await self._next_keyword()
                    continue
                self.post_queue = deque(posts)
                self.total_posts_for_keyword = len(posts)

            await self._process_post(self.post_queue.popleft())

            if not self.post_queue and not self.stop_requested:
                await self._next_keyword()

    async def _next_keyword(self):
        await self._set_status(DiscoveryStatus.NEXT_KEYWORD)
        self.current_keyword_index += 1
        self.total_posts_for_keyword = 0

    async def _process_post(self, post_url: str):
        await self._set_status(DiscoveryStatus.VISITING_PROFILE)
        await self.surfaces.navigate(self.surface_id, post_url)
        await self._pause_range(self.config.post_load_wait)
        if self.stop_requested:
            return

        await self._set_status(DiscoveryStatus.EXTRACTING_DATA)
        lead = await self.extract_author()
        saved = False

        username = (lead or {}).get("username")
        if username and username not in self.processed_profiles:
            logger.info(f"Found lead: {username}")
            analysis = None
            if self.criteria:
                await self._set_status(DiscoveryStatus.ANALYZING_LEAD)
                try:
                    analysis = await self.qualification.analyze(lead, self.criteria)
                except SurfaceLost:
                    raise
                except LeadrunnerError as e:
                    logger.warning(f"Analysis failed for {username}, allowing import by default: {e}")

            if self.gate.passes(analysis, self.criteria):
                if not await self.acquire_slot():
                    return
                record = dict(lead)
                if analysis is not None:
                    record.update({"score": analysis.score, "analysisReason": analysis.reason})
                if await self.save_lead(record, source=DISCOVERY_SOURCE) is not None:
                    self.saved_this_session += 1
                    saved = True
            else:
                self.discarded_count += 1
                logger.info(f"Lead disqualified: {username}")

            self.processed_profiles.add(username)
            await self._save_state()

        await self._pause_range(self.config.delay)
        if saved and self.saved_this_session % self.config.long_delay_every == 0:
            await self._pause_range(self.config.long_delay)

    # ============== Page steps ==============

    async def navigate_to_search(self, keyword: str):
        try:
            results = await self.agent.perform_search(self.surface_id, keyword)
            urls = [u for u in (results or []) if isinstance(u, str)]
            if urls:
                marker = self.config.preferred_result_marker
                best = next((u for u in urls if marker in u), urls[0])
                logger.info(f"Interactive search succeeded, navigating to {best}")
                await self.surfaces.navigate(self.surface_id, best)
                await self._pause(self.config.search_load_wait)
                return
            logger.info("Interactive search yielded no results, falling back")
        except SurfaceLost:
            raise
        except LeadrunnerError as e:
            logger.warning(f"Interactive search failed: {e}")

        url = self.config.search_url_template.format(keyword=quote(keyword, safe=""))
        await self.surfaces.navigate(self.surface_id, url)
        await self._pause(self.config.fallback_load_wait)

    async def collect_posts(self) -> List[str]:
        limit = self.config.posts_per_keyword
        try:
            posts = await self.agent.get_post_links(self.surface_id, limit)
            if not posts:
                logger.info("No posts found, waiting and retrying collection...")
                await self._pause(self.config.collect_retry_wait)
                posts = await self.agent.get_post_links(self.surface_id, limit)
        except SurfaceLost:
            raise
        except LeadrunnerError as e:
            logger.warning(f"Failed to collect posts: {e}")
            posts = []
        logger.info(f"Collected {len(posts)} posts")
        return posts

    async def extract_author(self) -> Optional[Dict[str, Any]]:
        try:
            return await self.agent.extract_author_from_post(self.surface_id)
        except SurfaceLost:
            raise
        except LeadrunnerError as e:
            logger.debug(f"Author extraction failed: {e}")
            return None
