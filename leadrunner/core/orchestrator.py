"""
Leadrunner runtime - ties all components together.

Usage:
    runtime = LeadrunnerRuntime(config)
    await runtime.start()   # restores in-flight work and starts the timers
    await runtime.stop()    # graceful shutdown
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from leadrunner.api.auth import TokenManager
from leadrunner.api.client import ApiClient
from leadrunner.api.config import AppConfig
from leadrunner.api.services import JobSource, LeadService, QualificationService
from leadrunner.browser.agent import PageAgent
from leadrunner.browser.surfaces import PlaywrightSurfaceController
from leadrunner.core.deep_navigator import DeepProfileNavigator
from leadrunner.core.enricher import ProfileEnricher
from leadrunner.core.executor import DRIVER_OWNER, AutomationExecutor
from leadrunner.core.lead_navigator import LeadNavigator
from leadrunner.core.navigator_base import LeadStats
from leadrunner.core.poller import JobPoller
from leadrunner.core.rate_limiter import RateLimiter
from leadrunner.core.scheduler import PeriodicTask
from leadrunner.core.state_store import DriverLock, FinishedJobIds, StateStore
from leadrunner.core.timing import Pacer
from leadrunner.monitoring.notifications import NotificationManager, ProgressFeed

logger = logging.getLogger(__name__)

API_URL_KEY = "apiUrl"


class LeadrunnerRuntime:
    """
    Owns every long-lived component of one orchestrator process.

    Coordinates:
    - Durable store, finished-job set and driver lock
    - API client, session tokens and collaborator facades
    - Browser surfaces and the page agent
    - Executor, poller and the navigators
    - Poll and token timers
    """

    def __init__(self, config: AppConfig, surfaces=None, pacer: Optional[Pacer] = None):
        self.config = config
        self.pacer = pacer or Pacer()

        self.store = StateStore(config.DATABASE_PATH)
        self.finished = FinishedJobIds(self.store, limit=config.FINISHED_JOBS_LIMIT)
        self.driver_lock = DriverLock(self.store, enabled=config.EXCLUSIVE_DRIVER)
        self.limiter = RateLimiter(store=self.store)
        self.stats = LeadStats(self.store)

        self.client = ApiClient(config)
        self.tokens = TokenManager(self.store, self.client, config)
        self.client.attach_tokens(self.tokens)
        self.jobs = JobSource(self.client, config)
        self.leads = LeadService(self.client)
        self.qualification = QualificationService(self.client)

        self.feed = ProgressFeed(history=config.PROGRESS_HISTORY)
        self.notifier = NotificationManager(self.feed, config.SLACK_WEBHOOK_URL, config.DISCORD_WEBHOOK_URL)

        self.surfaces = surfaces or PlaywrightSurfaceController(config)
        self.agent = PageAgent(self.surfaces, config)

        self.executor = AutomationExecutor(
            self.store, self.finished, self.driver_lock, self.jobs, self.leads,
            self.surfaces, self.agent, self.notifier, config, pacer=self.pacer,
        )
        self.poller = JobPoller(self.executor, self.jobs, self.tokens, self.finished, self.notifier)
        self.surfaces.on_closed(self.executor.on_surface_closed)

        self.discovery = LeadNavigator(**self._navigator_deps(), config=config.DISCOVERY)
        self.deep_navigators: Dict[str, DeepProfileNavigator] = {}
        self.enricher = ProfileEnricher(**self._navigator_deps(), config=config.ENRICHER)

        self.poll_timer = PeriodicTask(
            "automationPoll", config.POLL_INTERVAL_SECONDS, self.poller.poll_once,
            initial_delay=config.POLL_INITIAL_DELAY_SECONDS,
        )
        self.token_timer = PeriodicTask(
            "tokenRefresh", config.TOKEN_CHECK_INTERVAL_SECONDS, self.tokens.check_and_refresh,
            initial_delay=config.TOKEN_CHECK_INITIAL_DELAY_SECONDS,
        )
        self._running = False
        self._wake_tasks: List[asyncio.Task] = []

    def _navigator_deps(self) -> Dict[str, Any]:
        return {
            "surfaces": self.surfaces,
            "agent": self.agent,
            "leads": self.leads,
            "qualification": self.qualification,
            "limiter": self.limiter,
            "driver_lock": self.driver_lock,
            "store": self.store,
            "stats": self.stats,
            "notifier": self.notifier,
            "pacer": self.pacer,
        }

    def deep_navigator(self, platform: str) -> DeepProfileNavigator:
        navigator = self.deep_navigators.get(platform)
        if navigator is None:
            navigator = DeepProfileNavigator(**self._navigator_deps(), config=self.config.deep_navigator(platform))
            self.deep_navigators[platform] = navigator
        return navigator

    # ============== Lifecycle ==============

    async def start(self):
        if self._running:
            logger.warning("Runtime already running")
            return
        self._running = True
        logger.info("Starting Leadrunner runtime...")

        await self.store.initialize()
        stored_url = await self.store.get(API_URL_KEY)
        if stored_url:
            self.config.API_URL = stored_url
        await self.finished.load()
        await self.limiter.load()
        await self.tokens.load()
        await self.discovery.load_state()

        restored_state = await self.store.get("automationState")
        await self.driver_lock.reset_stale(keep_owner=DRIVER_OWNER if restored_state else None)
        if await self.executor.restore():
            logger.info(f"Resumed job {self.executor.current_job_id}")

        self.poll_timer.start()
        self.token_timer.start()
        self._wake_tasks = [
            asyncio.create_task(self.tokens.check_and_refresh()),
            asyncio.create_task(self.poller.trigger(delay=self.config.WAKE_POLL_DELAY_SECONDS)),
        ]
        logger.info(f"Runtime started (API: {self.config.API_URL})")

    async def stop(self):
        if not self._running:
            return
        self._running = False
        logger.info("Stopping Leadrunner runtime...")

        for task in self._wake_tasks:
            task.cancel()
        await asyncio.gather(*self._wake_tasks, return_exceptions=True)
        await self.poll_timer.stop()
        await self.token_timer.stop()

        await self.discovery.stop()
        for navigator in self.deep_navigators.values():
            await navigator.stop()
        await self.enricher.stop()

        await self.executor.suspend()
        await self.surfaces.close()
        await self.client.close()
        logger.info("Runtime stopped")

    async def join(self):
        """Block until the timers end (used by the headless CLI)."""
        while self._running:
            await asyncio.sleep(1)

    # ============== Queries / settings ==============

    async def status(self) -> Dict[str, Any]:
        return {
            "isAuthenticated": await self.tokens.is_authenticated(),
            "isAutomationRunning": self.executor.is_running,
            "currentJobId": self.executor.current_job_id,
            "apiUrl": self.config.API_URL,
            "executor": self.executor.status(),
            "driver": await self.driver_lock.owner(),
            "leadStats": await self.stats.get(),
            "lastPollError": self.poller.last_error,
        }

    async def set_api_url(self, url: str):
        url = url.strip().rstrip("/")
        self.config.API_URL = url
        await self.store.set(API_URL_KEY, url)
        await self.client.close()
        logger.info(f"API URL set to {url}")
