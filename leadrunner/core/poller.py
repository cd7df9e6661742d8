"""
Job poller: asks the upstream queue for work and hands the first job that was
not finished locally to the executor.
"""

import asyncio
import logging
from typing import Optional

from leadrunner.core.error_handler import LeadrunnerError, RefreshFailed, Unauthenticated
from leadrunner.core.executor import AutomationExecutor
from leadrunner.core.models import AutomationJob
from leadrunner.core.state_store import FinishedJobIds

logger = logging.getLogger(__name__)


class JobPoller:
    def __init__(self, executor: AutomationExecutor, jobs, tokens, finished: FinishedJobIds, notifier):
        self.executor = executor
        self.jobs = jobs
        self.tokens = tokens
        self.finished = finished
        self.notifier = notifier
        self._lock = asyncio.Lock()
        self.last_error: Optional[str] = None
        self.polls = 0

    async def poll_once(self) -> Optional[AutomationJob]:
        """
        One poll cycle. Returns the job handed to the executor, if any.

        A cycle already in flight makes this call a no-op. Query failures are
        logged and left to the next period.
        """
        if self._lock.locked():
            logger.debug("Poll skipped: previous poll still in flight")
            return None

        async with self._lock:
            self.polls += 1
            if self.executor.stopping:
                logger.info("Poll skipped: automation is stopping")
                return None
            if self.executor.is_running:
                logger.debug("Poll skipped: automation already running")
                return None
            if not await self.tokens.current_token():
                logger.warning("Polling skipped: no auth token, log in first")
                return None

            try:
                pending = await self.jobs.list_pending_jobs()
            except (Unauthenticated, RefreshFailed) as e:
                self.last_error = str(e)
                logger.error(f"Poll error: {e}")
                await self.notifier.notify(
                    "Auth Error", "Please log in to run automations.", level="error"
                )
                return None
            except LeadrunnerError as e:
                self.last_error = str(e)
                logger.error(f"Poll error: {e}")
                return None

            self.last_error = None
            if not pending:
                logger.debug("No pending jobs found")
                return None

            job = next((j for j in pending if j.id not in self.finished), None)
            if job is None:
                logger.info("All pending jobs were already finished locally")
                return None

            logger.info(f"Found pending job {job.id} with {len(job.leads)} leads")
            # The executor announces the job itself once the claim succeeded
            if not await self.executor.start_job(job):
                logger.info(f"Executor did not take job {job.id}")
                return None
            return job

    async def trigger(self, delay: float = 0.0) -> Optional[AutomationJob]:
        """Immediate poll, e.g. requested by the dashboard."""
        if delay > 0:
            await asyncio.sleep(delay)
        logger.info("Immediate poll triggered")
        return await self.poll_once()
