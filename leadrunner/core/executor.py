#!/usr/bin/env python3
"""
Automation Executor - runs one claimed job across its lead list.

Lifecycle: IDLE -> RUNNING -> {COMPLETED | CANCELLED | FAILED}. While RUNNING
each lead goes through OPENING_SURFACE -> AWAITING_LOAD -> RUNNING_ACTIONS ->
INTERVAL_WAIT. The ExecutorState is written to the durable store after every
transition, so a restarted process resumes at the persisted lead index.

Usage:
    executor = AutomationExecutor(store, finished, driver_lock, jobs, leads,
                                  surfaces, agent, notifier, config)
    await executor.restore()
    await executor.start_job(job)
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from leadrunner.api.config import AppConfig
from leadrunner.api.logging_config import log_job_event
from leadrunner.core.error_handler import (
    ABORT,
    ActionError,
    LeadrunnerError,
    SurfaceError,
    SurfaceLost,
    action_for,
    categorize,
)
from leadrunner.core.models import (
    ActionLog,
    ActionType,
    AutomationAction,
    AutomationJob,
    ExecutorState,
    Lead,
    LogStatus,
    TerminalStatus,
)
from leadrunner.core.state_machine import (
    Effect,
    JobEvent,
    JobPhase,
    LeadPhase,
    event_for,
    next_lead_phase,
    transition,
)
from leadrunner.core.state_store import DriverLock, FinishedJobIds, StateStore
from leadrunner.core.timing import Pacer

logger = logging.getLogger(__name__)

STATE_KEY = "automationState"
DRIVER_OWNER = "executor"

ACTION_STATUS_MESSAGES = {
    ActionType.CONNECTION_REQUEST.value: "Sending connection request...",
    ActionType.SEND_MESSAGE.value: "Sending message...",
    ActionType.MOVE_PIPELINE_STAGE.value: "Moving to next stage...",
}


class AutomationExecutor:
    def __init__(
        self,
        store: StateStore,
        finished: FinishedJobIds,
        driver_lock: DriverLock,
        jobs,
        leads,
        surfaces,
        agent,
        notifier,
        config: AppConfig,
        pacer: Optional[Pacer] = None,
    ):
        self.store = store
        self.finished = finished
        self.driver_lock = driver_lock
        self.jobs = jobs
        self.leads = leads
        self.surfaces = surfaces
        self.agent = agent
        self.notifier = notifier
        self.config = config
        self.pacer = pacer or Pacer()

        self.state: Optional[ExecutorState] = None
        self.phase = JobPhase.IDLE
        self.lead_phase: Optional[LeadPhase] = None
        self.last_result: Optional[TerminalStatus] = None
        self.stopping = False
        self._starting = False
        self._task: Optional[asyncio.Task] = None
        self._skip_wait = asyncio.Event()
        self._closers: set = set()

    # ============== Queries ==============

    @property
    def is_running(self) -> bool:
        return self._starting or self.phase is JobPhase.RUNNING

    @property
    def current_job_id(self) -> Optional[str]:
        return self.state.job_id if self.state else None

    def status(self) -> Dict[str, Any]:
        state = self.state
        return {
            "isAutomationRunning": self.is_running,
            "currentJobId": state.job_id if state else None,
            "phase": self.phase.value,
            "leadPhase": self.lead_phase.value if self.lead_phase else None,
            "currentIndex": state.current_index if state else None,
            "totalLeads": len(state.leads) if state else None,
            "currentLead": state.current_lead.display_name if state and state.current_lead else None,
            "logCount": len(state.logs) if state else 0,
            "lastResult": self.last_result.value if self.last_result else None,
        }

    def _publish(self, message: str, level: str = "info", **data: Any):
        self.notifier.feed.publish("executor", message, level=level, **data)

    async def _persist(self, state: ExecutorState):
        # A finalized job must never be written back
        if self.state is not state:
            return
        await self.store.set(STATE_KEY, state.to_dict())

    def _superseded(self, state: ExecutorState) -> bool:
        return self.stopping or self.state is not state

    # ============== Claim ==============

    async def start_job(self, job: AutomationJob) -> bool:
        """Claim ``job`` upstream and start processing it; no-op while a job is running."""
        if self.is_running or self.stopping:
            logger.info(f"Start of job {job.id} skipped: automation already running")
            return False
        if job.id in self.finished:
            logger.info(f"Job {job.id} was already finished locally")
            return False

        self._starting = True
        try:
            if not job.leads:
                await self._reject_empty_job(job)
                return False

            if not await self.driver_lock.acquire(DRIVER_OWNER):
                logger.info(f"Job {job.id} not started: another component drives the browser")
                return False

            try:
                await self.jobs.claim_job(job.id)
            except LeadrunnerError as e:
                logger.error(f"Failed to claim job {job.id}, abandoning it: {e}")
                await self.driver_lock.release(DRIVER_OWNER)
                return False

            result = transition(self.phase, JobEvent.CLAIMED)
            state = ExecutorState(
                job_id=job.id,
                leads=list(job.leads),
                actions=list(job.actions),
                min_delay=job.interval_min,
                max_delay=job.interval_max,
            )
            self.state = state
            self.phase = result.phase
            self.last_result = None
            self._skip_wait.clear()
            if Effect.PERSIST_STATE in result.effects:
                await self._persist(state)
        finally:
            self._starting = False

        log_job_event(job.id, "claimed", f"{len(job.leads)} leads, interval {job.interval_min:.0f}-{job.interval_max:.0f}s")
        await self.notifier.notify("Automation Started", f"Processing {len(job.leads)} leads...", job_id=job.id)
        self._spawn()
        return True

    async def _reject_empty_job(self, job: AutomationJob):
        logger.error(f"Job {job.id} has no leads to process")
        await self.finished.add(job.id)
        try:
            await self.jobs.report_terminal_status(job.id, TerminalStatus.FAILED, [], 0)
        except LeadrunnerError as e:
            logger.error(f"Failed to report empty job {job.id}: {e}")
        await self.notifier.notify("No Leads", "The automation job has no leads to process.", level="warning", job_id=job.id)

    # ============== Loop ==============

    def _spawn(self):
        self._task = asyncio.create_task(self._run(self.state))

    async def suspend(self):
        """Stop the loop without finalizing; the persisted state resumes on the next restore()."""
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self.state = None
        self.phase = JobPhase.IDLE
        self.lead_phase = None

    async def join(self):
        """Wait for the running loop (if any) to return."""
        while self._task is not None and not self._task.done():
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self, state: ExecutorState):
        try:
            while not self._superseded(state):
                if state.finished:
                    log_job_event(state.job_id, "all leads processed")
                    await self.finalize(TerminalStatus.SUCCESS)
                    return

                lead = state.leads[state.current_index]
                if not lead.profile_url:
                    logger.warning(f"Lead {lead.id} has no profile URL, skipping")
                    state.advance()
                    await self._persist(state)
                    continue

                state.current_lead = lead
                await self._process_lead(state, lead)
        except asyncio.CancelledError:
            logger.debug(f"Executor loop for job {state.job_id} cancelled")
        except SurfaceLost as e:
            logger.info(f"Automation surface lost during job {state.job_id}: {e}")
            await self._surface_lost(state)
        except Exception as e:
            logger.exception(f"Fatal error while running job {state.job_id}: {e}")
            if self.state is state:
                await self.finalize(TerminalStatus.FAILED, error=str(e))

    async def _process_lead(self, state: ExecutorState, lead: Lead):
        position = f"{state.current_index + 1}/{len(state.leads)}"
        log_job_event(state.job_id, f"lead {position}", f"{lead.display_name} ({lead.profile_url})")
        self._publish(f"Processing lead {position}: {lead.display_name}", job_id=state.job_id, index=state.current_index)

        self.lead_phase = LeadPhase.OPENING_SURFACE
        try:
            await self._open_surface(state, lead)
        except SurfaceLost:
            raise
        except SurfaceError as e:
            logger.error(f"Error opening surface for lead {lead.id}, skipping: {e}")
            state.logs.append(ActionLog(lead.id, lead.full_name, LogStatus.ERROR.value, error=str(e)))
            state.advance()
            await self._persist(state)
            await self.pacer.wait(self.config.SURFACE_RETRY_DELAY_SECONDS)
            return
        if self._superseded(state):
            return

        self.lead_phase = next_lead_phase(self.lead_phase)
        await self._persist(state)
        await self.pacer.wait(self.config.SETTLE_DELAY_SECONDS)
        if self._superseded(state):
            return

        self.lead_phase = next_lead_phase(self.lead_phase)
        await self._run_actions(state, lead)
        if self._superseded(state):
            return

        state.advance()
        self.lead_phase = next_lead_phase(self.lead_phase)
        await self._persist(state)
        if not state.finished:
            delay = self.pacer.draw(state.min_delay, state.max_delay)
            self._publish(f"Waiting {delay:.0f}s before next lead", job_id=state.job_id, delay=delay)
            await self._interval_wait(delay)

    async def _open_surface(self, state: ExecutorState, lead: Lead):
        if state.surface_id:
            if not await self.surfaces.surface_exists(state.surface_id):
                raise SurfaceLost(f"Surface {state.surface_id} was closed")
            await self.surfaces.navigate(state.surface_id, lead.profile_url, active=True)
        else:
            opening = asyncio.ensure_future(self.surfaces.open_container(lead.profile_url))
            try:
                container_id, surface_id = await asyncio.shield(opening)
            except asyncio.CancelledError:
                # The open still completes; its container must not outlive the cancelled loop
                opening.add_done_callback(self._discard_opened)
                raise
            if self._superseded(state):
                await self._close_container(container_id)
                return
            state.container_id = container_id
            state.surface_id = surface_id
            log_job_event(state.job_id, "surface opened", f"container={container_id} surface={surface_id}")

    def _discard_opened(self, opening: asyncio.Future):
        if opening.cancelled() or opening.exception() is not None:
            return
        container_id, _ = opening.result()
        closer = asyncio.ensure_future(self._close_container(container_id))
        self._closers.add(closer)
        closer.add_done_callback(self._closers.discard)

    async def _close_container(self, container_id: str):
        logger.info(f"Closing container {container_id} opened for a job that moved on")
        try:
            await self.surfaces.close_container(container_id)
        except LeadrunnerError as e:
            logger.info(f"Could not close container {container_id}: {e}")

    async def _interval_wait(self, delay: float):
        """Sleep ``delay`` seconds unless an advance signal cuts the wait short."""
        self._skip_wait.clear()
        sleeper = asyncio.ensure_future(self.pacer.wait(delay))
        skipper = asyncio.ensure_future(self._skip_wait.wait())
        try:
            await asyncio.wait({sleeper, skipper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            skipper.cancel()

    # ============== Actions ==============

    async def _run_actions(self, state: ExecutorState, lead: Lead):
        actions = state.actions
        if not actions:
            logger.info("No actions to execute")
            return

        try:
            await self.surfaces.inject_agent(state.surface_id)
        except SurfaceLost:
            raise
        except LeadrunnerError as e:
            logger.warning(f"Page agent unavailable on {state.surface_id}: {e}")

        for i, action in enumerate(actions):
            if self._superseded(state):
                logger.info("Automation cancelled during action execution")
                return

            logger.info(f"Executing action {i + 1}/{len(actions)}: {action.type}")
            self._publish(
                ACTION_STATUS_MESSAGES.get(action.type, "Processing..."),
                job_id=state.job_id,
                action=action.type,
                step=f"{i + 1}/{len(actions)}",
            )

            error = None
            try:
                await self._execute_action(state, action, lead)
                status = LogStatus.SUCCESS
            except SurfaceLost:
                raise
            except Exception as e:
                error = str(e)
                # The category only grades the log entry; the pipeline always continues
                if action_for(categorize(e)) == ABORT:
                    status = LogStatus.ERROR
                    logger.exception(f"Action {action.type} crashed for lead {lead.id}")
                else:
                    status = LogStatus.FAILED
                    logger.warning(f"Action {action.type} failed for lead {lead.id}: {e}")

            if self._superseded(state):
                return
            state.logs.append(ActionLog(lead.id, lead.full_name, status.value, action=action.type, error=error))
            await self._persist(state)

            if i < len(actions) - 1:
                await self.pacer.wait(self.config.ACTION_DELAY_SECONDS)

    async def _execute_action(self, state: ExecutorState, action: AutomationAction, lead: Lead):
        if action.type == ActionType.CONNECTION_REQUEST.value:
            await self._enrich(state, lead)
            await self.agent.perform_automation(state.surface_id, action.type, action.config, lead)
        elif action.type == ActionType.SEND_MESSAGE.value:
            await self.agent.perform_automation(state.surface_id, action.type, action.config, lead)
        elif action.type == ActionType.MOVE_PIPELINE_STAGE.value:
            stage_id = action.config.get("pipelineStageId")
            if not stage_id:
                raise ActionError("Target pipeline stage ID is missing")
            if not lead.id:
                raise ActionError("Lead has no id")
            await self.leads.patch_lead(lead.id, {"pipelineStageId": stage_id})
            logger.info(f"Lead {lead.id} moved to stage {stage_id}")
        else:
            raise ActionError(f"Unknown action type: {action.type}")

    async def _enrich(self, state: ExecutorState, lead: Lead):
        """Best-effort profile enrichment before a connection request."""
        try:
            data = await self.agent.perform_enrichment(state.surface_id)
            enrichment = data.get("enrichment") if isinstance(data, dict) else None
            if enrichment and lead.id:
                await self.leads.enrich_lead(lead.id, enrichment)
                logger.info(f"Enrichment data persisted for lead {lead.id}")
            else:
                logger.warning(f"Enrichment returned no data for lead {lead.id}")
        except SurfaceLost:
            raise
        except LeadrunnerError as e:
            logger.warning(f"Enrichment failed for lead {lead.id}: {e}")

    # ============== Finalize ==============

    async def finalize(
        self,
        status: TerminalStatus,
        event: Optional[JobEvent] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Move the current job to its terminal status.

        Only the first call per job has an effect; later calls return False.
        """
        state = self.state
        if state is None:
            return False

        result = transition(self.phase, event or event_for(status))
        self.state = None
        self.phase = result.phase
        self.lead_phase = None
        log_job_event(state.job_id, "finishing", status.value)

        for effect in result.effects:
            await self._apply(effect, state, status, error)

        self.last_result = status
        self.phase = JobPhase.IDLE
        return True

    async def _apply(self, effect: Effect, state: ExecutorState, status: TerminalStatus, error: Optional[str]):
        if effect is Effect.MARK_FINISHED:
            await self.finished.add(state.job_id)
        elif effect is Effect.DELETE_STATE:
            await self.store.remove(STATE_KEY)
        elif effect is Effect.RELEASE_SURFACE:
            await self.driver_lock.release(DRIVER_OWNER)
            try:
                if state.container_id:
                    await self.surfaces.close_container(state.container_id)
                elif state.surface_id:
                    await self.surfaces.close_surface(state.surface_id)
            except LeadrunnerError as e:
                logger.info(f"Could not close automation surface (might already be closed): {e}")
        elif effect is Effect.REPORT_UPSTREAM:
            try:
                await self.jobs.report_terminal_status(state.job_id, status, state.logs, state.current_index)
                log_job_event(state.job_id, "reported", status.remote_status.value)
            except LeadrunnerError as e:
                logger.error(f"Failed to update job {state.job_id} status upstream: {e}")
        elif effect is Effect.NOTIFY:
            if status is TerminalStatus.SUCCESS:
                message = f"Completed! {state.current_index}/{len(state.leads)} leads processed."
            elif status is TerminalStatus.CANCELLED:
                message = "Automation cancelled by user."
            else:
                message = f"Automation failed: {error}" if error else "Automation finished with status: failed"
            level = "error" if status is TerminalStatus.FAILED else "info"
            await self.notifier.notify("Automation Finished", message, level=level, job_id=state.job_id, status=status.value)

    # ============== External signals ==============

    async def stop(self) -> bool:
        """Cancel the running job regardless of its sub-state."""
        state = self.state
        if state is None:
            await self.store.remove(STATE_KEY)
            return False

        logger.info(f"Stop requested, cancelling job {state.job_id}")
        waiting = self.lead_phase in (LeadPhase.INTERVAL_WAIT, LeadPhase.AWAITING_LOAD)
        task = self._task
        self.stopping = True
        try:
            finalized = await self.finalize(TerminalStatus.CANCELLED)
        finally:
            self.stopping = False
        if waiting and task is not None and task is not asyncio.current_task():
            task.cancel()
        return finalized

    async def advance(self) -> bool:
        """Skip ahead to the next lead."""
        state = self.state
        if state is None or self.phase is not JobPhase.RUNNING:
            return False

        if self.lead_phase is LeadPhase.INTERVAL_WAIT:
            # Index already moved past the finished lead
            self._skip_wait.set()
            return True

        logger.info(f"Advance requested at lead {state.current_index + 1}/{len(state.leads)}")
        state.advance()
        await self._persist(state)

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self.state is state:
            self._spawn()
        return True

    async def on_surface_closed(self, surface_id: str):
        state = self.state
        if state is None or surface_id != state.surface_id or self.phase is not JobPhase.RUNNING:
            return
        logger.info(f"Automation surface {surface_id} was closed by the user")
        task = self._task
        await self._surface_lost(state)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _surface_lost(self, state: ExecutorState):
        if self.state is not state:
            return
        if await self.finalize(TerminalStatus.CANCELLED, event=JobEvent.SURFACE_LOST):
            await self.notifier.notify(
                "Automation Stopped", "Automation was stopped because the window was closed.", job_id=state.job_id
            )

    # ============== Recovery ==============

    async def restore(self) -> bool:
        """Reload persisted state after a restart; returns True when a job resumed."""
        data = await self.store.get(STATE_KEY)
        if not data:
            return False

        try:
            state = ExecutorState.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding unreadable automation state: {e}")
            await self.store.remove(STATE_KEY)
            return False

        if state.status != JobPhase.RUNNING.value:
            await self.store.remove(STATE_KEY)
            return False

        if state.job_id in self.finished:
            logger.info(f"Job {state.job_id} was already finished, clearing state")
            await self.store.remove(STATE_KEY)
            return False

        self.phase = transition(JobPhase.IDLE, JobEvent.RESTORED).phase
        self.state = state

        if state.surface_id and not await self.surfaces.surface_exists(state.surface_id):
            logger.info(f"Surface of job {state.job_id} no longer exists, cancelling")
            await self.finalize(TerminalStatus.CANCELLED, event=JobEvent.SURFACE_LOST)
            return False

        await self.driver_lock.acquire(DRIVER_OWNER)
        log_job_event(state.job_id, "restored", f"resuming at lead {state.current_index + 1}/{len(state.leads)}")
        self._spawn()
        return True
