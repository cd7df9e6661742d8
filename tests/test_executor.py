"""
Automation executor tests - job lifecycle, pacing, recovery and control signals.
"""

import asyncio

import pytest

from conftest import FakeSurfaces, make_job, make_lead, notification_messages, notification_titles, wait_until
from leadrunner.core.error_handler import ClaimConflict, Unauthenticated
from leadrunner.core.executor import STATE_KEY, AutomationExecutor
from leadrunner.core.models import AutomationAction, ExecutorState, TerminalStatus
from leadrunner.core.state_machine import JobPhase, LeadPhase


@pytest.fixture
def executor(store, finished, driver_lock, jobs, lead_service, surfaces, agent, notifier, app_config, pacer):
    executor = AutomationExecutor(
        store, finished, driver_lock, jobs, lead_service, surfaces, agent, notifier, app_config, pacer=pacer
    )
    surfaces.on_closed(executor.on_surface_closed)
    return executor


def reported(jobs):
    """(job_id, status, logs, processed_count) of the single terminal report."""
    jobs.report_terminal_status.assert_awaited_once()
    return jobs.report_terminal_status.await_args.args


def automated_lead_ids(agent):
    return [call.args[3].id for call in agent.perform_automation.await_args_list]


@pytest.mark.unit
class TestHappyPath:
    """A three-lead job runs to completion."""

    @pytest.mark.asyncio
    async def test_three_leads_complete_successfully(self, executor, jobs, agent, store, finished, driver_lock, surfaces, pacer, feed):
        job = make_job("job-1", lead_count=3, interval=(60.0, 90.0))

        assert await executor.start_job(job) is True
        await executor.join()

        jobs.claim_job.assert_awaited_once_with("job-1")
        job_id, status, logs, processed = reported(jobs)
        assert job_id == "job-1"
        assert status is TerminalStatus.SUCCESS
        assert processed == 3
        assert [entry.status for entry in logs] == ["success", "success", "success"]
        assert automated_lead_ids(agent) == ["lead-1", "lead-2", "lead-3"]

        # No interval wait after the last lead
        assert len(pacer.draws) == 2
        assert all(60.0 <= d <= 90.0 for d in pacer.draws)

        assert "job-1" in finished
        assert await store.get(STATE_KEY) is None
        assert await driver_lock.owner() is None
        assert executor.phase is JobPhase.IDLE
        assert executor.last_result is TerminalStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_one_container_reused_across_leads(self, executor, surfaces):
        await executor.start_job(make_job(lead_count=3))
        await executor.join()

        assert len(surfaces.opened_urls) == 1
        assert [url for _, url, _ in surfaces.navigations] == [
            "https://www.linkedin.com/in/person-2/",
            "https://www.linkedin.com/in/person-3/",
        ]
        assert all(active for _, _, active in surfaces.navigations)
        assert surfaces.closed_containers == ["ctx-1"]

    @pytest.mark.asyncio
    async def test_notifications_for_start_and_finish(self, executor, feed):
        await executor.start_job(make_job(lead_count=2))
        await executor.join()

        assert notification_titles(feed) == ["Automation Started", "Automation Finished"]
        assert "Completed! 2/2 leads processed." in notification_messages(feed)[-1]

    @pytest.mark.asyncio
    async def test_finalize_is_idempotent(self, executor, jobs):
        await executor.start_job(make_job(lead_count=1))
        await executor.join()

        assert await executor.finalize(TerminalStatus.FAILED) is False
        jobs.report_terminal_status.assert_awaited_once()
        assert executor.last_result is TerminalStatus.SUCCESS


@pytest.mark.unit
class TestClaim:
    """Claiming, skipping and rejecting jobs."""

    @pytest.mark.asyncio
    async def test_claim_failure_abandons_job(self, executor, jobs, store, driver_lock, finished):
        jobs.claim_job.side_effect = ClaimConflict("taken by another instance")

        assert await executor.start_job(make_job("job-2")) is False

        assert await store.get(STATE_KEY) is None
        assert await driver_lock.owner() is None
        assert "job-2" not in finished
        assert not executor.is_running
        jobs.report_terminal_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_job_reported_failed_without_claim(self, executor, jobs, finished, feed):
        assert await executor.start_job(make_job("job-3", lead_count=0)) is False

        jobs.claim_job.assert_not_awaited()
        jobs.report_terminal_status.assert_awaited_once_with("job-3", TerminalStatus.FAILED, [], 0)
        assert "job-3" in finished
        assert "No Leads" in notification_titles(feed)

    @pytest.mark.asyncio
    async def test_finished_job_is_never_restarted(self, executor, jobs, finished):
        await finished.add("job-4")

        assert await executor.start_job(make_job("job-4")) is False
        jobs.claim_job.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_job_refused_while_running(self, executor, clock, jobs):
        clock.block_over = 50
        await executor.start_job(make_job("job-5"))
        await wait_until(lambda: executor.lead_phase is LeadPhase.INTERVAL_WAIT)

        assert await executor.start_job(make_job("job-6")) is False
        jobs.claim_job.assert_awaited_once_with("job-5")

        await executor.stop()
        await executor.join()

    @pytest.mark.asyncio
    async def test_driver_held_by_navigator_blocks_start(self, executor, driver_lock, jobs):
        await driver_lock.acquire("navigator:discovery")

        assert await executor.start_job(make_job("job-7")) is False
        jobs.claim_job.assert_not_awaited()


@pytest.mark.unit
class TestActions:
    """Per-action outcomes are logged and never abort the job."""

    @pytest.mark.asyncio
    async def test_action_failures_are_logged_and_job_continues(self, executor, jobs, agent, lead_service):
        agent.perform_automation.side_effect = RuntimeError("boom")
        job = make_job("job-8", lead_count=1, actions=[
            AutomationAction("move_pipeline_stage", {}),
            AutomationAction("move_pipeline_stage", {"pipelineStageId": "stage-2"}),
            AutomationAction("send_message", {"message": "Hi"}),
        ])

        await executor.start_job(job)
        await executor.join()

        _, status, logs, processed = reported(jobs)
        assert status is TerminalStatus.SUCCESS
        assert processed == 1
        assert [(entry.status, entry.action) for entry in logs] == [
            ("failed", "move_pipeline_stage"),
            ("success", "move_pipeline_stage"),
            ("error", "send_message"),
        ]
        assert logs[0].error == "Target pipeline stage ID is missing"
        assert logs[2].error == "boom"
        lead_service.patch_lead.assert_awaited_once_with("lead-1", {"pipelineStageId": "stage-2"})

    @pytest.mark.asyncio
    async def test_unrecoverable_action_error_graded_but_job_continues(self, executor, jobs, lead_service):
        lead_service.patch_lead.side_effect = [Unauthenticated("session expired"), None]
        job = make_job("job-40", lead_count=2, actions=[
            AutomationAction("move_pipeline_stage", {"pipelineStageId": "stage-2"}),
        ])

        await executor.start_job(job)
        await executor.join()

        _, status, logs, processed = reported(jobs)
        assert status is TerminalStatus.SUCCESS
        assert processed == 2
        assert [(entry.lead_id, entry.status) for entry in logs] == [("lead-1", "error"), ("lead-2", "success")]
        assert logs[0].error == "session expired"

    @pytest.mark.asyncio
    async def test_connection_request_enriches_first(self, executor, agent, lead_service):
        job = make_job("job-9", lead_count=1, actions=[AutomationAction("connection_request", {"note": "Hello"})])

        await executor.start_job(job)
        await executor.join()

        agent.perform_enrichment.assert_awaited_once()
        lead_service.enrich_lead.assert_awaited_once_with("lead-1", {"company": "Acme"})
        agent.perform_automation.assert_awaited_once()
        assert agent.perform_automation.await_args.args[1] == "connection_request"

    @pytest.mark.asyncio
    async def test_surface_error_skips_lead(self, executor, jobs, surfaces):
        surfaces.fail_urls.add("https://www.linkedin.com/in/person-2/")

        await executor.start_job(make_job("job-10", lead_count=3))
        await executor.join()

        _, status, logs, processed = reported(jobs)
        assert status is TerminalStatus.SUCCESS
        assert processed == 3
        assert [(entry.lead_id, entry.status) for entry in logs] == [
            ("lead-1", "success"),
            ("lead-2", "error"),
            ("lead-3", "success"),
        ]

    @pytest.mark.asyncio
    async def test_lead_without_profile_url_is_skipped(self, executor, jobs, agent):
        job = make_job("job-11", lead_count=2)
        job.leads.insert(1, make_lead(9, profileUrl=None))

        await executor.start_job(job)
        await executor.join()

        assert automated_lead_ids(agent) == ["lead-1", "lead-2"]
        assert reported(jobs)[3] == 3


@pytest.mark.resilience
class TestRecovery:
    """State survives restarts and resumes at the persisted index."""

    @pytest.mark.asyncio
    async def test_suspended_job_resumes_at_persisted_index(
        self, executor, store, finished, driver_lock, jobs, lead_service, surfaces, agent, notifier, app_config, pacer
    ):
        calls = []

        async def automation(surface_id, automation_type, config, lead):
            calls.append(lead.id)
            if len(calls) == 2:
                await asyncio.get_running_loop().create_future()
            return {}

        agent.perform_automation.side_effect = automation
        await executor.start_job(make_job("job-12", lead_count=3))
        await wait_until(lambda: len(calls) == 2)

        persisted = await store.get(STATE_KEY)
        assert persisted["jobId"] == "job-12"
        assert persisted["status"] == "RUNNING"
        assert persisted["currentIndex"] == 1
        assert len(persisted["logs"]) == 1

        await executor.suspend()
        assert await store.get(STATE_KEY) is not None

        restarted = AutomationExecutor(
            store, finished, driver_lock, jobs, lead_service, surfaces, agent, notifier, app_config, pacer=pacer
        )
        assert await restarted.restore() is True
        await restarted.join()

        assert calls == ["lead-1", "lead-2", "lead-2", "lead-3"]
        jobs.claim_job.assert_awaited_once()
        _, status, logs, processed = reported(jobs)
        assert status is TerminalStatus.SUCCESS
        assert processed == 3
        assert len(logs) == 3

    @pytest.mark.asyncio
    async def test_restore_cancels_when_surface_is_gone(self, executor, store, jobs, finished):
        state = ExecutorState(
            job_id="job-13",
            leads=[make_lead(1), make_lead(2)],
            actions=[AutomationAction("send_message")],
            min_delay=60,
            max_delay=90,
            current_index=1,
            surface_id="surf-closed",
            container_id="ctx-closed",
        )
        await store.set(STATE_KEY, state.to_dict())

        assert await executor.restore() is False

        _, status, _, processed = reported(jobs)
        assert status is TerminalStatus.CANCELLED
        assert processed == 1
        assert "job-13" in finished
        assert await store.get(STATE_KEY) is None

    @pytest.mark.asyncio
    async def test_restore_clears_state_of_finished_job(self, executor, store, finished, jobs):
        state = ExecutorState("job-14", [make_lead(1)], [], 60, 90)
        await store.set(STATE_KEY, state.to_dict())
        await finished.add("job-14")

        assert await executor.restore() is False
        assert await store.get(STATE_KEY) is None
        jobs.report_terminal_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_restore_discards_unreadable_state(self, executor, store):
        await store.set(STATE_KEY, {"currentIndex": 2})

        assert await executor.restore() is False
        assert await store.get(STATE_KEY) is None


@pytest.mark.unit
class TestControlSignals:
    """Stop, advance and window-closed handling."""

    @pytest.mark.asyncio
    async def test_stop_during_interval_wait(self, executor, clock, jobs, store, finished, driver_lock, feed):
        clock.block_over = 50
        await executor.start_job(make_job("job-20", lead_count=3))
        await wait_until(lambda: executor.lead_phase is LeadPhase.INTERVAL_WAIT)

        status = executor.status()
        assert status["phase"] == "RUNNING"
        assert status["leadPhase"] == "INTERVAL_WAIT"
        assert status["currentIndex"] == 1

        assert await executor.stop() is True
        await executor.join()

        _, reported_status, logs, processed = reported(jobs)
        assert reported_status is TerminalStatus.CANCELLED
        assert processed == 1
        assert len(logs) == 1
        assert "job-20" in finished
        assert await store.get(STATE_KEY) is None
        assert await driver_lock.owner() is None
        assert "Automation Finished: Automation cancelled by user." in notification_messages(feed)

    @pytest.mark.asyncio
    async def test_stop_during_actions_discards_late_results(self, executor, agent, jobs):
        release = asyncio.Event()

        async def automation(*args):
            await release.wait()
            return {}

        agent.perform_automation.side_effect = automation
        await executor.start_job(make_job("job-21", lead_count=2))
        await wait_until(lambda: agent.perform_automation.await_count == 1)

        assert await executor.stop() is True
        release.set()
        await executor.join()

        _, status, logs, processed = reported(jobs)
        assert status is TerminalStatus.CANCELLED
        assert logs == []
        assert processed == 0
        assert agent.perform_automation.await_count == 1

    @pytest.mark.asyncio
    async def test_stop_when_idle_clears_leftover_state(self, executor, store):
        await store.set(STATE_KEY, {"jobId": "stale"})

        assert await executor.stop() is False
        assert await store.get(STATE_KEY) is None

    @pytest.mark.asyncio
    async def test_advance_cuts_interval_wait_short(self, executor, clock, agent):
        clock.block_over = 50
        await executor.start_job(make_job("job-22", lead_count=3))
        await wait_until(lambda: executor.lead_phase is LeadPhase.INTERVAL_WAIT)

        assert await executor.advance() is True
        await wait_until(
            lambda: agent.perform_automation.await_count == 2 and executor.lead_phase is LeadPhase.INTERVAL_WAIT
        )
        assert automated_lead_ids(agent) == ["lead-1", "lead-2"]

        await executor.stop()
        await executor.join()

    @pytest.mark.asyncio
    async def test_advance_during_actions_skips_current_lead(self, executor, agent, jobs):
        calls = []

        async def automation(surface_id, automation_type, config, lead):
            calls.append(lead.id)
            if len(calls) == 1:
                await asyncio.get_running_loop().create_future()
            return {}

        agent.perform_automation.side_effect = automation
        await executor.start_job(make_job("job-23", lead_count=3))
        await wait_until(lambda: len(calls) == 1)

        assert await executor.advance() is True
        await executor.join()

        assert calls == ["lead-1", "lead-2", "lead-3"]
        _, status, logs, processed = reported(jobs)
        assert status is TerminalStatus.SUCCESS
        assert processed == 3
        assert [entry.lead_id for entry in logs] == ["lead-2", "lead-3"]

    @pytest.mark.asyncio
    async def test_advance_without_job(self, executor):
        assert await executor.advance() is False

    @pytest.mark.asyncio
    async def test_user_closing_window_cancels_job(self, executor, clock, surfaces, jobs, feed):
        clock.block_over = 50
        await executor.start_job(make_job("job-24", lead_count=3))
        await wait_until(lambda: executor.lead_phase is LeadPhase.INTERVAL_WAIT)

        await surfaces.user_closes(executor.state.surface_id)
        await executor.join()

        assert reported(jobs)[1] is TerminalStatus.CANCELLED
        assert notification_titles(feed)[-1] == "Automation Stopped"
        assert not executor.is_running

    @pytest.mark.asyncio
    async def test_surface_lost_mid_job_cancels(self, executor, clock, surfaces, jobs, feed):
        clock.block_over = 50
        await executor.start_job(make_job("job-25", lead_count=3))
        await wait_until(lambda: executor.lead_phase is LeadPhase.INTERVAL_WAIT)

        # Window vanished without a close event
        surfaces.surfaces.pop(executor.state.surface_id)
        await executor.advance()
        await executor.join()

        _, status, _, processed = reported(jobs)
        assert status is TerminalStatus.CANCELLED
        assert processed == 1
        assert "Automation Stopped" in notification_titles(feed)


class SlowSurfaces(FakeSurfaces):
    """Holds the first container open until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()
        self.held = False

    async def open_container(self, url: str):
        if not self.held:
            self.held = True
            await self.release.wait()
        return await super().open_container(url)


@pytest.mark.unit
class TestOpeningSurface:
    """Signals that arrive while the automation container is still opening."""

    @pytest.fixture
    def slow_surfaces(self):
        return SlowSurfaces()

    @pytest.fixture
    def slow_executor(self, store, finished, driver_lock, jobs, lead_service, slow_surfaces, agent, notifier, app_config, pacer):
        executor = AutomationExecutor(
            store, finished, driver_lock, jobs, lead_service, slow_surfaces, agent, notifier, app_config, pacer=pacer
        )
        slow_surfaces.on_closed(executor.on_surface_closed)
        return executor

    @pytest.mark.asyncio
    async def test_stop_while_opening_closes_late_container(self, slow_executor, slow_surfaces, jobs, agent):
        await slow_executor.start_job(make_job("job-30", lead_count=2))
        await wait_until(lambda: slow_executor.lead_phase is LeadPhase.OPENING_SURFACE and slow_surfaces.held)

        assert await slow_executor.stop() is True
        slow_surfaces.release.set()
        await slow_executor.join()

        assert reported(jobs)[1] is TerminalStatus.CANCELLED
        assert slow_surfaces.containers == {}
        assert len(slow_surfaces.closed_containers) == 1
        agent.perform_automation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_advance_while_opening_closes_abandoned_container(self, slow_executor, slow_surfaces, jobs, agent):
        await slow_executor.start_job(make_job("job-31", lead_count=2))
        await wait_until(lambda: slow_executor.lead_phase is LeadPhase.OPENING_SURFACE and slow_surfaces.held)

        assert await slow_executor.advance() is True
        await slow_executor.join()
        slow_surfaces.release.set()
        await wait_until(lambda: len(slow_surfaces.closed_containers) == 2)

        assert reported(jobs)[1] is TerminalStatus.SUCCESS
        assert slow_surfaces.containers == {}
        assert automated_lead_ids(agent) == ["lead-2"]

    @pytest.mark.asyncio
    async def test_lead_phases_follow_the_lead_cycle(self, executor, agent):
        seen = []

        async def automation(*args):
            seen.append(executor.lead_phase)
            return {}

        agent.perform_automation.side_effect = automation
        await executor.start_job(make_job("job-32", lead_count=1))
        await executor.join()

        assert seen and set(seen) == {LeadPhase.RUNNING_ACTIONS}
        assert executor.lead_phase is None
