"""
Job poller tests.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_job, notification_titles
from leadrunner.core.error_handler import TransientNetworkError, Unauthenticated
from leadrunner.core.poller import JobPoller


@pytest.fixture
def executor():
    executor = MagicMock()
    executor.stopping = False
    executor.is_running = False
    executor.start_job = AsyncMock(return_value=True)
    return executor


@pytest.fixture
def tokens():
    tokens = AsyncMock()
    tokens.current_token.return_value = "access-token"
    return tokens


@pytest.fixture
def poller(executor, jobs, tokens, notifier):
    return JobPoller(executor, jobs, tokens, finished=set(), notifier=notifier)


@pytest.mark.unit
class TestPollCycle:

    @pytest.mark.asyncio
    async def test_hands_first_unfinished_job_to_executor(self, poller, jobs, executor, feed):
        poller.finished = {"job-1"}
        jobs.list_pending_jobs.return_value = [make_job("job-1"), make_job("job-2"), make_job("job-3")]

        job = await poller.poll_once()

        assert job.id == "job-2"
        executor.start_job.assert_awaited_once()
        assert executor.start_job.await_args.args[0].id == "job-2"
        # Announcing the job is left to the executor
        assert notification_titles(feed) == []

    @pytest.mark.asyncio
    async def test_all_pending_jobs_already_finished(self, poller, jobs, executor):
        poller.finished = {"job-1"}
        jobs.list_pending_jobs.return_value = [make_job("job-1")]

        assert await poller.poll_once() is None
        executor.start_job.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skips_without_token(self, poller, tokens, jobs):
        tokens.current_token.return_value = None

        assert await poller.poll_once() is None
        jobs.list_pending_jobs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skips_while_executor_busy(self, poller, executor, jobs):
        executor.is_running = True
        assert await poller.poll_once() is None

        executor.is_running = False
        executor.stopping = True
        assert await poller.poll_once() is None

        jobs.list_pending_jobs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_refused_returns_none(self, poller, jobs, executor, feed):
        jobs.list_pending_jobs.return_value = [make_job("job-5")]
        executor.start_job.return_value = False

        assert await poller.poll_once() is None
        assert notification_titles(feed) == []


@pytest.mark.resilience
class TestPollErrors:

    @pytest.mark.asyncio
    async def test_auth_failure_notifies(self, poller, jobs, feed):
        jobs.list_pending_jobs.side_effect = Unauthenticated("Session expired, please log in again")

        assert await poller.poll_once() is None
        assert poller.last_error == "Session expired, please log in again"
        assert notification_titles(feed) == ["Auth Error"]

    @pytest.mark.asyncio
    async def test_network_failure_is_left_to_next_period(self, poller, jobs, feed):
        jobs.list_pending_jobs.side_effect = TransientNetworkError("GET /api/v1/automations/jobs -> 503")

        assert await poller.poll_once() is None
        assert "503" in poller.last_error
        assert notification_titles(feed) == []

        jobs.list_pending_jobs.side_effect = None
        jobs.list_pending_jobs.return_value = []
        await poller.poll_once()
        assert poller.last_error is None

    @pytest.mark.asyncio
    async def test_overlapping_poll_is_a_no_op(self, poller, jobs):
        release = asyncio.Event()

        async def slow_list():
            await release.wait()
            return []

        jobs.list_pending_jobs.side_effect = slow_list
        first = asyncio.create_task(poller.poll_once())
        await asyncio.sleep(0.01)

        assert await poller.poll_once() is None
        release.set()
        await first

        jobs.list_pending_jobs.assert_awaited_once()
        assert poller.polls == 1

    @pytest.mark.asyncio
    async def test_trigger_polls_immediately(self, poller, jobs):
        jobs.list_pending_jobs.return_value = [make_job("job-9")]

        job = await poller.trigger()

        assert job.id == "job-9"
