"""
Pytest fixtures and fakes for the Leadrunner test suite.

Time is simulated: every delay goes through FakeClock.sleep, which advances a
virtual clock and yields once to the event loop.
"""

import asyncio
import random
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from leadrunner.api.config import AppConfig, DeepNavigatorConfig, DiscoveryConfig
from leadrunner.core.error_handler import SurfaceError, SurfaceLost
from leadrunner.core.models import Analysis, AutomationAction, AutomationJob, Lead
from leadrunner.core.navigator_base import LeadStats
from leadrunner.core.rate_limiter import RateLimiter
from leadrunner.core.state_store import DriverLock, FinishedJobIds, StateStore
from leadrunner.core.timing import Pacer
from leadrunner.monitoring.notifications import NotificationManager, ProgressFeed


# === Simulated time ===

class FakeClock:
    """Virtual wall clock. ``block_over`` makes sleeps of that length or longer hang until cancelled."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps: List[float] = []
        self.block_over: Optional[float] = None

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        if self.block_over is not None and seconds >= self.block_over:
            await asyncio.get_running_loop().create_future()
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


class RecordingPacer(Pacer):
    """Pacer that remembers every interval it drew."""

    def __init__(self, clock: FakeClock, seed: int = 7):
        super().__init__(rng=random.Random(seed), sleep=clock.sleep)
        self.draws: List[float] = []

    def draw(self, low: float, high: float) -> float:
        value = super().draw(low, high)
        self.draws.append(value)
        return value


async def wait_until(predicate, timeout: float = 2.0):
    """Spin the loop until ``predicate()`` holds."""
    async def _spin():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_spin(), timeout)


# === Browser fakes ===

class FakeSurfaces:
    """In-memory stand-in for the surface controller."""

    def __init__(self):
        self.surfaces: Dict[str, Optional[str]] = {}  # surface -> container
        self.containers: Dict[str, List[str]] = {}
        self.navigations: List[tuple] = []
        self.opened_urls: List[str] = []
        self.closed_surfaces: List[str] = []
        self.closed_containers: List[str] = []
        self.fail_urls: set = set()
        self.callbacks = []
        self._counter = 0
        self.closed = False

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def on_closed(self, callback):
        self.callbacks.append(callback)

    async def open_container(self, url: str):
        if url in self.fail_urls:
            raise SurfaceError(f"Could not open {url}")
        container_id, surface_id = self._next("ctx"), self._next("surf")
        self.containers[container_id] = [surface_id]
        self.surfaces[surface_id] = container_id
        self.opened_urls.append(url)
        return container_id, surface_id

    async def open_surface(self, url: str, container_id: Optional[str] = None, active: bool = True) -> str:
        if url in self.fail_urls:
            raise SurfaceError(f"Could not open {url}")
        surface_id = self._next("surf")
        self.surfaces[surface_id] = container_id
        self.opened_urls.append(url)
        return surface_id

    async def surface_exists(self, surface_id: Optional[str]) -> bool:
        return surface_id in self.surfaces

    async def navigate(self, surface_id: str, url: str, active: bool = False):
        if surface_id not in self.surfaces:
            raise SurfaceLost(f"Surface {surface_id} is gone")
        if url in self.fail_urls:
            raise SurfaceError(f"Navigation to {url} failed")
        self.navigations.append((surface_id, url, active))

    async def close_surface(self, surface_id: Optional[str]):
        if surface_id and self.surfaces.pop(surface_id, "missing") != "missing":
            self.closed_surfaces.append(surface_id)

    async def close_container(self, container_id: Optional[str]):
        if container_id and container_id in self.containers:
            for surface_id in self.containers.pop(container_id):
                self.surfaces.pop(surface_id, None)
            self.closed_containers.append(container_id)

    async def inject_agent(self, surface_id: str) -> bool:
        return True

    async def close(self):
        self.closed = True

    async def user_closes(self, surface_id: str):
        """Simulate the user closing a window."""
        self.surfaces.pop(surface_id, None)
        for callback in self.callbacks:
            await callback(surface_id)


def make_agent() -> AsyncMock:
    agent = AsyncMock()
    agent.perform_automation.return_value = {}
    agent.perform_enrichment.return_value = {"enrichment": {"company": "Acme"}}
    agent.extract_profile.return_value = {"bio": "Coffee roaster"}
    agent.perform_search.return_value = []
    agent.get_post_links.return_value = []
    agent.extract_author_from_post.return_value = None
    return agent


# === Builders ===

def make_lead(index: int, **extra) -> Lead:
    return Lead.from_dict({
        "id": f"lead-{index}",
        "profileUrl": f"https://www.linkedin.com/in/person-{index}/",
        "fullName": f"Person {index}",
        **extra,
    })


def make_job(job_id: str = "job-1", lead_count: int = 3, actions=None, interval=(60.0, 90.0)) -> AutomationJob:
    return AutomationJob(
        id=job_id,
        leads=[make_lead(i) for i in range(1, lead_count + 1)],
        actions=actions if actions is not None else [AutomationAction("send_message", {"message": "Hi {{firstName}}"})],
        interval_min=interval[0],
        interval_max=interval[1],
    )


def analysis(score: Optional[float], qualified: bool = True, reason: str = "fit") -> Analysis:
    return Analysis(score=score, qualified=qualified, reason=reason)


# === Fixtures ===

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pacer(clock):
    return RecordingPacer(clock)


@pytest.fixture
def app_config(tmp_path):
    return AppConfig(DATABASE_PATH=str(tmp_path / "leadrunner.db"), LOG_DIR=str(tmp_path / "logs"))


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "state.db"))


@pytest.fixture
def finished(store):
    return FinishedJobIds(store, limit=100)


@pytest.fixture
def driver_lock(store):
    return DriverLock(store)


@pytest.fixture
def feed():
    return ProgressFeed()


@pytest.fixture
def notifier(feed):
    return NotificationManager(feed)


@pytest.fixture
def surfaces():
    return FakeSurfaces()


@pytest.fixture
def agent():
    return make_agent()


@pytest.fixture
def jobs():
    source = AsyncMock()
    source.list_pending_jobs.return_value = []
    return source


@pytest.fixture
def lead_service():
    service = AsyncMock()
    service.import_leads.return_value = {"leadResults": [{"id": "saved-1"}]}
    return service


@pytest.fixture
def qualification():
    service = AsyncMock()
    service.analyze.return_value = analysis(90)
    return service


@pytest.fixture
def limiter(clock, store):
    return RateLimiter(clock=clock, store=store)


@pytest.fixture
def stats(store):
    return LeadStats(store)


@pytest.fixture
def navigator_deps(surfaces, agent, lead_service, qualification, limiter, driver_lock, store, stats, notifier, pacer, clock):
    return {
        "surfaces": surfaces,
        "agent": agent,
        "leads": lead_service,
        "qualification": qualification,
        "limiter": limiter,
        "driver_lock": driver_lock,
        "store": store,
        "stats": stats,
        "notifier": notifier,
        "pacer": pacer,
        "clock": clock,
    }


def notification_titles(feed: ProgressFeed) -> List[str]:
    return [e.data.get("title") for e in feed.recent(limit=0, source="notification")]


def notification_messages(feed: ProgressFeed) -> List[str]:
    return [e.message for e in feed.recent(limit=0, source="notification")]


def instagram_deep() -> DeepNavigatorConfig:
    return DeepNavigatorConfig(platform="instagram")


def discovery_config(**overrides: Any) -> DiscoveryConfig:
    return DiscoveryConfig(**overrides)
