"""
Error taxonomy, categorization and retry helpers.

Transient network failures are retried at the HTTP boundary; everything else is
classified so callers can decide between retrying, skipping the current lead or
aborting the job.
"""

import asyncio
import logging
import random
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LeadrunnerError(Exception):
    """Base class for all errors raised by leadrunner."""


class TransientNetworkError(LeadrunnerError):
    """Connection failure, timeout, 5xx or 429 from an upstream service."""


class ApiError(LeadrunnerError):
    """Upstream answered with a non-retryable error status."""

    def __init__(self, status: int, message: str):
        super().__init__(f"API error {status}: {message}")
        self.status = status
        self.message = message


class Unauthenticated(LeadrunnerError):
    """No valid session; the operation must abort and the user log in again."""


class RefreshFailed(LeadrunnerError):
    """The renewal credential was rejected or the refresh call failed."""


class ClaimConflict(LeadrunnerError):
    """The upstream job source refused to hand over the job."""


class SurfaceError(LeadrunnerError):
    """A rendering surface could not be opened or navigated."""


class SurfaceLost(SurfaceError):
    """The rendering surface or its container was closed externally."""


class AgentError(LeadrunnerError):
    """The page-embedded agent failed or answered with an error."""


class ActionError(LeadrunnerError):
    """An automation action cannot be carried out for this lead."""


class DriverBusy(LeadrunnerError):
    """Another component currently drives the rendering surfaces."""


class InvalidTransition(LeadrunnerError):
    """A state machine received an event it does not accept in its phase."""


class ConfigError(LeadrunnerError):
    """Configuration is missing or inconsistent."""


class ErrorCategory(str, Enum):
    NETWORK = "network"
    AUTH = "auth"
    CLAIM = "claim"
    SURFACE = "surface"
    ACTION = "action"
    BUSY = "busy"
    FATAL = "fatal"


# Actions
RETRY = 'RETRY'
SKIP = 'SKIP'
ABORT = 'ABORT'


def categorize(error: BaseException) -> ErrorCategory:
    if isinstance(error, (TransientNetworkError, ConnectionError, asyncio.TimeoutError)):
        return ErrorCategory.NETWORK
    if isinstance(error, (Unauthenticated, RefreshFailed)):
        return ErrorCategory.AUTH
    if isinstance(error, ClaimConflict):
        return ErrorCategory.CLAIM
    if isinstance(error, SurfaceError):
        return ErrorCategory.SURFACE
    if isinstance(error, (ActionError, AgentError, ApiError)):
        return ErrorCategory.ACTION
    if isinstance(error, DriverBusy):
        return ErrorCategory.BUSY
    return ErrorCategory.FATAL


def action_for(category: ErrorCategory) -> str:
    """Map an error category to what the caller should do about it."""
    if category == ErrorCategory.NETWORK:
        return RETRY
    if category in (ErrorCategory.ACTION, ErrorCategory.SURFACE):
        return SKIP
    return ABORT


def compute_backoff(attempt_number: int, base: float, cap: float, rng: Optional[random.Random] = None) -> float:
    """Exponential backoff with bounded jitter; attempt_number starts at 1."""
    rng = rng or random
    exp = min(cap, base * (2 ** max(0, attempt_number - 1)))
    jitter = rng.uniform(0, min(30.0, exp * 0.15))
    return float(min(cap, exp + jitter))


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    max_delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (TransientNetworkError,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "operation",
) -> T:
    """Run ``fn`` until it succeeds, retrying only the listed exception types."""
    attempt = 1
    while True:
        try:
            return await fn()
        except retry_on as e:
            if attempt >= attempts:
                raise
            delay = compute_backoff(attempt, base_delay, max_delay)
            logger.warning(f"{description} failed ({e}); retry {attempt}/{attempts - 1} in {delay:.1f}s")
            await sleep(delay)
            attempt += 1
