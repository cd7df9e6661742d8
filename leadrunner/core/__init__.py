"""
Core components of the automation orchestrator.

Modules:
- state_store: Durable key/value store, finished-job set, driver lock
- rate_limiter: Rolling hourly windows per platform
- state_machine: Job and discovery lifecycles
- executor: Runs one claimed job across its leads
- poller: Hands pending jobs to the executor
- lead_navigator / deep_navigator: Lead discovery and deep profile import
- enricher: Profile counters and contact fields for existing leads
- orchestrator: Ties everything together
"""

from .error_handler import LeadrunnerError, ErrorCategory
from .models import AutomationJob, ExecutorState, Lead, TerminalStatus
from .rate_limiter import RateLimiter
from .state_machine import JobPhase, LeadPhase, transition
from .state_store import DriverLock, FinishedJobIds, StateStore

__all__ = [
    "LeadrunnerError",
    "ErrorCategory",
    "AutomationJob",
    "ExecutorState",
    "Lead",
    "TerminalStatus",
    "RateLimiter",
    "JobPhase",
    "LeadPhase",
    "transition",
    "DriverLock",
    "FinishedJobIds",
    "StateStore",
]
