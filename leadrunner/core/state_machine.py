"""
Explicit state machines for automation jobs and the discovery navigator.

``transition()`` is pure: it returns the next phase and the ordered side
effects the executor has to apply, so the lifecycle can be tested without a
browser or an API.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Tuple

from .error_handler import InvalidTransition
from .models import TerminalStatus


class JobPhase(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset({JobPhase.COMPLETED, JobPhase.CANCELLED, JobPhase.FAILED})


class LeadPhase(str, Enum):
    """Sub-states of RUNNING, per lead."""
    OPENING_SURFACE = "OPENING_SURFACE"
    AWAITING_LOAD = "AWAITING_LOAD"
    RUNNING_ACTIONS = "RUNNING_ACTIONS"
    INTERVAL_WAIT = "INTERVAL_WAIT"


class JobEvent(str, Enum):
    CLAIMED = "claimed"
    RESTORED = "restored"
    ALL_LEADS_DONE = "all_leads_done"
    STOP_REQUESTED = "stop_requested"
    SURFACE_LOST = "surface_lost"
    FATAL_ERROR = "fatal_error"


class Effect(str, Enum):
    PERSIST_STATE = "persist_state"
    MARK_FINISHED = "mark_finished"
    DELETE_STATE = "delete_state"
    RELEASE_SURFACE = "release_surface"
    REPORT_UPSTREAM = "report_upstream"
    NOTIFY = "notify"


# The finished id must be recorded before the state is deleted
FINALIZE_EFFECTS: Tuple[Effect, ...] = (
    Effect.MARK_FINISHED,
    Effect.DELETE_STATE,
    Effect.RELEASE_SURFACE,
    Effect.REPORT_UPSTREAM,
    Effect.NOTIFY,
)


@dataclass(frozen=True)
class Transition:
    phase: JobPhase
    effects: Tuple[Effect, ...] = ()


_JOB_TRANSITIONS: Dict[Tuple[JobPhase, JobEvent], Transition] = {
    (JobPhase.IDLE, JobEvent.CLAIMED): Transition(JobPhase.RUNNING, (Effect.PERSIST_STATE, Effect.NOTIFY)),
    (JobPhase.IDLE, JobEvent.RESTORED): Transition(JobPhase.RUNNING),
    (JobPhase.RUNNING, JobEvent.ALL_LEADS_DONE): Transition(JobPhase.COMPLETED, FINALIZE_EFFECTS),
    (JobPhase.RUNNING, JobEvent.STOP_REQUESTED): Transition(JobPhase.CANCELLED, FINALIZE_EFFECTS),
    (JobPhase.RUNNING, JobEvent.SURFACE_LOST): Transition(JobPhase.CANCELLED, FINALIZE_EFFECTS),
    (JobPhase.RUNNING, JobEvent.FATAL_ERROR): Transition(JobPhase.FAILED, FINALIZE_EFFECTS),
}

_TERMINAL_STATUS = {
    JobPhase.COMPLETED: TerminalStatus.SUCCESS,
    JobPhase.CANCELLED: TerminalStatus.CANCELLED,
    JobPhase.FAILED: TerminalStatus.FAILED,
}


def transition(phase: JobPhase, event: JobEvent) -> Transition:
    """Next phase and side effects for ``event``; terminal phases accept nothing."""
    try:
        return _JOB_TRANSITIONS[(phase, event)]
    except KeyError:
        raise InvalidTransition(f"Job in phase {phase.value} does not accept {event.value}") from None


def terminal_status(phase: JobPhase) -> TerminalStatus:
    if phase not in _TERMINAL_STATUS:
        raise InvalidTransition(f"{phase.value} is not a terminal phase")
    return _TERMINAL_STATUS[phase]


def event_for(status: TerminalStatus) -> JobEvent:
    return {
        TerminalStatus.SUCCESS: JobEvent.ALL_LEADS_DONE,
        TerminalStatus.CANCELLED: JobEvent.STOP_REQUESTED,
        TerminalStatus.FAILED: JobEvent.FATAL_ERROR,
    }[status]


# ============== Per-lead sub-machine ==============

_LEAD_ORDER = (
    LeadPhase.OPENING_SURFACE,
    LeadPhase.AWAITING_LOAD,
    LeadPhase.RUNNING_ACTIONS,
    LeadPhase.INTERVAL_WAIT,
)


def next_lead_phase(phase: LeadPhase) -> LeadPhase:
    """OPENING_SURFACE -> AWAITING_LOAD -> RUNNING_ACTIONS -> INTERVAL_WAIT -> next lead."""
    index = _LEAD_ORDER.index(phase)
    return _LEAD_ORDER[(index + 1) % len(_LEAD_ORDER)]


# ============== Discovery navigator ==============

class DiscoveryStatus(str, Enum):
    IDLE = "IDLE"
    NAVIGATING_TO_SEARCH = "NAVIGATING_TO_SEARCH"
    COLLECTING_POSTS = "COLLECTING_POSTS"
    VISITING_PROFILE = "VISITING_PROFILE"
    EXTRACTING_DATA = "EXTRACTING_DATA"
    ANALYZING_LEAD = "ANALYZING_LEAD"
    NEXT_KEYWORD = "NEXT_KEYWORD"
    STOPPED = "STOPPED"

    @property
    def is_active(self) -> bool:
        return self not in (DiscoveryStatus.IDLE, DiscoveryStatus.STOPPED)


_D = DiscoveryStatus

DISCOVERY_TRANSITIONS: Dict[DiscoveryStatus, FrozenSet[DiscoveryStatus]] = {
    _D.IDLE: frozenset({_D.NAVIGATING_TO_SEARCH, _D.STOPPED}),
    _D.NAVIGATING_TO_SEARCH: frozenset({_D.COLLECTING_POSTS, _D.STOPPED}),
    _D.COLLECTING_POSTS: frozenset({_D.VISITING_PROFILE, _D.NEXT_KEYWORD, _D.STOPPED}),
    _D.VISITING_PROFILE: frozenset({_D.EXTRACTING_DATA, _D.STOPPED}),
    _D.EXTRACTING_DATA: frozenset({_D.ANALYZING_LEAD, _D.VISITING_PROFILE, _D.NEXT_KEYWORD, _D.STOPPED}),
    _D.ANALYZING_LEAD: frozenset({_D.VISITING_PROFILE, _D.NEXT_KEYWORD, _D.STOPPED}),
    _D.NEXT_KEYWORD: frozenset({_D.NAVIGATING_TO_SEARCH, _D.STOPPED}),
    _D.STOPPED: frozenset({_D.NAVIGATING_TO_SEARCH, _D.IDLE}),
}


def check_discovery_transition(current: DiscoveryStatus, target: DiscoveryStatus) -> DiscoveryStatus:
    if target not in DISCOVERY_TRANSITIONS[current]:
        raise InvalidTransition(f"Discovery cannot go from {current.value} to {target.value}")
    return target
