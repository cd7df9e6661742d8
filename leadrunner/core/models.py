#!/usr/bin/env python3
"""
Unified Data Models for Leadrunner

All shared data models are defined here to ensure consistency across the codebase.
Upstream payloads use camelCase keys; persisted records use the same keys so a
state snapshot can be inspected next to the API data it came from.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# ============== Enums ==============

class ActionType(str, Enum):
    """Steps an automation job can run against a lead."""
    CONNECTION_REQUEST = "connection_request"
    SEND_MESSAGE = "send_message"
    MOVE_PIPELINE_STAGE = "move_pipeline_stage"


class JobStatus(str, Enum):
    """Remote job status values."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class TerminalStatus(str, Enum):
    """How a locally executed job ended."""
    SUCCESS = "success"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def remote_status(self) -> JobStatus:
        return JobStatus.SUCCESS if self is TerminalStatus.SUCCESS else JobStatus.FAILED


class LogStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    ERROR = "error"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============== Data Models ==============

@dataclass
class Lead:
    """A prospect as handed over by the job source."""
    id: Optional[str]
    profile_url: Optional[str]
    full_name: Optional[str] = None
    username: Optional[str] = None
    headline: Optional[str] = None
    avatar_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.full_name or self.username or "Unknown"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Lead":
        return cls(
            id=data.get("id"),
            profile_url=data.get("profileUrl"),
            full_name=data.get("fullName"),
            username=data.get("username"),
            headline=data.get("headline") or data.get("bio") or data.get("position"),
            avatar_url=data.get("avatarUrl"),
            raw=dict(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.raw)
        data.update({
            "id": self.id,
            "profileUrl": self.profile_url,
            "fullName": self.full_name,
            "username": self.username,
            "headline": self.headline,
            "avatarUrl": self.avatar_url,
        })
        return data


@dataclass
class AutomationAction:
    type: str
    config: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutomationAction":
        return cls(type=str(data.get("type") or ""), config=dict(data.get("config") or {}))

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "config": dict(self.config)}


def parse_interval(value: Any, default: Tuple[float, float]) -> Tuple[float, float]:
    """
    Resolve a job interval into (min, max) seconds.

    Accepts ``{"min": 60, "max": 90}``, ``"60-90"`` or a two-item sequence; anything
    unparseable falls back to ``default``.
    """
    low = high = None
    try:
        if isinstance(value, dict):
            low, high = float(value["min"]), float(value["max"])
        elif isinstance(value, str):
            parts = value.split("-")
            if len(parts) == 2:
                low, high = float(parts[0]), float(parts[1])
        elif isinstance(value, (list, tuple)) and len(value) == 2:
            low, high = float(value[0]), float(value[1])
    except (KeyError, TypeError, ValueError):
        low = high = None

    if low is None or high is None or low < 0:
        return default
    if high < low:
        low, high = high, low
    return low, high


@dataclass
class AutomationJob:
    """Remote-originated unit of work."""
    id: str
    leads: List[Lead]
    actions: List[AutomationAction]
    interval_min: float
    interval_max: float
    status: str = JobStatus.QUEUED.value

    @classmethod
    def from_api(cls, data: Dict[str, Any], default_interval: Tuple[float, float] = (60.0, 90.0)) -> "AutomationJob":
        result = data.get("result") or {}
        job_config = result.get("config") or {}
        leads = data.get("leads", result.get("leadsToProcess")) or []
        actions = data.get("actions", result.get("actions")) or []
        interval = data.get("intervalRange") or job_config.get("intervalRange") or job_config.get("interval")
        low, high = parse_interval(interval, default_interval)
        return cls(
            id=str(data["id"]),
            leads=[Lead.from_dict(item) for item in leads if isinstance(item, dict)],
            actions=[AutomationAction.from_dict(item) for item in actions if isinstance(item, dict)],
            interval_min=low,
            interval_max=high,
            status=str(data.get("status") or JobStatus.QUEUED.value),
        )


@dataclass
class ActionLog:
    """Outcome of one action (or of a failed lead) inside a job."""
    lead_id: Optional[str]
    lead_name: Optional[str]
    status: str
    action: Optional[str] = None
    error: Optional[str] = None
    time: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "leadId": self.lead_id,
            "leadName": self.lead_name,
            "status": self.status,
            "time": self.time,
        }
        if self.action:
            data["action"] = self.action
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionLog":
        return cls(
            lead_id=data.get("leadId"),
            lead_name=data.get("leadName"),
            status=data.get("status", LogStatus.ERROR.value),
            action=data.get("action"),
            error=data.get("error"),
            time=data.get("time") or utcnow_iso(),
        )


@dataclass
class ExecutorState:
    """Persisted snapshot of the job an executor is running."""
    job_id: str
    leads: List[Lead]
    actions: List[AutomationAction]
    min_delay: float
    max_delay: float
    status: str = "RUNNING"
    current_index: int = 0
    current_lead: Optional[Lead] = None
    surface_id: Optional[str] = None
    container_id: Optional[str] = None
    logs: List[ActionLog] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.current_index >= len(self.leads)

    def advance(self) -> None:
        if self.current_index < len(self.leads):
            self.current_index += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "status": self.status,
            "leads": [lead.to_dict() for lead in self.leads],
            "actions": [action.to_dict() for action in self.actions],
            "currentIndex": self.current_index,
            "currentLead": self.current_lead.to_dict() if self.current_lead else None,
            "surfaceId": self.surface_id,
            "containerId": self.container_id,
            "minDelay": self.min_delay,
            "maxDelay": self.max_delay,
            "logs": [entry.to_dict() for entry in self.logs],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutorState":
        leads = [Lead.from_dict(item) for item in data.get("leads") or []]
        index = int(data.get("currentIndex") or 0)
        current = data.get("currentLead")
        return cls(
            job_id=str(data["jobId"]),
            status=data.get("status", "RUNNING"),
            leads=leads,
            actions=[AutomationAction.from_dict(item) for item in data.get("actions") or []],
            current_index=max(0, min(index, len(leads))),
            current_lead=Lead.from_dict(current) if current else None,
            surface_id=data.get("surfaceId"),
            container_id=data.get("containerId"),
            min_delay=float(data.get("minDelay", 60.0)),
            max_delay=float(data.get("maxDelay", 90.0)),
            logs=[ActionLog.from_dict(item) for item in data.get("logs") or []],
        )


@dataclass
class Analysis:
    """Qualification service verdict for one profile."""
    score: Optional[float]
    qualified: bool
    reason: str = ""

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> Optional["Analysis"]:
        if not data:
            return None
        score = data.get("score")
        return cls(
            score=float(score) if score is not None else None,
            qualified=bool(data.get("qualified", False)),
            reason=str(data.get("reason") or ""),
        )


@dataclass
class AgentResponse:
    """Reply of the page-embedded agent."""
    success: bool
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "AgentResponse":
        if not isinstance(raw, dict):
            return cls(success=False, error="No response from page agent")
        return cls(
            success=raw.get("success") is not False,
            data=raw.get("data"),
            error=raw.get("error"),
        )
