"""
Orbit data model.
Agents, triggers, events and the result records produced by runs and delegations.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _parse_dt(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ============================================================================
# AGENTS
# ============================================================================

@dataclass
class Schedule:
    """Run policy of an agent. Interval wins over cron when both are set."""
    enabled: bool = False
    interval_minutes: Optional[int] = None
    cron: Optional[str] = None

    def governing(self) -> Optional[Tuple[str, Any]]:
        if self.interval_minutes:
            return ("every", int(self.interval_minutes) * 60_000)
        if self.cron:
            return ("cron", self.cron)
        return None

    def to_dict(self) -> Dict:
        return {
            "enabled": self.enabled,
            "intervalMinutes": self.interval_minutes,
            "cron": self.cron,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "Schedule":
        if not data:
            return cls()
        interval = data.get("intervalMinutes", data.get("interval_minutes"))
        return cls(
            enabled=bool(data.get("enabled", False)),
            interval_minutes=int(interval) if interval else None,
            cron=data.get("cron") or None,
        )


@dataclass
class LogEntry:
    message: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict:
        return {"message": self.message, "timestamp": _iso(self.timestamp)}


@dataclass
class Agent:
    """A configured autonomous unit owned by exactly one user."""
    owner_id: str
    name: str
    id: str = field(default_factory=new_id)
    description: str = ""
    system_prompt: str = ""
    model: Optional[str] = None
    tools: List[str] = field(default_factory=list)
    integrations: List[str] = field(default_factory=list)
    schedule: Schedule = field(default_factory=Schedule)
    logs: List[LogEntry] = field(default_factory=list)
    last_run_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def allows_all_tools(self) -> bool:
        return not self.tools or "*" in self.tools

    def append_log(self, message: str) -> LogEntry:
        entry = LogEntry(message=message)
        self.logs.append(entry)
        return entry

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "name": self.name,
            "description": self.description,
            "systemPrompt": self.system_prompt,
            "model": self.model,
            "tools": list(self.tools),
            "integrations": list(self.integrations),
            "schedule": self.schedule.to_dict(),
            "logs": [entry.to_dict() for entry in self.logs],
            "lastRunAt": _iso(self.last_run_at),
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Agent":
        return cls(
            id=data["id"],
            owner_id=data["ownerId"],
            name=data["name"],
            description=data.get("description") or "",
            system_prompt=data.get("systemPrompt") or "",
            model=data.get("model") or None,
            tools=list(data.get("tools") or []),
            integrations=list(data.get("integrations") or []),
            schedule=Schedule.from_dict(data.get("schedule")),
            logs=[
                LogEntry(message=e["message"], timestamp=_parse_dt(e.get("timestamp")) or utcnow())
                for e in data.get("logs") or []
            ],
            last_run_at=_parse_dt(data.get("lastRunAt")),
            created_at=_parse_dt(data.get("createdAt")) or utcnow(),
        )


@dataclass
class User:
    id: str
    email: Optional[str] = None
    name: str = ""
    # integration name -> token payload
    integrations: Dict[str, Dict] = field(default_factory=dict)

    def has_integration(self, name: str) -> bool:
        return bool(self.integrations.get(name))

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "User":
        return cls(**data)


# ============================================================================
# TRIGGERS & EVENTS
# ============================================================================

class TriggerType(str, Enum):
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    INTEGRATION_EVENT = "integration_event"
    MANUAL = "manual"


@dataclass
class Trigger:
    """Binds an agent to an activating condition."""
    agent_id: str
    owner_id: str
    type: TriggerType
    id: str = field(default_factory=new_id)
    # webhookPath | pattern | cron, depending on type
    config: Dict[str, Any] = field(default_factory=dict)
    conditions: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    last_triggered_at: Optional[datetime] = None

    @property
    def webhook_path(self) -> Optional[str]:
        return self.config.get("webhookPath")

    @property
    def pattern(self) -> Optional[str]:
        return self.config.get("pattern")

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "agentId": self.agent_id,
            "ownerId": self.owner_id,
            "type": self.type.value,
            "config": dict(self.config),
            "conditions": dict(self.conditions),
            "enabled": self.enabled,
            "lastTriggeredAt": _iso(self.last_triggered_at),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Trigger":
        return cls(
            id=data["id"],
            agent_id=data["agentId"],
            owner_id=data["ownerId"],
            type=TriggerType(data["type"]),
            config=dict(data.get("config") or {}),
            conditions=dict(data.get("conditions") or {}),
            enabled=bool(data.get("enabled", True)),
            last_triggered_at=_parse_dt(data.get("lastTriggeredAt")),
        )


@dataclass
class Event:
    """Ephemeral input to the trigger engine. Never persisted."""
    type: str
    source: str
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.source}.{self.event}"


@dataclass
class TriggerMatch:
    agent_id: str
    owner_id: str
    trigger: Trigger


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class RunResult:
    """Outcome of one supervised agent run."""
    reply: Optional[str] = None
    decision: Any = None
    error: Optional[str] = None
    email_sent: bool = False
    data_collected: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.error is None

    def schedule_directive(self) -> Optional[Dict]:
        """Self-scheduling request carried by the result, if any."""
        for candidate in (self.raw.get("result"), self.raw):
            if isinstance(candidate, dict):
                schedule = candidate.get("schedule")
                if isinstance(schedule, dict) and schedule.get("enabled"):
                    return schedule
        return None

    def to_dict(self) -> Dict:
        from .decision import decision_to_dict
        data = {}
        if self.reply is not None:
            data["reply"] = self.reply
        if self.decision is not None:
            data["decision"] = decision_to_dict(self.decision)
        if self.error is not None:
            data["error"] = self.error
        if self.email_sent:
            data["emailSent"] = True
        if self.data_collected:
            data["dataCollected"] = True
        data.update({k: v for k, v in self.raw.items() if k not in data})
        return data


class DelegationStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class ReportStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class DelegationResult:
    agent_id: str
    agent_name: str
    status: DelegationStatus
    result: Any = None
    error: Optional[str] = None
    execution_time_ms: int = 0

    def to_dict(self) -> Dict:
        data = {
            "agentId": self.agent_id,
            "agentName": self.agent_name,
            "status": self.status.value,
            "executionTime": self.execution_time_ms,
        }
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class DelegationReport:
    status: ReportStatus
    results: List[DelegationResult]
    summary: str
    total_time_ms: int = 0

    def to_dict(self) -> Dict:
        return {
            "status": self.status.value,
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary,
            "totalTime": self.total_time_ms,
        }
