"""Domain models for agent bookkeeping and coordinator ticks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AgentStatus(str, Enum):
    """Liveness of a registered agent process."""

    ALIVE = "alive"
    DEAD = "dead"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class AgentCreate:
    """Input payload for registering a freshly spawned agent."""

    agent_id: str
    pid: int
    task_id: str
    executor: str
    model: str | None = None
    output_path: str | None = None


@dataclass(slots=True)
class AgentRecord:
    """Readable agent view for the coordinator and status tooling."""

    agent_id: str
    pid: int
    task_id: str
    executor: str
    model: str | None
    status: AgentStatus
    started_at: datetime
    last_heartbeat: datetime
    output_path: str | None = None
    finished_at: datetime | None = None
    exit_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.agent_id,
            "pid": self.pid,
            "task_id": self.task_id,
            "executor": self.executor,
            "model": self.model,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "last_heartbeat": self.last_heartbeat.isoformat(),
            "output_path": self.output_path,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "exit_reason": self.exit_reason,
        }


@dataclass(slots=True)
class DispatchResult:
    """Outcome of dispatching one task."""

    task_id: str
    agent_id: str
    pid: int
    executor: str
    model: str | None
    output_path: str


@dataclass(slots=True)
class TickResult:
    """Summary of one coordinator tick."""

    reaped: int = 0
    dead_agents: list[str] = field(default_factory=list)
    unknown_agents: list[str] = field(default_factory=list)
    recovered: dict[str, str] = field(default_factory=dict)
    alive: int = 0
    ready: list[str] = field(default_factory=list)
    dispatched: list[DispatchResult] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    at_capacity: bool = False
    graph_complete: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "reaped": self.reaped,
            "dead_agents": list(self.dead_agents),
            "unknown_agents": list(self.unknown_agents),
            "recovered": dict(self.recovered),
            "alive": self.alive,
            "ready": list(self.ready),
            "dispatched": [
                {"task_id": item.task_id, "agent_id": item.agent_id, "pid": item.pid}
                for item in self.dispatched
            ],
            "skipped": dict(self.skipped),
            "at_capacity": self.at_capacity,
            "graph_complete": self.graph_complete,
        }
