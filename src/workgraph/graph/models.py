"""Domain models for the work graph: tasks, loop edges and the node table."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from workgraph.errors import TaskNotFoundError


class Status(str, Enum):
    """Task lifecycle states."""

    OPEN = "open"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    BLOCKED = "blocked"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @classmethod
    def parse(cls, value: str) -> Status:
        """Parse serialized status, accepting legacy aliases."""

        normalized = value.strip().lower().replace("_", "-")
        if normalized == "pending-review":
            return cls.DONE
        try:
            return cls(normalized)
        except ValueError as error:
            allowed = ", ".join(status.value for status in cls)
            raise ValueError(f"Unknown task status {value!r}; expected one of: {allowed}") from error


TERMINAL_STATUSES = frozenset({Status.DONE, Status.FAILED, Status.ABANDONED})


class GuardKind(str, Enum):
    """Loop guard variants."""

    ALWAYS = "always"
    TASK_STATUS = "task_status"
    ITERATION_LESS_THAN = "iteration_less_than"


@dataclass(slots=True, frozen=True)
class LoopGuard:
    """Condition gating whether a loop edge fires."""

    kind: GuardKind = GuardKind.ALWAYS
    task: str | None = None
    status: Status | None = None
    threshold: int | None = None

    @classmethod
    def always(cls) -> LoopGuard:
        return cls(kind=GuardKind.ALWAYS)

    @classmethod
    def task_status(cls, task: str, status: Status) -> LoopGuard:
        return cls(kind=GuardKind.TASK_STATUS, task=task, status=status)

    @classmethod
    def iteration_less_than(cls, threshold: int) -> LoopGuard:
        return cls(kind=GuardKind.ITERATION_LESS_THAN, threshold=threshold)

    def to_dict(self) -> dict[str, Any]:
        if self.kind == GuardKind.TASK_STATUS:
            return {
                "kind": self.kind.value,
                "task": self.task,
                "status": self.status.value if self.status else None,
            }
        if self.kind == GuardKind.ITERATION_LESS_THAN:
            return {"kind": self.kind.value, "threshold": self.threshold}
        return {"kind": self.kind.value}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LoopGuard:
        kind = GuardKind(str(raw.get("kind", GuardKind.ALWAYS.value)))
        if kind == GuardKind.TASK_STATUS:
            task = raw.get("task")
            status = raw.get("status")
            if not isinstance(task, str) or not isinstance(status, str):
                raise ValueError("task_status guard requires 'task' and 'status' strings")
            return cls.task_status(task, Status.parse(status))
        if kind == GuardKind.ITERATION_LESS_THAN:
            threshold = raw.get("threshold")
            if not isinstance(threshold, int) or isinstance(threshold, bool):
                raise ValueError("iteration_less_than guard requires integer 'threshold'")
            return cls.iteration_less_than(threshold)
        return cls.always()


@dataclass(slots=True)
class LoopEdge:
    """Conditional, bounded backward edge that reopens an upstream task."""

    target: str
    max_iterations: int
    guard: LoopGuard = field(default_factory=LoopGuard.always)
    delay: str | None = None

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError(
                f"Loop edge to {self.target!r} must have max_iterations >= 1, "
                f"got {self.max_iterations}",
            )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "target": self.target,
            "max_iterations": self.max_iterations,
        }
        if self.guard.kind != GuardKind.ALWAYS:
            payload["guard"] = self.guard.to_dict()
        if self.delay is not None:
            payload["delay"] = self.delay
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LoopEdge:
        target = raw.get("target")
        max_iterations = raw.get("max_iterations")
        if not isinstance(target, str) or not target:
            raise ValueError("loop edge 'target' must be a non-empty string")
        if not isinstance(max_iterations, int) or isinstance(max_iterations, bool):
            raise ValueError("loop edge 'max_iterations' must be an integer")
        guard_raw = raw.get("guard")
        guard = LoopGuard.from_dict(guard_raw) if isinstance(guard_raw, dict) else LoopGuard()
        delay = raw.get("delay")
        return cls(
            target=target,
            max_iterations=max_iterations,
            guard=guard,
            delay=str(delay) if delay is not None else None,
        )


@dataclass(slots=True)
class LogEntry:
    """One line of a task's audit trail."""

    timestamp: str
    message: str
    actor: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"timestamp": self.timestamp, "message": self.message}
        if self.actor is not None:
            payload["actor"] = self.actor
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LogEntry:
        actor = raw.get("actor")
        return cls(
            timestamp=str(raw.get("timestamp", "")),
            message=str(raw.get("message", "")),
            actor=str(actor) if actor is not None else None,
        )


_LIST_FIELDS = (
    "blocked_by",
    "blocks",
    "tags",
    "skills",
    "inputs",
    "deliverables",
    "artifacts",
)
_OPTIONAL_STR_FIELDS = (
    "description",
    "assigned",
    "worker",
    "exec",
    "model",
    "verify",
    "not_before",
    "ready_after",
    "created_at",
    "started_at",
    "completed_at",
    "failure_reason",
)
_KNOWN_FIELDS = frozenset(
    {
        "id",
        "kind",
        "title",
        "status",
        "paused",
        "loops_to",
        "loop_iteration",
        "log",
        "retry_count",
        "max_retries",
        *_LIST_FIELDS,
        *_OPTIONAL_STR_FIELDS,
    },
)


@dataclass(slots=True)
class Task:
    """Graph node with a lifecycle status.

    ``assigned`` names whoever holds the claim (an agent id or an operator);
    ``worker`` is the identity binding that decides how the task is executed.

    ``blocked_by`` is authoritative for forward ordering; ``blocks`` is a derived
    inverse kept for readers and rebuilt by analysis tooling.
    """

    id: str
    title: str = ""
    description: str | None = None
    status: Status = Status.OPEN
    paused: bool = False
    assigned: str | None = None
    worker: str | None = None
    blocked_by: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    loops_to: list[LoopEdge] = field(default_factory=list)
    loop_iteration: int = 0
    not_before: str | None = None
    ready_after: str | None = None
    exec: str | None = None
    model: str | None = None
    verify: str | None = None
    tags: list[str] = field(default_factory=list)
    skills: list[str] = field(default_factory=list)
    inputs: list[str] = field(default_factory=list)
    deliverables: list[str] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    log: list[LogEntry] = field(default_factory=list)
    retry_count: int = 0
    max_retries: int | None = None
    failure_reason: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def add_log(self, message: str, *, actor: str | None = None) -> None:
        self.log.append(LogEntry(timestamp=now_iso(), message=message, actor=actor))

    def to_dict(self) -> dict[str, Any]:
        """Serialize as one self-contained graph record."""

        payload: dict[str, Any] = dict(self.extra)
        payload["kind"] = "task"
        payload["id"] = self.id
        payload["title"] = self.title
        payload["status"] = self.status.value
        if self.paused:
            payload["paused"] = True
        for name in _OPTIONAL_STR_FIELDS:
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        for name in _LIST_FIELDS:
            value = getattr(self, name)
            if value:
                payload[name] = list(value)
        if self.loops_to:
            payload["loops_to"] = [edge.to_dict() for edge in self.loops_to]
        if self.loop_iteration:
            payload["loop_iteration"] = self.loop_iteration
        if self.log:
            payload["log"] = [entry.to_dict() for entry in self.log]
        if self.retry_count:
            payload["retry_count"] = self.retry_count
        if self.max_retries is not None:
            payload["max_retries"] = self.max_retries
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Task:
        task_id = raw.get("id")
        if not isinstance(task_id, str) or not task_id.strip():
            raise ValueError("task record requires a non-empty string 'id'")

        values: dict[str, Any] = {}
        for name in _OPTIONAL_STR_FIELDS:
            value = raw.get(name)
            values[name] = str(value) if value is not None else None
        for name in _LIST_FIELDS:
            value = raw.get(name, [])
            if not isinstance(value, list):
                raise TypeError(f"task {task_id!r}: field {name!r} must be a list")
            values[name] = _dedupe([str(item) for item in value])

        loops_raw = raw.get("loops_to", [])
        if not isinstance(loops_raw, list):
            raise TypeError(f"task {task_id!r}: field 'loops_to' must be a list")
        log_raw = raw.get("log", [])
        if not isinstance(log_raw, list):
            raise TypeError(f"task {task_id!r}: field 'log' must be a list")
        paused = raw.get("paused", False)
        if not isinstance(paused, bool):
            raise TypeError(f"task {task_id!r}: field 'paused' must be true or false")
        max_retries = raw.get("max_retries")

        return cls(
            id=task_id,
            title=str(raw.get("title", "")),
            status=Status.parse(str(raw.get("status", Status.OPEN.value))),
            paused=paused,
            loops_to=[LoopEdge.from_dict(item) for item in loops_raw if isinstance(item, dict)],
            loop_iteration=max(0, int(raw.get("loop_iteration", 0) or 0)),
            log=[LogEntry.from_dict(item) for item in log_raw if isinstance(item, dict)],
            retry_count=max(0, int(raw.get("retry_count", 0) or 0)),
            max_retries=int(max_retries) if max_retries is not None else None,
            extra={key: value for key, value in raw.items() if key not in _KNOWN_FIELDS},
            **values,
        )


class WorkGraph:
    """Index-addressed node table; edges are identifier lists on each task."""

    def __init__(self, tasks: list[Task] | None = None) -> None:
        self._tasks: dict[str, Task] = {}
        for task in tasks or []:
            self.add_task(task)

    def add_task(self, task: Task) -> None:
        self._tasks[task.id] = task

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def require_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def tasks(self) -> Iterator[Task]:
        return iter(self._tasks.values())

    def task_ids(self) -> list[str]:
        return list(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)


def now_iso() -> str:
    """Current UTC timestamp as RFC 3339 text."""

    return datetime.now(tz=UTC).isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse RFC 3339 text; ``None`` for missing or malformed values."""

    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered
