"""Runtime configuration for the graph coordinator and its agents."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from workgraph.graph.loops import LoopPolicy
from workgraph.graph.models import Status

DEFAULT_GRAPH_DIR = ".workgraph"
SUPPORTED_EXECUTORS = ("claude", "shell", "echo")


@dataclass(slots=True)
class CoordinatorSettings:
    """Scheduling loop settings."""

    max_agents: int = 4
    poll_interval_seconds: float = 60.0
    executor: str = "claude"
    model: str | None = None
    heartbeat_timeout_seconds: int = 0
    loop_trigger_statuses: tuple[Status, ...] = (Status.DONE,)
    auto_assign: bool = False

    def loop_policy(self) -> LoopPolicy:
        return LoopPolicy(trigger_statuses=frozenset(self.loop_trigger_statuses))


@dataclass(slots=True)
class AgentSettings:
    """Agent process and registry settings."""

    registry_busy_timeout_ms: int = 5_000
    kill_grace_seconds: float = 5.0


@dataclass(slots=True)
class TriageSettings:
    """Dead-agent classification settings."""

    enabled: bool = False
    command: str | None = None
    timeout_seconds: float = 30.0
    max_log_bytes: int = 50_000
    max_retries: int = 3


@dataclass(slots=True)
class ExecutorSettings:
    """Command templates per executor kind."""

    claude_command_template: str = (
        "claude --print --dangerously-skip-permissions --model {model} {prompt}"
    )
    default_claude_model: str = "sonnet"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    graph_dir: Path = Path(DEFAULT_GRAPH_DIR)
    coordinator: CoordinatorSettings = field(default_factory=CoordinatorSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    triage: TriageSettings = field(default_factory=TriageSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)

    @classmethod
    def from_env(cls, graph_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        triage_command = os.getenv("WORKGRAPH_TRIAGE_COMMAND", "").strip()
        model = os.getenv("WORKGRAPH_MODEL", "").strip()
        return cls(
            graph_dir=graph_dir or Path(os.getenv("WORKGRAPH_DIR", DEFAULT_GRAPH_DIR)),
            coordinator=CoordinatorSettings(
                max_agents=int(os.getenv("WORKGRAPH_MAX_AGENTS", "4")),
                poll_interval_seconds=float(os.getenv("WORKGRAPH_POLL_INTERVAL_SECONDS", "60")),
                executor=os.getenv("WORKGRAPH_EXECUTOR", "claude").strip().lower(),
                model=model or None,
                heartbeat_timeout_seconds=int(
                    os.getenv("WORKGRAPH_HEARTBEAT_TIMEOUT_SECONDS", "0"),
                ),
                loop_trigger_statuses=_env_statuses(
                    "WORKGRAPH_LOOP_TRIGGER_STATUSES",
                    default=(Status.DONE,),
                ),
                auto_assign=_env_bool("WORKGRAPH_AUTO_ASSIGN", default=False),
            ),
            agent=AgentSettings(
                registry_busy_timeout_ms=int(
                    os.getenv("WORKGRAPH_REGISTRY_BUSY_TIMEOUT_MS", "5000"),
                ),
                kill_grace_seconds=float(os.getenv("WORKGRAPH_KILL_GRACE_SECONDS", "5")),
            ),
            triage=TriageSettings(
                enabled=_env_bool("WORKGRAPH_TRIAGE_ENABLED", default=False),
                command=triage_command or None,
                timeout_seconds=float(os.getenv("WORKGRAPH_TRIAGE_TIMEOUT_SECONDS", "30")),
                max_log_bytes=int(os.getenv("WORKGRAPH_TRIAGE_MAX_LOG_BYTES", "50000")),
                max_retries=int(os.getenv("WORKGRAPH_TRIAGE_MAX_RETRIES", "3")),
            ),
            executor=ExecutorSettings(
                claude_command_template=os.getenv(
                    "WORKGRAPH_CLAUDE_COMMAND_TEMPLATE",
                    ExecutorSettings().claude_command_template,
                ),
                default_claude_model=os.getenv("WORKGRAPH_CLAUDE_MODEL", "sonnet"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the coordinator cannot run with."""

        if self.coordinator.max_agents <= 0:
            raise ValueError("WORKGRAPH_MAX_AGENTS must be > 0.")
        if self.coordinator.poll_interval_seconds <= 0:
            raise ValueError("WORKGRAPH_POLL_INTERVAL_SECONDS must be > 0.")
        if self.coordinator.executor not in SUPPORTED_EXECUTORS:
            allowed = ", ".join(SUPPORTED_EXECUTORS)
            raise ValueError(
                f"WORKGRAPH_EXECUTOR must be one of: {allowed} "
                f"(got {self.coordinator.executor!r}).",
            )
        if self.coordinator.heartbeat_timeout_seconds < 0:
            raise ValueError("WORKGRAPH_HEARTBEAT_TIMEOUT_SECONDS must be >= 0.")
        if self.agent.kill_grace_seconds < 0:
            raise ValueError("WORKGRAPH_KILL_GRACE_SECONDS must be >= 0.")
        if self.triage.timeout_seconds <= 0:
            raise ValueError("WORKGRAPH_TRIAGE_TIMEOUT_SECONDS must be > 0.")
        if self.triage.max_log_bytes <= 0:
            raise ValueError("WORKGRAPH_TRIAGE_MAX_LOG_BYTES must be > 0.")
        if self.triage.max_retries < 0:
            raise ValueError("WORKGRAPH_TRIAGE_MAX_RETRIES must be >= 0.")
        if "{prompt" not in self.executor.claude_command_template:
            raise ValueError(
                "WORKGRAPH_CLAUDE_COMMAND_TEMPLATE must include {prompt} or {prompt_file}.",
            )


def _env_statuses(name: str, *, default: tuple[Status, ...]) -> tuple[Status, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    statuses: list[Status] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            status = Status.parse(token)
        except ValueError as error:
            raise ValueError(f"Invalid {name} entry: {token!r}") from error
        if not status.is_terminal:
            raise ValueError(f"Invalid {name} entry: {token!r} is not a terminal status")
        if status not in statuses:
            statuses.append(status)
    return tuple(statuses) or default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
