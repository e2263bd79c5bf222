"""Controllers for workgraph CLI commands."""

from __future__ import annotations

import json
import os
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from workgraph.config import Settings
from workgraph.errors import GraphStoreError, ServiceError
from workgraph.graph.analysis import (
    check_graph,
    critical_path,
    rebuild_blocks,
    summarize,
    why_blocked,
)
from workgraph.graph.loops import parse_delay
from workgraph.graph.models import LoopEdge, LoopGuard, Status, Task, WorkGraph, parse_timestamp
from workgraph.graph.readiness import ready_tasks
from workgraph.graph.services import CompletionResult, GraphService, TaskCreate
from workgraph.graph.store import GraphStore
from workgraph.orchestrator.coordinator import Coordinator, build_coordinator
from workgraph.orchestrator.process import spawn_detached
from workgraph.orchestrator.registry import AgentRegistry
from workgraph.orchestrator.service import (
    CoordinatorService,
    configure_daemon_logging,
    notify_graph_changed,
    request_service,
    running_state,
    service_dir,
)

SERVICE_START_TIMEOUT_SECONDS = 10.0


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for task creation."""

    graph_dir: Path | None
    title: str
    task_id: str | None = None
    description: str | None = None
    blocked_by: tuple[str, ...] = ()
    loop_to: str | None = None
    max_iterations: int | None = None
    guard: str = "always"
    delay: str | None = None
    not_before: str | None = None
    exec_command: str | None = None
    model: str | None = None
    worker: str | None = None
    tags: tuple[str, ...] = ()
    skills: tuple[str, ...] = ()
    inputs: tuple[str, ...] = ()
    deliverables: tuple[str, ...] = ()
    max_retries: int | None = None
    paused: bool = False


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    graph_dir: Path | None
    status: str | None = None
    as_json: bool = False


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for single-task views (show, why-blocked)."""

    graph_dir: Path | None
    task_id: str
    as_json: bool = False


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for one state transition on one task."""

    graph_dir: Path | None
    task_id: str
    reason: str | None = None
    actor: str | None = None
    converged: bool = False


@dataclass(slots=True)
class TaskNoteCommand:
    """CLI input for log messages and artifact paths."""

    graph_dir: Path | None
    task_id: str
    value: str
    actor: str | None = None


@dataclass(slots=True)
class GraphReportCommand:
    """CLI input for whole-graph reports."""

    graph_dir: Path | None
    as_json: bool = False


@dataclass(slots=True)
class ServiceStartCommand:
    """CLI input for starting the coordinator service."""

    graph_dir: Path | None
    foreground: bool = False
    max_agents: int | None = None
    poll_interval: float | None = None
    executor: str | None = None
    model: str | None = None


@dataclass(slots=True)
class ServiceRequestCommand:
    """CLI input for plain control requests."""

    graph_dir: Path | None
    kill_agents: bool = False
    as_json: bool = False


@dataclass(slots=True)
class ReconfigureCommand:
    """CLI input for live coordinator reconfiguration."""

    graph_dir: Path | None
    max_agents: int | None = None
    poll_interval: float | None = None
    executor: str | None = None
    model: str | None = None


@dataclass(slots=True)
class SpawnCommand:
    """CLI input for a direct spawn that bypasses readiness and capacity."""

    graph_dir: Path | None
    task_id: str
    executor: str | None = None


@dataclass(slots=True)
class AgentCommand:
    """CLI input for agent-level operations."""

    graph_dir: Path | None
    agent_id: str | None = None
    force: bool = False
    alive_only: bool = False
    as_json: bool = False


class GraphCliController:
    """Task and graph operations run directly against the graph store."""

    def init(self, graph_dir: Path | None) -> list[str]:
        settings = Settings.from_env(graph_dir=graph_dir)
        store = GraphStore(settings.graph_dir)
        existed = store.exists()
        store.init()
        if existed:
            return [f"Graph already initialized: {store.path}"]
        return [f"Initialized empty graph: {store.path}"]

    def add(self, command: TaskAddCommand) -> list[str]:
        _, service = _graph_service(command.graph_dir)
        loops: tuple[LoopEdge, ...] = ()
        if command.loop_to:
            if command.max_iterations is None:
                raise ValueError("--max-iterations is required with --loop-to")
            loops = (
                LoopEdge(
                    target=command.loop_to,
                    max_iterations=command.max_iterations,
                    guard=parse_guard(command.guard),
                    delay=command.delay,
                ),
            )
            if command.delay and parse_delay(command.delay) is None:
                raise ValueError(f"Invalid delay {command.delay!r}; expected <int>(s|m|h|d)")
        task = service.add(
            TaskCreate(
                title=command.title,
                task_id=command.task_id,
                description=command.description,
                blocked_by=command.blocked_by,
                loops_to=loops,
                not_before=_resolve_time(command.not_before),
                exec=command.exec_command,
                model=command.model,
                worker=command.worker,
                tags=command.tags,
                skills=command.skills,
                inputs=command.inputs,
                deliverables=command.deliverables,
                max_retries=command.max_retries,
                paused=command.paused,
            ),
        )
        lines = [f"Task added: {task.id} ({task.title})"]
        missing = [blocker for blocker in task.blocked_by if blocker not in service.store.load()]
        if missing:
            lines.append(f"Warning: unknown blockers treated as resolved: {', '.join(missing)}")
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        graph = _load_graph(command.graph_dir)
        status_filter = Status.parse(command.status) if command.status else None
        tasks = [
            task for task in graph.tasks() if status_filter is None or task.status == status_filter
        ]
        if command.as_json:
            return [json.dumps([task.to_dict() for task in tasks], indent=2)]
        counts = summarize(graph)
        lines = [
            f"Tasks: {len(tasks)} "
            f"({' '.join(f'{name}={count}' for name, count in counts.items() if count)})",
        ]
        for task in tasks:
            lines.append(f"  {_task_line(task)}")
        return lines

    def ready(self, command: GraphReportCommand) -> list[str]:
        graph = _load_graph(command.graph_dir)
        tasks = ready_tasks(graph)
        if command.as_json:
            return [json.dumps([task.id for task in tasks])]
        lines = [f"Ready: {len(tasks)}"]
        for task in tasks:
            lines.append(f"  {task.id} {task.title}")
        return lines

    def show(self, command: TaskInspectCommand) -> list[str]:
        graph = _load_graph(command.graph_dir)
        task = graph.require_task(command.task_id)
        if command.as_json:
            return [json.dumps(task.to_dict(), indent=2)]
        lines = [
            f"Task: {task.id}",
            f"Title: {task.title}",
            f"Status: {task.status.value}" + (" (paused)" if task.paused else ""),
            f"Assigned: {task.assigned or '-'}",
            f"Worker: {task.worker or '-'}",
            f"Blocked by: {', '.join(task.blocked_by) or '-'}",
            f"Blocks: {', '.join(task.blocks) or '-'}",
            f"Loop iteration: {task.loop_iteration}",
            f"Retries: {task.retry_count}"
            + (f"/{task.max_retries}" if task.max_retries is not None else ""),
        ]
        if task.description:
            lines.append(f"Description: {task.description}")
        if task.not_before:
            lines.append(f"Not before: {task.not_before}")
        if task.ready_after:
            lines.append(f"Ready after: {task.ready_after}")
        if task.failure_reason:
            lines.append(f"Failure: {task.failure_reason}")
        for edge in task.loops_to:
            lines.append(
                f"Loop: -> {edge.target} max={edge.max_iterations} "
                f"guard={format_guard(edge.guard)} delay={edge.delay or '-'}",
            )
        if task.artifacts:
            lines.append(f"Artifacts: {', '.join(task.artifacts)}")
        lines.append(f"Log entries: {len(task.log)}")
        for entry in task.log:
            actor = f" [{entry.actor}]" if entry.actor else ""
            lines.append(f"  {entry.timestamp}{actor} {entry.message}")
        return lines

    def claim(self, command: TaskMutateCommand) -> list[str]:
        _, service = _graph_service(command.graph_dir)
        task = service.claim(command.task_id, actor=command.actor or _default_actor())
        return [f"Claimed {task.id} as {task.assigned}"]

    def unclaim(self, command: TaskMutateCommand) -> list[str]:
        _, service = _graph_service(command.graph_dir)
        changed = service.unclaim(command.task_id, reason=command.reason or "released manually")
        return [f"Unclaimed {command.task_id}" if changed else f"{command.task_id} was not claimed"]

    def done(self, command: TaskMutateCommand) -> list[str]:
        _, service = _graph_service(command.graph_dir)
        result = service.done(
            command.task_id,
            converged=command.converged,
            actor=command.actor or _env_actor(),
        )
        return _completion_lines(result)

    def fail(self, command: TaskMutateCommand) -> list[str]:
        _, service = _graph_service(command.graph_dir)
        result = service.fail(command.task_id, reason=command.reason, actor=command.actor or _env_actor())
        return _completion_lines(result)

    def abandon(self, command: TaskMutateCommand) -> list[str]:
        _, service = _graph_service(command.graph_dir)
        result = service.abandon(
            command.task_id,
            reason=command.reason,
            actor=command.actor or _env_actor(),
        )
        return _completion_lines(result)

    def retry(self, command: TaskMutateCommand) -> list[str]:
        _, service = _graph_service(command.graph_dir)
        task = service.retry(command.task_id)
        return [f"Retrying {task.id} (attempt {task.retry_count + 1})"]

    def reopen(self, command: TaskMutateCommand) -> list[str]:
        _, service = _graph_service(command.graph_dir)
        changed = service.reopen(command.task_id, reason=command.reason)
        return [f"Reopened {command.task_id}" if changed else f"{command.task_id} is already open"]

    def pause(self, command: TaskMutateCommand) -> list[str]:
        _, service = _graph_service(command.graph_dir)
        changed = service.pause(command.task_id)
        return [f"Paused {command.task_id}" if changed else f"{command.task_id} is already paused"]

    def resume(self, command: TaskMutateCommand) -> list[str]:
        _, service = _graph_service(command.graph_dir)
        changed = service.resume(command.task_id)
        return [f"Resumed {command.task_id}" if changed else f"{command.task_id} is not paused"]

    def hold(self, command: TaskMutateCommand) -> list[str]:
        _, service = _graph_service(command.graph_dir)
        changed = service.hold(command.task_id, reason=command.reason)
        return [f"Held {command.task_id}" if changed else f"{command.task_id} is already held"]

    def release(self, command: TaskMutateCommand) -> list[str]:
        _, service = _graph_service(command.graph_dir)
        changed = service.release(command.task_id)
        return [f"Released {command.task_id}" if changed else f"{command.task_id} is not held"]

    def reschedule(self, command: TaskNoteCommand) -> list[str]:
        _, service = _graph_service(command.graph_dir)
        not_before = _resolve_time(command.value) if command.value else None
        task = service.reschedule(command.task_id, not_before=not_before)
        return [f"Rescheduled {task.id}: not_before={task.not_before or '-'}"]

    def log(self, command: TaskNoteCommand) -> list[str]:
        _, service = _graph_service(command.graph_dir)
        service.log(command.task_id, command.value, actor=command.actor or _env_actor())
        return [f"Logged to {command.task_id}"]

    def artifact(self, command: TaskNoteCommand) -> list[str]:
        _, service = _graph_service(command.graph_dir)
        added = service.add_artifact(command.task_id, command.value)
        if added:
            return [f"Artifact recorded for {command.task_id}: {command.value}"]
        return [f"Artifact already recorded for {command.task_id}: {command.value}"]

    def check(self, command: GraphReportCommand) -> list[str]:
        graph = _load_graph(command.graph_dir)
        issues = check_graph(graph)
        if command.as_json:
            return [
                json.dumps(
                    [
                        {"code": issue.code, "task_id": issue.task_id, "message": issue.message}
                        for issue in issues
                    ],
                    indent=2,
                ),
            ]
        if not issues:
            return [f"Graph OK: {len(graph)} tasks, no issues"]
        lines = [f"Issues: {len(issues)}"]
        for issue in issues:
            lines.append(f"  [{issue.code}] {issue.task_id}: {issue.message}")
        return lines

    def rebuild_blocks(self, graph_dir: Path | None) -> list[str]:
        settings = Settings.from_env(graph_dir=graph_dir)
        store = _require_store(settings)
        with store.mutate() as graph:
            changed = rebuild_blocks(graph)
        return [f"Rebuilt blocks lists: {changed} task(s) changed"]

    def why_blocked(self, command: TaskInspectCommand) -> list[str]:
        graph = _load_graph(command.graph_dir)
        reasons = why_blocked(graph, command.task_id)
        if command.as_json:
            return [json.dumps({"task_id": command.task_id, "reasons": reasons})]
        if not reasons:
            return [f"{command.task_id} is ready"]
        return [f"{command.task_id} is not ready:", *(f"  - {reason}" for reason in reasons)]

    def critical_path(self, command: GraphReportCommand) -> list[str]:
        graph = _load_graph(command.graph_dir)
        path = critical_path(graph)
        if command.as_json:
            return [json.dumps(path)]
        if not path:
            return ["No open work"]
        return [f"Critical path ({len(path)} tasks): {' -> '.join(path)}"]


class ServiceCliController:
    """Coordinator service lifecycle and agent operations.

    Agent operations go through the running service when there is one and
    fall back to a one-shot local coordinator otherwise.
    """

    def start(self, command: ServiceStartCommand) -> list[str]:
        settings = Settings.from_env(graph_dir=command.graph_dir)
        _apply_overrides(settings, command)
        settings.validate()
        _require_store(settings)

        state = running_state(settings.graph_dir)
        if state is not None:
            return [f"Service already running: pid={state.pid} socket={state.socket_path}"]

        if command.foreground:
            configure_daemon_logging(settings.graph_dir)
            with _coordinator(settings) as coordinator:
                CoordinatorService(coordinator, graph_dir=settings.graph_dir).run()
            return ["Service stopped"]

        argv = [sys.executable, "-m", "workgraph.main", "--dir", str(settings.graph_dir.resolve())]
        argv += ["service", "start", "--foreground"]
        if command.max_agents is not None:
            argv += ["--max-agents", str(command.max_agents)]
        if command.poll_interval is not None:
            argv += ["--poll-interval", str(command.poll_interval)]
        if command.executor:
            argv += ["--executor", command.executor]
        if command.model:
            argv += ["--model", command.model]
        pid = spawn_detached(
            argv,
            output_path=service_dir(settings.graph_dir) / "daemon.out",
            env=os.environ.copy(),
            cwd=Path.cwd(),
        )
        deadline = time.monotonic() + SERVICE_START_TIMEOUT_SECONDS
        while time.monotonic() < deadline:
            state = running_state(settings.graph_dir)
            if state is not None:
                return [f"Service started: pid={state.pid} socket={state.socket_path}"]
            time.sleep(0.1)
        raise ServiceError(
            f"Service (pid {pid}) did not come up within {SERVICE_START_TIMEOUT_SECONDS:.0f}s; "
            f"see {service_dir(settings.graph_dir) / 'daemon.out'}",
        )

    def stop(self, command: ServiceRequestCommand) -> list[str]:
        settings = Settings.from_env(graph_dir=command.graph_dir)
        if running_state(settings.graph_dir) is None:
            return ["Service is not running"]
        request_service(settings.graph_dir, {"cmd": "shutdown", "kill_agents": command.kill_agents})
        suffix = " (killing agents)" if command.kill_agents else ""
        return [f"Shutdown requested{suffix}"]

    def status(self, command: ServiceRequestCommand) -> list[str]:
        settings = Settings.from_env(graph_dir=command.graph_dir)
        if running_state(settings.graph_dir) is not None:
            payload = request_service(settings.graph_dir, {"cmd": "status"})
            payload.pop("ok", None)
            running = True
        else:
            _require_store(settings)
            with _coordinator(settings) as coordinator:
                payload = coordinator.status()
            running = False
        if command.as_json:
            return [json.dumps({"running": running, **payload}, indent=2, default=str)]
        lines = [
            f"Service: {'running pid=' + str(payload['pid']) if running else 'not running'}",
            "Tasks: " + " ".join(f"{name}={count}" for name, count in payload["tasks"].items()),
            f"Ready: {', '.join(payload['ready']) or '-'}",
            f"Alive agents: {', '.join(payload['alive_agents']) or '-'}",
        ]
        context = payload["context"]
        lines.append(
            f"Context: max_agents={context['max_agents']} "
            f"poll_interval={context['poll_interval_seconds']}s "
            f"executor={context['executor']} model={context['model'] or '-'} "
            f"paused={'yes' if context['paused'] else 'no'}",
        )
        if running:
            lines.append(f"Ticks: {payload['ticks']}")
        return lines

    def pause(self, command: ServiceRequestCommand) -> list[str]:
        settings = Settings.from_env(graph_dir=command.graph_dir)
        request_service(settings.graph_dir, {"cmd": "pause"})
        return ["Scheduler paused"]

    def resume(self, command: ServiceRequestCommand) -> list[str]:
        settings = Settings.from_env(graph_dir=command.graph_dir)
        request_service(settings.graph_dir, {"cmd": "resume"})
        return ["Scheduler resumed"]

    def reconfigure(self, command: ReconfigureCommand) -> list[str]:
        settings = Settings.from_env(graph_dir=command.graph_dir)
        response = request_service(
            settings.graph_dir,
            {
                "cmd": "reconfigure",
                "max_agents": command.max_agents,
                "poll_interval": command.poll_interval,
                "executor": command.executor,
                "model": command.model,
            },
        )
        context = response["context"]
        return [
            f"Reconfigured: max_agents={context['max_agents']} "
            f"poll_interval={context['poll_interval_seconds']}s "
            f"executor={context['executor']} model={context['model'] or '-'}",
        ]

    def tick(self, command: ServiceRequestCommand) -> list[str]:
        """Wake a running service, or run one local tick when none is up."""

        settings = Settings.from_env(graph_dir=command.graph_dir)
        if running_state(settings.graph_dir) is not None:
            request_service(settings.graph_dir, {"cmd": "graph_changed"})
            return ["Service woken"]
        settings.validate()
        _require_store(settings)
        with _coordinator(settings) as coordinator:
            result = coordinator.tick()
        if command.as_json:
            return [json.dumps(result.to_dict(), indent=2)]
        lines = [
            f"Tick: alive={result.alive} ready={len(result.ready)} "
            f"dispatched={len(result.dispatched)} dead={len(result.dead_agents)}"
            + (" at_capacity" if result.at_capacity else "")
            + (" graph_complete" if result.graph_complete else ""),
        ]
        for dispatched in result.dispatched:
            lines.append(
                f"  spawned {dispatched.agent_id} pid={dispatched.pid} "
                f"task={dispatched.task_id} executor={dispatched.executor}",
            )
        for task_id, outcome in result.recovered.items():
            lines.append(f"  recovered {task_id}: {outcome}")
        for task_id, reason in result.skipped.items():
            lines.append(f"  skipped {task_id}: {reason}")
        return lines

    def spawn(self, command: SpawnCommand) -> list[str]:
        settings = Settings.from_env(graph_dir=command.graph_dir)
        if running_state(settings.graph_dir) is not None:
            payload = request_service(
                settings.graph_dir,
                {"cmd": "spawn", "task_id": command.task_id, "executor": command.executor},
            )
        else:
            _require_store(settings)
            with _coordinator(settings) as coordinator:
                result = coordinator.spawn(command.task_id, executor=command.executor)
            payload = {
                "agent_id": result.agent_id,
                "pid": result.pid,
                "executor": result.executor,
                "output": result.output_path,
            }
        return [
            f"Spawned {payload['agent_id']} (pid {payload['pid']}) for {command.task_id} "
            f"via {payload['executor']}",
            f"Output: {payload['output']}",
        ]

    def agents(self, command: AgentCommand) -> list[str]:
        settings = Settings.from_env(graph_dir=command.graph_dir)
        if running_state(settings.graph_dir) is not None:
            response = request_service(
                settings.graph_dir,
                {"cmd": "agents", "alive_only": command.alive_only},
            )
            agents: list[dict[str, Any]] = response["agents"]
        else:
            with _registry(settings) as registry:
                agents = [
                    agent.to_dict() for agent in registry.list_agents(alive_only=command.alive_only)
                ]
        if command.as_json:
            return [json.dumps(agents, indent=2)]
        lines = [f"Agents: {len(agents)}"]
        for agent in agents:
            line = (
                f"  {agent['id']} pid={agent['pid']} task={agent['task_id']} "
                f"executor={agent['executor']} status={agent['status']}"
            )
            if agent.get("exit_reason"):
                line += f" reason={agent['exit_reason']}"
            lines.append(line)
        return lines

    def kill(self, command: AgentCommand) -> list[str]:
        settings = Settings.from_env(graph_dir=command.graph_dir)
        agent_id = command.agent_id or ""
        if running_state(settings.graph_dir) is not None:
            request_service(
                settings.graph_dir,
                {"cmd": "kill", "agent_id": agent_id, "force": command.force},
            )
        else:
            _require_store(settings)
            with _coordinator(settings) as coordinator:
                coordinator.kill_agent(agent_id, force=command.force)
        return [f"Killed {agent_id}" + (" (forced)" if command.force else "")]

    def heartbeat(self, command: AgentCommand) -> list[str]:
        settings = Settings.from_env(graph_dir=command.graph_dir)
        agent_id = command.agent_id or os.getenv("WORKGRAPH_AGENT_ID", "")
        if not agent_id:
            raise ValueError("agent id is required (argument or WORKGRAPH_AGENT_ID)")
        if running_state(settings.graph_dir) is not None:
            request_service(settings.graph_dir, {"cmd": "heartbeat", "agent_id": agent_id})
        else:
            with _registry(settings) as registry:
                if not registry.heartbeat(agent_id):
                    raise ServiceError(f"No alive agent {agent_id}")
        return [f"Heartbeat recorded for {agent_id}"]


def parse_guard(value: str) -> LoopGuard:
    """Parse ``always``, ``task-status:<task>:<status>`` or ``iteration-less-than:<n>``."""

    text = value.strip()
    if text in {"", "always"}:
        return LoopGuard.always()
    kind, _, rest = text.partition(":")
    if kind == "task-status":
        task_id, _, status = rest.rpartition(":")
        if not task_id or not status:
            raise ValueError(f"Invalid guard {value!r}; expected task-status:<task>:<status>")
        return LoopGuard.task_status(task_id, Status.parse(status))
    if kind == "iteration-less-than":
        if not rest.isdigit():
            raise ValueError(f"Invalid guard {value!r}; expected iteration-less-than:<n>")
        return LoopGuard.iteration_less_than(int(rest))
    raise ValueError(f"Unknown guard {value!r}")


def format_guard(guard: LoopGuard) -> str:
    if guard.task is not None and guard.status is not None:
        return f"task-status:{guard.task}:{guard.status.value}"
    if guard.threshold is not None:
        return f"iteration-less-than:{guard.threshold}"
    return "always"


def _task_line(task: Task) -> str:
    flags = []
    if task.paused:
        flags.append("paused")
    if task.assigned:
        flags.append(f"assigned={task.assigned}")
    if task.loop_iteration:
        flags.append(f"iteration={task.loop_iteration}")
    suffix = f" ({', '.join(flags)})" if flags else ""
    return f"{task.id} [{task.status.value}] {task.title}{suffix}"


def _completion_lines(result: CompletionResult) -> list[str]:
    task = result.task
    if not result.changed:
        return [f"{task.id} is already {task.status.value}"]
    lines = [f"Marked {task.id} {task.status.value}"]
    for firing in result.firings:
        lines.append(
            f"  loop fired -> {firing.target} (iteration {firing.iteration}/"
            f"{firing.max_iterations}); reopened: {', '.join(firing.reopened)}",
        )
    return lines


def _resolve_time(value: str | None) -> str | None:
    """Accept an RFC 3339 timestamp or a relative delay such as ``30m``."""

    if value is None:
        return None
    delay = parse_delay(value)
    if delay is not None:
        return (datetime.now(tz=UTC) + delay).isoformat()
    if parse_timestamp(value) is None:
        raise ValueError(f"Invalid time {value!r}; expected RFC 3339 timestamp or <int>(s|m|h|d)")
    return value


def _default_actor() -> str:
    return _env_actor() or os.getenv("USER") or "operator"


def _env_actor() -> str | None:
    return os.getenv("WORKGRAPH_AGENT_ID") or None


def _apply_overrides(settings: Settings, command: ServiceStartCommand) -> None:
    if command.max_agents is not None:
        settings.coordinator.max_agents = command.max_agents
    if command.poll_interval is not None:
        settings.coordinator.poll_interval_seconds = command.poll_interval
    if command.executor:
        settings.coordinator.executor = command.executor
    if command.model:
        settings.coordinator.model = command.model


def _require_store(settings: Settings) -> GraphStore:
    store = GraphStore(settings.graph_dir)
    if not store.exists():
        raise GraphStoreError(f"No graph at {store.path}; run `wg init` first")
    return store


def _load_graph(graph_dir: Path | None) -> WorkGraph:
    settings = Settings.from_env(graph_dir=graph_dir)
    return _require_store(settings).load()


def _graph_service(graph_dir: Path | None) -> tuple[Settings, GraphService]:
    settings = Settings.from_env(graph_dir=graph_dir)
    store = _require_store(settings)
    service = GraphService(
        store,
        loop_policy=settings.coordinator.loop_policy(),
        notifier=lambda: notify_graph_changed(settings.graph_dir),
    )
    return settings, service


@contextmanager
def _registry(settings: Settings) -> Iterator[AgentRegistry]:
    registry = AgentRegistry.for_graph_dir(
        settings.graph_dir,
        busy_timeout_ms=settings.agent.registry_busy_timeout_ms,
    )
    try:
        yield registry
    finally:
        registry.close()


@contextmanager
def _coordinator(settings: Settings) -> Iterator[Coordinator]:
    with _registry(settings) as registry:
        yield build_coordinator(settings, registry=registry)
