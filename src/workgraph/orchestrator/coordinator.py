"""Coordinator tick: reap, check liveness, run hooks, compute ready set, dispatch."""

from __future__ import annotations

import dataclasses
import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

from workgraph.config import Settings
from workgraph.errors import InvalidTransitionError, SpawnError, TaskNotFoundError
from workgraph.graph.loops import LoopPolicy
from workgraph.graph.models import Status, Task, WorkGraph, parse_timestamp
from workgraph.graph.readiness import all_terminal, ready_tasks
from workgraph.graph.services import complete_task, unclaim_task
from workgraph.graph.store import GraphStore
from workgraph.orchestrator.backend.base import AgentBackend
from workgraph.orchestrator.backend.cli_backend import CliAgentBackend, EchoBackend, ShellBackend
from workgraph.orchestrator.dispatcher import Dispatcher
from workgraph.orchestrator.models import AgentRecord, AgentStatus, DispatchResult, TickResult
from workgraph.orchestrator.process import process_liveness, reap_children, terminate_process
from workgraph.orchestrator.registry import AgentRegistry
from workgraph.orchestrator.routing import (
    DefaultWorkerResolver,
    ExecutionDefaults,
    SkillOverlapMatcher,
    WorkerMatcher,
    WorkerProfile,
    load_worker_profiles,
)
from workgraph.orchestrator.triage import (
    CommandTriage,
    OutputPatternTriage,
    TriageInput,
    TriageResult,
    TriageStrategy,
    TriageVerdict,
    read_output_tail,
    recovery_description,
    run_triage_bounded,
)

logger = logging.getLogger(__name__)

_AGENT_ID_PATTERN = re.compile(r"^agent-\d+$")
ORPHAN_CLAIM_GRACE = timedelta(seconds=60)


@dataclass(slots=True, frozen=True)
class CoordinatorContext:
    """Immutable configuration snapshot; reconfiguration swaps the whole object."""

    max_agents: int = 4
    poll_interval_seconds: float = 60.0
    executor: str = "claude"
    model: str | None = None
    heartbeat_timeout_seconds: int = 0
    kill_grace_seconds: float = 5.0
    triage_timeout_seconds: float = 30.0
    triage_max_log_bytes: int = 50_000
    triage_max_retries: int = 3
    paused: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> CoordinatorContext:
        return cls(
            max_agents=settings.coordinator.max_agents,
            poll_interval_seconds=settings.coordinator.poll_interval_seconds,
            executor=settings.coordinator.executor,
            model=settings.coordinator.model,
            heartbeat_timeout_seconds=settings.coordinator.heartbeat_timeout_seconds,
            kill_grace_seconds=settings.agent.kill_grace_seconds,
            triage_timeout_seconds=settings.triage.timeout_seconds,
            triage_max_log_bytes=settings.triage.max_log_bytes,
            triage_max_retries=settings.triage.max_retries,
        )

    @property
    def defaults(self) -> ExecutionDefaults:
        return ExecutionDefaults(executor=self.executor, model=self.model)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


class GraphHook(Protocol):
    """Graph mutation step run before readiness is computed."""

    name: str

    def apply(self, graph: WorkGraph) -> int:
        """Mutate ``graph`` in place; return how many tasks changed."""


class AutoAssignHook:
    """Bind unassigned open tasks to the best-fit worker profile."""

    name = "auto-assign"

    def __init__(self, matcher: WorkerMatcher, workers: list[WorkerProfile]) -> None:
        self.matcher = matcher
        self.workers = workers

    def apply(self, graph: WorkGraph) -> int:
        if not self.workers:
            return 0
        changed = 0
        for task in graph.tasks():
            if task.status != Status.OPEN or task.worker or task.exec:
                continue
            profile = self.matcher.match(task, self.workers)
            if profile is None:
                continue
            task.worker = profile.name
            task.add_log(f"Auto-assigned to worker {profile.name}")
            changed += 1
        return changed


class Coordinator:
    """Serialized scheduling loop over the graph store and the agent registry."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: GraphStore,
        registry: AgentRegistry,
        dispatcher: Dispatcher,
        context: CoordinatorContext,
        hooks: list[GraphHook] | None = None,
        triage: TriageStrategy | None = None,
        loop_policy: LoopPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.hooks = list(hooks or [])
        self.triage = triage
        self.loop_policy = loop_policy or LoopPolicy()
        self._context = context
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._tick_lock = threading.RLock()
        self.ticks = 0
        self.last_tick: TickResult | None = None

    @property
    def context(self) -> CoordinatorContext:
        return self._context

    def reconfigure(self, **changes: Any) -> CoordinatorContext:
        """Swap in a new context with ``changes`` applied."""

        updated = dataclasses.replace(self._context, **changes)
        if updated.max_agents <= 0:
            raise ValueError("max_agents must be > 0")
        if updated.poll_interval_seconds <= 0:
            raise ValueError("poll_interval must be > 0")
        if updated.executor not in self.dispatcher.backends:
            raise ValueError(f"Unknown executor: {updated.executor!r}")
        self._context = updated
        logger.info("Coordinator reconfigured: %s", changes)
        return updated

    def tick(self) -> TickResult:
        """Run one scheduling pass; ticks never overlap."""

        with self._tick_lock:
            result = self._tick(self._context)
            self.ticks += 1
            self.last_tick = result
            return result

    def spawn(self, task_id: str, *, executor: str | None = None) -> DispatchResult:
        """Dispatch one task right away, ignoring readiness and capacity."""

        with self._tick_lock:
            return self.dispatcher.dispatch(
                task_id,
                defaults=self._context.defaults,
                executor=executor,
            )

    def kill_agent(self, agent_id: str, *, force: bool = False) -> AgentRecord:
        """Terminate an agent and unclaim its task if it still holds the claim."""

        with self._tick_lock:
            agent = self.registry.get(agent_id)
            if agent is None:
                raise ValueError(f"Unknown agent: {agent_id}")
            if agent.status == AgentStatus.ALIVE:
                terminate_process(
                    agent.pid,
                    grace_seconds=self._context.kill_grace_seconds,
                    force=force,
                )
                self.registry.mark_dead(agent_id, reason="killed" + (" (forced)" if force else ""))
                with self.store.mutate() as graph:
                    task = graph.get_task(agent.task_id)
                    if task is not None and _holds_claim(task, agent_id):
                        unclaim_task(graph, task.id, reason=f"agent {agent_id} was killed")
            refreshed = self.registry.get(agent_id)
            return refreshed if refreshed is not None else agent

    def kill_all(self, *, force: bool = False) -> list[str]:
        with self._tick_lock:
            killed: list[str] = []
            for agent in self.registry.alive_agents():
                self.kill_agent(agent.agent_id, force=force)
                killed.append(agent.agent_id)
            return killed

    def status(self) -> dict[str, Any]:
        graph = self.store.load()
        now = self._clock()
        alive = self.registry.alive_agents()
        counts: dict[str, int] = {status.value: 0 for status in Status}
        for task in graph.tasks():
            counts[task.status.value] += 1
        return {
            "context": self._context.to_dict(),
            "ticks": self.ticks,
            "tasks": counts,
            "ready": [task.id for task in ready_tasks(graph, now=now)],
            "alive_agents": [agent.agent_id for agent in alive],
            "last_tick": self.last_tick.to_dict() if self.last_tick else None,
        }

    def _tick(self, ctx: CoordinatorContext) -> TickResult:
        result = TickResult()
        result.reaped = reap_children()

        result.alive = self._check_agents(ctx, result)
        self._recover_orphaned_claims(result)
        if ctx.paused:
            logger.debug("Scheduler paused, skipping dispatch")
            return result
        if result.alive >= ctx.max_agents:
            result.at_capacity = True
            logger.debug("At capacity (%d/%d agents alive)", result.alive, ctx.max_agents)
            return result

        self._run_hooks()

        graph = self.store.load()
        ready = ready_tasks(graph, now=self._clock())
        result.ready = [task.id for task in ready]
        if not ready:
            if all_terminal(graph):
                result.graph_complete = True
                logger.info("All %d tasks are terminal", len(graph))
            return result

        slots = ctx.max_agents - result.alive
        for task in ready:
            if slots <= 0:
                result.at_capacity = True
                break
            try:
                dispatched = self.dispatcher.dispatch(task.id, defaults=ctx.defaults)
            except (InvalidTransitionError, TaskNotFoundError) as error:
                result.skipped[task.id] = str(error)
                logger.info("Skipping %s: %s", task.id, error)
                continue
            except SpawnError as error:
                result.skipped[task.id] = str(error)
                if error.transient:
                    logger.warning("Transient spawn failure for %s: %s", task.id, error)
                else:
                    self._fail_unlaunchable(task.id, str(error))
                continue
            result.dispatched.append(dispatched)
            slots -= 1
        return result

    def _check_agents(self, ctx: CoordinatorContext, result: TickResult) -> int:
        alive = 0
        now = self._clock()
        for agent in self.registry.alive_agents():
            reason: str | None = None
            liveness = process_liveness(agent.pid)
            if liveness == AgentStatus.DEAD:
                reason = "process exited"
            elif liveness == AgentStatus.UNKNOWN:
                logger.warning(
                    "Cannot probe %s (pid %d), keeping its claim",
                    agent.agent_id,
                    agent.pid,
                )
                result.unknown_agents.append(agent.agent_id)
            if reason is None and ctx.heartbeat_timeout_seconds > 0:
                silence = (now - agent.last_heartbeat).total_seconds()
                if silence > ctx.heartbeat_timeout_seconds:
                    reason = f"no heartbeat for {int(silence)}s"
                    logger.warning("Agent %s stopped heartbeating, terminating", agent.agent_id)
                    terminate_process(agent.pid, grace_seconds=ctx.kill_grace_seconds)
            if reason is None:
                alive += 1
                continue
            if not self.registry.mark_dead(agent.agent_id, reason=reason):
                continue
            logger.warning("Agent %s (pid %d) is dead: %s", agent.agent_id, agent.pid, reason)
            result.dead_agents.append(agent.agent_id)
            outcome = self._recover_task(agent, ctx, reason=reason)
            if outcome is not None:
                result.recovered[agent.task_id] = outcome
        return alive

    def _recover_task(self, agent: AgentRecord, ctx: CoordinatorContext, *, reason: str) -> str | None:
        snapshot = self.store.load()
        task = snapshot.get_task(agent.task_id)
        if task is None or not _holds_claim(task, agent.agent_id):
            return None

        verdict: TriageResult | None = None
        if self.triage is not None:
            tail = read_output_tail(
                Path(agent.output_path) if agent.output_path else None,
                max_bytes=ctx.triage_max_log_bytes,
            )
            verdict = run_triage_bounded(
                self.triage,
                TriageInput(task=task, agent_id=agent.agent_id, output_tail=tail),
                timeout_seconds=ctx.triage_timeout_seconds,
            )

        with self.store.mutate() as graph:
            task = graph.get_task(agent.task_id)
            if task is None or not _holds_claim(task, agent.agent_id):
                return None
            outcome = self._apply_recovery(graph, task, agent.agent_id, verdict, reason, ctx)
        logger.info("Recovered %s after %s died: %s", agent.task_id, agent.agent_id, outcome)
        return outcome

    def _apply_recovery(  # noqa: PLR0913
        self,
        graph: WorkGraph,
        task: Task,
        agent_id: str,
        verdict: TriageResult | None,
        reason: str,
        ctx: CoordinatorContext,
    ) -> str:
        if verdict is None:
            unclaim_task(graph, task.id, reason=f"agent {agent_id} died ({reason})")
            return "unclaimed"

        task.add_log(f"Triage verdict {verdict.verdict.value}: {verdict.reason}", actor=agent_id)
        if verdict.verdict == TriageVerdict.DONE:
            complete_task(
                graph,
                task.id,
                status=Status.DONE,
                actor=agent_id,
                enforce_blockers=False,
                loop_policy=self.loop_policy,
            )
            return TriageVerdict.DONE.value

        limit = task.max_retries if task.max_retries is not None else ctx.triage_max_retries
        if task.retry_count >= limit:
            complete_task(
                graph,
                task.id,
                status=Status.FAILED,
                reason=f"agent died {task.retry_count + 1} times, retry limit {limit} reached",
                actor=agent_id,
                loop_policy=self.loop_policy,
            )
            return Status.FAILED.value

        task.retry_count += 1
        if verdict.verdict == TriageVerdict.CONTINUE:
            task.description = recovery_description(task, verdict, agent_id=agent_id)
        unclaim_task(
            graph,
            task.id,
            reason=f"triage {verdict.verdict.value} after {agent_id} died "
            f"(attempt {task.retry_count}/{limit})",
        )
        return verdict.verdict.value

    def _recover_orphaned_claims(self, result: TickResult) -> None:
        """Unclaim tasks held by agent ids with no live registry entry."""

        snapshot = self.store.load()
        now = self._clock()
        candidates = [
            task
            for task in snapshot.tasks()
            if task.status == Status.IN_PROGRESS
            and task.assigned is not None
            and _AGENT_ID_PATTERN.match(task.assigned)
        ]
        if not candidates:
            return
        agents = {agent.agent_id: agent for agent in self.registry.list_agents()}
        orphaned: list[str] = []
        for task in candidates:
            agent = agents.get(task.assigned or "")
            if agent is not None and agent.status == AgentStatus.ALIVE:
                continue
            if agent is None:
                started = parse_timestamp(task.started_at)
                if started is not None and now - started < ORPHAN_CLAIM_GRACE:
                    continue
            orphaned.append(task.id)
        if not orphaned:
            return
        with self.store.mutate() as graph:
            for task_id in orphaned:
                task = graph.get_task(task_id)
                if task is None or task.status != Status.IN_PROGRESS:
                    continue
                unclaim_task(graph, task_id, reason=f"no live agent behind claim {task.assigned}")
                result.recovered[task_id] = "unclaimed"
                logger.warning("Unclaimed orphaned task %s", task_id)

    def _run_hooks(self) -> None:
        if not self.hooks:
            return
        with self.store.mutate() as graph:
            for hook in self.hooks:
                changed = hook.apply(graph)
                if changed:
                    logger.info("Hook %s changed %d task(s)", hook.name, changed)

    def _fail_unlaunchable(self, task_id: str, reason: str) -> None:
        logger.error("Cannot launch %s, marking failed: %s", task_id, reason)
        with self.store.mutate() as graph:
            task = graph.get_task(task_id)
            if task is None or task.status != Status.OPEN:
                return
            complete_task(
                graph,
                task_id,
                status=Status.FAILED,
                reason=f"cannot launch agent: {reason}",
                loop_policy=self.loop_policy,
            )


def _holds_claim(task: Task, agent_id: str) -> bool:
    return task.status == Status.IN_PROGRESS and task.assigned == agent_id


def build_coordinator(
    settings: Settings,
    *,
    registry: AgentRegistry | None = None,
    spawner: Callable[..., int] | None = None,
) -> Coordinator:
    """Wire store, registry, backends, hooks and triage from settings."""

    graph_dir = settings.graph_dir
    store = GraphStore(graph_dir)
    agent_registry = registry or AgentRegistry.for_graph_dir(
        graph_dir,
        busy_timeout_ms=settings.agent.registry_busy_timeout_ms,
    )
    workers = load_worker_profiles(graph_dir)
    backends: dict[str, AgentBackend] = {
        "claude": CliAgentBackend.claude(settings.executor),
        "shell": ShellBackend(),
        "echo": EchoBackend(),
    }
    dispatcher_kwargs: dict[str, Any] = {}
    if spawner is not None:
        dispatcher_kwargs["spawner"] = spawner
    dispatcher = Dispatcher(
        store=store,
        registry=agent_registry,
        resolver=DefaultWorkerResolver(workers),
        backends=backends,
        **dispatcher_kwargs,
    )

    hooks: list[GraphHook] = []
    if settings.coordinator.auto_assign:
        hooks.append(AutoAssignHook(SkillOverlapMatcher(), workers))

    triage: TriageStrategy | None = None
    if settings.triage.enabled:
        if settings.triage.command:
            triage = CommandTriage(
                settings.triage.command,
                timeout_seconds=settings.triage.timeout_seconds,
            )
        else:
            triage = OutputPatternTriage()

    return Coordinator(
        store=store,
        registry=agent_registry,
        dispatcher=dispatcher,
        context=CoordinatorContext.from_settings(settings),
        hooks=hooks,
        triage=triage,
        loop_policy=settings.coordinator.loop_policy(),
    )
