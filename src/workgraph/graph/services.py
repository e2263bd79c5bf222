"""Idempotent task operations shared by workers, operators and the coordinator.

Module-level functions mutate an in-memory ``WorkGraph`` and can be batched
inside one ``GraphStore.mutate()`` block. ``GraphService`` wraps each of them
in its own locked read-modify-write for external callers.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from workgraph.errors import ClaimConflictError, InvalidTransitionError, WorkgraphError
from workgraph.graph.loops import LoopFiring, LoopPolicy, evaluate_loop_edges
from workgraph.graph.models import LoopEdge, Status, Task, WorkGraph, now_iso
from workgraph.graph.readiness import unresolved_blockers
from workgraph.graph.store import GraphStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskCreate:
    """Input payload for adding a task to the graph."""

    title: str
    task_id: str | None = None
    description: str | None = None
    blocked_by: tuple[str, ...] = ()
    loops_to: tuple[LoopEdge, ...] = ()
    not_before: str | None = None
    exec: str | None = None
    model: str | None = None
    worker: str | None = None
    tags: tuple[str, ...] = ()
    skills: tuple[str, ...] = ()
    inputs: tuple[str, ...] = ()
    deliverables: tuple[str, ...] = ()
    max_retries: int | None = None
    paused: bool = False


@dataclass(slots=True)
class CompletionResult:
    """Task after a terminal report, plus any loop firings it caused."""

    task: Task
    changed: bool
    firings: list[LoopFiring] = field(default_factory=list)


def create_task(graph: WorkGraph, payload: TaskCreate) -> Task:
    task_id = payload.task_id or _unique_slug(graph, payload.title)
    if task_id in graph:
        raise InvalidTransitionError(f"Task already exists: {task_id}")
    if task_id in payload.blocked_by:
        raise InvalidTransitionError(f"Task {task_id!r} cannot block itself")

    task = Task(
        id=task_id,
        title=payload.title,
        description=payload.description,
        status=Status.OPEN,
        paused=payload.paused,
        worker=payload.worker,
        blocked_by=list(dict.fromkeys(payload.blocked_by)),
        loops_to=list(payload.loops_to),
        not_before=payload.not_before,
        exec=payload.exec,
        model=payload.model,
        tags=list(payload.tags),
        skills=list(payload.skills),
        inputs=list(payload.inputs),
        deliverables=list(payload.deliverables),
        max_retries=payload.max_retries,
        created_at=now_iso(),
    )
    graph.add_task(task)
    for blocker_id in task.blocked_by:
        blocker = graph.get_task(blocker_id)
        if blocker is not None and task_id not in blocker.blocks:
            blocker.blocks.append(task_id)
    return task


def claim_task(graph: WorkGraph, task_id: str, *, actor: str) -> Task:
    """Open -> InProgress; repeat claims by the same actor are no-ops."""

    task = graph.require_task(task_id)
    if task.status == Status.IN_PROGRESS:
        if task.assigned == actor:
            return task
        holder = f" by {task.assigned}" if task.assigned else ""
        raise ClaimConflictError(f"Task {task_id!r} is already in progress{holder}")
    if task.status != Status.OPEN:
        raise InvalidTransitionError(
            f"Task {task_id!r} cannot be claimed from status {task.status.value}",
        )
    task.status = Status.IN_PROGRESS
    task.assigned = actor
    task.started_at = now_iso()
    task.add_log(f"Claimed by {actor}", actor=actor)
    return task


def unclaim_task(graph: WorkGraph, task_id: str, *, reason: str) -> bool:
    """InProgress -> Open; returns False when the task was not in progress."""

    task = graph.require_task(task_id)
    if task.status != Status.IN_PROGRESS:
        return False
    task.status = Status.OPEN
    task.assigned = None
    task.started_at = None
    task.add_log(f"Task unclaimed: {reason}")
    return True


def complete_task(  # noqa: PLR0913
    graph: WorkGraph,
    task_id: str,
    *,
    status: Status,
    reason: str | None = None,
    actor: str | None = None,
    converged: bool = False,
    enforce_blockers: bool = True,
    loop_policy: LoopPolicy | None = None,
    now: datetime | None = None,
) -> CompletionResult:
    """Move a task into a terminal status and evaluate its loop edges."""

    if not status.is_terminal:
        raise InvalidTransitionError(f"{status.value} is not a terminal status")
    task = graph.require_task(task_id)
    if task.status == status:
        return CompletionResult(task=task, changed=False)
    if task.status.is_terminal:
        raise InvalidTransitionError(
            f"Task {task_id!r} is already {task.status.value} and cannot become {status.value}",
        )
    if status == Status.DONE and enforce_blockers:
        pending = unresolved_blockers(graph, task)
        if pending:
            listing = ", ".join(f"{blocker.id} ({blocker.status.value})" for blocker in pending)
            raise InvalidTransitionError(
                f"Cannot mark {task_id!r} as done: blocked by {len(pending)} "
                f"unresolved task(s): {listing}",
            )

    task.status = status
    task.completed_at = now_iso()
    if status == Status.FAILED:
        task.retry_count += 1
        task.failure_reason = reason
        message = f"Task marked as failed: {reason}" if reason else "Task marked as failed"
    elif status == Status.ABANDONED:
        message = f"Task abandoned: {reason}" if reason else "Task abandoned"
    else:
        suffix = " (converged)" if converged else ""
        message = f"Task marked as done{suffix}"
    task.add_log(message, actor=actor or task.assigned)

    policy = loop_policy or LoopPolicy()
    firings: list[LoopFiring] = []
    if policy.triggers_on(status):
        firings = evaluate_loop_edges(graph, task_id, converged=converged, now=now)
    return CompletionResult(task=task, changed=True, firings=firings)


def reopen_task(graph: WorkGraph, task_id: str, *, reason: str | None = None) -> bool:
    """Terminal or held -> Open, keeping ``loop_iteration``."""

    task = graph.require_task(task_id)
    if task.status == Status.OPEN:
        return False
    if task.status == Status.IN_PROGRESS:
        raise InvalidTransitionError(
            f"Task {task_id!r} is in progress; unclaim it instead of reopening",
        )
    previous = task.status
    task.status = Status.OPEN
    task.assigned = None
    task.started_at = None
    task.completed_at = None
    task.failure_reason = None
    detail = f": {reason}" if reason else ""
    task.add_log(f"Reopened from {previous.value}{detail}")
    return True


def set_paused(graph: WorkGraph, task_id: str, *, paused: bool) -> bool:
    task = graph.require_task(task_id)
    if task.paused == paused:
        return False
    task.paused = paused
    task.add_log("Task paused" if paused else "Task resumed")
    return True


class GraphService:
    """Externally callable graph mutations, each one locked and persisted."""

    def __init__(
        self,
        store: GraphStore,
        *,
        loop_policy: LoopPolicy | None = None,
        notifier: Callable[[], None] | None = None,
    ) -> None:
        self.store = store
        self.loop_policy = loop_policy or LoopPolicy()
        self._notifier = notifier

    def add(self, payload: TaskCreate) -> Task:
        with self.store.mutate() as graph:
            task = create_task(graph, payload)
        self._notify()
        return task

    def claim(self, task_id: str, *, actor: str) -> Task:
        with self.store.mutate() as graph:
            task = claim_task(graph, task_id, actor=actor)
        self._notify()
        return task

    def unclaim(self, task_id: str, *, reason: str = "released manually") -> bool:
        with self.store.mutate() as graph:
            changed = unclaim_task(graph, task_id, reason=reason)
        if changed:
            self._notify()
        return changed

    def done(
        self,
        task_id: str,
        *,
        converged: bool = False,
        actor: str | None = None,
    ) -> CompletionResult:
        return self._complete(task_id, status=Status.DONE, converged=converged, actor=actor)

    def fail(
        self,
        task_id: str,
        *,
        reason: str | None = None,
        actor: str | None = None,
    ) -> CompletionResult:
        return self._complete(task_id, status=Status.FAILED, reason=reason, actor=actor)

    def abandon(
        self,
        task_id: str,
        *,
        reason: str | None = None,
        actor: str | None = None,
    ) -> CompletionResult:
        return self._complete(task_id, status=Status.ABANDONED, reason=reason, actor=actor)

    def auto_complete(self, task_id: str, *, agent_id: str, exit_code: int) -> CompletionResult | None:
        """Wrapper fallback: report by exit code unless the task already finished.

        Skips tasks that are terminal or no longer bound to ``agent_id``.
        """

        status = Status.DONE if exit_code == 0 else Status.FAILED
        with self.store.mutate() as graph:
            task = graph.get_task(task_id)
            if task is None or task.status.is_terminal:
                return None
            if task.status != Status.IN_PROGRESS or task.assigned != agent_id:
                return None
            result = complete_task(
                graph,
                task_id,
                status=status,
                reason=f"agent exited with code {exit_code}" if exit_code else None,
                actor=agent_id,
                enforce_blockers=False,
                loop_policy=self.loop_policy,
            )
            task.add_log(
                f"Completed by wrapper after agent exit (code {exit_code})",
                actor=agent_id,
            )
        self._notify()
        return result

    def retry(self, task_id: str) -> Task:
        """Reopen a failed task, honouring ``max_retries``."""

        with self.store.mutate() as graph:
            task = graph.require_task(task_id)
            if task.status != Status.FAILED:
                raise InvalidTransitionError(
                    f"Task {task_id!r} is {task.status.value}; only failed tasks can be retried",
                )
            if task.max_retries is not None and task.retry_count > task.max_retries:
                raise InvalidTransitionError(
                    f"Task {task_id!r} exhausted its retries "
                    f"({task.retry_count}/{task.max_retries})",
                )
            reopen_task(graph, task_id, reason=f"retry #{task.retry_count}")
        self._notify()
        return task

    def reopen(self, task_id: str, *, reason: str | None = None) -> bool:
        with self.store.mutate() as graph:
            changed = reopen_task(graph, task_id, reason=reason)
        if changed:
            self._notify()
        return changed

    def pause(self, task_id: str) -> bool:
        return self._set_paused(task_id, paused=True)

    def resume(self, task_id: str) -> bool:
        return self._set_paused(task_id, paused=False)

    def hold(self, task_id: str, *, reason: str | None = None) -> bool:
        """Explicit manual hold: Open -> Blocked."""

        with self.store.mutate() as graph:
            task = graph.require_task(task_id)
            if task.status == Status.BLOCKED:
                return False
            if task.status != Status.OPEN:
                raise InvalidTransitionError(
                    f"Task {task_id!r} is {task.status.value}; only open tasks can be held",
                )
            task.status = Status.BLOCKED
            task.add_log(f"Held: {reason}" if reason else "Held")
        self._notify()
        return True

    def release(self, task_id: str) -> bool:
        """Blocked -> Open."""

        with self.store.mutate() as graph:
            task = graph.require_task(task_id)
            if task.status != Status.BLOCKED:
                return False
            task.status = Status.OPEN
            task.add_log("Released from hold")
        self._notify()
        return True

    def reschedule(self, task_id: str, *, not_before: str | None) -> Task:
        with self.store.mutate() as graph:
            task = graph.require_task(task_id)
            task.not_before = not_before
            task.add_log(f"Rescheduled: not_before={not_before or '-'}")
        self._notify()
        return task

    def log(self, task_id: str, message: str, *, actor: str | None = None) -> None:
        with self.store.mutate() as graph:
            graph.require_task(task_id).add_log(message, actor=actor)

    def add_artifact(self, task_id: str, path: str) -> bool:
        with self.store.mutate() as graph:
            task = graph.require_task(task_id)
            if path in task.artifacts:
                return False
            task.artifacts.append(path)
        return True

    def _set_paused(self, task_id: str, *, paused: bool) -> bool:
        with self.store.mutate() as graph:
            changed = set_paused(graph, task_id, paused=paused)
        if changed:
            self._notify()
        return changed

    def _complete(
        self,
        task_id: str,
        *,
        status: Status,
        reason: str | None = None,
        converged: bool = False,
        actor: str | None = None,
    ) -> CompletionResult:
        with self.store.mutate() as graph:
            result = complete_task(
                graph,
                task_id,
                status=status,
                reason=reason,
                actor=actor,
                converged=converged,
                loop_policy=self.loop_policy,
            )
        if result.changed:
            self._notify()
        return result

    def _notify(self) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier()
        except WorkgraphError as error:
            logger.debug("Graph change notification failed: %s", error)


def _unique_slug(graph: WorkGraph, title: str) -> str:
    base = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")[:48] or "task"
    candidate = base
    suffix = 2
    while candidate in graph:
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate
