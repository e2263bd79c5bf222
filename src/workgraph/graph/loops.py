"""Loop edge evaluation: bounded, guarded reactivation of upstream work."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from workgraph.graph.models import GuardKind, LoopEdge, LoopGuard, Status, Task, WorkGraph

logger = logging.getLogger(__name__)

_DELAY_UNITS = {"s": 1, "m": 60, "h": 3_600, "d": 86_400}


@dataclass(slots=True, frozen=True)
class LoopPolicy:
    """Which completion statuses evaluate loop edges."""

    trigger_statuses: frozenset[Status] = frozenset({Status.DONE})

    def triggers_on(self, status: Status) -> bool:
        return status in self.trigger_statuses


@dataclass(slots=True)
class LoopFiring:
    """Outcome of one loop edge that fired."""

    source: str
    target: str
    iteration: int
    max_iterations: int
    reopened: list[str] = field(default_factory=list)


def parse_delay(value: str) -> timedelta | None:
    """Parse ``<int><unit>`` with unit in s/m/h/d; ``None`` when malformed."""

    text = value.strip()
    if len(text) < 2:
        return None
    number, unit = text[:-1], text[-1]
    if unit not in _DELAY_UNITS or not number.isdigit():
        return None
    return timedelta(seconds=int(number) * _DELAY_UNITS[unit])


def evaluate_guard(guard: LoopGuard, graph: WorkGraph, edge: LoopEdge) -> bool:
    if guard.kind == GuardKind.ALWAYS:
        return True
    if guard.kind == GuardKind.TASK_STATUS:
        watched = graph.get_task(guard.task or "")
        return watched is not None and watched.status == guard.status
    target = graph.get_task(edge.target)
    iteration = target.loop_iteration if target is not None else 0
    return iteration < (guard.threshold or 0)


def evaluate_loop_edges(
    graph: WorkGraph,
    source_id: str,
    *,
    converged: bool = False,
    now: datetime | None = None,
) -> list[LoopFiring]:
    """Fire every eligible loop edge of ``source_id`` against the graph in place.

    Call once per qualifying completion of the source task. A converged
    completion never fires. Reaching ``max_iterations`` silently stops an edge.
    """

    source = graph.get_task(source_id)
    if source is None or converged or not source.loops_to:
        return []

    current = now or datetime.now(tz=UTC)
    firings: list[LoopFiring] = []
    for edge in list(source.loops_to):
        if not evaluate_guard(edge.guard, graph, edge):
            continue
        target = graph.get_task(edge.target)
        if target is None:
            logger.warning(
                "Loop target %r referenced by %r does not exist, skipping",
                edge.target,
                source_id,
            )
            continue
        if target.loop_iteration >= edge.max_iterations:
            continue

        iteration = target.loop_iteration + 1
        ready_after: str | None = None
        if edge.delay is not None:
            delay = parse_delay(edge.delay)
            if delay is None:
                logger.warning(
                    "Invalid delay %r on loop edge %s -> %s, ignoring delay",
                    edge.delay,
                    source_id,
                    edge.target,
                )
            else:
                ready_after = (current + delay).isoformat()

        _reopen(target, iteration=iteration, ready_after=ready_after)
        target.add_log(
            f"Re-activated by loop from {source_id} "
            f"(iteration {iteration}/{edge.max_iterations})",
        )
        firing = LoopFiring(
            source=source_id,
            target=edge.target,
            iteration=iteration,
            max_iterations=edge.max_iterations,
            reopened=[edge.target],
        )

        for mid_id in find_intermediate_tasks(graph, edge.target, source_id):
            mid = graph.get_task(mid_id)
            if mid is None or not mid.status.is_terminal:
                continue
            _reopen(mid, iteration=iteration, ready_after=None)
            mid.add_log(
                f"Re-opened: blocker {edge.target!r} was re-activated by loop from {source_id}",
            )
            firing.reopened.append(mid_id)

        if source_id != edge.target:
            _reopen(source, iteration=iteration, ready_after=None)
            source.add_log(
                f"Re-opened by own loop to {edge.target} "
                f"(iteration {iteration}/{edge.max_iterations})",
            )
            firing.reopened.append(source_id)

        logger.info(
            "Loop %s -> %s fired (iteration %d/%d), reopened %s",
            source_id,
            edge.target,
            iteration,
            edge.max_iterations,
            ", ".join(firing.reopened),
        )
        firings.append(firing)
    return firings


def find_intermediate_tasks(graph: WorkGraph, start: str, end: str) -> list[str]:
    """Tasks downstream of ``start`` and upstream of ``end`` along ``blocked_by``.

    Both endpoints are excluded. Each traversal keeps a visited set, so cycles in
    the dependency lists terminate.
    """

    dependents: dict[str, list[str]] = {}
    for task in graph.tasks():
        for blocker_id in task.blocked_by:
            dependents.setdefault(blocker_id, []).append(task.id)

    forward = _reachable(start, stop=end, neighbours=lambda node: dependents.get(node, []))
    backward = _reachable(end, stop=start, neighbours=lambda node: _blockers_of(graph, node))
    return [
        task.id
        for task in graph.tasks()
        if task.id in forward and task.id in backward and task.id not in (start, end)
    ]


def _blockers_of(graph: WorkGraph, task_id: str) -> list[str]:
    task = graph.get_task(task_id)
    return list(task.blocked_by) if task is not None else []


def _reachable(origin: str, *, stop: str, neighbours) -> set[str]:
    visited: set[str] = set()
    queue: deque[str] = deque(neighbours(origin))
    while queue:
        node = queue.popleft()
        if node in visited:
            continue
        visited.add(node)
        if node == stop:
            continue
        queue.extend(neighbours(node))
    return visited


def _reopen(task: Task, *, iteration: int, ready_after: str | None) -> None:
    task.status = Status.OPEN
    task.assigned = None
    task.not_before = None
    task.ready_after = ready_after
    task.started_at = None
    task.completed_at = None
    task.loop_iteration = iteration
