"""Readiness computation over a graph snapshot.

A task is ready when it is open, not paused, past its time gates, and every
blocker is either terminal or missing from the graph. Only immediate blockers
are consulted; chains resolve one hop per completion.
"""

from __future__ import annotations

from datetime import UTC, datetime

from workgraph.graph.models import Status, Task, WorkGraph, parse_timestamp


def is_time_ready(task: Task, *, now: datetime | None = None) -> bool:
    """Both time gates satisfied; malformed timestamps count as satisfied."""

    current = now or datetime.now(tz=UTC)
    for raw in (task.not_before, task.ready_after):
        gate = parse_timestamp(raw)
        if gate is not None and gate > current:
            return False
    return True


def unresolved_blockers(graph: WorkGraph, task: Task) -> list[Task]:
    """Existing blockers that are not terminal yet."""

    pending: list[Task] = []
    for blocker_id in task.blocked_by:
        blocker = graph.get_task(blocker_id)
        if blocker is None:
            continue
        if not blocker.status.is_terminal:
            pending.append(blocker)
    return pending


def is_ready(graph: WorkGraph, task: Task, *, now: datetime | None = None) -> bool:
    if task.status != Status.OPEN:
        return False
    if task.paused:
        return False
    if not is_time_ready(task, now=now):
        return False
    return not unresolved_blockers(graph, task)


def ready_tasks(graph: WorkGraph, *, now: datetime | None = None) -> list[Task]:
    """Tasks eligible for dispatch right now, in graph order."""

    current = now or datetime.now(tz=UTC)
    return [task for task in graph.tasks() if is_ready(graph, task, now=current)]


def ready_task_ids(graph: WorkGraph, *, now: datetime | None = None) -> set[str]:
    return {task.id for task in ready_tasks(graph, now=now)}


def all_terminal(graph: WorkGraph) -> bool:
    """True for a non-empty graph whose tasks are all terminal."""

    return len(graph) > 0 and all(task.status.is_terminal for task in graph.tasks())
