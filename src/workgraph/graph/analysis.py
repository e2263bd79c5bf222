"""Graph diagnostics and traversal helpers for operator tooling.

Nothing here affects scheduling. Anomalies are reported as warnings; every
traversal keeps its own visited set because the graph may contain cycles.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from workgraph.graph.loops import parse_delay
from workgraph.graph.models import Status, Task, WorkGraph, parse_timestamp
from workgraph.graph.readiness import is_time_ready, unresolved_blockers


@dataclass(slots=True, frozen=True)
class GraphIssue:
    """One diagnostic finding."""

    code: str
    task_id: str
    message: str


def check_graph(graph: WorkGraph) -> list[GraphIssue]:
    """Collect fail-open anomalies and structural smells."""

    issues: list[GraphIssue] = []
    for task in graph.tasks():
        for blocker_id in task.blocked_by:
            if blocker_id not in graph:
                issues.append(
                    GraphIssue(
                        "dangling-blocker",
                        task.id,
                        f"blocked_by references missing task {blocker_id!r} (treated as resolved)",
                    ),
                )
        for name in ("not_before", "ready_after"):
            raw = getattr(task, name)
            if raw is not None and parse_timestamp(raw) is None:
                issues.append(
                    GraphIssue(
                        "malformed-timestamp",
                        task.id,
                        f"{name}={raw!r} is not a valid timestamp (treated as satisfied)",
                    ),
                )
        for edge in task.loops_to:
            if edge.target not in graph:
                issues.append(
                    GraphIssue(
                        "missing-loop-target",
                        task.id,
                        f"loop edge targets missing task {edge.target!r}",
                    ),
                )
                continue
            if edge.target != task.id and edge.target not in upstream_of(graph, task.id):
                issues.append(
                    GraphIssue(
                        "loop-target-not-upstream",
                        task.id,
                        f"loop target {edge.target!r} is not upstream along blocked_by; "
                        "reactivation is bounded only by max_iterations",
                    ),
                )
            if edge.delay is not None and parse_delay(edge.delay) is None:
                issues.append(
                    GraphIssue(
                        "invalid-loop-delay",
                        task.id,
                        f"loop edge to {edge.target!r} has invalid delay {edge.delay!r}",
                    ),
                )
        for dependent_id in task.blocks:
            dependent = graph.get_task(dependent_id)
            if dependent is None or task.id not in dependent.blocked_by:
                issues.append(
                    GraphIssue(
                        "stale-blocks",
                        task.id,
                        f"blocks lists {dependent_id!r} which is not blocked by it",
                    ),
                )
    for cycle in find_blocking_cycles(graph):
        issues.append(
            GraphIssue(
                "dependency-cycle",
                cycle[0],
                "blocked_by cycle " + " -> ".join([*cycle, cycle[0]]) + " can never become ready",
            ),
        )
    return issues


def rebuild_blocks(graph: WorkGraph) -> int:
    """Recompute every ``blocks`` list from ``blocked_by``; returns tasks changed."""

    derived: dict[str, list[str]] = {task.id: [] for task in graph.tasks()}
    for task in graph.tasks():
        for blocker_id in task.blocked_by:
            if blocker_id in derived and task.id not in derived[blocker_id]:
                derived[blocker_id].append(task.id)
    changed = 0
    for task in graph.tasks():
        if task.blocks != derived[task.id]:
            task.blocks = derived[task.id]
            changed += 1
    return changed


def upstream_of(graph: WorkGraph, task_id: str) -> set[str]:
    """Transitive ``blocked_by`` ancestors of a task (existing tasks only)."""

    visited: set[str] = set()
    stack = list(_blockers(graph, task_id))
    while stack:
        node = stack.pop()
        if node in visited or node not in graph:
            continue
        visited.add(node)
        stack.extend(_blockers(graph, node))
    return visited


def find_blocking_cycles(graph: WorkGraph) -> list[list[str]]:
    """Cycles formed purely by ``blocked_by`` references."""

    cycles: list[list[str]] = []
    seen_members: set[frozenset[str]] = set()
    done: set[str] = set()

    for root in graph.task_ids():
        if root in done:
            continue
        path: list[str] = []
        on_path: set[str] = set()
        stack: list[tuple[str, int]] = [(root, 0)]
        while stack:
            node, index = stack.pop()
            if index == 0:
                path.append(node)
                on_path.add(node)
            blockers = [dep for dep in _blockers(graph, node) if dep in graph]
            if index < len(blockers):
                stack.append((node, index + 1))
                nxt = blockers[index]
                if nxt in on_path:
                    cycle = path[path.index(nxt) :]
                    members = frozenset(cycle)
                    if members not in seen_members:
                        seen_members.add(members)
                        cycles.append(cycle)
                elif nxt not in done:
                    stack.append((nxt, 0))
                continue
            path.pop()
            on_path.discard(node)
            done.add(node)
    return cycles


def why_blocked(graph: WorkGraph, task_id: str, *, now: datetime | None = None) -> list[str]:
    """Human-readable reasons a task is not ready; empty when it is."""

    task = graph.require_task(task_id)
    reasons: list[str] = []
    if task.status != Status.OPEN:
        reasons.append(f"status is {task.status.value}")
    if task.paused:
        reasons.append("task is paused")
    current = now or datetime.now(tz=UTC)
    if not is_time_ready(task, now=current):
        if task.not_before:
            reasons.append(f"not_before {task.not_before}")
        if task.ready_after:
            reasons.append(f"ready_after {task.ready_after} (loop delay)")
    for blocker in unresolved_blockers(graph, task):
        reasons.append(f"waiting on {blocker.id} ({blocker.status.value})")
    return reasons


def critical_path(graph: WorkGraph) -> list[str]:
    """Longest chain of non-terminal tasks along ``blocked_by``.

    Loop edges are ignored; a node already on the current path is skipped.
    """

    memo: dict[str, list[str]] = {}

    def longest(task_id: str, visiting: set[str]) -> list[str]:
        if task_id in memo:
            return memo[task_id]
        visiting.add(task_id)
        best: list[str] = []
        for blocker in _open_blockers(graph, task_id):
            if blocker.id in visiting:
                continue
            candidate = longest(blocker.id, visiting)
            if len(candidate) > len(best):
                best = candidate
        visiting.discard(task_id)
        memo[task_id] = [*best, task_id]
        return memo[task_id]

    result: list[str] = []
    for task in graph.tasks():
        if task.status.is_terminal:
            continue
        chain = longest(task.id, set())
        if len(chain) > len(result):
            result = chain
    return result


def summarize(graph: WorkGraph) -> dict[str, int]:
    counts = {status.value: 0 for status in Status}
    for task in graph.tasks():
        counts[task.status.value] += 1
    return counts


def _blockers(graph: WorkGraph, task_id: str) -> list[str]:
    task = graph.get_task(task_id)
    return list(task.blocked_by) if task is not None else []


def _open_blockers(graph: WorkGraph, task_id: str) -> list[Task]:
    task = graph.get_task(task_id)
    if task is None:
        return []
    return unresolved_blockers(graph, task)
