from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from workgraph.graph.loops import (
    LoopPolicy,
    evaluate_loop_edges,
    find_intermediate_tasks,
    parse_delay,
)
from workgraph.graph.models import LoopEdge, LoopGuard, Status, Task, WorkGraph, parse_timestamp
from workgraph.graph.readiness import ready_task_ids
from workgraph.graph.services import claim_task, complete_task

pytestmark = [
    allure.epic("Work Graph"),
    allure.feature("Loop Edges"),
]

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)


def _review_cycle(max_iterations: int = 5) -> WorkGraph:
    return WorkGraph(
        [
            Task(id="write", title="Write"),
            Task(id="review", title="Review", blocked_by=["write"]),
            Task(
                id="revise",
                title="Revise",
                blocked_by=["review"],
                loops_to=[
                    LoopEdge(
                        target="write",
                        max_iterations=max_iterations,
                        guard=LoopGuard.task_status("review", Status.FAILED),
                    ),
                ],
            ),
        ],
    )


def _run_round(graph: WorkGraph) -> list:
    claim_task(graph, "write", actor="agent-1")
    complete_task(graph, "write", status=Status.DONE)
    claim_task(graph, "review", actor="agent-2")
    complete_task(graph, "review", status=Status.FAILED, reason="needs work")
    claim_task(graph, "revise", actor="agent-3")
    return complete_task(graph, "revise", status=Status.DONE).firings


def test_review_cycle_reopens_write_review_and_revise() -> None:
    graph = _review_cycle()

    firings = _run_round(graph)

    assert len(firings) == 1
    assert firings[0].reopened == ["write", "review", "revise"]
    for task_id in ("write", "review", "revise"):
        task = graph.require_task(task_id)
        assert task.status == Status.OPEN
        assert task.assigned is None
        assert task.loop_iteration == 1
    assert ready_task_ids(graph) == {"write"}


def test_review_cycle_stops_after_max_iterations() -> None:
    graph = _review_cycle(max_iterations=5)

    for expected in range(1, 6):
        firings = _run_round(graph)
        assert len(firings) == 1
        assert graph.require_task("write").loop_iteration == expected

    firings = _run_round(graph)

    assert firings == []
    assert graph.require_task("write").loop_iteration == 5
    assert graph.require_task("write").status == Status.DONE
    assert graph.require_task("review").status == Status.FAILED
    assert graph.require_task("revise").status == Status.DONE


def test_guard_not_satisfied_does_not_fire() -> None:
    graph = _review_cycle()
    claim_task(graph, "write", actor="a")
    complete_task(graph, "write", status=Status.DONE)
    complete_task(graph, "review", status=Status.DONE)

    result = complete_task(graph, "revise", status=Status.DONE)

    assert result.firings == []
    assert graph.require_task("write").status == Status.DONE


def test_converged_completion_never_fires() -> None:
    graph = WorkGraph(
        [
            Task(id="draft"),
            Task(
                id="critique",
                blocked_by=["draft"],
                loops_to=[LoopEdge(target="draft", max_iterations=3)],
            ),
        ],
    )
    complete_task(graph, "draft", status=Status.DONE)

    result = complete_task(graph, "critique", status=Status.DONE, converged=True)

    assert result.firings == []
    assert graph.require_task("draft").status == Status.DONE
    assert graph.require_task("critique").log[-1].message == "Task marked as done (converged)"


def test_delay_sets_ready_after_on_target_only() -> None:
    graph = WorkGraph(
        [
            Task(id="poll"),
            Task(
                id="check",
                blocked_by=["poll"],
                loops_to=[LoopEdge(target="poll", max_iterations=10, delay="15m")],
            ),
        ],
    )
    complete_task(graph, "poll", status=Status.DONE)

    complete_task(graph, "check", status=Status.DONE, now=NOW)

    poll = graph.require_task("poll")
    assert parse_timestamp(poll.ready_after) == NOW + timedelta(minutes=15)
    assert graph.require_task("check").ready_after is None
    assert ready_task_ids(graph, now=NOW) == set()
    assert ready_task_ids(graph, now=NOW + timedelta(minutes=16)) == {"poll"}


def test_invalid_delay_is_ignored() -> None:
    graph = WorkGraph(
        [
            Task(id="a", status=Status.DONE),
            Task(id="b", loops_to=[LoopEdge(target="a", max_iterations=2, delay="soon")]),
        ],
    )

    firings = evaluate_loop_edges(graph, "b", now=NOW)

    assert len(firings) == 1
    assert graph.require_task("a").ready_after is None


def test_missing_target_is_skipped() -> None:
    graph = WorkGraph(
        [Task(id="b", status=Status.DONE, loops_to=[LoopEdge(target="gone", max_iterations=2)])],
    )

    assert evaluate_loop_edges(graph, "b") == []
    assert graph.require_task("b").status == Status.DONE


def test_iteration_guard_limits_firing() -> None:
    graph = WorkGraph(
        [
            Task(id="a", status=Status.DONE, loop_iteration=2),
            Task(
                id="b",
                status=Status.DONE,
                loops_to=[
                    LoopEdge(
                        target="a",
                        max_iterations=10,
                        guard=LoopGuard.iteration_less_than(2),
                    ),
                ],
            ),
        ],
    )

    assert evaluate_loop_edges(graph, "b") == []


def test_self_loop_reopens_only_itself() -> None:
    graph = WorkGraph(
        [Task(id="retry-me", loops_to=[LoopEdge(target="retry-me", max_iterations=2)])],
    )

    result = complete_task(graph, "retry-me", status=Status.DONE)

    assert [firing.reopened for firing in result.firings] == [["retry-me"]]
    assert graph.require_task("retry-me").status == Status.OPEN
    assert graph.require_task("retry-me").loop_iteration == 1


def test_policy_controls_which_statuses_trigger() -> None:
    def _graph() -> WorkGraph:
        return WorkGraph(
            [
                Task(id="a", status=Status.DONE),
                Task(id="b", loops_to=[LoopEdge(target="a", max_iterations=2)]),
            ],
        )

    default_graph = _graph()
    assert complete_task(default_graph, "b", status=Status.FAILED).firings == []

    permissive = LoopPolicy(trigger_statuses=frozenset({Status.DONE, Status.FAILED}))
    permissive_graph = _graph()
    result = complete_task(permissive_graph, "b", status=Status.FAILED, loop_policy=permissive)
    assert len(result.firings) == 1
    assert permissive_graph.require_task("a").status == Status.OPEN


def test_intermediates_survive_dependency_cycles() -> None:
    graph = WorkGraph(
        [
            Task(id="a", blocked_by=["c"]),
            Task(id="b", blocked_by=["a"]),
            Task(id="c", blocked_by=["b"]),
            Task(id="d", blocked_by=["c"]),
        ],
    )

    assert find_intermediate_tasks(graph, "a", "d") == ["b", "c"]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("30s", timedelta(seconds=30)),
        ("10m", timedelta(minutes=10)),
        ("2h", timedelta(hours=2)),
        ("1d", timedelta(days=1)),
        ("m", None),
        ("10x", None),
        ("-5m", None),
        ("", None),
    ],
)
def test_parse_delay(raw: str, expected: timedelta | None) -> None:
    assert parse_delay(raw) == expected
