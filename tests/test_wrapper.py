from __future__ import annotations

import json
import sys
import time
from pathlib import Path

import allure
import pytest

from workgraph.config import CoordinatorSettings, Settings
from workgraph.graph.models import Status
from workgraph.graph.services import GraphService, TaskCreate
from workgraph.graph.store import GraphStore
from workgraph.orchestrator.coordinator import build_coordinator
from workgraph.orchestrator.registry import AgentRegistry
from workgraph.orchestrator.wrapper import main, run_wrapped

pytestmark = [
    allure.epic("Coordinator"),
    allure.feature("Agent Wrapper"),
]


def _claimed(store: GraphStore, task_id: str = "draft", agent_id: str = "agent-1") -> None:
    service = GraphService(store)
    service.add(TaskCreate(title="Draft", task_id=task_id))
    service.claim(task_id, actor=agent_id)


def test_nonzero_exit_fails_unreported_task(graph_dir: Path, store: GraphStore) -> None:
    _claimed(store)

    exit_code = run_wrapped(
        graph_dir=graph_dir,
        task_id="draft",
        agent_id="agent-1",
        argv=[sys.executable, "-c", "raise SystemExit(3)"],
    )

    task = store.load().require_task("draft")
    metadata = json.loads((graph_dir / "agents" / "agent-1" / "metadata.json").read_text("utf-8"))
    assert exit_code == 3
    assert task.status == Status.FAILED
    assert task.failure_reason == "agent exited with code 3"
    assert metadata["exit_code"] == 3
    assert "exited_at" in metadata


def test_zero_exit_marks_task_done(graph_dir: Path, store: GraphStore) -> None:
    _claimed(store)

    assert run_wrapped(
        graph_dir=graph_dir,
        task_id="draft",
        agent_id="agent-1",
        argv=[sys.executable, "-c", "pass"],
    ) == 0

    assert store.load().require_task("draft").status == Status.DONE


def test_agent_report_wins_over_exit_code(graph_dir: Path, store: GraphStore, capsys) -> None:
    _claimed(store)
    GraphService(store).fail("draft", reason="gave up", actor="agent-1")

    run_wrapped(
        graph_dir=graph_dir,
        task_id="draft",
        agent_id="agent-1",
        argv=[sys.executable, "-c", "pass"],
    )

    task = store.load().require_task("draft")
    assert task.status == Status.FAILED
    assert task.failure_reason == "gave up"
    assert "task already reported" in capsys.readouterr().out


def test_missing_agent_binary_reports_127(graph_dir: Path, store: GraphStore) -> None:
    _claimed(store)

    exit_code = run_wrapped(
        graph_dir=graph_dir,
        task_id="draft",
        agent_id="agent-1",
        argv=["/definitely/not/an/agent"],
    )

    assert exit_code == 127
    assert store.load().require_task("draft").failure_reason == "agent exited with code 127"


def test_unknown_task_is_left_alone(graph_dir: Path, capsys) -> None:
    exit_code = run_wrapped(
        graph_dir=graph_dir,
        task_id="ghost",
        agent_id="agent-1",
        argv=[sys.executable, "-c", "pass"],
    )

    assert exit_code == 0
    assert "task already reported" in capsys.readouterr().out


def test_missing_graph_does_not_crash_wrapper(tmp_path: Path, capsys) -> None:
    exit_code = run_wrapped(
        graph_dir=tmp_path / "nowhere",
        task_id="draft",
        agent_id="agent-1",
        argv=[sys.executable, "-c", "raise SystemExit(1)"],
    )

    assert exit_code == 1
    assert "could not report exit for draft" in capsys.readouterr().out


def test_main_requires_agent_command(graph_dir: Path) -> None:
    with pytest.raises(SystemExit) as exit_info:
        main(["--dir", str(graph_dir), "--task-id", "t", "--agent-id", "agent-1"])

    assert exit_info.value.code == 2


def test_main_passes_agent_flags_through(graph_dir: Path, store: GraphStore) -> None:
    _claimed(store)

    exit_code = main(
        [
            "--dir",
            str(graph_dir),
            "--task-id",
            "draft",
            "--agent-id",
            "agent-1",
            "--",
            sys.executable,
            "-c",
            "import sys; sys.exit(0 if sys.argv[1:] == ['--task-id', 'x'] else 5)",
            "--task-id",
            "x",
        ],
    )

    assert exit_code == 0


def _wait_for(predicate, timeout: float = 30.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.1)
    return False


@pytest.mark.parametrize(
    ("mode", "status"),
    [
        ("done", Status.DONE),
        ("fail", Status.FAILED),
        ("exit:4", Status.FAILED),
    ],
)
def test_echo_agent_end_to_end(
    graph_dir: Path,
    store: GraphStore,
    registry: AgentRegistry,
    monkeypatch,
    mode: str,
    status: Status,
) -> None:
    monkeypatch.setenv("WORKGRAPH_ECHO_MODE", mode)
    GraphService(store).add(TaskCreate(title="Draft", task_id="draft"))
    settings = Settings(graph_dir=graph_dir, coordinator=CoordinatorSettings(executor="echo"))
    coordinator = build_coordinator(settings, registry=registry)

    dispatched = coordinator.tick().dispatched
    assert [item.task_id for item in dispatched] == ["draft"]

    assert _wait_for(lambda: store.load().require_task("draft").status == status)
    output = Path(dispatched[0].output_path)
    assert _wait_for(lambda: "[wrapper] agent exited" in output.read_text("utf-8"))
    assert "# Task Assignment" in output.read_text("utf-8")
    assert _wait_for(lambda: coordinator.tick().graph_complete)
    assert registry.alive_agents() == []
