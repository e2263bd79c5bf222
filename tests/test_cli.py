from __future__ import annotations

import json
import time
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from workgraph import __version__
from workgraph.graph.models import Status
from workgraph.graph.store import GraphStore
from workgraph.main import wg
from workgraph.orchestrator.controllers import format_guard, parse_guard

pytestmark = [
    allure.epic("Work Graph"),
    allure.feature("CLI"),
]


@pytest.fixture()
def cli(graph_dir: Path):
    runner = CliRunner()

    def _invoke(*args: str, env: dict[str, str] | None = None):
        return runner.invoke(wg, ["--dir", str(graph_dir), *args], env=env)

    return _invoke


def test_version_option() -> None:
    result = CliRunner().invoke(wg, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_init_is_idempotent(tmp_path: Path) -> None:
    graph_dir = tmp_path / "fresh"
    runner = CliRunner()

    first = runner.invoke(wg, ["--dir", str(graph_dir), "init"])
    second = runner.invoke(wg, ["--dir", str(graph_dir), "init"])

    assert first.exit_code == 0
    assert "Initialized empty graph" in first.output
    assert "Graph already initialized" in second.output
    assert (graph_dir / "graph.jsonl").exists()


def test_graph_dir_from_environment(tmp_path: Path) -> None:
    graph_dir = tmp_path / "from-env"

    result = CliRunner().invoke(wg, ["init"], env={"WORKGRAPH_DIR": str(graph_dir)})

    assert result.exit_code == 0
    assert GraphStore(graph_dir).exists()


def test_commands_require_initialized_graph(tmp_path: Path) -> None:
    result = CliRunner().invoke(wg, ["--dir", str(tmp_path / "missing"), "list"])

    assert result.exit_code == 1
    assert "No graph at" in result.output


def test_review_loop_through_cli(cli, store: GraphStore) -> None:
    assert cli("add", "Write draft", "--id", "write").exit_code == 0
    assert cli("add", "Review", "--id", "review", "--blocked-by", "write").exit_code == 0
    added = cli(
        "add",
        "Revise",
        "--id",
        "revise",
        "--blocked-by",
        "review",
        "--loop-to",
        "write",
        "--max-iterations",
        "2",
    )
    assert added.exit_code == 0
    assert "Task added: revise (Revise)" in added.output

    ready = cli("ready")
    assert "Ready: 1" in ready.output
    assert "  write Write draft" in ready.output

    for task_id in ("write", "review"):
        assert cli("done", task_id).exit_code == 0
    fired = cli("done", "revise")

    assert fired.exit_code == 0
    assert "Marked revise done" in fired.output
    assert "loop fired -> write (iteration 1/2); reopened: write, review, revise" in fired.output
    graph = store.load()
    assert graph.require_task("write").status == Status.OPEN
    assert graph.require_task("write").loop_iteration == 1

    assert "Marked write done" in cli("done", "write").output
    assert "write is already done" in cli("done", "write").output


def test_done_converged_stops_the_loop(cli, store: GraphStore) -> None:
    cli("add", "Draft", "--id", "draft")
    cli(
        "add",
        "Review",
        "--id",
        "review",
        "--blocked-by",
        "draft",
        "--loop-to",
        "draft",
        "--max-iterations",
        "3",
    )
    cli("done", "draft")

    result = cli("done", "review", "--converged")

    assert "loop fired" not in result.output
    assert store.load().require_task("draft").status == Status.DONE


def test_json_output(cli) -> None:
    cli("add", "Alpha", "--tag", "docs", "--skill", "prose")
    cli("add", "Beta", "--blocked-by", "alpha")

    listed = json.loads(cli("--json", "list").output)
    ready = json.loads(cli("--json", "ready").output)
    shown = json.loads(cli("--json", "show", "beta").output)
    path = json.loads(cli("--json", "critical-path").output)
    why = json.loads(cli("--json", "why-blocked", "beta").output)

    assert [task["id"] for task in listed] == ["alpha", "beta"]
    assert listed[0]["tags"] == ["docs"]
    assert ready == ["alpha"]
    assert shown["blocked_by"] == ["alpha"]
    assert path == ["alpha", "beta"]
    assert why == {"task_id": "beta", "reasons": ["waiting on alpha (open)"]}


def test_list_filters_by_status(cli) -> None:
    cli("add", "Alpha")
    cli("add", "Beta")
    cli("fail", "beta", "--reason", "flaky")

    result = cli("list", "--status", "failed")

    assert result.exit_code == 0
    assert "Tasks: 1 (open=1 failed=1)" in result.output
    assert "beta [failed] Beta" in result.output
    assert "alpha [" not in result.output


def test_show_and_task_lifecycle_commands(cli) -> None:
    cli("add", "Alpha", "-d", "First task", "--max-retries", "2")

    assert "Claimed alpha as alice" in cli("claim", "alpha", "--actor", "alice").output
    assert "Unclaimed alpha" in cli("unclaim", "alpha", "--reason", "lunch").output
    assert "Paused alpha" in cli("pause", "alpha").output
    assert "alpha is already paused" in cli("pause", "alpha").output
    assert "Resumed alpha" in cli("resume", "alpha").output
    assert "Held alpha" in cli("hold", "alpha", "--reason", "legal").output
    assert "Released alpha" in cli("release", "alpha").output
    assert "Logged to alpha" in cli("log", "alpha", "halfway", "--actor", "alice").output
    assert "Artifact recorded for alpha: out.md" in cli("artifact", "alpha", "out.md").output
    assert "Marked alpha failed" in cli("fail", "alpha", "--reason", "broken").output
    assert "Retrying alpha (attempt 2)" in cli("retry", "alpha").output

    shown = cli("show", "alpha").output

    assert "Task: alpha" in shown
    assert "Description: First task" in shown
    assert "Retries: 1/2" in shown
    assert "Artifacts: out.md" in shown
    assert "[alice] halfway" in shown


def test_abandon_and_reopen(cli) -> None:
    cli("add", "Alpha")

    assert "Marked alpha abandoned" in cli("abandon", "alpha", "--reason", "dup").output
    assert "Reopened alpha" in cli("reopen", "alpha").output
    assert "alpha is already open" in cli("reopen", "alpha").output


def test_reschedule_accepts_delay_and_clears(cli, store: GraphStore) -> None:
    cli("add", "Alpha")

    delayed = cli("reschedule", "alpha", "--not-before", "2h")

    assert delayed.exit_code == 0
    assert store.load().require_task("alpha").not_before is not None
    assert "not_before" in cli("why-blocked", "alpha").output

    cleared = cli("reschedule", "alpha")

    assert "not_before=-" in cleared.output
    assert store.load().require_task("alpha").not_before is None


def test_errors_become_click_errors(cli) -> None:
    cli("add", "Alpha")
    cli("claim", "alpha", "--actor", "alice")

    missing = cli("show", "ghost")
    conflict = cli("claim", "alpha", "--actor", "bob")
    bad_guard = cli("add", "Beta", "--loop-to", "alpha", "--max-iterations", "2", "--guard", "x")
    no_cap = cli("add", "Gamma", "--loop-to", "alpha")
    bad_time = cli("add", "Delta", "--not-before", "tomorrow-ish")

    for result in (missing, conflict, bad_guard, no_cap, bad_time):
        assert result.exit_code == 1
    assert "ghost" in missing.output
    assert "alice" in conflict.output
    assert "Unknown guard" in bad_guard.output
    assert "--max-iterations is required" in no_cap.output
    assert "Invalid time" in bad_time.output


def test_check_and_rebuild_blocks(cli, store: GraphStore) -> None:
    cli("add", "Alpha", "--blocked-by", "ghost")
    with store.mutate() as graph:
        graph.require_task("alpha").blocks = ["nobody"]

    report = cli("check")
    rebuilt = cli("rebuild-blocks")
    as_json = json.loads(cli("--json", "check").output)

    assert "[dangling-blocker] alpha" in report.output
    assert "[stale-blocks] alpha" in report.output
    assert "1 task(s) changed" in rebuilt.output
    assert {issue["code"] for issue in as_json} == {"dangling-blocker"}


def test_critical_path_and_why_blocked_text(cli) -> None:
    cli("add", "Alpha")
    cli("add", "Beta", "--blocked-by", "alpha")

    assert "Critical path (2 tasks): alpha -> beta" in cli("critical-path").output
    assert "beta is not ready:" in cli("why-blocked", "beta").output
    assert "alpha is ready" in cli("why-blocked", "alpha").output


def test_service_commands_without_running_service(cli) -> None:
    cli("add", "Alpha")

    status = cli("service", "status")
    stopped = cli("service", "stop")
    paused = cli("service", "pause")
    agents = cli("agents")

    assert "Service: not running" in status.output
    assert "Ready: alpha" in status.output
    assert "Service is not running" in stopped.output
    assert paused.exit_code == 1
    assert "No coordinator service is running" in paused.output
    assert "Agents: 0" in agents.output


def test_local_tick_runs_exec_task(cli, graph_dir: Path, store: GraphStore) -> None:
    cli("add", "Build", "--id", "build", "--exec", "echo built")

    result = cli("service", "tick")

    assert result.exit_code == 0
    assert "dispatched=1" in result.output
    assert "spawned agent-1" in result.output
    assert "executor=shell" in result.output
    deadline = time.monotonic() + 30
    while store.load().require_task("build").status != Status.DONE and time.monotonic() < deadline:
        time.sleep(0.1)
    assert store.load().require_task("build").status == Status.DONE
    assert "built" in (graph_dir / "agents" / "agent-1" / "output.log").read_text("utf-8")


def test_heartbeat_and_kill_without_service(cli) -> None:
    missing = cli("heartbeat")
    unknown = cli("heartbeat", "agent-5")

    assert missing.exit_code == 1
    assert "WORKGRAPH_AGENT_ID" in missing.output
    assert unknown.exit_code == 1
    assert "No alive agent agent-5" in unknown.output

    killed = cli("kill", "agent-9")
    assert killed.exit_code == 1
    assert "Unknown agent" in killed.output


def test_tick_validates_configuration(cli) -> None:
    result = cli("service", "tick", env={"WORKGRAPH_MAX_AGENTS": "0"})

    assert result.exit_code == 1
    assert "WORKGRAPH_MAX_AGENTS must be > 0" in result.output


@pytest.mark.parametrize(
    "text",
    ["always", "task-status:review:failed", "iteration-less-than:3"],
)
def test_guard_text_round_trip(text: str) -> None:
    assert format_guard(parse_guard(text)) == text


@pytest.mark.parametrize(
    "text",
    ["task-status:review", "iteration-less-than:x", "sometimes"],
)
def test_guard_text_rejects_garbage(text: str) -> None:
    with pytest.raises(ValueError):
        parse_guard(text)
