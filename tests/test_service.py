from __future__ import annotations

import json
import shutil
import socket
import tempfile
import threading
import time
from collections.abc import Iterator
from pathlib import Path

import allure
import pytest

from workgraph.config import CoordinatorSettings, Settings
from workgraph.errors import ServiceError
from workgraph.graph.models import Status
from workgraph.graph.services import GraphService, TaskCreate
from workgraph.orchestrator import service as service_module
from workgraph.orchestrator.coordinator import build_coordinator
from workgraph.orchestrator.service import (
    CoordinatorService,
    ServiceState,
    load_state,
    notify_graph_changed,
    request_service,
    running_state,
    save_state,
    send_request,
)

pytestmark = [
    allure.epic("Coordinator"),
    allure.feature("Control Channel"),
]


@pytest.fixture()
def socket_path() -> Iterator[Path]:
    # AF_UNIX paths are limited to ~100 bytes; pytest tmp paths can exceed that.
    directory = Path(tempfile.mkdtemp(prefix="wg-", dir="/tmp"))
    try:
        yield directory / "d.sock"
    finally:
        shutil.rmtree(directory, ignore_errors=True)


@pytest.fixture()
def running_service(
    graph_dir,
    registry,
    fake_processes,
    socket_path,
) -> Iterator[CoordinatorService]:
    settings = Settings(
        graph_dir=graph_dir,
        coordinator=CoordinatorSettings(executor="echo", max_agents=2, poll_interval_seconds=60),
    )
    coordinator = build_coordinator(settings, registry=registry, spawner=fake_processes.spawn)
    service = CoordinatorService(coordinator, graph_dir=graph_dir, socket_path=socket_path)
    thread = threading.Thread(target=service.run, daemon=True)
    thread.start()
    assert service.wait_ready(5)
    assert _wait_for(lambda: service.coordinator.ticks >= 1)
    try:
        yield service
    finally:
        service.request_stop()
        thread.join(timeout=10)


def test_status_round_trip(running_service: CoordinatorService, graph_dir: Path) -> None:
    response = request_service(graph_dir, {"cmd": "status"})

    assert response["ok"] is True
    assert response["socket"] == str(running_service.socket_path)
    assert response["context"]["max_agents"] == 2
    assert load_state(graph_dir).socket_path == str(running_service.socket_path)


def test_graph_change_wakes_service_and_dispatches(
    running_service: CoordinatorService,
    graph_dir: Path,
    store,
    fake_processes,
) -> None:
    notifications: list[bool] = []
    service = GraphService(
        store,
        notifier=lambda: notifications.append(notify_graph_changed(graph_dir)),
    )

    service.add(TaskCreate(title="Draft", task_id="draft"))

    assert notifications == [True]
    assert _wait_for(lambda: store.load().require_task("draft").status == Status.IN_PROGRESS)
    assert store.load().require_task("draft").assigned == "agent-1"
    assert len(fake_processes.spawned) == 1


def test_pause_resume_and_reconfigure(running_service: CoordinatorService, graph_dir: Path) -> None:
    paused = request_service(graph_dir, {"cmd": "pause"})
    reconfigured = request_service(
        graph_dir,
        {"cmd": "reconfigure", "max_agents": 5, "poll_interval": 2.5},
    )
    resumed = request_service(graph_dir, {"cmd": "resume"})

    assert paused["context"]["paused"] is True
    assert reconfigured["context"]["max_agents"] == 5
    assert reconfigured["context"]["poll_interval_seconds"] == 2.5
    assert resumed["context"]["paused"] is False
    assert running_service.coordinator.context.max_agents == 5


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"cmd": "dance"}, "Unknown command"),
        ({"cmd": "reconfigure"}, "at least one"),
        ({"cmd": "reconfigure", "max_agents": 0}, "max_agents must be > 0"),
        ({"cmd": "spawn"}, "'task_id' is required"),
        ({"cmd": "spawn", "task_id": "ghost"}, "ghost"),
        ({"cmd": "kill", "agent_id": "agent-9"}, "Unknown agent"),
        ({"cmd": "heartbeat", "agent_id": "agent-9"}, "No alive agent"),
    ],
)
def test_bad_requests_report_errors(running_service: CoordinatorService, payload, message) -> None:
    with pytest.raises(ServiceError, match=message):
        send_request(running_service.socket_path, payload)


def test_spawn_agents_heartbeat_and_kill(
    running_service: CoordinatorService,
    graph_dir: Path,
    store,
    fake_processes,
) -> None:
    running_service.coordinator.reconfigure(paused=True)
    GraphService(store).add(TaskCreate(title="Draft", task_id="draft"))

    spawned = request_service(graph_dir, {"cmd": "spawn", "task_id": "draft"})
    agents = request_service(graph_dir, {"cmd": "agents", "alive_only": True})
    beat = request_service(graph_dir, {"cmd": "heartbeat", "agent_id": spawned["agent_id"]})
    killed = request_service(graph_dir, {"cmd": "kill", "agent_id": spawned["agent_id"]})

    assert spawned["task_id"] == "draft"
    assert [agent["id"] for agent in agents["agents"]] == [spawned["agent_id"]]
    assert beat == {"ok": True}
    assert killed["agent"]["status"] == "dead"
    assert fake_processes.terminated == [spawned["pid"]]
    assert store.load().require_task("draft").status == Status.OPEN


def test_invalid_json_is_rejected(running_service: CoordinatorService) -> None:
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
        client.settimeout(5)
        client.connect(str(running_service.socket_path))
        client.sendall(b"not json\n[1, 2]\n")
        client.shutdown(socket.SHUT_WR)
        data = b""
        while chunk := client.recv(4096):
            data += chunk

    responses = [json.loads(line) for line in data.decode("utf-8").splitlines()]
    assert [response["ok"] for response in responses] == [False, False]
    assert responses[1]["error"] == "invalid request: request must be a JSON object"


def test_shutdown_removes_socket_and_state(
    graph_dir,
    registry,
    fake_processes,
    socket_path: Path,
) -> None:
    settings = Settings(graph_dir=graph_dir, coordinator=CoordinatorSettings(executor="echo"))
    coordinator = build_coordinator(settings, registry=registry, spawner=fake_processes.spawn)
    GraphService(coordinator.store).add(TaskCreate(title="Draft", task_id="draft"))
    service = CoordinatorService(coordinator, graph_dir=graph_dir, socket_path=socket_path)
    thread = threading.Thread(target=service.run, daemon=True)
    thread.start()
    assert service.wait_ready(5)

    send_request(socket_path, {"cmd": "shutdown", "kill_agents": True})
    thread.join(timeout=10)

    assert not thread.is_alive()
    assert not socket_path.exists()
    assert load_state(graph_dir) is None
    assert registry.alive_agents() == []
    assert notify_graph_changed(graph_dir) is False


def test_second_service_refuses_to_start(
    graph_dir,
    registry,
    fake_processes,
    socket_path,
    monkeypatch,
) -> None:
    save_state(graph_dir, ServiceState(pid=1, socket_path=str(socket_path), started_at="x"))
    settings = Settings(graph_dir=graph_dir, coordinator=CoordinatorSettings(executor="echo"))
    coordinator = build_coordinator(settings, registry=registry, spawner=fake_processes.spawn)
    monkeypatch.setattr(service_module, "is_process_alive", lambda pid: True)

    with pytest.raises(ServiceError, match="already running"):
        CoordinatorService(coordinator, graph_dir=graph_dir, socket_path=socket_path).run()


def test_running_state_drops_stale_state(graph_dir: Path, socket_path: Path) -> None:
    dead_pid = 2**22 + 12_345
    save_state(graph_dir, ServiceState(pid=dead_pid, socket_path=str(socket_path), started_at="x"))

    assert running_state(graph_dir) is None
    assert load_state(graph_dir) is None
    with pytest.raises(ServiceError, match="No coordinator service"):
        request_service(graph_dir, {"cmd": "status"})


def test_unreadable_state_is_ignored(graph_dir: Path) -> None:
    state_path = graph_dir / "service" / "state.json"
    state_path.parent.mkdir(parents=True)
    state_path.write_text("{broken", "utf-8")

    assert load_state(graph_dir) is None
    state_path.write_text('{"pid": 1}', "utf-8")
    assert load_state(graph_dir) is None


def test_unreachable_socket_raises(socket_path: Path) -> None:
    with pytest.raises(ServiceError, match="unreachable"):
        send_request(socket_path, {"cmd": "status"}, timeout_seconds=1)


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False
