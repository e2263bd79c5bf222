"""Shared test fixtures."""

from __future__ import annotations

import itertools
import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from workgraph.graph.store import GraphStore
from workgraph.orchestrator import coordinator as coordinator_module
from workgraph.orchestrator.models import AgentStatus
from workgraph.orchestrator.registry import AgentRegistry


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    """Keep developer WORKGRAPH_* variables out of tests."""

    for name in list(os.environ):
        if name.startswith("WORKGRAPH_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def graph_dir(tmp_path: Path) -> Path:
    path = tmp_path / ".workgraph"
    GraphStore(path).init()
    return path


@pytest.fixture()
def store(graph_dir: Path) -> GraphStore:
    return GraphStore(graph_dir)


@pytest.fixture()
def registry(graph_dir: Path) -> Iterator[AgentRegistry]:
    agent_registry = AgentRegistry.for_graph_dir(graph_dir)
    try:
        yield agent_registry
    finally:
        agent_registry.close()


class FakeProcesses:
    """Process table stand-in: a spawner handing out pids plus a liveness set."""

    def __init__(self) -> None:
        self.alive: set[int] = set()
        self.unknown: set[int] = set()
        self.spawned: list[dict[str, object]] = []
        self.terminated: list[int] = []
        self._pids = itertools.count(900_001)

    def spawn(self, argv: list[str], *, output_path: Path, env=None, cwd=None) -> int:
        pid = next(self._pids)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.touch()
        self.alive.add(pid)
        self.spawned.append({"argv": argv, "pid": pid, "env": env, "output_path": output_path})
        return pid

    def liveness(self, pid: int) -> AgentStatus:
        if pid in self.unknown:
            return AgentStatus.UNKNOWN
        return AgentStatus.ALIVE if pid in self.alive else AgentStatus.DEAD

    def terminate(self, pid: int, *, grace_seconds: float, force: bool = False) -> bool:
        self.terminated.append(pid)
        was_alive = pid in self.alive
        self.alive.discard(pid)
        return was_alive

    def die(self, pid: int) -> None:
        self.alive.discard(pid)


@pytest.fixture()
def fake_processes(monkeypatch) -> FakeProcesses:
    processes = FakeProcesses()
    monkeypatch.setattr(coordinator_module, "process_liveness", processes.liveness)
    monkeypatch.setattr(coordinator_module, "terminate_process", processes.terminate)
    monkeypatch.setattr(coordinator_module, "reap_children", lambda: 0)
    return processes
