"""Dispatcher: claim one ready task and launch a detached agent for it."""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Callable
from pathlib import Path

from workgraph.errors import ClaimConflictError, InvalidTransitionError, SpawnError
from workgraph.graph.models import Status
from workgraph.graph.services import claim_task, unclaim_task
from workgraph.graph.store import GraphStore
from workgraph.orchestrator.backend.base import AgentBackend, AgentLaunchRequest
from workgraph.orchestrator.models import AgentCreate, DispatchResult
from workgraph.orchestrator.process import spawn_detached, terminate_process
from workgraph.orchestrator.registry import AgentRegistry
from workgraph.orchestrator.routing import (
    ExecutionDefaults,
    WorkerResolver,
    build_dependency_context,
)
from workgraph.storage.common import utc_now

logger = logging.getLogger(__name__)

Spawner = Callable[..., int]


class Dispatcher:
    """Turn one ready task into exactly one running agent, or leave it untouched.

    The claim is persisted before the process is launched; a failed launch
    reopens the task.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: GraphStore,
        registry: AgentRegistry,
        resolver: WorkerResolver,
        backends: dict[str, AgentBackend],
        spawner: Spawner = spawn_detached,
        python_executable: str = sys.executable,
    ) -> None:
        self.store = store
        self.registry = registry
        self.resolver = resolver
        self.backends = backends
        self._spawner = spawner
        self._python = python_executable

    @property
    def graph_dir(self) -> Path:
        return self.store.graph_dir

    def dispatch(
        self,
        task_id: str,
        *,
        defaults: ExecutionDefaults,
        executor: str | None = None,
    ) -> DispatchResult:
        snapshot = self.store.load()
        task = snapshot.require_task(task_id)
        if task.status == Status.IN_PROGRESS:
            raise ClaimConflictError(f"Task {task_id!r} is already in progress")
        if task.status != Status.OPEN:
            raise InvalidTransitionError(
                f"Task {task_id!r} cannot be dispatched from status {task.status.value}",
            )

        context = build_dependency_context(snapshot, task)
        resolution = self.resolver.resolve(task, context, defaults)
        executor_name = executor or resolution.executor
        backend = self.backends.get(executor_name)
        if backend is None:
            raise SpawnError(f"Unknown executor: {executor_name!r}", transient=False)

        agent_id = self.registry.reserve_agent_id()
        graph_dir = self.graph_dir.resolve()
        workdir = graph_dir / "agents" / agent_id
        output_path = workdir / "output.log"
        request = AgentLaunchRequest(
            task_id=task_id,
            agent_id=agent_id,
            graph_dir=graph_dir,
            workdir=workdir,
            prompt=resolution.prompt,
            prompt_file=workdir / "prompt.txt",
            model=resolution.model,
            exec_command=task.exec,
        )
        try:
            command = backend.build_command(request)
        except OSError as error:
            raise SpawnError(f"Cannot prepare {agent_id}: {error}", transient=True) from error

        with self.store.mutate() as graph:
            claimed = claim_task(graph, task_id, actor=agent_id)
            claimed.add_log(
                f"Spawned {agent_id} with executor {executor_name}"
                + (f" (model {resolution.model})" if resolution.model else ""),
                actor=agent_id,
            )

        try:
            _write_metadata(
                workdir,
                {
                    "agent_id": agent_id,
                    "task_id": task_id,
                    "executor": executor_name,
                    "model": resolution.model,
                    "worker": resolution.worker,
                    "command": command.argv,
                    "started_at": utc_now().isoformat(),
                },
            )
            env = os.environ.copy()
            env.update(command.env)
            env["WORKGRAPH_DIR"] = str(graph_dir)
            env["WORKGRAPH_TASK_ID"] = task_id
            env["WORKGRAPH_AGENT_ID"] = agent_id
            if resolution.model:
                env["WORKGRAPH_MODEL"] = resolution.model
            wrapper_argv = [
                self._python,
                "-m",
                "workgraph.orchestrator.wrapper",
                "--dir",
                str(graph_dir),
                "--task-id",
                task_id,
                "--agent-id",
                agent_id,
                "--",
                *command.argv,
            ]
            pid = self._spawner(
                wrapper_argv,
                output_path=output_path,
                env=env,
                cwd=graph_dir.parent,
            )
        except SpawnError as error:
            self._rollback_claim(task_id, agent_id, reason=f"spawn failed: {error}")
            raise
        except Exception as error:
            logger.exception("Failed to launch %s for task %s", agent_id, task_id)
            self._rollback_claim(task_id, agent_id, reason=f"spawn failed: {error}")
            raise SpawnError(f"Failed to launch {agent_id}: {error}", transient=True) from error

        try:
            self.registry.register(
                AgentCreate(
                    agent_id=agent_id,
                    pid=pid,
                    task_id=task_id,
                    executor=executor_name,
                    model=resolution.model,
                    output_path=str(output_path),
                ),
            )
        except Exception as error:
            logger.exception("Failed to register %s, terminating pid %d", agent_id, pid)
            terminate_process(pid, grace_seconds=0, force=True)
            self._rollback_claim(task_id, agent_id, reason="agent registration failed")
            raise SpawnError(f"Agent registration failed: {error}", transient=True) from error

        logger.info("Spawned %s (pid %d) for task %s via %s", agent_id, pid, task_id, executor_name)
        return DispatchResult(
            task_id=task_id,
            agent_id=agent_id,
            pid=pid,
            executor=executor_name,
            model=resolution.model,
            output_path=str(output_path),
        )

    def _rollback_claim(self, task_id: str, agent_id: str, *, reason: str) -> None:
        with self.store.mutate() as graph:
            task = graph.get_task(task_id)
            if task is None or task.status != Status.IN_PROGRESS or task.assigned != agent_id:
                return
            unclaim_task(graph, task_id, reason=reason)
        logger.warning("Rolled back claim on %s: %s", task_id, reason)


def _write_metadata(workdir: Path, payload: dict[str, object]) -> None:
    workdir.mkdir(parents=True, exist_ok=True)
    (workdir / "metadata.json").write_text(
        json.dumps(payload, indent=2, sort_keys=True),
        "utf-8",
    )
