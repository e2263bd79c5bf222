"""Worker resolution, matching and instruction rendering for dispatch."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from workgraph.config import SUPPORTED_EXECUTORS
from workgraph.graph.models import Task, WorkGraph

logger = logging.getLogger(__name__)

WORKERS_FILE_NAME = "workers.json"
_CONTEXT_LOG_ENTRIES = 3


@dataclass(slots=True)
class WorkerProfile:
    """Identity a task can be bound to: which executor runs it and what it knows."""

    name: str
    executor: str | None = None
    model: str | None = None
    skills: tuple[str, ...] = ()
    preamble: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WorkerProfile:
        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("worker profile requires a non-empty 'name'")
        skills = raw.get("skills", [])
        if not isinstance(skills, list):
            raise ValueError(f"worker {name!r}: 'skills' must be a list")
        return cls(
            name=name.strip(),
            executor=raw.get("executor"),
            model=raw.get("model"),
            skills=tuple(str(skill) for skill in skills),
            preamble=raw.get("preamble"),
        )


@dataclass(slots=True)
class DependencyContext:
    """Read-only summary of one terminal dependency."""

    task_id: str
    title: str
    status: str
    artifacts: list[str] = field(default_factory=list)
    recent_log: list[str] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class ExecutionDefaults:
    """Coordinator-level executor and model used when a task does not say."""

    executor: str
    model: str | None = None


@dataclass(slots=True)
class WorkerResolution:
    """Executor, model and rendered instructions for one dispatch."""

    executor: str
    model: str | None
    prompt: str
    worker: str | None = None


class WorkerResolver(Protocol):
    """Resolve a task's bound worker into an executor and a final payload."""

    def resolve(
        self,
        task: Task,
        context: list[DependencyContext],
        defaults: ExecutionDefaults,
    ) -> WorkerResolution:
        """Return execution backend, model preference and rendered instructions."""


class WorkerMatcher(Protocol):
    """Pick the best-fit worker for a task from candidates."""

    def match(self, task: Task, candidates: list[WorkerProfile]) -> WorkerProfile | None:
        """Return a binding or ``None`` when nothing fits."""


class DefaultWorkerResolver:
    """Resolution order: task ``exec`` -> bound worker profile -> coordinator defaults."""

    def __init__(self, workers: list[WorkerProfile] | None = None) -> None:
        self._workers = {worker.name: worker for worker in workers or []}

    def resolve(
        self,
        task: Task,
        context: list[DependencyContext],
        defaults: ExecutionDefaults,
    ) -> WorkerResolution:
        profile = self._workers.get(task.worker) if task.worker else None
        if task.exec:
            executor = "shell"
        elif profile is not None and profile.executor:
            executor = profile.executor
        else:
            executor = defaults.executor
        if executor not in SUPPORTED_EXECUTORS:
            logger.warning(
                "Unknown executor %r for task %s, using %s",
                executor,
                task.id,
                defaults.executor,
            )
            executor = defaults.executor
        model = task.model or (profile.model if profile is not None else None) or defaults.model
        prompt = render_instructions(
            task,
            context,
            preamble=profile.preamble if profile is not None else None,
        )
        return WorkerResolution(
            executor=executor,
            model=model,
            prompt=prompt,
            worker=profile.name if profile is not None else task.worker,
        )


class SkillOverlapMatcher:
    """Prefer the worker sharing the most skills with the task; ties go to name order."""

    def match(self, task: Task, candidates: list[WorkerProfile]) -> WorkerProfile | None:
        wanted = set(task.skills)
        best: WorkerProfile | None = None
        best_score = 0
        for candidate in sorted(candidates, key=lambda worker: worker.name):
            score = len(wanted.intersection(candidate.skills))
            if score > best_score:
                best = candidate
                best_score = score
        if best is None and not wanted and candidates:
            return sorted(candidates, key=lambda worker: worker.name)[0]
        return best


def load_worker_profiles(graph_dir: Path) -> list[WorkerProfile]:
    """Read ``workers.json`` (a JSON list of profiles); missing file means none."""

    path = graph_dir / WORKERS_FILE_NAME
    if not path.exists():
        return []
    raw = json.loads(path.read_text("utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"{path} must contain a JSON list of worker profiles")
    return [WorkerProfile.from_dict(item) for item in raw if isinstance(item, dict)]


def build_dependency_context(graph: WorkGraph, task: Task) -> list[DependencyContext]:
    """Collect recorded outputs of the task's terminal dependencies."""

    context: list[DependencyContext] = []
    for blocker_id in task.blocked_by:
        blocker = graph.get_task(blocker_id)
        if blocker is None or not blocker.status.is_terminal:
            continue
        context.append(
            DependencyContext(
                task_id=blocker.id,
                title=blocker.title,
                status=blocker.status.value,
                artifacts=list(blocker.artifacts),
                recent_log=[entry.message for entry in blocker.log[-_CONTEXT_LOG_ENTRIES:]],
            ),
        )
    return context


def render_instructions(
    task: Task,
    context: list[DependencyContext],
    *,
    preamble: str | None = None,
) -> str:
    """Render the final instructions handed to an agent."""

    context_lines: list[str] = []
    for dep in context:
        context_lines.append(f"- From {dep.task_id} ({dep.title}, {dep.status})")
        if dep.artifacts:
            context_lines.append(f"  artifacts: {', '.join(dep.artifacts)}")
        for message in dep.recent_log:
            context_lines.append(f"  log: {message}")
    context_text = "\n".join(context_lines) or "No context from dependencies"

    iteration_note = ""
    if task.loop_iteration:
        iteration_note = (
            f"\nThis is iteration {task.loop_iteration} of a review loop. "
            "Read the task log for feedback from the previous pass.\n"
        )

    header = f"{preamble.strip()}\n\n" if preamble else ""
    return (
        f"{header}"
        f"# Task Assignment\n"
        f"\n"
        f"- ID: {task.id}\n"
        f"- Title: {task.title}\n"
        f"- Description: {task.description or ''}\n"
        f"{iteration_note}"
        f"\n"
        f"## Context from Dependencies\n"
        f"{context_text}\n"
        f"\n"
        f"## Required Workflow\n"
        f"1. Log progress as you work: wg log {task.id} \"<message>\"\n"
        f"2. Record files you produce: wg artifact {task.id} <path>\n"
        f"3. When finished: wg done {task.id}\n"
        f"   If this pass needs no further review iterations: wg done {task.id} --converged\n"
        f"4. If you cannot finish: wg fail {task.id} --reason \"<why>\"\n"
    )
