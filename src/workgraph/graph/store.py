"""Durable JSONL graph storage with exclusive-lock-then-rewrite writes."""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from workgraph.errors import GraphStoreError
from workgraph.graph.models import Task, WorkGraph

GRAPH_FILE_NAME = "graph.jsonl"
_LOCK_SUFFIX = ".lock"


def load_graph(path: Path) -> WorkGraph:
    """Parse a graph file; blank lines and ``#`` comments are skipped."""

    graph = WorkGraph()
    try:
        handle = path.open(encoding="utf-8")
    except FileNotFoundError as error:
        raise GraphStoreError(f"Graph file not found: {path}") from error
    with handle:
        for line_no, line in enumerate(handle, start=1):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            try:
                raw = json.loads(stripped)
            except json.JSONDecodeError as error:
                raise GraphStoreError(f"Invalid JSON on line {line_no} of {path}: {error}") from error
            if not isinstance(raw, dict):
                raise GraphStoreError(f"Line {line_no} of {path} is not a JSON object")
            if raw.get("kind", "task") != "task":
                continue
            try:
                graph.add_task(Task.from_dict(raw))
            except (TypeError, ValueError) as error:
                raise GraphStoreError(f"Invalid task on line {line_no} of {path}: {error}") from error
    return graph


def render_graph(graph: WorkGraph) -> str:
    """Serialize one compact JSON record per task line."""

    lines = [
        json.dumps(task.to_dict(), ensure_ascii=False, separators=(",", ":"))
        for task in graph.tasks()
    ]
    return "".join(f"{line}\n" for line in lines)


class GraphStore:
    """Owns the graph file; every write runs under an exclusive sidecar lock.

    Reads are lock-free: writers replace the file atomically, so a reader always
    observes the last fully written state.
    """

    def __init__(self, graph_dir: Path) -> None:
        self.graph_dir = graph_dir
        self.path = graph_dir / GRAPH_FILE_NAME
        self.lock_path = self.path.with_suffix(self.path.suffix + _LOCK_SUFFIX)

    def exists(self) -> bool:
        return self.path.exists()

    def init(self) -> None:
        """Create an empty graph file if none exists."""

        self.graph_dir.mkdir(parents=True, exist_ok=True)
        with self._locked():
            if not self.path.exists():
                _atomic_write_text(self.path, "")

    def load(self) -> WorkGraph:
        """Snapshot of the last fully written graph state."""

        return load_graph(self.path)

    @contextmanager
    def mutate(self) -> Iterator[WorkGraph]:
        """Locked read-modify-write; changes persist only if the block succeeds.

        The file is left untouched when the block made no changes.
        """

        with self._locked():
            graph = load_graph(self.path)
            before = render_graph(graph)
            yield graph
            after = render_graph(graph)
            if after != before:
                _atomic_write_text(self.path, after)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        with self.lock_path.open("a+", encoding="utf-8") as lock_handle:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
