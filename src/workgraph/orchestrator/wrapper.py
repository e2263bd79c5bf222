"""Agent wrapper: runs the agent command and reports its exit if the agent did not.

Invoked as ``python -m workgraph.orchestrator.wrapper --dir D --task-id T
--agent-id A -- <agent argv...>``. The wrapper is the detached session leader,
so a kill of the process group reaches the agent as well.
"""

from __future__ import annotations

import argparse
import json
import subprocess
import sys
from pathlib import Path

from workgraph.errors import WorkgraphError
from workgraph.graph.services import GraphService
from workgraph.graph.store import GraphStore
from workgraph.orchestrator.service import notify_graph_changed
from workgraph.storage.common import utc_now


def run_wrapped(
    *,
    graph_dir: Path,
    task_id: str,
    agent_id: str,
    argv: list[str],
) -> int:
    """Run ``argv`` to completion, then apply the exit-code fallback."""

    try:
        completed = subprocess.run(argv, check=False)  # noqa: S603
        exit_code = completed.returncode
    except OSError as error:
        print(f"[wrapper] failed to start agent: {error}", flush=True)
        exit_code = 127

    _record_exit(graph_dir=graph_dir, agent_id=agent_id, exit_code=exit_code)
    service = GraphService(
        GraphStore(graph_dir),
        notifier=lambda: notify_graph_changed(graph_dir),
    )
    try:
        result = service.auto_complete(task_id, agent_id=agent_id, exit_code=exit_code)
    except WorkgraphError as error:
        print(f"[wrapper] could not report exit for {task_id}: {error}", flush=True)
        return exit_code
    if result is None:
        print(f"[wrapper] agent exited with code {exit_code}; task already reported", flush=True)
    else:
        print(
            f"[wrapper] agent exited with code {exit_code}; "
            f"task marked {result.task.status.value}",
            flush=True,
        )
    return exit_code


def main(argv: list[str] | None = None) -> int:
    raw = list(sys.argv[1:] if argv is None else argv)
    if "--" in raw:
        split = raw.index("--")
        own_args, command = raw[:split], raw[split + 1 :]
    else:
        own_args, command = raw, []

    parser = argparse.ArgumentParser(prog="workgraph-wrapper")
    parser.add_argument("--dir", required=True)
    parser.add_argument("--task-id", required=True)
    parser.add_argument("--agent-id", required=True)
    args = parser.parse_args(own_args)
    if not command:
        parser.error("agent command is required after --")

    return run_wrapped(
        graph_dir=Path(args.dir),
        task_id=args.task_id,
        agent_id=args.agent_id,
        argv=command,
    )


def _record_exit(*, graph_dir: Path, agent_id: str, exit_code: int) -> None:
    metadata_path = graph_dir / "agents" / agent_id / "metadata.json"
    try:
        payload = json.loads(metadata_path.read_text("utf-8"))
    except (OSError, ValueError):
        payload = {}
    payload["exit_code"] = exit_code
    payload["exited_at"] = utc_now().isoformat()
    metadata_path.parent.mkdir(parents=True, exist_ok=True)
    metadata_path.write_text(json.dumps(payload, indent=2, sort_keys=True), "utf-8")


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
