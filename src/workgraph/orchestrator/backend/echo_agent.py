"""Local demo agent for dispatch integration tests.

Reads the rendered prompt, prints it, and reports the outcome for its task
through the graph store. ``WORKGRAPH_ECHO_MODE`` selects the behaviour:
``done`` (default), ``fail``, ``exit:<code>`` (exit without reporting) or
``sleep:<seconds>`` (idle, then report done).
"""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path

from workgraph.graph.services import GraphService
from workgraph.graph.store import GraphStore


def main(argv: list[str] | None = None) -> int:
    """Run local deterministic agent."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    args = parser.parse_args(argv)

    task_id = os.environ["WORKGRAPH_TASK_ID"]
    agent_id = os.environ["WORKGRAPH_AGENT_ID"]
    service = GraphService(GraphStore(Path(os.environ["WORKGRAPH_DIR"])))

    print(Path(args.prompt_file).read_text("utf-8"), flush=True)

    mode = os.getenv("WORKGRAPH_ECHO_MODE", "done").strip().lower()
    if mode.startswith("exit:"):
        return int(mode.split(":", 1)[1])
    if mode.startswith("sleep:"):
        time.sleep(float(mode.split(":", 1)[1]))
    if mode == "fail":
        service.fail(task_id, reason="echo agent asked to fail", actor=agent_id)
        return 1
    service.log(task_id, "echo agent finished", actor=agent_id)
    service.done(task_id, actor=agent_id)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
