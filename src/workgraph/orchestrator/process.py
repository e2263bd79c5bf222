"""OS process helpers: detached spawn, liveness polling, reaping, termination."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from pathlib import Path

from workgraph.errors import SpawnError
from workgraph.orchestrator.models import AgentStatus

logger = logging.getLogger(__name__)


def process_liveness(pid: int) -> AgentStatus:
    """Signal-0 probe; zombies count as dead, pids we may not signal as unknown."""

    if pid <= 0:
        return AgentStatus.DEAD
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return AgentStatus.DEAD
    except PermissionError:
        return AgentStatus.UNKNOWN
    return AgentStatus.DEAD if _is_zombie(pid) else AgentStatus.ALIVE


def is_process_alive(pid: int) -> bool:
    return process_liveness(pid) != AgentStatus.DEAD


def reap_children() -> int:
    """Collect exit statuses of finished children without blocking."""

    reaped = 0
    while True:
        try:
            pid, _ = os.waitpid(-1, os.WNOHANG)
        except ChildProcessError:
            break
        if pid == 0:
            break
        reaped += 1
    return reaped


def spawn_detached(
    argv: list[str],
    *,
    output_path: Path,
    env: dict[str, str] | None = None,
    cwd: Path | None = None,
) -> int:
    """Start ``argv`` in its own session so it outlives the caller; returns the pid."""

    if not argv:
        raise SpawnError("Refusing to spawn an empty command.", transient=False)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with output_path.open("ab") as output_handle:
            process = subprocess.Popen(  # noqa: S603
                argv,
                stdin=subprocess.DEVNULL,
                stdout=output_handle,
                stderr=subprocess.STDOUT,
                env=env,
                cwd=str(cwd) if cwd is not None else None,
                start_new_session=True,
                close_fds=True,
            )
    except FileNotFoundError as error:
        raise SpawnError(f"Agent command not found: {argv[0]}", transient=False) from error
    except OSError as error:
        raise SpawnError(f"Agent process failed to start: {error}", transient=True) from error
    return process.pid


def terminate_process(pid: int, *, grace_seconds: float, force: bool = False) -> bool:
    """SIGTERM the process group, then SIGKILL after ``grace_seconds``.

    ``force`` skips straight to SIGKILL. Returns False when nothing was running.
    """

    if not is_process_alive(pid):
        return False
    if not force:
        _signal_group(pid, signal.SIGTERM)
        deadline = time.monotonic() + max(0.0, grace_seconds)
        while time.monotonic() < deadline:
            reap_children()
            if not is_process_alive(pid):
                return True
            time.sleep(0.1)
        logger.warning("Process %d ignored SIGTERM for %.1fs, sending SIGKILL", pid, grace_seconds)
    _signal_group(pid, signal.SIGKILL)
    reap_children()
    return True


def _signal_group(pid: int, signum: signal.Signals) -> None:
    try:
        os.killpg(pid, signum)
    except ProcessLookupError:
        return
    except OSError:
        try:
            os.kill(pid, signum)
        except ProcessLookupError:
            return


def _is_zombie(pid: int) -> bool:
    stat_path = Path(f"/proc/{pid}/stat")
    try:
        raw = stat_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    _, _, rest = raw.rpartition(")")
    fields = rest.split()
    return bool(fields) and fields[0] == "Z"
