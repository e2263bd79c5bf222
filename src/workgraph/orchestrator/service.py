"""Control channel: coordinator daemon on a Unix socket plus its client helpers.

Requests and responses are single JSON objects, one per line. Every response
carries ``ok``; failures add ``error``.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import socket
import socketserver
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from workgraph.errors import ServiceError, WorkgraphError
from workgraph.orchestrator.coordinator import Coordinator
from workgraph.orchestrator.process import is_process_alive
from workgraph.storage.common import utc_now

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.json"
SOCKET_FILE_NAME = "daemon.sock"
LOG_FILE_NAME = "daemon.log"
DEFAULT_CLIENT_TIMEOUT_SECONDS = 10.0


def service_dir(graph_dir: Path) -> Path:
    return graph_dir / "service"


def default_socket_path(graph_dir: Path) -> Path:
    return service_dir(graph_dir) / SOCKET_FILE_NAME


@dataclass(slots=True)
class ServiceState:
    """Identity of the running daemon, persisted for clients."""

    pid: int
    socket_path: str
    started_at: str

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ServiceState:
        return cls(
            pid=int(raw["pid"]),
            socket_path=str(raw["socket_path"]),
            started_at=str(raw["started_at"]),
        )


def load_state(graph_dir: Path) -> ServiceState | None:
    path = service_dir(graph_dir) / STATE_FILE_NAME
    try:
        raw = json.loads(path.read_text("utf-8"))
    except FileNotFoundError:
        return None
    except ValueError:
        logger.warning("Ignoring unreadable service state file %s", path)
        return None
    try:
        return ServiceState.from_dict(raw)
    except (KeyError, TypeError, ValueError):
        logger.warning("Ignoring malformed service state file %s", path)
        return None


def save_state(graph_dir: Path, state: ServiceState) -> None:
    path = service_dir(graph_dir) / STATE_FILE_NAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(state), indent=2), "utf-8")


def remove_state(graph_dir: Path) -> None:
    (service_dir(graph_dir) / STATE_FILE_NAME).unlink(missing_ok=True)


def running_state(graph_dir: Path) -> ServiceState | None:
    """State of a live daemon; stale state from a dead pid is removed."""

    state = load_state(graph_dir)
    if state is None:
        return None
    if is_process_alive(state.pid):
        return state
    logger.info("Removing stale service state for dead pid %d", state.pid)
    remove_state(graph_dir)
    return None


def send_request(
    socket_path: Path,
    payload: dict[str, Any],
    *,
    timeout_seconds: float = DEFAULT_CLIENT_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    """Send one request and return the decoded response; raise on ``ok: false``."""

    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
            client.settimeout(timeout_seconds)
            client.connect(str(socket_path))
            client.sendall(json.dumps(payload).encode("utf-8") + b"\n")
            client.shutdown(socket.SHUT_WR)
            chunks: list[bytes] = []
            while True:
                chunk = client.recv(65_536)
                if not chunk:
                    break
                chunks.append(chunk)
    except OSError as error:
        raise ServiceError(f"Service unreachable at {socket_path}: {error}") from error

    line = b"".join(chunks).decode("utf-8").strip()
    if not line:
        raise ServiceError("Service closed the connection without a response")
    try:
        response = json.loads(line.splitlines()[0])
    except ValueError as error:
        raise ServiceError(f"Invalid service response: {line[:200]!r}") from error
    if not response.get("ok", False):
        raise ServiceError(str(response.get("error", "request failed")))
    return response


def request_service(graph_dir: Path, payload: dict[str, Any]) -> dict[str, Any]:
    """Send a request to the daemon serving ``graph_dir``."""

    state = running_state(graph_dir)
    if state is None:
        raise ServiceError(f"No coordinator service is running for {graph_dir}")
    return send_request(Path(state.socket_path), payload)


def notify_graph_changed(graph_dir: Path) -> bool:
    """Best-effort wake-up of a running daemon; False when none answered."""

    state = load_state(graph_dir)
    if state is None:
        return False
    try:
        send_request(Path(state.socket_path), {"cmd": "graph_changed"}, timeout_seconds=2.0)
    except ServiceError as error:
        logger.debug("Graph change notification skipped: %s", error)
        return False
    return True


class _ControlRequestHandler(socketserver.StreamRequestHandler):
    server: _ControlServer

    def handle(self) -> None:
        for raw_line in self.rfile:
            line = raw_line.strip()
            if not line:
                continue
            try:
                request = json.loads(line)
                if not isinstance(request, dict):
                    raise ValueError("request must be a JSON object")
                response = self.server.service.handle(request)
            except ValueError as error:
                response = {"ok": False, "error": f"invalid request: {error}"}
            self.wfile.write(json.dumps(response, default=str).encode("utf-8") + b"\n")
            self.wfile.flush()


class _ControlServer(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True

    def __init__(self, socket_path: Path, service: CoordinatorService) -> None:
        self.service = service
        super().__init__(str(socket_path), _ControlRequestHandler)


class CoordinatorService:
    """Runs coordinator ticks on wake-ups and on a periodic timer."""

    def __init__(
        self,
        coordinator: Coordinator,
        *,
        graph_dir: Path,
        socket_path: Path | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.graph_dir = graph_dir
        self.socket_path = socket_path or default_socket_path(graph_dir)
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._ready = threading.Event()
        self._kill_on_stop = False
        self._server: _ControlServer | None = None
        self._started_at = utc_now()

    def run(self) -> None:
        """Serve until shutdown is requested."""

        existing = running_state(self.graph_dir)
        if existing is not None and existing.pid != os.getpid():
            raise ServiceError(f"Coordinator service already running (pid {existing.pid})")

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        self.socket_path.unlink(missing_ok=True)
        self._server = _ControlServer(self.socket_path, self)
        server_thread = threading.Thread(
            target=self._server.serve_forever,
            name="workgraph-control",
            daemon=True,
        )
        server_thread.start()
        save_state(
            self.graph_dir,
            ServiceState(
                pid=os.getpid(),
                socket_path=str(self.socket_path),
                started_at=self._started_at.isoformat(),
            ),
        )
        logger.info("Coordinator service listening on %s (pid %d)", self.socket_path, os.getpid())
        self._ready.set()
        try:
            with self._signal_handlers():
                self._tick_loop()
        finally:
            if self._kill_on_stop:
                killed = self.coordinator.kill_all()
                logger.info("Killed %d agent(s) on shutdown", len(killed))
            self._server.shutdown()
            self._server.server_close()
            server_thread.join(timeout=5)
            self.socket_path.unlink(missing_ok=True)
            remove_state(self.graph_dir)
            logger.info("Coordinator service stopped")

    def wait_ready(self, timeout: float) -> bool:
        return self._ready.wait(timeout)

    def wake(self) -> None:
        self._wake.set()

    def request_stop(self, *, kill_agents: bool = False) -> None:
        self._kill_on_stop = self._kill_on_stop or kill_agents
        self._stop.set()
        self._wake.set()

    def handle(self, request: dict[str, Any]) -> dict[str, Any]:  # noqa: PLR0911
        """Execute one control request."""

        command = str(request.get("cmd", ""))
        try:
            if command == "graph_changed":
                self.wake()
                return {"ok": True}
            if command == "spawn":
                result = self.coordinator.spawn(
                    _required(request, "task_id"),
                    executor=request.get("executor"),
                )
                return {
                    "ok": True,
                    "agent_id": result.agent_id,
                    "pid": result.pid,
                    "task_id": result.task_id,
                    "executor": result.executor,
                    "output": result.output_path,
                }
            if command == "agents":
                agents = self.coordinator.registry.list_agents(
                    alive_only=bool(request.get("alive_only", False)),
                )
                return {"ok": True, "agents": [agent.to_dict() for agent in agents]}
            if command == "kill":
                agent = self.coordinator.kill_agent(
                    _required(request, "agent_id"),
                    force=bool(request.get("force", False)),
                )
                self.wake()
                return {"ok": True, "agent": agent.to_dict()}
            if command == "heartbeat":
                agent_id = _required(request, "agent_id")
                if not self.coordinator.registry.heartbeat(agent_id):
                    return {"ok": False, "error": f"No alive agent {agent_id}"}
                return {"ok": True}
            if command == "status":
                payload = self.coordinator.status()
                payload.update(
                    {
                        "ok": True,
                        "pid": os.getpid(),
                        "socket": str(self.socket_path),
                        "started_at": self._started_at.isoformat(),
                    },
                )
                return payload
            if command == "shutdown":
                self.request_stop(kill_agents=bool(request.get("kill_agents", False)))
                return {"ok": True}
            if command in {"pause", "resume"}:
                context = self.coordinator.reconfigure(paused=command == "pause")
                self.wake()
                return {"ok": True, "context": context.to_dict()}
            if command == "reconfigure":
                context = self.coordinator.reconfigure(**_reconfigure_changes(request))
                self.wake()
                return {"ok": True, "context": context.to_dict()}
        except (WorkgraphError, ValueError, TypeError) as error:
            return {"ok": False, "error": str(error)}
        return {"ok": False, "error": f"Unknown command: {command!r}"}

    def _tick_loop(self) -> None:
        while not self._stop.is_set():
            self._wake.clear()
            try:
                result = self.coordinator.tick()
            except Exception:
                logger.exception("Coordinator tick failed")
            else:
                if result.dispatched or result.dead_agents:
                    logger.info(
                        "Tick: %d alive, %d dispatched, %d dead",
                        result.alive,
                        len(result.dispatched),
                        len(result.dead_agents),
                    )
            self._wake.wait(timeout=self.coordinator.context.poll_interval_seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s, stopping", signal.Signals(signum).name)
            self.request_stop()

        installed = False
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            logger.debug("Not in main thread, signal handlers not installed")
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def configure_daemon_logging(graph_dir: Path, *, level: int = logging.INFO) -> Path:
    """Send daemon logs to ``<graph_dir>/service/daemon.log``."""

    log_path = service_dir(graph_dir) / LOG_FILE_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=str(log_path),
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return log_path


def _required(request: dict[str, Any], key: str) -> str:
    value = request.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"'{key}' is required")
    return value


def _reconfigure_changes(request: dict[str, Any]) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    if request.get("max_agents") is not None:
        changes["max_agents"] = int(request["max_agents"])
    if request.get("poll_interval") is not None:
        changes["poll_interval_seconds"] = float(request["poll_interval"])
    if request.get("executor") is not None:
        changes["executor"] = str(request["executor"])
    if request.get("model") is not None:
        changes["model"] = str(request["model"]) or None
    if not changes:
        raise ValueError("reconfigure needs at least one of max_agents, poll_interval, executor, model")
    return changes
