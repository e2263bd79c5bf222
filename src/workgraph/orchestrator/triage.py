"""Dead-agent triage: classify partial output into done, continue or restart."""

from __future__ import annotations

import json
import logging
import re
import shlex
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from workgraph.graph.models import Task

logger = logging.getLogger(__name__)

_DONE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\btask (?:is )?complete(?:d)?\b"),
    re.compile(r"\ball tests pass(?:ed)?\b"),
    re.compile(r"\bsuccessfully completed\b"),
)
_CONTINUE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bcompleted step\b"),
    re.compile(r"\bnow working on\b"),
    re.compile(r"\bprogress:"),
    re.compile(r"\bcheckpoint:"),
)
# Completion claims only count near the end of the output.
_DONE_WINDOW_LINES = 5


class TriageVerdict(str, Enum):
    """Recovery action for the task of a dead agent."""

    DONE = "done"
    CONTINUE = "continue"
    RESTART = "restart"


@dataclass(slots=True)
class TriageResult:
    """Verdict plus diagnostics for the task log."""

    verdict: TriageVerdict
    reason: str
    summary: str | None = None


@dataclass(slots=True)
class TriageInput:
    """What a strategy may look at: the task and the tail of the agent's output."""

    task: Task
    agent_id: str
    output_tail: str


class TriageStrategy(Protocol):
    """Pluggable classifier injected into dead-agent handling."""

    def classify(self, payload: TriageInput) -> TriageResult:
        """Return a verdict for the dead agent's task."""


class OutputPatternTriage:
    """Deterministic classification from phrases in the output tail."""

    def classify(self, payload: TriageInput) -> TriageResult:
        lines = [line.lower() for line in payload.output_tail.splitlines() if line.strip()]
        if not lines:
            return TriageResult(TriageVerdict.RESTART, reason="no output recorded")
        # The latest marker wins; progress on a line outranks a completion claim.
        for distance, line in enumerate(reversed(lines)):
            marker = _first_match(line, _CONTINUE_PATTERNS)
            if marker is not None:
                return TriageResult(
                    TriageVerdict.CONTINUE,
                    reason=f"matched {marker!r}",
                    summary=_last_lines(payload.output_tail, 20),
                )
            marker = _first_match(line, _DONE_PATTERNS)
            if marker is not None and distance < _DONE_WINDOW_LINES:
                return TriageResult(TriageVerdict.DONE, reason=f"matched {marker!r}")
        return TriageResult(TriageVerdict.RESTART, reason="no progress markers found")


class CommandTriage:
    """Delegate classification to an external command.

    The command receives a JSON payload on stdin and must print a JSON object
    ``{"verdict": "done|continue|restart", "reason": "...", "summary": "..."}``.
    """

    def __init__(self, command: str, *, timeout_seconds: float) -> None:
        self.argv = shlex.split(command)
        if not self.argv:
            raise ValueError("Triage command is empty.")
        self.timeout_seconds = timeout_seconds

    def classify(self, payload: TriageInput) -> TriageResult:
        request = json.dumps(
            {
                "task_id": payload.task.id,
                "title": payload.task.title,
                "description": payload.task.description or "",
                "agent_id": payload.agent_id,
                "output": payload.output_tail,
            },
            ensure_ascii=False,
        )
        completed = subprocess.run(  # noqa: S603
            self.argv,
            input=request,
            capture_output=True,
            text=True,
            timeout=self.timeout_seconds,
            check=False,
        )
        if completed.returncode != 0:
            raise RuntimeError(
                f"Triage command exited with {completed.returncode}: {completed.stderr.strip()}",
            )
        raw = json.loads(completed.stdout)
        verdict = TriageVerdict(str(raw.get("verdict", "")).strip().lower())
        summary = raw.get("summary")
        return TriageResult(
            verdict=verdict,
            reason=str(raw.get("reason", "classified by triage command")),
            summary=str(summary) if summary else None,
        )


def run_triage_bounded(
    strategy: TriageStrategy,
    payload: TriageInput,
    *,
    timeout_seconds: float,
) -> TriageResult | None:
    """Classify in a daemon thread; ``None`` on timeout or classifier error."""

    outcome: list[TriageResult] = []
    failure: list[BaseException] = []

    def _target() -> None:
        try:
            outcome.append(strategy.classify(payload))
        except Exception as error:  # noqa: BLE001
            failure.append(error)

    worker = threading.Thread(target=_target, name=f"triage-{payload.agent_id}", daemon=True)
    worker.start()
    worker.join(timeout_seconds)
    if worker.is_alive():
        logger.warning(
            "Triage for %s timed out after %.1fs, falling back to unclaim",
            payload.task.id,
            timeout_seconds,
        )
        return None
    if failure:
        logger.warning("Triage for %s failed: %s", payload.task.id, failure[0])
        return None
    return outcome[0] if outcome else None


def read_output_tail(path: Path | None, *, max_bytes: int) -> str:
    """Last ``max_bytes`` of an agent's output log; empty when unreadable."""

    if path is None:
        return ""
    try:
        with path.open("rb") as handle:
            handle.seek(0, 2)
            size = handle.tell()
            handle.seek(max(0, size - max_bytes))
            data = handle.read()
    except OSError:
        return ""
    return data.decode("utf-8", errors="replace")


def recovery_description(task: Task, result: TriageResult, *, agent_id: str) -> str:
    """Task description with recovery context prepended for a continuation."""

    summary = result.summary or "(no summary available)"
    note = (
        f"[Recovery] A previous agent ({agent_id}) died before finishing this task.\n"
        f"Triage: {result.reason}\n"
        f"Last recorded output:\n{summary}\n"
        f"Continue from where it stopped instead of starting over.\n"
    )
    base = _strip_recovery_note(task.description or "")
    return f"{note}\n{base}" if base else note


def _strip_recovery_note(description: str) -> str:
    if not description.startswith("[Recovery]"):
        return description
    _, separator, rest = description.partition("\n\n")
    return rest if separator else ""


def _first_match(line: str, patterns: tuple[re.Pattern[str], ...]) -> str | None:
    for pattern in patterns:
        match = pattern.search(line)
        if match is not None:
            return match.group(0)
    return None


def _last_lines(text: str, count: int) -> str:
    lines = [line for line in text.splitlines() if line.strip()]
    return "\n".join(lines[-count:])
