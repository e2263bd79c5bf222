"""Backend interface for building agent commands."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class AgentLaunchRequest:
    """Inputs required to build one agent command."""

    task_id: str
    agent_id: str
    graph_dir: Path
    workdir: Path
    prompt: str
    prompt_file: Path
    model: str | None = None
    exec_command: str | None = None


@dataclass(slots=True)
class AgentCommand:
    """Rendered agent command plus extra environment."""

    argv: list[str]
    env: dict[str, str] = field(default_factory=dict)


class AgentBackend(Protocol):
    """Protocol implemented by executor backends."""

    name: str

    def build_command(self, request: AgentLaunchRequest) -> AgentCommand:
        """Render the process command for one dispatch."""
