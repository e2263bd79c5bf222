"""Command-template and shell backends for detached agents."""

from __future__ import annotations

import shlex
import sys

from workgraph.config import ExecutorSettings
from workgraph.errors import SpawnError
from workgraph.orchestrator.backend.base import AgentCommand, AgentLaunchRequest


class CliAgentBackend:
    """Render a CLI agent command template, e.g. ``claude --print {prompt}``."""

    def __init__(self, *, name: str, command_template: str, default_model: str) -> None:
        self.name = name
        self.command_template = command_template
        self.default_model = default_model

    @classmethod
    def claude(cls, settings: ExecutorSettings) -> CliAgentBackend:
        return cls(
            name="claude",
            command_template=settings.claude_command_template,
            default_model=settings.default_claude_model,
        )

    def build_command(self, request: AgentLaunchRequest) -> AgentCommand:
        request.prompt_file.parent.mkdir(parents=True, exist_ok=True)
        request.prompt_file.write_text(request.prompt, "utf-8")
        argv = _build_run_args(
            command_template=self.command_template,
            model=request.model or self.default_model,
            prompt=request.prompt,
            prompt_file=str(request.prompt_file),
            task_id=request.task_id,
        )
        return AgentCommand(argv=argv)


class ShellBackend:
    """Run the task's ``exec`` command through ``/bin/sh -c``."""

    name = "shell"

    def build_command(self, request: AgentLaunchRequest) -> AgentCommand:
        command = (request.exec_command or "").strip()
        if not command:
            raise SpawnError(
                f"Task {request.task_id!r} has no exec command for the shell executor.",
                transient=False,
            )
        return AgentCommand(argv=["/bin/sh", "-c", command])


class EchoBackend:
    """Deterministic local agent that echoes the prompt and reports done."""

    name = "echo"

    def build_command(self, request: AgentLaunchRequest) -> AgentCommand:
        request.prompt_file.parent.mkdir(parents=True, exist_ok=True)
        request.prompt_file.write_text(request.prompt, "utf-8")
        return AgentCommand(
            argv=[
                sys.executable,
                "-m",
                "workgraph.orchestrator.backend.echo_agent",
                "--prompt-file",
                str(request.prompt_file),
            ],
        )


def _build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: str,
    task_id: str,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise SpawnError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise SpawnError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(prompt_file),
            task_id=shlex.quote(task_id),
        )
    except (KeyError, IndexError) as error:
        raise SpawnError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise SpawnError("Agent command template rendered empty command.", transient=False)
    return argv
