"""CLI entrypoint for workgraph."""

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

import rich_click as click

from workgraph import __version__
from workgraph.errors import WorkgraphError
from workgraph.orchestrator.controllers import (
    AgentCommand,
    GraphCliController,
    GraphReportCommand,
    ReconfigureCommand,
    ServiceCliController,
    ServiceRequestCommand,
    ServiceStartCommand,
    SpawnCommand,
    TaskAddCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskMutateCommand,
    TaskNoteCommand,
)

click.rich_click.USE_MARKDOWN = True
GRAPH_CONTROLLER = GraphCliController()
SERVICE_CONTROLLER = ServiceCliController()

CommandT = TypeVar("CommandT")

EXECUTOR_CHOICE = click.Choice(["claude", "shell", "echo"], case_sensitive=False)


@dataclass(slots=True)
class CliOptions:
    """Options shared by every subcommand."""

    graph_dir: Path | None
    as_json: bool


@click.group()
@click.version_option(version=__version__, prog_name="wg")
@click.option(
    "--dir",
    "graph_dir",
    type=click.Path(path_type=Path, file_okay=False),
    envvar="WORKGRAPH_DIR",
    default=None,
    help="Graph directory (default `.workgraph`).",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Machine-readable output.")
@click.pass_context
def wg(ctx: click.Context, graph_dir: Path | None, as_json: bool) -> None:
    """Task graph with loop edges and a coordinator for detached agents."""

    ctx.obj = CliOptions(graph_dir=graph_dir, as_json=as_json)


@wg.command("init")
@click.pass_obj
def init_graph(options: CliOptions) -> None:
    """Create an empty graph in the graph directory."""

    _run(GRAPH_CONTROLLER.init, options.graph_dir)


@wg.command("add")
@click.argument("title")
@click.option("--id", "task_id", default=None, help="Explicit task id (default: slug of title).")
@click.option("-d", "--description", default=None, help="Task description.")
@click.option(
    "--blocked-by",
    "blocked_by",
    multiple=True,
    help="Task id this task waits for. Can be repeated.",
)
@click.option("--loop-to", default=None, help="Upstream task reopened when this task completes.")
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Loop edge firing cap; required with --loop-to.",
)
@click.option(
    "--guard",
    default="always",
    show_default=True,
    help="`always`, `task-status:<task>:<status>` or `iteration-less-than:<n>`.",
)
@click.option("--delay", default=None, help="Loop re-entry delay, for example `10m`.")
@click.option("--not-before", default=None, help="RFC 3339 timestamp or relative delay (`2h`).")
@click.option("--exec", "exec_command", default=None, help="Shell command run instead of an LLM agent.")
@click.option("--model", default=None, help="Preferred model for this task.")
@click.option("--worker", default=None, help="Worker profile bound to this task.")
@click.option("--tag", "tags", multiple=True, help="Tag. Can be repeated.")
@click.option("--skill", "skills", multiple=True, help="Required skill. Can be repeated.")
@click.option("--input", "inputs", multiple=True, help="Input path. Can be repeated.")
@click.option("--deliverable", "deliverables", multiple=True, help="Expected output. Can be repeated.")
@click.option("--max-retries", type=click.IntRange(min=0), default=None, help="Retry cap.")
@click.option("--paused", is_flag=True, default=False, help="Create the task paused.")
@click.pass_obj
def add_task(  # noqa: PLR0913
    options: CliOptions,
    title: str,
    task_id: str | None,
    description: str | None,
    blocked_by: tuple[str, ...],
    loop_to: str | None,
    max_iterations: int | None,
    guard: str,
    delay: str | None,
    not_before: str | None,
    exec_command: str | None,
    model: str | None,
    worker: str | None,
    tags: tuple[str, ...],
    skills: tuple[str, ...],
    inputs: tuple[str, ...],
    deliverables: tuple[str, ...],
    max_retries: int | None,
    paused: bool,
) -> None:
    """Add a task to the graph."""

    _run(
        GRAPH_CONTROLLER.add,
        TaskAddCommand(
            graph_dir=options.graph_dir,
            title=title,
            task_id=task_id,
            description=description,
            blocked_by=blocked_by,
            loop_to=loop_to,
            max_iterations=max_iterations,
            guard=guard,
            delay=delay,
            not_before=not_before,
            exec_command=exec_command,
            model=model,
            worker=worker,
            tags=tags,
            skills=skills,
            inputs=inputs,
            deliverables=deliverables,
            max_retries=max_retries,
            paused=paused,
        ),
    )


@wg.command("list")
@click.option(
    "--status",
    type=click.Choice(
        ["open", "in-progress", "done", "blocked", "failed", "abandoned"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.pass_obj
def list_tasks(options: CliOptions, status: str | None) -> None:
    """List tasks."""

    _run(
        GRAPH_CONTROLLER.list_tasks,
        TaskListCommand(graph_dir=options.graph_dir, status=status, as_json=options.as_json),
    )


@wg.command("ready")
@click.pass_obj
def ready(options: CliOptions) -> None:
    """List tasks that could be dispatched right now."""

    _run(GRAPH_CONTROLLER.ready, GraphReportCommand(options.graph_dir, options.as_json))


@wg.command("show")
@click.argument("task_id")
@click.pass_obj
def show(options: CliOptions, task_id: str) -> None:
    """Show one task with its log."""

    _run(
        GRAPH_CONTROLLER.show,
        TaskInspectCommand(options.graph_dir, task_id, as_json=options.as_json),
    )


@wg.command("claim")
@click.argument("task_id")
@click.option("--actor", default=None, help="Claim holder (default: agent id or $USER).")
@click.pass_obj
def claim(options: CliOptions, task_id: str, actor: str | None) -> None:
    """Claim an open task."""

    _run(GRAPH_CONTROLLER.claim, TaskMutateCommand(options.graph_dir, task_id, actor=actor))


@wg.command("unclaim")
@click.argument("task_id")
@click.option("--reason", default=None, help="Why the claim is released.")
@click.pass_obj
def unclaim(options: CliOptions, task_id: str, reason: str | None) -> None:
    """Release a claim and reopen the task."""

    _run(GRAPH_CONTROLLER.unclaim, TaskMutateCommand(options.graph_dir, task_id, reason=reason))


@wg.command("done")
@click.argument("task_id")
@click.option(
    "--converged",
    is_flag=True,
    default=False,
    help="Work has converged: do not fire this task's loop edges.",
)
@click.pass_obj
def done(options: CliOptions, task_id: str, converged: bool) -> None:
    """Mark a task done."""

    _run(
        GRAPH_CONTROLLER.done,
        TaskMutateCommand(options.graph_dir, task_id, converged=converged),
    )


@wg.command("fail")
@click.argument("task_id")
@click.option("--reason", default=None, help="Failure reason.")
@click.pass_obj
def fail(options: CliOptions, task_id: str, reason: str | None) -> None:
    """Mark a task failed. Dependents still become ready."""

    _run(GRAPH_CONTROLLER.fail, TaskMutateCommand(options.graph_dir, task_id, reason=reason))


@wg.command("abandon")
@click.argument("task_id")
@click.option("--reason", default=None, help="Why the task is dropped.")
@click.pass_obj
def abandon(options: CliOptions, task_id: str, reason: str | None) -> None:
    """Mark a task abandoned."""

    _run(GRAPH_CONTROLLER.abandon, TaskMutateCommand(options.graph_dir, task_id, reason=reason))


@wg.command("retry")
@click.argument("task_id")
@click.pass_obj
def retry(options: CliOptions, task_id: str) -> None:
    """Reopen a failed task."""

    _run(GRAPH_CONTROLLER.retry, TaskMutateCommand(options.graph_dir, task_id))


@wg.command("reopen")
@click.argument("task_id")
@click.option("--reason", default=None, help="Why the task is reopened.")
@click.pass_obj
def reopen(options: CliOptions, task_id: str, reason: str | None) -> None:
    """Reopen a terminal task."""

    _run(GRAPH_CONTROLLER.reopen, TaskMutateCommand(options.graph_dir, task_id, reason=reason))


@wg.command("pause")
@click.argument("task_id")
@click.pass_obj
def pause(options: CliOptions, task_id: str) -> None:
    """Exclude a task from dispatch without changing its status."""

    _run(GRAPH_CONTROLLER.pause, TaskMutateCommand(options.graph_dir, task_id))


@wg.command("resume")
@click.argument("task_id")
@click.pass_obj
def resume(options: CliOptions, task_id: str) -> None:
    """Make a paused task dispatchable again."""

    _run(GRAPH_CONTROLLER.resume, TaskMutateCommand(options.graph_dir, task_id))


@wg.command("hold")
@click.argument("task_id")
@click.option("--reason", default=None, help="Why the task is held.")
@click.pass_obj
def hold(options: CliOptions, task_id: str, reason: str | None) -> None:
    """Move an open task to blocked."""

    _run(GRAPH_CONTROLLER.hold, TaskMutateCommand(options.graph_dir, task_id, reason=reason))


@wg.command("release")
@click.argument("task_id")
@click.pass_obj
def release(options: CliOptions, task_id: str) -> None:
    """Move a held task back to open."""

    _run(GRAPH_CONTROLLER.release, TaskMutateCommand(options.graph_dir, task_id))


@wg.command("reschedule")
@click.argument("task_id")
@click.option(
    "--not-before",
    default="",
    help="RFC 3339 timestamp or relative delay (`30m`); empty clears it.",
)
@click.pass_obj
def reschedule(options: CliOptions, task_id: str, not_before: str) -> None:
    """Set or clear a task's earliest start time."""

    _run(GRAPH_CONTROLLER.reschedule, TaskNoteCommand(options.graph_dir, task_id, not_before))


@wg.command("log")
@click.argument("task_id")
@click.argument("message")
@click.option("--actor", default=None, help="Log entry author.")
@click.pass_obj
def log_message(options: CliOptions, task_id: str, message: str, actor: str | None) -> None:
    """Append a message to a task's log."""

    _run(GRAPH_CONTROLLER.log, TaskNoteCommand(options.graph_dir, task_id, message, actor=actor))


@wg.command("artifact")
@click.argument("task_id")
@click.argument("path")
@click.pass_obj
def artifact(options: CliOptions, task_id: str, path: str) -> None:
    """Record a file produced by a task."""

    _run(GRAPH_CONTROLLER.artifact, TaskNoteCommand(options.graph_dir, task_id, path))


@wg.command("check")
@click.pass_obj
def check(options: CliOptions) -> None:
    """Report graph anomalies (dangling blockers, cycles, bad loop edges...)."""

    _run(GRAPH_CONTROLLER.check, GraphReportCommand(options.graph_dir, options.as_json))


@wg.command("rebuild-blocks")
@click.pass_obj
def rebuild_blocks(options: CliOptions) -> None:
    """Recompute every `blocks` list from `blocked_by`."""

    _run(GRAPH_CONTROLLER.rebuild_blocks, options.graph_dir)


@wg.command("why-blocked")
@click.argument("task_id")
@click.pass_obj
def why_blocked(options: CliOptions, task_id: str) -> None:
    """Explain why a task is not ready."""

    _run(
        GRAPH_CONTROLLER.why_blocked,
        TaskInspectCommand(options.graph_dir, task_id, as_json=options.as_json),
    )


@wg.command("critical-path")
@click.pass_obj
def critical_path(options: CliOptions) -> None:
    """Show the longest chain of unfinished dependent tasks."""

    _run(GRAPH_CONTROLLER.critical_path, GraphReportCommand(options.graph_dir, options.as_json))


@wg.group()
def service() -> None:
    """Coordinator service commands."""


@service.command("start")
@click.option(
    "--foreground/--background",
    default=False,
    show_default=True,
    help="Run in this process or detach.",
)
@click.option("--max-agents", type=click.IntRange(min=1), default=None, help="Concurrency limit.")
@click.option(
    "--poll-interval",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds between safety-net ticks.",
)
@click.option("--executor", type=EXECUTOR_CHOICE, default=None, help="Default executor.")
@click.option("--model", default=None, help="Default model.")
@click.pass_obj
def service_start(  # noqa: PLR0913
    options: CliOptions,
    foreground: bool,
    max_agents: int | None,
    poll_interval: float | None,
    executor: str | None,
    model: str | None,
) -> None:
    """Start the coordinator service."""

    _run(
        SERVICE_CONTROLLER.start,
        ServiceStartCommand(
            graph_dir=options.graph_dir,
            foreground=foreground,
            max_agents=max_agents,
            poll_interval=poll_interval,
            executor=executor.lower() if executor else None,
            model=model,
        ),
    )


@service.command("stop")
@click.option(
    "--kill-agents",
    is_flag=True,
    default=False,
    help="Terminate live agents too; by default they keep running.",
)
@click.pass_obj
def service_stop(options: CliOptions, kill_agents: bool) -> None:
    """Stop the coordinator service."""

    _run(
        SERVICE_CONTROLLER.stop,
        ServiceRequestCommand(options.graph_dir, kill_agents=kill_agents),
    )


@service.command("status")
@click.pass_obj
def service_status(options: CliOptions) -> None:
    """Show coordinator, task and agent status."""

    _run(
        SERVICE_CONTROLLER.status,
        ServiceRequestCommand(options.graph_dir, as_json=options.as_json),
    )


@service.command("pause")
@click.pass_obj
def service_pause(options: CliOptions) -> None:
    """Stop dispatching new agents; liveness checks continue."""

    _run(SERVICE_CONTROLLER.pause, ServiceRequestCommand(options.graph_dir))


@service.command("resume")
@click.pass_obj
def service_resume(options: CliOptions) -> None:
    """Resume dispatching."""

    _run(SERVICE_CONTROLLER.resume, ServiceRequestCommand(options.graph_dir))


@service.command("reconfigure")
@click.option("--max-agents", type=click.IntRange(min=1), default=None, help="Concurrency limit.")
@click.option(
    "--poll-interval",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds between safety-net ticks.",
)
@click.option("--executor", type=EXECUTOR_CHOICE, default=None, help="Default executor.")
@click.option("--model", default=None, help="Default model.")
@click.pass_obj
def service_reconfigure(
    options: CliOptions,
    max_agents: int | None,
    poll_interval: float | None,
    executor: str | None,
    model: str | None,
) -> None:
    """Change coordinator settings without a restart."""

    _run(
        SERVICE_CONTROLLER.reconfigure,
        ReconfigureCommand(
            graph_dir=options.graph_dir,
            max_agents=max_agents,
            poll_interval=poll_interval,
            executor=executor.lower() if executor else None,
            model=model,
        ),
    )


@service.command("tick")
@click.pass_obj
def service_tick(options: CliOptions) -> None:
    """Wake the running service, or run a single tick here when none is running."""

    _run(SERVICE_CONTROLLER.tick, ServiceRequestCommand(options.graph_dir, as_json=options.as_json))


@wg.command("spawn")
@click.argument("task_id")
@click.option("--executor", type=EXECUTOR_CHOICE, default=None, help="Override the executor.")
@click.pass_obj
def spawn(options: CliOptions, task_id: str, executor: str | None) -> None:
    """Launch an agent for a task now, ignoring readiness and capacity."""

    _run(
        SERVICE_CONTROLLER.spawn,
        SpawnCommand(options.graph_dir, task_id, executor=executor.lower() if executor else None),
    )


@wg.command("agents")
@click.option("--alive", "alive_only", is_flag=True, default=False, help="Only live agents.")
@click.pass_obj
def agents(options: CliOptions, alive_only: bool) -> None:
    """List agents from the registry."""

    _run(
        SERVICE_CONTROLLER.agents,
        AgentCommand(options.graph_dir, alive_only=alive_only, as_json=options.as_json),
    )


@wg.command("kill")
@click.argument("agent_id")
@click.option("--force", is_flag=True, default=False, help="SIGKILL without a grace period.")
@click.pass_obj
def kill(options: CliOptions, agent_id: str, force: bool) -> None:
    """Terminate an agent and reopen its task."""

    _run(SERVICE_CONTROLLER.kill, AgentCommand(options.graph_dir, agent_id=agent_id, force=force))


@wg.command("heartbeat")
@click.argument("agent_id", required=False)
@click.pass_obj
def heartbeat(options: CliOptions, agent_id: str | None) -> None:
    """Report that an agent is still working (default: `$WORKGRAPH_AGENT_ID`)."""

    _run(SERVICE_CONTROLLER.heartbeat, AgentCommand(options.graph_dir, agent_id=agent_id))


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (WorkgraphError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


def main() -> None:
    wg()


if __name__ == "__main__":  # pragma: no cover
    main()
