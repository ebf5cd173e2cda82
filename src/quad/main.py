"""CLI entrypoint for quad."""

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import rich_click as click

from quad import __version__
from quad.bridge.client import ApiClientError
from quad.controllers import (
    LOOP_ACTIONS,
    AddAgentCommand,
    AgentLookupCommand,
    ApiCommand,
    JobListCommand,
    JobSubmitCommand,
    LoopActionCommand,
    QuadCliController,
    RunCommand,
)
from quad.engine.models import AgentRole, AgentType

click.rich_click.USE_MARKDOWN = True
CONTROLLER = QuadCliController()

ROLE_CHOICES = [role.value for role in AgentRole]
TYPE_CHOICES = [agent_type.value for agent_type in AgentType]

port_option = click.option(
    "--port",
    type=click.IntRange(min=1, max=65535),
    default=None,
    help="API port of the running instance (default: QUAD_API_PORT or 4444).",
)


@click.group()
@click.version_option(version=__version__, prog_name="quad")
def quad() -> None:
    """Supervise CLI coding agents through a plan -> code -> audit -> push loop."""


@quad.command("run")
@click.option(
    "--port",
    type=click.IntRange(min=0, max=65535),
    default=None,
    help="API port to bind on 127.0.0.1 (0 picks a free port).",
)
@click.option("--no-api", is_flag=True, default=False, help="Do not start the HTTP API.")
@click.option("--no-bridge", is_flag=True, default=False, help="Do not watch the job file.")
@click.option("--job-file", type=click.Path(path_type=Path), default=None, help="Job file path.")
@click.option("--demo", is_flag=True, default=False, help="Seed three demo agents.")
@click.option(
    "--auto-restart/--no-auto-restart",
    default=None,
    help="Restart failed agents with backoff (default: QUAD_AUTO_RESTART).",
)
@click.option("--start-loop", is_flag=True, default=False, help="Start the loop immediately.")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging.")
@click.option("--quiet", "-q", is_flag=True, default=False, help="Warnings and errors only.")
def run(  # noqa: PLR0913
    port: int | None,
    no_api: bool,
    no_bridge: bool,
    job_file: Path | None,
    demo: bool,
    auto_restart: bool | None,
    start_loop: bool,
    verbose: bool,
    quiet: bool,
) -> None:
    """Run agents, the job bridge and the API until interrupted."""

    if verbose and quiet:
        raise click.UsageError("--verbose and --quiet are mutually exclusive.")
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    with _cli_errors():
        _emit_lines(
            CONTROLLER.run(
                RunCommand(
                    port=port,
                    enable_api=not no_api,
                    enable_bridge=not no_bridge,
                    job_file=job_file,
                    demo=demo,
                    auto_restart=auto_restart,
                    start_loop=start_loop,
                ),
                on_ready=_emit_lines,
            ),
        )


@quad.command("status")
@port_option
def status(port: int | None) -> None:
    """Show loop status of a running instance."""

    _call(CONTROLLER.status, ApiCommand(port=port))


@quad.command("agents")
@port_option
def agents(port: int | None) -> None:
    """List agents of a running instance."""

    _call(CONTROLLER.agents, ApiCommand(port=port))


@quad.command("agent")
@click.argument("agent_id")
@port_option
def agent(agent_id: str, port: int | None) -> None:
    """Show one agent with its recent output."""

    _call(CONTROLLER.agent, AgentLookupCommand(port=port, agent_id=agent_id))


@quad.command("add-agent")
@click.option("--name", required=True, help="Display name.")
@click.option("--id", "agent_id", default=None, help="Agent id (default: generated api-...).")
@click.option("--type", "agent_type", type=click.Choice(TYPE_CHOICES), default=None)
@click.option("--role", type=click.Choice(ROLE_CHOICES), default=None)
@click.option("--command", "command_line", default="", help="Shell command to run.")
@click.option("--arg", "args", multiple=True, help="Command argument. Can be repeated.")
@port_option
def add_agent(  # noqa: PLR0913
    name: str,
    agent_id: str | None,
    agent_type: str | None,
    role: str | None,
    command_line: str,
    args: tuple[str, ...],
    port: int | None,
) -> None:
    """Add and start an agent on a running instance."""

    _call(
        CONTROLLER.add_agent,
        AddAgentCommand(
            port=port,
            name=name,
            agent_id=agent_id,
            agent_type=agent_type,
            role=role,
            command=command_line,
            args=args,
        ),
    )


@quad.command("remove-agent")
@click.argument("agent_id")
@port_option
def remove_agent(agent_id: str, port: int | None) -> None:
    """Kill and remove an agent."""

    _call(CONTROLLER.remove_agent, AgentLookupCommand(port=port, agent_id=agent_id))


@quad.command("loop")
@click.argument("action", type=click.Choice(list(LOOP_ACTIONS)))
@port_option
def loop(action: str, port: int | None) -> None:
    """Start, pause or reset the loop."""

    _call(CONTROLLER.loop, LoopActionCommand(port=port, action=action))


@quad.group()
def job() -> None:
    """Job file commands."""


@job.command("submit")
@click.option("--name", required=True, help="Job name (becomes the agent name).")
@click.option("--command", "command_line", required=True, help="Shell command to run.")
@click.option("--id", "job_id", default=None, help="Job id (default: random).")
@click.option("--role", type=click.Choice(ROLE_CHOICES), default="custom", show_default=True)
@click.option("--agent", type=click.Choice(TYPE_CHOICES), default="custom", show_default=True)
@click.option("--task", default="", help="Task text exported to the agent as QUAD_TASK.")
@click.option("--arg", "args", multiple=True, help="Command argument. Can be repeated.")
@click.option("--job-file", type=click.Path(path_type=Path), default=None, help="Job file path.")
def job_submit(  # noqa: PLR0913
    name: str,
    command_line: str,
    job_id: str | None,
    role: str,
    agent: str,
    task: str,
    args: tuple[str, ...],
    job_file: Path | None,
) -> None:
    """Append a pending job to the job file."""

    _call(
        CONTROLLER.submit_job,
        JobSubmitCommand(
            name=name,
            command=command_line,
            job_file=job_file,
            job_id=job_id,
            role=role,
            agent=agent,
            task=task,
            args=args,
        ),
    )


@job.command("list")
@click.option("--job-file", type=click.Path(path_type=Path), default=None, help="Job file path.")
def job_list(job_file: Path | None) -> None:
    """Print jobs and their status."""

    _call(CONTROLLER.list_jobs, JobListCommand(job_file=job_file))


def _call(handler: Callable[[Any], list[str]], command: object) -> None:
    with _cli_errors():
        _emit_lines(handler(command))


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (ApiClientError, ValueError, OSError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    quad()
