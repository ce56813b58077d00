"""CLI entry point for the command supervisor.

Commands:
- cmdsupervisor init: Write a default .cmdsupervisor/config.yaml
- cmdsupervisor check: Show the safety verdict for a command
- cmdsupervisor run: Run a command in the foreground or background
- cmdsupervisor shell: Interactive loop over a pooled shell session
- cmdsupervisor config: Show the effective configuration
- cmdsupervisor version: Show version information
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
import pydantic
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from cmdsupervisor.cli_ui.live_monitor import LiveTaskMonitor
from cmdsupervisor.core.config import (
    CONFIG_DIR_NAME,
    CONFIG_FILE_NAME,
    DEFAULT_CONFIG_YAML,
    SupervisorConfig,
    load_config,
)
from cmdsupervisor.core.errors import SupervisorError
from cmdsupervisor.core.formatting import truncate_for_display
from cmdsupervisor.core.models import ExecutionMode, ExecutionRequest, ForegroundResult, TaskStatus
from cmdsupervisor.core.supervisor import CommandSupervisor
from cmdsupervisor.metrics.aggregator import MetricsAggregator
from cmdsupervisor.metrics.dashboard import MetricsDashboard

console = Console()
logger = logging.getLogger(__name__)

EXIT_PROMPTS = {"exit", "quit"}


def get_repo_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def _parse_env(pairs: tuple[str, ...]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{pair}'", param_hint="--env")
        env[key] = value
    return env


def _load(ctx: click.Context) -> SupervisorConfig:
    try:
        return load_config(ctx.obj.get("config_path"), get_repo_path())
    except SupervisorError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


def _print_streams(stdout: str, stderr: str) -> None:
    if stdout:
        text, _ = truncate_for_display(stdout)
        console.print(escape(text), end="" if text.endswith("\n") else "\n", highlight=False)
    if stderr:
        text, _ = truncate_for_display(stderr)
        console.print(f"[red]{escape(text)}[/red]", end="" if text.endswith("\n") else "\n", highlight=False)


def _print_result(result: ForegroundResult) -> None:
    _print_streams(result.stdout, result.stderr)

    if result.timed_out:
        summary = f"[yellow]Timed out after {result.timeout_ms}ms[/yellow]"
    elif result.killed:
        summary = "[yellow]Killed[/yellow]"
    elif result.succeeded:
        summary = "[green]Exit 0[/green]"
    else:
        summary = f"[red]Exit {result.exit_code if result.exit_code is not None else result.signal}[/red]"
    details = [summary, f"{result.duration_ms:.0f}ms"]
    if result.signal:
        details.append(f"signal {result.signal}")
    if result.limit_exceeded:
        details.append(f"limit exceeded: {result.limit_exceeded}")
    if result.truncated:
        details.append("earlier output dropped")
    console.print(Panel(" | ".join(details), title=escape(result.command)))


@click.group()
@click.version_option(version="0.1.0")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to config.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Command Supervisor - safe process execution for AI coding agents.

    Validates, runs, buffers and terminates shell commands.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    _setup_logging(verbose)


@main.command()
def init() -> None:
    """Initialize project configuration."""
    config_dir = get_repo_path() / CONFIG_DIR_NAME
    config_path = config_dir / CONFIG_FILE_NAME

    if config_path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    config_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG_YAML)
    console.print(
        Panel(
            "[green]Project initialized![/green]\n\n"
            f"Created: {config_path}\n"
            "- timeouts, output limits and rlimits\n"
            "- session pool settings\n"
            "- extra validator rules",
            title="Command Supervisor Initialized",
        )
    )


@main.command()
@click.argument("command")
@click.pass_context
def check(ctx: click.Context, command: str) -> None:
    """Show whether COMMAND would be allowed to run."""
    config = _load(ctx)
    verdict = config.build_validator().validate(command)
    if verdict.allowed:
        console.print("[green]Allowed[/green]")
        return
    console.print(f"[red]Rejected:[/red] {escape(verdict.reason or '')}")
    sys.exit(1)


@main.command()
@click.argument("command")
@click.option("--timeout", "timeout_ms", type=int, default=None, help="Timeout in milliseconds")
@click.option("--cwd", type=click.Path(file_okay=False), default=None, help="Working directory")
@click.option("--env", "env_pairs", multiple=True, help="Environment override KEY=VALUE")
@click.option("--filter", "output_filter", default=None, help="Only show output lines matching this regex")
@click.option("--background", "-b", is_flag=True, help="Run as a background task and follow it")
@click.option("--stats", is_flag=True, help="Show process metrics afterwards")
@click.pass_context
def run(
    ctx: click.Context,
    command: str,
    timeout_ms: int | None,
    cwd: str | None,
    env_pairs: tuple[str, ...],
    output_filter: str | None,
    background: bool,
    stats: bool,
) -> None:
    """Run COMMAND under supervision."""
    config = _load(ctx)
    env = _parse_env(env_pairs)

    try:
        request = ExecutionRequest(
            command=command,
            cwd=Path(cwd) if cwd else None,
            env=env,
            timeout_ms=timeout_ms,
            mode=ExecutionMode.BACKGROUND if background else ExecutionMode.FOREGROUND,
            output_filter=output_filter,
        )
    except pydantic.ValidationError as e:
        console.print("[red]Invalid request:[/]")
        for err in e.errors():
            console.print(f"  [red]• {escape(str(err['msg']))}[/]")
        sys.exit(1)

    exit_code = 0
    supervisor = CommandSupervisor(config)
    try:
        if background:
            exit_code = _run_background(supervisor, request)
        else:
            result = supervisor.execute(request)
            _print_result(result)
            if not result.succeeded:
                exit_code = result.exit_code or 1
        if stats:
            MetricsDashboard(MetricsAggregator(supervisor.tracker), console).show()
    except SupervisorError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        exit_code = 1
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        exit_code = 130
    finally:
        supervisor.shutdown()

    if exit_code:
        sys.exit(exit_code)


def _run_background(supervisor: CommandSupervisor, request: ExecutionRequest) -> int:
    task_id = supervisor.execute_background(request)
    console.print(f"Started background task [cyan]{task_id}[/cyan]")

    monitor = LiveTaskMonitor(supervisor.background, console)
    try:
        monitor.monitor(task_id)
    except KeyboardInterrupt:
        outcome = supervisor.kill_background(task_id)
        console.print(f"[yellow]Killing {task_id}[/yellow]" if outcome.success else f"[dim]{outcome.reason}[/dim]")
        LiveTaskMonitor(supervisor.background, console).monitor(task_id)

    snapshot = supervisor.get_background_status(task_id, request.output_filter)
    _print_streams(snapshot.stdout, snapshot.stderr)
    style = "green" if snapshot.status == TaskStatus.COMPLETED else "red"
    console.print(f"[{style}]{task_id} {snapshot.status.value}[/{style}] after {snapshot.duration_ms:.0f}ms")
    if snapshot.status == TaskStatus.COMPLETED:
        return 0
    return snapshot.exit_code or 1


@main.command()
@click.option("--session-id", default=None, help="Reuse or create a named session")
@click.option("--cwd", type=click.Path(file_okay=False), default=None, help="Initial working directory")
@click.pass_context
def shell(ctx: click.Context, session_id: str | None, cwd: str | None) -> None:
    """Interactive loop over a persistent shell session."""
    config = _load(ctx)
    supervisor = CommandSupervisor(config)
    try:
        session_id = supervisor.acquire_session(session_id, cwd=cwd)
        console.print(f"Session [cyan]{session_id}[/cyan] ready. Type 'exit' to quit.")

        while True:
            try:
                line = click.prompt(session_id, prompt_suffix="$ ", default="", show_default=False)
            except (EOFError, click.Abort):
                break
            command = line.strip()
            if not command:
                continue
            if command in EXIT_PROMPTS:
                break
            try:
                output = supervisor.run_in_session(session_id, command)
            except SupervisorError as e:
                console.print(f"[red]Error:[/red] {escape(str(e))}")
                continue
            _print_streams(output.stdout, output.stderr)
            if output.timed_out:
                console.print("[yellow]Command timed out; session closed[/yellow]")
            if output.session_terminated:
                session_id = supervisor.acquire_session(session_id, cwd=cwd)
                console.print(f"[dim]Started a new session {session_id}[/dim]")
    except SupervisorError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    finally:
        supervisor.shutdown()


@main.command("config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Show the effective configuration."""
    config = _load(ctx)
    table = Table(title="Effective Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("shell", config.shell)
    table.add_row("default timeout", f"{config.default_timeout_ms}ms")
    table.add_row("max timeout", f"{config.max_timeout_ms}ms")
    table.add_row("grace period", f"{config.grace_period_ms}ms")
    table.add_row("max output", f"{config.max_output_bytes} bytes")
    table.add_row("max sessions", str(config.sessions.max_sessions))
    table.add_row("idle timeout", f"{config.sessions.idle_timeout_ms}ms")
    table.add_row("quiet period", f"{config.sessions.quiet_period_ms}ms")
    console.print(table)


@main.command()
def version() -> None:
    """Show version information."""
    from cmdsupervisor import __version__

    console.print(f"Command Supervisor v{__version__}")


if __name__ == "__main__":
    main()
