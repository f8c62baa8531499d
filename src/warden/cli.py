"""Warden CLI."""

import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from warden.config import WardenConfig, get_config_template, load_config, parse_duration
from warden.errors import NotRunningError
from warden.orchestrator import Warden
from warden.types import RemoteProcess

app = typer.Typer(help="Warden - Remote worker supervision over SSH")
console = Console()

CONFIG_FILE = "warden.yaml"
DEFAULT_USER = os.environ.get("USER", "local")


def setup_logging(verbose: bool = False):
    """Configure logging with rich handler."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_config(config_path: Path) -> WardenConfig:
    """Load the config file, exiting if it is missing."""
    if not config_path.exists():
        console.print(f"[red]Error:[/red] {config_path} not found. Run 'warden init' first.")
        raise typer.Exit(1)
    return load_config(config_path)


async def connect(warden: Warden, user: str, project: str) -> None:
    result = await warden.connect_project(user, project)
    if not result.ok:
        console.print(f"[red]Error:[/red] {result.message}")
        raise typer.Exit(1)
    console.print(f"[green]Connected[/green] to '{project}' (cwd: {result.value['cwd'] or 'unknown'})")


@app.command()
def init():
    """Write a configuration template in the current directory."""
    config_file = Path(CONFIG_FILE)

    if config_file.exists():
        console.print(f"[yellow]Warning:[/yellow] {CONFIG_FILE} already exists.")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit(0)

    config_file.write_text(get_config_template())

    console.print("[green]Initialized Warden.[/green]")
    console.print(f"  Config: {CONFIG_FILE}")
    console.print(f"\nEdit {CONFIG_FILE} to describe your projects and worker.")


@app.command("exec")
def exec_command(
    project: str = typer.Argument(..., help="Project id from the config"),
    command: list[str] = typer.Argument(..., help="Command to run on the remote host"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User the session belongs to"),
    config: Path = typer.Option(Path(CONFIG_FILE), "--config", "-c", help="Config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
):
    """Run a command in the project's remote shell."""
    setup_logging(verbose)
    warden_config = get_config(config)

    async def run():
        async with Warden(warden_config) as warden:
            await connect(warden, user, project)
            return await warden.execute(user, " ".join(command))

    result = asyncio.run(run())
    output = result.value
    if output is not None:
        if output.stdout:
            console.print(output.stdout.rstrip(), markup=False, highlight=False)
        if output.stderr:
            console.print(f"[yellow]{output.stderr.rstrip()}[/yellow]")
    if not result.ok:
        console.print(f"[red]Error:[/red] {result.message}")
        raise typer.Exit(output.exit_code if output is not None and output.exit_code > 0 else 1)


@app.command()
def deploy(
    project: str = typer.Argument(..., help="Project id from the config"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User the session belongs to"),
    config: Path = typer.Option(Path(CONFIG_FILE), "--config", "-c", help="Config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
):
    """Upload the worker executable if needed and make it executable."""
    setup_logging(verbose)
    warden_config = get_config(config)

    async def run():
        async with Warden(warden_config) as warden:
            await connect(warden, user, project)
            return await warden.deploy_artifact(user)

    result = asyncio.run(run())
    if not result.ok:
        console.print(f"[red]Error:[/red] {result.message}")
        raise typer.Exit(1)
    console.print(f"[green]Deployed.[/green] {result.message}")


@app.command()
def start(
    project: str = typer.Argument(..., help="Project id from the config"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port for the worker (default from config)"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User the session belongs to"),
    config: Path = typer.Option(Path(CONFIG_FILE), "--config", "-c", help="Config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
):
    """Start the worker detached on the remote host."""
    setup_logging(verbose)
    warden_config = get_config(config)

    async def run():
        async with Warden(warden_config) as warden:
            await connect(warden, user, project)
            return await warden.start_worker(user, port)

    result = asyncio.run(run())
    if not result.ok:
        console.print(f"[red]Error:[/red] {result.message}")
        raise typer.Exit(1)

    console.print(f"[green]{result.message}[/green]")
    console.print(process_table(result.value))
    if result.value.initial_output:
        console.print("\n[bold]Initial output:[/bold]")
        console.print(result.value.initial_output, markup=False, highlight=False)


@app.command()
def stop(
    project: str = typer.Argument(..., help="Project id from the config"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User the session belongs to"),
    config: Path = typer.Option(Path(CONFIG_FILE), "--config", "-c", help="Config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
):
    """Stop the worker, freeing its port."""
    setup_logging(verbose)
    warden_config = get_config(config)

    async def run():
        async with Warden(warden_config) as warden:
            await connect(warden, user, project)
            result = await warden.stop_worker(user)
            if result.ok or not isinstance(result.error, NotRunningError):
                return result
            # Not started by this process; fall back to whatever holds the port
            return await warden.release_port(user)

    result = asyncio.run(run())
    if not result.ok:
        console.print(f"[red]Error:[/red] {result.message}")
        raise typer.Exit(1)
    console.print(f"[green]Stopped.[/green] {result.message or f'Port {warden_config.process.port} is free'}")


@app.command()
def status(
    project: str = typer.Argument(..., help="Project id from the config"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User the session belongs to"),
    config: Path = typer.Option(Path(CONFIG_FILE), "--config", "-c", help="Config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
):
    """Show whether the worker is running and what holds its port."""
    setup_logging(verbose)
    warden_config = get_config(config)
    port = warden_config.process.port

    async def run():
        async with Warden(warden_config) as warden:
            await connect(warden, user, project)
            state = await warden.deployer.remote_state(user, warden_config.artifact.remote_path)
            holders = await warden.supervisor.listeners(user, port)
            return state, holders

    state, holders = asyncio.run(run())

    console.print(f"[bold]Project:[/bold] {project}")
    console.print(f"[bold]Artifact:[/bold] {warden_config.artifact.remote_path} ({state.value if state.ok else state.message})")
    if not holders.ok:
        console.print(f"[red]Error:[/red] {holders.message}")
        raise typer.Exit(1)
    if holders.value:
        pids = ", ".join(str(pid) for pid in holders.value)
        console.print(f"[bold]Port {port}:[/bold] [green]in use[/green] (pid {pids})")
    else:
        console.print(f"[bold]Port {port}:[/bold] [yellow]free[/yellow] (worker not running)")


@app.command()
def logs(
    project: str = typer.Argument(..., help="Project id from the config"),
    lines: int = typer.Option(100, "--lines", "-n", help="Number of lines to show"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User the session belongs to"),
    config: Path = typer.Option(Path(CONFIG_FILE), "--config", "-c", help="Config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
):
    """Show the tail of the worker's log file."""
    setup_logging(verbose)
    warden_config = get_config(config)

    async def run():
        async with Warden(warden_config) as warden:
            await connect(warden, user, project)
            return await warden.worker_logs(user, lines)

    result = asyncio.run(run())
    if not result.ok:
        console.print(f"[red]Error:[/red] {result.message}")
        raise typer.Exit(1)
    console.print(result.value, markup=False, highlight=False)


@app.command()
def check(
    project: str = typer.Argument(..., help="Project id from the config"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User the session belongs to"),
    config: Path = typer.Option(Path(CONFIG_FILE), "--config", "-c", help="Config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
):
    """Probe the worker's public health endpoint once."""
    setup_logging(verbose)
    warden_config = get_config(config)

    async def run():
        async with Warden(warden_config) as warden:
            target = await warden.select_project(user, project)
            if target is None:
                console.print(f"[red]Error:[/red] Project '{project}' has no deployment target configured")
                raise typer.Exit(1)
            if not target.public_url:
                console.print(f"[red]Error:[/red] Project '{project}' has no public_url configured")
                raise typer.Exit(1)
            return await warden.check_health(user)

    result = asyncio.run(run())
    if result.healthy:
        console.print(f"[green]Healthy:[/green] {result.message}")
        return

    console.print(f"[red]Unhealthy:[/red] {result.message}")
    if result.logs:
        console.print("\n[bold]Recent worker logs:[/bold]")
        console.print(result.logs, markup=False, highlight=False)
    raise typer.Exit(1)


@app.command()
def watch(
    project: str = typer.Argument(..., help="Project id from the config"),
    interval: str | None = typer.Option(None, "--interval", "-i", help="Check interval (e.g., 30s, 5m)"),
    max_retries: int | None = typer.Option(None, "--max-retries", help="Recovery attempts per failure"),
    user: str = typer.Option(DEFAULT_USER, "--user", "-u", help="User the session belongs to"),
    config: Path = typer.Option(Path(CONFIG_FILE), "--config", "-c", help="Config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
):
    """Deploy and start the worker, then monitor it until interrupted."""
    setup_logging(verbose)
    warden_config = get_config(config)
    interval_seconds = parse_duration(interval) if interval else None

    async def run():
        async with Warden(warden_config) as warden:
            await connect(warden, user, project)

            deployed = await warden.deploy_artifact(user)
            if not deployed.ok:
                console.print(f"[yellow]Warning:[/yellow] {deployed.message}")

            started = await warden.start_worker(user)
            if started.ok:
                console.print(f"[green]{started.message}[/green]")
            else:
                console.print(f"[yellow]Warning:[/yellow] {started.message}")

            result = await warden.monitor(user, interval=interval_seconds, max_retries=max_retries)
            if not result.monitoring_started:
                console.print(f"[red]Error:[/red] {result.message}")
                raise typer.Exit(1)

            console.print(f"[green]{result.message}[/green] Press Ctrl-C to stop.")
            await result.handle.wait()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped monitoring.[/yellow] The worker keeps running.")


def process_table(process: RemoteProcess) -> Table:
    """Render a process record as a two-column table."""
    table = Table(show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row("Status", process.status.value)
    table.add_row("PID", str(process.pid) if process.pid is not None else "-")
    table.add_row("Port", str(process.port))
    table.add_row("URL", process.url or "-")
    uptime = int((datetime.now() - process.start_time).total_seconds())
    table.add_row("Uptime", format_duration(uptime))
    if process.last_error:
        table.add_row("Last error", process.last_error)
    return table


def format_duration(seconds: int) -> str:
    """Format seconds as human-readable duration."""
    if seconds < 60:
        return f"{seconds}s"
    elif seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    else:
        hours = seconds // 3600
        minutes = (seconds % 3600) // 60
        return f"{hours}h {minutes}m"


if __name__ == "__main__":
    app()
