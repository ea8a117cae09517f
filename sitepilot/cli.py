"""
SitePilot CLI: the administrative surface.

  sitepilot status                          (config + API keys)
  sitepilot project create|start|pause|resume|retry|show
  sitepilot queues health|pause|resume|clear
  sitepilot worker                          (run every queue's worker)

Cross-process use needs the redis queue backend; with the memory backend
jobs only live as long as the process that queued them.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import List, NoReturn, Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.table import Table

from sitepilot.app import AppContext, build_context
from sitepilot.config_loader import load_config, validate_api_keys
from sitepilot.errors import SitePilotError
from sitepilot.identity import BANNER, __codename__, __tagline__, __version__
from sitepilot.models import Project, ProjectSettings

load_dotenv()
load_dotenv(Path.home() / ".sitepilot" / ".env")

app = typer.Typer(
    name="sitepilot",
    help=f"{__codename__}: {__tagline__}\nContent pipeline orchestrator.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
project_app = typer.Typer(help="Create and drive projects.", no_args_is_help=True)
queues_app = typer.Typer(help="Inspect and control the job queues.", no_args_is_help=True)
app.add_typer(project_app, name="project")
app.add_typer(queues_app, name="queues")

console = Console()

_state: dict[str, Optional[Path]] = {"config": None}


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Config override file (default: ./.sitepilot/config.yaml)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    _state["config"] = config
    _configure_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__}: {__tagline__}[/]\n")


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False, markup=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False, markup=False),
            level="WARNING",
            format="{message}",
        )


def _context() -> AppContext:
    return build_context(load_config(_state["config"]))


def _fail(e: SitePilotError) -> NoReturn:
    console.print(f"[red]{type(e).__name__}: {e}[/]")
    raise typer.Exit(1)


def _print_health(ctx: AppContext) -> None:
    report = ctx.manager.health_check()
    table = Table(title="Queues", border_style="cyan")
    for col in ("Queue", "Waiting", "Active", "Delayed", "Completed", "Failed", "State"):
        table.add_column(col)
    for q in report.queues:
        state = "[yellow]paused[/]" if q.paused else ("[green]healthy[/]" if q.healthy else "[red]unhealthy[/]")
        table.add_row(
            q.name, str(q.waiting), str(q.active), str(q.delayed),
            str(q.completed), str(q.failed), state,
        )
    console.print(table)
    color = "green" if report.healthy else "red"
    console.print(f"[bold {color}]System {'healthy' if report.healthy else 'unhealthy'}[/]")


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


@app.command()
def status():
    """Check SitePilot configuration and readiness."""
    _print_banner()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)
    console.print(key_table)

    config = load_config(_state["config"])
    console.print("\n[bold]Routing:[/]")
    console.print(f"  Deep reasoning: {config.routing.deep_reasoning.model} ({config.routing.deep_reasoning.timeout_s}s)")
    console.print(f"  Fast execution: {config.routing.fast_execution.model} ({config.routing.fast_execution.timeout_s}s)")
    console.print("\n[bold]Queues:[/]")
    console.print(f"  Backend:  {config.queues.backend}")
    console.print(f"  Attempts: {config.queues.retry_attempts} (backoff {config.queues.retry_delay_ms}ms)")
    console.print(f"  Store:    {config.store.path}")


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@project_app.command("create")
def project_create(
    name: str = typer.Argument(..., help="Project name"),
    domain: str = typer.Option(..., "--domain", "-d", help="Site domain, e.g. https://example.com"),
    niche: str = typer.Option(..., "--niche", "-n"),
    audience: str = typer.Option("", "--audience", "-a"),
    keyword: Optional[List[str]] = typer.Option(None, "--keyword", "-k", help="Seed keyword (repeatable)"),
    tone: str = typer.Option("helpful and authoritative", "--tone"),
    cadence: str = typer.Option("weekly", "--cadence", help="daily, weekly or biweekly"),
    autopilot: bool = typer.Option(True, "--autopilot/--no-autopilot"),
):
    """Create a draft project."""
    ctx = _context()
    try:
        settings = ProjectSettings(
            niche=niche,
            target_audience=audience,
            keywords=keyword or [],
            content_tone=tone,
            run_cadence=cadence,
            autopilot=autopilot,
        )
    except ValueError as e:
        console.print(f"[red]Invalid settings: {e}[/]")
        raise typer.Exit(1)

    project = ctx.store.save_project(Project(name=name, domain=domain, settings=settings))
    console.print(f"[green]✅ Created project {project.name}[/]")
    console.print(f"  ID: {project.id}")


@project_app.command("start")
def project_start(
    project_id: str = typer.Argument(...),
    follow: bool = typer.Option(False, "--follow", "-f", help="Run workers in this process until interrupted"),
):
    """Start the pipeline for a draft project."""
    ctx = _context()
    try:
        correlation_id = ctx.machine.start(project_id)
    except SitePilotError as e:
        _fail(e)
    console.print(f"[green]Started[/] ({correlation_id})")
    if follow:
        _run_workers(ctx)


@project_app.command("pause")
def project_pause(project_id: str = typer.Argument(...)):
    """Pause a project. Queued phase tasks do nothing until it resumes."""
    ctx = _context()
    try:
        project = ctx.machine.pause(project_id)
    except SitePilotError as e:
        _fail(e)
    console.print(f"[yellow]Paused[/] (was {project.paused_from.value if project.paused_from else '?'})")


@project_app.command("resume")
def project_resume(project_id: str = typer.Argument(...)):
    """Resume a paused project where it left off."""
    ctx = _context()
    try:
        project = ctx.machine.resume(project_id)
    except SitePilotError as e:
        _fail(e)
    console.print(f"[green]Resumed[/] into {project.status.value}")


@project_app.command("retry")
def project_retry(project_id: str = typer.Argument(...)):
    """Re-enqueue every failed task of a project."""
    ctx = _context()
    try:
        jobs = ctx.machine.retry_failed(project_id)
    except SitePilotError as e:
        _fail(e)
    if not jobs:
        console.print("[dim]No failed tasks.[/]")
        return
    for job in jobs:
        console.print(f"  [cyan]{job.queue}/{job.name}[/] → {job.correlation_id}")
    console.print(f"[green]{len(jobs)} tasks re-enqueued[/]")


@project_app.command("rebuild")
def project_rebuild(project_id: str = typer.Argument(...)):
    """Send a started project back through research and rebuild every page."""
    ctx = _context()
    try:
        correlation_id = ctx.machine.rebuild(project_id)
    except SitePilotError as e:
        _fail(e)
    console.print(f"[green]Rebuild scheduled[/] ({correlation_id})")


@project_app.command("show")
def project_show(project_id: str = typer.Argument(...)):
    """Show a project and its pages."""
    ctx = _context()
    project = ctx.store.get_project(project_id)
    if project is None:
        console.print(f"[red]Project not found: {project_id}[/]")
        raise typer.Exit(1)

    console.print(f"[bold]{project.name}[/] ({project.domain})")
    console.print(f"  Status: {project.status.value}")
    if project.paused_from:
        console.print(f"  Paused from: {project.paused_from.value}")
    console.print(f"  Niche:  {project.settings.niche}")

    units = ctx.store.list_content_units(project_id)
    if not units:
        return
    table = Table(title="Pages", border_style="cyan")
    table.add_column("Slug")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("URL")
    for unit in units:
        table.add_row(unit.slug, unit.title, unit.status.value, unit.url or "-")
    console.print(table)


# ---------------------------------------------------------------------------
# Queues
# ---------------------------------------------------------------------------


@queues_app.command("health")
def queues_health():
    """Per-queue counts and the overall verdict."""
    _print_health(_context())


@queues_app.command("pause")
def queues_pause(name: str = typer.Argument(...)):
    ctx = _context()
    try:
        ctx.manager.pause(name)
    except SitePilotError as e:
        _fail(e)
    console.print(f"[yellow]{name} paused[/]")


@queues_app.command("resume")
def queues_resume(name: str = typer.Argument(...)):
    ctx = _context()
    try:
        ctx.manager.resume(name)
    except SitePilotError as e:
        _fail(e)
    console.print(f"[green]{name} resumed[/]")


@queues_app.command("clear")
def queues_clear(
    name: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Drop waiting, delayed and finished jobs from a queue."""
    if not yes and not typer.confirm(f"Clear every job in {name}?"):
        raise typer.Exit(1)
    ctx = _context()
    try:
        removed = ctx.manager.clear(name)
    except SitePilotError as e:
        _fail(e)
    console.print(f"[green]{name} cleared ({removed} jobs)[/]")


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


def _run_workers(ctx: AppContext) -> None:
    ctx.start_workers()
    console.print(f"[cyan]{len(ctx.workers)} workers running. Ctrl-C to stop.[/]")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/]")
    drained = ctx.shutdown()
    console.print("[green]Stopped cleanly[/]" if drained else "[yellow]Stopped with jobs still active[/]")
    usage = ctx.router.usage.summary()
    console.print(f"[dim]{usage['call_count']} model calls, ${usage['estimated_cost']:.4f}[/]")


@app.command()
def worker():
    """Run a worker for every queue until interrupted, then shut down gracefully."""
    _print_banner()
    _run_workers(_context())


if __name__ == "__main__":
    app()
