#!/usr/bin/env python3
"""Job Executor CLI.

Command-line interface for distributing jobs to remote agents, running the
scheduled processing loop and inspecting distributions and statistics.
"""

import asyncio
import logging
import signal
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .config import ExecutorSettings, get_settings
from .database import Database
from .exceptions import ExecutorError
from .integrations import AgentClient
from .schemas.models import BatchReport, DistributionDetail, SweepOutcome
from .services import ControlService, Orchestrator, categorize_error

# Initialize CLI and console
app = typer.Typer(help="Multi-Agent Job Executor CLI")
console = Console()

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Services wired for one CLI invocation."""

    settings: ExecutorSettings
    database: Database
    client: AgentClient
    orchestrator: Orchestrator
    control: ControlService

    async def aclose(self) -> None:
        """Stop workers and close the HTTP client."""
        await self.orchestrator.close()
        await self.client.aclose()


def create_runtime(settings: ExecutorSettings) -> Runtime:
    """Build the database, client and services from settings."""
    database = Database.from_settings(settings.database)
    client = AgentClient(settings.agent_client)
    orchestrator = Orchestrator.build(settings, database, client)
    return Runtime(
        settings=settings,
        database=database,
        client=client,
        orchestrator=orchestrator,
        control=ControlService(database, orchestrator, client),
    )


def configure_logging(level: str) -> None:
    """Route log records through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )


def _run(coroutine: Coroutine[Any, Any, None]) -> None:
    """Run a command coroutine, mapping executor errors to exit code 1."""
    try:
        asyncio.run(coroutine)
    except ExecutorError as e:
        category = categorize_error(e)
        console.print(f"[bold red]Error ({category.value}): {e}[/bold red]")
        raise typer.Exit(code=1) from e


def _print_batch(report: BatchReport) -> None:
    table = Table(title="Batch Report", show_header=True, header_style="bold blue")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Processed", str(report.processed))
    table.add_row("Distributed", str(report.distributed))
    table.add_row("Cancelled (no agents)", str(report.cancelled))
    table.add_row("Skipped", str(report.skipped))
    table.add_row("Rejected", str(len(report.rejected)))
    table.add_row("Failed", str(len(report.failed)))
    console.print(table)
    for failure in report.rejected + report.failed:
        console.print(f"[yellow]{failure.job_id}: {failure.error}[/yellow]")


def _print_sweeps(outcomes: list[SweepOutcome]) -> None:
    if not outcomes:
        console.print("[green]No distributions past their deadline[/green]")
        return
    table = Table(title="Timeout Sweep", show_header=True, header_style="bold magenta")
    table.add_column("Distribution", style="cyan")
    table.add_column("Timed Out", style="yellow")
    table.add_column("Winner", style="green")
    table.add_column("Expired", style="red")
    for outcome in outcomes:
        table.add_row(
            outcome.distribution_id,
            str(outcome.timed_out),
            outcome.winner_agent_id or "-",
            "yes" if outcome.expired else "no",
        )
    console.print(table)


def _print_distribution(detail: DistributionDetail) -> None:
    console.print(
        Panel.fit(
            f"[bold]{detail.job_name}[/bold]\n"
            f"Distribution: {detail.id}\n"
            f"Agents: {detail.assigned_count}/{detail.total_agents}, "
            f"responses: {detail.response_count}\n"
            f"Winner: {detail.winning_agent_name or detail.winning_agent_id or '-'}",
            title=f"Job {detail.job_id}",
        )
    )
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Agent", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Progress", style="white")
    table.add_column("Time (ms)", style="yellow")
    table.add_column("Error", style="red")
    for assignment in detail.assignments:
        table.add_row(
            assignment.agent_name or assignment.agent_id,
            assignment.work_status.value.upper(),
            f"{assignment.progress}%",
            str(assignment.execution_time_ms or "-"),
            assignment.error_message or "",
        )
    console.print(table)


@app.command("init-db")
def init_db():
    """Create the database schema."""
    runtime = create_runtime(get_settings())
    try:
        runtime.database.create_all()
        counts = runtime.database.table_counts()
    except ExecutorError as e:
        console.print(f"[bold red]Error ({categorize_error(e).value}): {e}[/bold red]")
        raise typer.Exit(code=1) from e
    finally:
        runtime.database.dispose()

    table = Table(title="Database Ready", show_header=True, header_style="bold green")
    table.add_column("Table", style="cyan")
    table.add_column("Rows", style="white")
    for name, count in counts.items():
        table.add_row(name, str(count))
    console.print(table)


@app.command()
def process():
    """Distribute pending jobs once and wait for their results."""

    async def _process():
        runtime = create_runtime(get_settings())
        try:
            with console.status("[bold green]Processing pending jobs..."):
                report = await runtime.control.process_pending()
            _print_batch(report)
        finally:
            await runtime.aclose()

    _run(_process())


@app.command()
def sweep():
    """Resolve distributions that passed their deadline."""

    async def _sweep():
        runtime = create_runtime(get_settings())
        try:
            outcomes = await runtime.orchestrator.sweep_timeouts()
            _print_sweeps(outcomes)
        finally:
            await runtime.aclose()

    _run(_sweep())


@app.command()
def run(
    interval: float | None = typer.Option(
        None, "--interval", "-i", help="Seconds between cycles (overrides settings)"
    ),
):
    """Run the scheduled processing loop until interrupted."""

    async def _run_loop():
        settings = get_settings()
        if interval is not None:
            settings = settings.model_copy(
                update={
                    "scheduler": settings.scheduler.model_copy(
                        update={"poll_interval_seconds": interval}
                    )
                }
            )
        runtime = create_runtime(settings)
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, stop_event.set)
            except NotImplementedError:
                logger.debug(f"Signal handler for {signum} unavailable")

        console.print(
            f"[bold blue]Scheduler running every "
            f"{settings.scheduler.poll_interval_seconds}s (Ctrl-C to stop)[/bold blue]"
        )
        try:
            await runtime.orchestrator.run_forever(stop_event)
        finally:
            await runtime.client.aclose()
        console.print("[green]Scheduler stopped[/green]")

    _run(_run_loop())


@app.command()
def status(job_id: str = typer.Argument(..., help="ID of the job")):
    """Show a job's status and its distribution."""

    async def _status():
        runtime = create_runtime(get_settings())
        try:
            view = runtime.control.job_status(job_id)
        finally:
            await runtime.aclose()

        console.print(f"[bold]Job {view.job_id}[/bold]: {view.status.value.upper()}")
        if view.distribution is None:
            console.print("[yellow]Not distributed yet[/yellow]")
            return
        _print_distribution(view.distribution)
        if view.stats:
            console.print(
                f"Completed: {view.stats.completed_agents}, "
                f"failed: {view.stats.failed_agents}, "
                f"timed out: {view.stats.timeout_agents}, "
                f"cancelled: {view.stats.cancelled_agents}"
            )

    _run(_status())


@app.command()
def distributions():
    """List distributions that are still being worked on."""

    async def _distributions():
        runtime = create_runtime(get_settings())
        try:
            active = runtime.control.active_distributions()
        finally:
            await runtime.aclose()

        if not active:
            console.print("[yellow]No active distributions[/yellow]")
            return
        table = Table(
            title="Active Distributions", show_header=True, header_style="bold blue"
        )
        table.add_column("Distribution", style="cyan")
        table.add_column("Job", style="white")
        table.add_column("Agents", style="green")
        table.add_column("Responses", style="yellow")
        table.add_column("Created", style="white")
        for detail in active:
            table.add_row(
                detail.id,
                detail.job_name,
                str(detail.total_agents),
                str(detail.response_count),
                detail.created_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)

    _run(_distributions())


@app.command()
def stats():
    """Show execution statistics and top agents."""

    async def _stats():
        runtime = create_runtime(get_settings())
        try:
            result = runtime.control.execution_stats()
        finally:
            await runtime.aclose()

        console.print(
            Panel.fit(
                f"Total Jobs: {result.total_jobs}\n"
                f"Completed: {result.completed_jobs}\n"
                f"Failed: {result.failed_jobs}\n"
                f"In Progress: {result.in_progress_jobs}\n"
                f"Success Rate: {result.success_rate:.1%}\n"
                f"Avg Execution Time: {result.avg_execution_time:.0f}ms",
                title="Execution Statistics",
            )
        )
        if not result.top_agents:
            return
        table = Table(title="Top Agents", show_header=True, header_style="bold blue")
        table.add_column("Agent", style="cyan")
        table.add_column("Completed", style="green")
        table.add_column("Failed", style="red")
        table.add_column("Success Rate", style="white")
        table.add_column("Avg Time (ms)", style="yellow")
        for agent in result.top_agents:
            table.add_row(
                agent.agent_name,
                str(agent.completed_jobs),
                str(agent.failed_jobs),
                f"{agent.success_rate:.1%}",
                f"{agent.avg_execution_time:.0f}",
            )
        console.print(table)

    _run(_stats())


@app.command()
def health():
    """Probe every active agent."""

    async def _health():
        runtime = create_runtime(get_settings())
        try:
            with console.status("[bold green]Checking agents..."):
                statuses = await runtime.control.agents_health()
        finally:
            await runtime.aclose()

        table = Table(title="Agent Health", show_header=True, header_style="bold blue")
        table.add_column("Agent", style="cyan")
        table.add_column("Address", style="white")
        table.add_column("Healthy", style="green")
        table.add_column("Time (ms)", style="yellow")
        table.add_column("Load", style="magenta")
        table.add_column("Error", style="red")
        for item in statuses:
            load = "-"
            if item.load is not None and item.load.is_online:
                load = f"{item.load.current_tasks}/{item.load.max_tasks}"
            table.add_row(
                item.agent_name or item.agent_id or "-",
                item.address,
                "yes" if item.is_healthy else "no",
                f"{item.response_time_ms:.0f}",
                load,
                item.error or "",
            )
        console.print(table)
        healthy = sum(1 for item in statuses if item.is_healthy)
        console.print(f"{healthy}/{len(statuses)} agents healthy")

    _run(_health())


@app.command()
def distribute(
    job_id: str = typer.Argument(..., help="ID of the open job"),
    max_agents: int | None = typer.Option(
        None, "--max-agents", "-n", help="Maximum agents to distribute to"
    ),
):
    """Distribute one open job now and wait for the outcome."""

    async def _distribute():
        runtime = create_runtime(get_settings())
        try:
            detail = await runtime.control.distribute_job(job_id, max_agents)
            console.print(
                f"[green]Distributed job {job_id} to {detail.total_agents} agents"
                "[/green]"
            )
            await runtime.orchestrator.drain()
            _print_distribution(runtime.control.distribution_detail(detail.id))
        finally:
            await runtime.aclose()

    _run(_distribute())


@app.command()
def config():
    """Show the effective configuration."""
    table = Table(title="Configuration", show_header=True, header_style="bold blue")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")
    for key, value in get_settings().summary().items():
        table.add_row(key, str(value))
    console.print(table)


@app.callback()
def main(
    log_level: str | None = typer.Option(
        None, "--log-level", "-l", help="Override the configured log level"
    ),
):
    """Multi-Agent Job Executor CLI.

    Match jobs to remote agents, fan them out and keep the first (or best)
    result.
    """
    configure_logging((log_level or get_settings().log_level).upper())


if __name__ == "__main__":
    app()
