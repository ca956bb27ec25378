"""Main CLI entry point for taskhive."""

import asyncio
import json
import logging

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__, db
from .claims import ClaimRequest, ReapResult, claim_tasks, sweep_stale_workers
from .config import settings
from .cron import compute_next_runs, describe_schedule, validate_cron_expression
from .errors import LimitExceededError, TaskhiveError
from .scheduler import run_schedule_tick
from .session_client import AgentSessionClient
from .workers import WorkerManager

console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Taskhive coordination CLI.

    Claim tasks for runners, tick cron schedules and follow up on workers.
    """
    _configure_logging(verbose)


@main.command(name="init-db")
def init_db() -> None:
    """Create all tables (development only; use alembic in production)."""
    asyncio.run(db.init_db())
    console.print("[green]Database tables created[/green]")


@main.command()
@click.option("--api-key", envvar="TASKHIVE_API_KEY", required=True, help="Account API key")
@click.option("--runner", required=True, help="Runner identifier")
@click.option("--workspace", "workspace_id", default=None, help="Restrict to one workspace")
@click.option("--task", "task_id", default=None, help="Claim one specific task")
@click.option("--capability", "capabilities", multiple=True, help="Offered capability (repeatable)")
@click.option("--max-tasks", default=settings.default_max_tasks, show_default=True)
def claim(
    api_key: str,
    runner: str,
    workspace_id: str | None,
    task_id: str | None,
    capabilities: tuple[str, ...],
    max_tasks: int,
) -> None:
    """Claim pending tasks for a runner."""

    async def do_claim() -> None:
        async with db.get_session() as session:
            account = await db.authenticate_api_key(session, api_key)
        request = ClaimRequest(
            runner=runner,
            workspace_id=workspace_id,
            task_id=task_id,
            capabilities=list(capabilities),
            max_tasks=max_tasks,
        )
        try:
            result = await claim_tasks(account, request)
        except LimitExceededError as e:
            console.print(f"[yellow]{e.message}[/yellow] (limit {e.details['limit']}, current {e.details['current']})")
            return
        except TaskhiveError as e:
            raise click.ClickException(e.message) from e

        if not result.workers:
            console.print("[dim]No tasks available[/dim]")
            return

        table = Table(title="Claimed Tasks")
        table.add_column("Worker", style="cyan")
        table.add_column("Task")
        table.add_column("Priority")
        table.add_column("Branch", style="green")
        for worker in result.workers:
            table.add_row(worker.id[:8], worker.task["title"], str(worker.task["priority"]), worker.branch)
        console.print(table)

    asyncio.run(do_claim())


@main.command()
def tick() -> None:
    """Run one schedule tick."""
    result = asyncio.run(run_schedule_tick())
    console.print(
        Panel(
            "\n".join(f"{key}: {value}" for key, value in result.to_dict().items()),
            title="Schedule Tick",
        )
    )


@main.command(name="run-scheduler")
@click.option("--interval", default=settings.tick_interval_seconds, show_default=True, help="Seconds between ticks")
def run_scheduler(interval: int) -> None:
    """Tick schedules forever."""

    async def loop() -> None:
        while True:
            await run_schedule_tick()
            await asyncio.sleep(interval)

    console.print(f"[bold]Scheduler running every {interval}s[/bold] (Ctrl+C to stop)")
    try:
        asyncio.run(loop())
    except KeyboardInterrupt:
        console.print("[dim]Scheduler stopped[/dim]")


@main.command()
@click.option("--api-key", envvar="TASKHIVE_API_KEY", required=True, help="Account API key")
def reap(api_key: str) -> None:
    """Expire this account's stale workers."""

    async def do_reap() -> ReapResult:
        async with db.get_session() as session:
            account = await db.authenticate_api_key(session, api_key)
        if account is None:
            raise click.ClickException("Invalid API key")
        return await sweep_stale_workers(account.id)

    reaped = asyncio.run(do_reap())
    console.print(f"Reaped {len(reaped.worker_ids)} stale worker(s), unblocked {len(reaped.unblocked)} task(s)")


@main.command(name="schedule-validate")
@click.argument("cron_expression")
@click.option("--timezone", "-z", default="UTC", show_default=True)
@click.option("--count", "-n", default=3, show_default=True, help="Upcoming runs to show")
def schedule_validate(cron_expression: str, timezone: str, count: int) -> None:
    """Validate a cron expression and preview its next runs."""
    error = validate_cron_expression(cron_expression, timezone)
    if error:
        raise click.ClickException(error)

    runs = compute_next_runs(cron_expression, timezone, count)
    body = [f"[bold]{describe_schedule(cron_expression)}[/bold] ({timezone})", ""]
    body.extend(f"  {run.isoformat()}" for run in runs)
    console.print(Panel("\n".join(body), title=cron_expression))


@main.command()
@click.option("--status", "statuses", multiple=True, help="Filter by status (repeatable)")
@click.option("--limit", default=20, help="Number of workers to show")
def workers(statuses: tuple[str, ...], limit: int) -> None:
    """List recent workers."""

    async def list_all() -> None:
        async with db.get_session() as session:
            rows = await db.list_workers(session, statuses=list(statuses) or None, limit=limit)

        if not rows:
            console.print("[dim]No workers found[/dim]")
            return

        table = Table(title="Workers")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Branch", style="green")
        table.add_column("Action")
        table.add_column("Updated")
        for w in rows:
            table.add_row(
                w.id[:8],
                w.name,
                w.status,
                w.branch,
                w.error or w.current_action or "-",
                w.updated_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)

    asyncio.run(list_all())


@main.command()
@click.argument("worker_id")
@click.argument("message")
def send(worker_id: str, message: str) -> None:
    """Send a follow-up message to a worker and wait for the session to settle."""

    async def do_send() -> None:
        client = AgentSessionClient(base_url=settings.agent_api_url, timeout_seconds=settings.agent_timeout)
        manager = WorkerManager(client)
        try:
            delivered = await manager.send_message(worker_id, message)
            if not delivered:
                raise click.ClickException(f"Worker {worker_id} is not accepting messages")
            console.print("[green]Message delivered[/green]")
            await manager.drain()
        finally:
            await client.aclose()

        async with db.get_session() as session:
            worker = await db.require_worker(session, worker_id)
        console.print(json.dumps({"status": worker.status, "error": worker.error}, indent=2))

    asyncio.run(do_send())


if __name__ == "__main__":
    main()
