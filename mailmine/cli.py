"""mailmine CLI - database and session maintenance.

Commands:
- init: Initialize database schema
- sessions: List a user's discovery sessions
- status: Show budgets, progress and feedback statistics for a session
- progress: Show the day ledger for a user
- reconcile: Recompute a session's counters from its rows
- exceptions: List exceptions raised for a session
- resolve: Mark an exception reviewed or dismissed
- serve: Run an API application factory under uvicorn
"""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from mailmine.config import get_config
from mailmine.db.connection import close_db, get_engine, get_session
from mailmine.db.models import Base
from mailmine.errors import DiscoveryError
from mailmine.escalation.service import list_exceptions, resolve_exception
from mailmine.ledger.repository import list_progress, session_progress
from mailmine.models import ExceptionStatus
from mailmine.samples.service import reconcile_counters
from mailmine.sessions.repository import list_sessions, load_session, to_session
from mailmine.training.gate import feedback_stats

app = typer.Typer(
    name="mailmine",
    help="mailmine - autonomous discovery and training over mail and calendar history",
    no_args_is_help=True,
)

console = Console()


def _run(coro):
    """Run ``coro`` and dispose of the engine, turning domain errors into exit codes."""

    async def _wrapped():
        try:
            return await coro
        finally:
            await close_db()

    try:
        return asyncio.run(_wrapped())
    except DiscoveryError as e:
        console.print(f"[bold red]Error:[/bold red] {e.message}")
        raise typer.Exit(code=1) from e


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")

    async def _init():
        engine = get_engine()
        async with engine.begin() as conn:
            if drop:
                console.print("[yellow]Dropping existing tables...[/yellow]")
                await conn.run_sync(Base.metadata.drop_all)
            console.print("[green]Creating tables...[/green]")
            await conn.run_sync(Base.metadata.create_all)

    _run(_init())
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command()
def sessions(user_id: str = typer.Argument(..., help="User ID")):
    """List a user's discovery sessions, newest first."""

    async def _sessions():
        async with get_session() as session:
            models = await list_sessions(session, user_id)
            return [to_session(m) for m in models]

    rows = _run(_sessions())
    if not rows:
        console.print(f"[yellow]No sessions for {user_id}[/yellow]")
        return

    table = Table(title=f"Sessions for {user_id}")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Mode")
    table.add_column("Discovery", justify="right")
    table.add_column("Training", justify="right")
    table.add_column("Samples", justify="right")
    table.add_column("Created")

    for s in rows:
        table.add_row(
            s.id,
            s.status.value,
            s.mode.value,
            f"{s.discovery_budget.used}/{s.discovery_budget.total}",
            f"{s.training_budget.used}/{s.training_budget.total}",
            str(s.samples_collected),
            s.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def status(session_id: str = typer.Argument(..., help="Session ID")):
    """Show budgets, progress and feedback statistics for a session."""
    threshold = get_config().training.min_feedback_for_auto_train

    async def _status():
        async with get_session() as session:
            model = to_session(await load_session(session, session_id))
            progress = await session_progress(session, session_id)
            stats = await feedback_stats(session, session_id, threshold)
            return model, progress, stats

    model, progress, stats = _run(_status())

    console.print(f"[bold]Session {model.id}[/bold] ({model.user_id})")
    console.print(f"Status: [cyan]{model.status.value}[/cyan]")
    if model.status_reason:
        console.print(f"Reason: {model.status_reason}")

    table = Table(title="Session")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")

    table.add_row("Discovery budget used", f"{model.discovery_budget.used} / {model.discovery_budget.total}")
    table.add_row("Training budget used", f"{model.training_budget.used} / {model.training_budget.total}")
    table.add_row("Days processed", str(progress.days_processed))
    table.add_row("Items discovered", str(progress.items_discovered))
    table.add_row("Samples", str(stats.total_samples))
    table.add_row("Pending", str(stats.pending))
    table.add_row("Reviewed", str(stats.reviewed))
    table.add_row("Skipped", str(stats.skipped))
    table.add_row("Accuracy", f"{stats.accuracy:.1f}%")
    table.add_row("Auto-train ready", "yes" if stats.auto_train_ready else "no")
    table.add_row("Exceptions", str(model.exceptions_count))
    console.print(table)


@app.command()
def progress(
    user_id: str = typer.Argument(..., help="User ID"),
    session_id: str | None = typer.Option(None, "--session", help="Limit to one session"),
    limit: int = typer.Option(30, "--limit", help="Rows to show"),
):
    """Show the day ledger for a user, newest day first."""

    async def _progress():
        async with get_session() as session:
            return await list_progress(session, user_id, session_id)

    entries = _run(_progress())

    table = Table(title=f"Processed days for {user_id}")
    table.add_column("Date", style="cyan")
    table.add_column("Source")
    table.add_column("Items", justify="right", style="green")
    for entry in entries[:limit]:
        table.add_row(entry.processed_date.isoformat(), entry.source_type.value, str(entry.items_found))
    console.print(table)


@app.command()
def reconcile(session_id: str = typer.Argument(..., help="Session ID")):
    """Recompute a session's counters and accuracy from its rows."""

    async def _reconcile():
        async with get_session() as session:
            return to_session(await reconcile_counters(session, session_id))

    model = _run(_reconcile())
    console.print(
        f"[bold green]✓[/bold green] Reconciled {model.id}: "
        f"samples={model.samples_collected} feedback={model.feedback_received} "
        f"exceptions={model.exceptions_count} accuracy={model.accuracy:.1f}%"
    )


@app.command()
def exceptions(
    session_id: str = typer.Argument(..., help="Session ID"),
    pending_only: bool = typer.Option(False, "--pending", help="Only pending exceptions"),
):
    """List exceptions raised for a session."""

    async def _exceptions():
        async with get_session() as session:
            await load_session(session, session_id)
            status_filter = ExceptionStatus.PENDING if pending_only else None
            return await list_exceptions(session, session_id, status_filter)

    rows = _run(_exceptions())

    table = Table(title=f"Exceptions for {session_id}")
    table.add_column("ID", style="cyan")
    table.add_column("Type")
    table.add_column("Severity")
    table.add_column("Status")
    table.add_column("Reason")
    for e in rows:
        table.add_row(e.id, e.type.value, e.severity.value, e.status.value, e.reason)
    console.print(table)


@app.command()
def resolve(
    exception_id: str = typer.Argument(..., help="Exception ID"),
    dismiss: bool = typer.Option(False, "--dismiss", help="Dismiss instead of marking reviewed"),
):
    """Mark an exception reviewed (or dismissed)."""
    target = ExceptionStatus.DISMISSED if dismiss else ExceptionStatus.REVIEWED

    async def _resolve():
        async with get_session() as session:
            return await resolve_exception(session, exception_id, target)

    exception = _run(_resolve())
    console.print(f"[bold green]✓[/bold green] Exception {exception.id} {exception.status.value}")


@app.command()
def serve(
    factory: str = typer.Argument(
        ..., help="Import path of a callable returning the app, e.g. myapp.main:build_app"
    ),
    host: str = typer.Option("0.0.0.0", help="Host to bind"),
    port: int = typer.Option(8000, help="Port to bind"),
):
    """Run the API under uvicorn.

    The factory wires concrete source, extraction and alert collaborators into
    a ``DiscoveryEngine`` and returns ``mailmine.web.app.create_app(engine)``.
    """
    import uvicorn

    typer.echo(f"Starting API on http://{host}:{port}")
    uvicorn.run(factory, factory=True, host=host, port=port, workers=1)


if __name__ == "__main__":
    app()
