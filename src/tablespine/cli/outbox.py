"""
CLI: ``tablespine outbox`` — inspect and maintain the computed-update outbox.
"""

from __future__ import annotations

from datetime import timedelta

import typer

from tablespine.cli.utils import DB_HELP, console, fail, open_engine, output_dict, output_rows
from tablespine.enums import TaskStatus
from tablespine.errors import TableSpineError, ValidationError

app = typer.Typer(no_args_is_help=True)

TASK_COLUMNS = ["id", "status", "run_id", "attempts", "max_attempts", "estimated_complexity", "next_run_at", "last_error"]


@app.command("stats")
def stats(
    database: str | None = typer.Option(None, "--db", "-d", help=DB_HELP),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show task counts by state."""
    engine = open_engine(database)
    try:
        output_dict(engine.outbox.stats(), as_json=json_out, title="Outbox")
    finally:
        engine.close()


@app.command("list")
def list_tasks(
    status: str | None = typer.Option(None, "--status", "-s", help="pending | processing | done"),
    run_id: str | None = typer.Option(None, "--run", "-r"),
    limit: int = typer.Option(50, "--limit", "-n"),
    offset: int = typer.Option(0, "--offset"),
    database: str | None = typer.Option(None, "--db", "-d", help=DB_HELP),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List outbox tasks, oldest first."""
    try:
        status = TaskStatus(status).value if status else None
    except ValueError:
        fail(ValidationError(f"Invalid status: {status!r}"))
    engine = open_engine(database)
    try:
        tasks = engine.outbox.list(status=status, run_id=run_id, limit=limit, offset=offset)
        rows = [t.to_dict() for t in tasks]
    except TableSpineError as exc:
        fail(exc)
    finally:
        engine.close()
    output_rows(rows, columns=TASK_COLUMNS, as_json=json_out, title="Outbox Tasks", offset=offset)


@app.command("progress")
def progress(
    run_id: str = typer.Argument(..., help="Run ID"),
    database: str | None = typer.Option(None, "--db", "-d", help=DB_HELP),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show completion of a cascading run."""
    engine = open_engine(database)
    try:
        result = engine.outbox.run_progress(run_id)
    except TableSpineError as exc:
        fail(exc)
    finally:
        engine.close()
    output_dict(result.to_dict(), as_json=json_out, title=f"Run {run_id}")


@app.command("purge")
def purge(
    older_than_days: int | None = typer.Option(None, "--days", help="Purge done tasks older than N days"),
    database: str | None = typer.Option(None, "--db", "-d", help=DB_HELP),
) -> None:
    """Delete finished tasks past their retention window."""
    engine = open_engine(database)
    try:
        older_than = timedelta(days=older_than_days) if older_than_days is not None else None
        count = engine.outbox.purge_done(older_than)
    finally:
        engine.close()
    console.print(f"Purged [bold]{count}[/bold] done task(s)")
