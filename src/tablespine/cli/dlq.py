"""
CLI: ``tablespine dlq`` — dead-letter commands.
"""

from __future__ import annotations

from datetime import timedelta

import typer

from tablespine.cli.utils import DB_HELP, console, fail, open_engine, output_dict, output_rows
from tablespine.errors import NotFoundError, TableSpineError

app = typer.Typer(no_args_is_help=True)

DEAD_LETTER_COLUMNS = ["id", "run_id", "seed_table_id", "change_type", "attempts", "failed_at", "last_error"]


@app.command("list")
def list_dead_letters(
    run_id: str | None = typer.Option(None, "--run", "-r"),
    limit: int = typer.Option(50, "--limit", "-n"),
    offset: int = typer.Option(0, "--offset"),
    database: str | None = typer.Option(None, "--db", "-d", help=DB_HELP),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List dead-letter entries, newest first."""
    engine = open_engine(database)
    try:
        entries = engine.dead_letters.list(run_id=run_id, limit=limit, offset=offset)
        total = engine.dead_letters.count(run_id=run_id)
    finally:
        engine.close()
    output_rows(
        [e.to_dict() for e in entries],
        columns=DEAD_LETTER_COLUMNS,
        as_json=json_out,
        title="Dead Letters",
        total=total,
        offset=offset,
    )


@app.command("show")
def show(
    entry_id: str = typer.Argument(..., help="Dead-letter entry ID"),
    database: str | None = typer.Option(None, "--db", "-d", help=DB_HELP),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show one dead letter with its plan and failure trace."""
    engine = open_engine(database)
    try:
        entry = engine.dead_letters.get(entry_id)
        if entry is None:
            fail(NotFoundError(f"Dead letter not found: {entry_id}"))
    finally:
        engine.close()
    output_dict(entry.to_dict(), as_json=json_out, title=f"Dead letter {entry_id}")


@app.command("requeue")
def requeue(
    entry_id: str = typer.Argument(..., help="Dead-letter entry ID"),
    database: str | None = typer.Option(None, "--db", "-d", help=DB_HELP),
) -> None:
    """Move a dead letter back to the outbox with attempts reset."""
    engine = open_engine(database)
    try:
        task_id = engine.dead_letters.requeue(entry_id)
    except TableSpineError as exc:
        fail(exc)
    finally:
        engine.close()
    console.print(f"[green]Requeued[/green] {entry_id} as task [bold]{task_id}[/bold]")


@app.command("purge")
def purge(
    older_than_days: int | None = typer.Option(None, "--days", help="Only entries older than N days"),
    database: str | None = typer.Option(None, "--db", "-d", help=DB_HELP),
) -> None:
    """Delete dead letters (all of them unless ``--days`` is given)."""
    engine = open_engine(database)
    try:
        older_than = timedelta(days=older_than_days) if older_than_days is not None else None
        count = engine.dead_letters.purge(older_than)
    finally:
        engine.close()
    console.print(f"Purged [bold]{count}[/bold] dead letter(s)")
