"""
CLI: ``tablespine worker`` — run the computed-update worker.
"""

from __future__ import annotations

import typer

from tablespine.cli.utils import DB_HELP, console, err_console, fail, open_engine
from tablespine.errors import TableSpineError
from tablespine.logging import configure_logging

app = typer.Typer(no_args_is_help=True)


@app.command("start")
def start(
    database: str | None = typer.Option(None, "--db", "-d", help=DB_HELP),
    threads: int | None = typer.Option(None, "--threads", "-t", help="Polling threads"),
    poll_interval: float | None = typer.Option(None, "--poll-interval", help="Seconds between empty polls"),
    worker_id: str | None = typer.Option(None, "--id", help="Custom worker identifier"),
    once: bool = typer.Option(False, "--once", help="Drain the queue once and exit"),
) -> None:
    """Process pending outbox tasks.

    Example::

        tablespine worker start --threads 4 --poll-interval 2
        tablespine worker start --db /data/tablespine.db --once
    """
    from tablespine.outbox.worker import ComputedUpdateWorker, WorkerLoop
    from tablespine.settings import get_settings

    settings = get_settings()
    database = database or settings.database_url

    if once:
        engine = open_engine(database)
        try:
            worker = ComputedUpdateWorker(engine.conn, engine.settings, worker_id, engine.updater)
            handled = worker.drain()
        except TableSpineError as exc:
            fail(exc)
        finally:
            engine.close()
        stats = worker.stats
        console.print(
            f"[bold green]Drained[/bold green] {handled} task(s): "
            f"done={stats.total_completed} retried={stats.total_retried} dead={stats.total_dead_lettered}"
        )
        return

    configure_logging(level=settings.log_level, json_format=settings.log_json)
    console.print(
        f"[bold green]Starting tablespine worker[/bold green] "
        f"(threads={threads or settings.worker_threads}, poll={poll_interval or settings.worker_poll_interval}s)"
    )
    try:
        open_engine(database).close()
        loop = WorkerLoop(
            database_url=database,
            settings=settings,
            poll_interval=poll_interval,
            threads=threads,
            worker_id=worker_id,
        )
        loop.start()
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker stopped by user[/yellow]")
    except Exception as exc:
        err_console.print(f"[red]Worker error: {exc}[/red]")
        raise typer.Exit(code=1) from exc


@app.command("status")
def status() -> None:
    """Show active workers in this process (if running as library)."""
    from tablespine.outbox.worker import get_active_workers

    workers = get_active_workers()
    if not workers:
        console.print("[yellow]No active workers found in this process[/yellow]")
        return
    for w in workers:
        console.print(f"  [bold]{w.worker_id}[/bold]  pid={w.pid}  status={w.status}  threads={w.threads}")
