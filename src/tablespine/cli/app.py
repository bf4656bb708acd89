"""
Root Typer application for the tablespine CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

app = Typer(
    name="tablespine",
    help="tablespine: computed-field dependency planning and incremental recomputation.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from tablespine import __version__

        typer.echo(f"tablespine {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """tablespine CLI: manage the database, outbox, worker and dead letters."""


# ── Sub-command registration ─────────────────────────────────────────────

from tablespine.cli.db import app as db_app  # noqa: E402
from tablespine.cli.dlq import app as dlq_app  # noqa: E402
from tablespine.cli.outbox import app as outbox_app  # noqa: E402
from tablespine.cli.worker import app as worker_app  # noqa: E402

app.add_typer(db_app, name="db", help="Database operations.")
app.add_typer(outbox_app, name="outbox", help="Outbox inspection and maintenance.")
app.add_typer(worker_app, name="worker", help="Computed-update worker.")
app.add_typer(dlq_app, name="dlq", help="Dead-letter queue.")
