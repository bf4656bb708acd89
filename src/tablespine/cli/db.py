"""
CLI: ``tablespine db`` — database management commands.
"""

from __future__ import annotations

import typer

from tablespine.cli.utils import DB_HELP, console, output_dict

app = typer.Typer(no_args_is_help=True)


@app.command()
def init(
    database: str | None = typer.Option(None, "--db", "-d", help=DB_HELP),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Initialise the database schema (create tables)."""
    from tablespine.connection import create_connection

    conn, info = create_connection(database or _default_url(), init_schema=True)
    conn.close()
    if not json_out:
        console.print("[green]Schema ready[/green]")
    output_dict(
        {"database": info.resolved_path or info.url, "persistent": info.persistent},
        as_json=json_out,
    )


def _default_url() -> str:
    from tablespine.settings import get_settings

    return get_settings().database_url
