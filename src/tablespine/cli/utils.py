"""
CLI utility helpers — output formatting and engine construction.
"""

from __future__ import annotations

import json
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from tablespine.engine import ComputedEngine
from tablespine.errors import TableSpineError
from tablespine.settings import get_settings

console = Console()
err_console = Console(stderr=True)

DB_HELP = "SQLite database path (defaults to TABLESPINE_DATABASE_URL)"


# ── Engine helper ────────────────────────────────────────────────────────


def open_engine(database: str | None = None) -> ComputedEngine:
    """Open the database (creating the schema) and wrap it in an engine."""
    return ComputedEngine.open(database or get_settings().database_url)


def fail(exc: TableSpineError) -> None:
    """Print an engine error and exit non-zero."""
    err_console.print(f"[bold red]Error[/bold red] ({exc.category.value}): {exc.message}")
    raise typer.Exit(code=1)


# ── Output helpers ───────────────────────────────────────────────────────


def output_dict(data: dict[str, Any], *, as_json: bool = False, title: str = "") -> None:
    """Render a single dict as key-value pairs, or as JSON."""
    if as_json:
        console.print_json(json.dumps(data, default=str))
        return
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")


def output_rows(
    rows: list[dict[str, Any]],
    *,
    columns: list[str],
    as_json: bool = False,
    title: str = "",
    total: int | None = None,
    offset: int = 0,
) -> None:
    """Render a list of dicts as a Rich table restricted to ``columns``."""
    if as_json:
        payload = {"items": rows, "total": total if total is not None else len(rows), "offset": offset}
        console.print_json(json.dumps(payload, default=str))
        return
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in columns:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*(str(row.get(col, "")) for col in columns))
    console.print(table)
    if total is not None:
        console.print(f"\n[dim]Showing {len(rows)} of {total} (offset {offset})[/dim]")
