"""
FastAPI dependency injection — settings singleton and per-request engine.

Usage in routers::

    from tablespine.api.deps import Engine

    @router.get("/things")
    def list_things(engine: Engine):
        ...

Tags:
    tablespine, api, dependency-injection
"""

from __future__ import annotations

from collections.abc import Generator
from typing import Annotated

from fastapi import Depends

from tablespine.connection import SqliteConnection, create_connection
from tablespine.engine import ComputedEngine
from tablespine.settings import TableSpineSettings
from tablespine.settings import get_settings as _load_settings

# ── Settings (singleton) ─────────────────────────────────────────────────


def get_settings() -> TableSpineSettings:
    """Cached settings, loaded once per process."""
    return _load_settings()


# ── Database connection (per-request) ────────────────────────────────────


def get_connection(
    settings: Annotated[TableSpineSettings, Depends(get_settings)],
) -> Generator[SqliteConnection, None, None]:
    """Yield a database connection for the request lifespan."""
    conn, _info = create_connection(settings.database_url)
    try:
        yield conn
    finally:
        conn.close()


def get_engine(
    conn: Annotated[SqliteConnection, Depends(get_connection)],
    settings: Annotated[TableSpineSettings, Depends(get_settings)],
) -> ComputedEngine:
    return ComputedEngine(conn, settings)


# ── Convenience type aliases ─────────────────────────────────────────────

Settings = Annotated[TableSpineSettings, Depends(get_settings)]
Conn = Annotated[SqliteConnection, Depends(get_connection)]
Engine = Annotated[ComputedEngine, Depends(get_engine)]
