"""
FastAPI application factory.

``create_app()`` wires the router, error handlers and lifespan events into a
single ``FastAPI`` instance.

Tags:
    tablespine, api, app-factory, FastAPI
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tablespine import __version__
from tablespine.api.deps import get_settings
from tablespine.api.errors import engine_error_handler, unhandled_exception_handler
from tablespine.connection import create_connection
from tablespine.errors import TableSpineError
from tablespine.logging import get_logger
from tablespine.settings import TableSpineSettings

log = get_logger("tablespine.api")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create the schema on startup."""
    settings: TableSpineSettings = app.state.settings
    conn, info = create_connection(settings.database_url, init_schema=True)
    conn.close()
    log.info("api_starting", version=app.version, database=info.url, persistent=info.persistent)
    yield
    log.info("api_shutting_down")


def create_app(*, settings: TableSpineSettings | None = None) -> FastAPI:
    """Build and return a configured FastAPI application.

    Parameters
    ----------
    settings : TableSpineSettings | None
        Override settings (useful for testing).  When ``None`` the cached
        singleton from :func:`get_settings` is used.
    """
    settings = settings or get_settings()

    app = FastAPI(title="tablespine", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.dependency_overrides[get_settings] = lambda: settings

    app.add_exception_handler(TableSpineError, engine_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    from tablespine.api.routers import computed

    app.include_router(computed.router, tags=["computed"])
    return app
