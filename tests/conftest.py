"""
Shared pytest fixtures for tablespine tests.

This module provides:
- Settings with small retry/lock windows for deterministic queue tests
- In-memory SQLite connections with the engine schema
- A file-backed database for tests that need several connections
- Builders for the linked-table chains used across modules

Usage:
    Fixtures are auto-discovered by pytest.

    def test_something(engine, lookup_chain):
        engine.update_records(lookup_chain.t1, {...})
"""

from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace

import pytest

from tablespine.connection import create_connection
from tablespine.engine import ComputedEngine
from tablespine.settings import TableSpineSettings, get_settings

BASE_ID = "bseTest"

# Fixed clock for queue tests
T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


# =============================================================================
# Settings / connections
# =============================================================================


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def settings() -> TableSpineSettings:
    return TableSpineSettings(
        database_url=":memory:",
        outbox_max_attempts=3,
        outbox_base_backoff_seconds=1.0,
        outbox_max_backoff_seconds=60.0,
        outbox_lock_timeout_seconds=60.0,
        sync_complexity_threshold=200,
        sync_max_level=1,
    )


@pytest.fixture()
def conn():
    """In-memory SQLite with the engine schema."""
    connection, _info = create_connection(":memory:", init_schema=True)
    yield connection
    connection.close()


@pytest.fixture()
def file_db(tmp_path) -> str:
    """Path of an initialized file database."""
    path = str(tmp_path / "tablespine.db")
    connection, _info = create_connection(path, init_schema=True)
    connection.close()
    return path


@pytest.fixture()
def engine(conn, settings) -> ComputedEngine:
    return ComputedEngine(conn, settings)


# =============================================================================
# Scenario builders
# =============================================================================


def build_lookup_chain(engine: ComputedEngine) -> SimpleNamespace:
    """T1(Count) <- T2(link, lookup Count) <- T3(link, lookup of T2's lookup)."""
    t1 = engine.create_table(BASE_ID, "T1").id
    t2 = engine.create_table(BASE_ID, "T2").id
    t3 = engine.create_table(BASE_ID, "T3").id

    count = engine.create_field({"tableId": t1, "name": "Count", "type": "number"}).id
    link12 = engine.create_field(
        {
            "tableId": t2,
            "name": "T1",
            "type": "link",
            "options": {"relationship": "manyOne", "foreignTableId": t1, "lookupFieldId": count},
        }
    ).id
    lookup2 = engine.create_field(
        {
            "tableId": t2,
            "name": "Count (from T1)",
            "type": "number",
            "isLookup": True,
            "lookupOptions": {"foreignTableId": t1, "linkFieldId": link12, "lookupFieldId": count},
        }
    ).id
    link23 = engine.create_field(
        {
            "tableId": t3,
            "name": "T2",
            "type": "link",
            "options": {"relationship": "manyOne", "foreignTableId": t2, "lookupFieldId": lookup2},
        }
    ).id
    lookup3 = engine.create_field(
        {
            "tableId": t3,
            "name": "Count (from T2)",
            "type": "number",
            "isLookup": True,
            "lookupOptions": {"foreignTableId": t2, "linkFieldId": link23, "lookupFieldId": lookup2},
        }
    ).id
    return SimpleNamespace(
        t1=t1, t2=t2, t3=t3,
        count=count, link12=link12, lookup2=lookup2, link23=link23, lookup3=lookup3,
    )


def link_chain(engine: ComputedEngine, chain: SimpleNamespace, count: int = 10) -> SimpleNamespace:
    """Insert one record per table and link T3 -> T2 -> T1."""
    (r1,), _ = engine.insert_records(chain.t1, [{chain.count: count}]).unpack()
    (r2,), _ = engine.insert_records(chain.t2, [{chain.link12: [r1]}]).unpack()
    (r3,), _ = engine.insert_records(chain.t3, [{chain.link23: [r2]}]).unpack()
    return SimpleNamespace(r1=r1, r2=r2, r3=r3)


def build_formula_chain(engine: ComputedEngine, depth: int = 3) -> SimpleNamespace:
    """One table: A (number) and ``depth`` formulas, each the previous plus one."""
    table = engine.create_table(BASE_ID, "Chain").id
    previous = engine.create_field({"tableId": table, "name": "A", "type": "number"}).id
    fields = [previous]
    for index in range(depth):
        previous = engine.create_field(
            {
                "tableId": table,
                "name": f"F{index}",
                "type": "formula",
                "options": {"expression": f"{{{previous}}} + 1"},
            }
        ).id
        fields.append(previous)
    return SimpleNamespace(table=table, fields=fields)


@pytest.fixture()
def lookup_chain(engine) -> SimpleNamespace:
    return build_lookup_chain(engine)
