"""
Engine tables.

Defines table names and DDL for schema metadata, the reference graph, the link
junction, the computed-update outbox and its dead-letter sink. Per-table record
storage (``rec_<tableId>``) is created on demand by
:class:`tablespine.records.store.RecordStore`.

Architecture:
    ::

        Table Registry (TABLES):
        ┌────────────────────────────────────────────────────────────┐
        │ tables        → ts_table                                   │
        │ fields        → ts_field                                   │
        │ reference     → reference                                  │
        │ links         → ts_link                                    │
        │ outbox        → computed_update_outbox                     │
        │ dead_letter   → computed_update_dead_letter                │
        └────────────────────────────────────────────────────────────┘

        JSON columns: seed_record_ids, seed_groups, steps, edges,
        dirty_stats, origin_run_ids, affected_table_ids,
        affected_field_ids, trace_data, ts_field.raw / descriptor

Features:
    - **TABLES:** Logical name → table name
    - **DDL:** CREATE TABLE / CREATE INDEX statements (idempotent)
    - **create_tables():** Create everything, safe to call repeatedly

Tags:
    schema, ddl, outbox, dead-letter, reference-graph, tablespine
"""

TABLES = {
    "tables": "ts_table",
    "fields": "ts_field",
    "reference": "reference",
    "links": "ts_link",
    "outbox": "computed_update_outbox",
    "dead_letter": "computed_update_dead_letter",
}

# Shared between the outbox and the dead letter store
_TASK_COLUMNS = """
    id TEXT PRIMARY KEY,
    base_id TEXT NOT NULL,
    seed_table_id TEXT NOT NULL,
    seed_record_ids TEXT NOT NULL DEFAULT '[]',
    seed_groups TEXT NOT NULL DEFAULT '[]',
    change_type TEXT NOT NULL,
    steps TEXT NOT NULL DEFAULT '[]',
    edges TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 5,
    next_run_at TEXT NOT NULL,
    locked_at TEXT,
    locked_by TEXT,
    last_error TEXT,
    estimated_complexity INTEGER NOT NULL DEFAULT 0,
    plan_hash TEXT NOT NULL,
    dirty_stats TEXT,
    run_id TEXT NOT NULL,
    origin_run_ids TEXT NOT NULL DEFAULT '[]',
    run_total_steps INTEGER NOT NULL DEFAULT 0,
    run_completed_steps_before INTEGER NOT NULL DEFAULT 0,
    affected_table_ids TEXT NOT NULL DEFAULT '[]',
    affected_field_ids TEXT NOT NULL DEFAULT '[]',
    sync_max_level INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL"""

DDL = {
    "tables": """
        CREATE TABLE IF NOT EXISTS ts_table (
            id TEXT PRIMARY KEY,
            base_id TEXT NOT NULL,
            name TEXT NOT NULL,
            db_table_name TEXT NOT NULL UNIQUE,
            created_time TEXT NOT NULL
        )
    """,
    "fields": """
        CREATE TABLE IF NOT EXISTS ts_field (
            id TEXT PRIMARY KEY,
            table_id TEXT NOT NULL REFERENCES ts_table(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            kind TEXT NOT NULL,
            value_type TEXT NOT NULL,
            raw TEXT NOT NULL,
            descriptor TEXT NOT NULL,
            created_time TEXT NOT NULL
        )
    """,
    "fields_table_idx": """
        CREATE INDEX IF NOT EXISTS idx_ts_field_table ON ts_field(table_id)
    """,
    "reference": """
        CREATE TABLE IF NOT EXISTS reference (
            id TEXT PRIMARY KEY,
            from_field_id TEXT NOT NULL,
            to_field_id TEXT NOT NULL,
            created_time TEXT NOT NULL,
            UNIQUE (from_field_id, to_field_id)
        )
    """,
    "reference_to_idx": """
        CREATE INDEX IF NOT EXISTS idx_reference_to ON reference(to_field_id)
    """,
    "links": """
        CREATE TABLE IF NOT EXISTS ts_link (
            field_id TEXT NOT NULL,
            record_id TEXT NOT NULL,
            foreign_record_id TEXT NOT NULL,
            position INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (field_id, record_id, foreign_record_id)
        )
    """,
    "links_foreign_idx": """
        CREATE INDEX IF NOT EXISTS idx_ts_link_foreign ON ts_link(field_id, foreign_record_id)
    """,
    "outbox": f"""
        CREATE TABLE IF NOT EXISTS computed_update_outbox ({_TASK_COLUMNS}
        )
    """,
    "outbox_claim_idx": """
        CREATE INDEX IF NOT EXISTS idx_outbox_claim
        ON computed_update_outbox(status, next_run_at, created_at)
    """,
    "outbox_dedup_idx": """
        CREATE INDEX IF NOT EXISTS idx_outbox_dedup
        ON computed_update_outbox(base_id, plan_hash, status)
    """,
    "outbox_run_idx": """
        CREATE INDEX IF NOT EXISTS idx_outbox_run ON computed_update_outbox(run_id)
    """,
    "dead_letter": f"""
        CREATE TABLE IF NOT EXISTS computed_update_dead_letter ({_TASK_COLUMNS},
            trace_data TEXT,
            failed_at TEXT NOT NULL
        )
    """,
    "dead_letter_run_idx": """
        CREATE INDEX IF NOT EXISTS idx_dead_letter_run ON computed_update_dead_letter(run_id)
    """,
}


def create_tables(conn) -> None:
    """
    Create all engine tables.

    Safe to call multiple times (CREATE IF NOT EXISTS).
    """
    with conn.transaction():
        for _name, ddl in DDL.items():
            conn.execute(ddl)
