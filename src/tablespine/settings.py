"""Environment-driven settings for the computed-field engine.

All tunables of the queue, worker, hybrid dispatch and ordering live here so
that the backoff curve and the sync/async threshold are configuration rather
than constants.

Manifesto:
    - **Pydantic validation:** Type-checked at startup, not at first use
    - **Environment-driven:** ``TABLESPINE_*`` variables and ``.env`` files
    - **Extra ignore:** Unknown env vars don't cause startup failures

Examples:
    >>> import os
    >>> os.environ["TABLESPINE_OUTBOX_MAX_ATTEMPTS"] = "3"
    >>> TableSpineSettings().outbox_max_attempts
    3

Tags:
    settings, configuration, pydantic, environment, tablespine
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TableSpineSettings(BaseSettings):
    """Settings for the engine, queue and worker.

    Fields
    ──────
    database_url                 : SQLite path or ``sqlite:///path`` URL
    outbox_*                     : retry, backoff, lock expiry, chunking, retention
    worker_*                     : polling cadence and claim budgets
    sync_complexity_threshold    : plans at or below this run inline
    sync_max_level               : levels run inline when a plan is deferred
    order_max_rebalance_attempts : bound on rebalance-and-retry
    """

    model_config = SettingsConfigDict(
        env_prefix="TABLESPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Storage ──────────────────────────────────────────────────
    database_url: str = "tablespine.db"

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Outbox ───────────────────────────────────────────────────
    outbox_max_attempts: int = Field(default=5, ge=1)
    outbox_base_backoff_seconds: float = Field(default=1.0, ge=0)
    outbox_max_backoff_seconds: float = Field(default=300.0, ge=0)
    outbox_backoff_jitter: bool = False
    outbox_lock_timeout_seconds: float = Field(default=300.0, gt=0)
    outbox_max_steps_per_task: int = Field(default=50, ge=1)
    outbox_done_retention_days: int = Field(default=7, ge=0)

    # ── Worker ───────────────────────────────────────────────────
    worker_poll_interval: float = Field(default=2.0, gt=0)
    worker_batch_size: int = Field(default=10, ge=1)
    worker_complexity_budget: int = Field(default=10_000, ge=1)
    worker_threads: int = Field(default=1, ge=1)

    # ── Hybrid dispatch ──────────────────────────────────────────
    sync_complexity_threshold: int = Field(default=200, ge=0)
    sync_max_level: int = Field(default=1, ge=-1)

    # ── Ordering ─────────────────────────────────────────────────
    order_max_rebalance_attempts: int = Field(default=5, ge=1)


@lru_cache(maxsize=1)
def get_settings() -> TableSpineSettings:
    """Cached settings, loaded once per process."""
    return TableSpineSettings()
