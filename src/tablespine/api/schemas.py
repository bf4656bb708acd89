"""
API schemas — request bodies, response envelopes and RFC 7807 errors.

Response Envelope Conventions:
    - 2xx responses use ``SuccessResponse[T]`` or ``PagedResponse[T]``
    - 4xx/5xx responses use ``ProblemDetail`` (RFC 7807)
"""

from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

from tablespine.enums import ChangeType

T = TypeVar("T")


# ── RFC 7807 Problem Detail ─────────────────────────────────────────────


class ProblemDetail(BaseModel):
    """RFC 7807 «Problem Details for HTTP APIs».

    Error Codes:
        - ``NOT_FOUND`` (404): table, record, run or dead letter does not exist
        - ``VALIDATION_FAILED`` (400): invalid input data
        - ``INTERNAL`` (500): unexpected server error
    """

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: str = ""
    instance: str = ""
    code: str = ""


# ── Envelopes ───────────────────────────────────────────────────────────


class PageMeta(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class SuccessResponse(BaseModel, Generic[T]):
    data: T
    warnings: list[str] = Field(default_factory=list)


class PagedResponse(BaseModel, Generic[T]):
    data: list[T]
    page: PageMeta


# ── Explain ─────────────────────────────────────────────────────────────


class ExplainRequest(BaseModel):
    """Preview the cascade a mutation would cause."""

    change_type: ChangeType = Field(alias="changeType")
    table_id: str = Field(alias="tableId")
    record_ids: list[str] = Field(default_factory=list, alias="recordIds")
    field_ids: list[str] | None = Field(default=None, alias="fieldIds")

    model_config = {"populate_by_name": True}

    def payload(self) -> dict[str, Any]:
        return {"tableId": self.table_id, "recordIds": self.record_ids, "fieldIds": self.field_ids}


class ComputedImpact(BaseModel):
    affectedFields: list[str]
    affectedTables: list[str]
    warnings: list[str]
    estimatedComplexity: int
    stepCount: int
    levels: int


class ExplainResponse(BaseModel):
    computedImpact: ComputedImpact | None = None


# ── Outbox / dead letters ───────────────────────────────────────────────


class DeadLetterSchema(BaseModel):
    id: str
    base_id: str
    seed_table_id: str
    change_type: str
    run_id: str
    attempts: int
    max_attempts: int
    last_error: str | None = None
    plan_hash: str
    step_count: int
    affected_table_ids: list[str] = Field(default_factory=list)
    affected_field_ids: list[str] = Field(default_factory=list)
    failed_at: str | None = None


class DeadLetterDetailSchema(DeadLetterSchema):
    steps: Any = None
    edges: Any = None
    seed_record_ids: list[str] = Field(default_factory=list)
    seed_groups: Any = None
    origin_run_ids: list[str] = Field(default_factory=list)
    trace_data: str | None = None


class RequeueResponse(BaseModel):
    requeued: bool
    id: str
    task_id: str


class RunProgressSchema(BaseModel):
    run_id: str
    total_steps: int
    completed_steps: int
    percent: float
    pending_tasks: int
    processing_tasks: int
    done_tasks: int
    dead_letters: int
    is_complete: bool


class OutboxStatsSchema(BaseModel):
    pending: int
    processing: int
    done: int
    parked: int
    dead_letter: int
