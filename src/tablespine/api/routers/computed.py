"""
Computed router — cascade previews, dead letters and run progress.

Endpoints:
    POST /computed/explain                         Preview a mutation's cascade
    GET  /computed/dead-letters                    List dead-lettered tasks
    GET  /computed/dead-letters/{id}               One dead letter with plan and trace
    POST /computed/dead-letters/{id}/requeue       Move a dead letter back to the outbox
    GET  /computed/runs/{run_id}/progress          Completion of a cascading run
    GET  /computed/outbox/stats                    Task counts by state

Manifesto:
    Cascade failures are not surfaced as mutation-time errors, so operators
    need a way to see and replay them without direct database access.

Tags:
    tablespine, api, explain, dead-letter, outbox
"""

from __future__ import annotations

from fastapi import APIRouter, Path, Query

from tablespine.api.deps import Engine
from tablespine.api.schemas import (
    DeadLetterDetailSchema,
    DeadLetterSchema,
    ExplainRequest,
    ExplainResponse,
    OutboxStatsSchema,
    PagedResponse,
    PageMeta,
    RequeueResponse,
    RunProgressSchema,
    SuccessResponse,
)
from tablespine.errors import NotFoundError
from tablespine.outbox.models import DeadLetterEntry

router = APIRouter(prefix="/computed")


def _summary(entry: DeadLetterEntry) -> dict:
    data = entry.to_dict()
    data["step_count"] = entry.step_count
    return data


@router.post("/explain", response_model=ExplainResponse)
def explain(engine: Engine, body: ExplainRequest):
    """Plan a mutation without applying it.

    Example:
        POST /computed/explain
        {"changeType": "update", "tableId": "tbl...", "recordIds": ["rec..."], "fieldIds": ["fld..."]}

        Response:
        {"computedImpact": {"affectedFields": [...], "warnings": [], "estimatedComplexity": 3, ...}}
    """
    return engine.explain(body.change_type, body.payload())


@router.get("/dead-letters", response_model=PagedResponse[DeadLetterSchema])
def list_dead_letters(
    engine: Engine,
    run_id: str | None = Query(None, description="Filter by run"),
    limit: int = Query(50, ge=1, le=500, description="Maximum items to return (1-500)"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
):
    entries = engine.dead_letters.list(run_id=run_id, limit=limit, offset=offset)
    total = engine.dead_letters.count(run_id=run_id)
    return PagedResponse(
        data=[DeadLetterSchema(**_summary(e)) for e in entries],
        page=PageMeta(total=total, limit=limit, offset=offset, has_more=offset + len(entries) < total),
    )


@router.get("/dead-letters/{entry_id}", response_model=SuccessResponse[DeadLetterDetailSchema])
def get_dead_letter(engine: Engine, entry_id: str = Path(..., description="Dead-letter entry ID")):
    entry = engine.dead_letters.get(entry_id)
    if entry is None:
        raise NotFoundError(f"Dead letter not found: {entry_id}")
    return SuccessResponse(data=DeadLetterDetailSchema(**_summary(entry)))


@router.post("/dead-letters/{entry_id}/requeue", response_model=SuccessResponse[RequeueResponse])
def requeue_dead_letter(engine: Engine, entry_id: str = Path(..., description="Dead-letter entry ID")):
    """Re-queue a dead letter as a fresh pending task (attempts reset)."""
    task_id = engine.dead_letters.requeue(entry_id)
    return SuccessResponse(data=RequeueResponse(requeued=True, id=entry_id, task_id=task_id))


@router.get("/runs/{run_id}/progress", response_model=SuccessResponse[RunProgressSchema])
def run_progress(engine: Engine, run_id: str = Path(..., description="Run ID")):
    progress = engine.outbox.run_progress(run_id)
    return SuccessResponse(data=RunProgressSchema(**progress.to_dict()))


@router.get("/outbox/stats", response_model=SuccessResponse[OutboxStatsSchema])
def outbox_stats(engine: Engine):
    return SuccessResponse(data=OutboxStatsSchema(**engine.outbox.stats()))
