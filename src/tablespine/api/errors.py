"""
Error handlers — map engine errors to RFC 7807 responses.
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from tablespine.api.schemas import ProblemDetail
from tablespine.errors import ErrorCategory, TableSpineError
from tablespine.logging import get_logger

logger = get_logger(__name__)

# ── Error category → HTTP status mapping ─────────────────────────────────

CATEGORY_TO_STATUS: dict[ErrorCategory, tuple[int, str]] = {
    ErrorCategory.NOT_FOUND: (404, "NOT_FOUND"),
    ErrorCategory.VALIDATION: (400, "VALIDATION_FAILED"),
    ErrorCategory.ORDERING: (409, "CONFLICT"),
    ErrorCategory.TRANSIENT: (503, "TRANSIENT"),
    ErrorCategory.QUEUE: (409, "CONFLICT"),
}


def problem_response(*, status: int, title: str, detail: str = "", instance: str = "", code: str = "") -> JSONResponse:
    """Build a RFC 7807 JSON error response."""
    body = ProblemDetail(title=title, status=status, detail=detail, instance=instance, code=code)
    return JSONResponse(status_code=status, content=body.model_dump())


async def engine_error_handler(request: Request, exc: TableSpineError) -> JSONResponse:
    status, code = CATEGORY_TO_STATUS.get(exc.category, (500, "INTERNAL"))
    if status >= 500:
        logger.error("api_engine_error", path=str(request.url.path), error=str(exc), category=exc.category.value)
    return problem_response(
        status=status,
        title=code.replace("_", " ").title(),
        detail=exc.message,
        instance=str(request.url),
        code=code,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions: returns 500 with ProblemDetail."""
    logger.exception("api_unhandled_error", path=str(request.url.path))
    return problem_response(
        status=500,
        title="Internal Server Error",
        detail="An unexpected error occurred.",
        instance=str(request.url),
        code="INTERNAL",
    )
