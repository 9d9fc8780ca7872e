"""Error handling middleware."""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from ytflow.models.errors import (
    CapacityExceeded,
    ErrorResponse,
    ManifestIOError,
    TaskNotFoundError,
    ValidationError,
    YtFlowError,
)

logger = logging.getLogger(__name__)


async def ytflow_error_handler(request: Request, exc: YtFlowError) -> JSONResponse:
    """Handle YtFlowError exceptions."""
    status_code = _get_status_code(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    response = ErrorResponse.from_exception(
        exc, guidance=_get_guidance(exc), retry=_is_retryable(exc)
    )
    headers = {"Retry-After": "30"} if isinstance(exc, CapacityExceeded) else None
    return JSONResponse(status_code=status_code, content=response.model_dump(), headers=headers)


def _get_status_code(exc: YtFlowError) -> int:
    """Map error type to HTTP status code."""
    if isinstance(exc, ValidationError):
        return 400
    elif isinstance(exc, TaskNotFoundError):
        return 404
    elif isinstance(exc, CapacityExceeded):
        return 429
    elif isinstance(exc, ManifestIOError):
        return 503
    return 500


def _get_guidance(exc: YtFlowError) -> str:
    if isinstance(exc, ValidationError):
        return "Check the video URL and request options."
    if isinstance(exc, TaskNotFoundError):
        return "Check the task ID; finished tasks are removed after cleanup."
    if isinstance(exc, CapacityExceeded):
        return "The server is at capacity. Try again once a running task finishes."
    return "Please try again or contact support."


def _is_retryable(exc: YtFlowError) -> bool:
    return isinstance(exc, (CapacityExceeded, ManifestIOError))
