"""Uniform error rendering.

Every LifecycleError becomes `{"error": code, "detail": message,
"retryable": bool}` with a status derived from its category.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.lifecycle.errors import ErrorCategory, LifecycleError, PractitionerUnavailableError

logger = logging.getLogger(__name__)

_STATUS_BY_CATEGORY: dict[ErrorCategory, int] = {
    ErrorCategory.AUTHENTICATION: status.HTTP_401_UNAUTHORIZED,
    ErrorCategory.AUTHORIZATION: status.HTTP_403_FORBIDDEN,
    ErrorCategory.STATE: status.HTTP_400_BAD_REQUEST,
    ErrorCategory.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCategory.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCategory.COLLABORATOR: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(exc: LifecycleError) -> int:
    # Busy practitioner is a conflict for the caller, not a malformed request
    if isinstance(exc, PractitionerUnavailableError):
        return status.HTTP_409_CONFLICT
    return _STATUS_BY_CATEGORY[exc.category]


async def lifecycle_error_handler(request: Request, exc: LifecycleError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.code, exc.message)
    else:
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "detail": exc.message, "retryable": exc.retryable},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LifecycleError, lifecycle_error_handler)  # type: ignore[arg-type]
