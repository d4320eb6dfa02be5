"""
Maps the onboarding error taxonomy onto HTTP responses.

Bodies are always ``{"error": <code>, "detail": <message>}``.  Messages
come from the exception classes and never carry provider or engine
response text.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from utils.exceptions import (
    CodeExchangeFailed,
    InvalidState,
    InvalidTenantId,
    NoTokensFound,
    OnboardingError,
    RefreshFailed,
    TenantNotFound,
    UnknownProvider,
    WorkflowEngineError,
)
from utils.schemas import ErrorBody

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (InvalidState, status.HTTP_400_BAD_REQUEST),
    (CodeExchangeFailed, status.HTTP_400_BAD_REQUEST),
    (UnknownProvider, status.HTTP_400_BAD_REQUEST),
    (InvalidTenantId, status.HTTP_400_BAD_REQUEST),
    (NoTokensFound, status.HTTP_404_NOT_FOUND),
    (TenantNotFound, status.HTTP_404_NOT_FOUND),
    (RefreshFailed, status.HTTP_409_CONFLICT),
    (WorkflowEngineError, status.HTTP_502_BAD_GATEWAY),
)


def status_for(exc: OnboardingError) -> int:
    for klass, code in _STATUS_BY_ERROR:
        if isinstance(exc, klass):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_response(status_code: int, code: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorBody(error=code, detail=detail).model_dump(),
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(OnboardingError)
    async def onboarding_error_handler(request: Request, exc: OnboardingError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.code)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.code)
        return error_response(status_code, exc.code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return error_response(exc.status_code, f"HTTP_{exc.status_code}", str(exc.detail))
