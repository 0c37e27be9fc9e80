from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.models.summary_contracts import ApiError, ApiErrorResponse
from backend.app.services.error_taxonomy import (
    SummaryNotFoundError,
    SummaryPipelineError,
    http_status_for,
    is_retryable,
)

LOGGER = logging.getLogger("video_digest.api")


class ApiProblem(Exception):
    """An HTTP-layer rejection (auth, permissions, quotas) rendered with the error envelope."""

    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        retryable: bool = False,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.retryable = retryable
        self.headers = headers or {}


def error_response(
    *,
    status_code: int,
    code: str,
    message: str,
    retryable: bool,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ApiErrorResponse(error=ApiError(code=code, message=message, retryable=retryable))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    async def _handle_pipeline_error(_: Request, exc: Exception) -> JSONResponse:
        assert isinstance(exc, SummaryPipelineError)
        status_code = http_status_for(exc.error_type)
        LOGGER.info(
            "request failed error_type=%s status_code=%s",
            exc.error_type.value,
            status_code,
        )
        return error_response(
            status_code=status_code,
            code=exc.error_type.value,
            message=exc.message,
            retryable=is_retryable(exc.error_type),
        )

    async def _handle_not_found(_: Request, exc: Exception) -> JSONResponse:
        return error_response(
            status_code=404,
            code="not_found",
            message=str(exc),
            retryable=False,
        )

    async def _handle_api_problem(_: Request, exc: Exception) -> JSONResponse:
        assert isinstance(exc, ApiProblem)
        return error_response(
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            retryable=exc.retryable,
            headers=exc.headers,
        )

    async def _handle_validation_error(_: Request, exc: Exception) -> JSONResponse:
        assert isinstance(exc, RequestValidationError)
        first_error = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first_error.get("loc", ()))
        detail = first_error.get("msg", "Request validation failed")
        return error_response(
            status_code=422,
            code="invalid_request",
            message=f"{location}: {detail}" if location else str(detail),
            retryable=False,
        )

    app.add_exception_handler(SummaryPipelineError, _handle_pipeline_error)
    app.add_exception_handler(SummaryNotFoundError, _handle_not_found)
    app.add_exception_handler(ApiProblem, _handle_api_problem)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
