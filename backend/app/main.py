from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from structlog.contextvars import bound_contextvars

from backend.app.api.errors import register_exception_handlers
from backend.app.api.routes import router
from backend.app.dependencies import get_settings, get_telemetry, shutdown_workers
from backend.app.logging_config import ROOT_LOGGER_NAME, configure_application_logging

REQUEST_ID_HEADER = "X-Request-ID"
_MAX_REQUEST_ID_CHARS = 128


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    configure_application_logging(get_settings())
    try:
        yield
    finally:
        # Queued generations and translations are dropped; running ones finish on their own.
        shutdown_workers()
        logging.getLogger(ROOT_LOGGER_NAME).info("worker pools shut down")


async def track_request(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Tag logs with a request id and emit http.request.* telemetry around each call."""
    telemetry = get_telemetry()
    request_id = _request_id(request)
    fields = {"request_id": request_id, "method": request.method, "path": request.url.path}
    started_at = perf_counter()

    with bound_contextvars(
        http_request_id=request_id,
        http_method=request.method,
        http_path=request.url.path,
    ):
        telemetry.emit("http.request.start", **fields)
        try:
            response = await call_next(request)
        except Exception as exc:
            telemetry.emit(
                "http.request.error",
                **fields,
                duration_ms=_elapsed_ms(started_at),
                error_type=type(exc).__name__,
            )
            raise
        response.headers[REQUEST_ID_HEADER] = request_id
        telemetry.emit(
            "http.request.finish",
            **fields,
            duration_ms=_elapsed_ms(started_at),
            status_code=response.status_code,
        )
        return response


def create_app() -> FastAPI:
    app = FastAPI(title="Video Digest API", version="0.1.0", lifespan=app_lifespan)
    app.middleware("http")(track_request)
    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/health", tags=["system"], operation_id="health_check")
    def health_check() -> dict[str, str]:
        return {"status": "ok"}

    return app


def _request_id(request: Request) -> str:
    incoming = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    return incoming[:_MAX_REQUEST_ID_CHARS] if incoming else str(uuid4())


def _elapsed_ms(started_at: float) -> int:
    return int((perf_counter() - started_at) * 1000)


app = create_app()
