"""Request tracking middleware and the engine-error to HTTP mapping.

Every response carries ``X-Request-ID`` and ``X-Process-Time``. Errors from
``core.exceptions`` become JSON bodies with the status code the exception
declares.
"""

import time
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import get_settings
from core.exceptions import PlanEngineError
from core.logging_config import bind_request_context

logger = structlog.get_logger(__name__)

_UNLOGGED_SUFFIXES = ("/health",)


def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """Request id, timing and one log line per request."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        bind_request_context(request_id)
        started = time.monotonic()

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception(
                "Unhandled exception",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            detail = "Internal server error"
            if not get_settings().is_production:
                detail = str(exc) or detail
            return JSONResponse(
                status_code=500,
                content={"detail": detail, "request_id": request_id},
                headers={"X-Request-ID": request_id},
            )

        duration_ms = (time.monotonic() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.2f}ms"

        if not request.url.path.endswith(_UNLOGGED_SUFFIXES):
            log = logger.warning if response.status_code >= 400 else logger.info
            log(
                "Request handled",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
        return response


def setup_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(PlanEngineError)
    async def engine_error_handler(request: Request, exc: PlanEngineError):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.message,
                "error_code": type(exc).__name__,
                "request_id": _request_id(request),
            },
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=400,
            content={"detail": str(exc), "request_id": _request_id(request)},
        )
