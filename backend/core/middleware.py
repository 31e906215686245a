"""FastAPI middleware for request tracking, timing, and error handling.

Adds:
- X-Request-ID header (generated if not provided)
- X-Process-Time header (request duration)
- Structured logging per request
- Exception handlers mapping engine exceptions to HTTP responses
"""

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import get_settings

logger = logging.getLogger(__name__)


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """Add request ID and timing to every request/response."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        request.state.request_id = request_id
        start_time = time.monotonic()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.monotonic() - start_time) * 1000
            logger.error(
                "Unhandled exception",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": round(duration_ms, 2),
                    "error": str(exc),
                },
                exc_info=True,
            )
            # In production, don't expose error details to client
            if get_settings().is_production:
                error_detail = "Internal server error"
            else:
                error_detail = str(exc) or "Internal server error"

            return JSONResponse(
                status_code=500,
                content={"detail": error_detail, "request_id": request_id},
                headers={"X-Request-ID": request_id},
            )

        duration_ms = (time.monotonic() - start_time) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.2f}ms"

        log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
        if request.url.path not in ("/api/health", "/api/health/"):
            logger.log(
                log_level,
                f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.0f}ms)",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 2),
                },
            )

        return response


def setup_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    from core.exceptions import EngineException, MutationRejectedError, WorkflowValidationError

    def _content(request: Request, exc: Exception) -> dict:
        return {"detail": str(exc), "request_id": getattr(request.state, "request_id", None)}

    @app.exception_handler(MutationRejectedError)
    async def mutation_rejected_handler(request: Request, exc: MutationRejectedError):
        content = _content(request, exc)
        content.update(code=exc.code, errors=exc.errors)
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(WorkflowValidationError)
    async def validation_handler(request: Request, exc: WorkflowValidationError):
        content = _content(request, exc)
        content["errors"] = exc.errors
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(EngineException)
    async def engine_exception_handler(request: Request, exc: EngineException):
        return JSONResponse(status_code=exc.status_code, content=_content(request, exc))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content=_content(request, exc))
