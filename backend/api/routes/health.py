"""Health check endpoints.

Provides:
- Basic liveness check (/health/)
- Detailed engine status (/health/status)
"""

import platform
import sys
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request
import logging

from app.config import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


@router.get("/", response_model=dict[str, Any])
async def root() -> dict[str, Any]:
    """
    Get API root information and version.
    Used as a simple liveness check.
    """
    settings = get_settings()
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "ok",
    }


@router.get("/status", response_model=dict[str, Any])
async def engine_status(request: Request) -> dict[str, Any]:
    """
    Engine status: uptime, worker pool usage, persistence availability.
    Persistence being down degrades history only; executions keep running.
    """
    settings = get_settings()
    manager = request.app.state.execution_manager
    connections = request.app.state.connection_manager

    uptime_seconds = time.monotonic() - _start_time
    hours, remainder = divmod(int(uptime_seconds), 3600)
    minutes, seconds = divmod(remainder, 60)

    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "started_at": _start_datetime,
        "uptime": f"{hours}h {minutes}m {seconds}s",
        "uptime_seconds": round(uptime_seconds, 1),
        "python": {
            "version": sys.version,
            "platform": platform.platform(),
        },
        "components": {
            "persistence": "ok" if manager.store.available else "unavailable",
            "websocket_clients": connections.connection_count,
        },
        "workers": {
            "max": manager.max_workers,
            "active": manager.active_workers,
            "queued": manager.queue_length,
        },
        "debug_sessions": manager.debug_sessions.to_dict(),
        "step_types": manager.registry.list_types(),
    }
