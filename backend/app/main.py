"""Workflow Execution Engine - FastAPI Application."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from api.v1.router import api_v1_router
from api.routes import health
from api.routes.ws import router as ws_router
from api.websockets.connection_manager import ConnectionManager
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from tasks.registry import get_handler_registry
from workflow.debug_sessions import DebugSessions
from workflow.events import CompositeEventSink, LoggingEventSink
from workflow.manager import ExecutionManager
from workflow.persistence import BatchStore

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    # Startup
    settings = get_settings()
    setup_logging()

    store = BatchStore(settings.DATABASE_URL)
    if not await store.initialize():
        logger.warning("Running without batch persistence")

    connections = ConnectionManager()
    manager = ExecutionManager(
        registry=get_handler_registry(),
        store=store,
        sink=CompositeEventSink(LoggingEventSink(), connections),
        debug_sessions=DebugSessions(),
    )
    app.state.connection_manager = connections
    app.state.execution_manager = manager

    # Batches left running by a previous process cannot resume
    recovered = await manager.recover()
    if recovered:
        logger.info("Interrupted batches recovered", count=len(recovered))

    removed = await manager.cleanup_history(settings.BATCH_RETENTION_DAYS)
    if removed:
        logger.info("Expired batch history removed", count=removed)

    logger.info(
        "Application started",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        max_workers=manager.max_workers,
    )
    yield
    # Shutdown
    logger.info("Application shutting down")
    await manager.shutdown()
    await connections.flush()
    await store.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Workflow automation execution engine: single runs with "
                    "breakpoints and live edits, prioritized batches, event streaming.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
    )

    # Global exception handlers
    setup_exception_handlers(app)

    # Root health check (unversioned, for load balancers / k8s health checks)
    app.include_router(health.router, prefix="/api", tags=["Health"])

    # Versioned API, all business endpoints under /api/v1
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    # WebSocket endpoint (mounted directly on the app)
    app.include_router(ws_router)

    return app


app = create_app()
