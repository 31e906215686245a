"""FastAPI dependency injection functions."""

from fastapi import Request

from api.websockets.connection_manager import ConnectionManager
from workflow.manager import ExecutionManager


def get_execution_manager(request: Request) -> ExecutionManager:
    """The process-wide execution manager created in the app lifespan."""
    return request.app.state.execution_manager


def get_connection_manager(request: Request) -> ConnectionManager:
    return request.app.state.connection_manager
