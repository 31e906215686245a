"""Single execution control endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status as http_status
from typing import List
import logging

from api.schemas.common import MessageResponse
from api.schemas.execution import (
    ActiveExecution,
    ExecutionStartRequest,
    ExecutionStartResponse,
    ExecutionStatusResponse,
    SelectorFinderResponse,
    StopExecutionResponse,
    TraceLogsRequest,
    WorkflowUpdateRequest,
    WorkflowUpdateResponse,
)
from app.dependencies import get_execution_manager
from workflow.manager import ExecutionManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["executions"])


@router.post("/", response_model=ExecutionStartResponse, status_code=http_status.HTTP_202_ACCEPTED)
async def start_execution(
    body: ExecutionStartRequest,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> ExecutionStartResponse:
    """
    Validate and start a workflow immediately. Invalid workflows are
    rejected with 422 and never start.
    """
    execution_id = await manager.start_single_execution(
        body.workflow,
        trace_logs=body.trace_logs,
        breakpoint_config=body.breakpoint_config.model_dump() if body.breakpoint_config else None,
        slow_mo=body.slow_mo,
        workflow_file_name=body.workflow_file_name,
    )
    return ExecutionStartResponse(execution_id=execution_id, status="running")


@router.get("/active", response_model=List[ActiveExecution])
async def list_active_executions(
    manager: ExecutionManager = Depends(get_execution_manager),
) -> List[ActiveExecution]:
    return [ActiveExecution(**e) for e in manager.get_active_executions()]


@router.get("/{execution_id}", response_model=ExecutionStatusResponse)
async def get_execution_status(
    execution_id: str,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> ExecutionStatusResponse:
    status = await manager.get_execution_status(execution_id)
    if status is None:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail="Execution not found",
        )
    return ExecutionStatusResponse(**status)


@router.post("/{execution_id}/stop", response_model=StopExecutionResponse)
async def stop_execution(
    execution_id: str,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> StopExecutionResponse:
    return StopExecutionResponse(**await manager.stop_execution(execution_id))


@router.post("/{execution_id}/continue", response_model=MessageResponse)
async def continue_execution(
    execution_id: str,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> MessageResponse:
    manager.continue_execution(execution_id)
    return MessageResponse(message="Execution resumed")


@router.post("/{execution_id}/skip", response_model=MessageResponse)
async def skip_next_node(
    execution_id: str,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> MessageResponse:
    manager.skip_next_node(execution_id)
    return MessageResponse(message="Node skipped, execution resumed")


@router.post("/{execution_id}/disable-breakpoint", response_model=MessageResponse)
async def disable_breakpoint_and_continue(
    execution_id: str,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> MessageResponse:
    manager.disable_breakpoint_and_continue(execution_id)
    return MessageResponse(message="Breakpoints disabled, execution resumed")


@router.post("/{execution_id}/stop-from-pause", response_model=MessageResponse)
async def stop_from_pause(
    execution_id: str,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> MessageResponse:
    manager.stop_from_pause(execution_id)
    return MessageResponse(message="Execution stopping")


@router.put("/{execution_id}/workflow", response_model=WorkflowUpdateResponse)
async def update_workflow(
    execution_id: str,
    body: WorkflowUpdateRequest,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> WorkflowUpdateResponse:
    """
    Replace the graph of an execution paused at a breakpoint. Rejections
    return 409 with a ``code`` naming the reason.
    """
    result = manager.update_workflow(execution_id, body.workflow)
    logger.info(f"Workflow updated for execution {execution_id} (v{result['workflow_version']})")
    return WorkflowUpdateResponse(**result)


@router.put("/{execution_id}/trace-logs", response_model=MessageResponse)
async def set_trace_logs(
    execution_id: str,
    body: TraceLogsRequest,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> MessageResponse:
    manager.set_trace_logs(execution_id, body.enabled)
    return MessageResponse(message=f"Trace logs {'enabled' if body.enabled else 'disabled'}")


@router.post("/{execution_id}/selector-finder", response_model=SelectorFinderResponse)
async def attach_selector_finder(
    execution_id: str,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> SelectorFinderResponse:
    """Attach the selector finder to the page of a paused execution."""
    result = await manager.attach_selector_finder(execution_id)
    logger.info(f"Selector finder attached to execution {execution_id}")
    return SelectorFinderResponse(**result)


@router.delete("/{execution_id}/selector-finder", response_model=MessageResponse)
async def release_selector_finder(
    execution_id: str,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> MessageResponse:
    released = manager.release_selector_finder(execution_id)
    return MessageResponse(message="Selector finder released" if released else "Selector finder was not attached")
