"""Batch execution endpoints."""

from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status
from typing import Any, Dict, List, Optional
import logging

from api.schemas.batch import (
    BatchHistoryResponse,
    BatchStartRequest,
    BatchStatusResponse,
    ClearHistoryResponse,
    StopAllResponse,
    StopBatchResponse,
)
from api.schemas.common import MessageResponse, PaginationParams
from app.dependencies import get_execution_manager
from core.constants import BatchSourceType
from workflow.loader import load_from_files, load_from_folder, load_from_payloads
from workflow.manager import ExecutionManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["batches"])


@router.post("/", response_model=BatchStatusResponse, status_code=http_status.HTTP_202_ACCEPTED)
async def start_batch(
    body: BatchStartRequest,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> BatchStatusResponse:
    """
    Load, validate and queue a batch. Invalid workflows are counted as
    failed members; the response lists them under ``invalid_sources``.
    """
    if body.source_type == BatchSourceType.FOLDER:
        sources = load_from_folder(body.folder_path, recursive=body.recursive, pattern=body.pattern)
    elif body.source_type == BatchSourceType.FILES:
        sources = load_from_files(body.file_paths)
    else:
        sources = load_from_payloads(body.workflows)

    batch_id = await manager.start_batch_execution(
        sources,
        workers=body.workers,
        priority=body.priority,
        source_type=body.source_type,
        folder_path=body.folder_path,
        output_path=body.output_path,
        trace_logs=body.trace_logs,
        start_node_overrides=body.start_node_overrides,
    )
    return BatchStatusResponse(**await manager.get_batch_status(batch_id))


@router.get("/history", response_model=BatchHistoryResponse)
async def batch_history(
    pagination: PaginationParams = Depends(),
    batch_status: Optional[str] = Query(None, alias="status", description="Filter by batch status"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    manager: ExecutionManager = Depends(get_execution_manager),
) -> BatchHistoryResponse:
    history = await manager.get_batch_history(
        status=batch_status,
        start_date=start_date,
        end_date=end_date,
        limit=pagination.limit,
        offset=pagination.offset,
    )
    return BatchHistoryResponse(**history)


@router.post("/stop-all", response_model=StopAllResponse)
async def stop_all(
    manager: ExecutionManager = Depends(get_execution_manager),
) -> StopAllResponse:
    return StopAllResponse(**await manager.stop_all())


@router.delete("/history", response_model=ClearHistoryResponse)
async def clear_history(
    manager: ExecutionManager = Depends(get_execution_manager),
) -> ClearHistoryResponse:
    result = await manager.clear_history()
    logger.info(f"Batch history cleared: {result}")
    return ClearHistoryResponse(**result)


@router.get("/{batch_id}", response_model=BatchStatusResponse)
async def get_batch_status(
    batch_id: str,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> BatchStatusResponse:
    status = await manager.get_batch_status(batch_id)
    if status is None:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail="Batch not found",
        )
    return BatchStatusResponse(**status)


@router.get("/{batch_id}/executions", response_model=List[Dict[str, Any]])
async def get_batch_executions(
    batch_id: str,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> List[Dict[str, Any]]:
    return await manager.get_batch_executions(batch_id)


@router.post("/{batch_id}/stop", response_model=StopBatchResponse)
async def stop_batch(
    batch_id: str,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> StopBatchResponse:
    return StopBatchResponse(**await manager.stop_batch(batch_id))


@router.delete("/{batch_id}", response_model=MessageResponse)
async def delete_batch(
    batch_id: str,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> MessageResponse:
    if not await manager.delete_batch(batch_id):
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail="Batch not found",
        )
    return MessageResponse(message="Batch deleted")
