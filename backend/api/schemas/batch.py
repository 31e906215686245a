"""Batch execution schemas."""

from pydantic import BaseModel, Field, model_validator
from typing import Any, Dict, List, Optional

from core.constants import BatchSourceType


class BatchStartRequest(BaseModel):
    """Request to start a batch of workflow executions.

    Exactly one source is used, chosen by ``source_type``:
    ``folder`` scans ``folder_path``, ``files`` reads ``file_paths``,
    ``workflows`` takes inline definitions.
    """

    source_type: BatchSourceType = Field(default=BatchSourceType.WORKFLOWS)
    workflows: List[Any] = Field(default_factory=list)
    folder_path: Optional[str] = None
    file_paths: List[str] = Field(default_factory=list)
    recursive: bool = False
    pattern: str = "*.json"
    workers: Optional[int] = Field(default=None, ge=1, description="Concurrency cap for this batch")
    priority: Optional[int] = Field(default=None, description="Higher runs first")
    output_path: Optional[str] = None
    trace_logs: bool = False
    start_node_overrides: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _check_source(self):
        if self.source_type == BatchSourceType.FOLDER and not self.folder_path:
            raise ValueError("folder_path is required for folder batches")
        if self.source_type == BatchSourceType.FILES and not self.file_paths:
            raise ValueError("file_paths is required for file batches")
        if self.source_type == BatchSourceType.WORKFLOWS and not self.workflows:
            raise ValueError("workflows is required for inline batches")
        return self


class InvalidSource(BaseModel):
    file_name: str
    file_path: Optional[str] = None
    is_valid: bool = False
    errors: List[str] = Field(default_factory=list)


class BatchStatusResponse(BaseModel):
    """Batch progress, live or from history."""

    batch_id: str
    status: str
    source_type: str
    folder_path: Optional[str] = None
    total_workflows: int
    valid_workflows: int
    invalid_workflows: int
    completed: int
    running: int
    queued: int
    failed: int
    workers: int
    priority: int
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    output_path: Optional[str] = None
    start_node_overrides: Optional[Dict[str, Any]] = None
    execution_ids: List[str] = Field(default_factory=list)
    invalid_sources: List[InvalidSource] = Field(default_factory=list)


class StopBatchResponse(BaseModel):
    stopped_executions: int
    running_stopped: int
    queued_cancelled: int


class BatchStopSummary(BaseModel):
    batch_id: str
    stopped: int


class StopAllResponse(BaseModel):
    total_batches: int
    total_stopped: int
    running_stopped: int
    queued_cancelled: int
    batches: List[BatchStopSummary]


class BatchHistoryResponse(BaseModel):
    batches: List[Dict[str, Any]]
    total: int
    limit: int
    offset: int


class ClearHistoryResponse(BaseModel):
    batches_deleted: int
    executions_deleted: int
