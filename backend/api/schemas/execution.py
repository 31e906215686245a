"""Execution control schemas."""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class BreakpointConfigSchema(BaseModel):
    """Breakpoint settings for a single execution."""

    enabled: bool = Field(default=False, description="Whether breakpoints pause the run")
    breakpointAt: str = Field(default="pre", description="pre, post or both")
    breakpointFor: str = Field(default="marked", description="all nodes, or only marked nodes")


class ExecutionStartRequest(BaseModel):
    """Request to start a single workflow execution."""

    workflow: Dict[str, Any] = Field(description="Workflow definition (nodes and edges)")
    trace_logs: bool = Field(default=False, description="Emit per-node trace logs")
    breakpoint_config: Optional[BreakpointConfigSchema] = Field(default=None)
    slow_mo: Optional[int] = Field(default=None, ge=0, description="Delay after each step (ms)")
    workflow_file_name: Optional[str] = Field(default=None)


class ExecutionStartResponse(BaseModel):
    execution_id: str
    status: str


class ExecutionStatusResponse(BaseModel):
    """Status of one execution, live or from history."""

    execution_id: str
    status: str
    batch_id: Optional[str] = None
    workflow_file_name: Optional[str] = None
    current_node_id: Optional[str] = None
    paused_node_id: Optional[str] = None
    pause_reason: Optional[str] = None
    executed_node_ids: List[str] = Field(default_factory=list)
    execution_order: List[str] = Field(default_factory=list)
    workflow_version: Optional[int] = None
    trace_logs: Optional[bool] = None
    breakpoints_disabled: Optional[bool] = None
    error: Optional[str] = None


class ActiveExecution(BaseModel):
    execution_id: str
    status: str
    workflow_file_name: Optional[str] = None
    batch_id: Optional[str] = None


class StopExecutionResponse(BaseModel):
    was_running: bool
    was_queued: bool
    running_stopped: int
    queued_cancelled: int


class TraceLogsRequest(BaseModel):
    enabled: bool


class WorkflowUpdateRequest(BaseModel):
    """New graph version for a paused execution."""

    workflow: Dict[str, Any]


class WorkflowUpdateResponse(BaseModel):
    execution_order: List[str]
    workflow_version: int
    executed_node_ids: List[str]
    paused_node_id: str


class SelectorFinderResponse(BaseModel):
    """A selector finder session attached to a paused execution's page."""

    session_id: str
    page_url: str
