"""Batch and execution metadata models."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import BatchSourceType, BatchStatus, ExecutionStatus
from db.base import Base, TimestampMixin, utcnow


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class BatchRecord(TimestampMixin, Base):
    """A batch of workflow runs and its progress counters.

    Attributes:
        id: Batch identifier
        status: queued, running, completed, stopped
        source_type: folder, files, workflows
        folder_path: Source folder (folder batches only)
        total_workflows / valid_workflows / invalid_workflows: Member counts
        completed / running / queued / failed: Progress counters
        workers: Concurrency cap for this batch
        priority: Admission priority (higher first)
        output_path: Where member reports go
        start_node_overrides: Start node settings applied to every member
    """

    __tablename__ = "batches"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), default=BatchStatus.QUEUED.value, index=True)
    source_type: Mapped[str] = mapped_column(String(20), default=BatchSourceType.WORKFLOWS.value)
    folder_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_workflows: Mapped[int] = mapped_column(Integer, default=0)
    valid_workflows: Mapped[int] = mapped_column(Integer, default=0)
    invalid_workflows: Mapped[int] = mapped_column(Integer, default=0)
    completed: Mapped[int] = mapped_column(Integer, default=0)
    running: Mapped[int] = mapped_column(Integer, default=0)
    queued: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    workers: Mapped[int] = mapped_column(Integer, default=1)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    output_path: Mapped[str] = mapped_column(Text, default="")
    start_node_overrides: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "batch_id": self.id,
            "status": self.status,
            "source_type": self.source_type,
            "folder_path": self.folder_path,
            "total_workflows": self.total_workflows,
            "valid_workflows": self.valid_workflows,
            "invalid_workflows": self.invalid_workflows,
            "completed": self.completed,
            "running": self.running,
            "queued": self.queued,
            "failed": self.failed,
            "workers": self.workers,
            "priority": self.priority,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "created_at": _iso(self.created_at),
            "output_path": self.output_path,
            "start_node_overrides": self.start_node_overrides,
        }


class ExecutionRecord(Base):
    """One workflow run; ``batch_id`` is empty for single executions."""

    __tablename__ = "executions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    batch_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("batches.id", ondelete="CASCADE"), nullable=True, index=True
    )
    workflow_file_name: Mapped[str] = mapped_column(Text, default="")
    workflow_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=ExecutionStatus.IDLE.value, index=True)
    worker_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    report_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "execution_id": self.id,
            "batch_id": self.batch_id,
            "workflow_file_name": self.workflow_file_name,
            "workflow_path": self.workflow_path,
            "status": self.status,
            "worker_id": self.worker_id,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "error": self.error,
            "report_path": self.report_path,
        }
