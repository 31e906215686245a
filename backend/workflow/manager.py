"""
Execution Manager: runs single executions and prioritized batches.

Batch members are queued and admitted to one global worker pool:
- the queue is ordered by batch priority (higher first), then FIFO
- a member is admitted only while the global pool (MAX_WORKERS) and its
  batch's own ``workers`` cap both have room
- single executions start immediately and never take a worker slot

Per batch, ``completed + running + queued + failed == total_workflows``
holds at every step: invalid workflows are failed from the start,
stopped and cancelled members count as failed. A batch whose members
have all settled is ``completed``, never failed.

Finished executions stay in memory for EXECUTION_RELEASE_DELAY seconds,
after which status queries are answered from the BatchStore.
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Coroutine, Iterable, Optional, Union
from uuid import uuid4

import structlog

from app.config import get_settings
from core.constants import (
    BatchSourceType,
    BatchStatus,
    EventType,
    ExecutionStatus,
    MemberStatus,
)
from core.exceptions import (
    InvalidStateError,
    NotFoundError,
    WorkflowValidationError,
)
from core.logging_config import log_context
from db.base import utcnow
from tasks.registry import StepHandlerRegistry, get_handler_registry
from workflow.debug_sessions import DebugSessions
from workflow.events import EventSink, LoggingEventSink, safe_emit
from workflow.executor import Executor
from workflow.loader import WorkflowSource, apply_start_node_overrides, load_from_payloads
from workflow.models import ExecutionEvent, Workflow
from workflow.parser import WorkflowParser
from workflow.persistence import BatchStore
from workflow.session import AutomationSession, PlaywrightSession

logger = structlog.get_logger(__name__)

_ACTIVE_MEMBER_STATES = (MemberStatus.QUEUED, MemberStatus.RUNNING)
_EXECUTOR_RESULT = {
    ExecutionStatus.COMPLETED: MemberStatus.COMPLETED,
    ExecutionStatus.ERROR: MemberStatus.ERROR,
    ExecutionStatus.STOPPED: MemberStatus.STOPPED,
}


def default_session_factory() -> AutomationSession:
    return PlaywrightSession(headless=get_settings().BROWSER_HEADLESS)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class ExecutionEntry:
    """In-memory record of one execution owned by the manager."""
    execution_id: str
    workflow: dict
    batch_id: Optional[str] = None
    workflow_file_name: str = "workflow.json"
    workflow_path: Optional[str] = None
    status: MemberStatus = MemberStatus.QUEUED
    executor: Optional[Executor] = None
    worker_id: Optional[int] = None
    holds_worker: bool = False
    finalized: bool = False
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    def to_record(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "batch_id": self.batch_id,
            "workflow_file_name": self.workflow_file_name,
            "workflow_path": self.workflow_path,
            "status": self.status.value,
            "worker_id": self.worker_id,
            "start_time": self.started_at or self.created_at,
            "end_time": self.ended_at,
            "error": self.error,
        }

    def to_status(self) -> dict:
        status = {
            "execution_id": self.execution_id,
            "batch_id": self.batch_id,
            "workflow_file_name": self.workflow_file_name,
            "workflow_path": self.workflow_path,
            "status": self.status.value,
            "worker_id": self.worker_id,
            "error": self.error,
            "current_node_id": None,
            "paused_node_id": None,
            "pause_reason": None,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.ended_at),
        }
        if self.executor is not None and self.status != MemberStatus.QUEUED:
            status.update(self.executor.snapshot())
            status["error"] = self.error or status["error"]
        return status


@dataclass
class BatchState:
    """Live counters and settings of one batch."""
    batch_id: str
    source_type: BatchSourceType
    total_workflows: int
    valid_workflows: int
    invalid_workflows: int
    workers: int
    priority: int
    output_path: str
    folder_path: Optional[str] = None
    start_node_overrides: Optional[dict] = None
    trace_logs: bool = False
    status: BatchStatus = BatchStatus.QUEUED
    completed: int = 0
    running: int = 0
    queued: int = 0
    failed: int = 0
    active_workers: int = 0
    finished: bool = False
    execution_ids: list[str] = field(default_factory=list)
    invalid_sources: list[dict] = field(default_factory=list)
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None

    def counts(self) -> dict:
        return {
            "completed": self.completed,
            "running": self.running,
            "queued": self.queued,
            "failed": self.failed,
        }

    @property
    def counts_consistent(self) -> bool:
        return self.completed + self.running + self.queued + self.failed == self.total_workflows

    @property
    def settled(self) -> bool:
        return self.completed + self.failed >= self.total_workflows

    def to_record(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "source_type": self.source_type.value,
            "folder_path": self.folder_path,
            "total_workflows": self.total_workflows,
            "valid_workflows": self.valid_workflows,
            "invalid_workflows": self.invalid_workflows,
            "workers": self.workers,
            "priority": self.priority,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "created_at": self.start_time,
            "output_path": self.output_path,
            "start_node_overrides": self.start_node_overrides,
            **self.counts(),
        }

    def to_status(self) -> dict:
        status = self.to_record()
        status.update(
            start_time=_iso(self.start_time),
            end_time=_iso(self.end_time),
            created_at=_iso(self.start_time),
            execution_ids=list(self.execution_ids),
            invalid_sources=list(self.invalid_sources),
        )
        return status


@dataclass(order=True)
class _QueueItem:
    sort_key: tuple
    execution_id: str = field(compare=False)
    batch_id: str = field(compare=False)


class ExecutionManager:
    """Owns every live execution and batch of the process."""

    def __init__(
        self,
        registry: Optional[StepHandlerRegistry] = None,
        store: Optional[BatchStore] = None,
        sink: Optional[EventSink] = None,
        max_workers: Optional[int] = None,
        session_factory: Optional[Callable[[], Optional[AutomationSession]]] = None,
        debug_sessions: Optional[DebugSessions] = None,
        release_delay: Optional[float] = None,
    ):
        settings = get_settings()
        self.registry = registry or get_handler_registry()
        self.store = store or BatchStore()
        self.sink = sink or LoggingEventSink()
        self.max_workers = max(1, max_workers or settings.MAX_WORKERS)
        self.session_factory = session_factory or default_session_factory
        self.debug_sessions = debug_sessions or DebugSessions()
        self.release_delay = settings.EXECUTION_RELEASE_DELAY if release_delay is None else release_delay

        self._executions: dict[str, ExecutionEntry] = {}
        self._batches: dict[str, BatchState] = {}
        self._queue: list[_QueueItem] = []
        self._sequence = itertools.count()
        self._worker_ids = itertools.count(1)
        self._active_workers = 0
        self._tasks: set[asyncio.Task] = set()
        self._release_handles: dict[str, asyncio.TimerHandle] = {}

    @property
    def active_workers(self) -> int:
        return self._active_workers

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    # ─── Single executions ────────────────────────────────────

    async def start_single_execution(
        self,
        workflow: Union[Workflow, dict],
        trace_logs: bool = False,
        breakpoint_config: Optional[dict] = None,
        slow_mo: Optional[int] = None,
        workflow_file_name: Optional[str] = None,
        context_data: Optional[dict] = None,
    ) -> str:
        """Validate and start one execution immediately.

        Raises:
            WorkflowValidationError: The workflow is invalid; nothing is started.
        """
        definition = self._validated_definition(workflow)
        execution_id = str(uuid4())
        executor = self._create_executor(
            definition,
            execution_id,
            trace_logs=trace_logs,
            breakpoint_config=breakpoint_config,
            slow_mo=slow_mo,
            context_data=context_data,
        )
        entry = ExecutionEntry(
            execution_id=execution_id,
            workflow=definition,
            workflow_file_name=workflow_file_name or "workflow.json",
            status=MemberStatus.RUNNING,
            executor=executor,
            started_at=utcnow(),
        )
        self._executions[execution_id] = entry
        await self.store.save_execution(entry.to_record())

        await executor.start()
        logger.info("Single execution started", execution_id=execution_id)
        return execution_id

    def _validated_definition(self, workflow: Union[Workflow, dict]) -> dict:
        try:
            parsed = Workflow.coerce(workflow)
        except (TypeError, ValueError, AttributeError) as e:
            raise WorkflowValidationError([f"Malformed workflow: {e}"])
        errors = WorkflowParser(parsed).validate()
        if errors:
            raise WorkflowValidationError(errors)
        return parsed.to_dict()

    def _create_executor(
        self,
        definition: dict,
        execution_id: str,
        batch_id: Optional[str] = None,
        trace_logs: bool = False,
        breakpoint_config: Optional[dict] = None,
        slow_mo: Optional[int] = None,
        context_data: Optional[dict] = None,
    ) -> Executor:
        data = {
            "executionId": execution_id,
            "isParallelExecution": batch_id is not None,
        }
        if batch_id is not None:
            data["batchId"] = batch_id
        data.update(context_data or {})

        executor = Executor(
            definition,
            registry=self.registry,
            execution_id=execution_id,
            session=self.session_factory(),
            sink=self.sink,
            breakpoint_config=breakpoint_config,
            trace_logs=trace_logs,
            slow_mo=slow_mo,
            debug_sessions=self.debug_sessions,
            context_data=data,
        )
        executor.add_completion_callback(self._on_execution_finished)
        return executor

    # ─── Batches ──────────────────────────────────────────────

    async def start_batch_execution(
        self,
        sources: Iterable[Union[WorkflowSource, dict]],
        workers: Optional[int] = None,
        priority: Optional[int] = None,
        source_type: Union[BatchSourceType, str] = BatchSourceType.WORKFLOWS,
        folder_path: Optional[str] = None,
        output_path: Optional[str] = None,
        trace_logs: bool = False,
        start_node_overrides: Optional[dict] = None,
    ) -> str:
        """Register a batch, queue its valid members and start admitting them.

        ``sources`` are loader results; raw definitions are accepted too.
        Invalid sources are counted as failed members right away.

        Raises:
            WorkflowValidationError: No workflows were given.
        """
        sources = list(sources)
        raw = [s for s in sources if not isinstance(s, WorkflowSource)]
        if raw:
            loaded = iter(load_from_payloads(raw))
            sources = [s if isinstance(s, WorkflowSource) else next(loaded) for s in sources]
        if not sources:
            raise WorkflowValidationError(["No workflows to execute"])

        settings = get_settings()
        valid = [s for s in sources if s.is_valid]
        invalid = [s for s in sources if not s.is_valid]
        batch = BatchState(
            batch_id=str(uuid4()),
            source_type=BatchSourceType(source_type),
            folder_path=folder_path,
            total_workflows=len(sources),
            valid_workflows=len(valid),
            invalid_workflows=len(invalid),
            workers=max(1, workers or self.max_workers),
            priority=settings.DEFAULT_BATCH_PRIORITY if priority is None else priority,
            output_path=output_path or settings.DEFAULT_OUTPUT_PATH,
            start_node_overrides=start_node_overrides,
            trace_logs=trace_logs,
            queued=len(valid),
            failed=len(invalid),
            invalid_sources=[s.to_dict() for s in invalid],
        )
        self._batches[batch.batch_id] = batch
        await self.store.save_batch(batch.to_record())

        for source in invalid:
            await self.store.save_execution({
                "execution_id": str(uuid4()),
                "batch_id": batch.batch_id,
                "workflow_file_name": source.file_name,
                "workflow_path": source.file_path,
                "status": MemberStatus.ERROR.value,
                "start_time": batch.start_time,
                "end_time": batch.start_time,
                "error": "; ".join(source.errors),
            })

        for source in valid:
            entry = ExecutionEntry(
                execution_id=str(uuid4()),
                workflow=apply_start_node_overrides(source.workflow, start_node_overrides),
                batch_id=batch.batch_id,
                workflow_file_name=source.file_name,
                workflow_path=source.file_path,
            )
            self._executions[entry.execution_id] = entry
            batch.execution_ids.append(entry.execution_id)
            self._queue.append(
                _QueueItem((-batch.priority, next(self._sequence)), entry.execution_id, batch.batch_id)
            )
            await self.store.save_execution(entry.to_record())
        self._queue.sort()

        logger.info(
            "Batch started",
            batch_id=batch.batch_id,
            total=batch.total_workflows,
            invalid=batch.invalid_workflows,
            workers=batch.workers,
            priority=batch.priority,
        )
        self._emit_batch(EventType.BATCH_START, batch, message="Batch started")

        self._process_queue()
        await self._persist_progress(batch)
        await self._check_batch_complete(batch)
        return batch.batch_id

    def _process_queue(self) -> None:
        """Admit queued members while the global pool and their batch caps allow."""
        while self._queue and self._active_workers < self.max_workers:
            index = next(
                (i for i, item in enumerate(self._queue) if self._batch_has_room(item.batch_id)),
                None,
            )
            if index is None:
                break
            item = self._queue.pop(index)
            entry = self._executions.get(item.execution_id)
            if entry is None or entry.status != MemberStatus.QUEUED:
                continue
            self._admit(entry)

    def _batch_has_room(self, batch_id: str) -> bool:
        batch = self._batches.get(batch_id)
        if batch is None:
            return True
        return batch.status != BatchStatus.STOPPED and batch.active_workers < batch.workers

    def _admit(self, entry: ExecutionEntry) -> None:
        batch = self._batches[entry.batch_id]
        entry.worker_id = next(self._worker_ids)
        entry.status = MemberStatus.RUNNING
        entry.started_at = utcnow()
        entry.holds_worker = True
        self._active_workers += 1
        batch.active_workers += 1
        batch.queued -= 1
        batch.running += 1
        if batch.status == BatchStatus.QUEUED:
            batch.status = BatchStatus.RUNNING

        entry.executor = self._create_executor(
            entry.workflow,
            entry.execution_id,
            batch_id=batch.batch_id,
            trace_logs=batch.trace_logs,
        )
        logger.info(
            "Batch member admitted",
            batch_id=batch.batch_id,
            execution_id=entry.execution_id,
            worker_id=entry.worker_id,
            active_workers=self._active_workers,
        )
        self._spawn(self._launch(entry, batch))

    async def _launch(self, entry: ExecutionEntry, batch: BatchState) -> None:
        # admitted from a sibling's task, whose context this task copied
        with log_context(batch_id=batch.batch_id, worker_id=entry.worker_id):
            await self.store.update_execution(
                entry.execution_id,
                status=MemberStatus.RUNNING.value,
                worker_id=entry.worker_id,
                start_time=entry.started_at,
            )
            await self._persist_progress(batch)

            executor = entry.executor
            if entry.finalized or executor.stop_requested:
                return
            try:
                await executor.start()
            except Exception as e:
                logger.warning("Batch member failed to start", execution_id=entry.execution_id, error=str(e))
                entry.error = str(e)
                await self._finish_entry(entry, MemberStatus.ERROR)

    async def _on_execution_finished(self, executor: Executor) -> None:
        entry = self._executions.get(executor.execution_id)
        if entry is None or entry.finalized:
            return
        if executor.status == ExecutionStatus.ERROR:
            entry.error = executor.last_error
        await self._finish_entry(entry, _EXECUTOR_RESULT.get(executor.status, MemberStatus.STOPPED))

    async def _finish_entry(self, entry: ExecutionEntry, status: MemberStatus) -> None:
        """Settle one execution: persist its row, then release its worker and update counters.

        The row is written before any counter moves, so a batch that looks
        settled never has a member row still marked running or queued.
        """
        if entry.finalized:
            return
        entry.finalized = True
        entry.ended_at = utcnow()
        await self.store.update_execution(
            entry.execution_id,
            status=status.value,
            end_time=entry.ended_at,
            error=entry.error,
        )

        previous = entry.status
        entry.status = status
        batch = self._batches.get(entry.batch_id) if entry.batch_id else None
        if entry.holds_worker:
            entry.holds_worker = False
            self._active_workers = max(0, self._active_workers - 1)
            if batch is not None:
                batch.active_workers = max(0, batch.active_workers - 1)

        if batch is not None:
            if previous == MemberStatus.QUEUED:
                batch.queued = max(0, batch.queued - 1)
            else:
                batch.running = max(0, batch.running - 1)
            if status == MemberStatus.COMPLETED:
                batch.completed += 1
            else:
                batch.failed += 1

        logger.info(
            "Execution finished",
            execution_id=entry.execution_id,
            batch_id=entry.batch_id,
            status=status.value,
            error=entry.error,
        )

        self._process_queue()
        if batch is not None:
            await self._persist_progress(batch)
            await self._check_batch_complete(batch)
        self._schedule_release(entry.execution_id)

    async def _check_batch_complete(self, batch: BatchState) -> None:
        if batch.finished or not batch.settled:
            return
        batch.finished = True
        batch.end_time = batch.end_time or utcnow()
        if batch.status == BatchStatus.STOPPED:
            return
        batch.status = BatchStatus.COMPLETED
        await self.store.save_batch(batch.to_record())
        # runs inside the last member's task; its worker_id is not the batch's
        with log_context(batch_id=batch.batch_id, worker_id=None):
            logger.info("Batch completed", **batch.counts())
        self._emit_batch(EventType.BATCH_COMPLETE, batch, message="Batch completed")

    async def _persist_progress(self, batch: BatchState) -> None:
        await self.store.update_batch_progress(
            batch.batch_id,
            batch.counts(),
            status=batch.status.value,
            end_time=batch.end_time,
        )

    def _emit_batch(self, event_type: EventType, batch: BatchState, message: str) -> None:
        safe_emit(
            self.sink,
            ExecutionEvent(
                type=event_type,
                message=message,
                data={
                    "batchId": batch.batch_id,
                    "status": batch.status.value,
                    "totalWorkflows": batch.total_workflows,
                    **batch.counts(),
                },
            ),
        )

    # ─── Stopping ─────────────────────────────────────────────

    async def stop_execution(self, execution_id: str) -> dict:
        """Stop a running execution or cancel a queued one.

        Raises:
            NotFoundError: Unknown (or already released) execution.
        """
        entry = self._require_entry(execution_id)
        was_running = entry.status == MemberStatus.RUNNING
        was_queued = entry.status == MemberStatus.QUEUED

        if was_running:
            await entry.executor.stop()
            # a stop that raced the executor's own start never reaches the callback
            await self._finish_entry(entry, MemberStatus.STOPPED)
        elif was_queued:
            self._dequeue(execution_id)
            await self._finish_entry(entry, MemberStatus.CANCELLED)

        return {
            "was_running": was_running,
            "was_queued": was_queued,
            "running_stopped": int(was_running),
            "queued_cancelled": int(was_queued),
        }

    async def stop_batch(self, batch_id: str) -> dict:
        """Stop every running member and cancel every queued one.

        Raises:
            NotFoundError: Unknown batch.
        """
        batch = self._batches.get(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")

        if not batch.finished:
            batch.status = BatchStatus.STOPPED

        running_stopped = 0
        queued_cancelled = 0
        for execution_id in list(batch.execution_ids):
            entry = self._executions.get(execution_id)
            if entry is None or entry.finalized:
                continue
            result = await self.stop_execution(execution_id)
            running_stopped += result["running_stopped"]
            queued_cancelled += result["queued_cancelled"]

        if batch.status == BatchStatus.STOPPED:
            batch.end_time = batch.end_time or utcnow()
            await self.store.save_batch(batch.to_record())
            logger.info(
                "Batch stopped",
                batch_id=batch_id,
                running_stopped=running_stopped,
                queued_cancelled=queued_cancelled,
            )

        self._process_queue()
        return {
            "stopped_executions": running_stopped + queued_cancelled,
            "running_stopped": running_stopped,
            "queued_cancelled": queued_cancelled,
        }

    async def stop_all(self) -> dict:
        """Stop every batch that still has running or queued members."""
        active = [
            b for b in list(self._batches.values())
            if not b.finished or b.running > 0 or b.queued > 0
        ]
        running_stopped = 0
        queued_cancelled = 0
        results = []
        for batch in active:
            result = await self.stop_batch(batch.batch_id)
            running_stopped += result["running_stopped"]
            queued_cancelled += result["queued_cancelled"]
            results.append({"batch_id": batch.batch_id, "stopped": result["stopped_executions"]})

        return {
            "total_batches": len(active),
            "total_stopped": running_stopped + queued_cancelled,
            "running_stopped": running_stopped,
            "queued_cancelled": queued_cancelled,
            "batches": results,
        }

    def _dequeue(self, execution_id: str) -> None:
        self._queue = [item for item in self._queue if item.execution_id != execution_id]

    # ─── Control pass-through ─────────────────────────────────

    def _require_entry(self, execution_id: str) -> ExecutionEntry:
        entry = self._executions.get(execution_id)
        if entry is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return entry

    def _require_executor(self, execution_id: str) -> Executor:
        entry = self._require_entry(execution_id)
        if entry.executor is None or entry.status == MemberStatus.QUEUED:
            raise InvalidStateError(f"Execution {execution_id} has not started yet")
        return entry.executor

    def get_executor(self, execution_id: str) -> Optional[Executor]:
        entry = self._executions.get(execution_id)
        return entry.executor if entry else None

    def continue_execution(self, execution_id: str) -> None:
        self._require_executor(execution_id).continue_execution()

    def skip_next_node(self, execution_id: str) -> None:
        self._require_executor(execution_id).skip_next_node_execution()

    def disable_breakpoint_and_continue(self, execution_id: str) -> None:
        self._require_executor(execution_id).disable_breakpoint_and_continue()

    def stop_from_pause(self, execution_id: str) -> None:
        self._require_executor(execution_id).stop_execution_from_pause()

    def update_workflow(self, execution_id: str, workflow: Union[Workflow, dict]) -> dict:
        return self._require_executor(execution_id).update_workflow(workflow)

    def set_trace_logs(self, execution_id: str, enabled: bool) -> None:
        self._require_executor(execution_id).set_trace_logs(enabled)

    async def attach_selector_finder(self, execution_id: str) -> dict:
        return await self._require_executor(execution_id).attach_selector_finder()

    def release_selector_finder(self, execution_id: str) -> bool:
        self._require_entry(execution_id)
        return self.debug_sessions.selector_finder.release_owner(execution_id)

    # ─── Queries ──────────────────────────────────────────────

    async def get_execution_status(self, execution_id: str) -> Optional[dict]:
        entry = self._executions.get(execution_id)
        if entry is not None:
            return entry.to_status()
        return await self.store.get_execution(execution_id)

    async def get_batch_status(self, batch_id: str) -> Optional[dict]:
        batch = self._batches.get(batch_id)
        if batch is not None:
            return batch.to_status()

        persisted = await self.store.get_batch(batch_id)
        if persisted is None:
            return None
        executions = await self.store.get_batch_executions(batch_id)
        persisted["execution_ids"] = [e["execution_id"] for e in executions]
        return persisted

    def get_active_executions(self) -> list[dict]:
        return [
            {
                "execution_id": e.execution_id,
                "workflow_file_name": e.workflow_file_name,
                "status": e.executor.status.value if e.executor and e.status == MemberStatus.RUNNING else e.status.value,
                "batch_id": e.batch_id,
            }
            for e in self._executions.values()
            if e.status in _ACTIVE_MEMBER_STATES
        ]

    def get_most_recent_execution_id(self) -> Optional[str]:
        if not self._executions:
            return None
        return max(self._executions.values(), key=lambda e: e.created_at).execution_id

    def get_batch(self, batch_id: str) -> Optional[BatchState]:
        return self._batches.get(batch_id)

    async def get_batch_history(
        self,
        status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict:
        """Persisted batches, newest first, with live counters for batches still in memory."""
        rows, total = await self.store.get_batches(status, start_date, end_date, limit, offset)
        batches = []
        for row in rows:
            live = self._batches.get(row["batch_id"])
            batches.append(live.to_status() if live else row)
        return {"batches": batches, "total": total, "limit": limit, "offset": offset}

    async def get_batch_executions(self, batch_id: str) -> list[dict]:
        batch = self._batches.get(batch_id)
        if batch is None:
            return await self.store.get_batch_executions(batch_id)
        persisted = {e["execution_id"]: e for e in await self.store.get_batch_executions(batch_id)}
        for execution_id in batch.execution_ids:
            entry = self._executions.get(execution_id)
            if entry is not None:
                persisted[execution_id] = entry.to_status()
        return list(persisted.values())

    # ─── History maintenance ──────────────────────────────────

    async def delete_batch(self, batch_id: str) -> bool:
        """Forget a settled batch and delete its records.

        Raises:
            InvalidStateError: The batch still has running or queued members.
        """
        batch = self._batches.get(batch_id)
        if batch is not None:
            if not batch.finished:
                raise InvalidStateError(f"Batch {batch_id} is still active; stop it first")
            self._forget_batch(batch)
        deleted = await self.store.delete_batch(batch_id)
        return deleted or batch is not None

    async def cleanup_history(self, retention_days: Optional[int] = None) -> int:
        return await self.store.cleanup_old_batches(retention_days)

    async def clear_history(self) -> dict:
        """Delete all persisted history and forget settled batches."""
        for batch in [b for b in self._batches.values() if b.finished]:
            self._forget_batch(batch)
        return await self.store.clear_all_batches()

    def _forget_batch(self, batch: BatchState) -> None:
        for execution_id in batch.execution_ids:
            self._release(execution_id)
        self._batches.pop(batch.batch_id, None)

    # ─── Recovery / lifecycle ─────────────────────────────────

    async def recover(self) -> list[str]:
        """Mark batches left running or queued by a previous process as stopped."""
        recovered = []
        for persisted in await self.store.load_active_batches():
            batch_id = persisted["batch_id"]
            if batch_id in self._batches:
                continue
            await self.store.mark_batch_stopped(batch_id)
            for execution in await self.store.get_batch_executions(batch_id):
                if execution["status"] in (MemberStatus.QUEUED.value, MemberStatus.RUNNING.value):
                    await self.store.update_execution(
                        execution["execution_id"], status=MemberStatus.STOPPED.value, end_time=utcnow()
                    )
            recovered.append(batch_id)

        if recovered:
            logger.warning("Interrupted batches marked stopped", count=len(recovered), batch_ids=recovered)
        return recovered

    async def shutdown(self) -> None:
        """Stop everything, then wait for background bookkeeping."""
        await self.stop_all()
        for entry in list(self._executions.values()):
            if entry.status == MemberStatus.RUNNING and entry.executor is not None:
                await entry.executor.stop()
                await self._finish_entry(entry, MemberStatus.STOPPED)

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        for handle in self._release_handles.values():
            handle.cancel()
        self._release_handles.clear()
        logger.info("Execution manager shut down")

    # ─── Internals ────────────────────────────────────────────

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", error=str(task.exception()))

    def _schedule_release(self, execution_id: str) -> None:
        if self.release_delay <= 0:
            self._release(execution_id)
            return
        loop = asyncio.get_running_loop()
        self._release_handles[execution_id] = loop.call_later(
            self.release_delay, self._release, execution_id
        )

    def _release(self, execution_id: str) -> None:
        handle = self._release_handles.pop(execution_id, None)
        if handle is not None:
            handle.cancel()
        entry = self._executions.get(execution_id)
        if entry is None or not entry.finalized:
            return
        del self._executions[execution_id]

        batch = self._batches.get(entry.batch_id) if entry.batch_id else None
        if batch is not None and batch.finished and not any(
            eid in self._executions for eid in batch.execution_ids
        ):
            self._batches.pop(batch.batch_id, None)
