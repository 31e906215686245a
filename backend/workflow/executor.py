"""Workflow Executor: the per-execution state machine.

One Executor drives one workflow run:

    idle ─start()─▶ running ─▶ completed | error | stopped
                      ▲  │
                      └──┴── paused (breakpoint / wait-pause)

For every node in execution order the run loop:
- observes a pending stop request
- marks the start node executed (it only carries configuration)
- completes nodes on a switch branch that was not selected as skipped
- emits step_bypassed for bypassed nodes
- pauses at a pre-execution breakpoint
- resolves property inputs, then runs pre-step waits, the handler (under
  its retry policy) and post-step waits
- after a switch step, marks the unselected branches; after a loop step,
  runs the loop's downstream nodes once per iteration
- pauses at a post-execution breakpoint
- emits step_complete and records the node as executed

A handler failure that the node does not absorb (failSilently) is fatal:
the run ends with status ``error``. ``stop()`` cancels the token threaded
through every suspension point, so an in-flight step is aborted rather
than awaited. Pauses have no timeout; an operator must resume or stop.
"""

import asyncio
import dataclasses
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union
from uuid import uuid4

import structlog

from app.config import get_settings
from core.constants import (
    DEFAULT_LOOP_MAX_ITERATIONS,
    DEFAULT_OUTPUT_HANDLE,
    LOOP_NODE_TYPE,
    PROPERTY_INPUT_SUFFIX,
    SWITCH_NODE_TYPE,
    SWITCH_OUTPUT_KEY,
    BreakpointTiming,
    EventType,
    ExecutionStatus,
    LoopMode,
    PauseReason,
    WaitTiming,
)
from core.exceptions import (
    CleanupError,
    InvalidStateError,
    MutationRejectedError,
    StepCancelledError,
    StepError,
    WorkflowValidationError,
)
from tasks.registry import StepHandlerRegistry, get_handler_registry
from workflow.cancellation import CancellationToken
from workflow.conditions import Condition, ConditionEvaluator, run_update_step
from workflow.context import ExecutionContext, StepRecord
from workflow.debug_sessions import DebugLease, DebugSessions
from workflow.events import EventSink, safe_emit
from workflow.models import (
    BreakpointConfig,
    ExecutionEvent,
    Node,
    StepOutcome,
    Workflow,
    should_trigger_breakpoint,
)
from workflow.parser import WorkflowParser
from workflow.retry_strategies import RetryPolicy, execute_with_retry
from workflow.session import AutomationSession
from workflow.wait import WaitSpec, execute_waits

logger = structlog.get_logger(__name__)

STOP_MESSAGE = "Execution stopped by user"


class Executor:
    """Runs one workflow execution end to end."""

    def __init__(
        self,
        workflow: Union[Workflow, dict],
        registry: Optional[StepHandlerRegistry] = None,
        execution_id: Optional[str] = None,
        session: Optional[AutomationSession] = None,
        sink: Optional[EventSink] = None,
        breakpoint_config: Union[BreakpointConfig, dict, None] = None,
        trace_logs: bool = False,
        slow_mo: Optional[int] = None,
        debug_sessions: Optional[DebugSessions] = None,
        context_data: Optional[dict] = None,
        variables: Optional[dict] = None,
    ):
        self.execution_id = execution_id or str(uuid4())
        self.workflow = Workflow.coerce(workflow)
        self.parser = WorkflowParser(self.workflow)
        self.workflow_version = 1
        self.registry = registry or get_handler_registry()
        self.sink = sink
        self.debug_sessions = debug_sessions
        if isinstance(breakpoint_config, dict):
            breakpoint_config = BreakpointConfig.from_dict(breakpoint_config)
        self.breakpoint_config: Optional[BreakpointConfig] = breakpoint_config
        self.trace_logs = trace_logs
        self.slow_mo = slow_mo

        self.context = ExecutionContext(
            execution_id=self.execution_id,
            session=session,
            data=dict(context_data or {}),
            variables=dict(variables or {}),
            trace_hook=self._trace,
            pause_hook=self._wait_pause,
        )

        self.status = ExecutionStatus.IDLE
        self.current_node_id: Optional[str] = None
        self.paused_node_id: Optional[str] = None
        self.pause_reason: Optional[PauseReason] = None
        self.pause_timing: Optional[BreakpointTiming] = None
        self.executed_node_ids: list[str] = []
        self.last_error: Optional[str] = None
        self.stop_requested = False
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.node_trace_logs: dict[str, list[str]] = {}

        self._order: list[str] = []
        self._index = 0
        self._token = CancellationToken()
        self._resume_event: Optional[asyncio.Event] = None
        self._skip_next = False
        self._skipped_node_ids: set[str] = set()
        self._evaluator = ConditionEvaluator()
        self._breakpoints_disabled = False
        self._task: Optional[asyncio.Task] = None
        self._cleaned_up = False
        self._debug_lease: Optional[DebugLease] = None
        self._completion_callbacks: list[Callable] = []
        self._log = logger.bind(execution_id=self.execution_id)

    # ─── Properties ───────────────────────────────────────────

    @property
    def execution_order(self) -> list[str]:
        return list(self._order)

    @property
    def is_paused(self) -> bool:
        return self.status == ExecutionStatus.PAUSED

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    @property
    def breakpoints_disabled(self) -> bool:
        return self._breakpoints_disabled

    def add_completion_callback(self, callback: Callable) -> None:
        """Register callback(executor), called once after the run settles and cleanup ran."""
        self._completion_callbacks.append(callback)

    # ─── Lifecycle ────────────────────────────────────────────

    async def start(self) -> asyncio.Task:
        """Validate, compute the execution order and launch the run loop.

        Raises:
            WorkflowValidationError: The workflow is invalid; status stays idle.
            InvalidStateError: The executor was already started.
        """
        if self.status != ExecutionStatus.IDLE or self._task is not None:
            raise InvalidStateError(f"Execution {self.execution_id} has already been started")

        errors = self.parser.validate()
        if errors:
            self.last_error = "; ".join(errors)
            self._log.info("Execution rejected: invalid workflow", errors=errors)
            raise WorkflowValidationError(errors)

        self._order = self.parser.get_execution_order()
        self._index = 0
        if self.slow_mo is None:
            start_node = self.parser.get_start_node()
            self.slow_mo = int((start_node.data.get("slowMo") if start_node else 0) or 0)

        self.status = ExecutionStatus.RUNNING
        self.started_at = datetime.now(timezone.utc)
        self._log.info("Execution started", nodes=len(self._order))
        self._trace(f"Execution order: {' -> '.join(self._order)}")
        self._emit(EventType.RUN_START, data={"executionOrder": list(self._order)})

        self._task = asyncio.create_task(self._run(), name=f"execution-{self.execution_id}")
        return self._task

    async def execute(self) -> ExecutionStatus:
        """Start the run and wait for its terminal status."""
        await self.start()
        return await self.wait_until_finished()

    async def wait_until_finished(self, timeout: Optional[float] = None) -> ExecutionStatus:
        """Wait (at most ``timeout`` seconds) for the run loop to settle."""
        if self._task is not None and not self._task.done():
            await asyncio.wait({self._task}, timeout=timeout)
        return self.status

    async def stop(self) -> None:
        """Request a stop and always release resources.

        Aborts an in-flight step, releases a pending pause, waits for the
        run loop to settle and runs cleanup, whatever the current state.
        """
        self._request_stop()
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            await asyncio.wait({task})
        elif task is None and self.status == ExecutionStatus.IDLE:
            self._mark_stopped()
            await self._cleanup()
            await self._run_completion_callbacks()
            return
        await self._cleanup()

    def _request_stop(self) -> None:
        if not self.stop_requested:
            self._log.info("Stop requested", status=self.status.value)
        self.stop_requested = True
        self._token.cancel(STOP_MESSAGE)
        if self._resume_event is not None:
            self._resume_event.set()

    # ─── Run loop ─────────────────────────────────────────────

    async def _run(self) -> None:
        try:
            while self._index < len(self._order):
                node_id = self._order[self._index]
                self._index += 1
                if node_id in self.executed_node_ids:
                    continue
                if self.stop_requested:
                    self._mark_stopped()
                    return
                await self._process_node(node_id)

            if self.stop_requested:
                self._mark_stopped()
                return

            self.status = ExecutionStatus.COMPLETED
            self.finished_at = datetime.now(timezone.utc)
            self.current_node_id = None
            self._log.info("Execution completed", executed=len(self.executed_node_ids))
            self._emit(EventType.RUN_COMPLETE, message="Execution completed")
        except StepCancelledError:
            self._mark_stopped()
        except Exception as e:
            self.status = ExecutionStatus.ERROR
            self.finished_at = datetime.now(timezone.utc)
            self.last_error = str(e)
            self._log.warning("Execution failed", node_id=self.current_node_id, error=str(e))
            self._emit(EventType.RUN_ERROR, node_id=self.current_node_id, message=str(e))
        finally:
            self.paused_node_id = None
            self.pause_reason = None
            await self._cleanup()
            await self._run_completion_callbacks()

    async def _process_node(self, node_id: str) -> None:
        node = self._require_node(node_id)

        if node.is_start:
            self._trace(f"Start node: {node_id}")
            self.executed_node_ids.append(node_id)
            return

        if node_id in self._skipped_node_ids:
            self._trace(f"Skipping unreachable node: {node_id} (type: {node.type})")
            self.executed_node_ids.append(node_id)
            self._emit(
                EventType.STEP_COMPLETE,
                node_id=node_id,
                message="Node skipped (unreachable branch)",
                data={"skipped": True},
            )
            return

        if node.bypass:
            self._bypass(node)
            return

        if self._breakpoint_applies(node, BreakpointTiming.PRE):
            self._trace(f"Pre-execution breakpoint triggered for node: {node_id}")
            await self.pause_execution(node_id, PauseReason.BREAKPOINT, BreakpointTiming.PRE)
            if self.stop_requested:
                return
            # the graph may have been replaced while paused
            node = self._require_node(node_id)
            if self._skip_next:
                self._skip_next = False
                self._trace(f"Skipping node due to breakpoint skip: {node_id}")
                self.executed_node_ids.append(node_id)
                self._emit(
                    EventType.STEP_COMPLETE,
                    node_id=node_id,
                    message="Node skipped at breakpoint",
                    data={"skipped": True},
                )
                return
            if node.bypass:
                self._bypass(node)
                return

        self.current_node_id = node_id
        self.context.current_node_id = node_id
        self.node_trace_logs[node_id] = []
        self._trace(f"Starting node: {node_id} (type: {node.type})")
        self._emit(EventType.STEP_START, node_id=node_id, data={"type": node.type})

        loop_children: list[str] = []
        started = time.monotonic()
        try:
            record = await self._run_step(node)
            if node.type == SWITCH_NODE_TYPE:
                self._skip_unselected_branches(node)
            elif node.type == LOOP_NODE_TYPE:
                loop_children = await self._iterate_loop(node)
        except StepCancelledError:
            raise
        except Exception as e:
            self.last_error = str(e)
            self._emit(
                EventType.STEP_ERROR,
                node_id=node_id,
                message=str(e),
                data={"error": str(e), "traceLogs": list(self.node_trace_logs.get(node_id, []))},
            )
            if isinstance(e, StepError):
                if e.node_id is None:
                    e.node_id = node_id
                raise
            raise StepError(str(e), node_id) from e

        record.duration_ms = round((time.monotonic() - started) * 1000, 2)
        self.context.set_step_result(record)

        if self._breakpoint_applies(node, BreakpointTiming.POST):
            self._trace(f"Post-execution breakpoint triggered for node: {node_id}")
            await self.pause_execution(node_id, PauseReason.BREAKPOINT, BreakpointTiming.POST)
            self._skip_next = False
            if self.stop_requested:
                return

        if self.slow_mo and self._index < len(self._order):
            await self._token.sleep(self.slow_mo / 1000)

        self._emit(
            EventType.STEP_COMPLETE,
            node_id=node_id,
            data={
                "durationMs": record.duration_ms,
                "attempts": record.attempts,
                "suppressedError": record.suppressed_error,
            },
        )
        self.executed_node_ids.append(node_id)
        # loop children already ran inside the loop step
        self.executed_node_ids.extend(c for c in loop_children if c not in self.executed_node_ids)

    async def _run_step(self, node: Node) -> StepRecord:
        """Pre waits, handler under retry, post waits."""
        node = self._resolve_property_inputs(node)
        record = StepRecord(node_id=node.id)
        wait_spec = WaitSpec.from_node_data(node.data)

        if wait_spec is not None and wait_spec.timing == WaitTiming.BEFORE:
            self._absorb(await execute_waits(self.context.session, wait_spec, self._token), record)

        handler = self.registry.resolve(node.type, node.id)
        policy = RetryPolicy.from_node_data(node.data, self.context)
        outcome = await execute_with_retry(
            lambda: handler.run(node, self.context),
            policy,
            context=self.context,
            token=self._token,
        )
        record.output = self._absorb(outcome, record)
        record.attempts = outcome.attempts

        if wait_spec is not None and wait_spec.timing == WaitTiming.AFTER:
            self._absorb(await execute_waits(self.context.session, wait_spec, self._token), record)

        return record

    def _absorb(self, outcome: StepOutcome, record: StepRecord) -> Any:
        """Unwrap an outcome, noting suppressed failures on the record."""
        if outcome.is_suppressed:
            record.suppressed_error = str(outcome.error) if outcome.error else outcome.detail
            self._trace(f"Failure suppressed (failSilently): {record.suppressed_error}")
            return None
        return outcome.unwrap()

    def _resolve_property_inputs(self, node: Node) -> Node:
        """Copy of ``node`` whose connected properties carry their source node's value.

        Only properties flagged ``isInput`` in ``data._inputConnections`` are
        resolved. The value is the variable named after the source node,
        falling back to the source step's output.
        """
        connections = node.data.get("_inputConnections") or {}
        if not connections:
            return node

        edges = {e.target_handle: e for e in self.parser.get_property_inputs(node.id)}
        data = dict(node.data)
        for name, info in connections.items():
            if not isinstance(info, dict) or info.get("isInput") is not True:
                continue
            edge = edges.get(f"{name}{PROPERTY_INPUT_SUFFIX}")
            if edge is None:
                self._trace(f"Warning: No edge found for property input {name} on node {node.id}")
                continue
            value = self.context.get_variable(edge.source, self.context.get_step_output(edge.source))
            if value is None:
                self._trace(f"Warning: Source value not found for property {name} from node {edge.source}")
                continue
            data[name] = value
            self._trace(f"Resolved property {name} = {value!r}")
        return dataclasses.replace(node, data=data)

    # ─── Control-flow nodes ───────────────────────────────────

    def _skip_unselected_branches(self, node: Node) -> None:
        selected = self.context.data.pop(SWITCH_OUTPUT_KEY, None)
        if not selected:
            return
        self._trace(f"Switch node {node.id} selected handle: {selected}")
        for handle in self.parser.get_output_handles(node.id):
            if handle == selected:
                continue
            for node_id in self.parser.get_nodes_reachable_from_handle(node.id, handle):
                self._skipped_node_ids.add(node_id)
                self._trace(f"Marking node {node_id} as skipped (unreachable from handle {handle})")

    async def _iterate_loop(self, node: Node) -> list[str]:
        """Run the loop's downstream nodes once per iteration and return their ids.

        The loop step's handler configures the iteration through context
        data: ``_loopMode`` plus ``_loopArray`` (forEach) or
        ``_loopCondition`` / ``_loopMaxIterations`` / ``_loopUpdateStep`` /
        ``_loopShouldStart`` (doWhile).
        """
        try:
            mode = LoopMode(self.context.get_data("_loopMode"))
        except ValueError:
            raise StepError("Loop mode not set. The loop step must set forEach or doWhile", node.id) from None

        children = self.parser.get_nodes_reachable_from_handle(node.id, DEFAULT_OUTPUT_HANDLE)
        if not children:
            self._trace(f"Loop node {node.id} has no child nodes to iterate")
            return []

        if mode == LoopMode.FOR_EACH:
            items = self.context.get_data("_loopArray")
            if not isinstance(items, list):
                raise StepError("Loop array not found or is not an array", node.id)
            self._trace(f"Loop node {node.id} (forEach) iterating over {len(items)} items")
            for index, item in enumerate(items):
                self.context.set_variable("index", index)
                self.context.set_variable("item", item)
                self._trace(f"Loop iteration {index + 1}/{len(items)}")
                await self._run_loop_children(children)
        else:
            await self._iterate_do_while(node, children)

        self._trace(f"Loop node {node.id} ({mode.value}) completed")
        return children

    async def _iterate_do_while(self, node: Node, children: list[str]) -> None:
        condition = self.context.get_data("_loopCondition")
        if not condition:
            raise StepError("Loop condition not found", node.id)
        if isinstance(condition, dict):
            condition = Condition.from_dict(condition)
        max_iterations = int(self.context.get_data("_loopMaxIterations") or DEFAULT_LOOP_MAX_ITERATIONS)
        update_step = self.context.get_data("_loopUpdateStep")

        passed = self.context.get_data("_loopShouldStart")
        if passed is None:
            passed = await self._loop_condition_met(condition)
        if not passed:
            self._trace(f"Loop node {node.id} (doWhile) initial condition failed, skipping loop")
            return

        iterations = 0
        while passed and iterations < max_iterations:
            self.context.set_variable("index", iterations)
            await self._run_loop_children(children)
            if update_step:
                try:
                    run_update_step(update_step, self.context)
                except Exception as e:
                    self._trace(f"Warning: Loop updateStep failed: {e}")
            iterations += 1
            passed = await self._loop_condition_met(condition)

        if passed:
            raise StepError(f"Loop exceeded maximum iterations limit of {max_iterations}", node.id)
        self._trace(f"Loop condition failed after {iterations} iterations, exiting loop")

    async def _loop_condition_met(self, condition: Condition) -> bool:
        try:
            result = await self._evaluator.evaluate(condition, self.context)
        except Exception as e:
            self._trace(f"Error evaluating loop condition: {e}")
            return False
        return result.met

    async def _run_loop_children(self, children: list[str]) -> None:
        for child_id in children:
            child = self.parser.get_node(child_id)
            if child is None or child_id in self._skipped_node_ids:
                continue
            if child.bypass:
                self._trace(f"Skipping bypassed loop child: {child_id}")
                continue
            self._token.raise_if_cancelled()
            self._trace(f"Executing loop child node: {child_id} (type: {child.type})")
            self.context.set_step_result(await self._run_step(child))
            if self.slow_mo:
                await self._token.sleep(self.slow_mo / 1000)

    def _bypass(self, node: Node) -> None:
        self._trace(f"Skipping bypassed node: {node.id} (type: {node.type})")
        self.executed_node_ids.append(node.id)
        self._emit(EventType.STEP_BYPASSED, node_id=node.id, message="Node bypassed")

    def _require_node(self, node_id: str) -> Node:
        node = self.parser.get_node(node_id)
        if node is None:
            raise StepError(f"Node {node_id} not found", node_id)
        return node

    def _breakpoint_applies(self, node: Node, timing: BreakpointTiming) -> bool:
        if self._breakpoints_disabled:
            return False
        return should_trigger_breakpoint(node, timing, self.breakpoint_config)

    def _mark_stopped(self) -> None:
        if self.status.is_terminal:
            return
        self.status = ExecutionStatus.STOPPED
        self.finished_at = datetime.now(timezone.utc)
        self._log.info("Execution stopped", node_id=self.current_node_id)
        self._emit(EventType.RUN_STOPPED, node_id=self.current_node_id, message=STOP_MESSAGE)

    # ─── Pause / resume ───────────────────────────────────────

    async def pause_execution(
        self,
        node_id: str,
        reason: PauseReason,
        timing: Optional[BreakpointTiming] = None,
    ) -> None:
        """Suspend the run until continued, skipped, or stopped. No timeout."""
        if self.stop_requested:
            return

        self.status = ExecutionStatus.PAUSED
        self.paused_node_id = node_id
        self.pause_reason = reason
        self.pause_timing = timing
        self._resume_event = asyncio.Event()

        if reason == PauseReason.BREAKPOINT and self.debug_sessions is not None:
            self._debug_lease = self.debug_sessions.action_recorder.acquire(
                self.execution_id, self.context.session
            )

        self._log.info("Execution paused", node_id=node_id, reason=reason.value)
        self._emit(
            EventType.EXECUTION_PAUSED,
            node_id=node_id,
            message=f"Execution paused ({reason.value})",
            data={"reason": reason.value, "breakpointAt": timing.value if timing else None},
        )

        try:
            await self._await_resume()
        finally:
            if self.debug_sessions is not None:
                if self._debug_lease is not None:
                    self.debug_sessions.action_recorder.release(self._debug_lease)
                self.debug_sessions.selector_finder.release_owner(self.execution_id)
            self._debug_lease = None
            self._resume_event = None
            self.paused_node_id = None
            self.pause_reason = None
            self.pause_timing = None

        if not self.stop_requested:
            self.status = ExecutionStatus.RUNNING
            self._emit(EventType.EXECUTION_RESUMED, node_id=node_id, message="Execution resumed")

    async def _await_resume(self) -> None:
        event = self._resume_event
        warn_after = get_settings().PAUSE_WARNING_AFTER
        paused_at = time.monotonic()
        while not event.is_set():
            if warn_after <= 0:
                await event.wait()
                continue
            try:
                await asyncio.wait_for(event.wait(), timeout=warn_after)
            except asyncio.TimeoutError:
                self._log.warning(
                    "Execution still paused, automation session held",
                    node_id=self.paused_node_id,
                    paused_seconds=round(time.monotonic() - paused_at),
                )

    async def _wait_pause(self, node_id: str) -> None:
        """Pause requested by a step (workflow-defined wait)."""
        await self.pause_execution(node_id, PauseReason.WAIT_PAUSE)
        self._token.raise_if_cancelled()

    def _require_paused(self, operation: str) -> None:
        if self.status != ExecutionStatus.PAUSED or self._resume_event is None:
            raise InvalidStateError(
                f"Cannot {operation}: execution {self.execution_id} is {self.status.value}, not paused"
            )

    async def attach_selector_finder(self) -> dict:
        """Lend the paused run's page to the selector finder until the run resumes.

        Displaces any other selector finder session.

        Raises:
            InvalidStateError: The run is not paused or has no automation session.
        """
        self._require_paused("attach the selector finder")
        session = self.context.session
        if session is None or self.debug_sessions is None:
            raise InvalidStateError(f"Execution {self.execution_id} has no automation session to attach to")

        self.debug_sessions.selector_finder.acquire(self.execution_id, session)
        await session.reload()
        await session.bring_to_front()
        self._log.info("Selector finder attached", node_id=self.paused_node_id)
        return {
            "session_id": f"execution-{self.execution_id}",
            "page_url": await session.current_url(),
        }

    def continue_execution(self) -> None:
        """Resume; breakpoints stay armed for later nodes."""
        self._require_paused("continue")
        self._trace("Continue requested")
        self._resume_event.set()

    def skip_next_node_execution(self) -> None:
        """Resume and treat the node paused before as completed without running it."""
        self._require_paused("skip")
        if self.pause_reason == PauseReason.BREAKPOINT and self.pause_timing == BreakpointTiming.PRE:
            self._skip_next = True
        self._trace(f"Skip requested for node: {self.paused_node_id}")
        self._resume_event.set()

    def disable_breakpoint_and_continue(self) -> None:
        """Resume and suppress every further breakpoint pause of this run."""
        self._require_paused("disable breakpoints")
        self._breakpoints_disabled = True
        if self.breakpoint_config is not None:
            self.breakpoint_config.enabled = False
        self._trace("Breakpoints disabled for the rest of the run")
        self._resume_event.set()

    def stop_execution_from_pause(self) -> None:
        """End a paused run as stopped; the run loop performs cleanup."""
        self._require_paused("stop from pause")
        self._request_stop()

    # ─── Mid-run workflow updates ─────────────────────────────

    def update_workflow(self, workflow: Union[Workflow, dict]) -> dict:
        """Swap in a new graph version while paused at a breakpoint.

        The executed prefix is immutable: every executed node must exist
        in the new graph and be ordered before the paused node. Execution
        continues from the paused node's position in the new order.

        Raises:
            MutationRejectedError: With a code describing the refusal.
        """
        if self.status != ExecutionStatus.PAUSED or self.paused_node_id is None:
            raise MutationRejectedError(
                "Workflow can only be updated while execution is paused at a breakpoint",
                MutationRejectedError.NOT_PAUSED,
            )
        if self.pause_reason == PauseReason.WAIT_PAUSE:
            raise MutationRejectedError(
                "Workflow updates are only allowed during breakpoint pauses, not wait-pause",
                MutationRejectedError.WAIT_PAUSE_NOT_EDITABLE,
            )

        try:
            new_workflow = Workflow.coerce(workflow)
        except (TypeError, ValueError) as e:
            raise MutationRejectedError(
                f"Updated workflow is invalid: {e}", MutationRejectedError.INVALID_WORKFLOW, [str(e)]
            )
        parser = WorkflowParser(new_workflow)
        errors = parser.validate()
        if errors:
            raise MutationRejectedError(
                "Updated workflow is invalid: " + "; ".join(errors),
                MutationRejectedError.INVALID_WORKFLOW,
                errors,
            )

        paused = self.paused_node_id
        if parser.get_node(paused) is None:
            raise MutationRejectedError(
                f"Paused node {paused} does not exist in the updated workflow",
                MutationRejectedError.PAUSED_NODE_MISSING,
            )

        order = parser.get_execution_order()
        position = {node_id: i for i, node_id in enumerate(order)}
        missing = [n for n in self.executed_node_ids if n not in position]
        if missing:
            raise MutationRejectedError(
                f"Executed nodes missing from updated workflow: {', '.join(missing)}",
                MutationRejectedError.HISTORY_REWRITE,
            )
        misplaced = [n for n in self.executed_node_ids if position[n] > position[paused]]
        if misplaced:
            raise MutationRejectedError(
                f"Executed nodes would run after the paused node {paused}: {', '.join(misplaced)}",
                MutationRejectedError.HISTORY_REWRITE,
            )

        executed = set(self.executed_node_ids)
        never_run = [n for n in order[: position[paused]] if n not in executed]
        if never_run:
            self._trace(f"Nodes inserted before the paused node will not run: {', '.join(never_run)}")

        self.workflow = new_workflow
        self.parser = parser
        self._order = order
        self._index = position[paused] + 1
        self.workflow_version += 1

        self._log.info("Workflow updated", version=self.workflow_version, paused_node=paused)
        self._emit(
            EventType.LOG,
            node_id=paused,
            message="Workflow updated",
            data={"executionOrder": list(order), "workflowVersion": self.workflow_version},
        )
        return {
            "execution_order": list(order),
            "workflow_version": self.workflow_version,
            "executed_node_ids": list(self.executed_node_ids),
            "paused_node_id": paused,
        }

    # ─── Tracing ──────────────────────────────────────────────

    def set_trace_logs(self, enabled: bool) -> None:
        self.trace_logs = bool(enabled)
        self._log.info("Trace logging toggled", enabled=self.trace_logs)

    def _trace(self, message: str, **fields: Any) -> None:
        if not self.trace_logs:
            return
        node_id = self.current_node_id
        if node_id is not None:
            self.node_trace_logs.setdefault(node_id, []).append(message)
        self._log.info("[TRACE] " + message, node_id=node_id, **fields)
        self._emit(EventType.LOG, node_id=node_id, message=f"[TRACE] {message}")

    # ─── Events / cleanup ─────────────────────────────────────

    def _emit(
        self,
        event_type: EventType,
        node_id: Optional[str] = None,
        message: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> None:
        safe_emit(
            self.sink,
            ExecutionEvent(
                type=event_type,
                execution_id=self.execution_id,
                node_id=node_id,
                message=message,
                data=data or {},
            ),
        )

    async def _cleanup(self) -> None:
        """Release the session, debug slots and flush the sink. Never raises."""
        if self._cleaned_up:
            return
        self._cleaned_up = True

        if self.debug_sessions is not None:
            self.debug_sessions.release_owner(self.execution_id)

        session = self.context.session
        if session is not None:
            try:
                await session.close()
            except Exception as e:
                error = CleanupError(f"Failed to close automation session: {e}", resource="session")
                self._log.warning("Cleanup failed", resource=error.resource, error=error.message)

        if self.sink is not None:
            try:
                await self.sink.flush()
            except Exception as e:
                error = CleanupError(f"Failed to flush event sink: {e}", resource="event_sink")
                self._log.warning("Cleanup failed", resource=error.resource, error=error.message)

    async def _run_completion_callbacks(self) -> None:
        for callback in self._completion_callbacks:
            try:
                result = callback(self)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self._log.warning("Completion callback failed", error=str(e))

    def snapshot(self) -> dict:
        """Current state, as reported by status queries."""
        return {
            "execution_id": self.execution_id,
            "status": self.status.value,
            "current_node_id": self.current_node_id,
            "paused_node_id": self.paused_node_id,
            "pause_reason": self.pause_reason.value if self.pause_reason else None,
            "executed_node_ids": list(self.executed_node_ids),
            "execution_order": list(self._order),
            "workflow_version": self.workflow_version,
            "error": self.last_error,
            "stop_requested": self.stop_requested,
            "trace_logs": self.trace_logs,
            "breakpoints_disabled": self._breakpoints_disabled,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
