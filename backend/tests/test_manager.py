"""Tests for the execution manager: single runs, batch admission, stopping."""

import asyncio

import pytest

from core.constants import BatchStatus, EventType, MemberStatus
from core.exceptions import InvalidStateError, NotFoundError, WorkflowValidationError
from tasks.base_task import StepHandler
from workflow.events import MemoryEventSink
from workflow.loader import load_from_payloads


class TrackingHandler(StepHandler):
    """Records start order and peak concurrency; ``hold`` blocks on ``gate``."""

    node_type = "track"
    display_name = "Track"

    def __init__(self):
        self.active = 0
        self.max_active = 0
        self.order = []
        self.gate = asyncio.Event()

    async def execute(self, node, context):
        self.order.append(node.data.get("label", node.id))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if node.data.get("hold"):
                await self.gate.wait()
            await asyncio.sleep(float(node.data.get("seconds", 0.01)))
        finally:
            self.active -= 1
        return "tracked"


@pytest.fixture
def tracker(registry) -> TrackingHandler:
    handler = TrackingHandler()
    registry.register("track", handler)
    return handler


@pytest.fixture
def tracked(build_workflow):
    def make(label, **data):
        return build_workflow(("t", "track", {"label": label, **data}))
    return make


def _batch_events(sink, batch_id, event_type):
    return [e for e in sink.events if e.type == event_type and e.data.get("batchId") == batch_id]


class CountCheckingSink(MemoryEventSink):
    """Checks the count invariant of every live batch on each event."""

    def __init__(self):
        super().__init__()
        self.manager = None
        self.violations = []

    def emit(self, event):
        super().emit(event)
        for batch in self.manager._batches.values():
            if not batch.counts_consistent:
                self.violations.append((event.type, batch.batch_id, batch.counts()))


@pytest.mark.integration
class TestSingleExecutions:
    @pytest.mark.asyncio
    async def test_runs_to_completion(self, manager, build_workflow, store, until):
        execution_id = await manager.start_single_execution(build_workflow(("a", "echo")))
        assert manager.active_workers == 0

        await until(lambda: manager.get_executor(execution_id).is_finished)
        await until(lambda: manager._executions[execution_id].finalized)
        status = await manager.get_execution_status(execution_id)
        assert status["status"] == "completed"
        assert status["executed_node_ids"] == ["start", "a"]
        assert (await store.get_execution(execution_id))["status"] == "completed"

    @pytest.mark.asyncio
    async def test_invalid_workflow_rejected(self, manager):
        with pytest.raises(WorkflowValidationError):
            await manager.start_single_execution({"nodes": [], "edges": []})
        assert manager.get_active_executions() == []

    @pytest.mark.asyncio
    async def test_breakpoint_controls_pass_through(self, manager, build_workflow, until):
        execution_id = await manager.start_single_execution(
            build_workflow(("a", "echo", {"breakpoint": True})),
            breakpoint_config={"enabled": True, "breakpointAt": "pre", "breakpointFor": "marked"},
        )
        executor = manager.get_executor(execution_id)
        await until(lambda: executor.is_paused)

        status = await manager.get_execution_status(execution_id)
        assert status["status"] == "paused"
        assert status["paused_node_id"] == "a"

        manager.set_trace_logs(execution_id, True)
        manager.continue_execution(execution_id)
        await until(lambda: executor.is_finished)
        assert executor.trace_logs is True

    @pytest.mark.asyncio
    async def test_selector_finder_pass_through(self, manager, build_workflow, debug_sessions, until):
        execution_id = await manager.start_single_execution(build_workflow(("w", "wait-pause")))
        executor = manager.get_executor(execution_id)
        await until(lambda: executor.is_paused)

        attached = await manager.attach_selector_finder(execution_id)
        assert attached["session_id"] == f"execution-{execution_id}"
        assert debug_sessions.selector_finder.owner_id == execution_id

        assert manager.release_selector_finder(execution_id) is True
        assert manager.release_selector_finder(execution_id) is False
        await manager.stop_execution(execution_id)

    @pytest.mark.asyncio
    async def test_unknown_execution(self, manager):
        with pytest.raises(NotFoundError):
            manager.continue_execution("missing")
        with pytest.raises(NotFoundError):
            await manager.stop_execution("missing")
        assert await manager.get_execution_status("missing") is None

    @pytest.mark.asyncio
    async def test_stop_single_execution(self, manager, build_workflow, handlers, until):
        execution_id = await manager.start_single_execution(build_workflow(("a", "slow")))
        await handlers["slow"].started.wait()

        result = await manager.stop_execution(execution_id)

        assert result == {"was_running": True, "was_queued": False, "running_stopped": 1, "queued_cancelled": 0}
        assert (await manager.get_execution_status(execution_id))["status"] == "stopped"

    @pytest.mark.asyncio
    async def test_most_recent_execution(self, manager, build_workflow):
        first = await manager.start_single_execution(build_workflow(("a", "echo")))
        second = await manager.start_single_execution(build_workflow(("a", "echo")))
        assert manager.get_most_recent_execution_id() in (first, second)

    @pytest.mark.asyncio
    async def test_released_execution_answers_from_store(self, make_manager, build_workflow, until):
        m = make_manager(release_delay=0)
        execution_id = await m.start_single_execution(build_workflow(("a", "echo")))
        await until(lambda: m.get_executor(execution_id) is None)

        status = await m.get_execution_status(execution_id)
        assert status["status"] == "completed"
        assert status["batch_id"] is None


@pytest.mark.integration
class TestBatchExecution:
    @pytest.mark.asyncio
    async def test_invalid_members_count_as_failed(self, manager, build_workflow, sink, store, until):
        sources = load_from_payloads([
            build_workflow(("a", "echo")),
            build_workflow(("b", "echo")),
            {"nodes": [{"id": "x", "type": "echo"}], "edges": []},
            build_workflow(("c", "echo")),
        ])
        batch_id = await manager.start_batch_execution(sources, workers=2)

        started = _batch_events(sink, batch_id, EventType.BATCH_START)[0]
        assert started.data["totalWorkflows"] == 4
        assert started.data["failed"] == 1
        assert started.data["queued"] == 3

        await until(lambda: _batch_events(sink, batch_id, EventType.BATCH_COMPLETE))
        batch = manager.get_batch(batch_id)
        assert batch.status == BatchStatus.COMPLETED
        assert batch.counts() == {"completed": 3, "running": 0, "queued": 0, "failed": 1}
        assert batch.counts_consistent

        persisted = await store.get_batch(batch_id)
        assert persisted["status"] == "completed"
        assert persisted["completed"] == 3
        executions = await store.get_batch_executions(batch_id)
        assert sorted(e["status"] for e in executions) == ["completed", "completed", "completed", "error"]

    @pytest.mark.asyncio
    async def test_all_invalid_batch_completes_immediately(self, manager):
        batch_id = await manager.start_batch_execution([{"nodes": []}, "junk"])
        batch = manager.get_batch(batch_id)
        assert batch.status == BatchStatus.COMPLETED
        assert batch.failed == 2
        assert len(batch.invalid_sources) == 2

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, manager):
        with pytest.raises(WorkflowValidationError):
            await manager.start_batch_execution([])

    @pytest.mark.asyncio
    async def test_batch_workers_cap(self, manager, tracker, tracked, sink, until):
        batch_id = await manager.start_batch_execution(
            [tracked(f"w{i}", seconds=0.02) for i in range(4)], workers=1
        )
        await until(lambda: _batch_events(sink, batch_id, EventType.BATCH_COMPLETE))
        assert tracker.max_active == 1
        assert manager.get_batch(batch_id).completed == 4

    @pytest.mark.asyncio
    async def test_global_pool_cap(self, make_manager, tracker, tracked, sink, until):
        m = make_manager(max_workers=2)
        first = await m.start_batch_execution([tracked(f"a{i}", seconds=0.02) for i in range(3)], workers=3)
        second = await m.start_batch_execution([tracked(f"b{i}", seconds=0.02) for i in range(3)], workers=3)

        assert m.active_workers <= 2
        await until(lambda: _batch_events(sink, first, EventType.BATCH_COMPLETE)
                    and _batch_events(sink, second, EventType.BATCH_COMPLETE))
        assert tracker.max_active <= 2
        assert m.active_workers == 0

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, make_manager, tracker, tracked, sink, until):
        m = make_manager(max_workers=1)
        low = await m.start_batch_execution([tracked("low-1", hold=True), tracked("low-2")], priority=0)
        await until(lambda: tracker.active == 1)
        high = await m.start_batch_execution([tracked("high-1"), tracked("high-2")], priority=10)

        tracker.gate.set()
        await until(lambda: _batch_events(sink, low, EventType.BATCH_COMPLETE)
                    and _batch_events(sink, high, EventType.BATCH_COMPLETE))
        assert tracker.order == ["low-1", "high-1", "high-2", "low-2"]

    @pytest.mark.asyncio
    async def test_start_node_overrides(self, manager, handlers, build_workflow, sink, until):
        batch_id = await manager.start_batch_execution(
            [build_workflow(("a", "echo"), start_data={"slowMo": 0})],
            start_node_overrides={"slowMo": 1},
        )
        await until(lambda: _batch_events(sink, batch_id, EventType.BATCH_COMPLETE))
        entry_id = manager.get_batch(batch_id).execution_ids[0]
        assert manager.get_executor(entry_id).slow_mo == 1

    @pytest.mark.asyncio
    async def test_batch_member_context(self, manager, build_workflow, sink, until):
        batch_id = await manager.start_batch_execution([build_workflow(("a", "echo"))])
        await until(lambda: _batch_events(sink, batch_id, EventType.BATCH_COMPLETE))
        execution_id = manager.get_batch(batch_id).execution_ids[0]
        context = manager.get_executor(execution_id).context
        assert context.get_data("batchId") == batch_id
        assert context.get_data("isParallelExecution") is True

    @pytest.mark.asyncio
    async def test_history_includes_live_counters(self, manager, build_workflow, sink, until):
        batch_id = await manager.start_batch_execution([build_workflow(("a", "echo"))])
        await until(lambda: _batch_events(sink, batch_id, EventType.BATCH_COMPLETE))

        history = await manager.get_batch_history(limit=10)
        assert history["total"] == 1
        assert history["batches"][0]["batch_id"] == batch_id
        assert history["batches"][0]["completed"] == 1

    @pytest.mark.asyncio
    async def test_member_rows_terminal_when_batch_completes(self, make_manager, build_workflow, store, until):
        written = {}
        rows_at_completion = []
        update_execution = store.update_execution

        async def recording_update(execution_id, **fields):
            await update_execution(execution_id, **fields)
            if "status" in fields:
                written[execution_id] = fields["status"]

        store.update_execution = recording_update
        sink = MemoryEventSink()
        sink_emit = sink.emit

        def emit(event):
            if event.type == EventType.BATCH_COMPLETE:
                rows_at_completion.append(dict(written))
            sink_emit(event)

        sink.emit = emit
        m = make_manager(max_workers=2, sink=sink)
        batch_id = await m.start_batch_execution([build_workflow(("a", "echo")) for _ in range(4)], workers=2)
        await until(lambda: rows_at_completion)

        execution_ids = m.get_batch(batch_id).execution_ids
        assert rows_at_completion[0] == {execution_id: "completed" for execution_id in execution_ids}
        executions = await store.get_batch_executions(batch_id)
        assert [e["status"] for e in executions] == ["completed"] * 4

    @pytest.mark.asyncio
    async def test_counts_consistent_on_every_event(self, make_manager, tracker, tracked, until):
        sink = CountCheckingSink()
        m = make_manager(max_workers=2, sink=sink)
        sink.manager = m
        first = await m.start_batch_execution(
            [tracked(f"a{i}", seconds=0.01) for i in range(4)] + [{"nodes": []}], workers=2
        )
        second = await m.start_batch_execution([tracked("hold", hold=True), tracked("b1")], workers=1)
        await until(lambda: _batch_events(sink, first, EventType.BATCH_COMPLETE))
        await m.stop_batch(second)

        assert len(sink.events) > 10
        assert sink.violations == []
        assert m.get_batch(second).counts() == {"completed": 0, "running": 0, "queued": 0, "failed": 2}


@pytest.mark.integration
class TestStopping:
    @pytest.mark.asyncio
    async def test_stop_batch(self, manager, tracker, tracked, until, store):
        batch_id = await manager.start_batch_execution(
            [tracked(f"m{i}", hold=True) for i in range(3)], workers=1
        )
        await until(lambda: tracker.active == 1)

        result = await manager.stop_batch(batch_id)

        assert result == {"stopped_executions": 3, "running_stopped": 1, "queued_cancelled": 2}
        batch = manager.get_batch(batch_id)
        assert batch.status == BatchStatus.STOPPED
        assert batch.counts() == {"completed": 0, "running": 0, "queued": 0, "failed": 3}
        assert tracker.order == ["m0"]
        assert (await store.get_batch(batch_id))["status"] == "stopped"

        statuses = sorted(e["status"] for e in await manager.get_batch_executions(batch_id))
        assert statuses == ["cancelled", "cancelled", "stopped"]

    @pytest.mark.asyncio
    async def test_cancel_queued_member(self, manager, tracker, tracked, until):
        batch_id = await manager.start_batch_execution(
            [tracked("first", hold=True), tracked("second")], workers=1
        )
        await until(lambda: tracker.active == 1)
        queued_id = manager.get_batch(batch_id).execution_ids[1]

        with pytest.raises(InvalidStateError):
            manager.continue_execution(queued_id)

        result = await manager.stop_execution(queued_id)
        assert result == {"was_running": False, "was_queued": True, "running_stopped": 0, "queued_cancelled": 1}

        batch = manager.get_batch(batch_id)
        assert batch.failed == 1
        assert batch.counts_consistent

        tracker.gate.set()
        await until(lambda: batch.finished)
        assert batch.status == BatchStatus.COMPLETED
        assert batch.counts() == {"completed": 1, "running": 0, "queued": 0, "failed": 1}
        assert tracker.order == ["first"]

    @pytest.mark.asyncio
    async def test_stop_all(self, manager, tracker, tracked, until):
        first = await manager.start_batch_execution([tracked("a", hold=True)], workers=1)
        second = await manager.start_batch_execution([tracked("b", hold=True), tracked("c")], workers=1)
        await until(lambda: tracker.active == 2)

        result = await manager.stop_all()

        assert result["total_batches"] == 2
        assert result["total_stopped"] == 3
        assert result["running_stopped"] == 2
        assert result["queued_cancelled"] == 1
        assert {b["batch_id"] for b in result["batches"]} == {first, second}

    @pytest.mark.asyncio
    async def test_delete_active_batch_rejected(self, manager, tracker, tracked, until):
        batch_id = await manager.start_batch_execution([tracked("a", hold=True)])
        await until(lambda: tracker.active == 1)
        with pytest.raises(InvalidStateError):
            await manager.delete_batch(batch_id)

        await manager.stop_batch(batch_id)
        assert await manager.delete_batch(batch_id) is True
        assert await manager.get_batch_status(batch_id) is None

    @pytest.mark.asyncio
    async def test_stopped_batch_members_never_admitted(self, make_manager, tracker, tracked, sink, until):
        m = make_manager(max_workers=1)
        stopped = await m.start_batch_execution(
            [tracked("a0", hold=True), tracked("a1"), tracked("a2")], workers=1
        )
        other = await m.start_batch_execution([tracked("b0")], workers=1)
        await until(lambda: tracker.active == 1)

        await m.stop_batch(stopped)
        await until(lambda: _batch_events(sink, other, EventType.BATCH_COMPLETE))
        await asyncio.sleep(0.05)

        assert tracker.order == ["a0", "b0"]
        statuses = sorted(e["status"] for e in await m.get_batch_executions(stopped))
        assert statuses == ["cancelled", "cancelled", "stopped"]
        assert m.active_workers == 0


@pytest.mark.integration
class TestRecovery:
    @pytest.mark.asyncio
    async def test_recover_marks_interrupted_batches_stopped(self, manager, store):
        await store.save_batch({
            "batch_id": "crashed", "status": "running", "total_workflows": 4,
            "completed": 1, "running": 2, "queued": 1, "failed": 0,
        })
        await store.save_batch({"batch_id": "finished", "status": "completed", "total_workflows": 1})
        await store.save_execution({"execution_id": "e-run", "batch_id": "crashed", "status": "running"})
        await store.save_execution({"execution_id": "e-done", "batch_id": "crashed", "status": "completed"})

        assert await manager.recover() == ["crashed"]

        crashed = await store.get_batch("crashed")
        assert crashed["status"] == "stopped"
        assert (crashed["completed"], crashed["running"], crashed["queued"], crashed["failed"]) == (1, 0, 0, 3)
        assert (await store.get_batch("finished"))["status"] == "completed"
        assert (await store.get_execution("e-run"))["status"] == MemberStatus.STOPPED.value
        assert (await store.get_execution("e-done"))["status"] == "completed"

    @pytest.mark.asyncio
    async def test_recover_without_persistence(self, make_manager, unavailable_store):
        m = make_manager(store=unavailable_store)
        assert await m.recover() == []
