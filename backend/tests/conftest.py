"""Shared pytest fixtures for the workflow execution engine test suite.

Provides:
- File-backed async SQLite store (no external database needed)
- Fake automation session and fake step handlers
- Handler registry, in-memory event sink, execution manager
- FastAPI test client (httpx.AsyncClient)
- Workflow builders and polling helpers
"""

import asyncio
import os
import re
import tempfile
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings BEFORE any app imports
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="engine-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DATA_DIR}/executions.db")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("DEFAULT_RETRY_DELAY", "1")
os.environ.setdefault("DEFAULT_WAIT_TIMEOUT", "50")

from tasks.base_task import StepHandler  # noqa: E402
from tasks.registry import StepHandlerRegistry  # noqa: E402
from workflow.debug_sessions import DebugSessions  # noqa: E402
from workflow.events import MemoryEventSink  # noqa: E402
from workflow.manager import ExecutionManager  # noqa: E402
from workflow.persistence import BatchStore  # noqa: E402
from workflow.session import AutomationSession  # noqa: E402


# ---------------------------------------------------------------------------
# Fake automation session
# ---------------------------------------------------------------------------

class FakeSession(AutomationSession):
    """In-memory stand-in for a browser page."""

    def __init__(self, url: str = "https://example.com/", visible=None, scripts=None):
        self.url = url
        self.visible = set(visible or ())
        self.scripts = dict(scripts or {})
        self.closed = False
        self.close_error = None
        self.calls = []

    async def is_visible(self, selector, selector_type="css"):
        self.calls.append(("is_visible", selector))
        return selector in self.visible

    async def current_url(self):
        return self.url

    async def evaluate(self, script):
        self.calls.append(("evaluate", script))
        return self.scripts.get(script)

    async def wait_for_selector(self, selector, selector_type="css", timeout_ms=30000):
        self.calls.append(("wait_for_selector", selector, timeout_ms))
        if selector not in self.visible:
            raise TimeoutError(f"{selector} not visible")

    async def wait_for_url(self, pattern: "re.Pattern[str]", timeout_ms=30000):
        self.calls.append(("wait_for_url", pattern.pattern, timeout_ms))
        if not pattern.search(self.url):
            raise TimeoutError(f"{self.url} does not match")

    async def wait_for_function(self, script, timeout_ms=30000):
        self.calls.append(("wait_for_function", script, timeout_ms))
        if not self.scripts.get(script):
            raise TimeoutError(f"{script} is falsy")

    async def reload(self):
        self.calls.append(("reload",))

    async def bring_to_front(self):
        self.calls.append(("bring_to_front",))

    async def close(self):
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


# ---------------------------------------------------------------------------
# Fake step handlers
# ---------------------------------------------------------------------------

class EchoHandler(StepHandler):
    """Returns ``data.value`` and remembers which nodes ran with which data."""

    node_type = "echo"
    display_name = "Echo"

    def __init__(self):
        self.calls = []

    async def execute(self, node, context):
        self.calls.append((node.id, dict(node.data)))
        return node.data.get("value", node.id)


class FailHandler(StepHandler):
    node_type = "fail"
    display_name = "Fail"

    async def execute(self, node, context):
        raise RuntimeError(node.data.get("message", "boom"))


class FlakyHandler(StepHandler):
    """Fails ``data.failures`` times per node, then succeeds."""

    node_type = "flaky"
    display_name = "Flaky"

    def __init__(self):
        self.attempts = {}

    async def execute(self, node, context):
        count = self.attempts.get(node.id, 0) + 1
        self.attempts[node.id] = count
        if count <= int(node.data.get("failures", 1)):
            raise RuntimeError(f"attempt {count} failed")
        return f"ok after {count}"


class SlowHandler(StepHandler):
    node_type = "slow"
    display_name = "Slow"

    def __init__(self):
        self.started = asyncio.Event()
        self.cancelled = False

    async def execute(self, node, context):
        self.started.set()
        try:
            await asyncio.sleep(float(node.data.get("seconds", 30)))
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return "slept"


class WaitPauseHandler(StepHandler):
    """Suspends the run until an operator resumes it."""

    node_type = "wait-pause"
    display_name = "Wait Pause"

    async def execute(self, node, context):
        await context.request_pause()
        return "resumed"


class ApiHandler(StepHandler):
    """Stores the next canned response of ``data.responses`` under ``apiResponse``."""

    node_type = "api"
    display_name = "API Request"

    def __init__(self):
        self.calls = 0

    async def execute(self, node, context):
        responses = node.data.get("responses") or [{"status": 200, "body": {}}]
        response = responses[min(self.calls, len(responses) - 1)]
        self.calls += 1
        context.set_data(node.data.get("contextKey", "apiResponse"), response)
        return response


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def handlers() -> dict:
    return {
        "echo": EchoHandler(),
        "fail": FailHandler(),
        "flaky": FlakyHandler(),
        "slow": SlowHandler(),
        "wait-pause": WaitPauseHandler(),
        "api": ApiHandler(),
    }


@pytest.fixture
def registry(handlers) -> StepHandlerRegistry:
    reg = StepHandlerRegistry()
    for node_type, handler in handlers.items():
        reg.register(node_type, handler)
    return reg


@pytest.fixture
def sink() -> MemoryEventSink:
    return MemoryEventSink()


@pytest.fixture
def debug_sessions() -> DebugSessions:
    return DebugSessions()


# ---------------------------------------------------------------------------
# Workflow builders
# ---------------------------------------------------------------------------

def _node(spec) -> dict:
    if isinstance(spec, dict):
        return spec
    node_id, node_type, *rest = spec
    return {"id": node_id, "type": node_type, "data": rest[0] if rest else {}}


@pytest.fixture
def build_workflow():
    """Build a workflow dict from ``(id, type, data)`` tuples.

    Nodes are chained start -> first -> second ... unless ``edges`` is
    given as a list of ``(source, target)`` or ``(source, target, targetHandle)``
    tuples, or edge dicts (``sourceHandle`` defaults to "output").
    """

    def build(*steps, edges=None, start_data=None) -> dict:
        nodes = [{"id": "start", "type": "start", "data": dict(start_data or {})}]
        nodes.extend(_node(s) for s in steps)
        if edges is None:
            ids = [n["id"] for n in nodes]
            edges = list(zip(ids, ids[1:]))
        edge_dicts = []
        for i, edge in enumerate(edges):
            if isinstance(edge, dict):
                edge_dicts.append({"id": f"e{i}", "sourceHandle": "output", "targetHandle": "input", **edge})
                continue
            source, target, *handle = edge
            edge_dicts.append({
                "id": f"e{i}",
                "source": source,
                "target": target,
                "sourceHandle": "output",
                "targetHandle": handle[0] if handle else "input",
            })
        return {"nodes": nodes, "edges": edge_dicts}

    return build


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll ``predicate`` until it is truthy or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("Condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
def until():
    return wait_until


# ---------------------------------------------------------------------------
# Store / manager fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def store(tmp_path) -> AsyncGenerator[BatchStore, None]:
    """A BatchStore on a fresh file database."""
    batch_store = BatchStore(f"sqlite+aiosqlite:///{tmp_path}/batches.db")
    assert await batch_store.initialize()
    yield batch_store
    await batch_store.close()


@pytest.fixture
def unavailable_store() -> BatchStore:
    """A store that was never initialised; every method is a no-op."""
    return BatchStore("sqlite+aiosqlite:///:memory:")


@pytest_asyncio.fixture
async def manager(registry, store, sink, debug_sessions) -> AsyncGenerator[ExecutionManager, None]:
    execution_manager = ExecutionManager(
        registry=registry,
        store=store,
        sink=sink,
        max_workers=4,
        session_factory=FakeSession,
        debug_sessions=debug_sessions,
        release_delay=60,
    )
    yield execution_manager
    await execution_manager.shutdown()


@pytest_asyncio.fixture
async def make_manager(registry, store, sink, debug_sessions):
    """Factory for managers with non-default settings; all are shut down afterwards."""
    created = []

    def make(**kwargs) -> ExecutionManager:
        kwargs.setdefault("store", store)
        kwargs.setdefault("max_workers", 4)
        kwargs.setdefault("release_delay", 60)
        kwargs.setdefault("sink", sink)
        execution_manager = ExecutionManager(
            registry=registry,
            session_factory=FakeSession,
            debug_sessions=debug_sessions,
            **kwargs,
        )
        created.append(execution_manager)
        return execution_manager

    yield make
    for execution_manager in created:
        await execution_manager.shutdown()


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(manager):
    """A FastAPI app wired to the test manager (lifespan is not run)."""
    from api.websockets.connection_manager import ConnectionManager
    from app.main import create_app

    test_app = create_app()
    test_app.state.execution_manager = manager
    test_app.state.connection_manager = ConnectionManager()
    yield test_app


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac
