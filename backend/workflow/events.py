"""Event sinks for execution and batch events.

The engine emits and forgets: ``emit()`` never blocks the run loop and
never raises into it. ``flush()`` is awaited during execution cleanup so
that sinks with asynchronous delivery get a chance to drain.
"""

import asyncio
from typing import Optional

import structlog

from core.constants import EventType
from workflow.models import ExecutionEvent

logger = structlog.get_logger(__name__)


class EventSink:
    """Receiver of execution events."""

    def emit(self, event: ExecutionEvent) -> None:
        raise NotImplementedError

    async def flush(self) -> None:
        return None


class MemoryEventSink(EventSink):
    """Keeps emitted events in memory, optionally bounded."""

    def __init__(self, max_events: Optional[int] = None):
        self.events: list[ExecutionEvent] = []
        self.max_events = max_events

    def emit(self, event: ExecutionEvent) -> None:
        self.events.append(event)
        if self.max_events is not None and len(self.events) > self.max_events:
            del self.events[: len(self.events) - self.max_events]

    def for_execution(self, execution_id: str) -> list[ExecutionEvent]:
        return [e for e in self.events if e.execution_id == execution_id]

    def types(self, execution_id: Optional[str] = None) -> list[EventType]:
        events = self.for_execution(execution_id) if execution_id else self.events
        return [e.type for e in events]

    def clear(self) -> None:
        self.events.clear()


class LoggingEventSink(EventSink):
    """Writes every event to the structured log."""

    _ERROR_EVENTS = {EventType.STEP_ERROR, EventType.RUN_ERROR}

    def emit(self, event: ExecutionEvent) -> None:
        log = logger.warning if event.type in self._ERROR_EVENTS else logger.info
        log(
            "Execution event",
            event=event.type.value,
            execution_id=event.execution_id,
            node_id=event.node_id,
            message=event.message,
        )


class CompositeEventSink(EventSink):
    """Fans one event out to several sinks; a failing sink is logged and skipped."""

    def __init__(self, *sinks: EventSink):
        self.sinks = [s for s in sinks if s is not None]

    def add(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    def emit(self, event: ExecutionEvent) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception as e:
                logger.warning("Event sink failed", sink=type(sink).__name__, error=str(e))

    async def flush(self) -> None:
        results = await asyncio.gather(*(s.flush() for s in self.sinks), return_exceptions=True)
        for sink, result in zip(self.sinks, results):
            if isinstance(result, Exception):
                logger.warning("Event sink flush failed", sink=type(sink).__name__, error=str(result))


def safe_emit(sink: Optional[EventSink], event: ExecutionEvent) -> None:
    """Emit without letting a sink failure reach the caller."""
    if sink is None:
        return
    try:
        sink.emit(event)
    except Exception as e:
        logger.warning("Event sink failed", event=event.type.value, error=str(e))
