"""WebSocket connection manager for real-time execution events."""

import asyncio
import json
import logging
from typing import Optional, Set

from fastapi import WebSocket

from workflow.events import EventSink
from workflow.models import ExecutionEvent

logger = logging.getLogger(__name__)


class ConnectionManager(EventSink):
    """
    Manages active WebSocket connections and streams events to them.

    Clients may subscribe to a single execution; unsubscribed clients
    receive every event. As an event sink, ``emit()`` schedules the
    broadcast without waiting for it and ``flush()`` awaits pending sends.
    """

    def __init__(self):
        """Initialize connection manager."""
        # websocket -> subscribed execution id (None = all events)
        self.active_connections: dict[WebSocket, Optional[str]] = {}
        self._pending: Set[asyncio.Task] = set()

    @property
    def connection_count(self) -> int:
        return len(self.active_connections)

    async def connect(self, websocket: WebSocket, execution_id: Optional[str] = None) -> None:
        """
        Register a new WebSocket connection.

        Args:
            websocket: WebSocket connection
            execution_id: Optional execution to filter events on
        """
        await websocket.accept()
        self.active_connections[websocket] = execution_id
        logger.info(f"WebSocket connected - execution_id: {execution_id}")

    def subscribe(self, websocket: WebSocket, execution_id: Optional[str]) -> None:
        if websocket in self.active_connections:
            self.active_connections[websocket] = execution_id

    async def disconnect(self, websocket: WebSocket) -> None:
        """Unregister a WebSocket connection."""
        execution_id = self.active_connections.pop(websocket, None)
        logger.info(f"WebSocket disconnected - execution_id: {execution_id}")

    async def broadcast(self, message: dict) -> None:
        """
        Broadcast message to every interested client.

        Args:
            message: Message to broadcast (will be JSON encoded)
        """
        message_str = json.dumps(message, default=str)
        execution_id = message.get("executionId")
        disconnected = set()

        for connection, subscription in list(self.active_connections.items()):
            if subscription is not None and execution_id is not None and subscription != execution_id:
                continue
            try:
                await connection.send_text(message_str)
            except Exception as e:
                logger.error(f"Error broadcasting message: {str(e)}")
                disconnected.add(connection)

        # Clean up disconnected connections
        for connection in disconnected:
            self.active_connections.pop(connection, None)

    def emit(self, event: ExecutionEvent) -> None:
        if not self.active_connections:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.broadcast(event.to_dict()))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        """Wait for scheduled broadcasts to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
