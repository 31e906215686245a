"""WebSocket endpoint for real-time execution events."""

from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
import logging
import json

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    execution_id: Optional[str] = Query(None),
):
    """
    WebSocket endpoint streaming execution and batch events.

    Optionally filter on one execution with ?execution_id=<id>, or send
    {"type": "subscribe", "execution_id": "..."} at any time
    (null subscribes to everything).

    Server pushes events shaped as
    {type, executionId, nodeId, message, data, timestamp}.
    """
    manager = websocket.app.state.connection_manager
    await manager.connect(websocket, execution_id=execution_id)

    try:
        while True:
            # Receive and handle client messages (keepalive pings, subscriptions)
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue
            if not isinstance(msg, dict):
                continue
            if msg.get("type") == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))
            elif msg.get("type") == "subscribe":
                manager.subscribe(websocket, msg.get("execution_id"))
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        await manager.disconnect(websocket)
