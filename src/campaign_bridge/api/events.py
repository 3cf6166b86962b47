"""WebSocket event stream for dashboards.

Clients receive every broadcast event (or, with ``?call_id=``, only the
events of one call). Text ``ping`` is answered with ``pong``; after 60
seconds of silence the server sends ``ping`` itself.

Message format:
{
    "type": "call_status_update",
    "callId": "call-123",
    "timestamp": "2024-01-15T10:30:00Z",
    "data": {...}
}
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from bridge_shared import get_logger

from campaign_bridge.core.broadcast import Subscription
from campaign_bridge.dependencies import ContainerDep

log = get_logger(__name__)

router = APIRouter()

KEEPALIVE_SECONDS = 60.0


class ConnectionManager:
    """Tracks connected dashboard sockets."""

    def __init__(self) -> None:
        self._connections: set[WebSocket] = set()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections.add(websocket)
        log.info("WebSocket connected", total=len(self._connections))

    def disconnect(self, websocket: WebSocket) -> None:
        self._connections.discard(websocket)
        log.info("WebSocket disconnected", remaining=len(self._connections))

    def get_connection_count(self) -> int:
        return len(self._connections)


manager = ConnectionManager()


async def _forward_events(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_json(event.to_dict())


async def _receive_loop(websocket: WebSocket) -> None:
    while True:
        try:
            data = await asyncio.wait_for(websocket.receive_text(), timeout=KEEPALIVE_SECONDS)
        except asyncio.TimeoutError:
            await websocket.send_text("ping")
            continue

        if data == "ping":
            await websocket.send_text("pong")


@router.websocket("/events")
async def websocket_events(
    websocket: WebSocket,
    container: ContainerDep,
    call_id: str | None = None,
) -> None:
    """Stream broadcast events to a dashboard client."""
    await manager.connect(websocket)
    subscription = container.broadcaster.subscribe(call_id)

    initial: dict[str, Any] = {
        "type": "initial",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": {
            "calls": [
                call.to_dict(include_transcript=False)
                for call in container.registry.all()
                if call_id is None or call.call_id == call_id
            ],
            "viewers": manager.get_connection_count(),
        },
    }

    forward = asyncio.create_task(_forward_events(websocket, subscription))
    receive = asyncio.create_task(_receive_loop(websocket))
    try:
        await websocket.send_json(initial)
        done, _ = await asyncio.wait({forward, receive}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            task.result()
    except WebSocketDisconnect:
        pass
    except Exception as e:
        log.error("Event WebSocket error", error=str(e), call_id=call_id)
    finally:
        forward.cancel()
        receive.cancel()
        subscription.close()
        manager.disconnect(websocket)
