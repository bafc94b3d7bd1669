"""
Real-time Event WebSocket

Pushes channel, log, stats, server config and timecode events to every
connected client.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from typing import Any, Callable, Optional
import asyncio
import json
import logging

from ..services.core import SyncServer

logger = logging.getLogger(__name__)

router = APIRouter()


# Outbound events waiting for the sender loop; oldest dropped when full
QUEUE_SIZE = 256

# A client that cannot take a message within this window is dropped
SEND_TIMEOUT = 5.0


class ConnectionManager:
    """Manage WebSocket connections and forward server events to them."""

    def __init__(self, server: SyncServer, queue_size: int = QUEUE_SIZE, send_timeout: float = SEND_TIMEOUT):
        self.server = server
        self.send_timeout = send_timeout
        self.active_connections: list[WebSocket] = []
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._sender_task: Optional[asyncio.Task] = None
        self.dropped = 0

    def start(self):
        if self._unsubscribe is None:
            self._unsubscribe = self.server.bus.subscribe_all(self._on_event)
        if self._sender_task is None:
            self._sender_task = asyncio.create_task(self._send_events())

    async def stop(self):
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._sender_task:
            self._sender_task.cancel()
            try:
                await self._sender_task
            except asyncio.CancelledError:
                pass
            self._sender_task = None

    def init_message(self) -> dict:
        """Full state snapshot sent on connect."""
        return {
            "type": "init",
            "data": {
                "channels": self.server.registry.snapshot(),
                "logs": [e.model_dump(mode="json") for e in self.server.log.entries()],
                "server_config": self.server.registry.server.model_dump(mode="json"),
                "sync": self.server.sync.snapshot(),
                "stats": self.server.stats.latest.model_dump(mode="json"),
            }
        }

    async def connect(self, websocket: WebSocket):
        """Accept and register a new WebSocket connection."""
        await websocket.accept()
        await websocket.send_text(json.dumps(self.init_message()))
        self.active_connections.append(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection."""
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    def _on_event(self, kind: str, payload: Any):
        if not self.active_connections:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            logger.debug(f"Event queue full, dropped oldest event ({self.dropped} total)")
        self._queue.put_nowait({"type": kind, "data": payload})

    async def _send_events(self):
        """Send queued events one at a time, in emission order."""
        while True:
            message = await self._queue.get()
            try:
                await self.broadcast(message)
            except Exception as e:
                logger.error(f"Event broadcast error: {e}")

    async def broadcast(self, message: dict):
        """Broadcast message to all connected clients in parallel."""
        if not self.active_connections:
            return

        data = json.dumps(message)
        connections = list(self.active_connections)

        async def send_to_client(connection: WebSocket) -> bool:
            try:
                await asyncio.wait_for(connection.send_text(data), timeout=self.send_timeout)
                return True
            except Exception:
                return False

        results = await asyncio.gather(*[send_to_client(conn) for conn in connections])

        # Clean up disconnected or stalled clients
        for connection, ok in zip(connections, results):
            if not ok:
                self.disconnect(connection)


@router.websocket("/events")
async def websocket_events(websocket: WebSocket):
    """
    WebSocket endpoint for live server events.

    The first message is a full snapshot:
    {"type": "init", "data": {"channels": [...], "logs": [...], "server_config": {...},
                              "sync": {...}, "stats": {...}}}

    Then one message per event:
    {"type": "channels" | "log" | "stats" | "server_config" | "timecode", "data": ...}

    Clients may send {"type": "ping"} and receive {"type": "pong"}.
    """
    manager: Optional[ConnectionManager] = getattr(websocket.app.state, "ws_manager", None)
    if manager is None:
        await websocket.close(code=1013)
        return

    await manager.connect(websocket)

    try:
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=30)
                message = json.loads(data)
                if message.get("type") == "ping":
                    await websocket.send_text(json.dumps({"type": "pong"}))
            except asyncio.TimeoutError:
                await websocket.send_text(json.dumps({"type": "keepalive"}))
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON WebSocket message")

    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        manager.disconnect(websocket)
