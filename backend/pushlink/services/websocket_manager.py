"""WebSocket connection manager for popup update notifications."""
import asyncio
import json
import logging
from typing import Set

from fastapi import WebSocket
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks connected popups and broadcasts notifications to them.

    Delivery is best effort: with no popup connected a broadcast is a no-op,
    and popups that fail to receive are dropped.
    """

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        """Accept a new popup connection."""
        await websocket.accept()
        async with self._lock:
            self.active_connections.add(websocket)
        logger.info(f"Popup connected. Total connections: {len(self.active_connections)}")

    async def disconnect(self, websocket: WebSocket):
        """Remove a disconnected popup."""
        async with self._lock:
            self.active_connections.discard(websocket)
        logger.info(f"Popup disconnected. Total connections: {len(self.active_connections)}")

    async def broadcast(self, message: BaseModel):
        """Send a notification to every connected popup."""
        if not self.active_connections:
            logger.debug(f"No popup open to receive {getattr(message, 'action', 'message')}")
            return

        message_json = json.dumps(message.model_dump(mode="json", by_alias=True))

        async with self._lock:
            connections = list(self.active_connections)

        disconnected = []
        for websocket in connections:
            try:
                await websocket.send_text(message_json)
            except Exception as e:
                logger.debug(f"Failed to send to popup: {e}")
                disconnected.append(websocket)

        if disconnected:
            async with self._lock:
                for ws in disconnected:
                    self.active_connections.discard(ws)

    @property
    def connection_count(self) -> int:
        """Return the number of connected popups."""
        return len(self.active_connections)
