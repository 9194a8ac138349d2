"""Popup side of the message channel to the background service."""
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
import websockets
from pydantic import BaseModel, ValidationError

from ..config import get_background_url
from ..schemas import GetSessionData, PushesUpdated, SessionDataUpdated, SessionSnapshot, parse_notification

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[Union[PushesUpdated, SessionDataUpdated]], Awaitable[None]]


class BackgroundClient:
    """Sends requests to the background service and listens for its notifications."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 35,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        connector: Optional[Callable[[str], Any]] = None,
    ):
        self.base_url = (base_url or get_background_url()).rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._connector = connector or websockets.connect

    async def send(self, message: BaseModel) -> dict:
        """Send a request and return the background's response."""
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport) as client:
            response = await client.post("/api/messages", json=message.model_dump(mode="json", by_alias=True))
            response.raise_for_status()
            return response.json()

    async def notify(self, message: BaseModel) -> bool:
        """Send a request whose response we don't need. An absent background is not an error."""
        try:
            await self.send(message)
        except httpx.HTTPError as e:
            logger.info(f"Background service did not receive {getattr(message, 'action', 'message')}: {e}")
            return False
        return True

    async def get_session_data(self) -> SessionSnapshot:
        """Ask the background for its cached session."""
        data = await self.send(GetSessionData())
        return SessionSnapshot.model_validate(data)

    async def listen(self, handler: NotificationHandler):
        """Deliver background notifications to ``handler`` until the connection ends."""
        url = self.base_url.replace("http://", "ws://", 1).replace("https://", "wss://", 1) + "/api/ws"
        async with self._connector(url) as websocket:
            async for raw in websocket:
                try:
                    message = parse_notification(json.loads(raw))
                except (ValueError, ValidationError) as e:
                    logger.warning(f"Ignoring malformed notification: {e}")
                    continue
                await handler(message)
