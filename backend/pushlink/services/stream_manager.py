"""Streaming connection to the push service with automatic reconnect.

State machine::

    DISCONNECTED -> CONNECTING -> OPEN -> DISCONNECTED (retry scheduled) -> CONNECTING ...

``close()`` moves to CLOSED until the next explicit ``connect()``. After a
failure the reconnect delay is ``min(1000 * 2**attempt, 30000)`` ms with no
limit on the number of attempts.
"""
import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Set

import websockets
from websockets.exceptions import WebSocketException

from ..config import settings
from ..schemas import Push

logger = logging.getLogger(__name__)

BASE_RECONNECT_DELAY_MS = 1000
MAX_RECONNECT_DELAY_MS = 30000

KEEPALIVE = "keepalive"
LIST_CHANGED = "list-changed"
PUSH_DELIVERED = "push-delivered"


def reconnect_delay(attempt: int) -> int:
    """Delay in milliseconds before reconnect attempt number ``attempt`` (0-based)."""
    return min(BASE_RECONNECT_DELAY_MS * 2 ** min(attempt, 5), MAX_RECONNECT_DELAY_MS)


class StreamState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class StreamEvent:
    """Decoded inbound frame."""
    kind: str  # keepalive, list-changed, push-delivered
    push: Optional[Push] = None


def decode_frame(raw: Any) -> Optional[StreamEvent]:
    """Turn a raw frame into an event. Returns None for frames that carry nothing for us."""
    data = json.loads(raw)
    if not isinstance(data, dict):
        return None
    frame_type = data.get("type")

    if frame_type in ("nop", "keepalive"):
        return StreamEvent(KEEPALIVE)
    if frame_type == "tickle" and data.get("subtype") == "push":
        return StreamEvent(LIST_CHANGED)
    if frame_type == "push" and isinstance(data.get("push"), dict):
        return StreamEvent(PUSH_DELIVERED, Push.model_validate(data["push"]))
    return None


EventHandler = Callable[[StreamEvent], Awaitable[None]]


class StreamManager:
    """Owns one streaming connection and keeps it alive.

    Args:
        get_api_key: Returns the current credential, or None when logged out
        on_event: Run as a task for every list-changed and push-delivered event,
            so a slow handler never holds up reading the connection
        name: Label used in log messages (e.g. "background", "popup")
        stream_url: Base URL; the credential is appended to it
        connector: Opens a connection, ``websockets.connect`` by default
        call_later: Schedules the reconnect timer, ``loop.call_later`` by default
    """

    def __init__(
        self,
        get_api_key: Callable[[], Optional[str]],
        on_event: EventHandler,
        name: str = "background",
        stream_url: Optional[str] = None,
        connector: Optional[Callable[[str], Any]] = None,
        call_later: Optional[Callable[[float, Callable[[], None]], asyncio.TimerHandle]] = None,
    ):
        self._get_api_key = get_api_key
        self._on_event = on_event
        self.name = name
        self.stream_url = stream_url or settings.stream_url
        self._connector = connector or websockets.connect
        self._call_later = call_later
        self.state = StreamState.DISCONNECTED
        self.attempts = 0
        self._task: Optional[asyncio.Task] = None
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        self._handlers: Set[asyncio.Task] = set()

    @property
    def is_open(self) -> bool:
        return self.state == StreamState.OPEN

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    def connect(self):
        """Open a fresh connection, replacing any existing one."""
        self.attempts = 0
        self._open()

    def close(self):
        """Tear the connection down, stop reconnecting and drop pending event handlers."""
        self._cancel_reconnect()
        self._discard_connection()
        self._cancel_handlers()
        self.state = StreamState.CLOSED
        logger.info(f"Stream connection closed ({self.name})")

    def _open(self):
        self._discard_connection()
        self._cancel_reconnect()

        api_key = self._get_api_key()
        if not api_key:
            return

        self.state = StreamState.CONNECTING
        self._task = asyncio.create_task(self._run(self.stream_url + api_key))

    def _discard_connection(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _cancel_reconnect(self):
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    async def _run(self, url: str):
        """Connection task: read frames until the connection ends, then schedule a retry."""
        current = asyncio.current_task()
        try:
            async with self._connector(url) as websocket:
                self._on_open()
                async for raw in websocket:
                    await self._dispatch(raw)
            logger.info(f"Disconnected from stream ({self.name})")
        except asyncio.CancelledError:
            raise
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.warning(f"Stream connection error ({self.name}): {e}")

        # A newer connect() or close() has taken over
        if self._task is not current:
            return
        self._task = None
        self._on_closed()

    def _on_open(self):
        self.state = StreamState.OPEN
        self.attempts = 0
        self._cancel_reconnect()
        logger.info(f"Connected to stream ({self.name})")

    def _on_closed(self):
        self.state = StreamState.DISCONNECTED
        delay = reconnect_delay(self.attempts)
        self.attempts += 1
        logger.info(f"Reconnecting in {delay}ms (attempt {self.attempts}, {self.name})")

        call_later = self._call_later or asyncio.get_running_loop().call_later
        self._reconnect_timer = call_later(delay / 1000, self._fire_reconnect)

    def _fire_reconnect(self):
        self._reconnect_timer = None
        if self._get_api_key():
            self._open()

    async def _dispatch(self, raw: Any):
        try:
            event = decode_frame(raw)
        except ValueError as e:
            logger.warning(f"Ignoring malformed stream frame ({self.name}): {e}")
            return

        if event is None or event.kind == KEEPALIVE:
            return

        task = asyncio.create_task(self._handle(event))
        self._handlers.add(task)
        task.add_done_callback(self._handlers.discard)

    async def _handle(self, event: StreamEvent):
        try:
            await self._on_event(event)
        except Exception:
            logger.exception(f"Error handling stream event {event.kind} ({self.name})")

    async def drain(self):
        """Wait for the handlers of events received so far."""
        while self._handlers:
            await asyncio.gather(*self._handlers, return_exceptions=True)

    def _cancel_handlers(self):
        current = asyncio.current_task() if self._handlers else None
        for task in list(self._handlers):
            if task is not current:
                task.cancel()
