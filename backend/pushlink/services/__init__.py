"""Services for the push session, streaming, notifications and storage."""
from .api_client import PushApiClient
from .messaging import BackgroundClient
from .notifier import NotificationService
from .session_manager import SessionManager
from .store import ConfigStore
from .stream_manager import StreamManager
from .websocket_manager import ConnectionManager

__all__ = [
    "PushApiClient",
    "BackgroundClient",
    "NotificationService",
    "SessionManager",
    "ConfigStore",
    "StreamManager",
    "ConnectionManager",
]
