"""Message channel between popups and the background service."""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request, WebSocket, WebSocketDisconnect

from ..models.settings import AUTO_OPEN_LINKS, DEVICE_NICKNAME
from ..schemas import (
    ApiKeyChanged,
    AutoOpenLinksChanged,
    BackgroundRequest,
    DeviceNicknameChanged,
    GetSessionData,
    MessageAck,
    SharePush,
)
from ..services.session_manager import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["messages"])


def get_session_manager(request: Request) -> SessionManager:
    """Dependency returning the process-wide session manager."""
    return request.app.state.session_manager


@router.post("/messages")
async def handle_message(
    request_message: BackgroundRequest,
    background_tasks: BackgroundTasks,
    manager: SessionManager = Depends(get_session_manager),
):
    """Answer a popup request.

    getSessionData returns the session snapshot; the other requests are
    acknowledged (share with ok=false when nothing was pushed). A token change
    refreshes the session after the response is sent and announces the result
    with a sessionDataUpdated notification.
    """
    message = request_message.root
    logger.debug(f"Message received in background: {message.action}")

    if isinstance(message, GetSessionData):
        snapshot = await manager.get_snapshot()
        return snapshot.model_dump(mode="json", by_alias=True)

    if isinstance(message, ApiKeyChanged):
        background_tasks.add_task(manager.on_credential_changed, message.api_key, message.device_nickname)
    elif isinstance(message, AutoOpenLinksChanged):
        await manager.on_setting_changed(AUTO_OPEN_LINKS, message.auto_open_links)
    elif isinstance(message, DeviceNicknameChanged):
        await manager.on_setting_changed(DEVICE_NICKNAME, message.device_nickname)
    elif isinstance(message, SharePush):
        push = await manager.share(message.target, url=message.url, text=message.text, page_title=message.page_title)
        return MessageAck(ok=push is not None)

    return MessageAck()


@router.websocket("/ws")
async def popup_updates(websocket: WebSocket):
    """Stream pushesUpdated / sessionDataUpdated notifications to a popup."""
    connections = websocket.app.state.connection_manager
    await connections.connect(websocket)
    try:
        while True:
            # Popups don't send anything; this just waits for the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await connections.disconnect(websocket)
