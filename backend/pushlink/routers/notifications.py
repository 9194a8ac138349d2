"""Desktop notification click handling."""
import logging
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ..schemas import Push

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


class NotificationClickResponse(BaseModel):
    """Result of resolving a clicked notification."""
    found: bool
    push: Optional[Push] = None


@router.post("/{notification_id}/click", response_model=NotificationClickResponse, response_model_by_alias=True)
async def notification_clicked(notification_id: str, request: Request):
    """Resolve a clicked notification back to its push."""
    logger.info(f"Notification clicked: {notification_id}")
    push = await request.app.state.notifier.handle_click(notification_id)
    return NotificationClickResponse(found=push is not None, push=push)
