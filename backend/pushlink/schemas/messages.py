"""Messages exchanged between the popup and the background service.

Requests go popup -> background and get exactly one response. Notifications go
background -> popup and are best effort.
"""
from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, Field, RootModel, TypeAdapter

from .push import Push
from .session import SessionSnapshot


class _Message(BaseModel):
    class Config:
        populate_by_name = True


# Requests

class GetSessionData(_Message):
    action: Literal["getSessionData"] = "getSessionData"


class ApiKeyChanged(_Message):
    action: Literal["apiKeyChanged"] = "apiKeyChanged"
    api_key: Optional[str] = Field(None, alias="apiKey")  # None means logged out
    device_nickname: Optional[str] = Field(None, alias="deviceNickname")


class AutoOpenLinksChanged(_Message):
    action: Literal["autoOpenLinksChanged"] = "autoOpenLinksChanged"
    auto_open_links: bool = Field(..., alias="autoOpenLinks")


class DeviceNicknameChanged(_Message):
    action: Literal["deviceNicknameChanged"] = "deviceNicknameChanged"
    device_nickname: str = Field(..., alias="deviceNickname", min_length=1)


class SharePush(_Message):
    """Push something from the desktop through the background's session."""
    action: Literal["share"] = "share"
    target: Literal["link", "page", "selection", "image"]
    url: Optional[str] = None
    text: Optional[str] = None  # selected text, for target "selection"
    page_title: Optional[str] = Field(None, alias="pageTitle")


RequestMessage = Annotated[
    Union[GetSessionData, ApiKeyChanged, AutoOpenLinksChanged, DeviceNicknameChanged, SharePush],
    Field(discriminator="action"),
]


class BackgroundRequest(RootModel[RequestMessage]):
    """Any request a popup can send; the message itself is ``.root``."""


class MessageAck(BaseModel):
    """Response to requests that carry no data back."""
    ok: bool = True


# Notifications

class PushesUpdated(_Message):
    action: Literal["pushesUpdated"] = "pushesUpdated"
    pushes: List[Push] = []


class SessionDataUpdated(SessionSnapshot):
    action: Literal["sessionDataUpdated"] = "sessionDataUpdated"


PopupNotification = Annotated[
    Union[PushesUpdated, SessionDataUpdated],
    Field(discriminator="action"),
]

_notification_adapter = TypeAdapter(PopupNotification)


def parse_notification(data: dict) -> Union[PushesUpdated, SessionDataUpdated]:
    """Parse a notification received from the background service."""
    return _notification_adapter.validate_python(data)
