"""Session snapshot served to the popup."""
from typing import List, Optional
from pydantic import BaseModel, Field

from .device import Device, UserProfile
from .push import Push


class SessionSnapshot(BaseModel):
    """Copy of the background session cache.

    Serialized with camelCase keys (``by_alias=True``) on the message channel.
    """
    is_authenticated: bool = Field(False, alias="isAuthenticated")
    user_info: Optional[UserProfile] = Field(None, alias="userInfo")
    devices: List[Device] = []
    recent_pushes: List[Push] = Field([], alias="recentPushes")
    auto_open_links: bool = Field(True, alias="autoOpenLinks")
    device_nickname: str = Field("Chrome", alias="deviceNickname")

    class Config:
        populate_by_name = True


def unauthenticated() -> SessionSnapshot:
    """Result returned whenever no usable session exists."""
    return SessionSnapshot(is_authenticated=False)
