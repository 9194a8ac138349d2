"""Pydantic schemas for service payloads and popup messages."""
from .push import Push, PushCreate, filter_displayable, validation_message
from .device import Device, DeviceIdentity, DeviceRegister, UserProfile
from .session import SessionSnapshot, unauthenticated
from .messages import (
    GetSessionData,
    ApiKeyChanged,
    AutoOpenLinksChanged,
    DeviceNicknameChanged,
    SharePush,
    BackgroundRequest,
    MessageAck,
    PushesUpdated,
    SessionDataUpdated,
    parse_notification,
)

__all__ = [
    "Push",
    "PushCreate",
    "filter_displayable",
    "validation_message",
    "Device",
    "DeviceIdentity",
    "DeviceRegister",
    "UserProfile",
    "SessionSnapshot",
    "unauthenticated",
    "GetSessionData",
    "ApiKeyChanged",
    "AutoOpenLinksChanged",
    "DeviceNicknameChanged",
    "SharePush",
    "BackgroundRequest",
    "MessageAck",
    "PushesUpdated",
    "SessionDataUpdated",
    "parse_notification",
]
