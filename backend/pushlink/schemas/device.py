"""Device and account schemas."""
from typing import Optional
from pydantic import BaseModel, Field


class Device(BaseModel):
    """A device registered on the account."""
    id: str = Field(..., alias="iden")
    nickname: Optional[str] = None
    model: Optional[str] = None
    is_active: bool = Field(True, alias="active")

    class Config:
        populate_by_name = True
        extra = "ignore"

    @property
    def label(self) -> str:
        return self.nickname or self.model or "Unknown Device"


class DeviceIdentity(BaseModel):
    """This installation as a device of the service."""
    id: str
    nickname: str


class DeviceRegister(BaseModel):
    """Body for registering this installation as a device."""
    nickname: str = "Chrome"
    model: str = "Chrome"
    manufacturer: str = "Google"
    push_token: str = ""
    app_version: int = 8623
    icon: str = "browser"
    has_sms: bool = False
    type: str = "chrome"


class UserProfile(BaseModel):
    """Snapshot of the remote account."""
    name: Optional[str] = None
    email: Optional[str] = None
    image_url: Optional[str] = None

    class Config:
        extra = "ignore"

    @property
    def display_name(self) -> str:
        return self.name or self.email or ""
