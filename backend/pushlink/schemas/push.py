"""Push schemas - messages exchanged through the service."""
from typing import Optional, Literal
from pydantic import BaseModel, Field, ValidationError, model_validator

PUSH_TYPES = ("note", "link", "file")


class Push(BaseModel):
    """A push as returned by the service.

    Field names follow Python conventions; the aliases are the service's JSON
    keys, so instances are built with ``Push.model_validate(data)``.
    """
    id: str = Field(..., alias="iden")
    type: str = "note"  # note, link, file (other types are kept but never notified)
    title: Optional[str] = None
    body: Optional[str] = None
    url: Optional[str] = None
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    created_at: Optional[float] = Field(None, alias="created")
    source_device_id: Optional[str] = Field(None, alias="source_device_iden")
    dismissed: bool = False

    # Local marker, never sent by the service
    notified: bool = Field(False, exclude=True)

    class Config:
        populate_by_name = True
        extra = "ignore"

    @property
    def has_content(self) -> bool:
        return bool(self.title or self.body or self.url)

    @property
    def is_displayable(self) -> bool:
        """True if the push has something to show and was not dismissed."""
        return self.has_content and not self.dismissed


def filter_displayable(pushes: list[Push]) -> list[Push]:
    """Drop pushes with no title, body or url, and dismissed ones."""
    return [push for push in pushes if push.is_displayable]


class PushCreate(BaseModel):
    """Payload for creating a note or link push."""
    type: Literal["note", "link"]
    title: Optional[str] = None
    body: Optional[str] = None
    url: Optional[str] = None
    device_iden: Optional[str] = None  # Target device, None for all devices

    @model_validator(mode="after")
    def check_content(self):
        if self.type == "note" and not (self.title or self.body):
            raise ValueError("Please enter a title or body for the note.")
        if self.type == "link" and not self.url:
            raise ValueError("Please enter a URL for the link.")
        return self

    def to_request(self, source_device_id: Optional[str]) -> dict:
        """Build the JSON body for POST /pushes."""
        data = {"type": self.type}
        if self.type == "note":
            data["title"] = self.title or ""
            data["body"] = self.body or ""
        else:
            data["title"] = self.title or self.url
            data["url"] = self.url
            if self.body:
                data["body"] = self.body
        if self.device_iden:
            data["device_iden"] = self.device_iden
        if source_device_id:
            data["source_device_iden"] = source_device_id
        return data


def validation_message(error: ValidationError) -> str:
    """The human-readable message of the first validation error."""
    first = error.errors()[0]
    ctx_error = first.get("ctx", {}).get("error")
    return str(ctx_error) if ctx_error else first["msg"]
