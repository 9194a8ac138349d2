"""Setting model - key-value store for local configuration."""
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime

from ..database import Base

# Configuration keys shared by the background service and the popup
API_KEY = "apiKey"
DEVICE_IDEN = "deviceIden"
AUTO_OPEN_LINKS = "autoOpenLinks"
DEVICE_NICKNAME = "deviceNickname"
SCROLL_TO_RECENT_PUSHES = "scrollToRecentPushes"

# Prefix of ephemeral keys holding the push behind a desktop notification
NOTIFICATION_KEY_PREFIX = "push_"


class Setting(Base):
    """Configuration value stored as JSON text under a key."""

    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Default settings
DEFAULT_SETTINGS = {
    AUTO_OPEN_LINKS: True,
    DEVICE_NICKNAME: "Chrome",
}
