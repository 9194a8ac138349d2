"""Application configuration from environment variables."""
import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from PUSHLINK_* environment variables."""

    # Remote push service endpoints
    api_base_url: str = "https://api.pushbullet.com/v2"
    stream_url: str = "wss://stream.pushbullet.com/websocket/"

    # Directory for the local configuration database
    data_path: str = "~/.pushlink"

    # Database URL (optional - overrides the SQLite file in data_path)
    database_url: str | None = None

    # Background service address (popup connects here)
    background_host: str = "127.0.0.1"
    background_port: int = 18735

    # Session cache staleness bound in milliseconds
    cache_max_age_ms: int = 30000

    # Number of pushes requested from the service
    recent_push_limit: int = 20

    # Timeout for REST calls in seconds
    request_timeout: float = 30

    log_level: str = "INFO"

    # Command used by the desktop notification backend
    notify_command: str = "notify-send"

    class Config:
        env_prefix = "PUSHLINK_"
        case_sensitive = False


settings = Settings()


def get_database_url() -> str:
    """Get the database URL.

    Priority:
    1. PUSHLINK_DATABASE_URL environment variable
    2. Default SQLite file in PUSHLINK_DATA_PATH
    """
    if settings.database_url:
        return settings.database_url

    db_path = os.path.join(os.path.expanduser(settings.data_path), "pushlink.db")
    return f"sqlite+aiosqlite:///{db_path}"


def get_background_url() -> str:
    """Base URL of the background service."""
    return f"http://{settings.background_host}:{settings.background_port}"
