"""Database setup for the local configuration store.

The store is a single SQLite file shared by the background service and any
popup process. WAL mode keeps readers unblocked while the other process writes.
"""
import logging
import os

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .config import get_database_url

logger = logging.getLogger(__name__)

# Base class for models
Base = declarative_base()


def create_engine(database_url: str | None = None) -> AsyncEngine:
    """Create an async engine for the configuration database."""
    url = database_url or get_database_url()

    if not url.startswith("sqlite"):
        return create_async_engine(url, echo=False, pool_pre_ping=True)

    # Ensure the directory for the SQLite file exists
    db_path = make_url(url).database
    if db_path and db_path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)

    engine = create_async_engine(
        url,
        echo=False,
        connect_args={"timeout": 30},  # Wait up to 30 seconds for locks
    )

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        """Configure SQLite for access from two processes."""
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    logger.debug(f"Using SQLite configuration database at {db_path}")
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory bound to the given engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine):
    """Create tables if they do not exist yet."""
    # Import models so they register with Base.metadata
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
