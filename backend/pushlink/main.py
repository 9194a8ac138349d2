"""Background service: owns the session cache and serves popups."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from . import __version__
from .config import settings
from .routers import messages_router, notifications_router
from .services.notifier import NotificationService, NotifySendBackend, TabOpener
from .services.session_manager import SessionManager
from .services.store import ConfigStore
from .services.websocket_manager import ConnectionManager

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - build the session on startup, tear it down on shutdown."""
    if getattr(app.state, "session_manager", None) is not None:
        # Components were supplied by the caller
        yield
        return

    logger.info("Starting Pushlink background service")

    store = await ConfigStore.open()
    connections = app.state.connection_manager
    tabs = TabOpener()
    notifier = NotificationService(store, NotifySendBackend(), tabs)
    manager = SessionManager(store, notifier, tabs, connections)

    app.state.store = store
    app.state.notifier = notifier
    app.state.session_manager = manager

    await manager.initialize()

    yield

    manager.teardown()
    app.state.session_manager = None
    await store.close()
    logger.info("Shutdown complete")


def create_app(
    session_manager: Optional[SessionManager] = None,
    notifier: Optional[NotificationService] = None,
    connection_manager: Optional[ConnectionManager] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    When ``session_manager`` is given the lifespan does not build its own
    components; this is how tests and embedders wire the app.
    """
    app = FastAPI(
        title="Pushlink",
        description="Background session service for the Pushlink popup",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.session_manager = session_manager
    app.state.notifier = notifier
    app.state.connection_manager = connection_manager or ConnectionManager()

    app.include_router(messages_router)
    app.include_router(notifications_router)

    @app.get("/health")
    async def health_check():
        manager = app.state.session_manager
        return {
            "status": "healthy",
            "authenticated": bool(manager and manager.cache.is_authenticated),
            "stream": manager.stream.state.value if manager else None,
        }

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.background_host, port=settings.background_port)
