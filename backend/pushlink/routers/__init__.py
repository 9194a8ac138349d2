"""API routers."""
from .messages import router as messages_router
from .notifications import router as notifications_router

__all__ = ["messages_router", "notifications_router"]
