"""Desktop notifications for incoming pushes."""
import asyncio
import itertools
import logging
import webbrowser
from dataclasses import dataclass
from typing import Optional, Protocol

from ..config import settings
from ..models.settings import NOTIFICATION_KEY_PREFIX, SCROLL_TO_RECENT_PUSHES
from ..schemas import Push
from .store import ConfigStore

logger = logging.getLogger(__name__)

APP_TITLE = "Pushbullet"


@dataclass
class DesktopNotification:
    """Content of a desktop notification."""
    title: str
    message: str
    require_interaction: bool = False


def notification_id(push: Push) -> str:
    return f"{NOTIFICATION_KEY_PREFIX}{push.id}"


def build_notification(push: Push) -> Optional[DesktopNotification]:
    """Notification content for a push, or None for push types we don't show."""
    if push.type == "note":
        return DesktopNotification(push.title or "Note", push.body or "", True)
    if push.type == "link":
        message = push.url or ""
        if push.body:
            message += "\n" + push.body
        return DesktopNotification(push.title or "Link", message, True)
    if push.type == "file":
        return DesktopNotification(push.file_name or "File", push.file_type or "", True)
    return None


class NotificationBackend(Protocol):
    """Presents notifications on the desktop."""

    async def create(self, notification_id: str, notification: DesktopNotification) -> None: ...

    async def clear(self, notification_id: str) -> None: ...

    async def open_popup(self) -> None: ...


class NotifySendBackend:
    """Backend that shells out to ``notify-send`` (freedesktop notifications)."""

    def __init__(self, command: Optional[str] = None):
        self.command = command or settings.notify_command

    async def create(self, notification_id: str, notification: DesktopNotification):
        args = [self.command, "--app-name", APP_TITLE]
        if notification.require_interaction:
            args += ["--urgency", "critical"]
        args += [notification.title, notification.message]

        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise OSError(f"{self.command} exited with {proc.returncode}: {stderr.decode(errors='replace').strip()}")

    async def clear(self, notification_id: str):
        # notify-send cannot withdraw a notification once shown
        logger.debug(f"Notification {notification_id} cleared")

    async def open_popup(self):
        logger.info("Run 'pushlink popup' to see recent pushes")


class TabOpener:
    """Opens URLs in a new browser tab."""

    async def open(self, url: str):
        opened = await asyncio.to_thread(webbrowser.open_new_tab, url)
        if not opened:
            logger.warning(f"No browser available to open {url}")


class NotificationService:
    """Raises notifications for pushes and resolves clicks back to them."""

    def __init__(self, store: ConfigStore, backend: NotificationBackend, tabs: TabOpener):
        self.store = store
        self.backend = backend
        self.tabs = tabs
        self._status_ids = itertools.count(1)

    async def show_push(self, push: Push) -> Optional[str]:
        """Show a notification for a push.

        The push is stored under the notification id so a later click can find
        it. Returns the notification id, or None if nothing was shown.
        """
        notification = build_notification(push)
        if notification is None:
            logger.info(f"Unknown push type: {push.type}")
            return None

        notification_key = notification_id(push)
        try:
            await self.backend.create(notification_key, notification)
        except Exception as e:
            logger.error(f"Error creating notification: {e}")
            return None

        await self.store.set({notification_key: push.model_dump(by_alias=True)})
        logger.info(f"Notification created with ID: {notification_key}")
        return notification_key

    async def show_status(self, message: str):
        """Show a plain status notification, e.g. the outcome of a shared link."""
        try:
            await self.backend.create(f"status_{next(self._status_ids)}", DesktopNotification(APP_TITLE, message))
        except Exception as e:
            logger.error(f"Error creating notification: {e}")

    async def handle_click(self, notification_key: str) -> Optional[Push]:
        """Resolve a clicked notification back to its push.

        Opens the popup scrolled to recent pushes, and opens link pushes in a
        new tab. Returns the push, or None if it could not be found.
        """
        if not notification_key.startswith(NOTIFICATION_KEY_PREFIX):
            return None

        data = await self.store.get_value(notification_key)
        await self.store.set({SCROLL_TO_RECENT_PUSHES: True})
        await self.backend.open_popup()

        if data is None:
            logger.info(f"No push data found for notification: {notification_key}")
            return None

        push = Push.model_validate(data)
        if push.type == "link" and push.url:
            logger.info(f"Opening link in new tab: {push.url}")
            await self.tabs.open(push.url)

        await self.backend.clear(notification_key)
        await self.store.remove([notification_key])
        return push
