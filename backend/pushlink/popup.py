"""Popup view controller.

A controller is created every time the popup opens. It has no durable state:
it paints from the background's cached snapshot, keeps itself live with its
own stream connection while open, and is the only component that takes user
input. It never raises desktop notifications or opens tabs.
"""
import logging
import time
from typing import Callable, List, Optional, Protocol

import httpx
from pydantic import ValidationError

from .errors import AuthError, PushlinkError
from .models.settings import API_KEY, AUTO_OPEN_LINKS, DEFAULT_SETTINGS, DEVICE_IDEN, DEVICE_NICKNAME, SCROLL_TO_RECENT_PUSHES
from .schemas import (
    ApiKeyChanged,
    AutoOpenLinksChanged,
    Device,
    DeviceNicknameChanged,
    Push,
    PushCreate,
    PushesUpdated,
    SessionDataUpdated,
    SessionSnapshot,
    unauthenticated,
    validation_message,
)
from .services.api_client import PushApiClient
from .services.messaging import BackgroundClient
from .services.store import ConfigStore
from .services.stream_manager import StreamEvent, StreamManager

logger = logging.getLogger(__name__)

SECTION_LOADING = "loading"
SECTION_LOGIN = "login"
SECTION_MAIN = "main"

# The popup only shows this many pushes
DISPLAY_LIMIT = 10


def pushes_to_display(pushes: List[Push], limit: int = DISPLAY_LIMIT) -> List[Push]:
    """The newest pushes worth showing, empty ones skipped."""
    return [push for push in pushes[:limit] if push.has_content]


def format_timestamp(created: float, now: Optional[float] = None) -> str:
    """Relative age of a push ("just now", "5m ago", "3h ago", "2d ago")."""
    now = time.time() if now is None else now
    seconds = int(now - created)
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        return f"{days}d ago"
    if hours > 0:
        return f"{hours}h ago"
    if minutes > 0:
        return f"{minutes}m ago"
    return "just now"


class PopupView(Protocol):
    """Rendering surface of the popup."""

    def show_section(self, section: str) -> None: ...

    def render_session(self, snapshot: SessionSnapshot) -> None: ...

    def render_pushes(self, pushes: List[Push]) -> None: ...

    def show_status(self, message: str, kind: str) -> None: ...

    def scroll_to_recent_pushes(self) -> None: ...


class PopupController:
    """Drives the popup view."""

    def __init__(
        self,
        view: PopupView,
        background: BackgroundClient,
        store: ConfigStore,
        api_factory: Callable[[str], PushApiClient] = PushApiClient,
        stream_factory: Optional[Callable[..., StreamManager]] = None,
    ):
        self.view = view
        self.background = background
        self.store = store
        self._api_factory = api_factory

        self.api_key: Optional[str] = None
        self.devices: List[Device] = []
        self.auto_open_links: bool = DEFAULT_SETTINGS[AUTO_OPEN_LINKS]
        self.device_nickname: str = DEFAULT_SETTINGS[DEVICE_NICKNAME]
        self.initialized = False

        stream_factory = stream_factory or StreamManager
        self.stream = stream_factory(
            lambda: self.api_key if self.initialized else None,
            self._on_stream_event,
            name="popup",
        )

    def _api(self) -> PushApiClient:
        if not self.api_key:
            raise AuthError("No access token configured")
        return self._api_factory(self.api_key)

    async def activate(self):
        """Paint the popup, from the background's cache when possible."""
        try:
            snapshot = await self.background.get_session_data()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Background service not reachable: {e}")
            snapshot = unauthenticated()

        values = await self.store.get([API_KEY, AUTO_OPEN_LINKS, DEVICE_NICKNAME, SCROLL_TO_RECENT_PUSHES])

        if snapshot.is_authenticated:
            if not values.get(API_KEY):
                self.view.show_section(SECTION_LOGIN)
                return
            logger.info("Received session data from background")
            self.api_key = values[API_KEY]
            self._setup_with_snapshot(snapshot)
        else:
            logger.info("No session data available, checking storage")
            if not await self._initialize_from_storage(values):
                return

        if values.get(SCROLL_TO_RECENT_PUSHES):
            await self.store.remove([SCROLL_TO_RECENT_PUSHES])
            self.view.scroll_to_recent_pushes()

    async def _initialize_from_storage(self, values: dict) -> bool:
        """Fallback when the background has no session: talk to the service directly."""
        self.view.show_section(SECTION_LOADING)

        if not values.get(API_KEY):
            self.view.show_section(SECTION_LOGIN)
            return False

        self.api_key = values[API_KEY]
        self.auto_open_links = bool(values[AUTO_OPEN_LINKS])
        self.device_nickname = values[DEVICE_NICKNAME] or DEFAULT_SETTINGS[DEVICE_NICKNAME]

        try:
            await self._initialize_authenticated()
        except PushlinkError as e:
            logger.error(f"Error initializing: {e}")
            self.view.show_section(SECTION_LOGIN)
            return False
        return True

    async def _initialize_authenticated(self):
        """Fetch the session from the service and show it."""
        api = self._api()
        user_info = await api.fetch_profile()
        devices = await api.fetch_active_devices()
        pushes = await api.fetch_recent_pushes()

        self._setup_with_snapshot(SessionSnapshot(
            is_authenticated=True,
            user_info=user_info,
            devices=devices,
            recent_pushes=pushes,
            auto_open_links=self.auto_open_links,
            device_nickname=self.device_nickname,
        ))

    def _setup_with_snapshot(self, snapshot: SessionSnapshot):
        """Show the main section and go live."""
        self._render(snapshot)
        self.view.show_section(SECTION_MAIN)
        self.initialized = True
        self.stream.connect()

    def _render(self, snapshot: SessionSnapshot):
        self.devices = snapshot.devices
        self.auto_open_links = snapshot.auto_open_links
        self.device_nickname = snapshot.device_nickname
        self.view.render_session(snapshot)
        self.view.render_pushes(pushes_to_display(snapshot.recent_pushes))

    def deactivate(self):
        """The popup is closing."""
        self.stream.close()

    async def handle_message(self, message):
        """Apply a notification sent by the background service."""
        if isinstance(message, PushesUpdated):
            logger.info("Received updated pushes from background")
            self.view.render_pushes(pushes_to_display(message.pushes))
        elif isinstance(message, SessionDataUpdated) and message.is_authenticated:
            logger.info("Received updated session data from background")
            self._render(message)

    async def _on_stream_event(self, event: StreamEvent):
        """Keep the popup's own view current. Notifications are the background's job."""
        logger.info(f"Stream event in popup: {event.kind}, fetching latest pushes")
        await self._reload_pushes()

    async def _reload_pushes(self):
        try:
            pushes = await self._api().fetch_recent_pushes()
        except PushlinkError as e:
            logger.error(f"Error fetching pushes: {e}")
            return
        self.view.render_pushes(pushes_to_display(pushes))

    async def submit_credential(self, api_key: str, device_nickname: str = "") -> bool:
        """Log in with an access token. The token is stored only once the service accepts it."""
        api_key = (api_key or "").strip()
        device_nickname = (device_nickname or "").strip() or DEFAULT_SETTINGS[DEVICE_NICKNAME]

        if not api_key:
            self.view.show_status("Please enter an Access Token.", "error")
            return False

        self.view.show_section(SECTION_LOADING)

        try:
            await self._api_factory(api_key).fetch_profile()
        except AuthError as e:
            logger.warning(f"Access token rejected: {e}")
            self.view.show_status("Error: Invalid Access Token", "error")
            self.view.show_section(SECTION_LOGIN)
            return False

        await self.store.set({API_KEY: api_key, DEVICE_NICKNAME: device_nickname})
        self.api_key = api_key
        self.device_nickname = device_nickname

        await self.background.notify(ApiKeyChanged(api_key=api_key, device_nickname=device_nickname))

        try:
            await self._initialize_authenticated()
        except PushlinkError as e:
            self.view.show_status(f"Error: {e}", "error")
            self.view.show_section(SECTION_LOGIN)
            return False
        return True

    async def send_push(
        self,
        push_type: str,
        title: str = "",
        body: str = "",
        url: str = "",
        target_device: Optional[str] = None,
    ) -> bool:
        """Send a note or link from this device."""
        try:
            payload = PushCreate(
                type=push_type,
                title=title.strip() or None,
                body=body.strip() or None,
                url=url.strip() or None,
                device_iden=None if target_device in (None, "", "all") else target_device,
            )
        except ValidationError as e:
            self.view.show_status(validation_message(e), "error")
            return False

        source_device_id = await self.store.get_value(DEVICE_IDEN)
        try:
            await self._api().send_push(payload, source_device_id)
        except PushlinkError as e:
            self.view.show_status(f"Error: {e}", "error")
            return False

        self.view.show_status("Push sent successfully!", "success")
        await self._reload_pushes()
        return True

    async def update_nickname(self, device_nickname: str) -> bool:
        """Rename this device."""
        device_nickname = (device_nickname or "").strip()
        if not device_nickname:
            self.view.show_status("Please enter a device nickname.", "error")
            return False

        await self.store.set({DEVICE_NICKNAME: device_nickname})
        self.device_nickname = device_nickname
        await self.background.notify(DeviceNicknameChanged(device_nickname=device_nickname))
        self.view.show_status("Device nickname updated successfully!", "success")
        return True

    async def set_auto_open_links(self, enabled: bool):
        """Turn automatic opening of received links on or off."""
        self.auto_open_links = enabled
        await self.store.set({AUTO_OPEN_LINKS: enabled})
        await self.background.notify(AutoOpenLinksChanged(auto_open_links=enabled))

    async def logout(self):
        """Forget the token and this device's registration."""
        self.stream.close()
        await self.store.remove([API_KEY, DEVICE_IDEN])
        self.api_key = None
        self.initialized = False
        await self.background.notify(ApiKeyChanged(api_key=None))
        self.view.show_section(SECTION_LOGIN)
