"""Background session manager - the authoritative session cache.

One instance lives in the background service for its whole lifetime. It owns
the credential, the device identity, the cached profile/devices/pushes, the
single authoritative stream connection, and all side effects of incoming
pushes (desktop notifications and auto-opened links).
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from pydantic import ValidationError

from ..config import settings
from ..errors import AuthError, FetchError, PushlinkError, RegistrationError
from ..models.settings import API_KEY, AUTO_OPEN_LINKS, DEFAULT_SETTINGS, DEVICE_IDEN, DEVICE_NICKNAME
from ..schemas import (
    Device,
    Push,
    PushCreate,
    PushesUpdated,
    SessionDataUpdated,
    SessionSnapshot,
    UserProfile,
    unauthenticated,
    validation_message,
)
from .api_client import PushApiClient
from .notifier import NotificationService, TabOpener
from .store import Changes, ConfigStore
from .stream_manager import LIST_CHANGED, PUSH_DELIVERED, StreamEvent, StreamManager, StreamState
from .websocket_manager import ConnectionManager

logger = logging.getLogger(__name__)

# Things that can be pushed from the desktop
SHARE_LINK = "link"
SHARE_PAGE = "page"
SHARE_SELECTION = "selection"
SHARE_IMAGE = "image"

LOGIN_REQUIRED_MESSAGE = "Please set your access token with 'pushlink login'"


@dataclass
class SessionCache:
    """Most recent view of the account, plus the settings the popup shows."""
    user_info: Optional[UserProfile] = None
    devices: List[Device] = field(default_factory=list)
    recent_pushes: List[Push] = field(default_factory=list)
    is_authenticated: bool = False
    last_updated: int = 0  # epoch milliseconds, 0 = never refreshed
    auto_open_links: bool = DEFAULT_SETTINGS[AUTO_OPEN_LINKS]
    device_nickname: str = DEFAULT_SETTINGS[DEVICE_NICKNAME]

    def is_stale(self, now_ms: int, max_age_ms: int) -> bool:
        return now_ms - self.last_updated > max_age_ms

    def snapshot(self, cls=SessionSnapshot):
        return cls(
            is_authenticated=self.is_authenticated,
            user_info=self.user_info,
            devices=list(self.devices),
            recent_pushes=list(self.recent_pushes),
            auto_open_links=self.auto_open_links,
            device_nickname=self.device_nickname,
        )


class SessionManager:
    """Maintains the session cache and serves it to popups."""

    def __init__(
        self,
        store: ConfigStore,
        notifier: NotificationService,
        tabs: TabOpener,
        broadcaster: ConnectionManager,
        api_factory: Callable[[str], PushApiClient] = PushApiClient,
        stream_factory: Optional[Callable[..., StreamManager]] = None,
        clock: Callable[[], float] = time.time,
        max_age_ms: Optional[int] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.tabs = tabs
        self.broadcaster = broadcaster
        self._api_factory = api_factory
        self._clock = clock
        self.max_age_ms = max_age_ms if max_age_ms is not None else settings.cache_max_age_ms

        self.api_key: Optional[str] = None
        self.device_iden: Optional[str] = None
        self.cache = SessionCache()

        # In-flight refresh and the credential it was started with
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_key: Optional[str] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

        stream_factory = stream_factory or StreamManager
        self.stream = stream_factory(lambda: self.api_key, self.handle_stream_event, name="background")

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _touch(self):
        """Mark the cache as freshly updated; never moves backwards."""
        self.cache.last_updated = max(self.cache.last_updated, self._now_ms())

    def _api(self) -> PushApiClient:
        if not self.api_key:
            raise AuthError("No access token configured")
        return self._api_factory(self.api_key)

    def _is_current(self, api_key: str, cache: SessionCache) -> bool:
        """False once the credential changed or the cache was reset."""
        return self.api_key == api_key and self.cache is cache

    async def initialize(self):
        """Load configuration and, if logged in, build the session."""
        logger.info("Initializing session cache")

        values = await self.store.get([API_KEY, DEVICE_IDEN, AUTO_OPEN_LINKS, DEVICE_NICKNAME])
        self.api_key = values.get(API_KEY)
        self.device_iden = values.get(DEVICE_IDEN)
        self.cache.auto_open_links = bool(values[AUTO_OPEN_LINKS])
        self.cache.device_nickname = values[DEVICE_NICKNAME] or DEFAULT_SETTINGS[DEVICE_NICKNAME]

        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self._on_store_changed)

        if not self.api_key:
            logger.info("No access token configured, waiting for login")
            return

        try:
            await self._start_session()
        except PushlinkError as e:
            logger.error(f"Error initializing session cache: {e}")
            self.cache.is_authenticated = False
            return

        logger.info(
            f"Session cache initialized (auto-open links: {self.cache.auto_open_links}, "
            f"device nickname: {self.cache.device_nickname})"
        )

    def teardown(self):
        """Stop streaming and detach from configuration changes."""
        self.stream.close()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def get_snapshot(self, max_age_ms: Optional[int] = None) -> SessionSnapshot:
        """Return the cached session, refreshing it first when stale.

        Failures are reported as an unauthenticated snapshot.
        """
        max_age_ms = self.max_age_ms if max_age_ms is None else max_age_ms

        if self.cache.is_authenticated and not self.cache.is_stale(self._now_ms(), max_age_ms):
            logger.debug("Returning cached session data")
            return self.cache.snapshot()

        if not self.api_key:
            return unauthenticated()

        logger.info("Session cache is stale, refreshing")
        try:
            return await self.refresh()
        except PushlinkError as e:
            logger.error(f"Error refreshing session cache: {e}")
            return unauthenticated()

    async def refresh(self) -> SessionSnapshot:
        """Re-fetch profile, devices and pushes, registering this device if needed.

        Concurrent callers with the same credential share one in-flight
        refresh. Raises AuthError, FetchError or RegistrationError on failure.
        """
        task = self._refresh_task
        if task is None or task.done() or self._refresh_key != self.api_key:
            self._refresh_key = self.api_key
            task = self._refresh_task = asyncio.create_task(self._do_refresh(self.api_key))
        return await asyncio.shield(task)

    async def _do_refresh(self, api_key: Optional[str]) -> SessionSnapshot:
        if not api_key:
            raise AuthError("No access token configured")

        logger.info("Refreshing session cache")
        cache = self.cache
        api = self._api_factory(api_key)
        try:
            user_info = await api.fetch_profile()
            devices = await api.fetch_active_devices()
            pushes = await api.fetch_recent_pushes()
            if self._is_current(api_key, cache) and self.device_iden is None:
                await self._register_device(api, api_key, cache.device_nickname)
        except (AuthError, RegistrationError):
            if self._is_current(api_key, cache):
                cache.is_authenticated = False
            raise
        except FetchError:
            # Keep the last good data; without any, report logged out
            if self._is_current(api_key, cache) and not cache.last_updated:
                cache.is_authenticated = False
            raise

        if not self._is_current(api_key, cache):
            logger.info("Access token changed during refresh, discarding results")
            raise AuthError("Access token changed during refresh")

        cache.user_info = user_info
        cache.devices = devices
        cache.recent_pushes = self._carry_notified(pushes)
        cache.is_authenticated = True
        self._touch()

        if self.stream.state in (StreamState.DISCONNECTED, StreamState.CLOSED):
            self.stream.connect()

        return cache.snapshot()

    async def _register_device(self, api: PushApiClient, api_key: str, nickname: str):
        """Register this installation as a device of the account."""
        try:
            identity = await api.register_device(nickname)
        except RegistrationError as e:
            logger.error(f"Error registering device: {e}")
            if self.api_key == api_key:
                # Start clean on the next attempt
                self.device_iden = None
                await self.store.remove([DEVICE_IDEN])
            raise

        if self.api_key != api_key:
            raise AuthError("Access token changed during device registration")
        self.device_iden = identity.id
        await self.store.set({DEVICE_IDEN: identity.id})

    async def _start_session(self):
        """Refresh the session; a device registered earlier gets its nickname re-sent."""
        registered = self.device_iden is not None
        await self.refresh()
        if registered and self.device_iden:
            logger.info(f"Device already registered with iden: {self.device_iden}")
            await self._api().rename_device(self.device_iden, self.cache.device_nickname)

    async def on_credential_changed(self, api_key: Optional[str], device_nickname: Optional[str] = None) -> SessionSnapshot:
        """React to login or logout."""
        if device_nickname:
            self.cache.device_nickname = device_nickname
            await self.store.set({DEVICE_NICKNAME: device_nickname})

        if not api_key:
            logger.info("Access token removed, clearing session")
            self.stream.close()
            self.api_key = None
            self.device_iden = None
            self._refresh_task = None
            self._refresh_key = None
            self.cache = SessionCache(
                auto_open_links=self.cache.auto_open_links,
                device_nickname=self.cache.device_nickname,
            )
            return unauthenticated()

        if api_key != self.api_key:
            # The open stream (if any) is keyed by the old token
            self.stream.close()
            self.api_key = api_key
            self.device_iden = await self.store.get_value(DEVICE_IDEN)

        try:
            await self._start_session()
        except PushlinkError as e:
            logger.error(f"Error refreshing session cache after access token change: {e}")
            return unauthenticated()

        snapshot = self.cache.snapshot()
        await self.broadcaster.broadcast(self.cache.snapshot(SessionDataUpdated))
        return snapshot

    async def on_setting_changed(self, key: str, value: Any):
        """Update a user setting in the cache and persist it."""
        if key == AUTO_OPEN_LINKS:
            self.cache.auto_open_links = bool(value)
            await self.store.set({AUTO_OPEN_LINKS: self.cache.auto_open_links})
            logger.info(f"Auto-open links setting updated: {self.cache.auto_open_links}")
        elif key == DEVICE_NICKNAME:
            self.cache.device_nickname = value
            await self.store.set({DEVICE_NICKNAME: value})
            logger.info(f"Device nickname updated: {value}")
            await self._sync_device_nickname()
        else:
            raise ValueError(f"Unknown setting: {key}")

    async def _sync_device_nickname(self):
        """Push the local nickname to the service and refresh the device list."""
        if not self.device_iden or not self.api_key:
            logger.info("Cannot update device nickname: missing device iden or access token")
            return

        api = self._api()
        if not await api.rename_device(self.device_iden, self.cache.device_nickname):
            return

        try:
            self.cache.devices = await api.fetch_active_devices()
        except FetchError as e:
            logger.error(f"Error refreshing devices after rename: {e}")
            return
        self._touch()
        await self.broadcaster.broadcast(self.cache.snapshot(SessionDataUpdated))

    async def _on_store_changed(self, changes: Changes):
        """Mirror configuration changes into memory."""
        if API_KEY in changes:
            new_key = changes[API_KEY][1]
            if new_key != self.api_key:
                await self.on_credential_changed(new_key)
        if AUTO_OPEN_LINKS in changes:
            new_value = changes[AUTO_OPEN_LINKS][1]
            self.cache.auto_open_links = DEFAULT_SETTINGS[AUTO_OPEN_LINKS] if new_value is None else bool(new_value)
        if DEVICE_NICKNAME in changes:
            self.cache.device_nickname = changes[DEVICE_NICKNAME][1] or DEFAULT_SETTINGS[DEVICE_NICKNAME]
        if DEVICE_IDEN in changes:
            self.device_iden = changes[DEVICE_IDEN][1]

    async def share(
        self,
        target: str,
        url: Optional[str] = None,
        text: Optional[str] = None,
        page_title: Optional[str] = None,
    ) -> Optional[Push]:
        """Push a link, a page, a text selection or an image from this device."""
        if target == SHARE_SELECTION:
            title = f"Selection from {page_title}" if page_title else None
            return await self.push_note(title, text)
        if target == SHARE_IMAGE:
            return await self.push_link(url, f"Image from {page_title}" if page_title else None)
        if target in (SHARE_LINK, SHARE_PAGE):
            return await self.push_link(url, page_title)
        raise ValueError(f"Unknown share target: {target}")

    async def push_link(self, url: Optional[str], title: Optional[str] = None) -> Optional[Push]:
        """Send a link; a confirmation or error notification reports the outcome."""
        return await self._send("link", title=title, url=url)

    async def push_note(self, title: Optional[str], body: Optional[str]) -> Optional[Push]:
        """Send a note; a confirmation or error notification reports the outcome."""
        return await self._send("note", title=title, body=body)

    async def _send(self, push_type: str, **fields) -> Optional[Push]:
        if not self.api_key:
            await self.notifier.show_status(LOGIN_REQUIRED_MESSAGE)
            return None

        try:
            payload = PushCreate(type=push_type, **fields)
            push = await self._api().send_push(payload, self.device_iden)
        except ValidationError as e:
            await self.notifier.show_status(f"Error pushing {push_type}: {validation_message(e)}")
            return None
        except PushlinkError as e:
            logger.error(f"Error pushing {push_type}: {e}")
            await self.notifier.show_status(f"Error pushing {push_type}: {e}")
            return None

        await self.notifier.show_status(f"{push_type.capitalize()} pushed successfully!")
        await self._refresh_pushes()
        return push

    async def _refresh_pushes(self) -> bool:
        """Re-fetch recent pushes into the cache and tell open popups."""
        api_key = self.api_key
        try:
            pushes = await self._api().fetch_recent_pushes()
        except PushlinkError as e:
            logger.error(f"Error refreshing pushes: {e}")
            return False

        if self.api_key != api_key:
            return False
        self.cache.recent_pushes = self._carry_notified(pushes)
        self._touch()
        await self.broadcaster.broadcast(PushesUpdated(pushes=self.cache.recent_pushes))
        return True

    async def handle_stream_event(self, event: StreamEvent):
        """Apply a stream event to the cache and raise its side effects."""
        if event.kind == LIST_CHANGED:
            logger.info("Push tickle received, fetching latest pushes")
            if await self._refresh_pushes() and self.cache.recent_pushes:
                await self._deliver(self.cache.recent_pushes[0])

        elif event.kind == PUSH_DELIVERED and event.push is not None:
            push = event.push
            logger.info(f"Push received directly: {push.id}")
            if push.is_displayable:
                recent = [push] + [p for p in self.cache.recent_pushes if p.id != push.id]
                self.cache.recent_pushes = recent[:settings.recent_push_limit]
                self._touch()
                await self.broadcaster.broadcast(PushesUpdated(pushes=self.cache.recent_pushes))
            await self._deliver(push)

    def _carry_notified(self, pushes: List[Push]) -> List[Push]:
        """Keep the already-notified marker on pushes we have seen before."""
        notified = {push.id for push in self.cache.recent_pushes if push.notified}
        for push in pushes:
            if push.id in notified:
                push.notified = True
        return pushes

    def is_own_push(self, push: Push) -> bool:
        return push.source_device_id is not None and push.source_device_id == self.device_iden

    async def _deliver(self, push: Push):
        """Notify about a push and auto-open it, unless it came from this device."""
        if push.notified:
            return
        if self.is_own_push(push):
            logger.info("Skipping notification for push from this device")
            return

        push.notified = True
        await self.notifier.show_push(push)

        if self.cache.auto_open_links and push.type == "link" and push.url:
            logger.info(f"Auto-opening link: {push.url}")
            try:
                await self.tabs.open(push.url)
            except Exception as e:
                logger.error(f"Error opening link: {e}")
