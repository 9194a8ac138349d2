import pytest

from pushlink.services.notifier import NotificationService
from pushlink.services.session_manager import SessionManager
from pushlink.services.store import ConfigStore

from fakes import FakeBroadcaster, FakeClock, FakeNotificationBackend, FakeService, FakeStream, FakeTabs


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'pushlink.db'}"


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_manager(db_url, service, clock):
    """Build a SessionManager wired to fakes. Must be awaited inside the test's event loop."""

    async def _make(**values):
        store = await ConfigStore.open(db_url)
        if values:
            await store.set(values)
        tabs = FakeTabs()
        notifier = NotificationService(store, FakeNotificationBackend(), tabs)
        return SessionManager(
            store,
            notifier,
            tabs,
            FakeBroadcaster(),
            api_factory=service.client,
            stream_factory=FakeStream,
            clock=clock,
        )

    return _make
