"""Persistent key-value configuration store.

Values are JSON-encoded into the ``settings`` table. Listeners registered with
``subscribe`` receive ``{key: (old_value, new_value)}`` after every write made
through this store; a removed key reports ``None`` as its new value.
"""
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine

from ..database import create_engine, create_session_factory, init_db
from ..models import Setting
from ..models.settings import DEFAULT_SETTINGS

logger = logging.getLogger(__name__)

Changes = Dict[str, Tuple[Any, Any]]
ChangeListener = Callable[[Changes], Awaitable[None]]


class ConfigStore:
    """Async key-value store shared by the background service and the popup."""

    def __init__(self, engine: Optional[AsyncEngine] = None):
        self._engine = engine or create_engine()
        self._session_factory = create_session_factory(self._engine)
        self._listeners: list[ChangeListener] = []

    @classmethod
    async def open(cls, database_url: Optional[str] = None) -> "ConfigStore":
        """Create the store and make sure its table exists."""
        store = cls(create_engine(database_url))
        await init_db(store._engine)
        return store

    async def close(self):
        """Close database connections."""
        await self._engine.dispose()

    async def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Get the values stored under ``keys``.

        Keys with a default (see DEFAULT_SETTINGS) always appear in the result;
        other missing keys are left out.
        """
        keys = list(keys)
        result = {key: DEFAULT_SETTINGS[key] for key in keys if key in DEFAULT_SETTINGS}

        async with self._session_factory() as session:
            rows = await session.execute(select(Setting).where(Setting.key.in_(keys)))
            for setting in rows.scalars().all():
                try:
                    result[setting.key] = json.loads(setting.value)
                except json.JSONDecodeError:
                    logger.warning(f"Ignoring unreadable value for setting {setting.key}")

        return result

    async def get_value(self, key: str, default: Any = None) -> Any:
        """Get a single value."""
        values = await self.get([key])
        return values.get(key, default)

    async def set(self, values: Dict[str, Any]):
        """Store values, replacing existing ones."""
        if not values:
            return

        async with self._session_factory() as session:
            rows = await session.execute(select(Setting).where(Setting.key.in_(list(values))))
            existing = {setting.key: setting for setting in rows.scalars().all()}

            changes: Changes = {}
            for key, value in values.items():
                encoded = json.dumps(value)
                setting = existing.get(key)
                if setting is None:
                    session.add(Setting(key=key, value=encoded))
                    changes[key] = (DEFAULT_SETTINGS.get(key), value)
                elif setting.value != encoded:
                    changes[key] = (json.loads(setting.value), value)
                    setting.value = encoded

            await session.commit()

        await self._emit(changes)

    async def remove(self, keys: Iterable[str]):
        """Delete stored values."""
        keys = list(keys)
        if not keys:
            return

        old = await self.get(keys)
        async with self._session_factory() as session:
            await session.execute(delete(Setting).where(Setting.key.in_(keys)))
            await session.commit()

        await self._emit({key: (old[key], None) for key in keys if key in old})

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener. Returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _emit(self, changes: Changes):
        """Deliver changes to listeners; a failing listener does not stop the others."""
        if not changes:
            return
        for listener in list(self._listeners):
            try:
                await listener(changes)
            except Exception as e:
                logger.error(f"Configuration change listener failed: {e}")
