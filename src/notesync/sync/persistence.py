"""
Persistence of sync state (metadata, pending queue, settings).

Values are JSON documents under reserved keys, stored apart from the
replica's record tables so that importing or resetting user data never
touches them.
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from ..config.constants import PENDING_QUEUE_KEY, SYNC_METADATA_KEY, SYNC_SETTINGS_KEY
from ..config.settings import SyncSettings
from ..database import SQLiteConnection
from .models import PendingSyncRequest, SyncMetadata, SyncOptions

logger = logging.getLogger(__name__)

STATE_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class StateStore(ABC):
    """Key/value store for JSON-serializable sync state."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass


class MemoryStateStore(StateStore):
    """Process-local state store for ephemeral sessions and tests."""

    def __init__(self):
        self._values: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[Any]:
        raw = self._values.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._values[key] = json.dumps(value)

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)


class SQLiteStateStore(StateStore):
    """State store backed by the `sync_state` table."""

    def __init__(self, connection: SQLiteConnection):
        self.connection = connection
        self.connection.register_schema(STATE_SCHEMA)
        self._schema_ready = False

    async def _ensure_schema(self) -> None:
        if not self._schema_ready:
            await self.connection.ensure_schema(STATE_SCHEMA)
            self._schema_ready = True

    async def get(self, key: str) -> Optional[Any]:
        await self._ensure_schema()
        row = await self.connection.fetch_one("SELECT value FROM sync_state WHERE key = ?", (key,))
        return json.loads(row["value"]) if row else None

    async def set(self, key: str, value: Any) -> None:
        await self._ensure_schema()
        await self.connection.execute(
            "INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)",
            (key, json.dumps(value)),
        )

    async def delete(self, key: str) -> None:
        await self._ensure_schema()
        await self.connection.execute("DELETE FROM sync_state WHERE key = ?", (key,))


class SyncMetadataStore:
    """The single SyncMetadata record of this device."""

    def __init__(self, store: StateStore):
        self.store = store

    async def load(self) -> Optional[SyncMetadata]:
        data = await self.store.get(SYNC_METADATA_KEY)
        if not data:
            return None
        try:
            return SyncMetadata.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            logger.error(f"Discarding unreadable sync metadata: {e}")
            return None

    async def load_or_create(self) -> SyncMetadata:
        """Load the metadata, creating it with a new device id on first use."""
        metadata = await self.load()
        if metadata is None:
            metadata = SyncMetadata(device_id=uuid.uuid4().hex)
            await self.save(metadata)
            logger.info(f"Created sync metadata for device {metadata.device_id}")
        return metadata

    async def save(self, metadata: SyncMetadata) -> None:
        await self.store.set(SYNC_METADATA_KEY, metadata.to_dict())

    async def delete(self) -> None:
        await self.store.delete(SYNC_METADATA_KEY)


class PendingSyncQueue:
    """FIFO of manual sync requests made while offline."""

    def __init__(self, store: StateStore):
        self.store = store
        self._items: List[PendingSyncRequest] = []

    async def load(self) -> List[PendingSyncRequest]:
        data = await self.store.get(PENDING_QUEUE_KEY) or []
        items = []
        for raw in data:
            try:
                items.append(PendingSyncRequest.from_dict(raw))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Dropping unreadable pending sync request: {e}")
        self._items = items
        return list(items)

    def count(self) -> int:
        return len(self._items)

    async def enqueue(self, options: SyncOptions) -> PendingSyncRequest:
        request = PendingSyncRequest(options=options)
        self._items.append(request)
        await self._persist()
        logger.info(f"Queued sync request {request.id} ({len(self._items)} pending)")
        return request

    async def drain(self) -> List[PendingSyncRequest]:
        """Take every pending request and clear the queue."""
        items = list(self._items)
        self._items = []
        await self._persist()
        return items

    async def clear(self) -> None:
        self._items = []
        await self.store.delete(PENDING_QUEUE_KEY)

    async def _persist(self) -> None:
        await self.store.set(PENDING_QUEUE_KEY, [item.to_dict() for item in self._items])


SettingsListener = Callable[[SyncSettings], None]


class SyncSettingsStore:
    """Persisted SyncSettings with change notification."""

    def __init__(self, store: StateStore, defaults: Optional[SyncSettings] = None):
        self.store = store
        self.defaults = defaults or SyncSettings()
        self._current: Optional[SyncSettings] = None
        self._listeners: List[SettingsListener] = []

    @property
    def current(self) -> SyncSettings:
        return self._current or self.defaults

    async def load(self) -> SyncSettings:
        data = await self.store.get(SYNC_SETTINGS_KEY)
        merged = {**self.defaults.to_dict(), **(data or {})}
        self._current = SyncSettings.from_dict(merged)
        return self._current

    async def save(self, settings: SyncSettings) -> None:
        self._current = settings
        await self.store.set(SYNC_SETTINGS_KEY, settings.to_dict())
        for listener in list(self._listeners):
            try:
                listener(settings)
            except Exception as e:
                logger.error(f"Sync settings listener failed: {e}")

    async def update(self, **changes: Any) -> SyncSettings:
        """Apply field changes, e.g. update(wifi_only=True)."""
        settings = SyncSettings.from_dict({**self.current.to_dict(), **changes})
        await self.save(settings)
        return settings

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


__all__ = [
    'StateStore',
    'MemoryStateStore',
    'SQLiteStateStore',
    'SyncMetadata',
    'SyncMetadataStore',
    'PendingSyncQueue',
    'SyncSettingsStore',
    'STATE_SCHEMA',
]
