"""
Shared fixtures: an in-memory remote store and a SQLite replica on disk.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from notesync.database import SQLiteConnection
from notesync.exceptions import AuthFailedError, SnapshotNotFoundError
from notesync.remote.base import (
    ProgressCallback,
    RemoteStore,
    SnapshotMetadata,
    UploadResult,
    report_progress,
    snapshot_filename,
)
from notesync.replica import Entry, SQLiteReplica
from notesync.sync.persistence import MemoryStateStore
from notesync.utils import utcnow

USER_ID = "user-1"


def ts(value: str) -> datetime:
    """Aware UTC datetime from 'YYYY-MM-DD' or 'YYYY-MM-DDTHH:MM:SS'."""
    fmt = "%Y-%m-%dT%H:%M:%S" if "T" in value else "%Y-%m-%d"
    return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)


def make_entry(key: str, updated: str, title: str = "", **kwargs: Any) -> Entry:
    return Entry(
        user_id=kwargs.pop("user_id", USER_ID),
        local_key=key,
        created_at=kwargs.pop("created_at", ts(updated)),
        updated_at=ts(updated),
        title=title,
        **kwargs,
    )


class FakeRemoteStore(RemoteStore):
    """
    RemoteStore keeping snapshots in memory.

    `modified_times` supplies the server time of successive uploads;
    `failures` maps an operation name to exceptions raised on its next calls.
    """

    def __init__(self, authenticated: bool = True, modified_times: Optional[List[datetime]] = None):
        self.authenticated = authenticated
        self.modified_times = list(modified_times or [])
        self.snapshots: Dict[str, SnapshotMetadata] = {}
        self.payloads: Dict[str, bytes] = {}
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: List[str] = []
        self.sign_in_error: Optional[Exception] = None
        self._counter = 0

    @property
    def provider_name(self) -> str:
        return "fake"

    @property
    def is_authenticated(self) -> bool:
        return self.authenticated

    @property
    def uploads(self) -> int:
        return self.calls.count("upload_snapshot")

    @property
    def downloads(self) -> int:
        return self.calls.count("download_snapshot")

    def seed(self, data: bytes, modified_time: datetime, properties: Optional[Dict[str, str]] = None) -> SnapshotMetadata:
        """Place a snapshot as if another device had uploaded it."""
        return self._store(data, modified_time, properties or {})

    async def initialize(self) -> None:
        self.calls.append("initialize")

    async def sign_in(self) -> None:
        self.calls.append("sign_in")
        if self.sign_in_error:
            raise self.sign_in_error
        self.authenticated = True

    async def sign_out(self) -> None:
        self.calls.append("sign_out")
        self.authenticated = False

    async def restore_session(self) -> bool:
        return self.authenticated

    async def get_latest_snapshot_metadata(self) -> Optional[SnapshotMetadata]:
        self._record("get_latest_snapshot_metadata")
        snapshots = await self.list_snapshots()
        return snapshots[0] if snapshots else None

    async def list_snapshots(self) -> List[SnapshotMetadata]:
        return sorted(self.snapshots.values(), key=lambda s: s.modified_time, reverse=True)

    async def upload_snapshot(
        self,
        data: bytes,
        properties: Dict[str, str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        self._record("upload_snapshot")
        when = self.modified_times.pop(0) if self.modified_times else utcnow()
        snapshot = self._store(data, when, properties)
        report_progress(on_progress, 1.0)
        return UploadResult(snapshot=snapshot)

    async def download_snapshot(self, snapshot_id: str, on_progress: Optional[ProgressCallback] = None) -> bytes:
        self._record("download_snapshot")
        if snapshot_id not in self.payloads:
            raise SnapshotNotFoundError(message=f"No snapshot {snapshot_id}")
        report_progress(on_progress, 1.0)
        return self.payloads[snapshot_id]

    async def delete_snapshot(self, snapshot_id: str) -> None:
        self.calls.append("delete_snapshot")
        self.snapshots.pop(snapshot_id, None)
        self.payloads.pop(snapshot_id, None)

    async def get_current_user(self) -> Optional[Dict[str, Any]]:
        if not self.authenticated:
            raise AuthFailedError(message="not signed in")
        return {"email": "user@example.com"}

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _store(self, data: bytes, when: datetime, properties: Dict[str, str]) -> SnapshotMetadata:
        self._counter += 1
        snapshot = SnapshotMetadata(
            id=f"snap-{self._counter}",
            name=snapshot_filename(when=when),
            modified_time=when,
            size=len(data),
            app_properties=dict(properties),
        )
        self.snapshots[snapshot.id] = snapshot
        self.payloads[snapshot.id] = data
        return snapshot


@pytest.fixture
def fake_remote():
    return FakeRemoteStore()


@pytest.fixture
def state_store():
    return MemoryStateStore()


@pytest_asyncio.fixture
async def connection(tmp_path):
    conn = SQLiteConnection(str(tmp_path / "notesync.db"))
    yield conn
    await conn.disconnect()


@pytest_asyncio.fixture
async def replica(connection):
    store = SQLiteReplica(connection)
    await store.initialize()
    return store
