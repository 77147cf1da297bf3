"""
Sync engine state and result models.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..replica.models import DataSummary
from ..remote.base import SnapshotMetadata
from ..utils import format_timestamp, parse_timestamp, utcnow


class SyncStatus(str, Enum):
    """Engine status as shown to the user."""
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"
    CONFLICT = "conflict"


class Resolution(str, Enum):
    """Direction chosen by the user to resolve a conflict."""
    PUSH = "push"
    PULL = "pull"


class SyncAction(str, Enum):
    """What a sync attempt ended up doing."""
    PULLED = "pulled"
    PUSHED = "pushed"
    SKIPPED_UNCHANGED = "skipped_unchanged"
    NOOP = "noop"
    CONFLICT = "conflict"
    QUEUED = "queued"
    SKIPPED = "skipped"
    SKIPPED_BUSY = "skipped_busy"
    RESTORED = "restored"
    FAILED = "failed"


@dataclass
class SyncOptions:
    """
    Trigger options.

    Attributes:
        silent: Background trigger; errors are recorded, not raised
        is_manual: User-initiated; queued when offline, may sign in
        resolution: Forces a direction, used to resolve a conflict
    """
    silent: bool = True
    is_manual: bool = False
    resolution: Optional[Resolution] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "silent": self.silent,
            "is_manual": self.is_manual,
            "resolution": self.resolution.value if self.resolution else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncOptions":
        resolution = data.get("resolution")
        return cls(
            silent=bool(data.get("silent", True)),
            is_manual=bool(data.get("is_manual", False)),
            resolution=Resolution(resolution) if resolution else None,
        )


@dataclass
class ConflictDetails:
    """Both sides changed since the last sync."""
    remote_metadata: SnapshotMetadata
    local_summary: DataSummary
    local_modified_at: Optional[datetime]
    last_sync_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "remote_metadata": self.remote_metadata.to_dict(),
            "local_summary": self.local_summary.to_dict(),
            "local_modified_at": format_timestamp(self.local_modified_at),
            "last_sync_at": format_timestamp(self.last_sync_at),
        }


@dataclass
class SyncState:
    """Immutable view of the engine handed to listeners."""
    status: SyncStatus = SyncStatus.IDLE
    last_sync_time: Optional[datetime] = None
    last_error: Optional[str] = None
    is_online: bool = True
    conflict_details: Optional[ConflictDetails] = None
    pending_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "last_sync_time": format_timestamp(self.last_sync_time),
            "last_error": self.last_error,
            "is_online": self.is_online,
            "conflict_details": self.conflict_details.to_dict() if self.conflict_details else None,
            "pending_count": self.pending_count,
        }


@dataclass
class SyncResult:
    """Outcome of one trigger."""
    action: SyncAction
    status: SyncStatus
    snapshot: Optional[SnapshotMetadata] = None
    error: Optional[BaseException] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "status": self.status.value,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "error": str(self.error) if self.error else None,
        }


@dataclass
class PendingSyncRequest:
    """A manual sync recorded while offline."""
    id: int = field(default_factory=lambda: time.time_ns() // 1_000_000)
    timestamp: datetime = field(default_factory=utcnow)
    options: SyncOptions = field(default_factory=SyncOptions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": format_timestamp(self.timestamp),
            "options": self.options.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingSyncRequest":
        return cls(
            id=int(data["id"]),
            timestamp=parse_timestamp(data.get("timestamp")) or utcnow(),
            options=SyncOptions.from_dict(data.get("options") or {}),
        )


@dataclass
class SyncMetadata:
    """
    Device-local record of the last successful sync.

    Attributes:
        device_id: Generated once per installation, never rotated
        last_sync_at: Remote modified time (pull/push) or wall clock (no-op)
        remote_snapshot_id: Remote snapshot the replica is in sync with
        last_sync_device_id: Device that performed the last sync
        last_content_hash: Hash of the archive last pushed or pulled
    """
    device_id: str
    last_sync_at: Optional[datetime] = None
    remote_snapshot_id: Optional[str] = None
    last_sync_device_id: Optional[str] = None
    last_content_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "last_sync_at": format_timestamp(self.last_sync_at),
            "remote_snapshot_id": self.remote_snapshot_id,
            "last_sync_device_id": self.last_sync_device_id,
            "last_content_hash": self.last_content_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncMetadata":
        return cls(
            device_id=data["device_id"],
            last_sync_at=parse_timestamp(data.get("last_sync_at")),
            remote_snapshot_id=data.get("remote_snapshot_id"),
            last_sync_device_id=data.get("last_sync_device_id"),
            last_content_hash=data.get("last_content_hash"),
        )
