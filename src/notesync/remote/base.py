"""
Remote store interface.

A remote store holds the snapshot archives of one account in a third-party
object store. Every provider implements the same capabilities so the sync
engine never branches on provider.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from ..config.constants import ENCRYPTED_EXTENSION, SNAPSHOT_EXTENSION, SNAPSHOT_FILE_PREFIX
from ..exceptions import (
    AuthFailedError,
    NetworkTransientError,
    NoteSyncException,
    ProviderQuotaOrPermissionError,
    SnapshotNotFoundError,
    create_error_context,
)
from ..utils import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]
AuthorizationHandler = Callable[[str], Awaitable[str]]


class UploadStatus(str, Enum):
    """Outcome of an upload request."""
    UPLOADED = "uploaded"


@dataclass
class SnapshotMetadata:
    """Remote snapshot description, available without downloading the payload."""
    id: str
    name: str
    modified_time: datetime
    size: int = 0
    app_properties: Dict[str, str] = field(default_factory=dict)

    @property
    def content_hash(self) -> Optional[str]:
        return self.app_properties.get("contentHash") or None

    @property
    def is_encrypted(self) -> bool:
        return self.app_properties.get("encrypted") == "true"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "modified_time": format_timestamp(self.modified_time),
            "size": self.size,
            "app_properties": dict(self.app_properties),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnapshotMetadata":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            modified_time=parse_timestamp(data["modified_time"]),
            size=int(data.get("size") or 0),
            app_properties=dict(data.get("app_properties") or {}),
        )


@dataclass
class UploadResult:
    """Result of a successful upload."""
    snapshot: SnapshotMetadata
    status: UploadStatus = UploadStatus.UPLOADED

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "snapshot": self.snapshot.to_dict()}


def snapshot_filename(encrypted: bool = False, when: Optional[datetime] = None) -> str:
    """Name for a new snapshot object, e.g. notesync_snapshot_20240102T030405123456Z.zip"""
    stamp = (when or utcnow()).strftime("%Y%m%dT%H%M%S%fZ")
    extension = ENCRYPTED_EXTENSION if encrypted else SNAPSHOT_EXTENSION
    return f"{SNAPSHOT_FILE_PREFIX}{stamp}.{extension}"


def report_progress(callback: Optional[ProgressCallback], value: float) -> None:
    """Call a progress callback with a value clamped to [0, 1]."""
    if callback is None:
        return
    try:
        callback(min(1.0, max(0.0, value)))
    except Exception as e:
        logger.warning(f"Progress callback raised: {e}")


def error_for_status(
    status: int,
    detail: str,
    operation: str,
    provider: str,
    cause: Optional[Exception] = None,
) -> NoteSyncException:
    """
    Map an HTTP error status to the sync exception taxonomy.

    429 and 5xx are transient, 401 is an auth failure, 403/507 and
    out-of-space responses are quota or permission errors, and 404 or a
    not_found error body means the snapshot does not exist.
    """
    context = create_error_context(operation=operation, provider=provider, status_code=status)
    message = f"{provider} {operation} failed with HTTP {status}: {detail}"

    if status == 429 or (status >= 500 and status != 507):
        return NetworkTransientError(message=message, context=context, cause=cause)
    if status == 401:
        return AuthFailedError(message=message, context=context, cause=cause)
    if status in (403, 507) or "insufficient_space" in detail:
        return ProviderQuotaOrPermissionError(message=message, context=context, cause=cause)
    if status == 404 or "not_found" in detail:
        return SnapshotNotFoundError(message=message, context=context, cause=cause)
    return NoteSyncException(message=message, error_code="PROVIDER_ERROR", context=context, cause=cause)


def raise_for_response(response: httpx.Response, operation: str, provider: str) -> None:
    """Raise the mapped exception for an httpx error response."""
    if response.status_code < 400:
        return
    detail = response.text[:500] if response.content else ""
    raise error_for_status(response.status_code, detail, operation, provider)


def transport_error(error: Exception, operation: str, provider: str) -> NetworkTransientError:
    """Wrap a transport-level failure (connect, timeout, reset) as retryable."""
    return NetworkTransientError(
        message=f"{provider} {operation} failed: {error}",
        context=create_error_context(operation=operation, provider=provider),
        cause=error,
    )


class RemoteStore(ABC):
    """Abstract base class for snapshot storage providers."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Short provider identifier, e.g. 'google' or 'dropbox'."""
        pass

    @property
    @abstractmethod
    def is_authenticated(self) -> bool:
        """True when an unexpired access token is held."""
        pass

    @abstractmethod
    async def initialize(self) -> None:
        """
        Prepare the provider client. Safe to call more than once.

        Raises:
            ProviderInitError: Client credentials are not configured
        """
        pass

    @abstractmethod
    async def sign_in(self) -> None:
        """
        Obtain an access token, interactively if needed.

        Raises:
            AuthFailedError: Authorization was refused or failed
        """
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        """Revoke the current token where possible and forget stored tokens."""
        pass

    @abstractmethod
    async def restore_session(self) -> bool:
        """
        Sign in silently from stored tokens.

        Returns:
            True if a usable session was restored
        """
        pass

    @abstractmethod
    async def get_latest_snapshot_metadata(self) -> Optional[SnapshotMetadata]:
        """Get metadata of the newest snapshot, or None if there is none."""
        pass

    @abstractmethod
    async def list_snapshots(self) -> List[SnapshotMetadata]:
        """List snapshots, newest first."""
        pass

    @abstractmethod
    async def upload_snapshot(
        self,
        data: bytes,
        properties: Optional[Dict[str, str]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        """
        Store a new snapshot object. Never overwrites an existing one.

        Older snapshots beyond the retention count are pruned afterwards;
        pruning failures are logged and not raised.

        Args:
            data: Archive bytes
            properties: String properties attached to the object
            on_progress: Called with fractions in [0, 1]

        Returns:
            Metadata of the stored snapshot
        """
        pass

    @abstractmethod
    async def download_snapshot(self, snapshot_id: str, on_progress: Optional[ProgressCallback] = None) -> bytes:
        """
        Download a snapshot payload.

        Raises:
            SnapshotNotFoundError: No snapshot with this id
        """
        pass

    @abstractmethod
    async def delete_snapshot(self, snapshot_id: str) -> None:
        pass

    @abstractmethod
    async def get_current_user(self) -> Optional[Dict[str, Any]]:
        """Get display name and email of the signed-in account."""
        pass

    async def prune_snapshots(self, keep: int) -> int:
        """
        Delete all but the newest `keep` snapshots.

        Returns:
            Number of snapshots deleted
        """
        snapshots = await self.list_snapshots()
        deleted = 0
        for snapshot in snapshots[keep:]:
            try:
                await self.delete_snapshot(snapshot.id)
                deleted += 1
            except NoteSyncException as e:
                logger.error(f"Failed to prune snapshot {snapshot.name}: {e}")
        if deleted:
            logger.info(f"Pruned {deleted} old snapshots from {self.provider_name}")
        return deleted

    async def _prune_after_upload(self, keep: int) -> None:
        try:
            await self.prune_snapshots(keep)
        except NoteSyncException as e:
            logger.error(f"Snapshot pruning on {self.provider_name} failed: {e}")
