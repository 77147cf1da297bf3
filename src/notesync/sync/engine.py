"""
Sync engine: decides between pull, push, conflict and no-op, and runs it.

The engine compares three timestamps: the remote snapshot's modified time,
the newest local change, and the time of the last successful sync. Whole
snapshots win; there is no per-record merge across replicas.
"""

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, TypeVar, Union

from ..config.settings import RetryConfig
from ..exceptions import (
    AuthFailedError,
    ConfigurationError,
    NetworkRestrictedError,
    NoteSyncException,
    OfflineError,
    SnapshotNotFoundError,
    create_error_context,
)
from ..remote.base import ProgressCallback, RemoteStore, SnapshotMetadata
from ..replica.base import LocalReplica
from ..replica.models import ImportMode
from ..snapshot.codec import content_hash
from ..utils import EPOCH, format_timestamp, utcnow
from .models import (
    ConflictDetails,
    Resolution,
    SyncAction,
    SyncMetadata,
    SyncOptions,
    SyncResult,
    SyncState,
    SyncStatus,
)
from .network import NetworkMonitor
from .persistence import PendingSyncQueue, StateStore, SyncMetadataStore, SyncSettingsStore
from .retry import Sleep, retry_with_backoff


logger = logging.getLogger(__name__)

T = TypeVar("T")

StateListener = Callable[[SyncState], Union[None, Awaitable[None]]]
Clock = Callable[[], datetime]


class SyncEngine:
    """
    Offline-first synchronization between a local replica and one remote
    snapshot.

    Construct once per process with its collaborators, call init(), then
    drive it with trigger_sync() and the connectivity handlers.
    """

    def __init__(
        self,
        remote: RemoteStore,
        replica: LocalReplica,
        state_store: StateStore,
        settings: Optional[SyncSettingsStore] = None,
        network: Optional[NetworkMonitor] = None,
        retry_config: Optional[RetryConfig] = None,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
        on_progress: Optional[ProgressCallback] = None,
    ):
        """
        Initialize the engine.

        Args:
            remote: Remote snapshot store
            replica: Local replica
            state_store: Storage for metadata, queue and settings
            settings: Sync settings; defaults are used when omitted
            network: Connectivity state; assumed online when omitted
            retry_config: Backoff for remote calls
            clock: Source of "now", replaceable in tests
            sleep: Backoff sleep, replaceable in tests
            on_progress: Transfer progress callback
        """
        self.remote = remote
        self.replica = replica
        self.settings = settings or SyncSettingsStore(state_store)
        self.network = network or NetworkMonitor()
        self.retry_config = retry_config or RetryConfig()
        self.clock = clock
        self.sleep = sleep
        self.on_progress = on_progress

        self._metadata_store = SyncMetadataStore(state_store)
        self._queue = PendingSyncQueue(state_store)
        self._metadata: Optional[SyncMetadata] = None
        self._user_id: Optional[str] = None

        self._status = SyncStatus.IDLE
        self._last_error: Optional[str] = None
        self._conflict: Optional[ConflictDetails] = None
        self._busy = False
        self._listeners: List[StateListener] = []
        self._network_unsubscribe: Optional[Callable[[], None]] = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def init(self) -> None:
        """Load sync metadata (creating the device id once), queue and settings."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            self._metadata = await self._metadata_store.load_or_create()
            await self._queue.load()
            await self.settings.load()
            self._network_unsubscribe = self.network.subscribe(self._on_connectivity_change)
            self._initialized = True
        logger.info(
            f"Sync engine ready (device {self._metadata.device_id}, "
            f"last sync {format_timestamp(self._metadata.last_sync_at) or 'never'}, "
            f"{self._queue.count()} pending)"
        )
        await self._emit()

    async def close(self) -> None:
        if self._network_unsubscribe:
            self._network_unsubscribe()
            self._network_unsubscribe = None

    # State surface

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def set_user_id(self, user_id: Optional[str]) -> None:
        self._user_id = user_id

    @property
    def metadata(self) -> Optional[SyncMetadata]:
        return self._metadata

    def get_state(self) -> SyncState:
        return SyncState(
            status=self._status,
            last_sync_time=self._metadata.last_sync_at if self._metadata else None,
            last_error=self._last_error,
            is_online=self.network.is_online,
            conflict_details=self._conflict,
            pending_count=self._queue.count(),
        )

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """
        Register a state listener.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def pending_queue_count(self) -> int:
        return self._queue.count()

    # Triggers

    async def manual_sync(self) -> SyncResult:
        return await self.trigger_sync(SyncOptions(silent=False, is_manual=True))

    async def trigger_sync(self, options: Optional[SyncOptions] = None) -> SyncResult:
        """
        Run one sync attempt.

        Args:
            options: silent/is_manual/resolution flags; a silent background
                trigger by default

        Returns:
            What the attempt did

        Raises:
            NoteSyncException: Only for non-silent triggers, after the
                engine state has been updated
        """
        options = options or SyncOptions()
        await self.init()
        settings = self.settings.current

        if not settings.auto_sync_enabled and options.silent and not options.is_manual:
            logger.debug("Auto sync disabled; skipping background trigger")
            return self._result(SyncAction.SKIPPED)

        if settings.wifi_only and not self.network.is_unmetered():
            if not options.silent:
                raise NetworkRestrictedError(
                    message="Sync blocked: wifi-only mode on a metered connection",
                    context=create_error_context(
                        operation="trigger_sync",
                        connection_type=self.network.connection_type.value,
                    ),
                )
            logger.info("Metered connection in wifi-only mode; skipping sync")
            return self._result(SyncAction.SKIPPED)

        if self._busy:
            logger.info("Sync already in progress; trigger dropped")
            return self._result(SyncAction.SKIPPED_BUSY)

        if (
            self._status == SyncStatus.CONFLICT
            and options.silent
            and not options.is_manual
            and options.resolution is None
        ):
            logger.info("Unresolved conflict; skipping background sync")
            return self._result(SyncAction.SKIPPED)

        self._busy = True
        try:
            return await self._attempt(options)
        finally:
            self._busy = False

    async def _attempt(self, options: SyncOptions) -> SyncResult:
        if not self.network.is_online:
            queued = False
            if options.is_manual:
                await self._queue.enqueue(
                    SyncOptions(silent=options.silent, is_manual=True, resolution=options.resolution)
                )
                queued = True
                await self._emit()
            if not options.silent:
                raise OfflineError(
                    message="Device is offline" + ("; sync request queued" if queued else ""),
                    context=create_error_context(operation="trigger_sync", queued=queued),
                )
            return self._result(SyncAction.QUEUED if queued else SyncAction.SKIPPED)

        if not self._user_id:
            if options.silent:
                logger.info("No user selected; skipping sync")
                return self._result(SyncAction.SKIPPED)
            raise ConfigurationError(
                message="Cannot sync without a user id",
                context=create_error_context(operation="trigger_sync"),
            )

        if not self.remote.is_authenticated:
            if options.silent:
                logger.info(f"Not signed in to {self.remote.provider_name}; skipping background sync")
                return self._result(SyncAction.SKIPPED)
            try:
                logger.info(f"Signing in to {self.remote.provider_name} before sync")
                await self.remote.sign_in()
            except NoteSyncException as e:
                error = e if isinstance(e, AuthFailedError) else AuthFailedError(
                    message=f"Sign-in failed: {e}",
                    context=create_error_context(operation="sign_in", provider=self.remote.provider_name),
                    cause=e,
                )
                await self._set_status(SyncStatus.ERROR, error=str(error))
                raise error

        await self._set_status(SyncStatus.SYNCING)
        try:
            action, snapshot = await self._decide_and_run(options)
        except Exception as e:
            logger.error(f"Sync failed: {e}", exc_info=not isinstance(e, NoteSyncException))
            await self._set_status(SyncStatus.ERROR, error=str(e))
            if not options.silent:
                raise
            return SyncResult(action=SyncAction.FAILED, status=self._status, error=e)

        if action == SyncAction.CONFLICT:
            return SyncResult(action=action, status=self._status, snapshot=snapshot)

        await self._set_status(SyncStatus.SUCCESS)
        return SyncResult(action=action, status=self._status, snapshot=snapshot)

    async def _decide_and_run(self, options: SyncOptions):
        metadata = await self._ensure_metadata()
        user_id = self._user_id

        remote_meta = await self._retry(self.remote.get_latest_snapshot_metadata, "get_latest_snapshot_metadata")
        local_ts = await self.replica.latest_changed_timestamp(user_id)
        last_sync = metadata.last_sync_at or EPOCH

        remote_newer = remote_meta is not None and remote_meta.modified_time > last_sync
        local_newer = local_ts is not None and local_ts > last_sync

        logger.info(
            f"Sync check: remote={format_timestamp(remote_meta.modified_time) if remote_meta else None} "
            f"local={format_timestamp(local_ts)} last_sync={format_timestamp(metadata.last_sync_at)}"
        )

        if options.resolution == Resolution.PUSH:
            logger.info("Resolving with push")
            return await self._push(remote_meta, local_ts, force=True)
        if options.resolution == Resolution.PULL:
            logger.info("Resolving with pull")
            if remote_meta is None:
                logger.warning("Pull requested but no remote snapshot exists")
                return SyncAction.NOOP, None
            return await self._pull(remote_meta)

        if remote_newer and local_newer:
            summary = await self.replica.data_summary(user_id)
            self._conflict = ConflictDetails(
                remote_metadata=remote_meta,
                local_summary=summary,
                local_modified_at=local_ts,
                last_sync_at=metadata.last_sync_at,
            )
            logger.warning("Both local and remote data changed since the last sync")
            await self._set_status(
                SyncStatus.CONFLICT,
                error="Local and remote data both changed. Choose which one to keep.",
            )
            return SyncAction.CONFLICT, remote_meta

        if remote_newer:
            logger.info("Remote snapshot is newer; pulling")
            return await self._pull(remote_meta)

        if local_newer:
            logger.info("Local data is newer; pushing")
            return await self._push(remote_meta, local_ts)

        logger.info("No changes on either side")
        metadata.last_sync_at = self.clock()
        await self._metadata_store.save(metadata)
        return SyncAction.NOOP, remote_meta

    async def _pull(self, remote_meta: SnapshotMetadata):
        data = await self._retry(
            lambda: self.remote.download_snapshot(remote_meta.id, self.on_progress),
            "download_snapshot",
        )
        await self.replica.import_snapshot(self._user_id, data, ImportMode.MERGE)

        metadata = await self._ensure_metadata()
        metadata.last_sync_at = remote_meta.modified_time
        metadata.remote_snapshot_id = remote_meta.id
        metadata.last_sync_device_id = metadata.device_id
        metadata.last_content_hash = content_hash(data)
        await self._metadata_store.save(metadata)

        logger.info(f"Pulled snapshot {remote_meta.name}")
        return SyncAction.PULLED, remote_meta

    async def _push(
        self,
        remote_meta: Optional[SnapshotMetadata],
        local_ts: Optional[datetime],
        force: bool = False,
    ):
        metadata = await self._ensure_metadata()
        summary = await self.replica.data_summary(self._user_id)

        known_hashes = {metadata.last_content_hash}
        if remote_meta is not None:
            known_hashes.add(remote_meta.content_hash)
        if not force and summary.content_hash in known_hashes:
            # Same bytes as the remote copy: record as in sync without uploading
            now = self.clock()
            metadata.last_sync_at = max(now, local_ts) if local_ts else now
            if remote_meta is not None:
                metadata.remote_snapshot_id = remote_meta.id
            await self._metadata_store.save(metadata)
            logger.info("Local content matches the last synced snapshot; upload skipped")
            return SyncAction.SKIPPED_UNCHANGED, remote_meta

        data = await self.replica.export_snapshot(self._user_id)
        result = await self._retry(
            lambda: self.remote.upload_snapshot(data, summary.to_properties(), self.on_progress),
            "upload_snapshot",
        )

        snapshot = result.snapshot
        metadata.last_sync_at = snapshot.modified_time
        metadata.remote_snapshot_id = snapshot.id
        metadata.last_sync_device_id = metadata.device_id
        metadata.last_content_hash = summary.content_hash
        await self._metadata_store.save(metadata)

        logger.info(
            f"Pushed snapshot {snapshot.name} "
            f"({summary.entry_count} entries, {summary.image_count} images)"
        )
        return SyncAction.PUSHED, snapshot

    # Connectivity and queue

    async def handle_online(self) -> None:
        """Connectivity restored: drain the offline queue, then sync if enabled."""
        await self.network.set_online(True, notify=False)
        await self._emit()
        await self.process_pending_queue()
        if self.settings.current.auto_sync_enabled:
            try:
                await self.trigger_sync(SyncOptions(silent=True))
            except Exception as e:
                logger.warning(f"Sync after reconnect failed: {e}")

    async def handle_offline(self) -> None:
        await self.network.set_online(False, notify=False)
        await self._emit()

    async def process_pending_queue(self) -> int:
        """
        Run queued requests once each, in order. Failed requests are dropped.

        Returns:
            Number of requests processed
        """
        if self._queue.count() == 0:
            return 0

        requests = await self._queue.drain()
        logger.info(f"Processing {len(requests)} queued sync requests")
        for request in requests:
            try:
                await self.trigger_sync(request.options)
                logger.info(f"Queued sync request {request.id} processed")
            except NoteSyncException as e:
                logger.error(f"Queued sync request {request.id} failed: {e}")
            except Exception as e:
                logger.error(f"Queued sync request {request.id} failed: {e}", exc_info=True)
        await self._emit()
        return len(requests)

    async def _on_connectivity_change(self, online: bool) -> None:
        if online:
            await self.handle_online()
        else:
            await self.handle_offline()

    # Backups

    async def list_backups(self) -> List[SnapshotMetadata]:
        """List remote snapshots, newest first."""
        await self._require_session("list_backups")
        return await self._retry(self.remote.list_snapshots, "list_snapshots")

    async def restore_snapshot(self, snapshot_id: str) -> SyncResult:
        """
        Replace local data with a chosen remote snapshot.

        Raises:
            SnapshotNotFoundError: No snapshot with this id
            NoteSyncException: Download, decryption or import failed; local
                data is left untouched
        """
        await self.init()
        if self._busy:
            logger.info("Sync already in progress; restore dropped")
            return self._result(SyncAction.SKIPPED_BUSY)
        await self._require_session("restore_snapshot")

        self._busy = True
        try:
            await self._set_status(SyncStatus.SYNCING)
            snapshots = await self._retry(self.remote.list_snapshots, "list_snapshots")
            snapshot = next((s for s in snapshots if s.id == snapshot_id), None)
            if snapshot is None:
                raise SnapshotNotFoundError(
                    message=f"No remote snapshot with id {snapshot_id}",
                    context=create_error_context(operation="restore_snapshot", snapshot_id=snapshot_id),
                )
            data = await self._retry(
                lambda: self.remote.download_snapshot(snapshot.id, self.on_progress),
                "download_snapshot",
            )
            await self.replica.import_snapshot(self._user_id, data, ImportMode.REPLACE)
            await self.notify_external_sync_success(snapshot, content_hash(data))
        except Exception as e:
            logger.error(f"Restore of snapshot {snapshot_id} failed: {e}")
            await self._set_status(SyncStatus.ERROR, error=str(e))
            raise
        finally:
            self._busy = False

        logger.info(f"Restored snapshot {snapshot.name}")
        return SyncResult(action=SyncAction.RESTORED, status=self._status, snapshot=snapshot)

    async def delete_backup(self, snapshot_id: str) -> None:
        await self._require_session("delete_backup")
        await self._retry(lambda: self.remote.delete_snapshot(snapshot_id), "delete_snapshot")
        logger.info(f"Deleted remote snapshot {snapshot_id}")

    async def _require_session(self, operation: str) -> None:
        """Online, user selected and signed in, or raise."""
        if not self.network.is_online:
            raise OfflineError(
                message=f"Device is offline; cannot {operation}",
                context=create_error_context(operation=operation),
            )
        if not self._user_id:
            raise ConfigurationError(
                message="Cannot access backups without a user id",
                context=create_error_context(operation=operation),
            )
        if not self.remote.is_authenticated:
            try:
                await self.remote.sign_in()
            except AuthFailedError:
                raise
            except NoteSyncException as e:
                raise AuthFailedError(
                    message=f"Sign-in failed: {e}",
                    context=create_error_context(operation=operation, provider=self.remote.provider_name),
                    cause=e,
                )

    # External events

    async def notify_external_sync_success(
        self,
        snapshot: SnapshotMetadata,
        snapshot_hash: Optional[str] = None,
    ) -> None:
        """Record a backup or restore performed outside the engine."""
        metadata = await self._ensure_metadata()
        metadata.last_sync_at = snapshot.modified_time
        metadata.remote_snapshot_id = snapshot.id
        metadata.last_sync_device_id = metadata.device_id
        metadata.last_content_hash = snapshot_hash or snapshot.content_hash
        await self._metadata_store.save(metadata)
        await self._set_status(SyncStatus.SUCCESS)

    async def reset(self) -> None:
        """Forget sync metadata and the pending queue."""
        await self._metadata_store.delete()
        await self._queue.clear()
        self._metadata = None
        self._conflict = None
        self._last_error = None
        self._status = SyncStatus.IDLE
        logger.info("Sync state reset")
        await self._emit()

    # Helpers

    async def _ensure_metadata(self) -> SyncMetadata:
        if self._metadata is None:
            self._metadata = await self._metadata_store.load_or_create()
        return self._metadata

    async def _retry(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        return await retry_with_backoff(
            operation, self.retry_config, operation_name=name, sleep=self.sleep
        )

    async def _set_status(self, status: SyncStatus, error: Optional[str] = None) -> None:
        self._status = status
        self._last_error = error
        if status != SyncStatus.CONFLICT:
            self._conflict = None
        await self._emit()

    def _result(self, action: SyncAction) -> SyncResult:
        return SyncResult(action=action, status=self._status)

    async def _emit(self) -> None:
        state = self.get_state()
        for listener in list(self._listeners):
            try:
                result = listener(state)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Sync state listener failed: {e}")
