"""
Tests for the sync engine decision procedure, gating and offline queue.
"""

import asyncio

import pytest

from conftest import USER_ID, FakeRemoteStore, make_entry, ts
from notesync.config.settings import RetryConfig, SyncSettings
from notesync.crypto import encrypt_data
from notesync.exceptions import (
    AuthFailedError,
    ConfigurationError,
    CorruptArchiveError,
    DecryptionFailedError,
    NetworkRestrictedError,
    NetworkTransientError,
    OfflineError,
    ProviderQuotaOrPermissionError,
    SnapshotNotFoundError,
)
from notesync.remote.encrypted import EncryptedRemoteStore
from notesync.snapshot import SnapshotCodec
from notesync.sync.engine import SyncEngine
from notesync.sync.models import (
    Resolution,
    SyncAction,
    SyncMetadata,
    SyncOptions,
    SyncStatus,
)
from notesync.sync.network import ConnectionType, NetworkMonitor
from notesync.sync.persistence import MemoryStateStore, SyncMetadataStore, SyncSettingsStore

MANUAL = SyncOptions(silent=False, is_manual=True)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def build_engine(remote, replica, state_store, settings=None, network=None, clock=None, sleeps=None):
    async def fake_sleep(delay):
        if sleeps is not None:
            sleeps.append(delay)

    engine = SyncEngine(
        remote=remote,
        replica=replica,
        state_store=state_store,
        settings=SyncSettingsStore(state_store, defaults=settings or SyncSettings(auto_sync_enabled=True)),
        network=network or NetworkMonitor(),
        retry_config=RetryConfig(max_attempts=3, base_delay=0, max_delay=0),
        clock=clock or Clock(ts("2024-06-01")),
        sleep=fake_sleep,
    )
    engine.set_user_id(USER_ID)
    return engine


async def set_last_sync(state_store, when, **fields):
    await SyncMetadataStore(state_store).save(
        SyncMetadata(device_id="device-a", last_sync_at=when, **fields)
    )


class TestDecisionProcedure:
    """Pull, push, conflict and no-op selection."""

    @pytest.mark.asyncio
    async def test_push_when_only_local_changed(self, replica, state_store):
        remote = FakeRemoteStore(modified_times=[ts("2024-01-03")])
        await set_last_sync(state_store, ts("2024-01-01"))
        await replica.save_entry(make_entry("e1", "2024-01-02", title="Hello"))
        engine = build_engine(remote, replica, state_store)

        result = await engine.trigger_sync(MANUAL)

        assert result.action == SyncAction.PUSHED
        assert result.status == SyncStatus.SUCCESS
        assert remote.uploads == 1
        assert len(remote.snapshots) == 1
        snapshot = result.snapshot
        assert engine.metadata.last_sync_at == snapshot.modified_time == ts("2024-01-03")
        assert engine.metadata.remote_snapshot_id == snapshot.id
        assert engine.metadata.last_sync_device_id == "device-a"

    @pytest.mark.asyncio
    async def test_push_uploads_summary_properties(self, replica, state_store):
        remote = FakeRemoteStore()
        await replica.save_entry(make_entry("e1", "2024-01-02", title="One"))
        await replica.save_entry(make_entry("e2", "2024-01-02", title="Two"))
        engine = build_engine(remote, replica, state_store)

        result = await engine.manual_sync()

        summary = await replica.data_summary(USER_ID)
        properties = result.snapshot.app_properties
        assert properties["entryCount"] == "2"
        assert properties["imageCount"] == "0"
        assert properties["contentHash"] == summary.content_hash
        assert engine.metadata.last_content_hash == summary.content_hash

    @pytest.mark.asyncio
    async def test_idempotent_noop(self, replica, state_store):
        remote = FakeRemoteStore(modified_times=[ts("2024-01-03")])
        await replica.save_entry(make_entry("e1", "2024-01-02", title="Hello"))
        engine = build_engine(remote, replica, state_store)

        await engine.manual_sync()
        hash_after_push = engine.metadata.last_content_hash

        first = await engine.manual_sync()
        second = await engine.manual_sync()

        assert first.action == SyncAction.NOOP
        assert second.action == SyncAction.NOOP
        assert remote.uploads == 1
        assert remote.downloads == 0
        assert engine.metadata.last_content_hash == hash_after_push

    @pytest.mark.asyncio
    async def test_noop_sets_last_sync_to_now(self, replica, state_store, fake_remote):
        clock = Clock(ts("2024-05-05"))
        engine = build_engine(fake_remote, replica, state_store, clock=clock)

        result = await engine.manual_sync()

        assert result.action == SyncAction.NOOP
        assert engine.metadata.last_sync_at == ts("2024-05-05")

    @pytest.mark.asyncio
    async def test_pull_replaces_whole_record(self, replica, state_store):
        remote = FakeRemoteStore()
        await replica.save_entry(make_entry("e1", "2024-01-01", title="A", content="local body", tags=["x"]))
        await set_last_sync(state_store, ts("2024-01-01"))

        archive = SnapshotCodec().encode([make_entry("e1", "2024-01-02", title="B")], [])
        seeded = remote.seed(archive, ts("2024-01-02"))
        engine = build_engine(remote, replica, state_store)

        result = await engine.manual_sync()

        assert result.action == SyncAction.PULLED
        entry = await replica.get_entry(USER_ID, "e1")
        assert entry.title == "B"
        assert entry.content == ""
        assert entry.tags == []
        assert engine.metadata.last_sync_at == seeded.modified_time
        assert engine.metadata.remote_snapshot_id == seeded.id
        assert remote.uploads == 0

        # Pulled state is now in sync
        again = await engine.manual_sync()
        assert again.action == SyncAction.NOOP

    @pytest.mark.asyncio
    async def test_conflict_when_both_sides_changed(self, replica, state_store):
        remote = FakeRemoteStore()
        await set_last_sync(state_store, ts("2024-01-01"))
        await replica.save_entry(make_entry("e1", "2024-01-02", title="local"))
        remote.seed(SnapshotCodec().encode([make_entry("e1", "2024-01-03", title="remote")], []), ts("2024-01-03"))
        engine = build_engine(remote, replica, state_store)
        states = []
        engine.subscribe(states.append)

        result = await engine.manual_sync()

        assert result.action == SyncAction.CONFLICT
        assert result.status == SyncStatus.CONFLICT
        assert remote.uploads == 0
        assert remote.downloads == 0
        state = engine.get_state()
        assert state.conflict_details is not None
        assert state.conflict_details.local_modified_at == ts("2024-01-02")
        assert state.conflict_details.local_summary.entry_count == 1
        assert states[-1].status == SyncStatus.CONFLICT
        assert (await replica.get_entry(USER_ID, "e1")).title == "local"

    @pytest.mark.asyncio
    async def test_background_trigger_skipped_while_in_conflict(self, replica, state_store):
        remote = FakeRemoteStore()
        await set_last_sync(state_store, ts("2024-01-01"))
        await replica.save_entry(make_entry("e1", "2024-01-02"))
        remote.seed(SnapshotCodec().encode([make_entry("e1", "2024-01-03")], []), ts("2024-01-03"))
        engine = build_engine(remote, replica, state_store)
        await engine.manual_sync()
        calls_before = len(remote.calls)

        result = await engine.trigger_sync(SyncOptions(silent=True))

        assert result.action == SyncAction.SKIPPED
        assert engine.get_state().status == SyncStatus.CONFLICT
        assert len(remote.calls) == calls_before

    @pytest.mark.asyncio
    async def test_resolution_push_overrides_conflict(self, replica, state_store):
        remote = FakeRemoteStore(modified_times=[ts("2024-01-04")])
        await set_last_sync(state_store, ts("2024-01-01"))
        await replica.save_entry(make_entry("e1", "2024-01-02", title="local"))
        remote.seed(SnapshotCodec().encode([make_entry("e1", "2024-01-03", title="remote")], []), ts("2024-01-03"))
        engine = build_engine(remote, replica, state_store)
        await engine.manual_sync()

        result = await engine.trigger_sync(
            SyncOptions(silent=False, is_manual=True, resolution=Resolution.PUSH)
        )

        assert result.action == SyncAction.PUSHED
        assert result.status == SyncStatus.SUCCESS
        assert engine.get_state().conflict_details is None
        assert remote.uploads == 1
        assert engine.metadata.last_sync_at == ts("2024-01-04")

    @pytest.mark.asyncio
    async def test_resolution_pull_overrides_conflict(self, replica, state_store):
        remote = FakeRemoteStore()
        await set_last_sync(state_store, ts("2024-01-01"))
        await replica.save_entry(make_entry("e1", "2024-01-02", title="local"))
        remote.seed(SnapshotCodec().encode([make_entry("e1", "2024-01-03", title="remote")], []), ts("2024-01-03"))
        engine = build_engine(remote, replica, state_store)
        await engine.manual_sync()

        result = await engine.trigger_sync(
            SyncOptions(silent=False, is_manual=True, resolution=Resolution.PULL)
        )

        assert result.action == SyncAction.PULLED
        assert result.status == SyncStatus.SUCCESS
        assert (await replica.get_entry(USER_ID, "e1")).title == "remote"

    @pytest.mark.asyncio
    async def test_resolution_pull_without_remote_is_noop(self, replica, state_store, fake_remote):
        engine = build_engine(fake_remote, replica, state_store)

        result = await engine.trigger_sync(SyncOptions(silent=False, resolution=Resolution.PULL))

        assert result.action == SyncAction.NOOP
        assert fake_remote.downloads == 0

    @pytest.mark.asyncio
    async def test_scenario_push_sets_last_sync_to_snapshot_time(self, replica, state_store):
        remote = FakeRemoteStore(modified_times=[ts("2024-01-02T00:00:05")])
        await set_last_sync(state_store, ts("2024-01-01"))
        await replica.save_entry(make_entry("e1", "2024-01-02"))
        engine = build_engine(remote, replica, state_store)

        result = await engine.manual_sync()

        assert result.action == SyncAction.PUSHED
        assert len(remote.snapshots) == 1
        assert engine.metadata.last_sync_at == result.snapshot.modified_time


class TestPushSkip:
    """Uploads are skipped when the archive hash is already remote."""

    @pytest.mark.asyncio
    async def test_identical_content_uploads_once(self, replica, state_store):
        # Server clock lags behind local timestamps so local stays "newer"
        remote = FakeRemoteStore(modified_times=[ts("2024-01-03"), ts("2024-01-03")])
        await replica.save_entry(make_entry("e1", "2024-01-05", title="same"))
        engine = build_engine(remote, replica, state_store, clock=Clock(ts("2024-01-04")))

        first = await engine.manual_sync()
        second = await engine.manual_sync()
        assert engine.metadata.last_sync_at == ts("2024-01-05")
        third = await engine.manual_sync()

        assert first.action == SyncAction.PUSHED
        assert second.action == SyncAction.SKIPPED_UNCHANGED
        assert third.action == SyncAction.NOOP
        assert remote.uploads == 1

    @pytest.mark.asyncio
    async def test_skip_when_remote_hash_matches(self, replica, state_store):
        remote = FakeRemoteStore()
        await replica.save_entry(make_entry("e1", "2024-01-05"))
        summary = await replica.data_summary(USER_ID)
        seeded = remote.seed(b"elsewhere", ts("2024-01-01"), {"contentHash": summary.content_hash})
        await set_last_sync(state_store, ts("2024-01-02"))
        engine = build_engine(remote, replica, state_store)

        result = await engine.manual_sync()

        assert result.action == SyncAction.SKIPPED_UNCHANGED
        assert remote.uploads == 0
        assert engine.metadata.remote_snapshot_id == seeded.id

    @pytest.mark.asyncio
    async def test_resolution_push_ignores_hash(self, replica, state_store):
        remote = FakeRemoteStore(modified_times=[ts("2024-01-03"), ts("2024-01-06")])
        await replica.save_entry(make_entry("e1", "2024-01-05"))
        engine = build_engine(remote, replica, state_store, clock=Clock(ts("2024-01-04")))
        await engine.manual_sync()

        result = await engine.trigger_sync(
            SyncOptions(silent=False, is_manual=True, resolution=Resolution.PUSH)
        )

        assert result.action == SyncAction.PUSHED
        assert remote.uploads == 2


class TestGating:
    """Pre-checks applied before any remote I/O."""

    @pytest.mark.asyncio
    async def test_background_trigger_skipped_when_auto_sync_disabled(self, replica, state_store, fake_remote):
        engine = build_engine(fake_remote, replica, state_store, settings=SyncSettings(auto_sync_enabled=False))

        result = await engine.trigger_sync(SyncOptions(silent=True))

        assert result.action == SyncAction.SKIPPED
        assert "get_latest_snapshot_metadata" not in fake_remote.calls

    @pytest.mark.asyncio
    async def test_manual_trigger_runs_when_auto_sync_disabled(self, replica, state_store, fake_remote):
        engine = build_engine(fake_remote, replica, state_store, settings=SyncSettings(auto_sync_enabled=False))

        result = await engine.manual_sync()

        assert result.action == SyncAction.NOOP

    @pytest.mark.asyncio
    async def test_wifi_only_blocks_cellular(self, replica, state_store, fake_remote):
        network = NetworkMonitor(connection_type=ConnectionType.CELLULAR)
        settings = SyncSettings(auto_sync_enabled=True, wifi_only=True)
        engine = build_engine(fake_remote, replica, state_store, settings=settings, network=network)

        silent = await engine.trigger_sync(SyncOptions(silent=True))
        assert silent.action == SyncAction.SKIPPED

        with pytest.raises(NetworkRestrictedError):
            await engine.manual_sync()
        assert fake_remote.calls == []

    @pytest.mark.asyncio
    async def test_wifi_only_blocks_save_data(self, replica, state_store, fake_remote):
        network = NetworkMonitor(connection_type=ConnectionType.WIFI, save_data=True)
        settings = SyncSettings(auto_sync_enabled=True, wifi_only=True)
        engine = build_engine(fake_remote, replica, state_store, settings=settings, network=network)

        with pytest.raises(NetworkRestrictedError):
            await engine.manual_sync()

    @pytest.mark.asyncio
    async def test_concurrent_trigger_is_skipped(self, replica, state_store, fake_remote):
        gate = asyncio.Event()
        original = fake_remote.get_latest_snapshot_metadata

        async def slow_metadata():
            await gate.wait()
            return await original()

        fake_remote.get_latest_snapshot_metadata = slow_metadata
        engine = build_engine(fake_remote, replica, state_store)

        first = asyncio.create_task(engine.manual_sync())
        await asyncio.sleep(0)
        assert engine.get_state().status == SyncStatus.SYNCING

        second = await engine.manual_sync()
        assert second.action == SyncAction.SKIPPED_BUSY

        gate.set()
        assert (await first).action == SyncAction.NOOP

    @pytest.mark.asyncio
    async def test_missing_user_id(self, replica, state_store, fake_remote):
        engine = build_engine(fake_remote, replica, state_store)
        engine.set_user_id(None)

        assert (await engine.trigger_sync(SyncOptions(silent=True))).action == SyncAction.SKIPPED
        with pytest.raises(ConfigurationError):
            await engine.manual_sync()


class TestAuthentication:

    @pytest.mark.asyncio
    async def test_silent_trigger_skips_when_signed_out(self, replica, state_store):
        remote = FakeRemoteStore(authenticated=False)
        engine = build_engine(remote, replica, state_store)

        result = await engine.trigger_sync(SyncOptions(silent=True))

        assert result.action == SyncAction.SKIPPED
        assert "sign_in" not in remote.calls

    @pytest.mark.asyncio
    async def test_manual_trigger_signs_in_once(self, replica, state_store):
        remote = FakeRemoteStore(authenticated=False)
        engine = build_engine(remote, replica, state_store)

        result = await engine.manual_sync()

        assert remote.calls.count("sign_in") == 1
        assert result.status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_failed_sign_in_raises_auth_failed(self, replica, state_store):
        remote = FakeRemoteStore(authenticated=False)
        remote.sign_in_error = AuthFailedError(message="denied")
        engine = build_engine(remote, replica, state_store)

        with pytest.raises(AuthFailedError):
            await engine.manual_sync()

        state = engine.get_state()
        assert state.status == SyncStatus.ERROR
        assert "denied" in state.last_error


class TestRetries:

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, replica, state_store, fake_remote):
        fake_remote.failures["get_latest_snapshot_metadata"] = [
            NetworkTransientError(message="503"),
            NetworkTransientError(message="503"),
        ]
        sleeps = []
        engine = build_engine(fake_remote, replica, state_store, sleeps=sleeps)

        result = await engine.manual_sync()

        assert result.action == SyncAction.NOOP
        assert fake_remote.calls.count("get_latest_snapshot_metadata") == 3
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_set_error_state(self, replica, state_store, fake_remote):
        fake_remote.failures["get_latest_snapshot_metadata"] = [
            NetworkTransientError(message="timeout") for _ in range(3)
        ]
        engine = build_engine(fake_remote, replica, state_store)

        result = await engine.trigger_sync(SyncOptions(silent=True))

        assert result.action == SyncAction.FAILED
        assert result.status == SyncStatus.ERROR
        assert engine.get_state().last_error == "timeout"

    @pytest.mark.asyncio
    async def test_permanent_errors_are_not_retried(self, replica, state_store, fake_remote):
        await replica.save_entry(make_entry("e1", "2024-01-02"))
        fake_remote.failures["upload_snapshot"] = [ProviderQuotaOrPermissionError(message="quota")]
        engine = build_engine(fake_remote, replica, state_store)

        with pytest.raises(ProviderQuotaOrPermissionError):
            await engine.manual_sync()

        assert fake_remote.calls.count("upload_snapshot") == 1
        assert engine.get_state().status == SyncStatus.ERROR
        assert engine.metadata.last_sync_at is None


class TestFailedPull:
    """A pull that cannot be applied leaves local data and metadata alone."""

    @pytest.mark.asyncio
    async def test_corrupt_remote_snapshot(self, replica, state_store):
        remote = FakeRemoteStore()
        await replica.save_entry(make_entry("e1", "2024-01-01", title="keep"))
        await set_last_sync(state_store, ts("2024-01-01"))
        remote.seed(b"not an archive", ts("2024-01-02"))
        engine = build_engine(remote, replica, state_store)

        with pytest.raises(CorruptArchiveError):
            await engine.manual_sync()

        assert (await replica.get_entry(USER_ID, "e1")).title == "keep"
        assert engine.metadata.last_sync_at == ts("2024-01-01")
        assert (await SyncMetadataStore(state_store).load()).last_sync_at == ts("2024-01-01")
        assert engine.get_state().status == SyncStatus.ERROR

    @pytest.mark.asyncio
    async def test_wrong_passphrase(self, replica, state_store):
        inner = FakeRemoteStore()
        await replica.save_entry(make_entry("e1", "2024-01-01", title="keep"))
        await set_last_sync(state_store, ts("2024-01-01"))
        archive = SnapshotCodec().encode([make_entry("e1", "2024-01-02", title="remote")], [])
        inner.seed(encrypt_data(archive, "other device"), ts("2024-01-02"), {"encrypted": "true"})
        engine = build_engine(EncryptedRemoteStore(inner, "this device"), replica, state_store)

        result = await engine.trigger_sync(SyncOptions(silent=True, is_manual=True))

        assert result.action == SyncAction.FAILED
        assert isinstance(result.error, DecryptionFailedError)
        assert (await replica.get_entry(USER_ID, "e1")).title == "keep"
        assert engine.metadata.last_sync_at == ts("2024-01-01")
        assert engine.metadata.remote_snapshot_id is None
        assert engine.get_state().status == SyncStatus.ERROR


class TestOfflineQueue:

    @pytest.mark.asyncio
    async def test_manual_sync_offline_is_queued(self, replica, state_store, fake_remote):
        engine = build_engine(fake_remote, replica, state_store, network=NetworkMonitor(is_online=False))

        with pytest.raises(OfflineError):
            await engine.manual_sync()

        assert engine.pending_queue_count() == 1
        assert engine.get_state().pending_count == 1
        assert fake_remote.calls == []

    @pytest.mark.asyncio
    async def test_silent_offline_trigger_is_not_queued(self, replica, state_store, fake_remote):
        engine = build_engine(fake_remote, replica, state_store, network=NetworkMonitor(is_online=False))

        result = await engine.trigger_sync(SyncOptions(silent=True))

        assert result.action == SyncAction.SKIPPED
        assert engine.pending_queue_count() == 0

    @pytest.mark.asyncio
    async def test_queue_runs_before_fresh_sync_on_reconnect(self, replica, state_store, fake_remote):
        network = NetworkMonitor(is_online=False)
        await replica.save_entry(make_entry("e1", "2024-01-02"))
        engine = build_engine(fake_remote, replica, state_store, network=network)
        await engine.trigger_sync(SyncOptions(silent=True, is_manual=True))

        seen = []
        original = engine.trigger_sync

        async def spy(options=None):
            seen.append(options)
            return await original(options)

        engine.trigger_sync = spy

        await network.set_online(True)

        assert [o.is_manual for o in seen] == [True, False]
        assert engine.pending_queue_count() == 0
        assert fake_remote.uploads == 1

    @pytest.mark.asyncio
    async def test_queue_survives_restart(self, replica, state_store, fake_remote):
        engine = build_engine(fake_remote, replica, state_store, network=NetworkMonitor(is_online=False))
        await engine.trigger_sync(SyncOptions(silent=True, is_manual=True))

        restarted = build_engine(fake_remote, replica, state_store)
        await restarted.init()

        assert restarted.pending_queue_count() == 1
        assert await restarted.process_pending_queue() == 1
        assert restarted.pending_queue_count() == 0

    @pytest.mark.asyncio
    async def test_failing_queued_request_is_dropped_and_next_runs(self, replica, state_store, fake_remote):
        network = NetworkMonitor(is_online=False)
        engine = build_engine(fake_remote, replica, state_store, network=network)
        for _ in range(2):
            with pytest.raises(OfflineError):
                await engine.manual_sync()
        await network.set_online(True, notify=False)
        fake_remote.failures["get_latest_snapshot_metadata"] = [RuntimeError("token refresh failed")]

        processed = await engine.process_pending_queue()

        assert processed == 2
        assert engine.pending_queue_count() == 0
        assert fake_remote.calls.count("get_latest_snapshot_metadata") == 2
        assert engine.get_state().status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_queued_request_keeps_resolution(self, replica, state_store, fake_remote):
        network = NetworkMonitor(is_online=False)
        engine = build_engine(fake_remote, replica, state_store, network=network)
        with pytest.raises(OfflineError):
            await engine.trigger_sync(SyncOptions(silent=False, is_manual=True, resolution=Resolution.PUSH))
        await network.set_online(True, notify=False)

        seen = []
        original = engine.trigger_sync

        async def spy(options=None):
            seen.append(options)
            return await original(options)

        engine.trigger_sync = spy
        await engine.process_pending_queue()

        assert seen[0].resolution == Resolution.PUSH
        assert fake_remote.uploads == 1


class TestStateSurface:

    @pytest.mark.asyncio
    async def test_listeners_receive_transitions(self, replica, state_store, fake_remote):
        engine = build_engine(fake_remote, replica, state_store)
        statuses = []

        async def async_listener(state):
            statuses.append(state.status)

        unsubscribe = engine.subscribe(async_listener)
        await engine.manual_sync()
        unsubscribe()
        await engine.manual_sync()

        assert SyncStatus.SYNCING in statuses
        assert statuses[-1] == SyncStatus.SUCCESS
        assert statuses.count(SyncStatus.SYNCING) == 1

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_sync(self, replica, state_store, fake_remote):
        engine = build_engine(fake_remote, replica, state_store)

        def broken(state):
            raise RuntimeError("boom")

        engine.subscribe(broken)
        result = await engine.manual_sync()

        assert result.status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_device_id_is_stable(self, replica, state_store, fake_remote):
        engine = build_engine(fake_remote, replica, state_store)
        await engine.init()
        device_id = engine.metadata.device_id

        other = build_engine(fake_remote, replica, state_store)
        await other.init()

        assert other.metadata.device_id == device_id

    @pytest.mark.asyncio
    async def test_notify_external_sync_success(self, replica, state_store, fake_remote):
        snapshot = fake_remote.seed(b"data", ts("2024-02-02"), {"contentHash": "abc"})
        engine = build_engine(fake_remote, replica, state_store)

        await engine.notify_external_sync_success(snapshot)

        assert engine.metadata.last_sync_at == ts("2024-02-02")
        assert engine.metadata.remote_snapshot_id == snapshot.id
        assert engine.metadata.last_content_hash == "abc"
        assert engine.get_state().status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_reset_clears_metadata_and_queue(self, replica, state_store, fake_remote):
        engine = build_engine(fake_remote, replica, state_store, network=NetworkMonitor(is_online=False))
        await engine.trigger_sync(SyncOptions(silent=True, is_manual=True))

        await engine.reset()

        assert engine.pending_queue_count() == 0
        assert await SyncMetadataStore(state_store).load() is None
        assert engine.get_state().status == SyncStatus.IDLE

    @pytest.mark.asyncio
    async def test_concurrent_init_creates_one_device(self, replica, fake_remote):
        class YieldingStateStore(MemoryStateStore):
            async def get(self, key):
                await asyncio.sleep(0)
                return await super().get(key)

        state_store = YieldingStateStore()
        network = NetworkMonitor()
        engine = build_engine(fake_remote, replica, state_store, network=network)
        offline_calls = []

        async def record_offline():
            offline_calls.append(True)

        await asyncio.gather(engine.init(), engine.init(), engine.trigger_sync())
        engine.handle_offline = record_offline
        await network.set_online(False)

        stored = await SyncMetadataStore(state_store).load()
        assert stored.device_id == engine.metadata.device_id
        assert offline_calls == [True]


class TestBackups:

    @pytest.mark.asyncio
    async def test_list_backups_newest_first(self, replica, state_store, fake_remote):
        fake_remote.seed(b"a", ts("2024-01-01"))
        newest = fake_remote.seed(b"b", ts("2024-01-05"))
        engine = build_engine(fake_remote, replica, state_store)

        backups = await engine.list_backups()

        assert [b.id for b in backups][0] == newest.id
        assert len(backups) == 2

    @pytest.mark.asyncio
    async def test_restore_replaces_local_data(self, replica, state_store, fake_remote):
        await replica.save_entry(make_entry("local", "2024-03-01"))
        archive = SnapshotCodec().encode([make_entry("remote", "2024-01-02", title="old")], [])
        chosen = fake_remote.seed(archive, ts("2024-01-02"))
        fake_remote.seed(SnapshotCodec().encode([], []), ts("2024-02-01"))
        engine = build_engine(fake_remote, replica, state_store)

        result = await engine.restore_snapshot(chosen.id)

        assert result.action == SyncAction.RESTORED
        assert [e.local_key for e in await replica.list_entries(USER_ID)] == ["remote"]
        assert engine.metadata.remote_snapshot_id == chosen.id
        assert engine.metadata.last_sync_at == chosen.modified_time
        assert engine.get_state().status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_restore_unknown_snapshot(self, replica, state_store, fake_remote):
        engine = build_engine(fake_remote, replica, state_store)

        with pytest.raises(SnapshotNotFoundError):
            await engine.restore_snapshot("missing")

        assert engine.get_state().status == SyncStatus.ERROR

    @pytest.mark.asyncio
    async def test_failed_restore_keeps_local_data(self, replica, state_store, fake_remote):
        await replica.save_entry(make_entry("local", "2024-03-01"))
        broken = fake_remote.seed(b"garbage", ts("2024-01-02"))
        engine = build_engine(fake_remote, replica, state_store)

        with pytest.raises(CorruptArchiveError):
            await engine.restore_snapshot(broken.id)

        assert [e.local_key for e in await replica.list_entries(USER_ID)] == ["local"]
        assert engine.metadata.remote_snapshot_id is None

    @pytest.mark.asyncio
    async def test_restore_offline(self, replica, state_store, fake_remote):
        engine = build_engine(fake_remote, replica, state_store, network=NetworkMonitor(is_online=False))

        with pytest.raises(OfflineError):
            await engine.restore_snapshot("snap-1")

        assert fake_remote.downloads == 0

    @pytest.mark.asyncio
    async def test_delete_backup(self, replica, state_store, fake_remote):
        snapshot = fake_remote.seed(b"a", ts("2024-01-01"))
        engine = build_engine(fake_remote, replica, state_store)

        await engine.delete_backup(snapshot.id)

        assert fake_remote.snapshots == {}
