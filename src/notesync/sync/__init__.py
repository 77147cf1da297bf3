"""
Sync engine and its supporting services.

Public Interface:
    - SyncEngine: pull/push/conflict decisions, offline queue, state surface
    - SyncScheduler: periodic and debounced background triggers
    - NetworkMonitor: connectivity state and gating
    - State stores: SQLiteStateStore, MemoryStateStore and typed wrappers
"""

from .engine import SyncEngine
from .models import (
    ConflictDetails,
    PendingSyncRequest,
    Resolution,
    SyncAction,
    SyncMetadata,
    SyncOptions,
    SyncResult,
    SyncState,
    SyncStatus,
)
from .network import ConnectionType, NetworkMonitor
from .persistence import (
    MemoryStateStore,
    PendingSyncQueue,
    SQLiteStateStore,
    StateStore,
    SyncMetadataStore,
    SyncSettingsStore,
)
from .retry import calculate_delay, retry_with_backoff
from .scheduler import SyncScheduler

__all__ = [
    'SyncEngine',
    'SyncScheduler',
    'NetworkMonitor',
    'ConnectionType',
    'ConflictDetails',
    'PendingSyncRequest',
    'Resolution',
    'SyncAction',
    'SyncMetadata',
    'SyncOptions',
    'SyncResult',
    'SyncState',
    'SyncStatus',
    'StateStore',
    'MemoryStateStore',
    'SQLiteStateStore',
    'SyncMetadataStore',
    'PendingSyncQueue',
    'SyncSettingsStore',
    'calculate_delay',
    'retry_with_backoff',
]
