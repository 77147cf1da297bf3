"""
notesync - offline-first note synchronization through cloud snapshots.

A local replica is mirrored to a single remote snapshot archive on Google
Drive or Dropbox. The sync engine decides between pull, push, conflict and
no-op from three timestamps and transfers whole snapshots.
"""

__version__ = "1.0.0"

from .exceptions import NoteSyncException
from .sync import SyncEngine, SyncOptions, SyncResult, SyncState, SyncStatus

__all__ = [
    'NoteSyncException',
    'SyncEngine',
    'SyncOptions',
    'SyncResult',
    'SyncState',
    'SyncStatus',
    '__version__',
]
