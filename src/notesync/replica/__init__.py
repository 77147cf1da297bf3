"""
Local replica: the on-device store the sync engine reads from and writes to.

Public Interface:
    - LocalReplica: contract used by the sync engine
    - SQLiteReplica: aiosqlite reference implementation with record CRUD
    - Entry, Media, DataSummary, ImportMode: record models
"""

from .base import LocalReplica
from .models import DataSummary, Entry, ImportMode, Media
from .sqlite import SQLiteReplica

__all__ = [
    'LocalReplica',
    'SQLiteReplica',
    'Entry',
    'Media',
    'DataSummary',
    'ImportMode',
]
