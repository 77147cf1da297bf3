"""
Local replica contract.

The sync engine sees the on-device database only through this interface.
Implementations must not block the event loop.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from .models import DataSummary, ImportMode


class LocalReplica(ABC):
    """Abstract local store of one or more users' records."""

    @abstractmethod
    async def latest_changed_timestamp(self, user_id: str) -> Optional[datetime]:
        """
        Get the most recent modification time across the user's records.

        Tombstones count. Returns None when the user has no records or
        user_id is empty.
        """
        pass

    @abstractmethod
    async def export_snapshot(self, user_id: str) -> bytes:
        """
        Encode the user's whole dataset as a snapshot archive.

        Args:
            user_id: Owner of the records

        Returns:
            Archive bytes (see notesync.snapshot.codec)
        """
        pass

    @abstractmethod
    async def import_snapshot(self, user_id: str, data: bytes, mode: ImportMode = ImportMode.MERGE) -> None:
        """
        Apply a snapshot archive to the replica.

        The archive is decoded completely before anything is written, and
        all writes happen in one transaction.

        Args:
            user_id: Owner the imported records are assigned to
            data: Archive bytes
            mode: MERGE upserts by natural key, REPLACE clears the user first

        Raises:
            CorruptArchiveError: The archive could not be decoded
        """
        pass

    @abstractmethod
    async def data_summary(self, user_id: str) -> DataSummary:
        """Count live entries and media and hash the exported archive."""
        pass
