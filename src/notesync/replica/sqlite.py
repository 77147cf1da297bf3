"""
SQLite implementation of the local replica using aiosqlite.

Timestamps are stored as fixed-width UTC strings so that SQL MAX() and
ORDER BY compare them chronologically.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..database import SQLiteConnection, SQLiteTransaction
from ..snapshot.codec import SnapshotCodec, content_hash
from ..utils import parse_timestamp, utcnow
from .base import LocalReplica
from .models import DataSummary, Entry, ImportMode, Media

logger = logging.getLogger(__name__)

REPLICA_SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    user_id TEXT NOT NULL,
    local_key TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    content TEXT NOT NULL DEFAULT '',
    tags TEXT NOT NULL DEFAULT '[]',
    extra TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT,
    PRIMARY KEY (user_id, local_key)
);
CREATE INDEX IF NOT EXISTS idx_entries_updated ON entries(user_id, updated_at);

CREATE TABLE IF NOT EXISTS media (
    user_id TEXT NOT NULL,
    local_key TEXT NOT NULL,
    entry_key TEXT NOT NULL,
    data BLOB,
    thumbnail BLOB,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT,
    PRIMARY KEY (user_id, local_key)
);
CREATE INDEX IF NOT EXISTS idx_media_entry ON media(user_id, entry_key);

CREATE TABLE IF NOT EXISTS user_settings (
    user_id TEXT PRIMARY KEY,
    settings TEXT NOT NULL DEFAULT '{}'
);
"""

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_UPSERT_ENTRY = """
INSERT OR REPLACE INTO entries (
    user_id, local_key, title, content, tags, extra,
    created_at, updated_at, deleted_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_UPSERT_MEDIA = """
INSERT OR REPLACE INTO media (
    user_id, local_key, entry_key, data, thumbnail,
    created_at, updated_at, deleted_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return parse_timestamp(value).strftime(_TS_FORMAT)


class SQLiteReplica(LocalReplica):
    """Local replica backed by a SQLite database file."""

    def __init__(self, connection: SQLiteConnection, codec: Optional[SnapshotCodec] = None):
        self.connection = connection
        self.codec = codec or SnapshotCodec()
        self.connection.register_schema(REPLICA_SCHEMA)

    async def initialize(self) -> None:
        await self.connection.ensure_schema(REPLICA_SCHEMA)
        await self.connection.connect()

    # Record CRUD

    async def save_entry(self, entry: Entry) -> None:
        """Insert or replace an entry by (user_id, local_key)."""
        await self.connection.execute(_UPSERT_ENTRY, self._entry_params(entry))

    async def get_entry(self, user_id: str, local_key: str) -> Optional[Entry]:
        row = await self.connection.fetch_one(
            "SELECT * FROM entries WHERE user_id = ? AND local_key = ?",
            (user_id, local_key),
        )
        return self._row_to_entry(row) if row else None

    async def list_entries(self, user_id: str, include_deleted: bool = False) -> List[Entry]:
        query = "SELECT * FROM entries WHERE user_id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        query += " ORDER BY local_key"
        rows = await self.connection.fetch_all(query, (user_id,))
        return [self._row_to_entry(row) for row in rows]

    async def delete_entry(self, user_id: str, local_key: str, when: Optional[datetime] = None) -> bool:
        """
        Soft-delete an entry and its media.

        Returns:
            True if a live entry was tombstoned
        """
        stamp = _ts(when or utcnow())
        async with self.connection.transaction() as tx:
            cursor = await tx.execute(
                """
                UPDATE entries SET deleted_at = ?, updated_at = ?
                WHERE user_id = ? AND local_key = ? AND deleted_at IS NULL
                """,
                (stamp, stamp, user_id, local_key),
            )
            deleted = cursor.rowcount > 0
            if deleted:
                await tx.execute(
                    """
                    UPDATE media SET deleted_at = ?, updated_at = ?
                    WHERE user_id = ? AND entry_key = ? AND deleted_at IS NULL
                    """,
                    (stamp, stamp, user_id, local_key),
                )
        return deleted

    async def save_media(self, media: Media) -> None:
        await self.connection.execute(_UPSERT_MEDIA, self._media_params(media))

    async def list_media(
        self,
        user_id: str,
        entry_key: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[Media]:
        query = "SELECT * FROM media WHERE user_id = ?"
        params: List[Any] = [user_id]
        if entry_key is not None:
            query += " AND entry_key = ?"
            params.append(entry_key)
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        query += " ORDER BY local_key"
        rows = await self.connection.fetch_all(query, params)
        return [self._row_to_media(row) for row in rows]

    async def delete_media(self, user_id: str, local_key: str, when: Optional[datetime] = None) -> bool:
        stamp = _ts(when or utcnow())
        count = await self.connection.execute(
            """
            UPDATE media SET deleted_at = ?, updated_at = ?
            WHERE user_id = ? AND local_key = ? AND deleted_at IS NULL
            """,
            (stamp, stamp, user_id, local_key),
        )
        return count > 0

    async def get_settings(self, user_id: str) -> Dict[str, Any]:
        row = await self.connection.fetch_one(
            "SELECT settings FROM user_settings WHERE user_id = ?", (user_id,)
        )
        return json.loads(row["settings"]) if row else {}

    async def save_settings(self, user_id: str, settings: Dict[str, Any]) -> None:
        await self.connection.execute(
            "INSERT OR REPLACE INTO user_settings (user_id, settings) VALUES (?, ?)",
            (user_id, json.dumps(settings, sort_keys=True)),
        )

    async def reset_user_data(self, user_id: str) -> None:
        """Hard-delete every record and the settings of a user."""
        async with self.connection.transaction() as tx:
            await self._clear_user(tx, user_id)
            await tx.execute("DELETE FROM user_settings WHERE user_id = ?", (user_id,))
        logger.info(f"Cleared local data for user {user_id}")

    # LocalReplica contract

    async def latest_changed_timestamp(self, user_id: str) -> Optional[datetime]:
        if not user_id:
            return None
        row = await self.connection.fetch_one(
            """
            SELECT MAX(ts) AS latest FROM (
                SELECT MAX(updated_at) AS ts FROM entries WHERE user_id = ?
                UNION ALL
                SELECT MAX(updated_at) AS ts FROM media WHERE user_id = ?
            )
            """,
            (user_id, user_id),
        )
        if not row or row["latest"] is None:
            return None
        return parse_timestamp(row["latest"])

    async def export_snapshot(self, user_id: str) -> bytes:
        entries = await self.list_entries(user_id, include_deleted=True)
        media = await self.list_media(user_id)
        settings = await self.get_settings(user_id)
        return await asyncio.to_thread(self.codec.encode, entries, media, settings)

    async def import_snapshot(self, user_id: str, data: bytes, mode: ImportMode = ImportMode.MERGE) -> None:
        decoded = await asyncio.to_thread(self.codec.decode, data, user_id)

        async with self.connection.transaction() as tx:
            if mode == ImportMode.REPLACE:
                await self._clear_user(tx, user_id)

            media_keys_by_entry: Dict[str, set] = {}
            for media in decoded.media:
                media_keys_by_entry.setdefault(media.entry_key, set()).add(media.local_key)

            for entry in decoded.entries:
                await tx.execute(_UPSERT_ENTRY, self._entry_params(entry))
                if mode == ImportMode.MERGE:
                    await self._retire_missing_media(
                        tx, entry, media_keys_by_entry.get(entry.local_key, set())
                    )

            if decoded.media:
                await tx.executemany(
                    _UPSERT_MEDIA, [self._media_params(media) for media in decoded.media]
                )

            if decoded.settings or mode == ImportMode.REPLACE:
                await tx.execute(
                    "INSERT OR REPLACE INTO user_settings (user_id, settings) VALUES (?, ?)",
                    (user_id, json.dumps(decoded.settings, sort_keys=True)),
                )

        logger.info(
            f"Imported snapshot for user {user_id} ({mode.value}): "
            f"{len(decoded.entries)} entries, {len(decoded.media)} media"
        )

    async def data_summary(self, user_id: str) -> DataSummary:
        entry_row = await self.connection.fetch_one(
            "SELECT COUNT(*) AS n FROM entries WHERE user_id = ? AND deleted_at IS NULL",
            (user_id,),
        )
        media_row = await self.connection.fetch_one(
            "SELECT COUNT(*) AS n FROM media WHERE user_id = ? AND deleted_at IS NULL",
            (user_id,),
        )
        archive = await self.export_snapshot(user_id)
        return DataSummary(
            entry_count=entry_row["n"] if entry_row else 0,
            image_count=media_row["n"] if media_row else 0,
            content_hash=content_hash(archive),
        )

    # Helpers

    @staticmethod
    async def _clear_user(tx: SQLiteTransaction, user_id: str) -> None:
        await tx.execute("DELETE FROM media WHERE user_id = ?", (user_id,))
        await tx.execute("DELETE FROM entries WHERE user_id = ?", (user_id,))

    @staticmethod
    async def _retire_missing_media(tx: SQLiteTransaction, entry: Entry, keep: set) -> None:
        """Soft-delete local media of an imported entry that the snapshot no longer lists."""
        rows = await tx.fetch_all(
            """
            SELECT local_key, updated_at FROM media
            WHERE user_id = ? AND entry_key = ? AND deleted_at IS NULL
            """,
            (entry.user_id, entry.local_key),
        )
        stamp = _ts(entry.deleted_at or entry.updated_at)
        for row in rows:
            if row["local_key"] in keep:
                continue
            await tx.execute(
                "UPDATE media SET deleted_at = ?, updated_at = ? WHERE user_id = ? AND local_key = ?",
                (stamp, max(stamp, row["updated_at"]), entry.user_id, row["local_key"]),
            )

    @staticmethod
    def _entry_params(entry: Entry) -> tuple:
        return (
            entry.user_id,
            entry.local_key,
            entry.title or "",
            entry.content or "",
            json.dumps(list(entry.tags or [])),
            json.dumps(entry.extra or {}, sort_keys=True),
            _ts(entry.created_at),
            _ts(entry.updated_at),
            _ts(entry.deleted_at),
        )

    @staticmethod
    def _media_params(media: Media) -> tuple:
        return (
            media.user_id,
            media.local_key,
            media.entry_key,
            media.data,
            media.thumbnail,
            _ts(media.created_at),
            _ts(media.updated_at),
            _ts(media.deleted_at),
        )

    @staticmethod
    def _row_to_entry(row: Dict[str, Any]) -> Entry:
        return Entry(
            user_id=row["user_id"],
            local_key=row["local_key"],
            title=row["title"],
            content=row["content"],
            tags=json.loads(row["tags"]) if row["tags"] else [],
            extra=json.loads(row["extra"]) if row["extra"] else {},
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            deleted_at=parse_timestamp(row["deleted_at"]),
        )

    @staticmethod
    def _row_to_media(row: Dict[str, Any]) -> Media:
        return Media(
            user_id=row["user_id"],
            local_key=row["local_key"],
            entry_key=row["entry_key"],
            data=row["data"],
            thumbnail=row["thumbnail"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            deleted_at=parse_timestamp(row["deleted_at"]),
        )
