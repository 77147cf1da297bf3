"""
Snapshot codec: builds and parses the archive exchanged with remote storage.

Archive layout (zip, DEFLATE):
    data.json             manifest (version, exportDate, settings, entries)
    images/img_<k>.jpeg   full-size media
    images/thumb_<k>.jpeg thumbnails

Encoding is deterministic so that the SHA-256 of the archive bytes can be
compared between replicas to skip redundant uploads.
"""

import hashlib
import io
import json
import logging
import re
import zipfile
import zlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from ..exceptions import CorruptArchiveError, create_error_context
from ..replica.models import Entry, Media
from ..utils import parse_timestamp
from .manifest import (
    MANIFEST_FILENAME,
    MANIFEST_VERSION,
    MEDIA_FOLDER,
    ManifestEntry,
    MediaReference,
    SnapshotManifest,
)

logger = logging.getLogger(__name__)

# Fixed zip entry timestamp keeps the archive bytes stable across exports
_ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)
_SAFE_NAME = re.compile(r"[^A-Za-z0-9_-]")


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest of archive bytes."""
    return hashlib.sha256(data).hexdigest()


@dataclass
class DecodedSnapshot:
    """Records recovered from an archive."""
    entries: List[Entry] = field(default_factory=list)
    media: List[Media] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)
    version: int = MANIFEST_VERSION
    exported_at: Optional[datetime] = None


class SnapshotCodec:
    """Encodes records into a snapshot archive and decodes them back."""

    def encode(
        self,
        entries: Iterable[Entry],
        media: Iterable[Media],
        settings: Optional[Dict[str, Any]] = None,
    ) -> bytes:
        """
        Serialize records, media and settings into one archive.

        Tombstoned entries carry only their key and timestamps, and their
        media is left out. Deleted media is never exported.

        Returns:
            Archive bytes
        """
        entries = sorted(entries, key=lambda e: e.local_key)
        media_by_entry: Dict[str, List[Media]] = {}
        for item in sorted(media, key=lambda m: m.local_key):
            if item.is_deleted:
                continue
            media_by_entry.setdefault(item.entry_key, []).append(item)

        files: Dict[str, bytes] = {}
        manifest_entries = []
        timestamps = []

        for entry in entries:
            timestamps.append(entry.updated_at)
            if entry.is_deleted:
                manifest_entries.append(ManifestEntry(
                    key=entry.local_key,
                    updated_at=entry.updated_at,
                    deleted_at=entry.deleted_at,
                ))
                continue

            references = []
            for item in media_by_entry.get(entry.local_key, []):
                timestamps.append(item.updated_at)
                reference = self._add_media_files(files, item)
                if reference is not None:
                    references.append(reference)

            manifest_entries.append(ManifestEntry(
                key=entry.local_key,
                created_at=entry.created_at,
                updated_at=entry.updated_at,
                title=entry.title or "",
                content=entry.content or "",
                tags=list(entry.tags or []),
                images=references,
                **self._extra_fields(entry.extra),
            ))

        manifest = SnapshotManifest(
            version=MANIFEST_VERSION,
            export_date=max(timestamps) if timestamps else None,
            settings=settings or {},
            entries=manifest_entries,
        )
        manifest_json = json.dumps(
            manifest.model_dump(mode="json", by_alias=True, exclude_none=True),
            indent=2,
            sort_keys=True,
            ensure_ascii=False,
        )

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            self._write(archive, MANIFEST_FILENAME, manifest_json.encode("utf-8"))
            for name in sorted(files):
                self._write(archive, f"{MEDIA_FOLDER}/{name}", files[name])

        data = buffer.getvalue()
        logger.debug(
            f"Encoded snapshot: {len(manifest_entries)} entries, "
            f"{len(files)} media files, {len(data)} bytes"
        )
        return data

    def decode(self, data: bytes, user_id: str = "") -> DecodedSnapshot:
        """
        Parse an archive produced by encode.

        Args:
            data: Archive bytes
            user_id: Owner assigned to every decoded record

        Raises:
            CorruptArchiveError: Not a zip, manifest missing or unparsable
        """
        try:
            archive = zipfile.ZipFile(io.BytesIO(data))
        except (zipfile.BadZipFile, ValueError) as e:
            raise CorruptArchiveError(
                message=f"Snapshot is not a valid archive: {e}",
                context=create_error_context(operation="decode", size=len(data)),
                cause=e,
            )

        with archive:
            try:
                raw_manifest = archive.read(MANIFEST_FILENAME)
            except KeyError as e:
                raise CorruptArchiveError(
                    message=f"'{MANIFEST_FILENAME}' not found in the archive",
                    context=create_error_context(operation="decode"),
                    cause=e,
                )
            except (zipfile.BadZipFile, zlib.error, EOFError, OSError) as e:
                raise CorruptArchiveError(
                    message=f"Failed to read manifest: {e}",
                    context=create_error_context(operation="decode"),
                    cause=e,
                )

            try:
                manifest = SnapshotManifest.model_validate(json.loads(raw_manifest))
            except (ValueError, ValidationError) as e:
                raise CorruptArchiveError(
                    message=f"Manifest is not valid: {e}",
                    context=create_error_context(operation="decode"),
                    cause=e,
                )

            if manifest.version > MANIFEST_VERSION:
                logger.warning(
                    f"Snapshot manifest version {manifest.version} is newer than "
                    f"supported version {MANIFEST_VERSION}; unknown fields are kept as-is"
                )

            names = set(archive.namelist())
            result = DecodedSnapshot(
                settings=dict(manifest.settings),
                version=manifest.version,
                exported_at=parse_timestamp(manifest.export_date),
            )

            for item in manifest.entries:
                entry = self._to_entry(item, user_id)
                result.entries.append(entry)
                if entry.is_deleted:
                    continue
                for reference in item.images or []:
                    media = self._read_media(archive, names, reference, entry, user_id)
                    if media is not None:
                        result.media.append(media)

        return result

    def _add_media_files(self, files: Dict[str, bytes], item: Media) -> Optional[MediaReference]:
        if item.data is None and item.thumbnail is None:
            logger.warning(f"Skipping media {item.local_key}: no image data")
            return None

        stem = self._safe_name(item.local_key)
        image_file = f"img_{stem}.jpeg" if item.data is not None else None
        thumbnail_file = f"thumb_{stem}.jpeg" if item.thumbnail is not None else None
        if image_file:
            files[image_file] = item.data
        if thumbnail_file:
            files[thumbnail_file] = item.thumbnail

        return MediaReference(
            id=item.local_key,
            created_at=item.created_at,
            updated_at=item.updated_at,
            image_file=image_file,
            thumbnail_file=thumbnail_file,
        )

    def _read_media(
        self,
        archive: zipfile.ZipFile,
        names: set,
        reference: MediaReference,
        entry: Entry,
        user_id: str,
    ) -> Optional[Media]:
        data = self._read_optional(archive, names, reference.image_file)
        thumbnail = self._read_optional(archive, names, reference.thumbnail_file)

        if data is None and thumbnail is None:
            logger.warning(
                f"Skipping media {reference.id} for entry {entry.local_key}: "
                f"files not found in archive"
            )
            return None

        created_at = parse_timestamp(reference.created_at) or entry.created_at
        return Media(
            user_id=user_id,
            local_key=reference.id,
            entry_key=entry.local_key,
            created_at=created_at,
            updated_at=parse_timestamp(reference.updated_at) or created_at,
            data=data,
            thumbnail=thumbnail,
        )

    @staticmethod
    def _read_optional(archive: zipfile.ZipFile, names: set, filename: Optional[str]) -> Optional[bytes]:
        if not filename:
            return None
        path = f"{MEDIA_FOLDER}/{filename}"
        if path not in names:
            logger.warning(f"Referenced media file missing from archive: {path}")
            return None
        try:
            return archive.read(path)
        except (zipfile.BadZipFile, zlib.error, EOFError, OSError) as e:
            raise CorruptArchiveError(
                message=f"Failed to read media file {path}: {e}",
                context=create_error_context(operation="decode", file=path),
                cause=e,
            )

    @staticmethod
    def _to_entry(item: ManifestEntry, user_id: str) -> Entry:
        updated_at = parse_timestamp(item.updated_at)
        deleted_at = parse_timestamp(item.deleted_at)
        created_at = parse_timestamp(item.created_at) or deleted_at or updated_at
        return Entry(
            user_id=user_id,
            local_key=item.key,
            created_at=created_at,
            updated_at=updated_at,
            title=item.title or "",
            content=item.content or "",
            tags=list(item.tags or []),
            deleted_at=deleted_at,
            extra=dict(item.model_extra or {}),
        )

    @staticmethod
    def _extra_fields(extra: Dict[str, Any]) -> Dict[str, Any]:
        known = set()
        for name, info in ManifestEntry.model_fields.items():
            known.add(name)
            if info.alias:
                known.add(info.alias)
        return {key: value for key, value in (extra or {}).items() if key not in known}

    @staticmethod
    def _safe_name(key: str) -> str:
        safe = _SAFE_NAME.sub("_", key)
        if safe != key:
            # Disambiguate keys that sanitize to the same name
            safe = f"{safe}_{hashlib.sha1(key.encode('utf-8')).hexdigest()[:8]}"
        return safe

    @staticmethod
    def _write(archive: zipfile.ZipFile, name: str, data: bytes) -> None:
        info = zipfile.ZipInfo(name, date_time=_ZIP_DATE_TIME)
        info.compress_type = zipfile.ZIP_DEFLATED
        info.external_attr = 0o644 << 16
        archive.writestr(info, data)
