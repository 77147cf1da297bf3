"""
Snapshot archive format: manifest schema and codec.
"""

from .codec import DecodedSnapshot, SnapshotCodec, content_hash
from .manifest import (
    MANIFEST_FILENAME,
    MANIFEST_VERSION,
    MEDIA_FOLDER,
    ManifestEntry,
    MediaReference,
    SnapshotManifest,
)

__all__ = [
    'SnapshotCodec',
    'DecodedSnapshot',
    'content_hash',
    'SnapshotManifest',
    'ManifestEntry',
    'MediaReference',
    'MANIFEST_FILENAME',
    'MANIFEST_VERSION',
    'MEDIA_FOLDER',
]
