"""
Snapshot manifest schema (``data.json`` inside the archive).

The manifest is field-additive: unknown fields are accepted and carried
through so that older clients can read archives written by newer ones.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MANIFEST_FILENAME = "data.json"
MEDIA_FOLDER = "images"
MANIFEST_VERSION = 3


class _WireModel(BaseModel):
    """Base for manifest models: camelCase on the wire, extras allowed."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class MediaReference(_WireModel):
    """Reference from an entry to media files stored in the archive."""
    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    image_file: Optional[str] = None
    thumbnail_file: Optional[str] = None


class ManifestEntry(_WireModel):
    """
    One entry in the manifest.

    Tombstones carry only ``key``, ``updatedAt`` and ``deletedAt``.
    """
    key: str
    updated_at: datetime
    created_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    title: Optional[str] = None
    content: Optional[str] = None
    tags: Optional[List[str]] = None
    images: Optional[List[MediaReference]] = None


class SnapshotManifest(_WireModel):
    version: int = MANIFEST_VERSION
    export_date: Optional[datetime] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    entries: List[ManifestEntry] = Field(default_factory=list)
