"""
Record models held by the local replica.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ImportMode(str, Enum):
    """How a decoded snapshot is applied to the local replica."""
    MERGE = "merge"
    REPLACE = "replace"


@dataclass
class Entry:
    """A diary entry. Natural key is (user_id, local_key)."""
    user_id: str
    local_key: str
    created_at: datetime
    updated_at: datetime
    title: str = ""
    content: str = ""
    tags: List[str] = field(default_factory=list)
    deleted_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class Media:
    """An image attached to an entry. Natural key is (user_id, local_key)."""
    user_id: str
    local_key: str
    entry_key: str
    created_at: datetime
    updated_at: datetime
    data: Optional[bytes] = None
    thumbnail: Optional[bytes] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class DataSummary:
    """Counts and hash describing a user's replica without transferring it."""
    entry_count: int = 0
    image_count: int = 0
    content_hash: Optional[str] = None

    def to_properties(self) -> Dict[str, str]:
        """Render as remote snapshot properties (string values only)."""
        return {
            "entryCount": str(self.entry_count),
            "imageCount": str(self.image_count),
            "contentHash": self.content_hash or "",
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_count": self.entry_count,
            "image_count": self.image_count,
            "content_hash": self.content_hash,
        }
