"""
Configuration models for notesync.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from .constants import (
    DEFAULT_DB_PATH,
    DEFAULT_DEBOUNCE_SECONDS,
    DEFAULT_FOLDER_NAME,
    DEFAULT_RETENTION_COUNT,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
    DEFAULT_RETRY_MULTIPLIER,
    DEFAULT_SYNC_INTERVAL_MINUTES,
    DEFAULT_TOKEN_DIR,
)


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class SyncSettings:
    """User-facing sync preferences."""
    auto_sync_enabled: bool = False
    sync_interval_minutes: int = DEFAULT_SYNC_INTERVAL_MINUTES
    wifi_only: bool = False
    sync_on_save: bool = True
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "auto_sync_enabled": self.auto_sync_enabled,
            "sync_interval_minutes": self.sync_interval_minutes,
            "wifi_only": self.wifi_only,
            "sync_on_save": self.sync_on_save,
            "debounce_seconds": self.debounce_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncSettings":
        defaults = cls()
        return cls(
            auto_sync_enabled=bool(data.get("auto_sync_enabled", defaults.auto_sync_enabled)),
            sync_interval_minutes=int(data.get("sync_interval_minutes", defaults.sync_interval_minutes)),
            wifi_only=bool(data.get("wifi_only", defaults.wifi_only)),
            sync_on_save=bool(data.get("sync_on_save", defaults.sync_on_save)),
            debounce_seconds=float(data.get("debounce_seconds", defaults.debounce_seconds)),
        )


@dataclass
class RetryConfig:
    """
    Exponential backoff settings for remote calls.

    Attributes:
        max_attempts: Attempts including the first try
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound on any single delay, in seconds
        multiplier: Growth factor between retries
    """
    max_attempts: int = DEFAULT_RETRY_ATTEMPTS
    base_delay: float = DEFAULT_RETRY_BASE_DELAY
    max_delay: float = DEFAULT_RETRY_MAX_DELAY
    multiplier: float = DEFAULT_RETRY_MULTIPLIER


@dataclass
class ProviderConfig:
    """Remote storage provider selection and credentials."""
    provider: str = "google"
    google_client_id: str = ""
    google_client_secret: str = ""
    dropbox_app_key: str = ""
    dropbox_app_secret: str = ""
    redirect_uri: str = "http://localhost:8765/oauth/callback"
    folder_name: str = DEFAULT_FOLDER_NAME
    retention_count: int = DEFAULT_RETENTION_COUNT
    token_dir: str = DEFAULT_TOKEN_DIR


@dataclass
class AppConfig:
    """Top-level application configuration."""
    data_dir: Path = Path("data")
    db_path: str = DEFAULT_DB_PATH
    log_level: LogLevel = LogLevel.INFO
    user_id: Optional[str] = None
    encryption_passphrase: Optional[str] = None
    token_encryption_key: Optional[str] = None
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    sync: SyncSettings = field(default_factory=SyncSettings)
    retry: RetryConfig = field(default_factory=RetryConfig)
