"""
Environment variable handling for notesync configuration.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .constants import DEFAULT_RETENTION_COUNT
from .settings import AppConfig, LogLevel, ProviderConfig, RetryConfig, SyncSettings


class EnvironmentLoader:
    """Loads configuration from environment variables."""

    @staticmethod
    def load_config(env_file: Optional[str] = None) -> AppConfig:
        """Load configuration from the environment (and a .env file if present)."""
        load_dotenv(dotenv_path=env_file, override=False)

        data_dir = Path(os.getenv("NOTESYNC_DATA_DIR", "data"))

        provider_config = ProviderConfig(
            provider=os.getenv("NOTESYNC_PROVIDER", "google").lower(),
            google_client_id=os.getenv("GOOGLE_OAUTH_CLIENT_ID", ""),
            google_client_secret=os.getenv("GOOGLE_OAUTH_CLIENT_SECRET", ""),
            dropbox_app_key=os.getenv("DROPBOX_APP_KEY", ""),
            dropbox_app_secret=os.getenv("DROPBOX_APP_SECRET", ""),
            redirect_uri=os.getenv(
                "NOTESYNC_OAUTH_REDIRECT_URI", "http://localhost:8765/oauth/callback"
            ),
            folder_name=os.getenv("NOTESYNC_FOLDER_NAME", "NoteSyncBackup"),
            retention_count=int(
                os.getenv("NOTESYNC_RETENTION_COUNT", str(DEFAULT_RETENTION_COUNT))
            ),
            token_dir=os.getenv("NOTESYNC_TOKEN_DIR", str(data_dir / ".tokens")),
        )

        sync_settings = SyncSettings(
            auto_sync_enabled=EnvironmentLoader._parse_bool(
                os.getenv("NOTESYNC_AUTO_SYNC", "false")
            ),
            sync_interval_minutes=int(os.getenv("NOTESYNC_SYNC_INTERVAL_MINUTES", "30")),
            wifi_only=EnvironmentLoader._parse_bool(os.getenv("NOTESYNC_WIFI_ONLY", "false")),
            sync_on_save=EnvironmentLoader._parse_bool(os.getenv("NOTESYNC_SYNC_ON_SAVE", "true")),
            debounce_seconds=float(os.getenv("NOTESYNC_DEBOUNCE_SECONDS", "3")),
        )

        retry_config = RetryConfig(
            max_attempts=int(os.getenv("NOTESYNC_RETRY_ATTEMPTS", "3")),
            base_delay=float(os.getenv("NOTESYNC_RETRY_BASE_DELAY", "1.0")),
            max_delay=float(os.getenv("NOTESYNC_RETRY_MAX_DELAY", "10.0")),
        )

        log_level = LogLevel.INFO
        try:
            log_level = LogLevel(os.getenv("NOTESYNC_LOG_LEVEL", "INFO").upper())
        except ValueError:
            pass  # keep default

        return AppConfig(
            data_dir=data_dir,
            db_path=os.getenv("NOTESYNC_DB_PATH", str(data_dir / "notesync.db")),
            log_level=log_level,
            user_id=os.getenv("NOTESYNC_USER_ID") or None,
            encryption_passphrase=os.getenv("NOTESYNC_ENCRYPTION_PASSPHRASE") or None,
            token_encryption_key=os.getenv("NOTESYNC_TOKEN_ENCRYPTION_KEY") or None,
            provider=provider_config,
            sync=sync_settings,
            retry=retry_config,
        )

    @staticmethod
    def _parse_bool(value: str) -> bool:
        return value.strip().lower() in ("1", "true", "yes", "on")
