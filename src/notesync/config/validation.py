"""
Configuration validation for notesync.
"""

from typing import List

from .settings import AppConfig


VALID_PROVIDERS = ("google", "dropbox")


class ConfigValidator:
    """Validates configuration settings."""

    @staticmethod
    def validate_config(config: AppConfig) -> List[str]:
        """Validate the entire application configuration."""
        errors = []

        errors.extend(ConfigValidator._validate_provider(config))
        errors.extend(ConfigValidator._validate_sync_settings(config))
        errors.extend(ConfigValidator._validate_retry(config))

        return errors

    @staticmethod
    def _validate_provider(config: AppConfig) -> List[str]:
        errors = []
        provider = config.provider

        if provider.provider not in VALID_PROVIDERS:
            errors.append(
                f"Unknown provider '{provider.provider}', expected one of {', '.join(VALID_PROVIDERS)}"
            )
        elif provider.provider == "google" and not provider.google_client_id:
            errors.append("GOOGLE_OAUTH_CLIENT_ID is required for the Google Drive provider")
        elif provider.provider == "dropbox" and not provider.dropbox_app_key:
            errors.append("DROPBOX_APP_KEY is required for the Dropbox provider")

        if provider.retention_count < 1:
            errors.append("Retention count must be at least 1")

        return errors

    @staticmethod
    def _validate_sync_settings(config: AppConfig) -> List[str]:
        errors = []

        if config.sync.sync_interval_minutes < 0:
            errors.append("Sync interval must not be negative")
        if config.sync.debounce_seconds < 0:
            errors.append("Debounce delay must not be negative")

        return errors

    @staticmethod
    def _validate_retry(config: AppConfig) -> List[str]:
        errors = []

        if config.retry.max_attempts < 1:
            errors.append("Retry attempts must be at least 1")
        if config.retry.base_delay < 0 or config.retry.max_delay < 0:
            errors.append("Retry delays must not be negative")

        return errors
