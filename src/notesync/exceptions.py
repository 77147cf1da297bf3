"""
Exception hierarchy for notesync.

Every error raised by the sync stack derives from NoteSyncException and
carries a machine-readable error code, a context dictionary, and a message
that can be shown to the user as-is.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


def create_error_context(**kwargs: Any) -> Dict[str, Any]:
    """Build an error context dictionary, dropping empty values."""
    context = {key: value for key, value in kwargs.items() if value is not None}
    context["timestamp"] = datetime.now(timezone.utc).isoformat()
    return context


class NoteSyncException(Exception):
    """Base exception for all sync errors."""

    default_code = "NOTESYNC_ERROR"
    default_user_message = "Synchronization failed."
    retryable = False

    def __init__(
        self,
        message: str = "",
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
        retryable: Optional[bool] = None,
        cause: Optional[BaseException] = None,
    ):
        self.message = message or self.default_user_message
        self.error_code = error_code or self.default_code
        self.context = context or {}
        self.user_message = user_message or self.default_user_message
        if retryable is not None:
            self.retryable = retryable
        self.cause = cause
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "retryable": self.retryable,
            "context": self.context,
            "cause": repr(self.cause) if self.cause else None,
        }


class ConfigurationError(NoteSyncException):
    default_code = "CONFIGURATION_ERROR"
    default_user_message = "Sync is not configured correctly."


class OfflineError(NoteSyncException):
    """Raised before any I/O when the device is offline."""
    default_code = "OFFLINE"
    default_user_message = "You are offline. The sync request will run when you reconnect."


class NetworkRestrictedError(NoteSyncException):
    """Raised when wifi-only mode blocks an explicit sync on a metered network."""
    default_code = "NETWORK_RESTRICTED"
    default_user_message = "A Wi-Fi connection is required to sync (Wi-Fi only mode is on)."


class AuthRequiredError(NoteSyncException):
    default_code = "AUTH_REQUIRED"
    default_user_message = "Please sign in to your cloud storage account."


class AuthFailedError(NoteSyncException):
    default_code = "AUTH_FAILED"
    default_user_message = "Signing in to your cloud storage account failed."


class ProviderInitError(NoteSyncException):
    default_code = "PROVIDER_INIT_FAILED"
    default_user_message = "Cloud storage provider credentials are missing."


class NetworkTransientError(NoteSyncException):
    """A network or provider failure that may succeed when retried."""
    default_code = "NETWORK_TRANSIENT"
    default_user_message = "A temporary network problem interrupted the sync."
    retryable = True


class ProviderQuotaOrPermissionError(NoteSyncException):
    default_code = "PROVIDER_QUOTA_OR_PERMISSION"
    default_user_message = "Cloud storage refused the request (quota or permission)."


class SnapshotNotFoundError(NoteSyncException):
    default_code = "SNAPSHOT_NOT_FOUND"
    default_user_message = "The remote backup could not be found."


class CorruptArchiveError(NoteSyncException):
    default_code = "CORRUPT_ARCHIVE"
    default_user_message = "The backup archive is damaged and was not imported."


class DecryptionFailedError(NoteSyncException):
    default_code = "DECRYPTION_FAILED"
    default_user_message = "Decryption failed: the password is wrong or the file is damaged."


class PasswordRequiredError(NoteSyncException):
    default_code = "PASSWORD_REQUIRED"
    default_user_message = "This backup is encrypted. Enter the password in settings."
