"""
Configuration management for notesync.
"""

from .settings import AppConfig, LogLevel, ProviderConfig, RetryConfig, SyncSettings
from .environment import EnvironmentLoader
from .validation import ConfigValidator

__all__ = [
    "AppConfig",
    "LogLevel",
    "ProviderConfig",
    "RetryConfig",
    "SyncSettings",
    "EnvironmentLoader",
    "ConfigValidator",
]
