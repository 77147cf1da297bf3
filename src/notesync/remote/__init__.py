"""
Remote snapshot storage.

Public Interface:
    - RemoteStore: provider-neutral interface used by the sync engine
    - GoogleDriveStore, DropboxStore: provider implementations
    - EncryptedRemoteStore: passphrase encryption wrapper
    - create_remote_store / available_providers: provider registry
"""

from .base import RemoteStore, SnapshotMetadata, UploadResult, UploadStatus
from .dropbox import DropboxStore
from .encrypted import EncryptedRemoteStore, is_encrypted_snapshot
from .factory import ProviderType, available_providers, create_remote_store, resolve_provider
from .google_drive import GoogleDriveStore
from .oauth import OAuthFlow, OAuthRemoteStore, OAuthTokens, SecureTokenStore

__all__ = [
    'RemoteStore',
    'SnapshotMetadata',
    'UploadResult',
    'UploadStatus',
    'GoogleDriveStore',
    'DropboxStore',
    'EncryptedRemoteStore',
    'is_encrypted_snapshot',
    'ProviderType',
    'available_providers',
    'create_remote_store',
    'resolve_provider',
    'OAuthFlow',
    'OAuthRemoteStore',
    'OAuthTokens',
    'SecureTokenStore',
]
