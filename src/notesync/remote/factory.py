"""
Provider registry: maps a provider key to a configured RemoteStore.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

import httpx

from ..config.settings import AppConfig
from ..exceptions import ProviderInitError, create_error_context
from .base import AuthorizationHandler, RemoteStore
from .dropbox import DropboxStore
from .encrypted import EncryptedRemoteStore
from .google_drive import GoogleDriveStore
from .oauth import DROPBOX_ENDPOINTS, GOOGLE_ENDPOINTS, OAuthFlow, SecureTokenStore

logger = logging.getLogger(__name__)


class ProviderType(str, Enum):
    """Supported remote storage providers."""
    GOOGLE = "google"
    DROPBOX = "dropbox"

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    ProviderType.GOOGLE: "Google Drive",
    ProviderType.DROPBOX: "Dropbox",
}

StoreBuilder = Callable[..., RemoteStore]


def _build_google(
    config: AppConfig,
    token_store: SecureTokenStore,
    authorization_handler: Optional[AuthorizationHandler],
    http_client: Optional[httpx.AsyncClient],
) -> RemoteStore:
    provider = config.provider
    flow = OAuthFlow(
        provider=ProviderType.GOOGLE.value,
        endpoints=GOOGLE_ENDPOINTS,
        client_id=provider.google_client_id,
        client_secret=provider.google_client_secret,
        redirect_uri=provider.redirect_uri,
        token_store=token_store,
        http_client=http_client,
    )
    return GoogleDriveStore(
        flow,
        authorization_handler=authorization_handler,
        folder_name=provider.folder_name,
        retention_count=provider.retention_count,
    )


def _build_dropbox(
    config: AppConfig,
    token_store: SecureTokenStore,
    authorization_handler: Optional[AuthorizationHandler],
    http_client: Optional[httpx.AsyncClient],
) -> RemoteStore:
    provider = config.provider
    flow = OAuthFlow(
        provider=ProviderType.DROPBOX.value,
        endpoints=DROPBOX_ENDPOINTS,
        client_id=provider.dropbox_app_key,
        client_secret=provider.dropbox_app_secret,
        redirect_uri=provider.redirect_uri,
        token_store=token_store,
        http_client=http_client,
    )
    return DropboxStore(
        flow,
        authorization_handler=authorization_handler,
        folder_path=f"/{provider.folder_name}" if provider.folder_name else "",
        retention_count=provider.retention_count,
        http_client=http_client,
    )


_BUILDERS: Dict[ProviderType, StoreBuilder] = {
    ProviderType.GOOGLE: _build_google,
    ProviderType.DROPBOX: _build_dropbox,
}


def available_providers() -> List[Dict[str, str]]:
    """List selectable providers as {value, label} pairs."""
    return [{"value": provider.value, "label": provider.label} for provider in ProviderType]


def resolve_provider(key: str) -> ProviderType:
    """
    Resolve a provider key.

    Raises:
        ProviderInitError: Unknown provider
    """
    try:
        return ProviderType((key or "").lower())
    except ValueError:
        raise ProviderInitError(
            message=f"Unknown storage provider: {key!r}",
            context=create_error_context(
                provider=key, available=[p.value for p in ProviderType]
            ),
        )


def create_remote_store(
    config: AppConfig,
    authorization_handler: Optional[AuthorizationHandler] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> EncryptedRemoteStore:
    """
    Build the configured provider wrapped with passphrase encryption.

    Args:
        config: Application configuration
        authorization_handler: Coroutine receiving the authorization URL and
            returning the code; needed for interactive sign-in
        http_client: Shared httpx client for OAuth and Dropbox calls

    Returns:
        Remote store ready for initialize()
    """
    provider_type = resolve_provider(config.provider.provider)
    token_store = SecureTokenStore(Path(config.provider.token_dir), config.token_encryption_key)
    store = _BUILDERS[provider_type](config, token_store, authorization_handler, http_client)
    logger.info(f"Using {provider_type.label} for remote snapshots")
    return EncryptedRemoteStore(store, lambda: config.encryption_passphrase)
