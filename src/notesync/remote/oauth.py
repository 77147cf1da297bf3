"""
OAuth 2.0 token handling shared by the remote store providers.

Tokens are kept encrypted at rest (Fernet) per provider. The authorization
code flow uses PKCE, and refresh tokens allow silent sign-in on restart.
"""

import base64
import hashlib
import json
import logging
import os
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx
from cryptography.fernet import Fernet, InvalidToken

from ..config.constants import DEFAULT_RETENTION_COUNT
from ..exceptions import AuthFailedError, AuthRequiredError, ProviderInitError, create_error_context
from ..utils import format_timestamp, parse_timestamp, utcnow
from .base import AuthorizationHandler, RemoteStore, raise_for_response, transport_error

logger = logging.getLogger(__name__)

TOKEN_KEY_ENV = "NOTESYNC_TOKEN_ENCRYPTION_KEY"


@dataclass
class OAuthTokens:
    """OAuth token storage."""
    access_token: str
    refresh_token: str = ""
    token_type: str = "Bearer"
    expires_at: Optional[datetime] = None
    scope: str = ""

    def is_expired(self) -> bool:
        """Check if access token is expired."""
        if not self.expires_at:
            return True
        # Consider expired 5 minutes before actual expiry
        return utcnow() >= (self.expires_at - timedelta(minutes=5))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": format_timestamp(self.expires_at),
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OAuthTokens":
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or "",
            token_type=data.get("token_type", "Bearer"),
            expires_at=parse_timestamp(data.get("expires_at")),
            scope=data.get("scope", ""),
        )


@dataclass
class OAuthState:
    """Pending authorization: CSRF state plus the PKCE verifier."""
    state_token: str
    code_verifier: str
    redirect_uri: str
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self) -> bool:
        """State tokens expire after 10 minutes."""
        return utcnow() > (self.created_at + timedelta(minutes=10))


@dataclass
class OAuthEndpoints:
    """Provider-specific OAuth endpoints and parameters."""
    authorize_url: str
    token_url: str
    revoke_url: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    extra_auth_params: Dict[str, str] = field(default_factory=dict)
    # Dropbox revokes with the bearer token, Google with a form field
    revoke_with_bearer: bool = False


GOOGLE_ENDPOINTS = OAuthEndpoints(
    authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
    token_url="https://oauth2.googleapis.com/token",
    revoke_url="https://oauth2.googleapis.com/revoke",
    scopes=[
        "https://www.googleapis.com/auth/drive.file",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
    ],
    extra_auth_params={"access_type": "offline", "prompt": "consent"},
)

DROPBOX_ENDPOINTS = OAuthEndpoints(
    authorize_url="https://www.dropbox.com/oauth2/authorize",
    token_url="https://api.dropboxapi.com/oauth2/token",
    revoke_url="https://api.dropboxapi.com/2/auth/token/revoke",
    extra_auth_params={"token_access_type": "offline"},
    revoke_with_bearer=True,
)


def generate_code_verifier() -> str:
    """PKCE code verifier (43-128 unreserved characters)."""
    return secrets.token_urlsafe(64)[:96]


def code_challenge(verifier: str) -> str:
    """S256 code challenge for a verifier."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class SecureTokenStore:
    """
    Secure storage for OAuth tokens.

    Tokens are encrypted at rest using Fernet symmetric encryption.
    """

    def __init__(self, storage_path: Path, encryption_key: Optional[str] = None):
        """
        Initialize token store.

        Args:
            storage_path: Directory for encrypted token files
            encryption_key: Fernet key or passphrase; falls back to
                NOTESYNC_TOKEN_ENCRYPTION_KEY
        """
        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self._cipher = self._get_cipher(encryption_key or os.environ.get(TOKEN_KEY_ENV))

    @staticmethod
    def _get_cipher(key: Optional[str]) -> Fernet:
        if not key:
            logger.warning(
                f"{TOKEN_KEY_ENV} not set. "
                "Using ephemeral key - tokens will be lost on restart."
            )
            return Fernet(Fernet.generate_key())

        # Fernet keys are 44 chars base64; derive one from anything else
        if len(key) != 44:
            key = base64.urlsafe_b64encode(hashlib.sha256(key.encode()).digest()).decode()
        return Fernet(key.encode())

    def _get_token_path(self, token_id: str) -> Path:
        safe_id = "".join(c for c in token_id if c.isalnum() or c in "_-")
        return self.storage_path / f"{safe_id}.token"

    async def store_tokens(self, token_id: str, tokens: OAuthTokens) -> None:
        token_path = self._get_token_path(token_id)
        encrypted = self._cipher.encrypt(json.dumps(tokens.to_dict()).encode())
        token_path.write_bytes(encrypted)
        logger.info(f"Stored tokens for {token_id}")

    async def get_tokens(self, token_id: str) -> Optional[OAuthTokens]:
        """
        Retrieve and decrypt tokens.

        Returns:
            OAuth tokens if found and readable, None otherwise
        """
        token_path = self._get_token_path(token_id)
        if not token_path.exists():
            return None

        try:
            decrypted = self._cipher.decrypt(token_path.read_bytes())
            return OAuthTokens.from_dict(json.loads(decrypted.decode()))
        except (InvalidToken, ValueError, KeyError) as e:
            logger.error(f"Failed to decrypt tokens for {token_id}: {e}")
            return None

    async def delete_tokens(self, token_id: str) -> bool:
        token_path = self._get_token_path(token_id)
        if token_path.exists():
            token_path.unlink()
            logger.info(f"Deleted tokens for {token_id}")
            return True
        return False

    async def has_tokens(self, token_id: str) -> bool:
        """Check if tokens exist."""
        return self._get_token_path(token_id).exists()


class OAuthFlow:
    """
    Authorization code flow with PKCE for one provider.
    """

    def __init__(
        self,
        provider: str,
        endpoints: OAuthEndpoints,
        client_id: str,
        token_store: SecureTokenStore,
        redirect_uri: str,
        client_secret: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.provider = provider
        self.endpoints = endpoints
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.token_store = token_store
        self._http = http_client
        self._pending_states: Dict[str, OAuthState] = {}

    @property
    def token_id(self) -> str:
        return f"{self.provider}_oauth"

    def is_configured(self) -> bool:
        return bool(self.client_id)

    def build_authorization_url(self) -> Tuple[str, OAuthState]:
        """
        Build the URL the user must visit to grant access.

        Returns:
            Tuple of (auth_url, pending state)
        """
        verifier = generate_code_verifier()
        state = OAuthState(
            state_token=secrets.token_urlsafe(32),
            code_verifier=verifier,
            redirect_uri=self.redirect_uri,
        )
        self._pending_states[state.state_token] = state
        self._cleanup_expired_states()

        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "state": state.state_token,
            "code_challenge": code_challenge(verifier),
            "code_challenge_method": "S256",
            **self.endpoints.extra_auth_params,
        }
        if self.endpoints.scopes:
            params["scope"] = " ".join(self.endpoints.scopes)

        return f"{self.endpoints.authorize_url}?{urlencode(params)}", state

    def validate_state(self, state_token: str) -> Optional[OAuthState]:
        """Pop a pending state; None if unknown or expired."""
        state = self._pending_states.pop(state_token, None)
        if state is None or state.is_expired():
            return None
        return state

    async def exchange_code(self, code: str, state: OAuthState) -> OAuthTokens:
        """
        Exchange an authorization code for tokens and store them.

        Raises:
            AuthFailedError: The provider rejected the code
        """
        payload = {
            "client_id": self.client_id,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": state.redirect_uri,
            "code_verifier": state.code_verifier,
        }
        if self.client_secret:
            payload["client_secret"] = self.client_secret

        data = await self._token_request(payload, "exchange_code")
        tokens = self._tokens_from_response(data)
        await self.token_store.store_tokens(self.token_id, tokens)
        return tokens

    async def refresh(self, tokens: Optional[OAuthTokens] = None) -> Optional[OAuthTokens]:
        """
        Refresh the access token.

        Returns:
            New tokens, or None if no refresh token is available
        """
        tokens = tokens or await self.token_store.get_tokens(self.token_id)
        if not tokens or not tokens.refresh_token:
            return None

        payload = {
            "client_id": self.client_id,
            "refresh_token": tokens.refresh_token,
            "grant_type": "refresh_token",
        }
        if self.client_secret:
            payload["client_secret"] = self.client_secret

        data = await self._token_request(payload, "refresh")
        new_tokens = self._tokens_from_response(data, previous=tokens)
        await self.token_store.store_tokens(self.token_id, new_tokens)
        return new_tokens

    async def get_valid_tokens(self) -> Optional[OAuthTokens]:
        """Get stored tokens, refreshing them if expired."""
        tokens = await self.token_store.get_tokens(self.token_id)
        if not tokens:
            return None
        if tokens.is_expired():
            try:
                tokens = await self.refresh(tokens)
            except AuthFailedError as e:
                logger.warning(f"Stored {self.provider} refresh token rejected: {e}")
                return None
        return tokens

    async def revoke(self, tokens: Optional[OAuthTokens] = None) -> bool:
        """
        Revoke the token at the provider (best effort) and delete it locally.

        Returns:
            True if the provider confirmed revocation
        """
        tokens = tokens or await self.token_store.get_tokens(self.token_id)
        revoked = False

        if tokens and self.endpoints.revoke_url:
            try:
                async with self._client() as client:
                    if self.endpoints.revoke_with_bearer:
                        response = await client.post(
                            self.endpoints.revoke_url,
                            headers={"Authorization": f"Bearer {tokens.access_token}"},
                        )
                    else:
                        response = await client.post(
                            self.endpoints.revoke_url,
                            data={"token": tokens.refresh_token or tokens.access_token},
                        )
                revoked = response.status_code < 400
                if not revoked:
                    logger.warning(f"{self.provider} token revoke returned HTTP {response.status_code}")
            except httpx.HTTPError as e:
                logger.warning(f"{self.provider} token revoke failed: {e}")

        await self.token_store.delete_tokens(self.token_id)
        return revoked

    async def _token_request(self, payload: Dict[str, str], operation: str) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.post(self.endpoints.token_url, data=payload)
        except httpx.HTTPError as e:
            raise transport_error(e, operation, self.provider)

        if response.status_code in (400, 401):
            raise AuthFailedError(
                message=f"{self.provider} token {operation} rejected: {response.text[:200]}",
                context=create_error_context(
                    operation=operation, provider=self.provider, status_code=response.status_code
                ),
            )
        raise_for_response(response, operation, self.provider)
        return response.json()

    @staticmethod
    def _tokens_from_response(data: Dict[str, Any], previous: Optional[OAuthTokens] = None) -> OAuthTokens:
        expires_at = None
        if "expires_in" in data:
            expires_at = utcnow() + timedelta(seconds=int(data["expires_in"]))

        # Keep existing refresh token if not returned
        refresh_token = data.get("refresh_token") or (previous.refresh_token if previous else "")
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=refresh_token,
            token_type=data.get("token_type", "Bearer"),
            expires_at=expires_at,
            scope=data.get("scope", previous.scope if previous else ""),
        )

    def _client(self) -> "_ClientContext":
        return _ClientContext(self._http)

    def _cleanup_expired_states(self) -> None:
        expired = [token for token, state in self._pending_states.items() if state.is_expired()]
        for token in expired:
            del self._pending_states[token]


class _ClientContext:
    """Use an injected client as-is, or open a short-lived one."""

    def __init__(self, client: Optional[httpx.AsyncClient]):
        self._shared = client
        self._owned: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> httpx.AsyncClient:
        if self._shared is not None:
            return self._shared
        self._owned = httpx.AsyncClient(timeout=30.0)
        return self._owned

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._owned is not None:
            await self._owned.aclose()


class OAuthRemoteStore(RemoteStore):
    """
    Session handling shared by providers that authorize through OAuthFlow.

    Subclasses implement the storage calls and use `_access_token()` to get
    a usable bearer token.
    """

    def __init__(
        self,
        flow: OAuthFlow,
        authorization_handler: Optional[AuthorizationHandler] = None,
        retention_count: int = DEFAULT_RETENTION_COUNT,
    ):
        self.flow = flow
        self.authorization_handler = authorization_handler
        self.retention_count = retention_count
        self._tokens: Optional[OAuthTokens] = None

    @property
    def provider_name(self) -> str:
        return self.flow.provider

    @property
    def is_authenticated(self) -> bool:
        if self._tokens is None:
            return False
        return not self._tokens.is_expired() or bool(self._tokens.refresh_token)

    async def initialize(self) -> None:
        if not self.flow.is_configured():
            raise ProviderInitError(
                message=f"{self.provider_name} client id is not configured",
                context=create_error_context(operation="initialize", provider=self.provider_name),
            )

    async def restore_session(self) -> bool:
        await self.initialize()
        tokens = await self.flow.get_valid_tokens()
        if tokens is None:
            return False
        self._tokens = tokens
        logger.info(f"Restored {self.provider_name} session from stored tokens")
        return True

    async def sign_in(self) -> None:
        if await self.restore_session():
            return

        if self.authorization_handler is None:
            raise AuthFailedError(
                message=f"No stored {self.provider_name} session and no interactive authorization available",
                context=create_error_context(operation="sign_in", provider=self.provider_name),
            )

        url, state = self.flow.build_authorization_url()
        logger.info(f"Waiting for {self.provider_name} authorization")
        code = await self.authorization_handler(url)
        if not code:
            raise AuthFailedError(
                message=f"{self.provider_name} authorization was cancelled",
                context=create_error_context(operation="sign_in", provider=self.provider_name),
            )

        self._tokens = await self.flow.exchange_code(code, state)
        logger.info(f"Signed in to {self.provider_name}")

    async def sign_out(self) -> None:
        await self.flow.revoke(self._tokens)
        self._tokens = None
        logger.info(f"Signed out of {self.provider_name}")

    async def _access_token(self) -> str:
        """
        Get a bearer token, refreshing it when expired.

        Raises:
            AuthRequiredError: Not signed in
        """
        if self._tokens is not None and self._tokens.is_expired():
            self._tokens = await self.flow.refresh(self._tokens)
        if self._tokens is None:
            raise AuthRequiredError(
                message=f"Not signed in to {self.provider_name}",
                context=create_error_context(provider=self.provider_name),
            )
        return self._tokens.access_token
