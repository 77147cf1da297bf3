"""
Encryption-at-rest wrapper for any remote store.

When a passphrase is configured, archives are encrypted before upload and
flagged with an `.enc` name suffix and an `encrypted="true"` property.
Flagged archives are decrypted after download.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from ..config.constants import ENCRYPTED_EXTENSION
from ..crypto import decrypt_data, encrypt_data
from ..exceptions import PasswordRequiredError, create_error_context
from .base import ProgressCallback, RemoteStore, SnapshotMetadata, UploadResult

logger = logging.getLogger(__name__)

ZIP_MAGIC = b"PK\x03\x04"

PassphraseSource = Union[str, Callable[[], Optional[str]], None]


def is_encrypted_snapshot(metadata: SnapshotMetadata) -> bool:
    return metadata.is_encrypted or metadata.name.endswith(f".{ENCRYPTED_EXTENSION}")


class EncryptedRemoteStore(RemoteStore):
    """
    Decorator adding passphrase encryption to another RemoteStore.

    The passphrase may be a string or a callable returning the current
    passphrase (None disables encryption for new uploads).
    """

    def __init__(self, inner: RemoteStore, passphrase: PassphraseSource = None):
        self.inner = inner
        self._passphrase = passphrase
        self._known: Dict[str, SnapshotMetadata] = {}

    @property
    def passphrase(self) -> Optional[str]:
        if callable(self._passphrase):
            return self._passphrase()
        return self._passphrase

    @property
    def provider_name(self) -> str:
        return self.inner.provider_name

    @property
    def is_authenticated(self) -> bool:
        return self.inner.is_authenticated

    async def initialize(self) -> None:
        await self.inner.initialize()

    async def sign_in(self) -> None:
        await self.inner.sign_in()

    async def sign_out(self) -> None:
        self._known.clear()
        await self.inner.sign_out()

    async def restore_session(self) -> bool:
        return await self.inner.restore_session()

    async def get_current_user(self) -> Optional[Dict[str, Any]]:
        return await self.inner.get_current_user()

    async def get_latest_snapshot_metadata(self) -> Optional[SnapshotMetadata]:
        metadata = await self.inner.get_latest_snapshot_metadata()
        if metadata is not None:
            self._known[metadata.id] = metadata
        return metadata

    async def list_snapshots(self) -> List[SnapshotMetadata]:
        snapshots = await self.inner.list_snapshots()
        for metadata in snapshots:
            self._known[metadata.id] = metadata
        return snapshots

    async def upload_snapshot(
        self,
        data: bytes,
        properties: Optional[Dict[str, str]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        properties = dict(properties or {})
        passphrase = self.passphrase
        if passphrase:
            data = await asyncio.to_thread(encrypt_data, data, passphrase)
            properties["encrypted"] = "true"
            logger.debug("Encrypted snapshot before upload")
        else:
            properties.pop("encrypted", None)

        result = await self.inner.upload_snapshot(data, properties, on_progress)
        self._known[result.snapshot.id] = result.snapshot
        return result

    async def download_snapshot(self, snapshot_id: str, on_progress: Optional[ProgressCallback] = None) -> bytes:
        data = await self.inner.download_snapshot(snapshot_id, on_progress)

        metadata = self._known.get(snapshot_id)
        if metadata is not None:
            encrypted = is_encrypted_snapshot(metadata)
        else:
            encrypted = not data.startswith(ZIP_MAGIC)
        if not encrypted:
            return data

        passphrase = self.passphrase
        if not passphrase:
            raise PasswordRequiredError(
                message=f"Snapshot {snapshot_id} is encrypted and no passphrase is set",
                context=create_error_context(operation="download", snapshot_id=snapshot_id),
            )
        return await asyncio.to_thread(decrypt_data, data, passphrase)

    async def delete_snapshot(self, snapshot_id: str) -> None:
        await self.inner.delete_snapshot(snapshot_id)
        self._known.pop(snapshot_id, None)

    async def prune_snapshots(self, keep: int) -> int:
        return await self.inner.prune_snapshots(keep)
