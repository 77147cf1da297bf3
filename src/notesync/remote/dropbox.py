"""
Dropbox snapshot store over the HTTP API v2.

Snapshots live in the app folder. Dropbox has no free-form file properties,
so each snapshot's properties are written to a `<name>.json` sidecar.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config.constants import DEFAULT_RETENTION_COUNT, SNAPSHOT_FILE_PREFIX
from ..exceptions import SnapshotNotFoundError
from ..utils import parse_timestamp
from .base import (
    AuthorizationHandler,
    ProgressCallback,
    SnapshotMetadata,
    UploadResult,
    raise_for_response,
    report_progress,
    snapshot_filename,
    transport_error,
)
from .oauth import OAuthFlow, OAuthRemoteStore

logger = logging.getLogger(__name__)

API_URL = "https://api.dropboxapi.com/2"
CONTENT_URL = "https://content.dropboxapi.com/2"
SIDECAR_SUFFIX = ".json"


class DropboxStore(OAuthRemoteStore):
    """Dropbox snapshot store using app-folder access."""

    def __init__(
        self,
        flow: OAuthFlow,
        authorization_handler: Optional[AuthorizationHandler] = None,
        folder_path: str = "",
        retention_count: int = DEFAULT_RETENTION_COUNT,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(flow, authorization_handler, retention_count)
        # "" is the app folder root
        self.folder_path = folder_path.rstrip("/")
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))

    async def close(self) -> None:
        await self._http.aclose()

    async def _rpc(self, endpoint: str, payload: Optional[Dict[str, Any]], operation: str) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {await self._access_token()}"}
        try:
            if payload is None:
                response = await self._http.post(f"{API_URL}/{endpoint}", headers=headers)
            else:
                response = await self._http.post(f"{API_URL}/{endpoint}", headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise transport_error(e, operation, self.provider_name)
        raise_for_response(response, operation, self.provider_name)
        return response.json() if response.content else {}

    async def _list_files(self) -> List[Dict[str, Any]]:
        try:
            result = await self._rpc("files/list_folder", {"path": self.folder_path}, "list_snapshots")
        except SnapshotNotFoundError:
            # Folder is created by the first upload
            return []
        entries = list(result.get("entries", []))
        while result.get("has_more"):
            result = await self._rpc(
                "files/list_folder/continue", {"cursor": result["cursor"]}, "list_snapshots"
            )
            entries.extend(result.get("entries", []))
        return [entry for entry in entries if entry.get(".tag") == "file"]

    async def list_snapshots(self) -> List[SnapshotMetadata]:
        files = await self._list_files()
        snapshots = [
            self._to_metadata(entry)
            for entry in files
            if entry["name"].startswith(SNAPSHOT_FILE_PREFIX)
            and not entry["name"].endswith(SIDECAR_SUFFIX)
        ]
        # server_modified has one-second resolution; names carry microseconds
        snapshots.sort(key=lambda s: (s.modified_time, s.name), reverse=True)
        return snapshots

    async def get_latest_snapshot_metadata(self) -> Optional[SnapshotMetadata]:
        snapshots = await self.list_snapshots()
        if not snapshots:
            return None
        latest = snapshots[0]
        latest.app_properties = await self._read_sidecar(latest.name)
        return latest

    async def upload_snapshot(
        self,
        data: bytes,
        properties: Optional[Dict[str, str]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        properties = {key: str(value) for key, value in (properties or {}).items()}
        name = snapshot_filename(properties.get("encrypted") == "true")

        report_progress(on_progress, 0.0)
        result = await self._upload(f"{self.folder_path}/{name}", data, "upload")
        report_progress(on_progress, 0.9)

        sidecar = json.dumps(properties, sort_keys=True).encode("utf-8")
        await self._upload(f"{self.folder_path}/{name}{SIDECAR_SUFFIX}", sidecar, "upload_properties")
        report_progress(on_progress, 1.0)

        snapshot = self._to_metadata(result)
        snapshot.app_properties = properties
        logger.info(f"Uploaded snapshot {snapshot.name} ({len(data)} bytes) to Dropbox")

        await self._prune_after_upload(self.retention_count)
        return UploadResult(snapshot=snapshot)

    async def download_snapshot(self, snapshot_id: str, on_progress: Optional[ProgressCallback] = None) -> bytes:
        report_progress(on_progress, 0.0)
        data = await self._download(snapshot_id, "download", on_progress)
        report_progress(on_progress, 1.0)
        return data

    async def delete_snapshot(self, snapshot_id: str) -> None:
        result = await self._rpc("files/delete_v2", {"path": snapshot_id}, "delete")
        path = (result.get("metadata") or {}).get("path_lower")
        if path:
            try:
                await self._rpc("files/delete_v2", {"path": f"{path}{SIDECAR_SUFFIX}"}, "delete_properties")
            except SnapshotNotFoundError:
                pass

    async def get_current_user(self) -> Optional[Dict[str, Any]]:
        account = await self._rpc("users/get_current_account", None, "get_user")
        if not account:
            return None
        return {
            "name": (account.get("name") or {}).get("display_name"),
            "email": account.get("email"),
        }

    async def _upload(self, path: str, data: bytes, operation: str) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {await self._access_token()}",
            "Content-Type": "application/octet-stream",
            "Dropbox-API-Arg": json.dumps({
                "path": path,
                "mode": "add",
                "autorename": True,
                "mute": True,
            }),
        }
        try:
            response = await self._http.post(f"{CONTENT_URL}/files/upload", headers=headers, content=data)
        except httpx.HTTPError as e:
            raise transport_error(e, operation, self.provider_name)
        raise_for_response(response, operation, self.provider_name)
        return response.json()

    async def _download(self, path: str, operation: str, on_progress: Optional[ProgressCallback] = None) -> bytes:
        headers = {
            "Authorization": f"Bearer {await self._access_token()}",
            "Dropbox-API-Arg": json.dumps({"path": path}),
        }
        try:
            async with self._http.stream("POST", f"{CONTENT_URL}/files/download", headers=headers) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise_for_response(response, operation, self.provider_name)

                total = int(response.headers.get("Content-Length") or 0)
                chunks = []
                received = 0
                async for chunk in response.aiter_bytes():
                    chunks.append(chunk)
                    received += len(chunk)
                    if total:
                        report_progress(on_progress, received / total)
                return b"".join(chunks)
        except httpx.HTTPError as e:
            raise transport_error(e, operation, self.provider_name)

    async def _read_sidecar(self, name: str) -> Dict[str, str]:
        try:
            raw = await self._download(f"{self.folder_path}/{name}{SIDECAR_SUFFIX}", "read_properties")
        except SnapshotNotFoundError:
            logger.warning(f"Snapshot {name} has no properties sidecar")
            return {}
        try:
            return {key: str(value) for key, value in json.loads(raw).items()}
        except (ValueError, AttributeError) as e:
            logger.warning(f"Unreadable properties sidecar for {name}: {e}")
            return {}

    @staticmethod
    def _to_metadata(entry: Dict[str, Any]) -> SnapshotMetadata:
        return SnapshotMetadata(
            id=entry.get("id") or entry.get("path_lower", ""),
            name=entry.get("name", ""),
            modified_time=parse_timestamp(entry.get("server_modified")),
            size=int(entry.get("size", 0) or 0),
        )
