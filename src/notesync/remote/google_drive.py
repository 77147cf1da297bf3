"""
Google Drive snapshot store.

Snapshots are files in an app-created folder; the sync properties are kept
in each file's appProperties. The Drive client is blocking, so every call
runs in a worker thread.
"""

import asyncio
import io
import logging
from typing import Any, Dict, List, Optional

from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload, MediaIoBaseUpload

from ..config.constants import DEFAULT_FOLDER_NAME, DEFAULT_RETENTION_COUNT, SNAPSHOT_FILE_PREFIX
from ..exceptions import AuthFailedError, NetworkTransientError, create_error_context
from ..utils import parse_timestamp
from .base import (
    AuthorizationHandler,
    ProgressCallback,
    SnapshotMetadata,
    UploadResult,
    error_for_status,
    report_progress,
    snapshot_filename,
)
from .oauth import OAuthFlow, OAuthRemoteStore

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
SNAPSHOT_MIME_TYPE = "application/zip"
ENCRYPTED_MIME_TYPE = "application/octet-stream"
FILE_FIELDS = "id, name, size, modifiedTime, appProperties"
CHUNK_SIZE = 1024 * 1024


class GoogleDriveStore(OAuthRemoteStore):
    """
    Google Drive snapshot store.

    Uses the drive.file scope, so only files this application created are
    visible.
    """

    def __init__(
        self,
        flow: OAuthFlow,
        authorization_handler: Optional[AuthorizationHandler] = None,
        folder_name: str = DEFAULT_FOLDER_NAME,
        retention_count: int = DEFAULT_RETENTION_COUNT,
    ):
        super().__init__(flow, authorization_handler, retention_count)
        self.folder_name = folder_name
        self._service = None
        self._service_token: Optional[str] = None
        self._folder_id: Optional[str] = None

    async def _get_service(self):
        """Get or create the Drive service for the current access token."""
        token = await self._access_token()
        if self._service is not None and self._service_token == token:
            return self._service

        credentials = Credentials(
            token=token,
            client_id=self.flow.client_id,
            client_secret=self.flow.client_secret or None,
            token_uri=self.flow.endpoints.token_url,
        )
        self._service = await asyncio.to_thread(
            build, 'drive', 'v3', credentials=credentials, cache_discovery=False
        )
        self._service_token = token
        return self._service

    async def _execute(self, request, operation: str) -> Any:
        """Run a prepared API request in a thread with error mapping."""
        return await self._call(request.execute, operation)

    async def _call(self, call, operation: str) -> Any:
        try:
            return await asyncio.to_thread(call)
        except HttpError as e:
            raise self._map_http_error(e, operation)
        except RefreshError as e:
            raise AuthFailedError(
                message=f"Google credentials rejected during {operation}: {e}",
                context=create_error_context(operation=operation, provider=self.provider_name),
                cause=e,
            )
        except (TransportError, OSError) as e:
            raise NetworkTransientError(
                message=f"Google Drive {operation} failed: {e}",
                context=create_error_context(operation=operation, provider=self.provider_name),
                cause=e,
            )

    def _map_http_error(self, error: HttpError, operation: str):
        status = int(getattr(error.resp, "status", 0) or 0)
        detail = str(error)
        if status == 403 and ("rateLimitExceeded" in detail or "userRateLimitExceeded" in detail):
            status = 429
        return error_for_status(status, detail[:500], operation, self.provider_name, cause=error)

    async def _ensure_folder(self) -> str:
        """Find or create the snapshot folder."""
        if self._folder_id:
            return self._folder_id

        service = await self._get_service()
        query = (
            f"name='{self.folder_name}' and mimeType='{FOLDER_MIME_TYPE}' "
            f"and 'root' in parents and trashed=false"
        )
        response = await self._execute(
            service.files().list(q=query, spaces='drive', fields='files(id)', pageSize=1),
            "find_folder",
        )
        files = response.get('files', [])

        if files:
            self._folder_id = files[0]['id']
        else:
            folder = await self._execute(
                service.files().create(
                    body={'name': self.folder_name, 'mimeType': FOLDER_MIME_TYPE},
                    fields='id',
                ),
                "create_folder",
            )
            self._folder_id = folder['id']
            logger.info(f"Created Google Drive folder: {self.folder_name}")

        return self._folder_id

    async def _query_snapshots(self, page_size: int, single_page: bool = False) -> List[SnapshotMetadata]:
        service = await self._get_service()
        folder_id = await self._ensure_folder()
        query = (
            f"'{folder_id}' in parents and trashed=false "
            f"and name contains '{SNAPSHOT_FILE_PREFIX}'"
        )

        results = []
        page_token = None
        while True:
            response = await self._execute(
                service.files().list(
                    q=query,
                    spaces='drive',
                    orderBy='modifiedTime desc',
                    fields=f'nextPageToken, files({FILE_FIELDS})',
                    pageSize=page_size,
                    pageToken=page_token,
                ),
                "list_snapshots",
            )
            results.extend(self._to_metadata(item) for item in response.get('files', []))

            page_token = response.get('nextPageToken')
            if single_page or not page_token:
                break

        return results

    async def get_latest_snapshot_metadata(self) -> Optional[SnapshotMetadata]:
        snapshots = await self._query_snapshots(page_size=1, single_page=True)
        return snapshots[0] if snapshots else None

    async def list_snapshots(self) -> List[SnapshotMetadata]:
        return await self._query_snapshots(page_size=100)

    async def upload_snapshot(
        self,
        data: bytes,
        properties: Optional[Dict[str, str]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        service = await self._get_service()
        folder_id = await self._ensure_folder()
        properties = {key: str(value) for key, value in (properties or {}).items()}
        encrypted = properties.get("encrypted") == "true"

        body = {
            'name': snapshot_filename(encrypted),
            'parents': [folder_id],
            'appProperties': properties,
        }
        media = MediaIoBaseUpload(
            io.BytesIO(data),
            mimetype=ENCRYPTED_MIME_TYPE if encrypted else SNAPSHOT_MIME_TYPE,
            chunksize=CHUNK_SIZE,
            resumable=True,
        )
        request = service.files().create(body=body, media_body=media, fields=FILE_FIELDS)

        report_progress(on_progress, 0.0)
        response = None
        while response is None:
            status, response = await self._call(request.next_chunk, "upload")
            if status is not None:
                report_progress(on_progress, status.progress())
        report_progress(on_progress, 1.0)

        snapshot = self._to_metadata(response)
        logger.info(f"Uploaded snapshot {snapshot.name} ({len(data)} bytes) to Google Drive")

        await self._prune_after_upload(self.retention_count)
        return UploadResult(snapshot=snapshot)

    async def download_snapshot(self, snapshot_id: str, on_progress: Optional[ProgressCallback] = None) -> bytes:
        service = await self._get_service()
        buffer = io.BytesIO()
        downloader = MediaIoBaseDownload(
            buffer, service.files().get_media(fileId=snapshot_id), chunksize=CHUNK_SIZE
        )

        report_progress(on_progress, 0.0)
        done = False
        while not done:
            status, done = await self._call(downloader.next_chunk, "download")
            if status is not None:
                report_progress(on_progress, status.progress())
        report_progress(on_progress, 1.0)

        return buffer.getvalue()

    async def delete_snapshot(self, snapshot_id: str) -> None:
        service = await self._get_service()
        await self._execute(service.files().delete(fileId=snapshot_id), "delete")
        logger.debug(f"Deleted Google Drive file {snapshot_id}")

    async def get_current_user(self) -> Optional[Dict[str, Any]]:
        service = await self._get_service()
        about = await self._execute(service.about().get(fields='user'), "get_user")
        user = about.get('user') or {}
        if not user:
            return None
        return {
            "name": user.get('displayName'),
            "email": user.get('emailAddress'),
        }

    async def sign_out(self) -> None:
        await super().sign_out()
        self._service = None
        self._service_token = None
        self._folder_id = None

    @staticmethod
    def _to_metadata(item: Dict[str, Any]) -> SnapshotMetadata:
        return SnapshotMetadata(
            id=item['id'],
            name=item.get('name', ''),
            modified_time=parse_timestamp(item.get('modifiedTime')),
            size=int(item.get('size', 0) or 0),
            app_properties=dict(item.get('appProperties') or {}),
        )
