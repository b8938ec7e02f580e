# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Remote Destinations - One bounded transfer unit per call.

Each destination knows how to push one unit of a file (a whole small file,
or one chunk of a resumable session) and how to fetch one byte range back.
Session cursors live in the caller's DestinationProgress, never in the
destination object, so an object only lives for a single step.

Layout on every destination: ``<remote_folder>/<backup_id>/<file name>``
(S3 keys are additionally prefixed with ``s3_prefix``).
"""

import json
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict

import httpx
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from rbackup.config import BackupConfig, Destination
from rbackup.core import PipelineState
from rbackup.exceptions import DestinationAuthError, DestinationError
from rbackup.state import DestinationProgress, UploadSession

logger = structlog.get_logger()

MIB = 1024 * 1024

# Refresh access tokens this many seconds before they expire
TOKEN_EXPIRY_MARGIN = 60

HTTP_TIMEOUT = httpx.Timeout(60.0, connect=15.0)


def _read_chunk(path: Path, offset: int, size: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(offset)
        return f.read(size)


def _unit_size(config: BackupConfig, default: int, minimum: int = 1) -> int:
    if config.transfer_chunk_mb:
        return max(config.transfer_chunk_mb * MIB, minimum)
    return default


class RemoteDestination:
    """Common interface of remote destinations."""

    name: str = ""
    label: str = ""

    def __init__(self, config: BackupConfig):
        self.config = config

    async def authenticate(self, progress: DestinationProgress | None = None) -> None:
        """Make sure a usable credential is available."""

    async def upload_unit(
        self, progress: DestinationProgress, path: Path, backup_id: str
    ) -> bool:
        """
        Push one unit of ``path``.

        Creates or advances ``progress.session``.

        Returns:
            True once the whole file is stored remotely
        """
        raise NotImplementedError

    async def abort(self, session: UploadSession, backup_id: str) -> None:
        """Release a half-finished remote session."""

    async def remote_size(self, backup_id: str, file_name: str) -> int:
        raise NotImplementedError

    async def download_range(
        self, backup_id: str, file_name: str, offset: int, length: int
    ) -> bytes:
        raise NotImplementedError

    @property
    def download_unit(self) -> int:
        return _unit_size(self.config, 8 * MIB)


# ============================================================================
# Amazon S3 (and compatible endpoints)
# ============================================================================


class S3Destination(RemoteDestination):
    """
    S3 via aiobotocore.

    Files up to one part are stored with put_object; larger files use a
    multipart upload with one part per call. Re-sending a part after a crash
    overwrites the same part number, so a repeated unit is harmless.
    """

    name = Destination.S3.value
    label = "S3"

    # S3 rejects non-final parts below 5 MiB
    MIN_PART_SIZE = 5 * MIB
    DEFAULT_PART_SIZE = 8 * MIB

    def __init__(self, config: BackupConfig, client: Any):
        super().__init__(config)
        self.client = client

    @property
    def part_size(self) -> int:
        return _unit_size(self.config, self.DEFAULT_PART_SIZE, self.MIN_PART_SIZE)

    def key_for(self, backup_id: str, file_name: str) -> str:
        parts = [self.config.s3_prefix.strip("/"), self.config.remote_folder, backup_id, file_name]
        return "/".join(p for p in parts if p)

    async def upload_unit(
        self, progress: DestinationProgress, path: Path, backup_id: str
    ) -> bool:
        bucket = self.config.s3_bucket
        key = self.key_for(backup_id, path.name)
        size = path.stat().st_size

        try:
            if progress.session is None:
                if size <= self.part_size:
                    await self.client.put_object(
                        Bucket=bucket, Key=key, Body=_read_chunk(path, 0, size)
                    )
                    return True
                response = await self.client.create_multipart_upload(Bucket=bucket, Key=key)
                progress.session = UploadSession(file_name=path.name, token=response["UploadId"])

            session = progress.session
            chunk = _read_chunk(path, session.offset, self.part_size)
            part_number = len(session.parts) + 1
            response = await self.client.upload_part(
                Bucket=bucket,
                Key=key,
                UploadId=session.token,
                PartNumber=part_number,
                Body=chunk,
            )
            session.parts.append({"PartNumber": part_number, "ETag": response["ETag"]})
            session.offset += len(chunk)

            if session.offset < size:
                return False

            await self.client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=session.token,
                MultipartUpload={"Parts": session.parts},
            )
            return True

        except (ClientError, BotoCoreError) as e:
            raise DestinationError(
                f"S3 upload of {path.name} failed: {e}",
                details={"destination": self.name, "key": key},
            )

    async def abort(self, session: UploadSession, backup_id: str) -> None:
        if not session.token:
            return
        key = self.key_for(backup_id, session.file_name)
        try:
            await self.client.abort_multipart_upload(
                Bucket=self.config.s3_bucket, Key=key, UploadId=session.token
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning("s3_multipart_abort_failed", key=key, error=str(e))

    async def remote_size(self, backup_id: str, file_name: str) -> int:
        key = self.key_for(backup_id, file_name)
        try:
            response = await self.client.head_object(Bucket=self.config.s3_bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise DestinationError(
                f"S3 object not available: {key}: {e}",
                details={"destination": self.name, "key": key},
            )
        return int(response["ContentLength"])

    async def download_range(
        self, backup_id: str, file_name: str, offset: int, length: int
    ) -> bytes:
        key = self.key_for(backup_id, file_name)
        try:
            response = await self.client.get_object(
                Bucket=self.config.s3_bucket,
                Key=key,
                Range=f"bytes={offset}-{offset + length - 1}",
            )
            async with response["Body"] as stream:
                return await stream.read()
        except (ClientError, BotoCoreError) as e:
            raise DestinationError(
                f"S3 download of {file_name} failed: {e}",
                details={"destination": self.name, "key": key},
            )


# ============================================================================
# HTTP destinations
# ============================================================================


class _HttpDestination(RemoteDestination):
    """Shared token handling for OAuth2 refresh-token destinations."""

    token_url: str = ""

    def __init__(self, config: BackupConfig, client: httpx.AsyncClient):
        super().__init__(config)
        self.client = client
        self.access_token: str | None = None

    def _token_request(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def authenticate(self, progress: DestinationProgress | None = None) -> None:
        """
        Reuse the cached access token or trade the refresh token for a new one.

        Raises:
            DestinationAuthError: If the token endpoint rejects the refresh
        """
        if progress and progress.access_token and progress.token_expires_at:
            if time.time() < progress.token_expires_at - TOKEN_EXPIRY_MARGIN:
                self.access_token = progress.access_token
                return

        try:
            response = await self.client.post(self.token_url, **self._token_request())
        except httpx.HTTPError as e:
            raise DestinationAuthError(
                f"{self.label} token refresh failed: {e}",
                details={"destination": self.name},
            )

        body = _json_body(response)
        if response.status_code != 200 or "access_token" not in body:
            reason = body.get("error_description") or body.get("error") or f"HTTP {response.status_code}"
            raise DestinationAuthError(
                f"{self.label} token refresh failed: {reason}",
                details={"destination": self.name, "status": response.status_code},
            )

        self.access_token = body["access_token"]
        if progress is not None:
            progress.access_token = self.access_token
            progress.token_expires_at = time.time() + int(body.get("expires_in", 3600))

        logger.debug("destination_token_refreshed", destination=self.name)

    @property
    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def _check(self, response: httpx.Response, action: str, ok: tuple = (200,)) -> None:
        if response.status_code in ok:
            return
        error_cls = DestinationAuthError if response.status_code == 401 else DestinationError
        raise error_cls(
            f"{self.label} {action} failed: HTTP {response.status_code}",
            details={"destination": self.name, "body": response.text[:200]},
        )

    async def _send(self, method: str, url: str, action: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise DestinationError(
                f"{self.label} {action} failed: {e}",
                details={"destination": self.name},
            )


def _range_body(response: httpx.Response, offset: int, length: int) -> bytes:
    # A 200 carries the whole file when the server ignored the Range header
    if response.status_code == 200:
        return response.content[offset : offset + length]
    return response.content


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class DropboxDestination(_HttpDestination):
    """
    Dropbox API v2.

    Files below the chunk size use files/upload. Larger files go through an
    upload session: start with the first chunk, append_v2 for middle chunks,
    finish with the last one.
    """

    name = Destination.DROPBOX.value
    label = "Dropbox"

    token_url = "https://api.dropbox.com/oauth2/token"
    api_url = "https://api.dropboxapi.com/2"
    content_url = "https://content.dropboxapi.com/2"

    DEFAULT_CHUNK_SIZE = 4 * MIB

    @property
    def chunk_size(self) -> int:
        return _unit_size(self.config, self.DEFAULT_CHUNK_SIZE)

    @property
    def download_unit(self) -> int:
        return self.chunk_size

    def _token_request(self) -> Dict[str, Any]:
        return {
            "auth": (self.config.dropbox_app_key, self.config.dropbox_app_secret),
            "data": {
                "grant_type": "refresh_token",
                "refresh_token": self.config.dropbox_refresh_token,
            },
        }

    def path_for(self, backup_id: str, file_name: str) -> str:
        return f"/{self.config.remote_folder}/{backup_id}/{file_name}"

    @staticmethod
    def _correct_offset(response: httpx.Response) -> int | None:
        """Offset Dropbox holds for the session, from an incorrect_offset error."""
        if response.status_code != 409:
            return None
        error = _json_body(response).get("error")
        # finish nests the session error under lookup_failed
        if isinstance(error, dict) and isinstance(error.get("lookup_failed"), dict):
            error = error["lookup_failed"]
        if isinstance(error, dict) and error.get(".tag") == "incorrect_offset":
            return int(error["correct_offset"])
        return None

    def _content_headers(self, arg: Dict[str, Any]) -> Dict[str, str]:
        return {
            **self.auth_headers,
            "Content-Type": "application/octet-stream",
            "Dropbox-API-Arg": json.dumps(arg),
        }

    async def upload_unit(
        self, progress: DestinationProgress, path: Path, backup_id: str
    ) -> bool:
        size = path.stat().st_size
        commit = {
            "path": self.path_for(backup_id, path.name),
            "mode": "overwrite",
            "autorename": False,
            "mute": True,
        }

        if progress.session is None:
            chunk = _read_chunk(path, 0, self.chunk_size)
            if size < self.chunk_size:
                response = await self._send(
                    "POST",
                    f"{self.content_url}/files/upload",
                    "upload",
                    headers=self._content_headers(commit),
                    content=chunk,
                )
                self._check(response, "upload")
                return True

            response = await self._send(
                "POST",
                f"{self.content_url}/files/upload_session/start",
                "session start",
                headers=self._content_headers({"close": False}),
                content=chunk,
            )
            self._check(response, "session start")
            session_id = _json_body(response).get("session_id")
            if not session_id:
                raise DestinationError(
                    "Dropbox session start returned no session id",
                    details={"destination": self.name},
                )
            progress.session = UploadSession(
                file_name=path.name, token=session_id, offset=len(chunk)
            )
            return False

        session = progress.session
        chunk = _read_chunk(path, session.offset, self.chunk_size)
        cursor = {"session_id": session.token, "offset": session.offset}

        if session.offset + len(chunk) >= size:
            response = await self._send(
                "POST",
                f"{self.content_url}/files/upload_session/finish",
                "session finish",
                headers=self._content_headers({"cursor": cursor, "commit": commit}),
                content=chunk,
            )
            if self._resync(session, response):
                return False
            self._check(response, "session finish")
            return True

        response = await self._send(
            "POST",
            f"{self.content_url}/files/upload_session/append_v2",
            "session append",
            headers=self._content_headers({"cursor": cursor, "close": False}),
            content=chunk,
        )
        if self._resync(session, response):
            return False
        self._check(response, "session append")
        session.offset += len(chunk)
        return False

    def _resync(self, session: UploadSession, response: httpx.Response) -> bool:
        # A repeated unit after a lost step; continue from the server offset
        corrected = self._correct_offset(response)
        if corrected is None:
            return False
        logger.info(
            "dropbox_session_offset_corrected",
            file=session.file_name,
            offset=session.offset,
            correct_offset=corrected,
        )
        session.offset = corrected
        return True

    async def remote_size(self, backup_id: str, file_name: str) -> int:
        response = await self._send(
            "POST",
            f"{self.api_url}/files/get_metadata",
            "metadata lookup",
            headers=self.auth_headers,
            json={"path": self.path_for(backup_id, file_name)},
        )
        self._check(response, "metadata lookup")
        return int(_json_body(response).get("size", 0))

    async def download_range(
        self, backup_id: str, file_name: str, offset: int, length: int
    ) -> bytes:
        response = await self._send(
            "POST",
            f"{self.content_url}/files/download",
            "download",
            headers={
                **self.auth_headers,
                "Dropbox-API-Arg": json.dumps({"path": self.path_for(backup_id, file_name)}),
                "Range": f"bytes={offset}-{offset + length - 1}",
            },
        )
        self._check(response, "download", ok=(200, 206))
        return _range_body(response, offset, length)


class GDriveDestination(_HttpDestination):
    """
    Google Drive API v3.

    Files are stored in ``<remote_folder>/<backup_id>`` and sent through a
    resumable upload session in fixed units; the server answers 308 until
    the final unit lands.
    """

    name = Destination.GDRIVE.value
    label = "Google Drive"

    token_url = "https://oauth2.googleapis.com/token"
    files_url = "https://www.googleapis.com/drive/v3/files"
    upload_url = "https://www.googleapis.com/upload/drive/v3/files"

    FOLDER_MIME = "application/vnd.google-apps.folder"
    DEFAULT_CHUNK_SIZE = 2 * MIB

    @property
    def chunk_size(self) -> int:
        return _unit_size(self.config, self.DEFAULT_CHUNK_SIZE)

    @property
    def download_unit(self) -> int:
        return self.chunk_size

    def _token_request(self) -> Dict[str, Any]:
        return {
            "data": {
                "client_id": self.config.gdrive_client_id,
                "client_secret": self.config.gdrive_client_secret,
                "refresh_token": self.config.gdrive_refresh_token,
                "grant_type": "refresh_token",
            }
        }

    async def _find(self, name: str, parent_id: str | None = None, folder: bool = True) -> str | None:
        escaped = name.replace("\\", "\\\\").replace("'", "\\'")
        query = f"name = '{escaped}' and trashed = false"
        if folder:
            query += f" and mimeType = '{self.FOLDER_MIME}'"
        if parent_id:
            query += f" and '{parent_id}' in parents"

        response = await self._send(
            "GET",
            self.files_url,
            "lookup",
            headers=self.auth_headers,
            params={"q": query, "fields": "files(id, name)"},
        )
        self._check(response, "lookup")
        files = _json_body(response).get("files") or []
        return files[0]["id"] if files else None

    async def _create_folder(self, name: str, parent_id: str | None = None) -> str:
        metadata: Dict[str, Any] = {"name": name, "mimeType": self.FOLDER_MIME}
        if parent_id:
            metadata["parents"] = [parent_id]
        response = await self._send(
            "POST", self.files_url, "folder create", headers=self.auth_headers, json=metadata
        )
        self._check(response, "folder create")
        folder_id = _json_body(response).get("id")
        if not folder_id:
            raise DestinationError(
                "Google Drive folder create returned no id",
                details={"destination": self.name, "folder": name},
            )
        return folder_id

    async def backup_folder(self, backup_id: str, create: bool = True) -> str | None:
        """Id of ``<remote_folder>/<backup_id>``, created on demand."""
        root_name = self.config.remote_folder
        root_id = await self._find(root_name)
        if root_id is None:
            if not create:
                return None
            root_id = await self._create_folder(root_name)

        folder_id = await self._find(backup_id, root_id)
        if folder_id is None and create:
            folder_id = await self._create_folder(backup_id, root_id)
        return folder_id

    async def upload_unit(
        self, progress: DestinationProgress, path: Path, backup_id: str
    ) -> bool:
        if progress.folder_id is None:
            progress.folder_id = await self.backup_folder(backup_id)

        size = path.stat().st_size

        if progress.session is None:
            response = await self._send(
                "POST",
                self.upload_url,
                "session start",
                params={"uploadType": "resumable"},
                headers={
                    **self.auth_headers,
                    "Content-Type": "application/json; charset=UTF-8",
                    "X-Upload-Content-Type": "application/octet-stream",
                    "X-Upload-Content-Length": str(size),
                },
                json={"name": path.name, "parents": [progress.folder_id]},
            )
            self._check(response, "session start")
            location = response.headers.get("location")
            if not location:
                raise DestinationError(
                    "Google Drive session start returned no upload URL",
                    details={"destination": self.name},
                )
            progress.session = UploadSession(file_name=path.name, token=location)

        session = progress.session
        chunk = _read_chunk(path, session.offset, self.chunk_size)
        if chunk:
            content_range = f"bytes {session.offset}-{session.offset + len(chunk) - 1}/{size}"
        else:
            content_range = f"bytes */{size}"

        response = await self._send(
            "PUT",
            session.token,
            "chunk upload",
            headers={"Content-Range": content_range},
            content=chunk,
        )

        if response.status_code == 308:
            # Range header reports what the server has; trust it over our count
            received = response.headers.get("range")
            if received and "-" in received:
                session.offset = int(received.rsplit("-", 1)[1]) + 1
            else:
                # No Range header means nothing was persisted yet
                session.offset = 0
            return False

        self._check(response, "chunk upload", ok=(200, 201))
        return True

    async def _file_id(self, backup_id: str, file_name: str) -> str:
        folder_id = await self.backup_folder(backup_id, create=False)
        file_id = await self._find(file_name, folder_id, folder=False) if folder_id else None
        if file_id is None:
            raise DestinationError(
                f"Google Drive file not found: {backup_id}/{file_name}",
                details={"destination": self.name},
            )
        return file_id

    async def remote_size(self, backup_id: str, file_name: str) -> int:
        file_id = await self._file_id(backup_id, file_name)
        response = await self._send(
            "GET",
            f"{self.files_url}/{file_id}",
            "metadata lookup",
            headers=self.auth_headers,
            params={"fields": "size"},
        )
        self._check(response, "metadata lookup")
        return int(_json_body(response).get("size", 0))

    async def download_range(
        self, backup_id: str, file_name: str, offset: int, length: int
    ) -> bytes:
        file_id = await self._file_id(backup_id, file_name)
        response = await self._send(
            "GET",
            f"{self.files_url}/{file_id}",
            "download",
            headers={**self.auth_headers, "Range": f"bytes={offset}-{offset + length - 1}"},
            params={"alt": "media"},
        )
        self._check(response, "download", ok=(200, 206))
        return _range_body(response, offset, length)


# ============================================================================
# Factory
# ============================================================================


@asynccontextmanager
async def open_destination(
    name: str | Destination,
    config: BackupConfig,
    state: PipelineState,
) -> AsyncIterator[RemoteDestination]:
    """
    Open a remote destination for the duration of one step.

    Clients are created here and closed on exit; nothing is held across steps.

    Args:
        name: Destination name (s3, dropbox, gdrive)
        config: Backup configuration with the destination's credentials
        state: Pipeline state providing the S3 session and HTTP transport

    Raises:
        DestinationError: For unknown or non-remote destinations
    """
    destination = Destination(name)

    if destination is Destination.S3:
        async with state["s3_session"].create_client(
            "s3",
            region_name=config.s3_region,
            endpoint_url=config.s3_endpoint_url,
        ) as client:
            yield S3Destination(config, client)
        return

    if destination in (Destination.DROPBOX, Destination.GDRIVE):
        cls = DropboxDestination if destination is Destination.DROPBOX else GDriveDestination
        async with httpx.AsyncClient(
            timeout=HTTP_TIMEOUT,
            transport=state["http_transport"],
        ) as client:
            yield cls(config, client)
        return

    raise DestinationError(
        f"Not a remote destination: {destination.value}",
        details={"destination": destination.value},
    )
