"""
Google Drive side of the Tasker backup.

Holds the credential provider, a thin adapter over the Drive v3 ``files``
resource, and the remote steps the backup run composes: resolving the backup
folder, locating and deleting a previous archive, and uploading the new one.
The steps only depend on the small adapter surface (``list_items``,
``create_container``, ``create_object``, ``delete_item``) so they can run
against any object providing it.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from google.auth.exceptions import GoogleAuthError, TransportError
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
ZIP_MIME_TYPE = "application/zip"
DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive.file"]
UPLOAD_CHUNK_SIZE = 5 * 1024 * 1024
LIST_PAGE_SIZE = 1000
NOISY_LOGGERS = ("googleapiclient", "google_auth_httplib2", "google.auth", "urllib3")


class AuthError(Exception):
    """Raised when Drive credentials cannot be loaded, refreshed or granted."""


class RemoteApiError(Exception):
    """Raised when a Drive call fails in transport or is rejected."""


class UploadStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not UploadStatus.PENDING


@dataclass(frozen=True)
class DriveItem:
    id: str
    name: str
    mime_type: str
    parents: Tuple[str, ...] = ()


@dataclass(frozen=True)
class UploadProgress:
    bytes_sent: int
    status: UploadStatus


@dataclass(frozen=True)
class UploadOutcome:
    bytes_sent: int
    completed: bool
    status: UploadStatus


ItemPredicate = Callable[[DriveItem], bool]


def quiet_external_loggers() -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# -- Credentials ---------------------------------------------------------------


def _read_client_secrets(client_secrets_path: Path) -> Dict[str, Any]:
    if not client_secrets_path.exists():
        raise AuthError(f"Client secrets file {client_secrets_path} does not exist.")
    try:
        payload = json.loads(client_secrets_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as error:
        raise AuthError(
            f"Client secrets file {client_secrets_path} could not be read: {error}"
        ) from error
    if not isinstance(payload, dict):
        raise AuthError(f"Client secrets file {client_secrets_path} is malformed.")
    return payload


def _run_consent_flow(client_secrets_path: Path, scopes: Sequence[str]):
    try:
        from google_auth_oauthlib.flow import InstalledAppFlow  # type: ignore[import]
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "google-auth-oauthlib is required for the first Google Drive authorization. "
            "Install with `pip install google-auth-oauthlib`."
        ) from exc

    from oauthlib.oauth2 import OAuth2Error

    flow = InstalledAppFlow.from_client_secrets_file(str(client_secrets_path), list(scopes))
    try:
        return flow.run_local_server(port=0)
    except OAuth2Error as error:
        raise AuthError(f"Google Drive consent was not granted: {error}") from error


def _save_token(credentials, token_path: Path) -> None:
    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(credentials.to_json(), encoding="utf-8")
    logger.debug("Credential token saved to %s", token_path)


def authorize(
    client_secrets_path: Path,
    token_path: Path,
    scopes: Sequence[str] = DRIVE_SCOPES,
):
    """Return Drive credentials, prompting for consent only on first use.

    Service-account keys are used directly. OAuth client secrets go through the
    persisted token in ``token_path``: valid tokens are reused, expired ones are
    refreshed silently, and a missing token starts the interactive consent flow.
    """
    from google.auth.transport.requests import Request
    from google.oauth2 import service_account
    from google.oauth2.credentials import Credentials

    secrets = _read_client_secrets(client_secrets_path)

    try:
        if secrets.get("type") == "service_account":
            logger.debug("Using service account credentials from %s", client_secrets_path)
            return service_account.Credentials.from_service_account_info(
                secrets, scopes=list(scopes)
            )

        credentials = None
        if token_path.exists():
            credentials = Credentials.from_authorized_user_file(str(token_path), list(scopes))

        if credentials is not None and credentials.valid:
            return credentials

        if credentials is not None and credentials.expired and credentials.refresh_token:
            logger.debug("Refreshing expired Drive token from %s", token_path)
            credentials.refresh(Request())
        else:
            logger.info("No usable Drive token at %s, starting authorization flow", token_path)
            credentials = _run_consent_flow(client_secrets_path, scopes)
    except (GoogleAuthError, ValueError, OSError) as error:
        raise AuthError(f"Google Drive authorization failed: {error}") from error

    _save_token(credentials, token_path)
    return credentials


# -- Drive adapter -------------------------------------------------------------


def _execute(request, action: str):
    try:
        return request.execute()
    except HttpError as error:
        raise RemoteApiError(f"Drive {action} failed: {error}") from error
    except (TransportError, OSError) as error:
        raise RemoteApiError(f"Drive {action} failed: {error}") from error


class GoogleUploadHandle:
    """A resumable Drive upload advanced one chunk per ``poll``."""

    def __init__(self, request, total_bytes: int) -> None:
        self._request = request
        self._total_bytes = total_bytes
        self._bytes_sent = 0
        self.file_id: Optional[str] = None

    def poll(self) -> UploadProgress:
        try:
            progress, response = self._request.next_chunk()
        except HttpError as error:
            raise RemoteApiError(f"Drive upload failed: {error}") from error
        except (TransportError, OSError) as error:
            raise RemoteApiError(f"Drive upload failed: {error}") from error

        if response is not None:
            self.file_id = response.get("id")
            self._bytes_sent = self._total_bytes
            return UploadProgress(self._bytes_sent, UploadStatus.COMPLETED)

        if progress is not None:
            self._bytes_sent = progress.resumable_progress
        return UploadProgress(self._bytes_sent, UploadStatus.PENDING)


class GoogleDriveApi:
    def __init__(self, service) -> None:
        self.service = service

    def list_items(self) -> List[DriveItem]:
        items: List[DriveItem] = []
        page_token: Optional[str] = None

        while True:
            response = _execute(
                self.service.files().list(
                    q="trashed = false",
                    spaces="drive",
                    pageSize=LIST_PAGE_SIZE,
                    fields="nextPageToken, files(id, name, mimeType, parents)",
                    pageToken=page_token,
                ),
                "list",
            )
            for file_info in response.get("files", []):
                items.append(
                    DriveItem(
                        id=file_info["id"],
                        name=file_info.get("name", ""),
                        mime_type=file_info.get("mimeType", ""),
                        parents=tuple(file_info.get("parents", [])),
                    )
                )
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        return items

    def create_container(self, name: str) -> str:
        metadata = {"name": name, "mimeType": FOLDER_MIME_TYPE}
        response = _execute(
            self.service.files().create(body=metadata, fields="id"), "folder create"
        )
        return response["id"]

    def create_object(self, name: str, parent_id: str, local_path: Path) -> GoogleUploadHandle:
        media = MediaFileUpload(
            str(local_path),
            mimetype=ZIP_MIME_TYPE,
            chunksize=UPLOAD_CHUNK_SIZE,
            resumable=True,
        )
        metadata = {"name": name, "parents": [parent_id]}
        request = self.service.files().create(body=metadata, media_body=media, fields="id")
        return GoogleUploadHandle(request, local_path.stat().st_size)

    def delete_item(self, item_id: str) -> None:
        _execute(self.service.files().delete(fileId=item_id), "delete")


def build_drive_api(credentials) -> GoogleDriveApi:
    try:
        from googleapiclient.discovery import build  # type: ignore[import]
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "google-api-python-client is required for Google Drive operations. "
            "Install with `pip install google-api-python-client google-auth`."
        ) from exc

    quiet_external_loggers()
    service = build("drive", "v3", credentials=credentials, cache_discovery=False)
    return GoogleDriveApi(service)


# -- Backup steps --------------------------------------------------------------


def find_item(api, predicate: ItemPredicate) -> Optional[str]:
    for item in api.list_items():
        if predicate(item):
            return item.id
    return None


def delete_item(api, item_id: str) -> None:
    logger.debug("Removing Drive item %s", item_id)
    api.delete_item(item_id)


def ensure_container(api, name: str) -> str:
    """Return the id of the folder called ``name``, creating it when absent.

    The first matching folder wins; existing duplicates are left alone.
    """
    folder_id = find_item(
        api, lambda item: item.mime_type == FOLDER_MIME_TYPE and item.name == name
    )
    if folder_id:
        logger.debug("Found Drive folder %s (%s)", name, folder_id)
        return folder_id

    logger.info("Drive folder %s not found, creating it", name)
    folder_id = api.create_container(name)
    logger.info("Created Drive folder %s (%s)", name, folder_id)
    return folder_id


def backup_object_predicate(name: str, parent_id: str) -> ItemPredicate:
    def matches(item: DriveItem) -> bool:
        return (
            item.mime_type == ZIP_MIME_TYPE
            and item.name == name
            and parent_id in item.parents
        )

    return matches


def remove_existing_backup(api, name: str, parent_id: str) -> Optional[str]:
    existing_id = find_item(api, backup_object_predicate(name, parent_id))
    if existing_id is None:
        logger.debug("No existing backup %s in Drive folder %s", name, parent_id)
        return None

    logger.info("Replacing existing backup %s (%s)", name, existing_id)
    delete_item(api, existing_id)
    return existing_id


def upload_file(api, local_path: Path, parent_id: str) -> UploadOutcome:
    """Upload ``local_path`` into ``parent_id`` and poll until it settles.

    A failure before any byte is acknowledged raises ``RemoteApiError``; once
    bytes have been sent, a failure is reported as an incomplete outcome.
    """
    handle = api.create_object(local_path.name, parent_id, local_path)
    progress = UploadProgress(0, UploadStatus.PENDING)

    while not progress.status.is_terminal:
        try:
            progress = handle.poll()
        except RemoteApiError as error:
            if progress.bytes_sent == 0:
                raise
            logger.warning("Upload of %s interrupted: %s", local_path.name, error)
            progress = UploadProgress(progress.bytes_sent, UploadStatus.FAILED)
        else:
            logger.debug("Uploading %s: %d bytes sent", local_path.name, progress.bytes_sent)

    completed = progress.status is UploadStatus.COMPLETED
    log_func = logger.info if completed else logger.warning
    log_func(
        "Uploaded %s. Bytes: %d. Status: %s",
        local_path.name,
        progress.bytes_sent,
        progress.status.value,
    )
    return UploadOutcome(
        bytes_sent=progress.bytes_sent, completed=completed, status=progress.status
    )
