import json
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httplib2
import pytest
from google.auth.exceptions import RefreshError
from google.oauth2 import credentials as oauth_credentials
from google.oauth2 import service_account
from googleapiclient.errors import HttpError

import tasker_drive
from fake_drive import FakeDrive
from tasker_drive import (
    FOLDER_MIME_TYPE,
    ZIP_MIME_TYPE,
    AuthError,
    GoogleDriveApi,
    RemoteApiError,
    UploadStatus,
    authorize,
    backup_object_predicate,
    delete_item,
    ensure_container,
    find_item,
    remove_existing_backup,
    upload_file,
)


def make_archive(tmp_path: Path, name: str = "03-05-2024.zip", size: int = 64) -> Path:
    path = tmp_path / name
    path.write_bytes(b"z" * size)
    return path


def http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": status}), b"{}")


# -- Folder resolution ---------------------------------------------------------


def test_ensure_container_creates_then_reuses_folder() -> None:
    drive = FakeDrive()

    first = ensure_container(drive, "Tasker")
    second = ensure_container(drive, "Tasker")

    assert first == second
    assert len(drive.folders("Tasker")) == 1


def test_ensure_container_ignores_non_folder_with_same_name() -> None:
    drive = FakeDrive()
    file_id = drive.add_item("Tasker", ZIP_MIME_TYPE)

    folder_id = ensure_container(drive, "Tasker")

    assert folder_id != file_id
    assert drive.items[folder_id].mime_type == FOLDER_MIME_TYPE


def test_ensure_container_picks_first_of_duplicate_folders() -> None:
    drive = FakeDrive()
    first = drive.add_item("Tasker", FOLDER_MIME_TYPE)
    drive.add_item("Tasker", FOLDER_MIME_TYPE)

    assert ensure_container(drive, "Tasker") == first
    assert len(drive.folders("Tasker")) == 2


# -- Locating and deleting -----------------------------------------------------


def test_find_item_returns_none_without_match() -> None:
    drive = FakeDrive()
    folder_id = drive.add_item("Tasker", FOLDER_MIME_TYPE)
    drive.add_item("03-04-2024.zip", ZIP_MIME_TYPE, parent_id=folder_id)
    drive.add_item("03-05-2024.zip", "text/plain", parent_id=folder_id)

    assert find_item(drive, backup_object_predicate("03-05-2024.zip", folder_id)) is None


def test_find_then_delete_removes_matching_backup() -> None:
    drive = FakeDrive()
    folder_id = drive.add_item("Tasker", FOLDER_MIME_TYPE)
    backup_id = drive.add_item("03-05-2024.zip", ZIP_MIME_TYPE, parent_id=folder_id)
    predicate = backup_object_predicate("03-05-2024.zip", folder_id)

    assert find_item(drive, predicate) == backup_id

    delete_item(drive, backup_id)

    assert find_item(drive, predicate) is None


def test_backup_predicate_requires_folder_membership() -> None:
    drive = FakeDrive()
    folder_id = drive.add_item("Tasker", FOLDER_MIME_TYPE)
    other_id = drive.add_item("Other", FOLDER_MIME_TYPE)
    drive.add_item("03-05-2024.zip", ZIP_MIME_TYPE, parent_id=other_id)

    assert remove_existing_backup(drive, "03-05-2024.zip", folder_id) is None
    assert drive.deleted == []


def test_delete_of_missing_item_is_reported() -> None:
    drive = FakeDrive()

    with pytest.raises(RemoteApiError):
        delete_item(drive, "item-404")


# -- Upload executor -----------------------------------------------------------


def test_upload_file_reports_completion(tmp_path: Path) -> None:
    drive = FakeDrive()
    folder_id = drive.add_item("Tasker", FOLDER_MIME_TYPE)
    archive = make_archive(tmp_path)

    outcome = upload_file(drive, archive, folder_id)

    assert outcome.completed
    assert outcome.status is UploadStatus.COMPLETED
    assert outcome.bytes_sent == 64
    assert [item.name for item in drive.children(folder_id)] == ["03-05-2024.zip"]
    assert drive.handles[0].polls == 2


@pytest.mark.parametrize("terminal", [UploadStatus.FAILED, UploadStatus.CANCELLED])
def test_upload_file_reports_incomplete_without_raising(
    tmp_path: Path, terminal: UploadStatus
) -> None:
    drive = FakeDrive(upload_script=[UploadStatus.PENDING, terminal])
    folder_id = drive.add_item("Tasker", FOLDER_MIME_TYPE)

    outcome = upload_file(drive, make_archive(tmp_path), folder_id)

    assert not outcome.completed
    assert outcome.status is terminal
    assert drive.children(folder_id) == []


def test_upload_file_raises_when_nothing_was_sent(tmp_path: Path) -> None:
    drive = FakeDrive(upload_script=[RemoteApiError("connection reset")])
    folder_id = drive.add_item("Tasker", FOLDER_MIME_TYPE)

    with pytest.raises(RemoteApiError, match="connection reset"):
        upload_file(drive, make_archive(tmp_path), folder_id)


def test_upload_file_interrupted_midway_is_incomplete(tmp_path: Path) -> None:
    drive = FakeDrive(
        upload_script=[UploadStatus.PENDING, RemoteApiError("connection reset")]
    )
    folder_id = drive.add_item("Tasker", FOLDER_MIME_TYPE)

    outcome = upload_file(drive, make_archive(tmp_path), folder_id)

    assert not outcome.completed
    assert outcome.status is UploadStatus.FAILED
    assert outcome.bytes_sent == 32


# -- Google adapter ------------------------------------------------------------


class FakeRequest:
    def __init__(self, response: Any = None, error: Optional[Exception] = None, chunks=None) -> None:
        self.response = response
        self.error = error
        self.chunks = list(chunks or [])

    def execute(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.response

    def next_chunk(self):
        step = self.chunks.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


class FakeFiles:
    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.pages: List[Dict[str, Any]] = []
        self.upload_chunks: List[Any] = []
        self.delete_error: Optional[Exception] = None

    def list(self, **kwargs: Any) -> FakeRequest:
        self.calls.append({"method": "list", **kwargs})
        return FakeRequest(self.pages.pop(0))

    def create(self, **kwargs: Any) -> FakeRequest:
        self.calls.append({"method": "create", **kwargs})
        if "media_body" in kwargs:
            return FakeRequest(chunks=self.upload_chunks)
        return FakeRequest({"id": "folder-1"})

    def delete(self, **kwargs: Any) -> FakeRequest:
        self.calls.append({"method": "delete", **kwargs})
        return FakeRequest({}, error=self.delete_error)


class FakeService:
    def __init__(self) -> None:
        self.fake_files = FakeFiles()

    def files(self) -> FakeFiles:
        return self.fake_files


def test_google_api_lists_every_page() -> None:
    service = FakeService()
    service.fake_files.pages = [
        {
            "files": [{"id": "a", "name": "Tasker", "mimeType": FOLDER_MIME_TYPE}],
            "nextPageToken": "next",
        },
        {
            "files": [
                {
                    "id": "b",
                    "name": "03-05-2024.zip",
                    "mimeType": ZIP_MIME_TYPE,
                    "parents": ["a"],
                }
            ]
        },
    ]

    items = GoogleDriveApi(service).list_items()

    assert [(item.id, item.parents) for item in items] == [("a", ()), ("b", ("a",))]
    list_calls = [call for call in service.fake_files.calls if call["method"] == "list"]
    assert [call["pageToken"] for call in list_calls] == [None, "next"]


def test_google_api_creates_folder_requesting_id() -> None:
    service = FakeService()

    folder_id = GoogleDriveApi(service).create_container("Tasker")

    assert folder_id == "folder-1"
    call = service.fake_files.calls[0]
    assert call["body"] == {"name": "Tasker", "mimeType": FOLDER_MIME_TYPE}
    assert call["fields"] == "id"


def test_google_api_wraps_http_errors() -> None:
    service = FakeService()
    service.fake_files.delete_error = http_error(403)

    with pytest.raises(RemoteApiError) as excinfo:
        GoogleDriveApi(service).delete_item("b")

    assert isinstance(excinfo.value.__cause__, HttpError)


def test_google_upload_handle_polls_to_completion(tmp_path: Path) -> None:
    service = FakeService()
    service.fake_files.upload_chunks = [
        (SimpleNamespace(resumable_progress=16), None),
        (None, {"id": "uploaded-1"}),
    ]
    archive = make_archive(tmp_path, size=40)

    outcome = upload_file(GoogleDriveApi(service), archive, "folder-1")

    assert outcome.completed
    assert outcome.bytes_sent == 40
    create_call = service.fake_files.calls[0]
    assert create_call["body"] == {"name": "03-05-2024.zip", "parents": ["folder-1"]}
    assert create_call["media_body"].mimetype() == ZIP_MIME_TYPE


def test_google_upload_failure_after_progress_is_incomplete(tmp_path: Path) -> None:
    service = FakeService()
    service.fake_files.upload_chunks = [
        (SimpleNamespace(resumable_progress=16), None),
        http_error(500),
    ]

    outcome = upload_file(GoogleDriveApi(service), make_archive(tmp_path), "folder-1")

    assert not outcome.completed
    assert outcome.bytes_sent == 16


# -- Credentials ---------------------------------------------------------------


class FakeCredentials:
    def __init__(self, *, valid: bool, expired: bool = False, refresh_token: Optional[str] = None) -> None:
        self.valid = valid
        self.expired = expired
        self.refresh_token = refresh_token
        self.refreshed = False
        self.refresh_error: Optional[Exception] = None

    def refresh(self, request: Any) -> None:
        if self.refresh_error is not None:
            raise self.refresh_error
        self.refreshed = True
        self.valid = True

    def to_json(self) -> str:
        return json.dumps({"token": "fresh" if self.refreshed else "granted"})


def write_client_secrets(path: Path) -> Path:
    path.write_text(json.dumps({"installed": {"client_id": "id", "client_secret": "secret"}}))
    return path


def forbid_consent(monkeypatch: pytest.MonkeyPatch) -> None:
    def fail(*args: Any, **kwargs: Any) -> None:
        raise AssertionError("consent flow should not run")

    monkeypatch.setattr(tasker_drive, "_run_consent_flow", fail)


def test_authorize_requires_client_secrets(tmp_path: Path) -> None:
    with pytest.raises(AuthError):
        authorize(tmp_path / "credentials.json", tmp_path / "token.json")


def test_authorize_rejects_malformed_client_secrets(tmp_path: Path) -> None:
    secrets = tmp_path / "credentials.json"
    secrets.write_text("not json")

    with pytest.raises(AuthError):
        authorize(secrets, tmp_path / "token.json")


def test_authorize_uses_service_account_keys(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    secrets = tmp_path / "credentials.json"
    secrets.write_text(json.dumps({"type": "service_account", "client_email": "a@b"}))
    sentinel = object()
    seen: Dict[str, Any] = {}

    def fake_from_info(info: Dict[str, Any], scopes: List[str]) -> object:
        seen["info"] = info
        seen["scopes"] = scopes
        return sentinel

    monkeypatch.setattr(service_account.Credentials, "from_service_account_info", fake_from_info)
    forbid_consent(monkeypatch)

    assert authorize(secrets, tmp_path / "token.json") is sentinel
    assert seen["scopes"] == tasker_drive.DRIVE_SCOPES
    assert not (tmp_path / "token.json").exists()


def test_authorize_reuses_valid_token(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    secrets = write_client_secrets(tmp_path / "credentials.json")
    token = tmp_path / "token.json"
    token.write_text("{}")
    stored = FakeCredentials(valid=True)
    monkeypatch.setattr(
        oauth_credentials.Credentials, "from_authorized_user_file", lambda path, scopes: stored
    )
    forbid_consent(monkeypatch)

    assert authorize(secrets, token) is stored


def test_authorize_refreshes_expired_token(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    secrets = write_client_secrets(tmp_path / "credentials.json")
    token = tmp_path / "token.json"
    token.write_text("{}")
    stored = FakeCredentials(valid=False, expired=True, refresh_token="refresh")
    monkeypatch.setattr(
        oauth_credentials.Credentials, "from_authorized_user_file", lambda path, scopes: stored
    )
    forbid_consent(monkeypatch)

    assert authorize(secrets, token) is stored
    assert stored.refreshed
    assert json.loads(token.read_text()) == {"token": "fresh"}


def test_authorize_reports_rejected_refresh(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    secrets = write_client_secrets(tmp_path / "credentials.json")
    token = tmp_path / "token.json"
    token.write_text("{}")
    stored = FakeCredentials(valid=False, expired=True, refresh_token="refresh")
    stored.refresh_error = RefreshError("invalid_grant")
    monkeypatch.setattr(
        oauth_credentials.Credentials, "from_authorized_user_file", lambda path, scopes: stored
    )

    with pytest.raises(AuthError, match="invalid_grant"):
        authorize(secrets, token)


def test_authorize_runs_consent_flow_and_saves_token(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    secrets = write_client_secrets(tmp_path / "credentials.json")
    token = tmp_path / "state" / "token.json"
    granted = FakeCredentials(valid=True)
    flows: List[Path] = []

    def fake_flow(client_secrets_path: Path, scopes: List[str]) -> FakeCredentials:
        flows.append(client_secrets_path)
        return granted

    monkeypatch.setattr(tasker_drive, "_run_consent_flow", fake_flow)

    assert authorize(secrets, token) is granted
    assert flows == [secrets]
    assert json.loads(token.read_text()) == {"token": "granted"}


def test_authorize_reports_denied_consent(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from google_auth_oauthlib.flow import InstalledAppFlow
    from oauthlib.oauth2 import AccessDeniedError

    secrets = write_client_secrets(tmp_path / "credentials.json")

    class DeniedFlow:
        def run_local_server(self, port: int) -> None:
            raise AccessDeniedError("access_denied")

    monkeypatch.setattr(
        InstalledAppFlow, "from_client_secrets_file", lambda path, scopes: DeniedFlow()
    )

    with pytest.raises(AuthError, match="not granted"):
        authorize(secrets, tmp_path / "token.json")

    assert not (tmp_path / "token.json").exists()
