#!/usr/bin/env python3
"""
Tasker backup manager.

Packages the local Tasker data store (database, next-id file and notes
directory) into a dated ZIP archive and uploads it to a fixed Google Drive
folder, replacing the same day's earlier upload.
"""
from __future__ import annotations

import argparse
import configparser
import logging
import sys
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional, Union

from tasker_archive import (
    DEFAULT_DATABASE_NAME,
    DEFAULT_NEXT_ID_NAME,
    BackupManifest,
    Clock,
    pack_data_into_zip,
)
from tasker_drive import (
    AuthError,
    RemoteApiError,
    authorize,
    build_drive_api,
    ensure_container,
    quiet_external_loggers,
    remove_existing_backup,
    upload_file,
)

logger = logging.getLogger(__name__)

APP_NAME = "Tasker"
CONFIG_SECTION = "backup"
DEFAULT_CLIENT_SECRETS = "credentials.json"
DEFAULT_TOKEN_FILE = "token.json"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


@dataclass
class BackupConfig:
    database_dir: Path
    notes_dir: Path
    database_name: str = DEFAULT_DATABASE_NAME
    next_id_name: str = DEFAULT_NEXT_ID_NAME
    drive_folder: str = APP_NAME
    client_secrets: Path = Path(DEFAULT_CLIENT_SECRETS)
    token_file: Path = Path(DEFAULT_TOKEN_FILE)
    work_dir: Optional[Path] = None
    dry_run: bool = False

    def manifest(self) -> BackupManifest:
        return BackupManifest.from_directories(
            self.database_dir,
            self.notes_dir,
            database_name=self.database_name,
            next_id_name=self.next_id_name,
        )


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Archive the Tasker data store and upload it to Google Drive."
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to an INI config file containing backup parameters.",
    )
    parser.add_argument(
        "--database-dir",
        type=Path,
        help="Directory holding the Tasker database and next-id files.",
    )
    parser.add_argument(
        "--notes-dir",
        type=Path,
        help="Directory holding the Tasker note and task files.",
    )
    parser.add_argument(
        "--database-name",
        help=f"File name of the database inside the database directory (default: {DEFAULT_DATABASE_NAME}).",
    )
    parser.add_argument(
        "--next-id-name",
        help=f"File name of the next-id file inside the database directory (default: {DEFAULT_NEXT_ID_NAME}).",
    )
    parser.add_argument(
        "--drive-folder",
        help=f"Google Drive folder receiving the backups (default: {APP_NAME}).",
    )
    parser.add_argument(
        "--client-secrets",
        type=Path,
        help=(
            "OAuth client secrets or service account JSON file "
            f"(default: {DEFAULT_CLIENT_SECRETS})."
        ),
    )
    parser.add_argument(
        "--token-file",
        type=Path,
        help=f"File storing the authorized Drive token (default: {DEFAULT_TOKEN_FILE}).",
    )
    parser.add_argument(
        "--work-dir",
        type=Path,
        help="Directory for the temporary packaging folder and archive (default: current directory).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Build the archive and show planned Drive actions without contacting Drive.",
    )
    return parser.parse_args(argv)


def read_config_file(config_path: Path) -> Dict[str, str]:
    parser = configparser.ConfigParser()
    read_files = parser.read(config_path)
    if not read_files:
        raise ConfigurationError(f"Config file {config_path} could not be read.")
    if CONFIG_SECTION not in parser:
        raise ConfigurationError(
            f"Config file {config_path} is missing the [{CONFIG_SECTION}] section."
        )
    return {k: v for k, v in parser[CONFIG_SECTION].items()}


def _pick(cli_value, file_cfg: Dict[str, str], key: str, default=None):
    if cli_value is not None:
        return cli_value
    return file_cfg.get(key, default)


def _resolve_path(value: Union[Path, str]) -> Path:
    return Path(value).expanduser().resolve()


def _require_name(value: str, key: str) -> str:
    name = value.strip()
    if not name:
        raise ConfigurationError(f"{key} must not be empty.")
    if "/" in name or "\\" in name:
        raise ConfigurationError(f"{key} must be a plain file name, got {value!r}.")
    return name


def merge_config(
    args: argparse.Namespace, file_config: Optional[Dict[str, str]]
) -> BackupConfig:
    file_cfg = file_config or {}

    database_dir_value = _pick(args.database_dir, file_cfg, "database_dir")
    notes_dir_value = _pick(args.notes_dir, file_cfg, "notes_dir")

    if not database_dir_value:
        raise ConfigurationError("database_dir must be supplied via CLI or config file.")
    if not notes_dir_value:
        raise ConfigurationError("notes_dir must be supplied via CLI or config file.")

    drive_folder = _pick(args.drive_folder, file_cfg, "drive_folder", APP_NAME).strip()
    if not drive_folder:
        raise ConfigurationError("drive_folder must not be empty.")

    dry_run_value = file_cfg.get("dry_run")
    if args.dry_run is not None:
        dry_run = args.dry_run
    elif dry_run_value is not None:
        dry_run = parse_bool(dry_run_value)
    else:
        dry_run = False

    work_dir_value = _pick(args.work_dir, file_cfg, "work_dir")

    return BackupConfig(
        database_dir=_resolve_path(database_dir_value),
        notes_dir=_resolve_path(notes_dir_value),
        database_name=_require_name(
            _pick(args.database_name, file_cfg, "database_name", DEFAULT_DATABASE_NAME),
            "database_name",
        ),
        next_id_name=_require_name(
            _pick(args.next_id_name, file_cfg, "next_id_name", DEFAULT_NEXT_ID_NAME),
            "next_id_name",
        ),
        drive_folder=drive_folder,
        client_secrets=_resolve_path(
            _pick(args.client_secrets, file_cfg, "client_secrets", DEFAULT_CLIENT_SECRETS)
        ),
        token_file=_resolve_path(
            _pick(args.token_file, file_cfg, "token_file", DEFAULT_TOKEN_FILE)
        ),
        work_dir=_resolve_path(work_dir_value) if work_dir_value else None,
        dry_run=dry_run,
    )


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value: {value}")


def configure_logging(log_level: str) -> None:
    level = getattr(logging, log_level.upper(), None)
    if level is None:
        raise ValueError(f"Invalid log level: {log_level}")
    logging.basicConfig(level=level)
    quiet_external_loggers()


def upload_backup(
    config: BackupConfig,
    *,
    authorize_fn: Callable[[Path, Path], object] = authorize,
    api_factory: Callable[[object], object] = build_drive_api,
    clock: Clock = date.today,
) -> bool:
    """Run one backup: pack, authorize, resolve folder, replace, upload.

    Returns whether the upload reached the completed status. Failures in any
    step propagate; the local archive is deleted on every exit path.
    """
    archive_path = pack_data_into_zip(
        config.manifest(), work_dir=config.work_dir, clock=clock
    )
    try:
        if config.dry_run:
            logger.info(
                "Dry run: would upload %s to Drive folder %s, replacing any existing %s",
                archive_path.name,
                config.drive_folder,
                archive_path.name,
            )
            return True

        credentials = authorize_fn(config.client_secrets, config.token_file)
        api = api_factory(credentials)

        folder_id = ensure_container(api, config.drive_folder)
        remove_existing_backup(api, archive_path.name, folder_id)
        outcome = upload_file(api, archive_path, folder_id)
        return outcome.completed
    finally:
        archive_path.unlink(missing_ok=True)
        logger.debug("Removed local archive %s", archive_path)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    try:
        configure_logging(args.log_level)
    except ValueError as error:
        logging.error("%s", error)
        return 2

    try:
        file_config: Optional[Dict[str, str]] = None
        if args.config:
            file_config = read_config_file(args.config)
        config = merge_config(args, file_config)
    except ConfigurationError as error:
        logging.error("%s", error)
        return 2

    try:
        completed = upload_backup(config)
    except AuthError as error:
        logging.error("Authorization failed: %s", error)
        return 1
    except RemoteApiError as error:
        logging.error("Google Drive request failed: %s", error)
        return 1
    except OSError as error:
        logging.error("Could not package backup: %s", error)
        return 1

    if not completed:
        logging.error("Backup upload to %s did not complete.", config.drive_folder)
        return 1

    logging.info("Backup uploaded to Drive folder %s.", config.drive_folder)
    return 0


if __name__ == "__main__":
    sys.exit(main())
