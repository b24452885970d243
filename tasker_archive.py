"""
Packaging of the local Tasker data store into a single dated ZIP archive.

The archive mirrors the data layout: the database file and the next-id file at
the root, plus a directory named after the notes directory holding flat copies
of every note/task file.
"""
from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Optional
from zipfile import ZIP_DEFLATED, ZipFile

logger = logging.getLogger(__name__)

ARCHIVE_DATE_FORMAT = "%m/%d/%Y"
DEFAULT_DATABASE_NAME = "Tasker.db"
DEFAULT_NEXT_ID_NAME = "NextId.db"
ZIP_EXTENSION = ".zip"

Clock = Callable[[], date]


@dataclass(frozen=True)
class BackupManifest:
    database_file: Path
    next_id_file: Path
    notes_dir: Path

    @classmethod
    def from_directories(
        cls,
        database_dir: Path,
        notes_dir: Path,
        *,
        database_name: str,
        next_id_name: str,
    ) -> "BackupManifest":
        return cls(
            database_file=database_dir / database_name,
            next_id_file=database_dir / next_id_name,
            notes_dir=notes_dir,
        )


def archive_base_name(day: date) -> str:
    # "/" would otherwise be read as a path separator
    return day.strftime(ARCHIVE_DATE_FORMAT).replace("/", "-")


def archive_name(day: date) -> str:
    return archive_base_name(day) + ZIP_EXTENSION


def _check_sources(manifest: BackupManifest) -> None:
    for source in (manifest.database_file, manifest.next_id_file):
        if not source.exists():
            raise FileNotFoundError(f"Backup source {source} does not exist.")
        if not source.is_file():
            raise IsADirectoryError(f"Backup source {source} is not a file.")

    if not manifest.notes_dir.exists():
        raise FileNotFoundError(
            f"Notes directory {manifest.notes_dir} does not exist."
        )
    if not manifest.notes_dir.is_dir():
        raise NotADirectoryError(
            f"Notes directory {manifest.notes_dir} is not a directory."
        )


def copy_manifest_contents(manifest: BackupManifest, destination: Path) -> None:
    shutil.copyfile(manifest.database_file, destination / manifest.database_file.name)
    shutil.copyfile(manifest.next_id_file, destination / manifest.next_id_file.name)

    notes_destination = destination / manifest.notes_dir.name
    notes_destination.mkdir()

    for note in sorted(manifest.notes_dir.iterdir()):
        if not note.is_file():
            logger.debug("Skipping nested entry %s", note)
            continue
        shutil.copyfile(note, notes_destination / note.name)


def compress_directory(source_dir: Path, archive_path: Path) -> Path:
    """Write every file and directory under ``source_dir`` into ``archive_path``.

    Entry names are relative to ``source_dir`` and written in sorted order so
    identical inputs produce the same member list.
    """
    with ZipFile(archive_path, mode="w", compression=ZIP_DEFLATED) as zip_file:
        for path in sorted(source_dir.rglob("*")):
            name = path.relative_to(source_dir).as_posix()
            if path.is_dir():
                # keeps empty directories in the archive
                zip_file.write(path, name + "/")
            elif path.is_file():
                zip_file.write(path, name)
    return archive_path


def pack_data_into_zip(
    manifest: BackupManifest,
    *,
    work_dir: Optional[Path] = None,
    clock: Clock = date.today,
) -> Path:
    """Package ``manifest`` into ``<MM-DD-YYYY>.zip`` inside ``work_dir``.

    The temporary packaging directory is removed on every exit path. The
    returned archive belongs to the caller, who must delete it.
    """
    _check_sources(manifest)

    root = (work_dir or Path.cwd()).resolve()
    base_name = archive_base_name(clock())
    output_dir = root / base_name
    archive_path = root / (base_name + ZIP_EXTENSION)

    if output_dir.exists():
        logger.warning("Removing leftover packaging directory %s", output_dir)
        shutil.rmtree(output_dir)

    output_dir.mkdir(parents=True)
    try:
        copy_manifest_contents(manifest, output_dir)
        compress_directory(output_dir, archive_path)
    except BaseException:
        archive_path.unlink(missing_ok=True)
        raise
    finally:
        shutil.rmtree(output_dir)

    logger.info("Created backup archive %s", archive_path)
    return archive_path
