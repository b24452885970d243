#!/usr/bin/env python3
"""
Restore a Tasker backup archive onto the local data directories.

For the database file, the next-id file and the notes directory this script:
1. Moves the current copy to <name>_Old (with a suffix when necessary to avoid
   collisions).
2. Replaces it with the version from the archive so the operation can be
   reverted manually if needed.
"""
from __future__ import annotations

import argparse
import logging
import shutil
import sys
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Tuple
from zipfile import ZipFile, is_zipfile

from tasker_archive import DEFAULT_DATABASE_NAME, DEFAULT_NEXT_ID_NAME

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Restore a Tasker backup ZIP into the local data directories."
    )
    parser.add_argument(
        "archive",
        type=Path,
        help="Path to the backup ZIP archive to restore.",
    )
    parser.add_argument(
        "database_dir",
        type=Path,
        help="Directory holding the Tasker database and next-id files.",
    )
    parser.add_argument(
        "notes_dir",
        type=Path,
        help="Directory holding the Tasker note and task files.",
    )
    parser.add_argument(
        "--database-name",
        default=DEFAULT_DATABASE_NAME,
        help=f"File name of the database (default: {DEFAULT_DATABASE_NAME}).",
    )
    parser.add_argument(
        "--next-id-name",
        default=DEFAULT_NEXT_ID_NAME,
        help=f"File name of the next-id file (default: {DEFAULT_NEXT_ID_NAME}).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show planned actions without modifying any files.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO).",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO))


def _next_old_path(destination: Path) -> Path:
    base = destination.with_name(f"{destination.name}_Old")
    if not base.exists():
        return base

    timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
    candidate = destination.with_name(f"{destination.name}_Old_{timestamp}")
    counter = 1
    while candidate.exists():
        candidate = destination.with_name(
            f"{destination.name}_Old_{timestamp}_{counter}"
        )
        counter += 1
    return candidate


def _replace(extracted: Path, destination: Path, *, dry_run: bool) -> None:
    if destination.exists():
        old_path = _next_old_path(destination)
        logger.info("Moving existing %s to %s", destination, old_path)
        if not dry_run:
            destination.rename(old_path)
    else:
        logger.debug("%s does not exist locally, nothing to move.", destination)

    logger.info("Restoring %s into %s", extracted.name, destination)
    if not dry_run:
        shutil.move(str(extracted), str(destination))


def restore_backup_archive(
    archive_path: Path,
    database_dir: Path,
    notes_dir: Path,
    *,
    database_name: str = DEFAULT_DATABASE_NAME,
    next_id_name: str = DEFAULT_NEXT_ID_NAME,
    dry_run: bool = False,
) -> None:
    archive_path = archive_path.expanduser().resolve()
    database_dir = database_dir.expanduser().resolve()
    notes_dir = notes_dir.expanduser().resolve()

    if not archive_path.exists():
        raise FileNotFoundError(f"Archive {archive_path} does not exist.")
    if not archive_path.is_file():
        raise ValueError(f"Archive {archive_path} is not a file.")
    if not is_zipfile(archive_path):
        raise ValueError(f"Archive {archive_path} is not a valid ZIP file.")

    for directory in (database_dir, notes_dir.parent):
        if not directory.exists():
            raise FileNotFoundError(f"Directory {directory} does not exist.")
        if not directory.is_dir():
            raise NotADirectoryError(f"{directory} is not a directory.")

    logger.info("Restoring %s into %s and %s", archive_path, database_dir, notes_dir)

    with tempfile.TemporaryDirectory() as temp_dir:
        extraction_root = Path(temp_dir)
        with ZipFile(archive_path) as zip_file:
            zip_file.extractall(extraction_root)

        plan: List[Tuple[Path, Path]] = [
            (extraction_root / database_name, database_dir / database_name),
            (extraction_root / next_id_name, database_dir / next_id_name),
            (extraction_root / notes_dir.name, notes_dir),
        ]

        missing = [source.name for source, _ in plan if not source.exists()]
        if missing:
            raise ValueError(
                f"Archive {archive_path} is missing {', '.join(missing)}."
            )

        for extracted, destination in plan:
            _replace(extracted, destination, dry_run=dry_run)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        restore_backup_archive(
            archive_path=args.archive,
            database_dir=args.database_dir,
            notes_dir=args.notes_dir,
            database_name=args.database_name,
            next_id_name=args.next_id_name,
            dry_run=args.dry_run,
        )
    except Exception as error:  # pragma: no cover - top-level error handler
        logger.error("Restore failed: %s", error)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
