#!/usr/bin/env python3
"""
Utility to create a mock Tasker data store.

Useful for trying the backup manager without a running Tasker instance.
"""
from __future__ import annotations

import argparse
from pathlib import Path
from typing import Iterable, List

from tasker_archive import DEFAULT_DATABASE_NAME, DEFAULT_NEXT_ID_NAME


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create a mock Tasker database and notes directory."
    )
    parser.add_argument(
        "--database-dir",
        type=Path,
        required=True,
        help="Directory where the database and next-id files should be placed.",
    )
    parser.add_argument(
        "--notes-dir",
        type=Path,
        required=True,
        help="Directory where the mock note files should be placed.",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=3,
        help="Number of note files to create (default: 3).",
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
    return parser.parse_args(argv)


def make_mock_data(
    database_dir: Path,
    notes_dir: Path,
    *,
    note_count: int,
    database_name: str = DEFAULT_DATABASE_NAME,
    next_id_name: str = DEFAULT_NEXT_ID_NAME,
) -> List[Path]:
    if note_count < 0:
        raise ValueError("note_count must not be negative.")

    database_dir.mkdir(parents=True, exist_ok=True)
    notes_dir.mkdir(parents=True, exist_ok=True)

    database_file = database_dir / database_name
    database_file.write_bytes(
        b"".join(f"group-{index}|task-{index}\n".encode("utf-8") for index in range(note_count))
    )
    next_id_file = database_dir / next_id_name
    next_id_file.write_text(str(note_count + 1), encoding="utf-8")

    created = [database_file, next_id_file]
    for index in range(1, note_count + 1):
        note = notes_dir / f"note{index}.txt"
        note.write_text(f"Mock note {index}", encoding="utf-8")
        created.append(note)
    return created


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)

    if args.count < 0:
        print("Error: --count must not be negative.")
        return 2

    created = make_mock_data(
        args.database_dir.resolve(),
        args.notes_dir.resolve(),
        note_count=args.count,
        database_name=args.database_name,
        next_id_name=args.next_id_name,
    )
    for path in created:
        print(f"Created {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
