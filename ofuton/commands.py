"""Maintenance commands: migrating old object trees and importing file metadata."""

from __future__ import annotations

import csv
import logging
import mimetypes
import os
import re
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from itertools import islice
from pathlib import Path
from typing import Protocol, TypeVar
from urllib.parse import quote, urlsplit

from tqdm import tqdm

from ofuton.database import Database, DatabaseError, ObjectRecord
from ofuton.hashing import blake3_hex

log = logging.getLogger(__name__)

# Characters outside RFC 8187 attr-char need normalising in a plain filename.
FILENAME_NORMALIZE_REGEX = re.compile(r"[^A-Za-z0-9!#$&+-.^_`|~]")
DEFAULT_MIME_TYPE = "application/octet-stream"
MIGRATE_BATCH_SIZE = 50
IMPORT_CHUNK_SIZE = 100

T = TypeVar("T")


class _Progress(Protocol):
    def update(self, n: int = 1) -> object: ...


def _batched(items: Iterable[T], size: int) -> Iterator[list[T]]:
    iterator = iter(items)
    while batch := list(islice(iterator, size)):
        yield batch


def normalize_filename(name: str) -> tuple[str, str | None]:
    """Return a header-safe filename and, if it had to change, the percent-encoded original."""
    if FILENAME_NORMALIZE_REGEX.search(name):
        return FILENAME_NORMALIZE_REGEX.sub("_", name), quote(name, safe="")
    return name, None


def create_progress_bar(total: int) -> tqdm:
    """A progress bar counting up to ``total``."""
    return tqdm(
        total=total,
        bar_format="[{elapsed}] {bar:40} {n_fmt}/{total_fmt} ({rate_fmt}, ETA: {remaining})",
        ascii="-#",
    )


def confirm(prompt: str) -> bool:
    """Ask a yes/no question until answered; end of input counts as no."""
    while True:
        try:
            answer = input(f"{prompt} [y/n] ").strip().lower()
        except EOFError:
            return False
        if answer in ("y", "yes"):
            return True
        if answer in ("n", "no"):
            return False


def count_files(directory: str | Path) -> int:
    """Count regular files below ``directory``, without following symlinks."""
    total = 0
    with os.scandir(directory) as entries:
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                total += count_files(entry.path)
            elif entry.is_file(follow_symlinks=False):
                total += 1
    return total


@dataclass
class MigrateObject:
    """A file found in an old object tree together with its new metadata."""

    path: Path
    internal_filename: str
    record: ObjectRecord


def collect_objects(base_dir: str | Path) -> Iterator[MigrateObject]:
    """Yield every regular file below ``base_dir`` as an object to migrate."""
    base = Path(base_dir)
    yield from _walk(base, base)


def _walk(base: Path, current: Path) -> Iterator[MigrateObject]:
    with os.scandir(current) as iterator:
        entries = sorted(iterator, key=lambda entry: entry.name)
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            yield from _walk(base, Path(entry.path))
            continue
        if not entry.is_file(follow_symlinks=False):
            continue
        path = Path(entry.path)
        relative = "/" + path.relative_to(base).as_posix()
        mime_type = mimetypes.guess_type(path.name)[0] or DEFAULT_MIME_TYPE
        internal = blake3_hex(relative)
        record = ObjectRecord(
            path=relative,
            content_size=entry.stat(follow_symlinks=False).st_size,
            mime_type=mime_type,
            internal_filename=internal,
        )
        yield MigrateObject(path=path, internal_filename=internal, record=record)


def migrate_objects(
    old_dir: str | Path,
    bucket_path: str | Path,
    database: Database,
    progress: _Progress | None = None,
) -> int:
    """Record each old file's metadata and move it into the bucket; return how many moved."""
    bucket = Path(bucket_path)
    moved = 0
    for batch in _batched(collect_objects(old_dir), MIGRATE_BATCH_SIZE):
        database.create_many(item.record for item in batch)
        for item in batch:
            item.path.rename(bucket / item.internal_filename)
        if progress is not None:
            progress.update(len(batch))
        moved += len(batch)
    return moved


def run_migrate(
    old_dir: str | Path,
    bucket_path: str | Path,
    database: Database,
    ask: Callable[[str], bool] = confirm,
) -> int:
    """Migrate an old object tree after confirmation; return the number of files moved."""
    log.info("Calculating files to migrate from old directory: %s", old_dir)
    try:
        total = count_files(old_dir)
    except OSError as exc:
        log.error("Failed to count files: %s", exc)
        return 0
    if total == 0:
        log.info("No files to migrate.")
        return 0
    log.info("Found %d files to migrate.", total)

    if not ask("Continue?"):
        log.info("Migration cancelled.")
        return 0

    with create_progress_bar(total) as bar:
        try:
            moved = migrate_objects(old_dir, bucket_path, database, bar)
        except (OSError, DatabaseError) as exc:
            log.error("Failed to migrate objects from old directory: %s", exc)
            return 0
    log.info(
        "Migration completed successfully. If necessary, run the `import` command. "
        "(The `import` command imports accurate file information from Misskey)"
    )
    return moved


@dataclass(frozen=True)
class DriveFile:
    """One line of the import file: a file's name, MIME type and URL."""

    name: str
    mime_type: str
    url: str


def read_import_file(path: str | Path) -> list[DriveFile]:
    """Read tab-separated name, MIME type and URL lines; malformed lines are skipped."""
    records: list[DriveFile] = []
    with open(path, newline="", encoding="utf-8") as handle:
        for line, row in enumerate(csv.reader(handle, delimiter="\t"), start=1):
            if not row:
                continue
            if len(row) != 3:
                log.error(
                    "Failed to deserialize record: line %d has %d fields, expected 3",
                    line,
                    len(row),
                )
                continue
            records.append(DriveFile(*row))
    return records


def _url_path(url: str) -> str | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme:
        return None
    return parts.path or "/"


def import_metadata(
    records: Iterable[DriveFile], database: Database, progress: _Progress | None = None
) -> int:
    """Fill in filename details for objects that have none; return records processed."""
    processed = 0
    for chunk in _batched(records, IMPORT_CHUNK_SIZE):
        try:
            with database.transaction():
                for record in chunk:
                    path = _url_path(record.url)
                    if path is None:
                        log.error("Invalid URL %s", record.url)
                        continue
                    filename, encoded = normalize_filename(record.name)
                    database.update_filename_if_unset(path, filename, encoded, record.mime_type)
                    processed += 1
                    if progress is not None:
                        progress.update(1)
        except DatabaseError as exc:
            log.error("Failed to update records: %s", exc)
            return processed
    return processed


def run_import(
    metadata_path: str | Path, database: Database, ask: Callable[[str], bool] = confirm
) -> int:
    """Import file metadata from a TSV file after confirmation; return records processed."""
    log.info("Loading metadata from %s", metadata_path)
    try:
        records = read_import_file(metadata_path)
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        log.error("Failed to read metadata file: %s", exc)
        return 0
    if not records:
        log.warning("No valid entries found in the metadata file.")
        return 0
    log.info("Found %d entries. Ready to import.", len(records))

    if not ask("Continue?"):
        log.info("Import cancelled.")
        return 0

    with create_progress_bar(len(records)) as bar:
        processed = import_metadata(records, database, bar)
    log.info("Successfully processed %d entries.", len(records))
    return processed