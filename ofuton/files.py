"""Object file storage on the local file system."""

from __future__ import annotations

import logging
import re
import shutil
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO

log = logging.getLogger(__name__)

MULTIPART_DIR = ".multipart"
MERGED_TEMP_NAME = "object-merged.tmp"

_PART_NUMBER = re.compile(r"\+?\d+")


class StorageError(Exception):
    """Raised when an object cannot be stored, read or removed."""


@contextmanager
def _os_errors() -> Iterator[None]:
    try:
        yield
    except OSError as exc:
        raise StorageError(str(exc)) from exc


async def _iterate(chunks: AsyncIterable[bytes] | Iterable[bytes]) -> AsyncIterator[bytes]:
    if isinstance(chunks, AsyncIterable):
        async for chunk in chunks:
            yield chunk
    else:
        for chunk in chunks:
            yield chunk


def _part_number(path: Path) -> int:
    name = path.name.replace(".part", "")
    if _PART_NUMBER.fullmatch(name):
        number = int(name)
        if number < 2**64:
            return number
    return 0


class FileStore:
    """Object files kept under a bucket directory, with multipart parts beside them."""

    def __init__(self, base_path: str | Path) -> None:
        self.base_path = Path(base_path)

    def resolve_path(self, internal_path: str, is_multipart: bool = False) -> Path:
        """Return the file system path for an internal name."""
        if is_multipart:
            return self.base_path / MULTIPART_DIR / internal_path
        return self.base_path / internal_path

    def read_object(self, internal_filename: str) -> BinaryIO:
        """Open a stored object for reading; the caller closes it."""
        path = self.resolve_path(internal_filename)
        if not path.exists():
            raise StorageError("File does not exist")
        try:
            handle = path.open("rb")
        except OSError as exc:
            raise StorageError(f"Failed to open file: {exc}") from exc
        log.debug("Object read successfully from path: %s", path)
        return handle

    async def write_object(
        self,
        internal_filename: str,
        chunks: AsyncIterable[bytes] | Iterable[bytes],
        is_multipart: bool = False,
    ) -> None:
        """Write a new object from a stream of byte chunks; existing files are refused."""
        path = self.resolve_path(internal_filename, is_multipart)
        if path.exists():
            raise StorageError(f"File already exists at path: {path}")
        with _os_errors():
            if is_multipart:
                path.parent.mkdir(parents=True, exist_ok=True)
            try:
                handle = path.open("xb")
            except FileExistsError as exc:
                raise StorageError(f"File already exists at path: {path}") from exc
            with handle:
                async for chunk in _iterate(chunks):
                    handle.write(chunk)
        log.debug("Object written successfully to path: %s", path)

    def merge_partial_uploads(self, upload_id: str, internal_filename: str) -> int:
        """Join an upload's parts in part-number order into one object; return its size."""
        object_path = self.resolve_path(internal_filename)
        multipart_path = self.resolve_path(upload_id, True)
        temporary_path = multipart_path / MERGED_TEMP_NAME

        if not multipart_path.exists():
            raise StorageError(f"Multipart upload path does not exist: {multipart_path}")
        if object_path.exists():
            raise StorageError(f"File already exists at path: {object_path}")

        with _os_errors():
            parts = sorted(
                (entry for entry in multipart_path.iterdir() if entry.is_file()),
                key=_part_number,
            )
            with temporary_path.open("wb") as output:
                for part in parts:
                    with part.open("rb") as source:
                        shutil.copyfileobj(source, output)
            temporary_path.replace(object_path)
            size = object_path.stat().st_size

        log.debug("Merged multipart uploads into object at path: %s", object_path)
        return size

    def delete_object(self, internal_path: str, is_multipart: bool = False) -> None:
        """Remove an object file, or a whole multipart upload directory."""
        path = self.resolve_path(internal_path, is_multipart)
        with _os_errors():
            if is_multipart:
                shutil.rmtree(path)
            else:
                if not path.exists():
                    raise StorageError(f"File does not exist at path: {path}")
                path.unlink()
        log.debug("Deleted object at path: %s", path)