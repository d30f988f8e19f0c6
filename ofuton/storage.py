"""Object storage: metadata and files together, plus multipart upload state."""

from __future__ import annotations

import asyncio
import logging
import shutil
import threading
import uuid
from collections.abc import AsyncIterable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import BinaryIO

from ofuton.database import Database, ObjectRecord
from ofuton.files import MULTIPART_DIR, FileStore, StorageError
from ofuton.hashing import blake3_hex

log = logging.getLogger(__name__)

Chunks = AsyncIterable[bytes] | Iterable[bytes]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def initialize_bucket(base_path: str | Path) -> Path:
    """Create the bucket directory if needed and drop leftover multipart uploads."""
    base = Path(base_path)
    if not base.exists():
        try:
            base.mkdir(parents=True)
        except OSError as exc:
            log.error("Failed to create bucket path: %s", exc)
            raise StorageError(f"Failed to create bucket path: {exc}") from exc
        log.info("Bucket dir created successfully: %s", base)

    temp_path = base / MULTIPART_DIR
    if temp_path.exists():
        try:
            shutil.rmtree(temp_path)
        except OSError as exc:
            log.error("Failed to remove expired multipart uploads: %s", exc)
    return base


@dataclass
class ReadObjectData:
    """An object's metadata and, when requested, its open file."""

    metadata: ObjectRecord
    file: BinaryIO | None = None

    def __enter__(self) -> ReadObjectData:
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self.file is not None:
            self.file.close()


@dataclass
class WriteObjectData:
    """Everything needed to store a new object in one request."""

    path: str
    chunks: Chunks
    mime_type: str
    content_size: int = 0
    filename: str | None = None
    encoded_filename: str | None = None


@dataclass
class MultipartUploadItem:
    """State kept for a multipart upload in progress."""

    path: str
    filename: str | None
    encoded_filename: str | None
    mime_type: str
    last_upload_at: datetime = field(default_factory=_now)


class Storage:
    """Stores objects and tracks multipart uploads until they finish or expire."""

    def __init__(
        self, database: Database, files: FileStore, request_expiration_seconds: int
    ) -> None:
        self.database = database
        self.files = files
        self.request_expiration_seconds = request_expiration_seconds
        self._uploads: dict[str, MultipartUploadItem] = {}
        self._lock = threading.Lock()
        self._cleanup_task: asyncio.Task[None] | None = None
        self._cleanup_running = False

    def get_object(self, path: str, with_file: bool) -> ReadObjectData:
        """Return an object's metadata, opening its file when ``with_file`` is set."""
        metadata = self.database.get_by_path(path)
        if metadata is None:
            raise StorageError(f"Object metadata not found for path: {path}")
        handle = self.files.read_object(metadata.internal_filename) if with_file else None
        return ReadObjectData(metadata=metadata, file=handle)

    async def put_object(self, data: WriteObjectData) -> ObjectRecord:
        """Record an object's metadata and write its content."""
        internal = blake3_hex(data.path)
        record = self.database.create(
            ObjectRecord(
                path=data.path,
                content_size=data.content_size,
                mime_type=data.mime_type,
                internal_filename=internal,
                encoded_filename=data.encoded_filename,
                filename=data.filename,
            )
        )
        await self.files.write_object(internal, data.chunks)
        return record

    def create_multipart_upload(
        self,
        path: str,
        filename: str | None,
        encoded_filename: str | None,
        mime_type: str,
    ) -> str:
        """Start a multipart upload and return its id."""
        upload_id = str(uuid.uuid4())
        item = MultipartUploadItem(path, filename, encoded_filename, mime_type)
        with self._lock:
            self._uploads[upload_id] = item
        log.debug("Multipart upload created with ID: %s", upload_id)
        self._schedule_cleanup()
        return upload_id

    def is_registered(self, upload_id: str) -> bool:
        """Whether a multipart upload with this id is in progress."""
        with self._lock:
            return upload_id in self._uploads

    async def upload_part(self, upload_id: str, number: int, chunks: Chunks) -> None:
        """Store one numbered part of a multipart upload."""
        with self._lock:
            item = self._uploads.get(upload_id)
            if item is None:
                raise StorageError(f"Invalid or expired uploadId: {upload_id}")
            item.last_upload_at = _now()
        await self.files.write_object(f"{upload_id}/{number}.part", chunks, True)

    def complete_multipart_upload(self, upload_id: str) -> ObjectRecord:
        """Join the parts of an upload into a stored object."""
        with self._lock:
            item = self._uploads.pop(upload_id, None)
        self._cancel_idle_cleanup()
        if item is None:
            raise StorageError(f"Invalid or expired uploadId: {upload_id}")

        internal = blake3_hex(item.path)
        size = self.files.merge_partial_uploads(upload_id, internal)
        record = self.database.create(
            ObjectRecord(
                path=item.path,
                content_size=size,
                mime_type=item.mime_type,
                internal_filename=internal,
                encoded_filename=item.encoded_filename,
                filename=item.filename,
            )
        )
        self.files.delete_object(upload_id, True)
        log.debug("Multipart upload completed for ID: %s", upload_id)
        return record

    def abort_multipart_upload(self, upload_id: str) -> None:
        """Forget a multipart upload and remove its parts."""
        with self._lock:
            self._uploads.pop(upload_id, None)
        self._cancel_idle_cleanup()
        try:
            self.files.delete_object(upload_id, True)
        except StorageError as exc:
            log.error("Failed to remove multipart upload directory: %s", exc)
            raise
        log.debug("Multipart upload aborted for ID: %s", upload_id)

    def delete_object(self, path: str) -> None:
        """Remove an object's file and metadata."""
        metadata = self.database.get_by_path(path)
        if metadata is None:
            raise StorageError(f"Object metadata not found for path: {path}")
        self.files.delete_object(metadata.internal_filename)
        self.database.delete(metadata)
        log.debug("Object deleted successfully at path: %s", path)

    def expired_uploads(self, now: datetime | None = None) -> list[str]:
        """Ids of uploads idle for longer than the expiration period at ``now``."""
        moment = now or _now()
        limit = timedelta(seconds=self.request_expiration_seconds)
        with self._lock:
            return [
                upload_id
                for upload_id, item in self._uploads.items()
                if moment - item.last_upload_at > limit
            ]

    def cleanup_expired(self) -> list[str]:
        """Remove expired uploads with their parts and return their ids."""
        removed = self.expired_uploads()
        for upload_id in removed:
            log.debug("Removing expired multipart upload: %s", upload_id)
            try:
                self.files.delete_object(upload_id, True)
            except StorageError as exc:
                log.error("Failed to remove expired multipart upload %s: %s", upload_id, exc)
            with self._lock:
                self._uploads.pop(upload_id, None)
        return removed

    async def run_cleanup(self) -> None:
        """Wait for pending uploads to expire and remove them, until none remain."""
        if self._cleanup_running:
            log.debug("Cleanup already registered, skipping...")
            return
        self._cleanup_running = True
        try:
            while (oldest := self._oldest_upload()) is not None:
                elapsed = int((_now() - oldest).total_seconds())
                wait = self.request_expiration_seconds - elapsed
                if wait > 0:
                    log.debug("Scheduling cleanup in %d seconds...", wait)
                    await asyncio.sleep(wait + 1)
                else:
                    await asyncio.sleep(0)
                log.debug("Starting cleanup of expired multipart uploads...")
                self.cleanup_expired()
                log.debug("Cleanup completed.")
        finally:
            self._cleanup_running = False

    def _oldest_upload(self) -> datetime | None:
        with self._lock:
            return min((item.last_upload_at for item in self._uploads.values()), default=None)

    def _schedule_cleanup(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = loop.create_task(self.run_cleanup())

    def _cancel_idle_cleanup(self) -> None:
        with self._lock:
            idle = not self._uploads
        task = self._cleanup_task
        if not idle or task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()