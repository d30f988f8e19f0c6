"""HTTP handlers for the static pages and the object read and write API."""

from __future__ import annotations

import logging
import os
import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO
from xml.sax.saxutils import escape

from aiohttp import web

from ofuton.database import ObjectRecord
from ofuton.files import StorageError
from ofuton.httputil import (
    build_content_disposition_filename,
    get_header,
    parse_content_disposition,
)
from ofuton.storage import Storage, WriteObjectData

log = logging.getLogger(__name__)

VERSION = "2025.8.1"
ROBOTS_TXT = "User-agent: *\nDisallow: /"
CACHE_CONTROL = "max-age=31536000, immutable"
DEFAULT_MIME_TYPE = "application/octet-stream"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

_CHUNK_SIZE = 64 * 1024
_UNSIGNED = re.compile(r"\+?\d+")
_SIGNED = re.compile(r"[+-]?\d+")
_RANGE_SPEC = re.compile(r"(\d*)-(\d*)")
_U16_MAX = 0xFFFF
_I64_MIN, _I64_MAX = -(2**63), 2**63 - 1


class OperationType(Enum):
    PUT_OBJECT = "PutObject"
    CREATE_MULTIPART_UPLOAD = "CreateMultipartUpload"
    UPLOAD_PART = "UploadPart"
    COMPLETE_MULTIPART_UPLOAD = "CompleteMultipartUpload"
    ABORT_MULTIPART_UPLOAD = "AbortMultipartUpload"
    DELETE_OBJECT = "DeleteObject"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class MultipartParams:
    """Multipart upload parameters from a write request's query string."""

    is_registered: bool
    upload_id: str | None = None
    part_number: int | None = None


def _first(query: Mapping[str, str], *names: str) -> str | None:
    return next((query[name] for name in names if name in query), None)


def parse_multipart_params(query: Mapping[str, str], storage: Storage) -> MultipartParams:
    """Read uploadId and partNumber from the query; raise ValueError on a bad part number."""
    upload_id = _first(query, "upload_id", "uploadId")
    raw_part = _first(query, "part_number", "partNumber")
    part_number = None
    if raw_part is not None:
        if not _UNSIGNED.fullmatch(raw_part) or int(raw_part) > _U16_MAX:
            raise ValueError(f"invalid partNumber: {raw_part!r}")
        part_number = int(raw_part)
    is_registered = upload_id is not None and storage.is_registered(upload_id)
    return MultipartParams(is_registered, upload_id, part_number)


def determine_operation(method: str, is_multipart: bool) -> OperationType:
    """Map a request method and whether it names an upload to the S3 operation."""
    choices = {
        "PUT": (OperationType.PUT_OBJECT, OperationType.UPLOAD_PART),
        "POST": (OperationType.CREATE_MULTIPART_UPLOAD, OperationType.COMPLETE_MULTIPART_UPLOAD),
        "DELETE": (OperationType.DELETE_OBJECT, OperationType.ABORT_MULTIPART_UPLOAD),
    }
    pair = choices.get(method.upper())
    if pair is None:
        return OperationType.UNKNOWN
    return pair[1] if is_multipart else pair[0]


def split_bucket_key(path: str) -> tuple[str, str]:
    """Split a path at its first slash into bucket and key."""
    bucket, separator, key = path.partition("/")
    if not separator:
        return "", path
    return bucket, key


def _xml_document(root: str, fields: list[tuple[str, str]]) -> str:
    body = "".join(f"<{name}>{escape(value)}</{name}>" for name, value in fields)
    return f"{XML_DECLARATION}<{root}>{body}</{root}>"


def initiate_upload_xml(bucket: str, key: str, upload_id: str) -> str:
    """The InitiateMultipartUploadResult document."""
    return _xml_document(
        "InitiateMultipartUploadResult",
        [("Bucket", bucket), ("Key", key), ("UploadId", upload_id)],
    )


def complete_upload_xml(location: str, bucket: str, key: str, etag: str) -> str:
    """The CompleteMultipartUploadResult document."""
    return _xml_document(
        "CompleteMultipartUploadResult",
        [("Location", location), ("Bucket", bucket), ("Key", key), ("ETag", etag)],
    )


def _xml_response(document: str) -> web.Response:
    return web.Response(body=document.encode(), headers={"Content-Type": "application/xml"})


async def index_handler(request: web.Request) -> web.Response:
    """The server's name and version."""
    return web.Response(text=f"ofuton v{VERSION}")


async def robots_handler(request: web.Request) -> web.Response:
    """A robots.txt that disallows everything."""
    return web.Response(text=ROBOTS_TXT)


def _parse_range(header: str | None) -> list[tuple[int | None, int | None]] | None:
    if header is None:
        return None
    value = header.strip()
    if not value.startswith("bytes="):
        return None
    specs: list[tuple[int | None, int | None]] = []
    for raw in value[len("bytes="):].split(","):
        match = _RANGE_SPEC.fullmatch(raw.strip())
        if match is None or not (match.group(1) or match.group(2)):
            return None
        start = int(match.group(1)) if match.group(1) else None
        end = int(match.group(2)) if match.group(2) else None
        if start is not None and end is not None and start > end:
            return None
        specs.append((start, end))
    return specs


def _satisfiable(spec: tuple[int | None, int | None], size: int) -> tuple[int, int] | None:
    start, end = spec
    if start is None:
        if not end or size == 0:
            return None
        return max(size - end, 0), size - 1
    if start >= size:
        return None
    return start, size - 1 if end is None else min(end, size - 1)


def _parse_i64(value: str) -> int:
    if _SIGNED.fullmatch(value):
        number = int(value)
        if _I64_MIN <= number <= _I64_MAX:
            return number
    return 0


class ObjectHandlers:
    """Read and write handlers for objects kept in a Storage."""

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    @staticmethod
    def _object_headers(metadata: ObjectRecord) -> dict[str, str]:
        disposition = ["inline", *build_content_disposition_filename(
            metadata.filename, metadata.encoded_filename
        )]
        return {
            "Cache-Control": CACHE_CONTROL,
            "Content-Type": metadata.mime_type,
            "ETag": f'"{metadata.internal_filename}"',
            "Accept-Ranges": "bytes",
            "Content-Disposition": "; ".join(disposition),
        }

    async def read(self, request: web.Request) -> web.StreamResponse:
        """Serve GET and HEAD for an object, honouring a byte Range."""
        object_path = request.rel_url.raw_path
        if not object_path:
            return web.Response(status=400)

        is_head = request.method == "HEAD"
        try:
            data = self.storage.get_object(object_path, not is_head)
        except StorageError:
            return web.Response(status=404, text="Object not found")

        with data:
            headers = self._object_headers(data.metadata)
            if is_head or data.file is None:
                headers["Content-Length"] = str(data.metadata.content_size)
                return web.Response(status=200, headers=headers)
            return await self._send_file(request, data.file, headers)

    @staticmethod
    async def _send_file(
        request: web.Request, handle: BinaryIO, headers: dict[str, str]
    ) -> web.StreamResponse:
        size = os.fstat(handle.fileno()).st_size
        specs = _parse_range(request.headers.get("Range"))
        status, start, length = 200, 0, size
        if specs is not None:
            chosen = next(
                (found for found in (_satisfiable(spec, size) for spec in specs) if found), None
            )
            if chosen is None:
                headers["Content-Range"] = f"bytes */{size}"
                return web.Response(status=416, headers=headers)
            start, end = chosen
            status, length = 206, end - start + 1
            headers["Content-Range"] = f"bytes {start}-{end}/{size}"

        response = web.StreamResponse(status=status, headers=headers)
        response.content_length = length
        await response.prepare(request)
        handle.seek(start)
        remaining = length
        while remaining > 0:
            chunk = handle.read(min(_CHUNK_SIZE, remaining))
            if not chunk:
                break
            await response.write(chunk)
            remaining -= len(chunk)
        await response.write_eof()
        return response

    async def write(self, request: web.Request) -> web.StreamResponse:
        """Dispatch PUT, POST and DELETE to the matching S3 operation."""
        object_path = request.rel_url.raw_path
        if not object_path:
            return web.Response(status=400)

        try:
            params = parse_multipart_params(request.rel_url.query, self.storage)
        except ValueError as exc:
            return web.Response(status=400, text=f"Failed to deserialize query string: {exc}")

        operation = determine_operation(request.method, params.upload_id is not None)
        if operation is OperationType.UNKNOWN:
            return web.Response(status=400, text="unknown operation")
        log.debug("Operation: %s", operation.value)

        headers = request.headers
        mime_type = get_header(headers, "Content-Type", DEFAULT_MIME_TYPE)
        content_size = _parse_i64(get_header(headers, "Content-Length"))
        disposition = parse_content_disposition(get_header(headers, "Content-Disposition"))

        match operation:
            case OperationType.PUT_OBJECT:
                await self.storage.put_object(
                    WriteObjectData(
                        path=object_path,
                        chunks=request.content.iter_chunked(_CHUNK_SIZE),
                        mime_type=mime_type,
                        content_size=content_size,
                        filename=disposition.filename,
                        encoded_filename=disposition.encoded_filename,
                    )
                )
                return web.Response(status=201)

            case OperationType.CREATE_MULTIPART_UPLOAD:
                upload_id = self.storage.create_multipart_upload(
                    object_path, disposition.filename, disposition.encoded_filename, mime_type
                )
                bucket, key = split_bucket_key(object_path)
                return _xml_response(initiate_upload_xml(bucket, key, upload_id))

            case OperationType.UPLOAD_PART:
                if params.upload_id is None or params.part_number is None:
                    return web.Response(status=400, text="Missing uploadId or partNumber")
                if not params.is_registered:
                    return web.Response(status=400, text="Invalid or expires uploadId")
                await self.storage.upload_part(
                    params.upload_id,
                    params.part_number,
                    request.content.iter_chunked(_CHUNK_SIZE),
                )
                return web.Response(status=200, headers={"ETag": str(uuid.uuid4())})

            case OperationType.COMPLETE_MULTIPART_UPLOAD:
                if params.upload_id is None:
                    return web.Response(status=400, text="Missing uploadId")
                if not params.is_registered:
                    return web.Response(status=400, text="Invalid or expired uploadId")
                self.storage.complete_multipart_upload(params.upload_id)
                location = str(request.rel_url).split("?", 1)[0]
                bucket, key = split_bucket_key(object_path)
                return _xml_response(
                    complete_upload_xml(location, bucket, key, str(uuid.uuid4()))
                )

            case OperationType.ABORT_MULTIPART_UPLOAD:
                if params.upload_id is None:
                    return web.Response(status=400, text="Missing uploadId")
                self.storage.abort_multipart_upload(params.upload_id)
                return web.Response(status=204)

            case OperationType.DELETE_OBJECT:
                self.storage.delete_object(object_path)
                return web.Response(status=204)

        return web.Response(status=400, text="Unknown operation type")