import xml.etree.ElementTree as ET

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from ofuton.database import Database
from ofuton.files import FileStore
from ofuton.handlers import (
    ROBOTS_TXT,
    ObjectHandlers,
    OperationType,
    complete_upload_xml,
    determine_operation,
    index_handler,
    initiate_upload_xml,
    parse_multipart_params,
    robots_handler,
    split_bucket_key,
)
from ofuton.hashing import blake3_hex
from ofuton.storage import Storage, initialize_bucket


@pytest.fixture
def storage(tmp_path):
    database = Database(":memory:")
    database.migrate()
    store = Storage(database, FileStore(initialize_bucket(tmp_path / "bucket")), 3600)
    yield store
    database.close()


def _app(storage):
    handlers = ObjectHandlers(storage)
    app = web.Application()
    app.router.add_get("/", index_handler)
    app.router.add_get("/robots.txt", robots_handler)
    app.router.add_get("/{bucket}/{object:.+}", handlers.read)
    for method in ("POST", "PUT", "DELETE"):
        app.router.add_route(method, "/{bucket}/{object:.+}", handlers.write)
    return app


@pytest.mark.parametrize(
    "method, multipart, expected",
    [
        ("PUT", False, OperationType.PUT_OBJECT),
        ("PUT", True, OperationType.UPLOAD_PART),
        ("POST", False, OperationType.CREATE_MULTIPART_UPLOAD),
        ("POST", True, OperationType.COMPLETE_MULTIPART_UPLOAD),
        ("DELETE", False, OperationType.DELETE_OBJECT),
        ("DELETE", True, OperationType.ABORT_MULTIPART_UPLOAD),
        ("PATCH", False, OperationType.UNKNOWN),
    ],
)
def test_determine_operation(method, multipart, expected):
    assert determine_operation(method, multipart) is expected


def test_split_bucket_key():
    assert split_bucket_key("/bucket/key") == ("", "bucket/key")
    assert split_bucket_key("noslash") == ("", "noslash")


def test_initiate_xml_round_trip():
    root = ET.fromstring(initiate_upload_xml("b", "k&<x>", "id-1"))
    assert root.tag == "InitiateMultipartUploadResult"
    assert [child.tag for child in root] == ["Bucket", "Key", "UploadId"]
    assert root.findtext("Key") == "k&<x>"
    assert root.findtext("UploadId") == "id-1"


def test_complete_xml_round_trip():
    root = ET.fromstring(complete_upload_xml("/b/k", "b", "k", "tag"))
    assert root.tag == "CompleteMultipartUploadResult"
    assert [child.tag for child in root] == ["Location", "Bucket", "Key", "ETag"]
    assert root.findtext("Location") == "/b/k"


def test_parse_multipart_params(storage):
    params = parse_multipart_params({"uploadId": "missing", "partNumber": "3"}, storage)
    assert params.upload_id == "missing"
    assert params.part_number == 3
    assert params.is_registered is False

    upload_id = storage.create_multipart_upload("/b/k", None, None, "text/plain")
    registered = parse_multipart_params({"upload_id": upload_id}, storage)
    assert registered.is_registered is True
    assert registered.part_number is None


def test_parse_multipart_params_rejects_bad_part_number(storage):
    with pytest.raises(ValueError):
        parse_multipart_params({"uploadId": "x", "partNumber": "70000"}, storage)
    with pytest.raises(ValueError):
        parse_multipart_params({"uploadId": "x", "partNumber": "abc"}, storage)


@pytest.mark.asyncio
async def test_static_pages(storage):
    async with TestClient(TestServer(_app(storage))) as client:
        index = await client.get("/")
        assert (await index.text()).startswith("ofuton v")
        robots = await client.get("/robots.txt")
        assert await robots.text() == ROBOTS_TXT


@pytest.mark.asyncio
async def test_put_then_get(storage):
    data = b"hello"
    async with TestClient(TestServer(_app(storage))) as client:
        put = await client.put(
            "/bucket/a.txt",
            data=data,
            headers={"Content-Type": "text/plain", "Content-Disposition": 'attachment; filename="a.txt"'},
        )
        assert put.status == 201

        got = await client.get("/bucket/a.txt")
        assert got.status == 200
        assert await got.read() == data
        assert got.headers["ETag"] == f'"{blake3_hex("/bucket/a.txt")}"'
        assert got.headers["Content-Type"] == "text/plain"
        assert got.headers["Cache-Control"] == "max-age=31536000, immutable"
        assert got.headers["Content-Disposition"] == 'inline; filename="a.txt"'


@pytest.mark.asyncio
async def test_head_reports_stored_size(storage):
    data = b"hello world"
    async with TestClient(TestServer(_app(storage))) as client:
        await client.put("/bucket/h.bin", data=data)
        head = await client.head("/bucket/h.bin")
        assert head.status == 200
        assert head.headers["Content-Length"] == str(len(data))
        assert await head.read() == b""


@pytest.mark.asyncio
async def test_range_request(storage):
    data = b"hello"
    async with TestClient(TestServer(_app(storage))) as client:
        await client.put("/bucket/r.bin", data=data)
        partial = await client.get("/bucket/r.bin", headers={"Range": "bytes=1-3"})
        assert partial.status == 206
        assert await partial.read() == data[1:4]
        assert partial.headers["Content-Range"] == "bytes 1-3/5"

        beyond = await client.get("/bucket/r.bin", headers={"Range": "bytes=50-"})
        assert beyond.status == 416


@pytest.mark.asyncio
async def test_missing_object_is_not_found(storage):
    async with TestClient(TestServer(_app(storage))) as client:
        response = await client.get("/bucket/none")
        assert response.status == 404
        assert await response.text() == "Object not found"


@pytest.mark.asyncio
async def test_delete_object(storage):
    async with TestClient(TestServer(_app(storage))) as client:
        await client.put("/bucket/d.bin", data=b"x")
        deleted = await client.delete("/bucket/d.bin")
        assert deleted.status == 204
        after = await client.get("/bucket/d.bin")
        assert after.status == 404


@pytest.mark.asyncio
async def test_multipart_upload_flow(storage):
    path = "/bucket/big.bin"
    async with TestClient(TestServer(_app(storage))) as client:
        created = await client.post(path, headers={"Content-Type": "text/plain"})
        assert created.status == 200
        assert created.headers["Content-Type"] == "application/xml"
        root = ET.fromstring(await created.read())
        assert root.findtext("Key") == path.lstrip("/")
        upload_id = root.findtext("UploadId")
        assert storage.is_registered(upload_id)

        second = await client.put(path, params={"uploadId": upload_id, "partNumber": "2"}, data=b"world")
        first = await client.put(path, params={"uploadId": upload_id, "partNumber": "1"}, data=b"hello ")
        assert (first.status, second.status) == (200, 200)
        assert first.headers["ETag"] != second.headers["ETag"]

        done = await client.post(path, params={"uploadId": upload_id})
        assert done.status == 200
        result = ET.fromstring(await done.read())
        assert result.tag == "CompleteMultipartUploadResult"
        assert result.findtext("Location") == path
        assert storage.is_registered(upload_id) is False

        got = await client.get(path)
        assert await got.read() == b"hello world"
        assert got.headers["Content-Type"] == "text/plain"


@pytest.mark.asyncio
async def test_abort_multipart_upload(storage):
    path = "/bucket/abort.bin"
    async with TestClient(TestServer(_app(storage))) as client:
        created = await client.post(path)
        upload_id = ET.fromstring(await created.read()).findtext("UploadId")
        await client.put(path, params={"uploadId": upload_id, "partNumber": "1"}, data=b"x")
        aborted = await client.delete(path, params={"uploadId": upload_id})
        assert aborted.status == 204
        assert storage.is_registered(upload_id) is False
        assert not storage.files.resolve_path(upload_id, True).exists()


@pytest.mark.asyncio
async def test_upload_part_errors(storage):
    async with TestClient(TestServer(_app(storage))) as client:
        unknown = await client.put("/bucket/p", params={"uploadId": "nope", "partNumber": "1"}, data=b"x")
        assert unknown.status == 400
        assert await unknown.text() == "Invalid or expires uploadId"

        missing = await client.put("/bucket/p", params={"uploadId": "nope"}, data=b"x")
        assert missing.status == 400
        assert await missing.text() == "Missing uploadId or partNumber"

        bad = await client.put("/bucket/p", params={"uploadId": "nope", "partNumber": "x"}, data=b"x")
        assert bad.status == 400


@pytest.mark.asyncio
async def test_complete_unknown_upload(storage):
    async with TestClient(TestServer(_app(storage))) as client:
        response = await client.post("/bucket/c", params={"uploadId": "nope"})
        assert response.status == 400
        assert await response.text() == "Invalid or expired uploadId"