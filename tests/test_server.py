import asyncio
import hashlib
import hmac
import logging
import socket
import tomllib
from datetime import datetime, timezone

import pytest
from aiohttp.test_utils import TestClient, TestServer, make_mocked_request
from aiohttp import web

from ofuton.config import DEFAULT_CONFIG_TOML, AppConfig, merge_settings
from ofuton.database import Database
from ofuton.files import FileStore
from ofuton.handlers import ROBOTS_TXT, VERSION
from ofuton.server import create_app, error_middleware, run_server
from ofuton.signature import DATE_FORMAT, derive_signing_key, string_to_sign
from ofuton.storage import Storage

ACCESS_KEY = "placeholder"
SECRET_KEY = "secret"


def _config(tmp_path, **server):
    override = {
        "bucket": {"path": str(tmp_path / "bucket")},
        "account": {"access_key": ACCESS_KEY, "secret_key": SECRET_KEY},
    }
    if server:
        override["server"] = server
    return AppConfig.from_mapping(merge_settings(tomllib.loads(DEFAULT_CONFIG_TOML), override))


def _storage(tmp_path):
    database = Database(":memory:")
    database.migrate()
    bucket = tmp_path / "bucket"
    bucket.mkdir(exist_ok=True)
    return Storage(database, FileStore(bucket), 3600)


def _signed(method, path):
    date = datetime.now(timezone.utc).strftime(DATE_FORMAT)
    credentials = [ACCESS_KEY, date[:8], "us-east-1", "s3", "aws4_request"]
    headers = {"X-Amz-Date": date}
    to_sign = string_to_sign(method, path, "", headers, credentials, ["x-amz-date"])
    signature = hmac.new(
        derive_signing_key(SECRET_KEY, credentials), to_sign.encode(), hashlib.sha256
    ).hexdigest()
    scope = "/".join(credentials)
    headers["Authorization"] = (
        f"AWS4-HMAC-SHA256 Credential={scope}, SignedHeaders=x-amz-date, Signature={signature}"
    )
    return headers


@pytest.mark.asyncio
async def test_index_and_robots(tmp_path):
    app = create_app(_config(tmp_path), _storage(tmp_path))
    async with TestClient(TestServer(app)) as client:
        index = await client.get("/")
        assert await index.text() == f"ofuton v{VERSION}"
        robots = await client.get("/robots.txt")
        assert await robots.text() == ROBOTS_TXT


@pytest.mark.asyncio
async def test_write_without_signature_is_forbidden(tmp_path):
    app = create_app(_config(tmp_path), _storage(tmp_path))
    async with TestClient(TestServer(app)) as client:
        response = await client.put(
            "/bucket/hello.txt", data=b"hello", headers={"Authorization": "Bearer token"}
        )
        assert response.status == 403
        assert await response.text() == "Forbidden: Invalid signature"


@pytest.mark.asyncio
async def test_signed_put_then_get(tmp_path):
    app = create_app(_config(tmp_path), _storage(tmp_path))
    async with TestClient(TestServer(app)) as client:
        headers = _signed("PUT", "/bucket/hello.txt")
        headers["Content-Type"] = "text/plain"
        put = await client.put("/bucket/hello.txt", data=b"hello", headers=headers)
        assert put.status == 201
        get = await client.get("/bucket/hello.txt")
        assert get.status == 200
        assert await get.read() == b"hello"
        assert get.headers["Content-Type"].startswith("text/plain")


@pytest.mark.asyncio
async def test_missing_object_is_not_found(tmp_path):
    app = create_app(_config(tmp_path), _storage(tmp_path))
    async with TestClient(TestServer(app)) as client:
        response = await client.get("/bucket/none.txt")
        assert response.status == 404


@pytest.mark.asyncio
async def test_failed_delete_reports_internal_error(tmp_path):
    app = create_app(_config(tmp_path), _storage(tmp_path))
    async with TestClient(TestServer(app)) as client:
        response = await client.delete(
            "/bucket/none.txt", headers=_signed("DELETE", "/bucket/none.txt")
        )
        assert response.status == 500
        assert (await response.text()).startswith("Internal Server Error (RequestID: ")


@pytest.mark.asyncio
async def test_requests_are_logged(tmp_path, caplog):
    caplog.set_level(logging.INFO, logger="ofuton.server")
    app = create_app(_config(tmp_path), _storage(tmp_path))
    async with TestClient(TestServer(app)) as client:
        await client.get("/robots.txt")
    assert any("GET 200 /robots.txt" in message for message in caplog.messages)


@pytest.mark.asyncio
async def test_error_middleware_converts_exceptions():
    async def failing(request):
        raise RuntimeError("broken")

    response = await error_middleware(make_mocked_request("GET", "/"), failing)
    assert response.status == 500
    assert "Internal Server Error (RequestID: " in response.text


@pytest.mark.asyncio
async def test_error_middleware_passes_http_exceptions():
    async def missing(request):
        raise web.HTTPNotFound()

    with pytest.raises(web.HTTPNotFound):
        await error_middleware(make_mocked_request("GET", "/"), missing)


@pytest.mark.asyncio
async def test_run_server_returns_when_port_is_taken(tmp_path, caplog):
    with socket.socket() as occupied:
        occupied.bind(("127.0.0.1", 0))
        occupied.listen()
        port = occupied.getsockname()[1]
        config = _config(tmp_path, host="127.0.0.1", port=port)
        await asyncio.wait_for(run_server(config, _storage(tmp_path)), 5)
    assert any("Failed to bind" in message for message in caplog.messages)