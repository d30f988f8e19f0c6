"""HTTP server: routing, request logging and error handling."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable

from aiohttp import web

from ofuton.config import AppConfig
from ofuton.handlers import ObjectHandlers, index_handler, robots_handler
from ofuton.signature import signature_middleware
from ofuton.storage import Storage

log = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"
OBJECT_ROUTE = "/{bucket}/{object:.+}"

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def request_logger(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Give each request an id and log its method, status, URI and latency."""
    if REQUEST_ID_HEADER not in request.headers:
        request = request.clone(
            headers=[*request.headers.items(), (REQUEST_ID_HEADER, str(uuid.uuid4()))]
        )
    method = request.method
    uri = str(request.rel_url)
    started = time.perf_counter()
    try:
        response = await handler(request)
    except web.HTTPException as exc:
        _log_request(method, exc.status, uri, started)
        raise
    _log_request(method, response.status, uri, started)
    return response


def _log_request(method: str, status: int, uri: str, started: float) -> None:
    elapsed = (time.perf_counter() - started) * 1000.0
    log.info("%s %s %s (%.1fms)", method, status, uri, elapsed)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Turn unexpected errors into a 500 response that carries a request id."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as exc:
        request_id = uuid.uuid4()
        log.error("request_id=%s %s", request_id, exc)
        return web.Response(
            status=500, text=f"Internal Server Error (RequestID: {request_id})"
        )


def create_app(config: AppConfig, storage: Storage) -> web.Application:
    """Build the web application serving the given storage."""
    app = web.Application(
        middlewares=[
            request_logger,
            error_middleware,
            signature_middleware(
                config.account.access_key,
                config.account.secret_key,
                config.bucket.request_expiration_seconds,
            ),
        ],
        client_max_size=config.bucket.max_upload_size_mb * 1024 * 1024,
    )
    handlers = ObjectHandlers(storage)
    app.router.add_get("/", index_handler)
    app.router.add_get("/robots.txt", robots_handler)
    resource = app.router.add_resource(OBJECT_ROUTE)
    resource.add_route("GET", handlers.read)
    resource.add_route("HEAD", handlers.read)
    for method in ("POST", "PUT", "DELETE"):
        resource.add_route(method, handlers.write)
    return app


async def run_server(config: AppConfig, storage: Storage) -> None:
    """Serve the application until cancelled; return early if the address cannot be bound."""
    address = f"{config.server.host}:{config.server.port}"
    runner = web.AppRunner(create_app(config, storage), access_log=None)
    await runner.setup()
    try:
        site = web.TCPSite(runner, config.server.host, config.server.port)
        try:
            await site.start()
        except OSError as exc:
            log.error("Failed to bind to %s: %s", address, exc)
            return
        log.info("Server listening on http://%s", address)
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()