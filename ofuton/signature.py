"""Verification of AWS Signature Version 4 request signatures."""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import datetime, timezone
from urllib.parse import quote

from aiohttp import web

from ofuton.httputil import get_header

log = logging.getLogger(__name__)

ALGORITHM = "AWS4-HMAC-SHA256"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
DATE_FORMAT = "%Y%m%dT%H%M%SZ"
SIGNATURE_QUERY_KEY = "X-Amz-Signature"
WRITE_METHODS = frozenset({"POST", "PUT", "DELETE"})

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def get_components(authorization: str) -> dict[str, str]:
    """Split the parameters after the scheme of an Authorization value into a dict."""
    _, separator, rest = authorization.partition(" ")
    if not separator:
        return {}
    components: dict[str, str] = {}
    for part in rest.split(","):
        key, equals, value = part.strip().partition("=")
        if equals:
            components[key] = value
    return components


def get_query_string(query: str) -> str:
    """Return the canonical query string: encoded pairs, sorted, without the signature."""
    pairs = []
    for item in query.split("&"):
        key, _, value = item.partition("=")
        if key == SIGNATURE_QUERY_KEY:
            continue
        pairs.append(f"{quote(key, safe='')}={quote(value, safe='')}")
    return "&".join(sorted(pairs))


def derive_signing_key(secret_key: str, credentials: Sequence[str]) -> bytes:
    """Derive the signing key from the secret and the date, region, service and terminator."""
    if len(credentials) < 5:
        raise ValueError("credentials must hold access key, date, region, service and terminator")
    key = f"AWS4{secret_key}".encode()
    for part in credentials[1:5]:
        key = hmac.new(key, part.encode(), hashlib.sha256).digest()
    return key


def string_to_sign(
    method: str,
    path: str,
    query: str,
    headers: Mapping[str, str],
    credentials: Sequence[str],
    signed_headers: Sequence[str],
) -> str:
    """Build the string that the request signature is computed over."""
    canonical_headers = "".join(
        f"{name.lower()}:{get_header(headers, name)}\n" for name in signed_headers
    )
    content_hash = get_header(headers, "X-Amz-Content-Sha256", UNSIGNED_PAYLOAD)
    canonical_request = "\n".join(
        [
            method,
            path,
            get_query_string(query),
            canonical_headers,
            ";".join(name.lower() for name in signed_headers),
            content_hash,
        ]
    )
    request_hash = hashlib.sha256(canonical_request.encode()).hexdigest()
    scope = "/".join(credentials[1:5])
    return "\n".join([ALGORITHM, get_header(headers, "X-Amz-Date"), scope, request_hash])


def _naive_utc(moment: datetime | None) -> datetime:
    value = moment or datetime.now(timezone.utc)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def verify_request(
    method: str,
    path: str,
    query: str,
    headers: Mapping[str, str],
    access_key: str,
    secret_key: str,
    expiration_seconds: int,
    now: datetime | None = None,
) -> bool:
    """Whether the request carries a valid, unexpired signature for the account."""
    authorization = get_header(headers, "Authorization")
    if not authorization:
        log.debug("SignatureVerification Failed: Authorization header is missing or empty")
        return False

    components = get_components(authorization)
    signature = components.get("Signature", "")
    credentials = components.get("Credential", "").split("/")
    if not signature or len(credentials) != 5:
        log.debug("SignatureVerification Failed: Invalid signature or credentials length mismatch")
        return False

    if credentials[0] != access_key:
        log.debug("SignatureVerification Failed: Access key mismatch")
        return False

    try:
        signed_at = datetime.strptime(get_header(headers, "X-Amz-Date"), DATE_FORMAT)
    except ValueError as exc:
        log.debug("SignatureVerification Failed: Signature date is invalid: %s", exc)
        return False
    if int((_naive_utc(now) - signed_at).total_seconds()) > expiration_seconds:
        log.debug("SignatureVerification Failed: Signature date expired")
        return False

    signed_headers = sorted(components.get("SignedHeaders", "").split(";"))
    to_sign = string_to_sign(method, path, query, headers, credentials, signed_headers)
    calculated = hmac.new(
        derive_signing_key(secret_key, credentials), to_sign.encode(), hashlib.sha256
    ).hexdigest()

    verified = hmac.compare_digest(calculated.encode(), signature.encode())
    if not verified:
        log.debug(
            "SignatureVerification Failed: Signature mismatch. Expected: %s, Got: %s",
            calculated,
            signature,
        )
    return verified


def signature_middleware(
    access_key: str, secret_key: str, expiration_seconds: int
) -> Callable[[web.Request, Handler], Awaitable[web.StreamResponse]]:
    """Middleware refusing write requests whose signature does not verify.

    Requests with methods other than POST, PUT and DELETE pass through unchecked.
    """

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if request.method in WRITE_METHODS and not verify_request(
            request.method,
            request.rel_url.raw_path,
            request.rel_url.raw_query_string,
            request.headers,
            access_key,
            secret_key,
            expiration_seconds,
        ):
            return web.Response(status=403, text="Forbidden: Invalid signature")
        return await handler(request)

    return middleware