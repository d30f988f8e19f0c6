"""HTTP header helpers: header lookup and Content-Disposition handling."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import quote, unquote

_ENCODED_FILENAME = re.compile(r"filename\*=(?i:utf)-?8''(?P<filename>.*?)(?:;|\Z)")


def _is_visible_ascii(value: str) -> bool:
    return all(char == "\t" or 32 <= ord(char) < 127 for char in value)


def get_header(headers: Mapping[str, str], name: str, fallback: str | None = None) -> str:
    """Return a header's value, or ``fallback`` (default empty) if absent or not ASCII."""
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        value = next((v for k, v in headers.items() if k.lower() == lowered), None)
    if value is None or not _is_visible_ascii(value):
        return fallback or ""
    return value


@dataclass
class ContentDisposition:
    """File names carried by a Content-Disposition header."""

    filename: str | None = None
    encoded_filename: str | None = None


def parse_content_disposition(value: str) -> ContentDisposition:
    """Extract the plain and percent-encoded file names from a Content-Disposition value."""
    result = ContentDisposition()
    if not value:
        return result

    match = _ENCODED_FILENAME.search(value)
    if match:
        raw = match.group("filename")
        try:
            decoded = unquote(raw, encoding="utf-8", errors="strict")
        except UnicodeDecodeError:
            decoded = None
        if decoded is not None:
            result.encoded_filename = raw if decoded != raw else quote(decoded, safe="")

    part = next((p for p in value.split(";") if p.strip().startswith("filename=")), None)
    if part is not None:
        pieces = part.split("=")
        if len(pieces) > 1:
            result.filename = pieces[1].strip('"')
    return result


def build_content_disposition_filename(
    filename: str | None, encoded_filename: str | None
) -> list[str]:
    """Return the filename parameters for a Content-Disposition header."""
    if not filename:
        return []
    parts = [f'filename="{filename}"']
    if encoded_filename is not None:
        parts.append(f"filename*=utf-8''{encoded_filename}")
    return parts