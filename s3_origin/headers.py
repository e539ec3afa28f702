from __future__ import annotations

from datetime import UTC, datetime
from email.utils import format_datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .storage import ObjectMetadata

CONDITIONAL_HEADERS = (
    "If-Match",
    "If-None-Match",
    "If-Modified-Since",
    "If-Unmodified-Since",
)


def format_header_value(value: Any) -> str:
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        aware = aware.astimezone(UTC)
        return format_datetime(aware, usegmt=True)
    return str(value)


def conditional_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Pick the cache validators a client sent, to be forwarded to storage."""
    selected: dict[str, str] = {}
    for name in CONDITIONAL_HEADERS:
        value = headers.get(name.lower())
        if value:
            selected[name] = value
    return selected


def object_headers(obj: ObjectMetadata, default_cache_control: str) -> dict[str, str]:
    """Headers for a response that carries (or would carry) the object body."""
    headers: dict[str, str] = {}
    for header, value in obj.http_metadata.items():
        if value is None:
            continue
        headers[header] = format_header_value(value)

    headers["ETag"] = obj.etag
    headers["Last-Modified"] = format_header_value(obj.last_modified)
    headers["Accept-Ranges"] = "bytes"
    headers["Cache-Control"] = obj.cache_control or default_cache_control
    return headers


def not_modified_headers(obj: ObjectMetadata) -> dict[str, str]:
    headers = {
        "ETag": obj.etag,
        "Last-Modified": format_header_value(obj.last_modified),
    }
    if obj.cache_control:
        headers["Cache-Control"] = obj.cache_control
    return headers
