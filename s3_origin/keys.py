from __future__ import annotations

import re
from urllib.parse import unquote_to_bytes

from .errors import BadKeyError

INDEX_DOCUMENT = "index.html"

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def _percent_decode(path: str) -> str:
    if _BAD_ESCAPE.search(path):
        msg = f"malformed percent-escape in {path!r}"
        raise BadKeyError(msg)
    try:
        return unquote_to_bytes(path).decode("utf-8")
    except UnicodeError as error:
        msg = f"path {path!r} does not decode to UTF-8"
        raise BadKeyError(msg) from error


def normalize_key(path: str) -> str:
    """Map a raw (percent-encoded) request path to a storage key.

    Directory-style paths resolve to their index document. Raises
    ``BadKeyError`` for undecodable paths and for keys that could escape the
    key namespace.
    """
    key = _percent_decode(path).lstrip("/")

    if key == "":
        key = INDEX_DOCUMENT
    elif key.endswith("/"):
        key = f"{key}{INDEX_DOCUMENT}"

    if ".." in key or "\0" in key:
        msg = f"rejected key {key!r}"
        raise BadKeyError(msg)

    return key
