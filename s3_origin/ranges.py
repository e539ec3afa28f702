"""Range request parsing and satisfiability.

Two policies share the parser and the post-fetch reconciliation:

* ``EagerRangePolicy`` resolves against a size learned from a metadata
  probe before the object is fetched.
* ``DeferredRangePolicy`` resolves without a size, caps open ranges at a
  configured maximum length and relies on ``reconcile`` to clamp the window
  to whatever the backend actually returned.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar, Protocol

from .errors import RangeInvalidError, RangeNotSatisfiableError, RangeTooLargeError

if TYPE_CHECKING:
    from .settings import OriginSettings

LOG = logging.getLogger("s3_origin.ranges")

DEFAULT_MAX_RANGE_LENGTH = 8 * 1024 * 1024

_RANGE_PATTERN = re.compile(r"bytes=([0-9]*)-([0-9]*)")


@dataclass(frozen=True)
class RangeIntent:
    """A single parsed byte-range-spec; ``start is None`` is the suffix form."""

    start: int | None
    end: int | None

    @property
    def is_suffix(self) -> bool:
        return self.start is None

    @property
    def is_open(self) -> bool:
        return self.start is not None and self.end is None


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte window handed to the storage backend."""

    start: int
    end: int

    @property
    def offset(self) -> int:
        return self.start

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def header_value(self) -> str:
        return f"bytes={self.start}-{self.end}"


@dataclass(frozen=True)
class ContentRange:
    """Byte window actually served, with the total size if known."""

    start: int
    end: int
    size: int | None

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def header_value(self) -> str:
        total = "*" if self.size is None else str(self.size)
        return f"bytes {self.start}-{self.end}/{total}"


def parse_range_header(value: str | None) -> RangeIntent | None:
    """Parse a ``Range`` header into a single byte-range-spec.

    Returns ``None`` when there is nothing to do (no header, or
    ``bytes=-``). Raises ``RangeInvalidError`` for anything outside the
    ``bytes=<start>-<end>`` grammar, multi-range headers included.
    """
    if not value:
        return None
    match = _RANGE_PATTERN.fullmatch(value)
    if match is None:
        msg = f"malformed range header {value!r}"
        raise RangeInvalidError(msg)
    start_str, end_str = match.groups()
    if not start_str and not end_str:
        return None
    return RangeIntent(
        start=int(start_str) if start_str else None,
        end=int(end_str) if end_str else None,
    )


def reconcile(
    byte_range: ByteRange,
    size: int | None,
    returned_length: int | None = None,
) -> ContentRange:
    """Clamp a fetched window to the object size reported by the backend.

    A window that starts past the end of the object is unsatisfiable. When the
    backend does not report a total size the end is derived from the number of
    bytes it returned, and the total stays unknown.
    """
    if size is not None:
        if byte_range.start >= size:
            msg = f"range start {byte_range.start} is beyond object size {size}"
            raise RangeNotSatisfiableError(msg, size=size)
        end = min(byte_range.end, size - 1)
        return ContentRange(start=byte_range.start, end=end, size=size)

    end = byte_range.end
    if returned_length is not None:
        if returned_length <= 0:
            msg = f"no bytes returned for range starting at {byte_range.start}"
            raise RangeNotSatisfiableError(msg)
        end = min(end, byte_range.start + returned_length - 1)
    return ContentRange(start=byte_range.start, end=end, size=None)


class RangePolicy(Protocol):
    needs_size: ClassVar[bool]

    def resolve(self, header: str | None, size: int | None) -> ByteRange | None: ...


class EagerRangePolicy:
    """Resolve ranges against a size that is already known."""

    needs_size: ClassVar[bool] = True

    def resolve(self, header: str | None, size: int | None) -> ByteRange | None:
        if size is None:
            msg = "eager range resolution requires the object size"
            raise ValueError(msg)
        try:
            intent = parse_range_header(header)
        except RangeInvalidError as error:
            error.size = size
            raise
        if intent is None:
            return None

        if intent.start is None:
            suffix = intent.end or 0
            if suffix <= 0:
                msg = f"empty suffix range {header!r}"
                raise RangeInvalidError(msg, size=size)
            if size == 0:
                msg = "suffix range on an empty object"
                raise RangeNotSatisfiableError(msg, size=size)
            length = min(suffix, size)
            return ByteRange(start=size - length, end=size - 1)

        start = intent.start
        if intent.end is not None and intent.end < start:
            msg = f"range end before start in {header!r}"
            raise RangeInvalidError(msg, size=size)
        if start >= size:
            msg = f"range start {start} is beyond object size {size}"
            raise RangeNotSatisfiableError(msg, size=size)

        if intent.end is None:
            return ByteRange(start=start, end=size - 1)
        return ByteRange(start=start, end=min(intent.end, size - 1))


class DeferredRangePolicy:
    """Resolve ranges before the object size is known.

    Open ranges are bounded by ``max_length``; closed ranges longer than it
    are rejected outright. Suffix ranges need the size and are refused.
    """

    needs_size: ClassVar[bool] = False

    def __init__(self, max_length: int = DEFAULT_MAX_RANGE_LENGTH):
        if max_length <= 0:
            LOG.warning(
                "invalid max range length %r, using %d",
                max_length,
                DEFAULT_MAX_RANGE_LENGTH,
            )
            max_length = DEFAULT_MAX_RANGE_LENGTH
        self.max_length = max_length

    def resolve(self, header: str | None, size: int | None = None) -> ByteRange | None:
        intent = parse_range_header(header)
        if intent is None:
            return None

        if intent.start is None:
            msg = f"suffix range {header!r} needs the object size"
            raise RangeInvalidError(msg)

        start = intent.start
        if intent.end is None:
            return ByteRange(start=start, end=start + self.max_length - 1)

        if intent.end < start:
            msg = f"range end before start in {header!r}"
            raise RangeInvalidError(msg)
        byte_range = ByteRange(start=start, end=intent.end)
        if byte_range.length > self.max_length:
            msg = (
                f"range of {byte_range.length} bytes exceeds the "
                f"{self.max_length} byte limit"
            )
            raise RangeTooLargeError(msg)
        return byte_range


def build_range_policy(settings: OriginSettings) -> RangePolicy:
    if settings.range_strategy == "deferred":
        return DeferredRangePolicy(settings.max_range_length)
    return EagerRangePolicy()
