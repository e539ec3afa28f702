from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from email.utils import parsedate_to_datetime
from functools import partial
from typing import TYPE_CHECKING, Any, Protocol

from anyio import CancelScope, to_thread
from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from .errors import PreconditionFailedError, RangeNotSatisfiableError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Mapping
    from datetime import datetime

    from .ranges import ByteRange
    from .settings import OriginSettings
else:  # pragma: no cover
    AsyncIterator = Mapping = Any

LOG = logging.getLogger("s3_origin.storage")

CHUNK_SIZE = 64 * 1024

MISSING_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
NOT_MODIFIED_CODES = {"304", "NotModified"}
PRECONDITION_FAILED_CODES = {"412", "PreconditionFailed"}

_HTTP_METADATA_FIELDS = {
    "Content-Type": "ContentType",
    "Content-Encoding": "ContentEncoding",
    "Content-Language": "ContentLanguage",
    "Content-Disposition": "ContentDisposition",
    "Expires": "Expires",
}

_CONDITIONAL_KWARGS = {
    "If-Match": "IfMatch",
    "If-None-Match": "IfNoneMatch",
    "If-Modified-Since": "IfModifiedSince",
    "If-Unmodified-Since": "IfUnmodifiedSince",
}
_DATE_VALIDATORS = {"If-Modified-Since", "If-Unmodified-Since"}


async def _run_sync(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    return await to_thread.run_sync(partial(func, *args, **kwargs))


class ObjectBody:
    """Object payload that can be streamed exactly once.

    The underlying stream is closed when iteration finishes, when the
    consumer abandons the iterator, or on an explicit ``aclose``.
    """

    def __init__(self, stream: Any, chunk_size: int = CHUNK_SIZE):
        self._stream = stream
        self._chunk_size = chunk_size
        self._consumed = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        if self._consumed or self._closed:
            message = "object body already consumed"
            raise RuntimeError(message)
        self._consumed = True
        try:
            while True:
                chunk = await _run_sync(self._stream.read, self._chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        # a client disconnect arrives as a cancelled scope; the close must still run
        with CancelScope(shield=True):
            await _run_sync(self._stream.close)
        self._closed = True


@dataclass
class ObjectMetadata:
    key: str
    size: int | None
    etag: str
    last_modified: datetime
    cache_control: str | None = None
    content_length: int | None = None
    http_metadata: dict[str, Any] = field(default_factory=dict)
    body: ObjectBody | None = None

    @property
    def body_present(self) -> bool:
        return self.body is not None


class StorageBackend(Protocol):
    async def probe_metadata(self, key: str) -> ObjectMetadata | None: ...

    async def fetch(
        self,
        key: str,
        conditional: Mapping[str, str] | None = None,
        byte_range: ByteRange | None = None,
    ) -> ObjectMetadata | None: ...

    async def close(self) -> None: ...


def _error_code(error: ClientError) -> str | None:
    return error.response.get("Error", {}).get("Code")


def _parse_http_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def _total_from_content_range(value: str) -> int | None:
    # "bytes 0-99/1234" or "bytes 0-99/*"
    _, _, total = value.rpartition("/")
    return int(total) if total.isdigit() else None


class S3Storage:
    """Storage backend over a single S3 bucket, driven through boto3."""

    def __init__(self, client: Any, bucket: str):
        self._client = client
        self._bucket = bucket

    @property
    def bucket(self) -> str:
        return self._bucket

    @classmethod
    def from_settings(cls, settings: OriginSettings) -> S3Storage:
        session = Session(
            aws_access_key_id=settings.access_key,
            aws_secret_access_key=settings.secret_key,
            aws_session_token=settings.session_token,
            region_name=settings.region,
        )
        client = session.client(
            "s3",
            endpoint_url=settings.endpoint,
            config=BotoConfig(
                signature_version="s3v4",
                retries={"max_attempts": 3},
                s3={"addressing_style": settings.addressing_style},
            ),
        )
        return cls(client, settings.bucket)

    async def probe_metadata(self, key: str) -> ObjectMetadata | None:
        try:
            result = await _run_sync(
                self._client.head_object, Bucket=self._bucket, Key=key
            )
        except ClientError as error:
            if _error_code(error) in MISSING_CODES:
                LOG.debug("probe miss for s3://%s/%s", self._bucket, key)
                return None
            raise
        return self._metadata(key, result)

    async def fetch(
        self,
        key: str,
        conditional: Mapping[str, str] | None = None,
        byte_range: ByteRange | None = None,
    ) -> ObjectMetadata | None:
        get_kwargs: dict[str, Any] = {"Bucket": self._bucket, "Key": key}
        get_kwargs.update(self._conditional_kwargs(conditional or {}))
        if byte_range is not None:
            get_kwargs["Range"] = byte_range.header_value

        try:
            result = await _run_sync(self._client.get_object, **get_kwargs)
        except ClientError as error:
            code = _error_code(error)
            if code in MISSING_CODES:
                LOG.debug("fetch miss for s3://%s/%s", self._bucket, key)
                return None
            if code in NOT_MODIFIED_CODES:
                return await self._not_modified(key, error)
            if code in PRECONDITION_FAILED_CODES:
                message = f"precondition failed for {key!r}"
                raise PreconditionFailedError(message) from error
            if code == "InvalidRange":
                actual = error.response.get("Error", {}).get("ActualObjectSize")
                size = int(actual) if actual is not None and str(actual).isdigit() else None
                message = f"storage rejected {get_kwargs.get('Range')} for {key!r}"
                raise RangeNotSatisfiableError(message, size=size) from error
            raise

        obj = self._metadata(key, result)
        obj.body = ObjectBody(result["Body"])
        return obj

    async def close(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await _run_sync(close)

    def _metadata(self, key: str, result: Mapping[str, Any]) -> ObjectMetadata:
        content_length = result.get("ContentLength")
        content_range = result.get("ContentRange")
        size = (
            _total_from_content_range(content_range)
            if content_range
            else content_length
        )
        return ObjectMetadata(
            key=key,
            size=size,
            etag=result["ETag"],
            last_modified=result["LastModified"],
            cache_control=result.get("CacheControl"),
            content_length=content_length,
            http_metadata={
                header: result[name]
                for header, name in _HTTP_METADATA_FIELDS.items()
                if result.get(name) is not None
            },
        )

    async def _not_modified(self, key: str, error: ClientError) -> ObjectMetadata | None:
        headers = error.response.get("ResponseMetadata", {}).get("HTTPHeaders", {})
        etag = headers.get("etag")
        last_modified = _parse_http_date(headers.get("last-modified"))
        if etag and last_modified:
            return ObjectMetadata(
                key=key,
                size=None,
                etag=etag,
                last_modified=last_modified,
                cache_control=headers.get("cache-control"),
            )
        # Some S3 implementations strip validators from 304 responses.
        LOG.debug("304 without validators for s3://%s/%s, probing", self._bucket, key)
        probed = await self.probe_metadata(key)
        if probed is None:
            return None
        return replace(probed, body=None)

    @staticmethod
    def _conditional_kwargs(conditional: Mapping[str, str]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        for header, name in _CONDITIONAL_KWARGS.items():
            value = conditional.get(header)
            if not value:
                continue
            if header in _DATE_VALIDATORS:
                parsed = _parse_http_date(value)
                if parsed is None:
                    LOG.debug("ignoring unparseable %s: %r", header, value)
                    continue
                kwargs[name] = parsed
            else:
                kwargs[name] = value
        return kwargs
