from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from litestar.enums import MediaType
from litestar.response import Response, Stream

from .errors import (
    MethodNotAllowedError,
    ObjectNotFoundError,
    OriginError,
    RangeError,
    RangeInvalidError,
)
from .headers import conditional_headers, not_modified_headers, object_headers
from .keys import normalize_key
from .ranges import ByteRange, build_range_policy, reconcile
from .settings import OriginSettings, load_settings_from_env
from .storage import S3Storage

if TYPE_CHECKING:
    from collections.abc import Mapping

    from litestar import Request

    from .ranges import RangePolicy
    from .storage import StorageBackend

LOG = logging.getLogger("s3_origin.origin")

READ_METHODS = {"GET", "HEAD"}
DEFAULT_MEDIA_TYPE = "application/octet-stream"


class ObjectOrigin:
    def __init__(
        self,
        settings: OriginSettings,
        storage: StorageBackend | None = None,
        policy: RangePolicy | None = None,
    ):
        self._settings = settings
        self._storage = storage if storage is not None else S3Storage.from_settings(settings)
        self._policy = policy if policy is not None else build_range_policy(settings)

    @property
    def settings(self) -> OriginSettings:
        return self._settings

    @property
    def policy(self) -> RangePolicy:
        return self._policy

    async def startup(self) -> None:
        LOG.info(
            "S3 origin ready (endpoint=%s, bucket=%s, ranges=%s)",
            self._settings.endpoint or "aws",
            self._settings.bucket,
            self._settings.range_strategy,
        )

    async def shutdown(self) -> None:
        await self._storage.close()

    async def handle(self, request: Request, path: str) -> Response:
        LOG.debug("handle method=%s path=%s", request.method, path)
        head = request.method == "HEAD"
        try:
            if request.method not in READ_METHODS:
                raise MethodNotAllowedError
            key = normalize_key(path)
            return await self._serve(key, request.headers, head=head)
        except OriginError as error:
            LOG.debug(
                "rejected %s %s: %s %s",
                request.method,
                path,
                error.status_code,
                error.detail,
            )
            return self._error_response(error, head=head)

    async def _serve(
        self, key: str, request_headers: Mapping[str, str], *, head: bool
    ) -> Response:
        range_header = request_headers.get("range")
        byte_range: ByteRange | None = None
        probed_size: int | None = None

        if range_header:
            if self._policy.needs_size:
                probe = await self._storage.probe_metadata(key)
                if probe is None:
                    raise ObjectNotFoundError(key)
                probed_size = probe.size
            byte_range = self._resolve(range_header, probed_size)

        obj = await self._storage.fetch(
            key,
            conditional=conditional_headers(request_headers),
            byte_range=byte_range,
        )
        if obj is None:
            raise ObjectNotFoundError(key)

        if obj.body is None:
            LOG.debug("not modified key=%s etag=%s", key, obj.etag)
            return Response(
                content=b"",
                status_code=304,
                headers=not_modified_headers(obj),
                media_type=obj.http_metadata.get("Content-Type", DEFAULT_MEDIA_TYPE),
            )

        headers = object_headers(obj, self._settings.default_cache_control)
        media_type = headers.pop("Content-Type", DEFAULT_MEDIA_TYPE)
        if byte_range is None:
            status_code = 200
            headers["Content-Length"] = str(
                obj.size if obj.size is not None else obj.content_length
            )
        else:
            status_code = 206
            try:
                served = reconcile(
                    byte_range,
                    obj.size if obj.size is not None else probed_size,
                    obj.content_length,
                )
            except RangeError:
                await obj.body.aclose()
                raise
            headers["Content-Range"] = served.header_value
            headers["Content-Length"] = str(served.length)

        LOG.debug("serving key=%s status=%s", key, status_code)
        if head:
            await obj.body.aclose()
            return Response(
                content=b"",
                status_code=status_code,
                headers=headers,
                media_type=media_type,
            )
        return Stream(
            content=obj.body.iter_chunks,
            status_code=status_code,
            headers=headers,
            media_type=media_type,
        )

    def _resolve(self, range_header: str, size: int | None) -> ByteRange | None:
        try:
            return self._policy.resolve(range_header, size)
        except RangeInvalidError:
            if not self._settings.ignore_invalid_ranges:
                raise
            LOG.debug("ignoring invalid range %r", range_header)
            return None

    @staticmethod
    def _error_response(error: OriginError, *, head: bool) -> Response:
        return Response(
            content=b"" if head else error.message,
            status_code=error.status_code,
            headers=error.headers,
            media_type=MediaType.TEXT,
        )

    @classmethod
    def from_env(cls) -> ObjectOrigin:
        """Create an ObjectOrigin backed by S3 from environment variables.

        Returns:
            ObjectOrigin configured from environment variables.
        """
        return cls(load_settings_from_env())
