from __future__ import annotations

import io
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from hashlib import md5
from typing import TYPE_CHECKING, Any, cast

import pytest
from litestar import Request
from litestar.types import HTTPScope
from s3_origin.errors import PreconditionFailedError
from s3_origin.storage import ObjectBody, ObjectMetadata

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Generator, Mapping

    from litestar.response import Response
    from pytest_databases._service import DockerService
    from s3_origin.ranges import ByteRange


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@dataclass
class StoredObject:
    data: bytes
    last_modified: datetime
    cache_control: str | None = None
    content_type: str | None = None

    @property
    def etag(self) -> str:
        return f'"{md5(self.data).hexdigest()}"'


@dataclass
class MemoryStorage:
    """In-memory storage backend that evaluates validators like S3 does."""

    objects: dict[str, StoredObject] = field(default_factory=dict)
    calls: list[tuple[str, str, ByteRange | None]] = field(default_factory=list)
    bodies: list[ObjectBody] = field(default_factory=list)
    closed: bool = False

    def put(
        self,
        key: str,
        data: bytes,
        *,
        cache_control: str | None = None,
        content_type: str | None = None,
    ) -> StoredObject:
        stored = StoredObject(
            data=data,
            last_modified=datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC),
            cache_control=cache_control,
            content_type=content_type,
        )
        self.objects[key] = stored
        return stored

    def _metadata(self, key: str, stored: StoredObject) -> ObjectMetadata:
        return ObjectMetadata(
            key=key,
            size=len(stored.data),
            etag=stored.etag,
            last_modified=stored.last_modified,
            cache_control=stored.cache_control,
            content_length=len(stored.data),
            http_metadata=(
                {"Content-Type": stored.content_type} if stored.content_type else {}
            ),
        )

    async def probe_metadata(self, key: str) -> ObjectMetadata | None:
        self.calls.append(("probe", key, None))
        stored = self.objects.get(key)
        if stored is None:
            return None
        return self._metadata(key, stored)

    async def fetch(
        self,
        key: str,
        conditional: Mapping[str, str] | None = None,
        byte_range: ByteRange | None = None,
    ) -> ObjectMetadata | None:
        self.calls.append(("fetch", key, byte_range))
        stored = self.objects.get(key)
        if stored is None:
            return None
        conditional = conditional or {}

        if_match = conditional.get("If-Match")
        if if_match and if_match not in {"*", stored.etag}:
            raise PreconditionFailedError(key)

        obj = self._metadata(key, stored)
        if_none_match = conditional.get("If-None-Match")
        if if_none_match:
            if if_none_match in {"*", stored.etag}:
                return obj
        elif conditional.get("If-Modified-Since"):
            since = parsedate_to_datetime(conditional["If-Modified-Since"])
            if stored.last_modified <= since:
                return obj

        data = stored.data
        if byte_range is not None:
            data = data[byte_range.start : byte_range.end + 1]
        obj.content_length = len(data)
        obj.body = ObjectBody(io.BytesIO(data), chunk_size=4)
        self.bodies.append(obj.body)
        return obj

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def make_request() -> Callable[..., Request]:
    """Build a litestar request straight from an ASGI scope."""

    def factory(
        method: str = "GET",
        path: str = "/",
        headers: dict[str, str] | None = None,
    ) -> Request:
        scope = cast(
            HTTPScope,
            {
                "type": "http",
                "method": method,
                "path": path,
                "raw_path": path.encode("latin-1"),
                "query_string": b"",
                "headers": [
                    (name.lower().encode("latin-1"), value.encode("latin-1"))
                    for name, value in (headers or {}).items()
                ],
            },
        )

        async def receive():
            return {"type": "http.request", "body": b""}

        return Request(scope=scope, receive=receive)

    return factory


async def _drain(response: Response) -> bytes:
    body_chunks: list[bytes] = []
    iterator_attr = getattr(response, "iterator", None)
    if callable(iterator_attr):
        iterator_func = cast("Callable[[], AsyncIterator[bytes]]", iterator_attr)
        async for chunk in iterator_func():
            body_chunks.append(chunk)
    else:
        content: Any = getattr(response, "content", b"")
        if isinstance(content, str):
            content = content.encode()
        body_chunks.append(content or b"")
    return b"".join(body_chunks)


@pytest.fixture
def read_body() -> Callable[[Response], Awaitable[bytes]]:
    """Drain a streamed or buffered litestar response."""
    return _drain


@dataclass
class MinioService:
    endpoint: str
    access_key: str
    secret_key: str
    secure: bool


@pytest.fixture(scope="session")
def minio_access_key() -> str:
    return os.getenv("MINIO_ACCESS_KEY", "minio")


@pytest.fixture(scope="session")
def minio_secret_key() -> str:
    return os.getenv("MINIO_SECRET_KEY", "minio123")


@pytest.fixture(scope="session")
def minio_secure() -> bool:
    return os.getenv("MINIO_SECURE", "false").lower() in {
        "true",
        "1",
        "yes",
        "y",
        "t",
        "on",
    }


@pytest.fixture(scope="session")
def minio_service_name() -> str:
    return "minio-s3-origin"


@pytest.fixture(scope="session")
def minio_service(
    docker_service: DockerService,
    minio_access_key: str,
    minio_secret_key: str,
    minio_secure: bool,
    minio_service_name: str,
) -> Generator[MinioService]:
    from urllib.error import URLError
    from urllib.request import Request as UrlRequest
    from urllib.request import urlopen

    from pytest_databases.types import ServiceContainer

    def check(_service: ServiceContainer) -> bool:
        scheme = "https" if minio_secure else "http"
        url = f"{scheme}://{_service.host}:{_service.port}/minio/health/ready"
        if not url.startswith(("http:", "https:")):
            msg = "URL must start with 'http:' or 'https:'"
            raise ValueError(msg)
        try:
            with urlopen(url=UrlRequest(url, method="GET"), timeout=10) as response:
                return response.status == 200
        except (URLError, ConnectionError):
            return False

    with docker_service.run(
        image="quay.io/minio/minio",
        name=minio_service_name,
        command="server /data",
        container_port=9000,
        timeout=20,
        pause=0.5,
        env={
            "MINIO_ROOT_USER": minio_access_key,
            "MINIO_ROOT_PASSWORD": minio_secret_key,
        },
        check=check,
    ) as service:
        yield MinioService(
            endpoint=f"{service.host}:{service.port}",
            access_key=minio_access_key,
            secret_key=minio_secret_key,
            secure=minio_secure,
        )


@pytest.fixture
def s3_client(minio_service: MinioService):
    """Create a boto3 S3 client for the MinIO service."""
    import boto3
    from botocore.config import Config

    scheme = "https" if minio_service.secure else "http"
    return boto3.client(
        "s3",
        endpoint_url=f"{scheme}://{minio_service.endpoint}",
        aws_access_key_id=minio_service.access_key,
        aws_secret_access_key=minio_service.secret_key,
        region_name="us-east-1",
        config=Config(s3={"addressing_style": "path"}),
    )


@pytest.fixture
def origin_env_vars(
    minio_service: MinioService,
) -> Generator[dict[str, str]]:
    """Point the origin settings at the MinIO service."""
    scheme = "https" if minio_service.secure else "http"
    env_vars = {
        "S3_ORIGIN_ENDPOINT": f"{scheme}://{minio_service.endpoint}",
        "S3_ORIGIN_ACCESS_KEY": minio_service.access_key,
        "S3_ORIGIN_SECRET_KEY": minio_service.secret_key,
        "S3_ORIGIN_REGION": "us-east-1",
        "S3_ORIGIN_BUCKET": "s3-origin-test",
        "S3_ORIGIN_ADDRESSING_STYLE": "path",
    }

    original_values = {}
    for key, value in env_vars.items():
        original_values[key] = os.environ.get(key)
        os.environ[key] = value

    yield env_vars

    for key, original_value in original_values.items():
        if original_value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = original_value
