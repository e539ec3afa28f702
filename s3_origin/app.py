from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from urllib.parse import quote

from litestar import Litestar, Request, get
from litestar.config.cors import CORSConfig
from litestar.enums import MediaType
from litestar.exceptions import HTTPException
from litestar.handlers import asgi
from litestar.logging.config import LoggingConfig
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController
from litestar.response import Response
from litestar.status_codes import HTTP_500_INTERNAL_SERVER_ERROR

from .origin import ObjectOrigin

if TYPE_CHECKING:
    from litestar.types import Receive, Scope, Send

LOG = logging.getLogger("s3_origin.app")

prometheus_config = PrometheusConfig(app_name="s3_origin", prefix="s3_origin")


def _raw_path(scope: Scope) -> str:
    raw_path = scope.get("raw_path")
    if raw_path:
        # some servers leave the query string on raw_path
        return raw_path.decode("latin-1").partition("?")[0]
    return quote(scope.get("path", "/"))


def _http_error(request: Request, exc: HTTPException) -> Response:
    return Response(
        content=exc.detail,
        status_code=exc.status_code,
        headers=exc.headers,
        media_type=MediaType.TEXT,
    )


def _internal_error(request: Request, exc: Exception) -> Response:
    LOG.error(
        "unhandled error for %s %s", request.method, request.url.path, exc_info=exc
    )
    return Response(
        content="Internal Server Error",
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        media_type=MediaType.TEXT,
    )


def create_app(origin: ObjectOrigin | None = None) -> Litestar:
    """Create the S3 origin ASGI application."""
    origin = origin if origin is not None else ObjectOrigin.from_env()

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @asgi(path="/", is_mount=True, copy_scope=True)
    async def object_handler(scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope=scope, receive=receive)
        response = await origin.handle(request, _raw_path(scope))
        asgi_response = response.to_asgi_response(None, request)
        await asgi_response(scope, receive, send)

    async def startup(app: Litestar) -> None:
        await origin.startup()

    async def shutdown(app: Litestar) -> None:
        await origin.shutdown()

    cors_config = CORSConfig(
        allow_origins=["*"],
        allow_methods=["GET", "HEAD"],
        allow_headers=["*"],
        expose_headers=[
            "ETag",
            "Content-Range",
            "Content-Length",
            "Accept-Ranges",
        ],
    )

    return Litestar(
        route_handlers=[health, object_handler, PrometheusController],
        on_startup=[startup],
        on_shutdown=[shutdown],
        cors_config=cors_config,
        middleware=[prometheus_config.middleware],
        exception_handlers={
            HTTPException: _http_error,
            Exception: _internal_error,
        },
        logging_config=LoggingConfig(
            root={"level": origin.settings.log_level, "handlers": ["queue_listener"]},
        ),
    )


def run() -> None:
    import uvicorn

    origin = ObjectOrigin.from_env()
    uvicorn.run(create_app(origin), host=origin.settings.host, port=origin.settings.port)
