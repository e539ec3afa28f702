"""HTTP origin serving immutable objects from S3-compatible storage."""

from .app import create_app
from .origin import ObjectOrigin
from .settings import OriginSettings

__all__ = ["ObjectOrigin", "OriginSettings", "create_app"]
