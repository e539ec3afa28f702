from __future__ import annotations

import logging
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .ranges import DEFAULT_MAX_RANGE_LENGTH

LOG = logging.getLogger("s3_origin.settings")

DEFAULT_CACHE_CONTROL = "public, max-age=3600"


class OriginSettings(BaseSettings):
    """Configuration for the object origin and its S3 backend."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    endpoint: str | None = Field(
        default=None,
        validation_alias="S3_ORIGIN_ENDPOINT",
    )
    access_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3_ORIGIN_ACCESS_KEY",
            "AWS_ACCESS_KEY_ID",
        ),
    )
    secret_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3_ORIGIN_SECRET_KEY",
            "AWS_SECRET_ACCESS_KEY",
        ),
    )
    session_token: str | None = Field(
        default=None,
        validation_alias="S3_ORIGIN_SESSION_TOKEN",
    )
    region: str = Field(
        default="us-east-1",
        validation_alias=AliasChoices(
            "S3_ORIGIN_REGION",
            "AWS_REGION",
        ),
    )
    bucket: str = Field(
        default="static",
        validation_alias="S3_ORIGIN_BUCKET",
    )
    addressing_style: Literal["auto", "virtual", "path"] = Field(
        default="auto",
        validation_alias="S3_ORIGIN_ADDRESSING_STYLE",
    )
    range_strategy: Literal["eager", "deferred"] = Field(
        default="eager",
        validation_alias="S3_ORIGIN_RANGE_STRATEGY",
    )
    max_range_length: int = Field(
        default=DEFAULT_MAX_RANGE_LENGTH,
        validation_alias="S3_ORIGIN_MAX_RANGE_LENGTH",
    )
    ignore_invalid_ranges: bool = Field(
        default=False,
        validation_alias="S3_ORIGIN_IGNORE_INVALID_RANGES",
    )
    default_cache_control: str = Field(
        default=DEFAULT_CACHE_CONTROL,
        validation_alias="S3_ORIGIN_DEFAULT_CACHE_CONTROL",
    )
    log_level: str = Field(
        default="INFO",
        validation_alias="S3_ORIGIN_LOG_LEVEL",
    )
    host: str = Field(
        default="127.0.0.1",
        validation_alias="S3_ORIGIN_HOST",
    )
    port: int = Field(
        default=8000,
        validation_alias="S3_ORIGIN_PORT",
    )

    @field_validator("max_range_length", mode="before")
    @classmethod
    def _parse_max_range_length(cls, value: object) -> int:
        if value is None or isinstance(value, bool):
            return DEFAULT_MAX_RANGE_LENGTH
        try:
            parsed = int(str(value).strip())
        except ValueError:
            parsed = 0
        if parsed <= 0:
            LOG.warning(
                "ignoring invalid max range length %r, using %d",
                value,
                DEFAULT_MAX_RANGE_LENGTH,
            )
            return DEFAULT_MAX_RANGE_LENGTH
        return parsed

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> str:
        return str(value).strip().upper()


def load_settings_from_env() -> OriginSettings:
    """Load origin settings from environment variables.

    Returns:
        OriginSettings instance populated from environment variables.
    """
    return OriginSettings()
