"""
Runtime settings.

Values come from ``VINTNER_*`` environment variables; CLI options override
them per invocation.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_API_URL = "http://localhost:8000"
DEFAULT_USER_ID = "me"
DEFAULT_CHUNK_SIZE = 10


class Settings(BaseSettings):
    """
    Connection and batching settings for the remote stage service.

    Attributes:
        api_url: Base URL of the OCR/matching/catalog backend
        access_token: Optional bearer token sent with every POST
        user_id: Identifier of the signed-in operator
        publish_chunk_size: Selections per publish request
        upload_timeout: Seconds allowed for the upload call
        ocr_timeout: Seconds allowed for the OCR call
        compare_timeout: Seconds allowed for the compare call
        publish_timeout: Seconds allowed for each publish call
        status_timeout: Seconds allowed for health/status/refresh calls
    """

    model_config = SettingsConfigDict(env_prefix="VINTNER_", extra="ignore")

    api_url: str = DEFAULT_API_URL
    access_token: str | None = None
    user_id: str = DEFAULT_USER_ID
    publish_chunk_size: int = Field(default=DEFAULT_CHUNK_SIZE, ge=1)
    upload_timeout: float = 120.0
    ocr_timeout: float = 300.0
    compare_timeout: float = 180.0
    publish_timeout: float = 60.0
    status_timeout: float = 15.0

    @field_validator("api_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("access_token")
    @classmethod
    def _blank_token_is_none(cls, v: str | None) -> str | None:
        return v or None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
