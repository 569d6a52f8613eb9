"""Sync engine configuration using pydantic-settings.

This module defines the SyncSettings class that reads configuration from
environment variables with the ARTIFACT_SYNC_ prefix. Only the backend URL
is required; everything else has a working default.
"""

from typing import List, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.artifact_sync.budget import DEFAULT_MAX_IMAGE_ATTEMPTS
from src.artifact_sync.events.emitter import EventSinkType


class SyncSettings(BaseSettings):
    """Sync engine configuration from environment variables.

    All environment variables are prefixed with ARTIFACT_SYNC_ (e.g.,
    ARTIFACT_SYNC_BACKEND_URL).

    Required fields:
    - backend_url: Base URL of the content backend API
    """

    model_config = SettingsConfigDict(
        env_prefix="ARTIFACT_SYNC_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Backend Configuration
    # -------------------------------------------------------------------------
    backend_url: str

    # Bearer token for the user session
    api_token: Optional[str] = None

    http_timeout_seconds: float = 30.0

    # Retries apply to GET, PATCH and DELETE only
    http_max_retries: int = 3

    http_base_delay_seconds: float = 0.5

    http_max_delay_seconds: float = 10.0

    # -------------------------------------------------------------------------
    # Push Channel Configuration
    # -------------------------------------------------------------------------
    # Realtime websocket endpoint; polling alone is used when unset
    realtime_url: Optional[str] = None

    realtime_api_key: Optional[str] = None

    realtime_heartbeat_seconds: float = 25.0

    realtime_join_timeout_seconds: float = 10.0

    # -------------------------------------------------------------------------
    # Sync Behaviour
    # -------------------------------------------------------------------------
    autosave_debounce_ms: int = 1000

    processing_poll_interval_ms: int = 2000

    draft_poll_interval_ms: int = 3000

    max_image_attempts: int = DEFAULT_MAX_IMAGE_ATTEMPTS

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------
    event_sinks: List[EventSinkType] = [EventSinkType.LOGGING]

    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("backend_url")
    @classmethod
    def validate_backend_url(cls, v: str) -> str:
        """Validate that the backend URL is an http(s) URL."""
        if not v or not v.strip():
            raise ValueError("backend_url cannot be empty")
        if not v.startswith(("http://", "https://")):
            raise ValueError("backend_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("realtime_url")
    @classmethod
    def validate_realtime_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the realtime URL is a websocket URL."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("realtime_url must start with ws:// or wss://")
        return v

    @field_validator(
        "autosave_debounce_ms",
        "processing_poll_interval_ms",
        "draft_poll_interval_ms",
    )
    @classmethod
    def validate_positive_ms(cls, v: int) -> int:
        if v < 1:
            raise ValueError("intervals must be at least 1 ms")
        return v

    @field_validator("http_max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("http_max_retries cannot be negative")
        return v

    @field_validator("max_image_attempts")
    @classmethod
    def validate_max_image_attempts(cls, v: int) -> int:
        """Image generation is capped per need; the cap can only be lowered."""
        if not 1 <= v <= DEFAULT_MAX_IMAGE_ATTEMPTS:
            raise ValueError(
                f"max_image_attempts must be between 1 and {DEFAULT_MAX_IMAGE_ATTEMPTS}"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_realtime_credentials(self) -> "SyncSettings":
        """A realtime URL needs an API key to join channels."""
        if self.realtime_url and not self.realtime_api_key:
            raise ValueError("realtime_api_key is required when realtime_url is set")
        return self


def get_settings() -> SyncSettings:
    """Create and return SyncSettings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return SyncSettings()
