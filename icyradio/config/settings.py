"""
Client settings - defaults, environment variables and CLI overrides.
"""

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field, model_validator

from icyradio.models import MetadataMode

DEFAULT_STREAM_URL = "https://stream.gensokyoradio.net/3/"
DEFAULT_API_URL = "https://gensokyoradio.net/api/station/playing/"
DEFAULT_ALBUM_ART_BASE_URL = "https://gensokyoradio.net/images/albums/500/"

# Settings field -> environment variable
ENV_VARS = {
    "stream_url": "ICYRADIO_STREAM_URL",
    "api_url": "ICYRADIO_API_URL",
    "album_art_base_url": "ICYRADIO_ALBUM_ART_BASE_URL",
    "prefetch_seconds": "ICYRADIO_PREFETCH_SECONDS",
    "buffer_size": "ICYRADIO_BUFFER_SIZE",
    "default_bitrate": "ICYRADIO_DEFAULT_BITRATE",
    "metadata_mode": "ICYRADIO_METADATA",
    "album_art": "ICYRADIO_ALBUM_ART",
    "reconnect_delay": "ICYRADIO_RECONNECT_DELAY",
    "max_attempts": "ICYRADIO_MAX_ATTEMPTS",
    "connect_timeout": "ICYRADIO_CONNECT_TIMEOUT",
    "read_timeout": "ICYRADIO_READ_TIMEOUT",
    "api_timeout": "ICYRADIO_API_TIMEOUT",
    "refresh_interval": "ICYRADIO_REFRESH_INTERVAL",
    "sample_rate": "ICYRADIO_SAMPLE_RATE",
    "channels": "ICYRADIO_CHANNELS",
    "user_agent": "ICYRADIO_USER_AGENT",
}


class Settings(BaseModel):
    stream_url: str = DEFAULT_STREAM_URL
    api_url: str = DEFAULT_API_URL
    album_art_base_url: str = DEFAULT_ALBUM_ART_BASE_URL

    # Buffering
    prefetch_seconds: int = Field(5, ge=0, description="Seconds of audio to buffer before playback")
    buffer_size: int = Field(512 * 1024, ge=16 * 1024, description="Bounded buffer capacity in bytes")
    default_bitrate: int = Field(128, gt=0, description="kbit/s assumed when icy-br is missing")

    # Metadata display
    metadata_mode: MetadataMode = MetadataMode.NONE
    album_art: bool = False
    refresh_interval: float = Field(1.0, gt=0)

    # Reconnect loop
    reconnect_delay: float = Field(1.0, ge=0)
    max_attempts: Optional[int] = Field(None, ge=1, description="None retries forever")

    # HTTP
    connect_timeout: float = Field(10.0, gt=0)
    read_timeout: float = Field(15.0, gt=0)
    api_timeout: float = Field(10.0, gt=0)
    user_agent: str = "icyradio/1.0"

    # Output device
    sample_rate: int = Field(44100, gt=0)
    channels: int = Field(2, ge=1, le=2)

    @model_validator(mode="after")
    def validate_album_art(self):
        if self.album_art and self.metadata_mode != MetadataMode.API:
            raise ValueError("album_art requires metadata_mode 'api'")
        return self

    @property
    def wants_icy_metadata(self) -> bool:
        return self.metadata_mode != MetadataMode.NONE

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Load settings from ICYRADIO_* environment variables."""
        if environ is None:
            environ = os.environ

        values = {}
        for field, var in ENV_VARS.items():
            raw = environ.get(var)
            if raw is None or not raw.strip():
                continue
            values[field] = raw.strip()

        if "metadata_mode" in values:
            values["metadata_mode"] = values["metadata_mode"].lower()

        return cls(**values)

    def merged(self, **overrides) -> "Settings":
        """Return a validated copy with the non-None overrides applied."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return Settings(**data)
