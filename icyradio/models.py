"""
Pydantic models for stream headers, ICY metadata and the now-playing API.
"""

import re
from enum import Enum
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PlaybackState(str, Enum):
    STOPPED = "stopped"
    CONNECTING = "connecting"
    BUFFERING = "buffering"
    PLAYING = "playing"
    RECONNECTING = "reconnecting"


class MetadataMode(str, Enum):
    NONE = "none"
    PRINT = "print"
    API = "api"


def _parse_int(value: Optional[str]) -> Optional[int]:
    """Parse the leading integer of a header value ("128", "128,128")."""
    if value is None:
        return None
    match = re.match(r"\s*(\d+)", value)
    if not match:
        return None
    return int(match.group(1))


# Stream models
class StreamInfo(BaseModel):
    url: str
    content_type: Optional[str] = None
    name: Optional[str] = None
    genre: Optional[str] = None
    description: Optional[str] = None
    homepage: Optional[str] = None
    bitrate: Optional[int] = Field(None, description="Advertised bitrate in kbit/s")
    metaint: Optional[int] = Field(None, description="Audio bytes between ICY metadata frames")
    sample_rate: Optional[int] = None
    audio_info: Optional[str] = None

    @classmethod
    def from_headers(cls, url: str, headers: Mapping[str, str]) -> "StreamInfo":
        """Build stream info from the response headers of an ICY stream."""
        content_type = headers.get("Content-Type")
        if content_type:
            content_type = content_type.split(";")[0].strip().lower()

        return cls(
            url=url,
            content_type=content_type or None,
            name=headers.get("icy-name") or None,
            genre=headers.get("icy-genre") or None,
            description=headers.get("icy-description") or None,
            homepage=headers.get("icy-url") or None,
            bitrate=_parse_int(headers.get("icy-br")),
            metaint=_parse_int(headers.get("icy-metaint")),
            sample_rate=_parse_int(headers.get("icy-sr")),
            audio_info=headers.get("ice-audio-info") or headers.get("icy-audio-info"),
        )


class IcyMetadata(BaseModel):
    stream_title: Optional[str] = None
    stream_url: Optional[str] = None
    fields: Dict[str, str] = Field(default_factory=dict)

    @property
    def artist(self) -> Optional[str]:
        if self.stream_title and " - " in self.stream_title:
            return self.stream_title.split(" - ", 1)[0].strip() or None
        return None

    @property
    def title(self) -> Optional[str]:
        if self.stream_title and " - " in self.stream_title:
            return self.stream_title.split(" - ", 1)[1].strip() or None
        return self.stream_title


# Now-playing API models (Gensokyo Radio /api/station/playing/ shape)
class _ApiSection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    @field_validator("*", mode="before", check_fields=False)
    @classmethod
    def empty_to_none(cls, value):
        # The API sends "" for unknown values, numeric fields included
        if isinstance(value, str) and not value.strip():
            return None
        return value


class SongInfo(_ApiSection):
    title: Optional[str] = Field(None, alias="TITLE")
    artist: Optional[str] = Field(None, alias="ARTIST")
    album: Optional[str] = Field(None, alias="ALBUM")
    year: Optional[str] = Field(None, alias="YEAR")
    circle: Optional[str] = Field(None, alias="CIRCLE")

    @field_validator("year", mode="before")
    @classmethod
    def year_as_text(cls, value):
        if isinstance(value, int):
            return str(value)
        return value


class SongTimes(_ApiSection):
    duration: Optional[int] = Field(None, alias="DURATION")
    played: Optional[int] = Field(None, alias="PLAYED")
    remaining: Optional[int] = Field(None, alias="REMAINING")
    song_start: Optional[int] = Field(None, alias="SONGSTART")
    song_end: Optional[int] = Field(None, alias="SONGEND")


class SongData(_ApiSection):
    song_id: Optional[int] = Field(None, alias="SONGID")
    album_id: Optional[int] = Field(None, alias="ALBUMID")
    rating: Optional[str] = Field(None, alias="RATING")
    times_rated: Optional[int] = Field(None, alias="TIMESRATED")

    @field_validator("rating", mode="before")
    @classmethod
    def rating_as_text(cls, value):
        if isinstance(value, (int, float)):
            return str(value)
        return value


class Misc(_ApiSection):
    album_art: Optional[str] = Field(None, alias="ALBUMART")
    circle_art: Optional[str] = Field(None, alias="CIRCLEART")
    circle_link: Optional[str] = Field(None, alias="CIRCLELINK")


class NowPlaying(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    song_info: SongInfo = Field(default_factory=SongInfo, alias="SONGINFO")
    song_times: SongTimes = Field(default_factory=SongTimes, alias="SONGTIMES")
    song_data: SongData = Field(default_factory=SongData, alias="SONGDATA")
    misc: Misc = Field(default_factory=Misc, alias="MISC")

    @field_validator("*", mode="before")
    @classmethod
    def missing_section(cls, value):
        if value is None or value == "" or value == []:
            return {}
        return value


# Status models
class PlaybackStatus(BaseModel):
    state: PlaybackState
    stream: Optional[StreamInfo] = None
    metadata: Optional[IcyMetadata] = None
    attempts: int = 0
    reconnects: int = 0
    buffered_bytes: int = 0
