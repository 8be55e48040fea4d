from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Track(BaseModel):
    """Normalized now-playing payload sent to every subscriber of a username."""

    model_config = ConfigDict(frozen=True)

    artist: str = ""
    track: str = ""
    image_url: str = ""
    track_url: str = ""
    is_now_playing: bool = False
    date_uts: int = Field(0, description="Scrobble time in seconds since epoch, 0 while playing")
    date_text: str = Field("", description="Human readable scrobble time, empty while playing")

    def to_message(self) -> str:
        return self.model_dump_json()


# Upstream user.getrecenttracks schema. Only the fields we relay are declared.


class LastfmText(BaseModel):
    text: str = Field("", alias="#text")


class LastfmImage(BaseModel):
    url: str = Field("", alias="#text")
    size: str = ""


class LastfmDate(BaseModel):
    uts: str = ""
    text: str = Field("", alias="#text")


class LastfmTrackAttr(BaseModel):
    nowplaying: str = ""


class LastfmTrack(BaseModel):
    artist: LastfmText = Field(default_factory=LastfmText)
    name: str = ""
    url: str = ""
    image: list[LastfmImage] = Field(default_factory=list)
    date: Optional[LastfmDate] = None
    attr: Optional[LastfmTrackAttr] = Field(None, alias="@attr")

    @property
    def is_now_playing(self) -> bool:
        return self.attr is not None and self.attr.nowplaying.strip() == "true"

    def image_of_size(self, size: str) -> str:
        for image in self.image:
            if image.size == size:
                return image.url
        return ""


class LastfmRecentTracks(BaseModel):
    track: list[LastfmTrack] = Field(default_factory=list)

    @field_validator("track", mode="before")
    @classmethod
    def wrap_single_track(cls, value: Any) -> Any:
        # Last.fm collapses one-element lists into a bare object.
        if isinstance(value, dict):
            return [value]
        return value


class LastfmRecentTracksResponse(BaseModel):
    recenttracks: LastfmRecentTracks = Field(default_factory=LastfmRecentTracks)
