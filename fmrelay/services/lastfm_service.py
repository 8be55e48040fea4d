from __future__ import annotations

import json
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from fmrelay.config import Settings
from fmrelay.models import LastfmRecentTracksResponse, LastfmTrack, Track

MAX_RESPONSE_BYTES = 1 << 20
MAX_ERROR_BODY_BYTES = 1024


class LastfmError(Exception):
    """Raised when Last.fm answers with an error status or an unusable body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class LastfmService:
    """
    Thin async client for user.getrecenttracks, normalized to a Track.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._api_url = settings.lastfm_api_url
        self._api_key = settings.lastfm_api_key
        self._client = httpx.AsyncClient(timeout=settings.upstream_timeout_seconds, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def get_last_played_track(self, username: str) -> Optional[Track]:
        """
        Fetch the most recent (or currently playing) track for a username.

        Returns None when the user has no scrobbles.
        """

        params = {
            "method": "user.getrecenttracks",
            "user": username,
            "limit": "1",
            "api_key": self._api_key,
            "format": "json",
        }
        async with self._client.stream("GET", self._api_url, params=params) as response:
            if response.status_code != httpx.codes.OK:
                snippet = (await _read_limited(response, MAX_ERROR_BODY_BYTES)).decode("utf-8", "replace").strip()
                raise LastfmError(
                    f"Last.fm API returned status {response.status_code} for user {username}: {snippet or '<empty>'}",
                    status_code=response.status_code,
                )
            body = await _read_limited(response, MAX_RESPONSE_BYTES)

        try:
            raw = json.loads(body)
        except ValueError as exc:
            raise LastfmError(f"failed to parse Last.fm response for user {username}: {exc}") from exc
        if not isinstance(raw, dict):
            raise LastfmError(f"failed to parse Last.fm response for user {username}: unexpected payload")
        if "error" in raw:
            raise LastfmError(f"Last.fm API error {raw.get('error')} for user {username}: {raw.get('message', '')}")

        try:
            data = LastfmRecentTracksResponse.model_validate(raw)
        except ValidationError as exc:
            raise LastfmError(f"failed to parse Last.fm response for user {username}: {exc}") from exc

        if not data.recenttracks.track:
            return None
        return _to_track(data.recenttracks.track[0], username)


async def _read_limited(response: httpx.Response, limit: int) -> bytes:
    chunks = bytearray()
    async for chunk in response.aiter_bytes():
        chunks.extend(chunk)
        if len(chunks) >= limit:
            break
    return bytes(chunks[:limit])


def _to_track(entry: LastfmTrack, username: str) -> Track:
    is_now_playing = entry.is_now_playing
    date_uts = 0
    date_text = ""
    if not is_now_playing and entry.date is not None:
        date_text = entry.date.text
        if entry.date.uts:
            try:
                date_uts = int(entry.date.uts)
            except ValueError:
                logging.warning("Failed to parse date UTS %r for user %s", entry.date.uts, username)

    return Track(
        artist=entry.artist.text,
        track=entry.name,
        image_url=entry.image_of_size("large"),
        track_url=entry.url,
        is_now_playing=is_now_playing,
        date_uts=date_uts,
        date_text=date_text,
    )
