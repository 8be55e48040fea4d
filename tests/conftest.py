from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import pytest
from websockets.exceptions import ConnectionClosedOK

from fmrelay.config import Settings
from fmrelay.models import Track


class FakeSource:
    """Stands in for LastfmService; counts calls and can hold them open."""

    def __init__(self, track: Optional[Track] = None) -> None:
        self.track = track
        self.error: Optional[Exception] = None
        self.calls: list[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def get_last_played_track(self, username: str) -> Optional[Track]:
        self.calls.append(username)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.error is not None:
                raise self.error
            return self.track
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        return None


class FakeStream:
    """In-memory duplex stream with the subset of ServerConnection the subscriber uses."""

    def __init__(self, answer_pings: bool = True) -> None:
        self.answer_pings = answer_pings
        self.sent: list[str] = []
        self.pings = 0
        self.close_code: Optional[int] = None
        self.send_error: Optional[Exception] = None
        self._inbound: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        if self._closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(message)

    async def recv(self) -> Any:
        item = await self._inbound.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def ping(self) -> asyncio.Future:
        if self._closed:
            raise ConnectionClosedOK(None, None)
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            waiter.set_result(0.0)
        return waiter

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        self.close_code = code
        self._inbound.put_nowait(ConnectionClosedOK(None, None))

    def feed(self, item: Any) -> None:
        self._inbound.put_nowait(item)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        lastfm_api_key="test-api-key",
        poll_interval_seconds=0.05,
        write_wait_seconds=0.5,
        pong_wait_seconds=60.0,
        send_queue_size=16,
        shutdown_timeout_seconds=1.0,
    )


@pytest.fixture()
def grant_track() -> Track:
    return Track(
        artist="Grant",
        track="Wishes",
        image_url="https://lastfm.freetls.fastly.net/i/u/174s/wishes.png",
        track_url="https://www.last.fm/music/Grant/_/Wishes",
        is_now_playing=True,
    )


@pytest.fixture()
def source(grant_track: Track) -> FakeSource:
    return FakeSource(grant_track)
