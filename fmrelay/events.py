from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Set

from fmrelay.models import Track
from fmrelay.services.lastfm_service import LastfmService

if TYPE_CHECKING:
    from fmrelay.connection import Subscriber


class CapacityError(Exception):
    """Raised when a new username would exceed the configured poller limit."""

    def __init__(self, message: str = "maximum number of monitored users reached"):
        super().__init__(message)
        self.message = message


class PollerState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


class TopicPoller:
    """
    Polls Last.fm for a single username and broadcasts changes to every subscriber.

    The subscriber set and the cached last message are only touched while holding
    the poller's own lock, so distinct usernames never contend with each other.
    """

    def __init__(self, username: str, source: LastfmService, poll_interval: float) -> None:
        self.username = username
        self._source = source
        self._poll_interval = poll_interval
        self._lock = asyncio.Lock()
        self._subscribers: Set[Subscriber] = set()
        self._last_track: Optional[Track] = None
        self._last_message: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._state = PollerState.STARTING
        self._dropped = 0

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def last_message(self) -> Optional[str]:
        return self._last_message

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def dropped(self) -> int:
        return self._dropped

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"poller:{self.username}")

    def cancel(self) -> None:
        if self._state is PollerState.STOPPED:
            return
        self._state = PollerState.STOPPED
        if self._task is not None:
            self._task.cancel()

    async def wait_stopped(self) -> None:
        if self._task is None:
            return
        await asyncio.gather(self._task, return_exceptions=True)

    async def add(self, subscriber: Subscriber) -> None:
        async with self._lock:
            self._subscribers.add(subscriber)
            if self._last_message is not None and not subscriber.offer(self._last_message):
                logging.info(
                    "Initial cached message for user %r dropped: client send queue is full", self.username
                )

    async def remove(self, subscriber: Subscriber) -> int:
        async with self._lock:
            self._subscribers.discard(subscriber)
            return len(self._subscribers)

    async def broadcast(self, message: str) -> None:
        async with self._lock:
            self._last_message = message
            for subscriber in self._subscribers:
                if not subscriber.offer(message):
                    self._dropped += 1
                    logging.debug("Dropped update for a slow %r client", self.username)

    async def poll(self) -> None:
        fetch = asyncio.ensure_future(self._source.get_last_played_track(self.username))
        fetch.add_done_callback(_consume_result)
        try:
            # An in-flight request outlives cancellation; its result is ignored.
            track = await asyncio.shield(fetch)
        except Exception as exc:  # noqa: BLE001
            logging.warning("Error polling Last.fm for %s: %s", self.username, exc)
            return

        if track is None or self._state is PollerState.STOPPED:
            return
        if track == self._last_track:
            return
        self._last_track = track
        await self.broadcast(track.to_message())

    async def _run(self) -> None:
        logging.info("Poller started for user: %s", self.username)
        loop = asyncio.get_running_loop()
        try:
            await self.poll()
            if self._state is PollerState.STARTING:
                self._state = PollerState.RUNNING

            next_tick = loop.time() + self._poll_interval
            while self._state is PollerState.RUNNING:
                await asyncio.sleep(max(0.0, next_tick - loop.time()))
                if self._state is not PollerState.RUNNING:
                    break
                await self.poll()
                next_tick += self._poll_interval
                now = loop.time()
                # Ticks missed by a slow upstream call are skipped, not queued.
                while next_tick <= now:
                    next_tick += self._poll_interval
        finally:
            self._state = PollerState.STOPPED
            logging.info("Poller stopped for user: %s", self.username)


def _consume_result(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


class Hub:
    """
    Maintains per-username pollers and manages client subscriptions.

    Multiple clients watching the same username share a single poller, keeping
    Last.fm usage proportional to unique usernames rather than total connections.
    """

    def __init__(self, source: LastfmService, max_pollers: int, poll_interval: float) -> None:
        self._source = source
        self._max_pollers = max_pollers
        self._poll_interval = poll_interval
        self._pollers: Dict[str, TopicPoller] = {}
        self._lock = asyncio.Lock()

    def get_poller(self, username: str) -> Optional[TopicPoller]:
        return self._pollers.get(username)

    @property
    def topic_count(self) -> int:
        return len(self._pollers)

    def stats(self) -> Dict[str, Any]:
        pollers = list(self._pollers.values())
        return {
            "topics": self.topic_count,
            "subscribers": sum(poller.subscriber_count for poller in pollers),
            "dropped": sum(poller.dropped for poller in pollers),
        }

    async def subscribe(self, subscriber: Subscriber) -> TopicPoller:
        async with self._lock:
            poller = self.get_poller(subscriber.username)
            if poller is None:
                if self.topic_count >= self._max_pollers:
                    raise CapacityError()
                poller = TopicPoller(subscriber.username, self._source, self._poll_interval)
                self._pollers[subscriber.username] = poller
                poller.start()
            # Registration stays under the registry lock so a concurrent
            # unsubscribe cannot tear this poller down in between.
            await poller.add(subscriber)
        return poller

    async def unsubscribe(self, subscriber: Subscriber) -> None:
        async with self._lock:
            poller = self.get_poller(subscriber.username)
            if poller is not None:
                remaining = await poller.remove(subscriber)
                if remaining == 0:
                    poller.cancel()
                    del self._pollers[subscriber.username]
        subscriber.close_queue()

    async def close(self) -> bool:
        """
        Stop every poller still registered.

        Returns True when nothing was left, i.e. all clients had already gone.
        """

        async with self._lock:
            pollers = list(self._pollers.values())
            self._pollers.clear()
        for poller in pollers:
            poller.cancel()
        await asyncio.gather(*(poller.wait_stopped() for poller in pollers))
        return not pollers
