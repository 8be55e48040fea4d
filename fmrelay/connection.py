from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Optional

from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, ConnectionClosedOK

from fmrelay.config import Settings

if TYPE_CHECKING:
    from fmrelay.events import Hub


class OutboundQueue:
    """
    Bounded per-client message queue.

    Producers never wait: offer() drops the message when the queue is full or
    closed. close() wakes the consumer with a None sentinel.
    """

    def __init__(self, maxsize: int) -> None:
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._maxsize = maxsize
        self._closed = False
        self._dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def qsize(self) -> int:
        return self._queue.qsize()

    @property
    def dropped(self) -> int:
        return self._dropped

    def offer(self, message: str) -> bool:
        if self._closed or self._queue.qsize() >= self._maxsize:
            self._dropped += 1
            return False
        self._queue.put_nowait(message)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def get(self) -> Optional[str]:
        return await self._queue.get()

    def get_nowait(self) -> Optional[str]:
        """Raises asyncio.QueueEmpty when nothing is buffered."""
        return self._queue.get_nowait()


class Subscriber:
    """
    One WebSocket client watching a username.

    Two duties run for the lifetime of the stream:
    - the write pump drains the outbound queue to the socket and sends a ping
      every ping period;
    - the read pump discards inbound frames and closes the client once no pong
      has arrived within the pong wait.
    Whichever duty stops first, the client is unsubscribed before the stream
    is closed.
    """

    def __init__(self, username: str, stream: ServerConnection, settings: Settings) -> None:
        self.username = username
        self.queue = OutboundQueue(settings.send_queue_size)
        self._stream = stream
        self._write_wait = settings.write_wait_seconds
        self._pong_wait = settings.pong_wait_seconds
        self._ping_period = settings.ping_period_seconds
        self._read_deadline = 0.0

    def offer(self, message: str) -> bool:
        return self.queue.offer(message)

    def close_queue(self) -> None:
        self.queue.close()

    async def run(self, hub: Hub) -> None:
        self._extend_read_deadline()
        reader = asyncio.create_task(self._read_pump(), name=f"reader:{self.username}")
        writer = asyncio.create_task(self._write_pump(), name=f"writer:{self.username}")
        try:
            await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await hub.unsubscribe(self)
            reader.cancel()
            # The closed queue tells the writer to send a close frame and exit.
            _, pending = await asyncio.wait({writer}, timeout=self._write_wait)
            for task in pending:
                task.cancel()
            for result in await asyncio.gather(reader, writer, return_exceptions=True):
                if isinstance(result, Exception):
                    logging.error("Connection duty for %s failed", self.username, exc_info=result)
            await self._stream.close()

    async def _read_pump(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            remaining = self._read_deadline - loop.time()
            if remaining <= 0:
                logging.info("No pong from %s client within %.0fs, closing", self.username, self._pong_wait)
                return
            try:
                await asyncio.wait_for(self._stream.recv(), timeout=remaining)
            except asyncio.TimeoutError:
                continue
            except ConnectionClosedOK:
                return
            except ConnectionClosedError as exc:
                logging.warning("WebSocket error for %s: %s", self.username, exc)
                return

    async def _write_pump(self) -> None:
        loop = asyncio.get_running_loop()
        next_ping = loop.time() + self._ping_period
        getter: Optional[asyncio.Task] = None
        try:
            while True:
                if getter is None:
                    getter = asyncio.create_task(self.queue.get())
                done, _ = await asyncio.wait({getter}, timeout=max(0.0, next_ping - loop.time()))
                if not done:
                    next_ping = loop.time() + self._ping_period
                    if not await self._ping():
                        return
                    continue

                message = getter.result()
                getter = None
                if message is None:
                    await self._write(self._stream.close())
                    return
                if not await self._write(self._stream.send(message)):
                    return
        finally:
            if getter is not None:
                getter.cancel()

    async def _ping(self) -> bool:
        try:
            pong_waiter = await asyncio.wait_for(self._stream.ping(), timeout=self._write_wait)
        except (ConnectionClosed, asyncio.TimeoutError) as exc:
            logging.debug("Ping to %s client failed: %s", self.username, exc)
            return False
        asyncio.ensure_future(pong_waiter).add_done_callback(self._on_pong)
        return True

    async def _write(self, frame: Awaitable[None]) -> bool:
        try:
            await asyncio.wait_for(frame, timeout=self._write_wait)
        except (ConnectionClosed, asyncio.TimeoutError) as exc:
            logging.debug("Write to %s client failed: %s", self.username, exc)
            return False
        return True

    def _on_pong(self, waiter: asyncio.Future) -> None:
        if waiter.cancelled() or waiter.exception() is not None:
            return
        self._extend_read_deadline()

    def _extend_read_deadline(self) -> None:
        self._read_deadline = asyncio.get_running_loop().time() + self._pong_wait
