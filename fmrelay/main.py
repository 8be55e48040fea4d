from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from http import HTTPStatus
from typing import Optional, Set

from pydantic import ValidationError
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.frames import CloseCode
from websockets.http11 import Request, Response

from fmrelay.config import Settings, get_settings
from fmrelay.connection import Subscriber
from fmrelay.events import CapacityError, Hub
from fmrelay.services.lastfm_service import LastfmService
from fmrelay.utils.handshake import HandshakeError, origin_allowed, parse_username

HEALTH_PATH = "/health"


def _setup_logging(level_name: str = "INFO") -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger().setLevel(level)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


class RelayApp:
    """
    WebSocket endpoint: validates /fm/{username} requests and attaches each
    accepted connection to the hub.
    """

    def __init__(self, hub: Hub, settings: Settings) -> None:
        self.hub = hub
        self._settings = settings
        self._origins = settings.allowed_origin_list()
        self._streams: Set[ServerConnection] = set()

    def process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        if request.path.split("?", 1)[0] == HEALTH_PATH:
            return self._health(connection)
        try:
            parse_username(request.path)
        except HandshakeError as exc:
            return connection.respond(exc.status, f"{exc.message}\n")
        if not origin_allowed(request.headers.get("Origin"), self._origins):
            return connection.respond(HTTPStatus.FORBIDDEN, "Origin not allowed\n")
        return None

    async def handle(self, connection: ServerConnection) -> None:
        # process_request has already rejected malformed paths.
        username = parse_username(connection.request.path)
        subscriber = Subscriber(username, connection, self._settings)

        try:
            await self.hub.subscribe(subscriber)
        except CapacityError as exc:
            logging.warning("Subscribe error for %s: %s", username, exc)
            subscriber.close_queue()
            await connection.close(CloseCode.TRY_AGAIN_LATER, exc.message)
            return

        self._streams.add(connection)
        try:
            await subscriber.run(self.hub)
        finally:
            self._streams.discard(connection)

    def abort_all(self) -> int:
        streams = list(self._streams)
        for stream in streams:
            stream.transport.abort()
        return len(streams)

    def _health(self, connection: ServerConnection) -> Response:
        body = json.dumps({"status": "ok", **self.hub.stats()})
        response = connection.respond(HTTPStatus.OK, body + "\n")
        del response.headers["Content-Type"]
        response.headers["Content-Type"] = "application/json"
        return response

    async def listen(self, host: str, port: int) -> Server:
        return await serve(
            self.handle,
            host,
            port,
            process_request=self.process_request,
            ping_interval=None,
            max_size=self._settings.max_message_size,
        )


async def run_server(settings: Settings, stop: Optional[asyncio.Event] = None) -> bool:
    """
    Serve until ``stop`` is set (or SIGINT/SIGTERM arrives).

    Returns False when open connections had to be aborted after the shutdown timeout.
    """

    source = LastfmService(settings)
    hub = Hub(source, max_pollers=settings.max_pollers, poll_interval=settings.poll_interval_seconds)
    relay = RelayApp(hub, settings)
    stop = stop or asyncio.Event()

    loop = asyncio.get_running_loop()
    signals = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            continue
        signals.append(sig)

    clean = True
    try:
        server = await relay.listen(settings.host, settings.port)
        logging.info("Server starting on %s:%s", settings.host, settings.port)
        await stop.wait()

        logging.info("Shutting down gracefully...")
        server.close()
        try:
            await asyncio.wait_for(server.wait_closed(), timeout=settings.shutdown_timeout_seconds)
        except asyncio.TimeoutError:
            aborted = relay.abort_all()
            logging.error("Server forced to shutdown: aborted %d open connection(s)", aborted)
            clean = False
        if not await hub.close():
            clean = False
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)
        await source.close()

    if clean:
        logging.info("Server stopped")
    return clean


def main() -> None:
    _setup_logging()
    try:
        settings = get_settings()
    except ValidationError as exc:
        logging.critical("Invalid configuration: %s", exc)
        sys.exit(1)
    _setup_logging(settings.log_level)

    try:
        clean = asyncio.run(run_server(settings))
    except OSError as exc:
        logging.critical("Unable to start server on %s:%s: %s", settings.host, settings.port, exc)
        sys.exit(1)
    if not clean:
        sys.exit(1)


if __name__ == "__main__":
    main()
