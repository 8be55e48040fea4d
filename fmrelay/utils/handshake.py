from __future__ import annotations

import re
from typing import Optional, Sequence
from urllib.parse import unquote

ROUTE_PREFIX = "/fm/"
USERNAME_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,15}")


class HandshakeError(Exception):
    """Raised when an inbound request must be refused before the upgrade."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


def parse_username(path: str) -> str:
    """
    Extract the username from a ``/fm/{username}`` request path.

    The path is percent-decoded before validation, so ``/fm/%41lice`` names
    ``alice``. The returned value is lower-cased so that ``Alice`` and
    ``alice`` share a topic.
    """

    route = unquote(path.split("?", 1)[0])
    if not route.startswith(ROUTE_PREFIX):
        raise HandshakeError(404, "Not Found")
    username = route[len(ROUTE_PREFIX) :]
    if not username:
        raise HandshakeError(400, "Username not provided")
    if USERNAME_PATTERN.fullmatch(username) is None:
        raise HandshakeError(400, "Invalid username")
    return username.lower()


def origin_allowed(origin: Optional[str], allowed: Sequence[str]) -> bool:
    if not allowed:
        return True
    candidate = origin or ""
    for entry in allowed:
        if entry == "*" or entry.lower() == candidate.lower():
            return True
    return False
