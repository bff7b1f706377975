"""Failures a single probe can end with. None of them are fatal to the engine."""

from __future__ import annotations

from typing import Optional


class ProbeError(Exception):
    """Base class for probe failures."""


class ConnectError(ProbeError):
    """The persistent transport could not establish a session."""


class TransportError(ProbeError):
    """A session failed mid-flight (read, write or lost reply)."""


class NetworkError(ProbeError):
    """The request/response transport could not complete a request."""


class ServerError(ProbeError):
    """The server answered, but not with a usable time."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
