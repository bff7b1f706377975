"""Wire formats shared by the time server and the probe transports.

HTTP: ``HEAD /.well-known/time`` -> ``x-httpstime: <server seconds, fractional>``

Datagram (little-endian float64 fields):
- request:  [client send time, ms]                          8 bytes
- response: [echoed client send time][server time, seconds] >= 16 bytes
"""

from __future__ import annotations

import math
import struct
from typing import Optional, Tuple
from urllib.parse import urlparse

TIME_PATH = "/.well-known/time"
TIME_HEADER = "x-httpstime"
BOOTSTRAP_PATH = "/api/bootstrap"

REQUEST = struct.Struct("<d")
RESPONSE = struct.Struct("<dd")


class WireError(ValueError):
    pass


def encode_request(sent_ms: float) -> bytes:
    return REQUEST.pack(sent_ms)


def decode_response(data: bytes) -> Optional[Tuple[float, float]]:
    """Return ``(echoed send time ms, server time ms)`` or None if too short."""
    if len(data) < RESPONSE.size:
        return None
    echoed, server_seconds = RESPONSE.unpack_from(data)
    return echoed, server_seconds * 1000


def encode_response(request: bytes, server_seconds: float) -> Optional[bytes]:
    """Build the server's reply to a request datagram, or None to ignore it."""
    if len(request) < REQUEST.size:
        return None
    return bytes(request[:REQUEST.size]) + REQUEST.pack(server_seconds)


def parse_time_header(value: Optional[str]) -> float:
    """Convert an ``x-httpstime`` header value to epoch milliseconds."""
    if value is None:
        raise WireError(f"response missing {TIME_HEADER} header")
    try:
        seconds = float(value)
    except ValueError as e:
        raise WireError(f"invalid {TIME_HEADER} header: {value!r}") from e
    if not math.isfinite(seconds):
        raise WireError(f"invalid {TIME_HEADER} header: {value!r}")
    return seconds * 1000


def format_time_header(seconds: float) -> str:
    return repr(seconds)


def time_url(base: str) -> str:
    """Normalize ``host[:port]`` or a server URL to the HTTP time endpoint."""
    url = base.strip()
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    if not url.endswith(TIME_PATH):
        url = f"{url.rstrip('/')}{TIME_PATH}"
    return url


def bootstrap_url(base: str) -> str:
    url = time_url(base)
    return url[: -len(TIME_PATH)] + BOOTSTRAP_PATH


def datagram_url(base: str, port: Optional[int] = None) -> str:
    """Build the WebTransport endpoint for a server, optionally on another port."""
    url = base.strip()
    if url.startswith("http://"):
        url = "https://" + url[len("http://"):]
    elif not url.startswith("https://"):
        url = f"https://{url}"
    parsed = urlparse(url)
    host = parsed.hostname or "localhost"
    if ":" in host:
        host = f"[{host}]"
    port = port or parsed.port or 443
    return f"https://{host}:{port}{TIME_PATH}"
