"""Shared fakes: a hand-driven clock, an HTTP session and a datagram echo server."""

import asyncio
from typing import List, Optional

import pytest
import requests

from foxtime.api.wire import TIME_HEADER, encode_response
from foxtime.app.responder import ServerIdentity


class FakeClock:
    def __init__(self, start: float = 0.0, time_origin: float = 1_700_000_000_000.0, skew: float = 0.0):
        self.mono = start
        self.time_origin = time_origin
        self.skew = skew  # local wall clock minus the real one

    def now(self) -> float:
        return self.mono

    def epoch_now(self) -> float:
        return self.time_origin + self.mono + self.skew

    def advance(self, ms: float) -> None:
        self.mono += ms


class FakeResponse:
    def __init__(self, status_code: int = 200, headers: Optional[dict] = None):
        self.status_code = status_code
        self.headers = headers if headers is not None else {}

    @property
    def ok(self) -> bool:
        return self.status_code < 400


class FakeHttpSession:
    """Answers HEAD requests, advancing the clock by ``rtt`` each time."""

    def __init__(self, clock: FakeClock, server_seconds: float = 1000.0, rtt: float = 20.0):
        self.clock = clock
        self.server_seconds = server_seconds
        self.rtt = rtt
        self.status_code = 200
        self.header: Optional[str] = None
        self.errors: List[Exception] = []
        self.calls: List[float] = []
        self.closed = False

    def head(self, url, timeout=None):
        self.calls.append(self.clock.now())
        self.clock.advance(self.rtt)
        if self.errors:
            raise self.errors.pop(0)
        value = self.header if self.header is not None else repr(self.server_seconds)
        return FakeResponse(self.status_code, {TIME_HEADER: value})

    def close(self):
        self.closed = True


class EchoSession:
    """In-memory datagram session answering like the time server does."""

    def __init__(self, clock: FakeClock, server_seconds: float = 1000.0, rtt: float = 20.0):
        self.clock = clock
        self.server_seconds = server_seconds
        self.rtt = rtt
        self.reply = True
        self.extra_replies: List[bytes] = []
        self.send_error: Optional[Exception] = None
        self.sent: List[bytes] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send_datagram(self, data: bytes) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(data)
        for extra in self.extra_replies:
            self._inbox.put_nowait(extra)
        if self.reply:
            self.clock.advance(self.rtt)
            self._inbox.put_nowait(encode_response(data, self.server_seconds))

    async def receive_datagram(self) -> bytes:
        item = await self._inbox.get()
        if isinstance(item, Exception):
            raise item
        return item

    def fail(self, error: Exception) -> None:
        self._inbox.put_nowait(error)

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        self.closed = True


class SessionFactory:
    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.sessions: List[EchoSession] = []
        self.connect_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def __call__(self) -> EchoSession:
        if self.gate is not None:
            await self.gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        session = EchoSession(self.clock)
        self.sessions.append(session)
        return session


@pytest.fixture
def clock():
    return FakeClock(start=100.0)


@pytest.fixture
def http_session(clock):
    return FakeHttpSession(clock)


@pytest.fixture
def session_factory(clock):
    return SessionFactory(clock)


@pytest.fixture
def connection_error():
    return requests.ConnectionError("connection refused")


class RecordingH3:
    """Stands in for an H3Connection, capturing what a protocol sends."""

    def __init__(self):
        self.headers = []
        self.datagrams = []

    def send_headers(self, stream_id, headers, end_stream=False):
        self.headers.append((stream_id, headers, end_stream))

    def send_datagram(self, stream_id, data):
        self.datagrams.append((stream_id, data))

    def handle_event(self, event):
        return []


@pytest.fixture(scope="session")
def identity():
    return ServerIdentity.generate(["localhost", "127.0.0.1"])
