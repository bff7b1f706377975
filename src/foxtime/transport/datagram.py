"""Probe over a persistent datagram session.

The session is opened lazily and reused across probes. A receive loop task is
bound to each session for its whole lifetime and hands matching replies to the
probe waiting for them. Whichever side fails first (send path or receive loop)
invalidates the session; the other side then sees it as gone and never touches
it again. The next probe reconnects from scratch.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from enum import Enum
from functools import partial
from typing import Awaitable, Callable, Optional, Protocol, Set, Tuple
from urllib.parse import urlparse

import structlog

from foxtime.api.wire import decode_response, encode_request
from foxtime.timing.clock import LocalClock
from foxtime.timing.window import ProbeSample
from foxtime.transport.errors import ConnectError, TransportError
from foxtime.transport.webtransport import open_session

logger = structlog.get_logger(__name__)


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    FAILED = "failed"


class DatagramSession(Protocol):
    async def send_datagram(self, data: bytes) -> None: ...

    async def receive_datagram(self) -> bytes: ...

    def close(self) -> None: ...

    async def wait_closed(self) -> None: ...


SessionFactory = Callable[[], Awaitable[DatagramSession]]


class DatagramTransport:
    name = "datagram"

    def __init__(
        self,
        url: str,
        clock: LocalClock,
        cert_hash: Optional[str] = None,
        timeout: float = 5.0,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.url = url
        self.cert_hash = cert_hash
        self._clock = clock
        self._timeout = timeout
        self._session_factory = session_factory or partial(open_session, url, cert_hash=cert_hash, timeout=timeout)
        self.state = ConnectionState.IDLE
        self._session: Optional[DatagramSession] = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Optional[Tuple[float, asyncio.Future]] = None
        self._closing: Set[asyncio.Task] = set()
        self._generation = 0  # bumped by aclose so an in-flight connect can tell it was abandoned

    @property
    def port(self) -> Optional[int]:
        return urlparse(self.url).port

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def connect(self) -> None:
        generation = self._generation
        self.state = ConnectionState.CONNECTING
        try:
            session = await self._session_factory()
        except Exception as e:
            if generation == self._generation:
                self.state = ConnectionState.FAILED
            logger.warning("datagram_connect_failed", url=self.url, error=str(e))
            raise ConnectError(f"failed to connect to {self.url}: {e}") from e

        if generation != self._generation:
            logger.info("datagram_connect_abandoned", url=self.url)
            session.close()
            try:
                await session.wait_closed()
            except Exception as e:
                logger.debug("datagram_close_failed", url=self.url, error=str(e))
            raise ConnectError(f"transport to {self.url} was closed while connecting")

        self._session = session
        self.state = ConnectionState.OPEN
        self._reader = asyncio.create_task(self._receive_loop(session))
        logger.info("datagram_connected", url=self.url)

    async def probe(self) -> ProbeSample:
        if self._session is None:
            await self.connect()
        session = self._session

        waiter = asyncio.get_running_loop().create_future()
        request_sent = self._clock.now()
        self._pending = (request_sent, waiter)
        try:
            try:
                await session.send_datagram(encode_request(request_sent))
            except Exception as e:
                waiter.cancel()
                self._invalidate(session, e)
                raise TransportError(f"send to {self.url} failed: {e}") from e

            try:
                response_received, server_time = await asyncio.wait_for(waiter, self._timeout)
            except asyncio.TimeoutError as e:
                self._invalidate(session, e)
                raise TransportError(f"no reply from {self.url} within {self._timeout}s") from e
        finally:
            self._pending = None

        return ProbeSample(request_sent, response_received, server_time)

    async def _receive_loop(self, session: DatagramSession) -> None:
        try:
            while True:
                data = await session.receive_datagram()
                response_received = self._clock.now()

                decoded = decode_response(data)
                if decoded is None:
                    continue
                echoed, server_time = decoded

                pending = self._pending
                if pending is None or pending[0] != echoed or pending[1].done():
                    logger.debug("datagram_unmatched", echoed=echoed)
                    continue
                pending[1].set_result((response_received, server_time))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("datagram_receive_failed", url=self.url, error=str(e))
            self._invalidate(session, e)

    def _invalidate(self, session: DatagramSession, error: BaseException) -> None:
        """Tear down ``session`` unless it was already superseded."""
        if session is not self._session:
            return
        self._session = None
        self.state = ConnectionState.FAILED

        if self._pending is not None and not self._pending[1].done():
            self._pending[1].set_exception(TransportError(f"session to {self.url} failed: {error}"))

        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()

        session.close()
        closing = asyncio.ensure_future(session.wait_closed())
        self._closing.add(closing)
        closing.add_done_callback(self._closed)

    def _closed(self, task: asyncio.Task) -> None:
        self._closing.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("datagram_close_failed", url=self.url, error=str(task.exception()))

    async def aclose(self) -> None:
        self._generation += 1
        session, self._session = self._session, None
        reader, self._reader = self._reader, None
        self.state = ConnectionState.IDLE
        if self._pending is not None and not self._pending[1].done():
            self._pending[1].set_exception(TransportError(f"transport to {self.url} closed"))

        if reader is not None:
            reader.cancel()
            with suppress(asyncio.CancelledError):
                await reader
        if session is not None:
            session.close()
            try:
                await session.wait_closed()
            except Exception as e:
                logger.debug("datagram_close_failed", url=self.url, error=str(e))
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
