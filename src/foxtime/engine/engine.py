"""Clock synchronization engine.

One ``SyncEngine`` owns the sample window, the transports and the scheduler.
The consumer talks to it only through two queues: control messages go in via
:meth:`post`, offset messages come out of :attr:`outbox` (or through the
``emit`` callback when one is given).
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Protocol

import structlog

from foxtime.api.messages import ControlMessage, OffsetMessage, parse_control
from foxtime.api.wire import datagram_url
from foxtime.config.settings import Settings
from foxtime.engine.scheduler import SyncScheduler
from foxtime.timing.clock import LocalClock
from foxtime.timing.publisher import OffsetPublisher
from foxtime.timing.window import ProbeSample, SampleWindow
from foxtime.transport.datagram import DatagramTransport
from foxtime.transport.errors import ConnectError, ProbeError, TransportError
from foxtime.transport.http import HttpTransport

logger = structlog.get_logger(__name__)


class Transport(Protocol):
    name: str

    async def probe(self) -> ProbeSample: ...


class SyncEngine:
    def __init__(
        self,
        settings: Settings,
        emit: Optional[Callable[[OffsetMessage], None]] = None,
        clock: Optional[LocalClock] = None,
        http_transport: Optional[Transport] = None,
        datagram_transport: Optional[Transport] = None,
    ):
        self.settings = settings
        self.clock = clock or LocalClock()
        self.window = SampleWindow(settings.NUM_SAMPLES)
        self.outbox: "asyncio.Queue[OffsetMessage]" = asyncio.Queue()
        self.inbox: "asyncio.Queue[Any]" = asyncio.Queue()
        self.publisher = OffsetPublisher(self.clock, emit or self.outbox.put_nowait)

        self.http = http_transport or HttpTransport(
            settings.SERVER_URL,
            self.clock,
            timeout=settings.REQUEST_TIMEOUT,
            stale_after_ms=settings.SOCKET_TIMEOUT_MS,
        )
        self.datagram = datagram_transport
        if self.datagram is None and settings.TRANSPORT_PORT:
            self.datagram = self._make_datagram(settings.TRANSPORT_PORT, settings.TRANSPORT_CERT_HASH)

        self.scheduler = SyncScheduler(
            self.run_cycle,
            settled=self.window.is_full,
            clock=self.clock,
            short_delay_ms=settings.SHORT_DELAY_MS,
            long_delay_ms=settings.LONG_DELAY_MS,
        )
        self._closing = False

    def _make_datagram(self, port: int, cert_hash: Optional[str]) -> DatagramTransport:
        return DatagramTransport(
            datagram_url(self.settings.SERVER_URL, port),
            self.clock,
            cert_hash=cert_hash,
            timeout=self.settings.DATAGRAM_TIMEOUT,
        )

    async def measure(self) -> ProbeSample:
        """Probe once, falling back to HTTP if the datagram transport fails."""
        if self.datagram is not None:
            try:
                return await self.datagram.probe()
            except (ConnectError, TransportError) as e:
                logger.info("datagram_probe_failed", error=str(e), fallback=self.http.name)
        return await self.http.probe()

    async def run_cycle(self) -> bool:
        """One measurement cycle. Returns False if no sample could be taken."""
        try:
            sample = await self.measure()
        except ProbeError as e:
            logger.warning("probe_failed", error=str(e), kind=type(e).__name__)
            return False

        if self.scheduler.hidden:
            logger.debug("measurement_dropped", reason="hidden", delay=sample.delay)
            return True

        logger.debug("probe_completed", delay=sample.delay, time_origin=sample.time_origin)
        self.window.add(sample)
        self.publisher.publish(self.window)
        return True

    def post(self, message: Any) -> None:
        """Queue a control message from the consumer."""
        self.inbox.put_nowait(message)

    async def handle_control(self, raw: Any) -> Optional[ControlMessage]:
        message = parse_control(raw)
        if message is None:
            return None

        if message.initial_time_origin is not None:
            # The consumer runs its own clock from this until the first offset arrives.
            logger.debug("initial_time_origin_received", time_origin=message.initial_time_origin)

        if message.model_fields_set & {"transport_port", "transport_cert_hash"}:
            await self._configure_datagram(message)

        if message.hidden is not None:
            self.scheduler.set_hidden(message.hidden)
        return message

    async def _configure_datagram(self, message: ControlMessage) -> None:
        current = self.datagram if isinstance(self.datagram, DatagramTransport) else None
        port = message.transport_port or (current.port if current else self.settings.TRANSPORT_PORT)
        if "transport_cert_hash" in message.model_fields_set:
            cert_hash = message.transport_cert_hash
        else:
            cert_hash = current.cert_hash if current else self.settings.TRANSPORT_CERT_HASH
        if not port:
            logger.warning("datagram_config_ignored", reason="no port")
            return

        url = datagram_url(self.settings.SERVER_URL, port)
        if current is not None and current.url == url and current.cert_hash == cert_hash:
            return
        if current is not None:
            await current.aclose()
        self.datagram = self._make_datagram(port, cert_hash)
        logger.info("datagram_configured", url=url, pinned=cert_hash is not None)

    async def run(self) -> None:
        """Run until cancelled or :meth:`aclose` is called."""
        self.scheduler.start()
        logger.info("engine_started", server=self.settings.SERVER_URL, datagram=self.datagram is not None)
        try:
            while not self._closing:
                raw = await self.inbox.get()
                if raw is None:
                    break
                await self.handle_control(raw)
        finally:
            await self._shutdown()

    async def aclose(self) -> None:
        self._closing = True
        self.inbox.put_nowait(None)

    async def _shutdown(self) -> None:
        await self.scheduler.stop()
        closer = getattr(self.datagram, "aclose", None)
        if closer is not None:
            await closer()
        close_http = getattr(self.http, "close", None)
        if close_http is not None:
            close_http()
        logger.info("engine_stopped", samples=len(self.window))
