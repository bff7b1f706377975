"""WebTransport datagram sessions over HTTP/3, built on aioquic.

A session is one QUIC connection carrying one extended CONNECT request. Only
unreliable datagrams are used; streams are never opened.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import ssl
from contextlib import AsyncExitStack
from typing import Optional, Union, cast
from urllib.parse import urlparse

import structlog
from aioquic.asyncio.client import connect
from aioquic.asyncio.protocol import QuicConnectionProtocol
from aioquic.h3.connection import H3_ALPN, H3Connection
from aioquic.h3.events import DataReceived, DatagramReceived, H3Event, HeadersReceived
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.events import ConnectionTerminated, QuicEvent
from cryptography.hazmat.primitives.serialization import Encoding

from foxtime.api.wire import TIME_PATH
from foxtime.transport.errors import ConnectError, TransportError

logger = structlog.get_logger(__name__)

MAX_DATAGRAM_FRAME_SIZE = 65536


class WebTransportProtocol(QuicConnectionProtocol):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._http = H3Connection(self._quic, enable_webtransport=True)
        self.session_id: Optional[int] = None
        self._accepted: Optional[asyncio.Future] = None
        self.datagrams: "asyncio.Queue[Union[bytes, Exception]]" = asyncio.Queue()

    async def open_session(self, authority: str, path: str) -> None:
        self.session_id = self._quic.get_next_available_stream_id()
        self._accepted = asyncio.get_running_loop().create_future()
        self._http.send_headers(
            stream_id=self.session_id,
            headers=[
                (b":method", b"CONNECT"),
                (b":scheme", b"https"),
                (b":authority", authority.encode()),
                (b":path", path.encode()),
                (b":protocol", b"webtransport"),
                (b"sec-webtransport-http3-draft02", b"1"),
            ],
        )
        self.transmit()
        await self._accepted

    def send_datagram(self, data: bytes) -> None:
        if self.session_id is None:
            raise TransportError("session not established")
        self._http.send_datagram(self.session_id, data)
        self.transmit()

    def peer_certificate_digest(self) -> Optional[bytes]:
        tls = getattr(self._quic, "tls", None)
        certificate = getattr(tls, "_peer_certificate", None)
        if certificate is None:
            return None
        return hashlib.sha256(certificate.public_bytes(Encoding.DER)).digest()

    def quic_event_received(self, event: QuicEvent) -> None:
        for h3_event in self._http.handle_event(event):
            self._h3_event_received(h3_event)
        if isinstance(event, ConnectionTerminated):
            self._terminate(TransportError(f"connection terminated: {event.reason_phrase or event.error_code}"))

    def _h3_event_received(self, event: H3Event) -> None:
        if getattr(event, "stream_id", None) != self.session_id:
            return
        if isinstance(event, HeadersReceived):
            status = dict(event.headers).get(b":status")
            if self._accepted is not None and not self._accepted.done():
                if status == b"200":
                    self._accepted.set_result(None)
                else:
                    self._accepted.set_exception(ConnectError(f"session rejected with status {status!r}"))
            if event.stream_ended:
                self._terminate(TransportError("session closed by server"))
        elif isinstance(event, DatagramReceived):
            self.datagrams.put_nowait(event.data)
        elif isinstance(event, DataReceived) and event.stream_ended:
            self._terminate(TransportError("session closed by server"))

    def _terminate(self, error: Exception) -> None:
        if self._accepted is not None and not self._accepted.done():
            self._accepted.set_exception(ConnectError(str(error)))
        self.datagrams.put_nowait(error)


class WebTransportSession:
    """Datagram session handed to :class:`DatagramTransport`."""

    def __init__(self, stack: AsyncExitStack, protocol: WebTransportProtocol):
        self._stack = stack
        self._protocol = protocol
        self._closed = False

    async def send_datagram(self, data: bytes) -> None:
        if self._closed:
            raise TransportError("session closed")
        self._protocol.send_datagram(data)

    async def receive_datagram(self) -> bytes:
        item = await self._protocol.datagrams.get()
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._protocol.close()

    async def wait_closed(self) -> None:
        self.close()
        await self._stack.aclose()


async def open_session(url: str, cert_hash: Optional[str] = None, timeout: float = 5.0) -> WebTransportSession:
    """Connect to ``url`` and complete the WebTransport handshake.

    With ``cert_hash`` (base64 SHA-256 of the DER certificate) the server is
    accepted only if its leaf certificate matches, which allows self-signed
    endpoints; otherwise the certificate is verified against system roots.
    """
    parsed = urlparse(url)
    host = parsed.hostname or "localhost"
    port = parsed.port or 443

    # connect() fills in the SNI server name for non-IP hosts
    configuration = QuicConfiguration(
        alpn_protocols=H3_ALPN,
        is_client=True,
        max_datagram_frame_size=MAX_DATAGRAM_FRAME_SIZE,
    )
    pinned = base64.b64decode(cert_hash) if cert_hash else None
    if pinned is not None:
        configuration.verify_mode = ssl.CERT_NONE

    stack = AsyncExitStack()
    try:
        protocol = await asyncio.wait_for(
            stack.enter_async_context(
                connect(host, port, configuration=configuration, create_protocol=WebTransportProtocol)
            ),
            timeout,
        )
        protocol = cast(WebTransportProtocol, protocol)
        if pinned is not None:
            _check_pin(protocol, pinned, f"{host}:{port}")
        await asyncio.wait_for(protocol.open_session(parsed.netloc, parsed.path or TIME_PATH), timeout)
    except BaseException:
        await stack.aclose()
        raise

    logger.info("webtransport_session_open", url=url, pinned=pinned is not None)
    return WebTransportSession(stack, protocol)


def _check_pin(protocol: WebTransportProtocol, pinned: bytes, peer: str) -> None:
    digest = protocol.peer_certificate_digest()
    if digest is None:
        # Without the certificate there is nothing to compare against.
        logger.error("peer_certificate_unavailable", peer=peer)
        raise ConnectError(f"certificate of {peer} is not available for pinning")
    if digest != pinned:
        raise ConnectError(f"certificate of {peer} does not match the pinned hash")
