"""WebTransport time responder.

Serves the datagram side of the time endpoint over HTTP/3: a client opens a
WebTransport session on ``/.well-known/time`` and every datagram it sends is
answered with its first eight bytes followed by the server time. Sessions on
any other path are refused with 404.
"""

from __future__ import annotations

import base64
import datetime
import hashlib
import ipaddress
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Set, Union

import structlog
from aioquic.asyncio.protocol import QuicConnectionProtocol
from aioquic.asyncio.server import QuicServer, serve
from aioquic.h3.connection import H3_ALPN, H3Connection
from aioquic.h3.events import DataReceived, DatagramReceived, H3Event, HeadersReceived
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.events import ProtocolNegotiated, QuicEvent
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from foxtime.api.wire import TIME_PATH, encode_response
from foxtime.transport.webtransport import MAX_DATAGRAM_FRAME_SIZE

logger = structlog.get_logger(__name__)

# Browsers accept hash-pinned certificates only if valid for at most 14 days.
SELF_SIGNED_VALIDITY = datetime.timedelta(days=13)


@dataclass
class ServerIdentity:
    """Certificate and key presented by the responder"""
    certificate: x509.Certificate
    private_key: ec.EllipticCurvePrivateKey
    self_signed: bool = False

    @property
    def cert_hash(self) -> str:
        """Base64 SHA-256 of the DER certificate, as clients pin it."""
        der = self.certificate.public_bytes(serialization.Encoding.DER)
        return base64.b64encode(hashlib.sha256(der).digest()).decode()

    @classmethod
    def generate(cls, hostnames: Iterable[str] = ("localhost",)) -> "ServerIdentity":
        key = ec.generate_private_key(ec.SECP256R1())
        names = list(hostnames)
        alt_names = []
        for name in names:
            try:
                alt_names.append(x509.IPAddress(ipaddress.ip_address(name)))
            except ValueError:
                alt_names.append(x509.DNSName(name))

        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, names[0])])
        now = datetime.datetime.now(datetime.timezone.utc)
        certificate = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(minutes=5))
            .not_valid_after(now + SELF_SIGNED_VALIDITY)
            .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
            .sign(key, hashes.SHA256())
        )
        return cls(certificate, key, self_signed=True)

    @classmethod
    def load(cls, cert_path: Union[str, Path], key_path: Union[str, Path]) -> "ServerIdentity":
        certificate = x509.load_pem_x509_certificate(Path(cert_path).read_bytes())
        private_key = serialization.load_pem_private_key(Path(key_path).read_bytes(), password=None)
        return cls(certificate, private_key)


class TimeResponderProtocol(QuicConnectionProtocol):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._http: Optional[H3Connection] = None
        self.sessions: Set[int] = set()

    def quic_event_received(self, event: QuicEvent) -> None:
        if isinstance(event, ProtocolNegotiated) and event.alpn_protocol in H3_ALPN:
            self._http = H3Connection(self._quic, enable_webtransport=True)
        if self._http is None:
            return
        for h3_event in self._http.handle_event(event):
            self._h3_event_received(h3_event)

    def _h3_event_received(self, event: H3Event) -> None:
        if isinstance(event, HeadersReceived):
            headers = dict(event.headers)
            if headers.get(b":method") == b"CONNECT" and headers.get(b":protocol") == b"webtransport":
                self._accept(event.stream_id, headers.get(b":path", b""))
        elif isinstance(event, DatagramReceived):
            if event.stream_id not in self.sessions:
                return
            reply = encode_response(event.data, time.time())
            if reply is not None:
                self._http.send_datagram(event.stream_id, reply)
                self.transmit()
        elif isinstance(event, DataReceived) and event.stream_ended:
            if event.stream_id in self.sessions:
                self.sessions.discard(event.stream_id)
                logger.info("webtransport_session_closed", session_id=event.stream_id)

    def _accept(self, stream_id: int, path: bytes) -> None:
        if path.split(b"?", 1)[0] != TIME_PATH.encode():
            logger.info("webtransport_session_rejected", path=path.decode(errors="replace"))
            self._http.send_headers(stream_id, [(b":status", b"404")], end_stream=True)
        else:
            self.sessions.add(stream_id)
            logger.info("webtransport_session_accepted", session_id=stream_id)
            self._http.send_headers(
                stream_id, [(b":status", b"200"), (b"sec-webtransport-http3-draft", b"draft02")]
            )
        self.transmit()


async def serve_time(host: str, port: int, identity: Optional[ServerIdentity] = None) -> QuicServer:
    """Start answering time datagrams on ``host:port`` (UDP)."""
    identity = identity or ServerIdentity.generate()
    configuration = QuicConfiguration(
        alpn_protocols=H3_ALPN,
        is_client=False,
        max_datagram_frame_size=MAX_DATAGRAM_FRAME_SIZE,
    )
    configuration.certificate = identity.certificate
    configuration.private_key = identity.private_key

    server = await serve(host, port, configuration=configuration, create_protocol=TimeResponderProtocol)
    logger.info("responder_started", host=host, port=port, self_signed=identity.self_signed)
    return server
