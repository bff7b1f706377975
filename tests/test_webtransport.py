"""Tests for the WebTransport client session"""

import asyncio
import base64
from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest
from aioquic.h3.connection import H3_ALPN
from aioquic.h3.events import DataReceived, DatagramReceived, HeadersReceived
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.connection import QuicConnection
from aioquic.quic.events import ConnectionTerminated

from conftest import RecordingH3
from foxtime.api.wire import TIME_PATH
from foxtime.transport import webtransport
from foxtime.transport.errors import ConnectError, TransportError
from foxtime.transport.webtransport import WebTransportProtocol, WebTransportSession, open_session


def _protocol():
    quic = QuicConnection(configuration=QuicConfiguration(is_client=True, alpn_protocols=H3_ALPN))
    protocol = WebTransportProtocol(quic)
    protocol._http = RecordingH3()
    protocol.transmit = lambda: None
    return protocol


async def _opening(protocol):
    task = asyncio.create_task(protocol.open_session("localhost:4433", TIME_PATH))
    await asyncio.sleep(0)
    return task


def _status(protocol, status, stream_ended=False):
    return HeadersReceived(headers=[(b":status", status)], stream_id=protocol.session_id, stream_ended=stream_ended)


class TestHandshake:
    @pytest.mark.asyncio
    async def test_connect_request_and_accept(self):
        protocol = _protocol()
        task = await _opening(protocol)

        stream_id, headers, end_stream = protocol._http.headers[0]
        assert stream_id == protocol.session_id
        assert (b":method", b"CONNECT") in headers
        assert (b":protocol", b"webtransport") in headers
        assert (b":path", TIME_PATH.encode()) in headers
        assert not end_stream

        protocol._h3_event_received(_status(protocol, b"200"))
        await asyncio.wait_for(task, 1.0)

    @pytest.mark.asyncio
    async def test_non_200_status_rejects_session(self):
        protocol = _protocol()
        task = await _opening(protocol)

        protocol._h3_event_received(_status(protocol, b"404", stream_ended=True))

        with pytest.raises(ConnectError):
            await asyncio.wait_for(task, 1.0)

    @pytest.mark.asyncio
    async def test_termination_during_handshake(self):
        protocol = _protocol()
        task = await _opening(protocol)

        protocol.quic_event_received(ConnectionTerminated(error_code=0, frame_type=None, reason_phrase="bye"))

        with pytest.raises(ConnectError):
            await asyncio.wait_for(task, 1.0)


class TestSessionEvents:
    @pytest.mark.asyncio
    async def test_datagrams_are_queued(self):
        protocol = _protocol()
        protocol.session_id = 0
        session = WebTransportSession(None, protocol)

        protocol._h3_event_received(DatagramReceived(data=b"reply", stream_id=0))
        protocol._h3_event_received(DatagramReceived(data=b"stray", stream_id=4))

        assert await session.receive_datagram() == b"reply"
        assert protocol.datagrams.empty()

    @pytest.mark.asyncio
    async def test_send_datagram_uses_session_stream(self):
        protocol = _protocol()
        protocol.session_id = 0
        session = WebTransportSession(None, protocol)

        await session.send_datagram(b"ping")

        assert protocol._http.datagrams == [(0, b"ping")]

    @pytest.mark.asyncio
    async def test_connection_terminated_surfaces_on_receive(self):
        protocol = _protocol()
        protocol.session_id = 0
        session = WebTransportSession(None, protocol)

        protocol.quic_event_received(ConnectionTerminated(error_code=0, frame_type=None, reason_phrase="idle"))

        with pytest.raises(TransportError, match="idle"):
            await session.receive_datagram()

    @pytest.mark.asyncio
    async def test_session_stream_end_surfaces_on_receive(self):
        protocol = _protocol()
        protocol.session_id = 0
        session = WebTransportSession(None, protocol)

        protocol._h3_event_received(DataReceived(data=b"", stream_id=0, stream_ended=True))

        with pytest.raises(TransportError):
            await session.receive_datagram()

    @pytest.mark.asyncio
    async def test_send_before_session_fails(self):
        protocol = _protocol()
        with pytest.raises(TransportError):
            protocol.send_datagram(b"ping")


class TestCertificateDigest:
    @pytest.mark.asyncio
    async def test_digest_of_peer_certificate(self, identity):
        protocol = _protocol()
        protocol._quic.tls = SimpleNamespace(_peer_certificate=identity.certificate)
        assert protocol.peer_certificate_digest() == base64.b64decode(identity.cert_hash)

    @pytest.mark.asyncio
    async def test_missing_certificate(self):
        protocol = _protocol()
        protocol._quic.tls = SimpleNamespace()
        assert protocol.peer_certificate_digest() is None


class FakePeer:
    def __init__(self, digest):
        self.digest = digest
        self.opened = []
        self.closed = False

    def peer_certificate_digest(self):
        return self.digest

    async def open_session(self, authority, path):
        self.opened.append((authority, path))

    def close(self):
        self.closed = True


class TestOpenSession:
    @pytest.fixture
    def connections(self, monkeypatch):
        record = SimpleNamespace(peer=None, configurations=[], exited=0)

        @asynccontextmanager
        async def fake_connect(host, port, configuration, create_protocol):
            record.configurations.append(configuration)
            try:
                yield record.peer
            finally:
                record.exited += 1

        monkeypatch.setattr(webtransport, "connect", fake_connect)
        return record

    @pytest.mark.asyncio
    async def test_pinned_certificate_accepted(self, connections):
        pinned = bytes(range(32))
        connections.peer = FakePeer(pinned)

        session = await open_session(
            "https://localhost:4433/.well-known/time", cert_hash=base64.b64encode(pinned).decode()
        )

        assert connections.peer.opened == [("localhost:4433", "/.well-known/time")]
        assert connections.configurations[0].verify_mode == webtransport.ssl.CERT_NONE
        await session.wait_closed()
        assert connections.peer.closed
        assert connections.exited == 1

    @pytest.mark.asyncio
    async def test_pin_mismatch_closes_connection(self, connections):
        connections.peer = FakePeer(bytes(32))

        with pytest.raises(ConnectError, match="does not match"):
            await open_session(
                "https://localhost:4433/.well-known/time", cert_hash=base64.b64encode(b"\x01" * 32).decode()
            )

        assert connections.peer.opened == []
        assert connections.exited == 1

    @pytest.mark.asyncio
    async def test_unavailable_certificate_is_reported(self, connections):
        connections.peer = FakePeer(None)

        with pytest.raises(ConnectError, match="not available"):
            await open_session(
                "https://localhost:4433/.well-known/time", cert_hash=base64.b64encode(bytes(32)).decode()
            )
        assert connections.exited == 1

    @pytest.mark.asyncio
    async def test_unpinned_uses_certificate_verification(self, connections):
        connections.peer = FakePeer(None)

        session = await open_session("https://time.example.org/.well-known/time")

        assert connections.configurations[0].verify_mode != webtransport.ssl.CERT_NONE
        await session.wait_closed()
