"""One-shot clock offset query against a time server.

Usage examples:
  - foxtime-query localhost:8123
  - foxtime-query https://time.example.org --web-transport --cert-hash <base64>
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass
from typing import List, Optional

from foxtime.api.wire import datagram_url, time_url
from foxtime.timing.clock import LocalClock
from foxtime.timing.window import ProbeSample
from foxtime.transport.datagram import DatagramTransport
from foxtime.transport.errors import ProbeError
from foxtime.transport.http import HttpTransport
from foxtime.utils.logging_config import setup_logging


@dataclass
class QueryResult:
    url: str
    server_time: float  # epoch seconds
    local_time: float  # epoch seconds, midpoint of the round trip
    offset_ms: float
    rtt_ms: float

    @classmethod
    def from_sample(cls, url: str, sample: ProbeSample, clock: LocalClock) -> "QueryResult":
        local_ms = clock.time_origin + (sample.request_sent + sample.response_received) / 2
        return cls(
            url=url,
            server_time=sample.server_time / 1000,
            local_time=local_ms / 1000,
            offset_ms=local_ms - sample.server_time,
            rtt_ms=sample.delay,
        )

    def format(self) -> str:
        return "\n".join([
            f"Server: {self.url}",
            f"Server time: {self.server_time:.6f}",
            f"Local time:  {self.local_time:.6f} (RTT-adjusted)",
            f"Offset:      {self.offset_ms:.3f} milliseconds",
            f"RTT:         {self.rtt_ms:.3f} milliseconds",
        ])


async def query_http(url: str, timeout: float = 5.0, clock: Optional[LocalClock] = None, session=None) -> QueryResult:
    clock = clock or LocalClock()
    transport = HttpTransport(url, clock, session=session, timeout=timeout)
    try:
        await asyncio.to_thread(transport.preflight)
        sample = await transport.probe()
    finally:
        transport.close()
    return QueryResult.from_sample(transport.url, sample, clock)


async def query_datagram(
    url: str,
    cert_hash: Optional[str] = None,
    timeout: float = 5.0,
    clock: Optional[LocalClock] = None,
    session_factory=None,
) -> QueryResult:
    clock = clock or LocalClock()
    endpoint = datagram_url(url)
    transport = DatagramTransport(endpoint, clock, cert_hash=cert_hash, timeout=timeout, session_factory=session_factory)
    try:
        sample = await transport.probe()
    finally:
        await transport.aclose()
    return QueryResult.from_sample(endpoint, sample, clock)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Measure the clock offset to a time server")
    parser.add_argument("url", help="URL of the time server (e.g., http://localhost:8123)")
    parser.add_argument("--web-transport", action="store_true", help="Use WebTransport datagrams instead of HTTP")
    parser.add_argument("--cert-hash", help="WebTransport server certificate SHA-256 fingerprint (base64)")
    parser.add_argument("--timeout", type=float, default=5.0, help="Timeout in seconds (default: 5)")
    args = parser.parse_args(argv)

    setup_logging(level="WARNING", component="query")

    if args.web_transport:
        coro = query_datagram(args.url, cert_hash=args.cert_hash, timeout=args.timeout)
    else:
        coro = query_http(time_url(args.url), timeout=args.timeout)

    try:
        result = asyncio.run(coro)
    except ProbeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(result.format())
    return 0


if __name__ == "__main__":
    sys.exit(main())
