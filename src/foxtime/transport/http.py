"""Request/response probe over HTTP.

Uses a keep-alive ``requests.Session`` so the timed request normally reuses a
warm connection. When the channel has been idle longer than the server's
keep-alive window, a throwaway preflight request re-establishes the connection
first so that TCP/TLS setup is not measured as network delay.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import requests
import structlog

from foxtime.api.wire import TIME_HEADER, WireError, parse_time_header, time_url
from foxtime.timing.clock import LocalClock
from foxtime.timing.window import ProbeSample
from foxtime.transport.errors import NetworkError, ServerError

logger = structlog.get_logger(__name__)

STALE_AFTER_MS = 10_000.0


class HttpTransport:
    name = "http"

    def __init__(
        self,
        base_url: str,
        clock: LocalClock,
        session: Optional[requests.Session] = None,
        timeout: float = 5.0,
        stale_after_ms: float = STALE_AFTER_MS,
    ):
        self.url = time_url(base_url)
        self._clock = clock
        self._session = session or requests.Session()
        self._timeout = timeout
        self._stale_after_ms = stale_after_ms
        self.last_request = clock.now()

    async def probe(self) -> ProbeSample:
        return await asyncio.to_thread(self._probe_blocking)

    def _probe_blocking(self) -> ProbeSample:
        if self._clock.now() - self.last_request > self._stale_after_ms:
            self.preflight()

        request_sent = self._clock.now()
        try:
            response = self._session.head(self.url, timeout=self._timeout)
        except requests.RequestException as e:
            raise NetworkError(f"request to {self.url} failed: {e}") from e
        response_received = self._clock.now()
        self.last_request = response_received

        if not response.ok:
            raise ServerError(f"server returned error: {response.status_code}", response.status_code)
        try:
            server_time = parse_time_header(response.headers.get(TIME_HEADER))
        except WireError as e:
            raise ServerError(str(e), response.status_code) from e

        return ProbeSample(request_sent, response_received, server_time)

    def preflight(self) -> None:
        try:
            self._session.head(self.url, timeout=self._timeout)
        except requests.RequestException as e:
            # The timed request reports the failure if the server is really gone.
            logger.debug("preflight_failed", url=self.url, error=str(e))

    def close(self) -> None:
        self._session.close()
