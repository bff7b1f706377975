"""Terminal clock kept in sync with a time server.

Runs a :class:`SyncEngine` in the background and prints the corrected time
every time the engine publishes a new offset.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import List, Optional, TextIO

import requests
import structlog

from foxtime.api.wire import bootstrap_url
from foxtime.config.settings import Settings
from foxtime.engine.engine import SyncEngine
from foxtime.timing.clock import LocalClock
from foxtime.timing.publisher import SyncedClock
from foxtime.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


def fetch_bootstrap(server_url: str, timeout: float = 5.0, session=None) -> Optional[dict]:
    url = bootstrap_url(server_url)
    try:
        response = (session or requests).get(url, timeout=timeout)
        response.raise_for_status()
        return response.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning("bootstrap_failed", url=url, error=str(e))
        return None


def format_line(synced: SyncedClock) -> str:
    now = synced.datetime().astimezone()
    return f"{now:%H:%M:%S}.{now.microsecond // 100000}  delay={synced.delay:.2f}ms  offset={synced.offset:.1f}ms"


async def watch(
    config: Settings,
    count: Optional[int] = None,
    bootstrap: Optional[dict] = None,
    clock: Optional[LocalClock] = None,
    engine: Optional[SyncEngine] = None,
    out: TextIO = sys.stdout,
) -> SyncedClock:
    clock = clock or LocalClock()
    bootstrap = bootstrap or {}
    synced = SyncedClock(clock, initial_server_time=bootstrap.get("initialServerTime"))
    engine = engine or SyncEngine(config, clock=clock)

    if bootstrap.get("initialServerTime") is not None:
        engine.post({"initialTimeOrigin": synced.time_origin})
    if bootstrap.get("transportPort") and not config.TRANSPORT_PORT:
        engine.post({
            "transportPort": bootstrap["transportPort"],
            "transportCertHash": bootstrap.get("transportCertHash") or None,
        })

    runner = asyncio.create_task(engine.run())
    received = 0
    try:
        while count is None or received < count:
            message = await engine.outbox.get()
            synced.apply(message)
            print(format_line(synced), file=out, flush=True)
            received += 1
    finally:
        await engine.aclose()
        await runner
    return synced


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Print a clock synchronized to a time server")
    parser.add_argument("--server", help="Time server URL (default: FOXTIME_SERVER_URL)")
    parser.add_argument("--count", type=int, help="Stop after this many updates")
    parser.add_argument("--no-bootstrap", action="store_true", help="Skip fetching the bootstrap document")
    args = parser.parse_args(argv)

    config = Settings()
    if args.server:
        config.SERVER_URL = args.server
    setup_logging(level=config.LOG_LEVEL, component="watch", log_path=config.LOG_PATH)

    initial = None if args.no_bootstrap else fetch_bootstrap(config.SERVER_URL, timeout=config.REQUEST_TIMEOUT)
    try:
        asyncio.run(watch(config, count=args.count, bootstrap=initial))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
