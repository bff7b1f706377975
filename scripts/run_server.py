#!/usr/bin/env python3
"""Run the foxtime time server (HTTP, plus WebTransport datagrams on request).

Usage examples:
  - python scripts/run_server.py
  - python scripts/run_server.py --listen-any --port 8123
  - python scripts/run_server.py --transport-port 4433

Settings not given on the command line come from FOXTIME_* environment
variables (see src/foxtime/config/settings.py).
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path


# Ensure src is on sys.path when running from a checkout
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import uvicorn  # noqa: E402

from foxtime.app.main import create_app  # noqa: E402
from foxtime.app.responder import ServerIdentity, serve_time  # noqa: E402
from foxtime.config.settings import Settings  # noqa: E402
from foxtime.utils.logging_config import setup_logging  # noqa: E402


async def serve(config: Settings, identity) -> None:
    responder = None
    if identity is not None:
        responder = await serve_time(config.API_HOST, config.TRANSPORT_PORT, identity)
    server = uvicorn.Server(
        uvicorn.Config(create_app(config), host=config.API_HOST, port=config.API_PORT, log_config=None)
    )
    try:
        await server.serve()
    finally:
        if responder is not None:
            responder.close()


def main() -> None:
    config = Settings()
    parser = argparse.ArgumentParser(description="Run the foxtime time server")
    parser.add_argument("--listen-any", action="store_true", help="Listen on all interfaces")
    parser.add_argument("--port", type=int, default=config.API_PORT, help=f"HTTP port (default: {config.API_PORT})")
    parser.add_argument("--transport-port", type=int, help="Serve WebTransport datagrams on this UDP port")
    parser.add_argument("--tls-cert", help="PEM certificate for WebTransport (default: self-signed)")
    parser.add_argument("--tls-key", help="PEM private key matching --tls-cert")
    args = parser.parse_args()
    if bool(args.tls_cert) != bool(args.tls_key):
        parser.error("--tls-cert and --tls-key must be given together")

    config.API_PORT = args.port
    if args.listen_any:
        config.API_HOST = "0.0.0.0"
    if args.transport_port:
        config.TRANSPORT_PORT = args.transport_port

    logger = setup_logging(level=config.LOG_LEVEL, component="server", log_path=config.LOG_PATH)

    identity = None
    if config.TRANSPORT_PORT:
        if args.tls_cert:
            identity = ServerIdentity.load(args.tls_cert, args.tls_key)
        else:
            identity = ServerIdentity.generate()
            # Clients can only trust a self-signed certificate by its hash.
            config.TRANSPORT_CERT_HASH = identity.cert_hash
            logger.info("certificate_fingerprint", cert_hash=identity.cert_hash)

    logger.info("server_starting", host=config.API_HOST, port=config.API_PORT, transport_port=config.TRANSPORT_PORT)
    try:
        asyncio.run(serve(config, identity))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
