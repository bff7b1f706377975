"""HTTP time server.

Serves the well-known time endpoint probed by the engine's fallback transport
and a bootstrap document that lets a consumer start its clock before the first
measurement completes.
"""

import time
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

from foxtime.api.wire import TIME_HEADER, TIME_PATH, format_time_header
from foxtime.config.settings import Settings, settings as default_settings

logger = structlog.get_logger(__name__)

ISOLATION_HEADERS = {
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Embedder-Policy": "require-corp",
}


class BootstrapResponse(BaseModel):
    """Initial state handed to a consumer"""
    initialServerTime: float = Field(..., description="Server time in epoch milliseconds")
    transportPort: Optional[int] = Field(None, description="Datagram transport port, if enabled")
    transportCertHash: Optional[str] = Field(None, description="Base64 SHA-256 of the datagram certificate")


def create_app(config: Optional[Settings] = None) -> FastAPI:
    config = config or default_settings
    app = FastAPI(title="Foxtime Time Server")

    @app.middleware("http")
    async def isolation_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.update(ISOLATION_HEADERS)
        return response

    @app.api_route(TIME_PATH, methods=["GET", "HEAD"])
    async def well_known_time() -> Response:
        return Response(headers={TIME_HEADER: format_time_header(time.time())})

    @app.get("/api/bootstrap", response_model=BootstrapResponse)
    async def bootstrap() -> BootstrapResponse:
        return BootstrapResponse(
            initialServerTime=time.time() * 1000,
            transportPort=config.TRANSPORT_PORT,
            transportCertHash=config.TRANSPORT_CERT_HASH,
        )

    logger.info("app_created", time_path=TIME_PATH, transport_port=config.TRANSPORT_PORT)
    return app


app = create_app()
