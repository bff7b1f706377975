import time

from fastapi.testclient import TestClient

from foxtime.app.main import create_app
from foxtime.config.settings import Settings


def _client(**overrides):
    return TestClient(create_app(Settings(_env_file=None, **overrides)))


def test_time_endpoint_reports_server_time():
    client = _client()
    before = time.time()
    response = client.get("/.well-known/time")
    after = time.time()

    assert response.status_code == 200
    assert before <= float(response.headers["x-httpstime"]) <= after


def test_time_endpoint_supports_head():
    response = _client().head("/.well-known/time")
    assert response.status_code == 200
    assert float(response.headers["x-httpstime"]) > 0
    assert response.content == b""


def test_cross_origin_isolation_headers():
    response = _client().get("/.well-known/time")
    assert response.headers["cross-origin-opener-policy"] == "same-origin"
    assert response.headers["cross-origin-embedder-policy"] == "require-corp"


def test_bootstrap_document():
    client = _client(TRANSPORT_PORT=4433, TRANSPORT_CERT_HASH="abc=")
    body = client.get("/api/bootstrap").json()

    assert abs(body["initialServerTime"] - time.time() * 1000) < 5_000
    assert body["transportPort"] == 4433
    assert body["transportCertHash"] == "abc="


def test_bootstrap_without_datagram_transport():
    body = _client().get("/api/bootstrap").json()
    assert body["transportPort"] is None
