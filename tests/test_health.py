from __future__ import annotations

from fastapi.testclient import TestClient

from askgate.main import create_app


def test_health_ok() -> None:
    app = create_app()
    client = TestClient(app)
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_request_id_is_propagated() -> None:
    client = TestClient(create_app())
    resp = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
    assert int(resp.headers["X-Response-Time-Ms"]) >= 0


def test_vendor_request_id_header_matches() -> None:
    client = TestClient(create_app())
    resp = client.get("/health")
    assert resp.headers["request-id"].startswith("req_")
    assert resp.headers["request-id"] == resp.headers["X-Request-ID"]


def test_unsafe_client_request_id_is_replaced() -> None:
    client = TestClient(create_app())
    resp = client.get("/health", headers={"X-Request-ID": "x" * 200})
    assert resp.headers["X-Request-ID"].startswith("req_")
    assert len(resp.headers["X-Request-ID"]) == len("req_") + 32
