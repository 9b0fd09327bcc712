"""Tests for health, stats and cache maintenance endpoints."""

from __future__ import annotations

from fastapi.testclient import TestClient

from pdfviewer import __version__


def test_health_endpoint_reports_ok(client: TestClient) -> None:
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True, "version": __version__}
    assert response.headers["X-Request-ID"]


def test_dependency_health_probes_every_backend(client: TestClient) -> None:
    response = client.get("/api/utils/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["checks"] == {"database": True, "storage": True, "cache": True}


def test_request_id_is_echoed(client: TestClient) -> None:
    response = client.get("/api/health", headers={"X-Request-ID": "abc-123"})
    assert response.headers["X-Request-ID"] == "abc-123"

    generated = client.get("/api/health", headers={"X-Request-ID": "bad id!"})
    assert generated.headers["X-Request-ID"] != "bad id!"


def test_stats_and_cache_endpoints(client: TestClient) -> None:
    stats = client.get("/api/utils/stats").json()
    assert stats["documents"]["total"] == 0
    assert stats["cache"]["backend"]["backend"] == "memory"
    assert "index_version" in stats["search"]
    assert stats["queue"]["concurrency"] == 4

    assert client.post("/api/utils/cache/clear").json() == {"cleared": True}
    assert client.post("/api/utils/cache/warm/missing").status_code == 404
