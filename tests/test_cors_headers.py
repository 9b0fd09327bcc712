"""Tests covering CORS middleware behaviour."""

from __future__ import annotations

from fastapi.testclient import TestClient

ORIGIN = "http://192.168.68.136:3600"


def test_preflight_request_includes_cors_headers(client: TestClient) -> None:
    """Preflight requests from any origin are accepted with the default settings."""

    response = client.options(
        "/api/documents",
        headers={"Origin": ORIGIN, "Access-Control-Request-Method": "GET"},
    )

    assert response.status_code == 200
    assert response.headers.get("access-control-allow-origin") == "*"


def test_error_responses_include_cors_headers(monkeypatch) -> None:
    """CORS headers should be present even when an endpoint raises an error."""

    from pdfviewer.main import app

    def boom(*_args, **_kwargs):  # pragma: no cover - exercised via FastAPI
        raise RuntimeError("boom")

    with TestClient(app, raise_server_exceptions=False) as client:
        monkeypatch.setattr(client.app.state.container.documents, "list", boom)
        response = client.get("/api/documents", headers={"Origin": ORIGIN})

    assert response.status_code == 500
    assert response.json()["detail"] == "Internal Server Error"
    assert response.headers.get("access-control-allow-origin") == "*"
