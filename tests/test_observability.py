"""Tests for observability endpoints and metrics."""

from __future__ import annotations

from pdfviewer.observability import metrics_registry


def test_metrics_endpoint_tracks_requests(client):
    metrics_registry.reset()
    response = client.get("/api/health")
    assert response.status_code == 200

    metrics_response = client.get("/api/metrics")
    assert metrics_response.status_code == 200
    payload = metrics_response.json()

    assert payload["requests_total"] >= 1
    assert payload["status_codes"]["2xx"] >= 1
    assert payload["routes"]["GET /api/health"]["count"] == 1
    assert payload["queue"] == {"outstanding": 0}


def test_metrics_include_pipeline_counters(client):
    metrics_registry.record_pipeline_event("pages_completed", 3)

    payload = client.get("/api/metrics").json()

    assert payload["pipeline"]["pages_completed"] == 3
