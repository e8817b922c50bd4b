"""
Unit tests for metrics endpoint.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from booking_engine.main import app
from booking_engine.metrics import (
    booking_transitions,
    bookings_created,
    hold_conflicts,
    payment_latency,
    payment_requests,
)


@pytest.fixture
def client() -> TestClient:
    """FastAPI test client."""
    return TestClient(app)


@pytest.mark.unit
def test_metrics_endpoint_returns_prometheus_format(client: TestClient) -> None:
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "text/plain" in response.headers["content-type"]


@pytest.mark.unit
def test_metrics_endpoint_contains_booking_metrics(client: TestClient) -> None:
    bookings_created.labels(booking_type="property", outcome="created").inc()
    booking_transitions.labels(transition="accept", status="success").inc()
    hold_conflicts.labels(resource_kind="listing").inc()
    payment_requests.labels(status="succeeded").inc()
    payment_latency.observe(0.2)

    content = client.get("/metrics").text

    assert "booking_engine_bookings_created_total" in content
    assert "booking_engine_transitions_total" in content
    assert "booking_engine_hold_conflicts_total" in content
    assert "booking_engine_payment_requests_total" in content
    assert "booking_engine_payment_latency_seconds" in content


@pytest.mark.unit
def test_metrics_include_help_and_type_metadata(client: TestClient) -> None:
    content = client.get("/metrics").text

    assert "# HELP booking_engine_bookings_created_total" in content
    assert "# TYPE booking_engine_bookings_created_total counter" in content
