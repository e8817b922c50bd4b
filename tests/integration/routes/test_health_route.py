"""
Integration tests for health and readiness endpoints.
"""

from __future__ import annotations

from unittest.mock import Mock, patch

import pytest
from fastapi.testclient import TestClient

from booking_engine.main import app

client = TestClient(app)


@pytest.mark.integration
def test_health_endpoint_returns_ok() -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.integration
def test_readiness_endpoint_returns_ready_when_db_accessible() -> None:
    response = client.get("/ready")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    assert data["checks"]["database"] == "ok"
    assert data["checks"]["sweeper"] == "stopped"


@pytest.mark.integration
def test_readiness_endpoint_returns_503_when_db_not_accessible() -> None:
    with patch("booking_engine.routes.health.check_engine_health") as mock_health:
        mock_health.return_value = False

        response = client.get("/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "not ready"
        assert data["checks"]["database"] == "failed"


@pytest.mark.integration
def test_readiness_reports_running_sweeper() -> None:
    app.state.sweeper = Mock(running=True)
    try:
        response = client.get("/ready")
    finally:
        del app.state.sweeper

    assert response.json()["checks"]["sweeper"] == "running"
