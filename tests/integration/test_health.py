"""Integration tests for health check endpoints."""

from typing import Any

from fastapi.testclient import TestClient


class TestHealthEndpoint:
    """Tests for /health endpoint."""

    def test_health_returns_200(self, client: TestClient) -> None:
        """Test that /health returns 200 status."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data


class TestReadinessEndpoint:
    """Tests for /health/ready endpoint."""

    def test_ready_when_database_reachable(self, client: TestClient) -> None:
        response = client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"][0]["name"] == "database"
        assert data["checks"][0]["healthy"] is True

    def test_503_when_database_down(self, client: TestClient, catalog: Any) -> None:
        catalog.failures[("orders", "select")] = ConnectionError("connection refused")

        response = client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "unhealthy"
        assert "connection refused" in data["checks"][0]["error"]
