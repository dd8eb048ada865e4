"""Integration tests for health check endpoints."""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from tests.tokens import auth_headers


class TestHealthEndpoint:
    """Tests for /health endpoint."""

    def test_health_is_healthy(self, client: TestClient) -> None:
        """Liveness never touches the store."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == "0.1.0"
        assert data["timestamp"] is not None

    def test_health_needs_no_auth(self, client: TestClient) -> None:
        """Probes are anonymous."""
        response = client.get("/health", headers={"Authorization": "Bearer garbage"})

        assert response.status_code == 200


class TestReadinessEndpoint:
    """Tests for /health/ready endpoint."""

    def test_ready_when_database_reachable(self, client: TestClient) -> None:
        """The database check passes against the mocked client."""
        response = client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        db_check = next(c for c in data["checks"] if c["name"] == "database")
        assert db_check["healthy"] is True
        assert db_check["latency_ms"] is not None

    def test_not_ready_when_database_down(self, client: TestClient) -> None:
        """An unreachable unit store turns readiness into 503."""
        with patch(
            "src.api.routes.health.check_database_connection",
            AsyncMock(return_value={"healthy": False, "error": "Connection timeout"}),
        ):
            response = client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "unhealthy"
        assert data["checks"][0]["error"] == "Connection timeout"


class TestErrorResponseSchema:
    """Tests for error response schema compliance."""

    def test_unknown_route(self, client: TestClient) -> None:
        """Unknown paths are 404."""
        response = client.get("/api/v1/nonexistent")

        assert response.status_code == 404

    def test_missing_token(self, client: TestClient) -> None:
        """Protected routes reject anonymous calls."""
        response = client.get("/api/v1/orders")

        assert response.status_code == 401
        assert response.json()["detail"] == "Authorization header required"

    def test_api_errors_include_timestamp(self, client: TestClient) -> None:
        """APIError responses carry the error envelope."""
        response = client.get(
            "/api/v1/orders/990e8400-e29b-41d4-a716-446655440000",
            headers=auth_headers(),
        )

        assert response.status_code == 404
        data = response.json()
        assert data["error"] == "not_found"
        assert "timestamp" in data
