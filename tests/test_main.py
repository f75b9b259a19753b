"""Tests for the app shell: root, health and the error envelope."""

from unittest.mock import MagicMock

from escao.database import get_db
from escao.main import app


class TestHealth:
    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["service"] == "escao-backend"
        assert response.json()["status"] == "ok"

    def test_health_connected(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "database": "connected"}

    def test_health_degraded(self, client):
        """Test a failing database query reports degraded instead of raising."""
        broken = MagicMock()
        broken.table.return_value.select.return_value.limit.return_value.execute.side_effect = (
            RuntimeError("connection refused")
        )
        app.dependency_overrides[get_db] = lambda: broken

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"
        assert response.json()["database"].startswith("error:")


class TestErrorEnvelope:
    def test_unknown_route_uses_error_key(self, client):
        response = client.get("/api/nowhere")

        assert response.status_code == 404
        assert "error" in response.json()

    def test_validation_error_names_field(self, client, buyer, auth_headers):
        response = client.post("/api/escrow", json={"amount": "x"}, headers=auth_headers(buyer))

        assert response.status_code == 400
        assert "amount" in response.json()["error"]
