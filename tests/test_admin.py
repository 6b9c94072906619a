from datetime import timedelta
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app.database import get_db
from app.main import app
from app.models import PipelineAlert
from app.services.time_utils import utc_now

HEADERS = {"X-Admin-Token": "admin-secret"}


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    with patch("app.routers.admin.settings.admin_token", "admin-secret"):
        yield TestClient(app)
    app.dependency_overrides.clear()


class TestAdminAuth:
    def test_missing_token(self, client):
        assert client.get("/admin/queue/stats").status_code == 401

    def test_wrong_token(self, client):
        assert client.get("/admin/queue/stats", headers={"X-Admin-Token": "nope"}).status_code == 401

    def test_token_not_configured(self, db):
        app.dependency_overrides[get_db] = lambda: db
        try:
            with patch("app.routers.admin.settings.admin_token", None):
                response = TestClient(app).get("/admin/queue/stats", headers=HEADERS)
        finally:
            app.dependency_overrides.clear()
        assert response.status_code == 500


class TestQueueEndpoints:
    def test_stats_for_tenant(self, client, tenant, make_item):
        now = utc_now()
        make_item("m1", sent_at=now - timedelta(minutes=1))
        make_item("m2", sent_at=now, sender="15550000000", status="completed")

        data = client.get("/admin/queue/stats", params={"tenant_slug": "demo-salon"}, headers=HEADERS).json()

        assert data["pending"] == 1
        assert data["completed"] == 1
        assert data["total"] == 2

    def test_unknown_tenant(self, client):
        response = client.get("/admin/queue/stats", params={"tenant_slug": "ghost"}, headers=HEADERS)
        assert response.status_code == 404

    def test_release_stale(self, client, tenant, make_item):
        old = utc_now() - timedelta(hours=1)
        make_item("m1", sent_at=old, status="processing")

        response = client.post("/admin/queue/release-stale", headers=HEADERS)

        assert response.json() == {"released": 1}


class TestDedupEndpoint:
    def test_stats(self, client, tenant):
        data = client.get("/admin/dedup/stats", params={"tenant_slug": "demo-salon"}, headers=HEADERS).json()

        assert data["unique_messages"] == 0
        assert data["duplicate_rate"] == 0.0
        assert data["window_hours"] == 24


class TestAlertEndpoints:
    def test_recent_alerts(self, client, db, tenant):
        db.add(PipelineAlert(tenant_id=tenant.id, kind="sequence_gap", level="WARNING", message="gap", context={}))
        db.commit()

        data = client.get("/admin/alerts", headers=HEADERS).json()

        assert len(data) == 1
        assert data[0]["kind"] == "sequence_gap"
        assert data[0]["tenant_id"] == str(tenant.id)

    @patch("app.routers.admin.alert_warning", return_value=True)
    def test_test_alert(self, mock_warning, client):
        response = client.post("/admin/alerts/test", json={"message": "ping"}, headers=HEADERS)

        assert response.json() == {"sent": True}
        mock_warning.assert_called_once_with("ping", {"source": "admin"})


class TestVersion:
    def test_version_is_public(self, client):
        response = client.get("/admin/version")

        assert response.status_code == 200
        assert "version" in response.json()
