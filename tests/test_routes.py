from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from ledgersync.main import app
from ledgersync.database import get_db
from ledgersync.app.auth import get_current_active_user
from ledgersync.app.quickbooks.mapping_service import MappingService


@pytest.fixture
def api(db, user):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_current_active_user] = lambda: user
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


class TestConnectionRoutes:
    def test_health(self, api):
        response = api.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_connect_returns_authorization_url(self, api):
        response = api.get("/api/quickbooks/connect")

        assert response.status_code == 200
        data = response.json()
        assert data["authorization_url"].startswith("https://appcenter.intuit.com/connect/oauth2?")
        assert "client_id=test-client-id" in data["authorization_url"]
        assert data["state"]

    def test_status_not_connected(self, api):
        response = api.get("/api/quickbooks/status")

        assert response.status_code == 200
        assert response.json()["connected"] is False

    def test_status_connected(self, api, connection):
        data = api.get("/api/quickbooks/status").json()

        assert data["connected"] is True
        assert data["company_id"] == "9130354"

    def test_callback_rejects_bad_state(self, api):
        response = api.get(
            "/api/quickbooks/callback",
            params={"code": "abc", "state": "forged", "realmId": "123"},
            follow_redirects=False,
        )

        assert response.status_code == 307
        assert response.headers["location"] == "http://frontend.test/settings/quickbooks?error=invalid_state"

    def test_callback_passes_provider_error(self, api):
        response = api.get("/api/quickbooks/callback", params={"error": "access_denied"}, follow_redirects=False)

        assert response.headers["location"].endswith("error=access_denied")

    def test_disconnect_without_connection(self, api):
        assert api.post("/api/quickbooks/disconnect").status_code == 404


class TestMappingRoutes:
    def test_requires_connection(self, api):
        response = api.get("/api/quickbooks/mappings/")

        assert response.status_code == 400
        assert response.json()["detail"] == "QuickBooks is not connected"

    def test_put_and_list_category_mappings(self, api, connection):
        payload = [{"category": "Groceries", "qb_account_id": "64", "qb_account_name": "Supplies", "confidence": 92}]

        put = api.put("/api/quickbooks/mappings/categories", json=payload)
        listed = api.get("/api/quickbooks/mappings/").json()

        assert put.status_code == 200
        assert put.json()[0]["connection_id"] == connection.id
        assert [m["category"] for m in listed["category_mappings"]] == ["Groceries"]
        assert listed["stats"]["total_category_mappings"] == 1

    def test_delete_unknown_mapping(self, api, connection):
        assert api.delete("/api/quickbooks/mappings/categories/999").status_code == 404

    def test_validate(self, api, db, connection, statement_file, add_transaction):
        MappingService(db).save_category_mappings(connection.id, [{"category": "Groceries", "qb_account_id": "64"}])
        add_transaction(category="Groceries")
        add_transaction(category="Travel")

        response = api.post("/api/quickbooks/mappings/validate", json={"file_id": statement_file.id})

        assert response.status_code == 200
        data = response.json()
        assert data["coverage"] == 50.0
        assert data["unmapped_categories"] == ["Travel"]
        assert data["ready"] is False

    def test_auto_suggest_rejects_unknown_type(self, api, connection):
        response = api.post("/api/quickbooks/mappings/auto-suggest", json={"type": "accounts"})

        assert response.status_code == 422


class TestSyncRoutes:
    def test_start_queues_background_job(self, api, connection, statement_file, add_transaction):
        add_transaction()

        with patch("ledgersync.app.routes.sync.run_sync_job", new=AsyncMock()) as run:
            response = api.post("/api/quickbooks/sync/start", json={
                "file_id": statement_file.id,
                "settings": {"bank_account_id": "35"},
            })

        assert response.status_code == 200
        job = response.json()
        assert job["status"] == "pending"
        assert job["total_transactions"] == 1
        run.assert_awaited_once_with(job["id"], connection.user_id)

    def test_start_without_connection(self, api, statement_file, add_transaction):
        add_transaction()

        response = api.post("/api/quickbooks/sync/start", json={
            "file_id": statement_file.id,
            "settings": {"bank_account_id": "35"},
        })

        assert response.status_code == 401
        assert "Reconnect required" in response.json()["detail"]

    def test_status_and_cancel(self, api, connection, statement_file, add_transaction):
        add_transaction()
        with patch("ledgersync.app.routes.sync.run_sync_job", new=AsyncMock()):
            job_id = api.post("/api/quickbooks/sync/start", json={
                "file_id": statement_file.id,
                "settings": {"bank_account_id": "35"},
            }).json()["id"]

        status = api.get(f"/api/quickbooks/sync/status/{job_id}").json()
        cancelled = api.post(f"/api/quickbooks/sync/{job_id}/cancel").json()
        history = api.get("/api/quickbooks/sync/history").json()

        assert status["progress"] == 0
        assert status["settings"]["bank_account_id"] == "35"
        assert len(status["transactions"]) == 1
        assert cancelled["status"] == "failed"
        assert [j["id"] for j in history] == [job_id]

    def test_unknown_job(self, api):
        assert api.get("/api/quickbooks/sync/status/999").status_code == 404

    def test_retry_while_job_is_pending(self, api, connection, statement_file, add_transaction):
        add_transaction()
        with patch("ledgersync.app.routes.sync.run_sync_job", new=AsyncMock()):
            job_id = api.post("/api/quickbooks/sync/start", json={
                "file_id": statement_file.id,
                "settings": {"bank_account_id": "35"},
            }).json()["id"]

        response = api.post(f"/api/quickbooks/sync/{job_id}/retry")

        assert response.status_code == 400
        assert response.json()["detail"] == f"Sync job {job_id} is still pending"
