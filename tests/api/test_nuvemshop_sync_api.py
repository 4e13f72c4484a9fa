"""API tests for the Nuvemshop bulk sync endpoints."""

from datetime import datetime, timezone

import pytest

from hudlab.routers.nuvemshop_sync import get_nuvemshop_sync_job
from hudlab.services.nuvemshop_client import NuvemshopClient
from hudlab.workers.nuvemshop_sync_worker import NUVEMSHOP_SYNC_LOCK_NAME, NuvemshopSyncJob


@pytest.fixture
def sync_job(app, supabase_service, mock_transport):
    transport = mock_transport(
        {
            "GET /v1/123456/orders": [{"id": 1, "total": "50.00"}],
            "GET /v1/123456/products": [],
            "GET /v1/123456/coupons": [],
        }
    )

    async def override():
        job = NuvemshopSyncJob(
            supabase_service=supabase_service,
            nuvemshop_client=NuvemshopClient(transport=transport, requests_per_second=0),
        )
        try:
            yield job
        finally:
            await job.close()

    app.dependency_overrides[get_nuvemshop_sync_job] = override
    return transport


class TestManualNuvemshopSync:
    @pytest.mark.asyncio
    async def test_admin_syncs_selected_resources(self, client, login, sync_job, fake_db):
        login("admin")

        response = await client.post("/api/nuvemshop-sync", json={"resources": ["orders"]})

        assert response.status_code == 200
        assert response.json()["result"]["sync_type"] == "orders"
        assert fake_db.rows("nuvemshop_orders")[0]["order_id"] == "1"
        assert {r.url.path for r in sync_job.requests} == {"/v1/123456/orders"}

    @pytest.mark.asyncio
    async def test_empty_body_syncs_everything(self, client, login, sync_job):
        login("owner")

        response = await client.post("/api/nuvemshop-sync")

        assert response.json()["result"]["sync_type"] == "full"

    @pytest.mark.asyncio
    async def test_invalid_resources(self, client, login, sync_job):
        login("admin")

        response = await client.post("/api/nuvemshop-sync", json={"resources": ["customers"]})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_409_when_running(self, client, login, sync_job, fake_db):
        login("admin")
        fake_db.seed(
            "sync_locks",
            {"name": NUVEMSHOP_SYNC_LOCK_NAME, "holder": "other", "locked_at": datetime.now(timezone.utc).isoformat()},
        )

        response = await client.post("/api/nuvemshop-sync", json={})

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_manager_forbidden(self, client, login, sync_job):
        login("manager")

        response = await client.post("/api/nuvemshop-sync", json={})

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_status_reports_latest_log(self, client, login, sync_job):
        login("admin")
        await client.post("/api/nuvemshop-sync", json={"resources": ["orders"]})

        response = await client.get("/api/nuvemshop-sync/status")

        assert response.json()["lastSync"]["status"] == "completed"


class TestCronNuvemshopSync:
    @pytest.mark.asyncio
    async def test_requires_secret(self, client, sync_job):
        response = await client.get("/api/cron/sync-nuvemshop", headers={"Authorization": "Bearer wrong"})

        assert response.status_code == 401
        assert sync_job.requests == []

    @pytest.mark.asyncio
    async def test_runs_with_secret(self, client, sync_job, fake_db):
        response = await client.get(
            "/api/cron/sync-nuvemshop", headers={"Authorization": "Bearer test-cron-secret"}
        )

        assert response.status_code == 200
        assert response.json()["syncResult"]["total_records"] == 1
        assert fake_db.rows("nuvemshop_sync_log")[0]["triggered_by"] == "cron"
