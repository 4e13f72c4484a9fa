"""API tests for the ActiveCampaign deal webhook."""

import pytest

from hudlab.config import settings
from hudlab.routers.webhooks import get_activecampaign_client
from hudlab.services.activecampaign_client import ActiveCampaignClient
from hudlab.utils.swr_cache import response_cache


def _deal(value="150000", contact="9"):
    return {"deal": {"id": "101", "title": "Pedido Loja Centro", "value": value, "status": "0", "contact": contact}}


@pytest.fixture
def ac_routes():
    return {
        "GET /api/3/deals/101": _deal(),
        "GET /api/3/dealCustomFieldData": {
            "dealCustomFieldData": [
                {"dealId": "101", "customFieldId": 5, "fieldValue": "03/15/2025"},
                {"dealId": "101", "customFieldId": 45, "fieldValue": "Ana"},
            ]
        },
        "GET /api/3/contacts/9/fieldValues": {"fieldValues": [{"field": "7", "value": "Varejo"}]},
    }


@pytest.fixture
def use_ac(app, mock_transport):
    def _use(routes):
        transport = mock_transport(routes)

        async def override():
            client = ActiveCampaignClient(transport=transport, requests_per_second=0)
            try:
                yield client
            finally:
                await client.close()

        app.dependency_overrides[get_activecampaign_client] = override
        return transport

    return _use


class TestActiveCampaignWebhook:
    @pytest.mark.asyncio
    async def test_form_payload_refreshes_deal(self, client, use_ac, ac_routes, fake_db):
        use_ac(ac_routes)

        response = await client.post("/api/webhooks/active-campaign", data={"deal[id]": "101", "type": "deal_update"})

        assert response.status_code == 200
        assert response.json()["deal_id"] == "101"
        assert response.json()["ghost_healed"] is False
        cached = fake_db.rows("deals_cache")[0]
        assert cached["value"] == 150000
        assert cached["closing_date"] == "2025-03-15"
        assert cached["vendedor"] == "Ana"
        assert cached["segmento_de_negocio"] == "Varejo"
        assert fake_db.rows("deals_live")[0]["deal_id"] == "101"

    @pytest.mark.asyncio
    async def test_json_payload(self, client, use_ac, ac_routes):
        use_ac(ac_routes)

        response = await client.post("/api/webhooks/active-campaign", json={"deal": {"id": 101}})

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_missing_deal_id(self, client, use_ac, ac_routes):
        use_ac(ac_routes)

        response = await client.post("/api/webhooks/active-campaign", data={"type": "deal_update"})

        assert response.status_code == 400
        assert response.json() == {"error": "Deal ID not found in webhook payload"}

    @pytest.mark.asyncio
    async def test_token_checked_when_configured(self, client, use_ac, ac_routes, monkeypatch):
        monkeypatch.setattr(settings, "activecampaign_webhook_secret", "s3cret")
        use_ac(ac_routes)

        rejected = await client.post("/api/webhooks/active-campaign?token=wrong", data={"deal[id]": "101"})
        accepted = await client.post("/api/webhooks/active-campaign?token=s3cret", data={"deal[id]": "101"})

        assert rejected.status_code == 403
        assert rejected.json()["error"] == "Invalid webhook token"
        assert accepted.status_code == 200

    @pytest.mark.asyncio
    async def test_zero_value_deal_healed_from_sibling(self, client, use_ac, ac_routes, fake_db):
        fake_db.seed(
            "deals_cache",
            {"deal_id": "55", "contact_id": "9", "value": 480000, "title": "Pedido real", "vendedor": "Bia"},
        )
        use_ac(dict(ac_routes, **{"GET /api/3/deals/101": _deal(value="0")}))

        response = await client.post("/api/webhooks/active-campaign", data={"deal[id]": "101"})

        assert response.json()["ghost_healed"] is True
        healed = next(r for r in fake_db.rows("deals_cache") if r["deal_id"] == "101")
        live = fake_db.rows("deals_live")[0]
        assert healed["value"] == 480000
        assert healed["title"] == "Pedido real"
        assert live["value"] == 480000

    @pytest.mark.asyncio
    async def test_upstream_failure_is_500(self, client, use_ac, ac_routes):
        use_ac(dict(ac_routes, **{"GET /api/3/deals/101": (404, {"message": "No Result found"})}))

        response = await client.post("/api/webhooks/active-campaign", data={"deal[id]": "101"})

        assert response.status_code == 500
        assert response.json()["error"].startswith("Failed to process deal webhook")

    @pytest.mark.asyncio
    async def test_invalidates_cached_deal_lists(self, client, use_ac, ac_routes):
        use_ac(ac_routes)
        response_cache.set("deals:2025-01-01:2025-01-31", [])

        await client.post("/api/webhooks/active-campaign", data={"deal[id]": "101"})

        assert response_cache.get("deals:2025-01-01:2025-01-31", "deals") is None
