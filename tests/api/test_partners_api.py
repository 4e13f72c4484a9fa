"""API tests for coupons, commission payments, PIX keys and contracts."""

import pytest

from hudlab.routers.webhooks import get_nuvemshop_client
from hudlab.services.nuvemshop_client import NuvemshopClient


@pytest.fixture
def use_nuvemshop(app, mock_transport):
    def _use(routes):
        transport = mock_transport(routes)

        async def override():
            client = NuvemshopClient(transport=transport)
            try:
                yield client
            finally:
                await client.close()

        app.dependency_overrides[get_nuvemshop_client] = override
        return transport

    return _use


def _payment(**overrides):
    body = {"brand": "Acme", "amount": 1250.5, "payment_date": "2025-03-10"}
    body.update(overrides)
    return body


class TestCoupons:
    @pytest.mark.asyncio
    async def test_generate(self, client, login, use_nuvemshop, fake_db):
        login("admin")
        use_nuvemshop({"POST /v1/123456/coupons": {"id": 901}})
        fake_db.seed("nuvemshop_products", {"product_id": "10", "brand": "Acme", "published": True})

        response = await client.post(
            "/api/partners/coupons/generate",
            json={"percentage": 10, "validDays": 30, "maxUses": 50, "brand": "Acme"},
        )

        assert response.status_code == 201
        assert response.json()["coupon"]["code"].startswith("ACME10")

    @pytest.mark.asyncio
    async def test_generate_above_max_percentage(self, client, login, use_nuvemshop, fake_db):
        login("owner")
        use_nuvemshop({})

        response = await client.post(
            "/api/partners/coupons/generate",
            json={"percentage": 20, "validDays": 30, "maxUses": 50, "brand": "Acme"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Percentage must be between 1 and 15"
        assert fake_db.rows("generated_coupons") == []

    @pytest.mark.asyncio
    async def test_generate_nuvemshop_failure_includes_payload(self, client, login, use_nuvemshop, fake_db):
        login("admin")
        use_nuvemshop({"POST /v1/123456/coupons": (500, {"error": "down"})})
        fake_db.seed("nuvemshop_products", {"product_id": "10", "brand": "Acme", "published": True})

        response = await client.post(
            "/api/partners/coupons/generate",
            json={"percentage": 10, "validDays": 30, "maxUses": 50, "brand": "Acme"},
        )

        assert response.status_code == 500
        assert response.json()["error"].startswith("Failed to create coupon in Nuvemshop")
        assert "payload" in response.json()

    @pytest.mark.asyncio
    async def test_partner_sees_only_own_brand(self, client, login, fake_db):
        login("partners-media", brand="Acme")
        fake_db.seed(
            "generated_coupons",
            {"code": "ACME10AAAA", "brand": "Acme"},
            {"code": "OTHER10BBB", "brand": "Other"},
        )

        response = await client.get("/api/partners/coupons", params={"brand": "Other"})

        assert [c["code"] for c in response.json()["coupons"]] == ["ACME10AAAA"]

    @pytest.mark.asyncio
    async def test_partner_without_brand_forbidden(self, client, login):
        login("partners-media")

        response = await client.get("/api/partners/coupons")

        assert response.status_code == 403
        assert response.json()["error"] == "No brand assigned"


class TestCommissionPayments:
    @pytest.mark.asyncio
    async def test_create_and_list(self, client, login):
        login("admin")

        created = await client.post("/api/partners/commission-payments", json=_payment())
        listed = await client.get("/api/partners/commission-payments")

        assert created.status_code == 201
        payment = created.json()["payment"]
        assert payment["status"] == "sent"
        assert payment["payment_method"] == "pix"
        assert [p["id"] for p in listed.json()["payments"]] == [payment["id"]]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body,message",
        [
            ({"brand": "Acme"}, "Brand, amount, and payment_date are required"),
            (_payment(amount=-5), "Amount must be a positive number"),
            (_payment(amount="abc"), "Amount must be a positive number"),
            (_payment(payment_date="10/03/2025"), "Payment date must be in YYYY-MM-DD format"),
            (_payment(status="paid"), "Status must be one of: sent, confirmed, cancelled"),
        ],
    )
    async def test_validation(self, client, login, body, message):
        login("admin")

        response = await client.post("/api/partners/commission-payments", json=body)

        assert response.status_code == 400
        assert response.json()["error"] == message

    @pytest.mark.asyncio
    async def test_update_and_delete(self, client, login):
        login("admin")
        payment = (await client.post("/api/partners/commission-payments", json=_payment())).json()["payment"]

        updated = await client.put(
            f"/api/partners/commission-payments/{payment['id']}", json={"status": "confirmed"}
        )
        deleted = await client.delete(f"/api/partners/commission-payments/{payment['id']}")
        missing = await client.delete(f"/api/partners/commission-payments/{payment['id']}")

        assert updated.json()["payment"]["status"] == "confirmed"
        assert deleted.json() == {"success": True}
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_manager_cannot_view(self, client, login):
        login("manager")

        response = await client.get("/api/partners/commission-payments")

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_partner_cannot_create(self, client, login):
        login("partners-media", brand="Acme")

        response = await client.post("/api/partners/commission-payments", json=_payment())

        assert response.status_code == 403


class TestPixKeys:
    @pytest.mark.asyncio
    async def test_partner_creates_key_for_own_brand(self, client, login):
        login("partners-media", brand="Acme")

        response = await client.post(
            "/api/partners/pix-keys",
            json={"brand": "Acme", "pix_key": "contato@acme.com", "pix_type": "email"},
        )

        assert response.status_code == 201
        assert response.json()["pixKey"]["franchise"] is None

    @pytest.mark.asyncio
    async def test_partner_cannot_create_for_other_brand(self, client, login):
        login("partners-media", brand="Acme")

        response = await client.post(
            "/api/partners/pix-keys",
            json={"brand": "Other", "pix_key": "x@y.com", "pix_type": "email"},
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_one_key_per_brand(self, client, login):
        login("admin")
        body = {"brand": "Acme", "pix_key": "12345678900", "pix_type": "cpf"}
        await client.post("/api/partners/pix-keys", json=body)

        response = await client.post("/api/partners/pix-keys", json=body)

        assert response.status_code == 409
        assert response.json()["error"] == "Pix key already exists for Acme"

    @pytest.mark.asyncio
    async def test_franchise_brand_keyed_by_franchise(self, client, login):
        login("admin")
        body = {"brand": "Zenith", "pix_key": "k", "pix_type": "random"}

        missing = await client.post("/api/partners/pix-keys", json=body)
        first = await client.post("/api/partners/pix-keys", json={**body, "franchise": "Centro"})
        second = await client.post("/api/partners/pix-keys", json={**body, "franchise": "Norte"})
        duplicate = await client.post("/api/partners/pix-keys", json={**body, "franchise": "Centro"})

        assert missing.status_code == 400
        assert first.status_code == 201
        assert second.status_code == 201
        assert duplicate.json()["error"] == "Pix key already exists for Zenith - Centro"

    @pytest.mark.asyncio
    async def test_invalid_pix_type(self, client, login):
        login("admin")

        response = await client.post(
            "/api/partners/pix-keys", json={"brand": "Acme", "pix_key": "k", "pix_type": "bitcoin"}
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_update_requires_pix_key(self, client, login):
        login("admin")
        created = await client.post(
            "/api/partners/pix-keys", json={"brand": "Acme", "pix_key": "k", "pix_type": "random"}
        )
        pix_id = created.json()["pixKey"]["id"]

        rejected = await client.put(f"/api/partners/pix-keys/{pix_id}", json={"holder_name": "Ana"})
        updated = await client.put(f"/api/partners/pix-keys/{pix_id}", json={"pix_key": "k2"})

        assert rejected.status_code == 400
        assert updated.json()["pixKey"]["pix_key"] == "k2"


class TestContracts:
    @pytest.mark.asyncio
    async def test_create_and_list(self, client, login):
        login("admin")

        created = await client.post(
            "/api/partners/contracts",
            json={"brand": "Acme", "contract_url": "https://drive.example.com/acme.pdf"},
        )
        listed = await client.get("/api/partners/contracts", params={"brand": "Acme"})

        assert created.status_code == 201
        assert len(listed.json()["contracts"]) == 1

    @pytest.mark.asyncio
    async def test_rejects_non_http_url(self, client, login):
        login("admin")

        response = await client.post(
            "/api/partners/contracts", json={"brand": "Acme", "contract_url": "javascript:alert(1)"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "contract_url must be a valid http(s) URL"

    @pytest.mark.asyncio
    async def test_manager_can_view_but_not_write(self, client, login):
        login("manager")

        listed = await client.get("/api/partners/contracts")
        created = await client.post(
            "/api/partners/contracts", json={"brand": "Acme", "contract_url": "https://x.com/c.pdf"}
        )

        assert listed.status_code == 200
        assert created.status_code == 403
