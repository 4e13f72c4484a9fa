"""Tests for partner and automatic coupon generation."""

import json
import re

import pytest

from hudlab.services.coupon_service import (
    CouponError,
    CouponService,
    brand_code_prefix,
    generate_coupon_code,
)
from hudlab.services.nuvemshop_client import NuvemshopClient


@pytest.fixture
def make_service(supabase_service, mock_transport):
    def _make(routes):
        transport = mock_transport(routes)
        return CouponService(supabase_service, NuvemshopClient(transport=transport)), transport

    return _make


@pytest.fixture
def published_products(fake_db):
    fake_db.seed(
        "nuvemshop_products",
        {"product_id": "10", "brand": "Acme", "published": True},
        {"product_id": "11", "brand": "Acme", "published": True},
        {"product_id": "12", "brand": "Acme", "published": False},
        {"product_id": "13", "brand": "Acme", "published": True, "sync_status": "deleted"},
    )


def _request(**overrides):
    body = {"percentage": 10, "validDays": 30, "maxUses": 100, "brand": "Acme"}
    body.update(overrides)
    return body


class TestCouponCodes:
    def test_prefix_strips_accents_and_symbols(self):
        assert brand_code_prefix("Café & Cia") == "CAFECIA"

    def test_prefix_truncated(self):
        assert brand_code_prefix("Supercalifragilistic") == "SUPERCALIF"

    def test_code_shape(self):
        assert re.fullmatch(r"ACME10[A-Z0-9]{4}", generate_coupon_code("Acme", 10))


class TestGeneratePartnerCoupon:
    @pytest.mark.asyncio
    async def test_creates_coupon_restricted_to_published_products(self, make_service, published_products, fake_db):
        service, transport = make_service({"POST /v1/123456/coupons": {"id": 901}})

        coupon = await service.generate_partner_coupon(_request(), created_by="user_admin")

        stored = fake_db.rows("generated_coupons")[0]
        sent = json.loads(transport.requests[0].content)
        assert coupon["code"] == stored["code"]
        assert coupon["nuvemshopId"] == 901
        assert stored["nuvemshop_status"] == "created"
        assert stored["nuvemshop_coupon_id"] == "901"
        assert sorted(sent["products"]) == [10, 11]
        assert sent["max_uses"] == 100

    @pytest.mark.asyncio
    @pytest.mark.parametrize("percentage", [0, 16, 12.5, "10", True])
    async def test_invalid_percentage_rejected_without_row(self, make_service, published_products, fake_db, percentage):
        service, transport = make_service({})

        with pytest.raises(CouponError) as exc_info:
            await service.generate_partner_coupon(_request(percentage=percentage), created_by="user_admin")

        assert exc_info.value.status_code == 400
        assert fake_db.rows("generated_coupons") == []
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_missing_fields(self, make_service):
        service, _ = make_service({})

        with pytest.raises(CouponError, match="Missing required fields"):
            await service.generate_partner_coupon({"percentage": 10}, created_by="user_admin")

    @pytest.mark.asyncio
    async def test_duplicate_active_coupon_conflicts(self, make_service, published_products, fake_db):
        fake_db.seed("generated_coupons", {"code": "ACME10AAAA", "brand": "Acme", "is_active": True})
        service, _ = make_service({})

        with pytest.raises(CouponError) as exc_info:
            await service.generate_partner_coupon(_request(), created_by="user_admin")

        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_auto_coupon_does_not_block_partner_coupon(self, make_service, published_products, fake_db):
        fake_db.seed("generated_coupons", {"code": "ACME15", "brand": "Acme", "is_auto_generated": True})
        service, _ = make_service({"POST /v1/123456/coupons": {"id": 902}})

        coupon = await service.generate_partner_coupon(_request(), created_by="user_admin")

        assert coupon["nuvemshopId"] == 902

    @pytest.mark.asyncio
    async def test_brand_without_products_rejected(self, make_service, fake_db):
        service, _ = make_service({})

        with pytest.raises(CouponError, match="No published products"):
            await service.generate_partner_coupon(_request(brand="Nobody"), created_by="user_admin")

        assert fake_db.rows("generated_coupons") == []

    @pytest.mark.asyncio
    async def test_retries_without_products_when_restricted_create_fails(self, make_service, published_products):
        calls = []

        def create(request):
            body = json.loads(request.content)
            calls.append(body)
            if "products" in body:
                return (422, {"products": ["invalid"]})
            return {"id": 903}

        service, _ = make_service({"POST /v1/123456/coupons": create})

        coupon = await service.generate_partner_coupon(_request(), created_by="user_admin")

        assert coupon["nuvemshopId"] == 903
        assert len(calls) == 2
        assert "products" not in calls[1]

    @pytest.mark.asyncio
    async def test_nuvemshop_failure_deactivates_row(self, make_service, published_products, fake_db):
        service, _ = make_service({"POST /v1/123456/coupons": (500, {"error": "down"})})

        with pytest.raises(CouponError) as exc_info:
            await service.generate_partner_coupon(_request(), created_by="user_admin")

        stored = fake_db.rows("generated_coupons")[0]
        assert exc_info.value.status_code == 500
        assert "payload" in exc_info.value.details
        assert stored["nuvemshop_status"] == "error"
        assert stored["is_active"] is False
        assert stored["nuvemshop_error"]

    @pytest.mark.asyncio
    async def test_franchise_dropped_for_regular_brand(self, make_service, published_products, fake_db):
        service, _ = make_service({"POST /v1/123456/coupons": {"id": 904}})

        coupon = await service.generate_partner_coupon(_request(franchise="Centro"), created_by="user_admin")

        assert coupon["franchise"] is None


class TestAutoCoupon:
    @pytest.mark.asyncio
    async def test_code_from_first_word(self, make_service, fake_db):
        service, _ = make_service({"POST /v1/123456/coupons": {"id": 905}})

        coupon = await service.create_auto_coupon("Bella Moda")

        assert coupon["code"] == "BELLA15"
        assert coupon["percentage"] == 15
        assert coupon["is_auto_generated"] is True

    @pytest.mark.asyncio
    async def test_upstream_error_keeps_row_with_error_status(self, make_service, fake_db):
        service, _ = make_service({"POST /v1/123456/coupons": (500, {"error": "down"})})

        coupon = await service.create_auto_coupon("Bella Moda")

        assert coupon["nuvemshop_status"] == "error"
        assert len(fake_db.rows("generated_coupons")) == 1

    @pytest.mark.asyncio
    async def test_taken_code_skipped(self, make_service, fake_db):
        fake_db.seed("generated_coupons", {"code": "BELLA15", "brand": "Bella Outra"})
        service, transport = make_service({})

        assert await service.create_auto_coupon("Bella Moda") is None
        assert transport.requests == []
