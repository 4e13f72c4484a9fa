"""
Coupon service.
Generates partner discount coupons, mirrors them into Nuvemshop, creates the
automatic first-word coupon for new brands and keeps coupon usage in step with
orders and Nuvemshop coupon listings.
"""
import secrets
import string
import unicodedata
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog

from hudlab.config import settings
from hudlab.models.nuvemshop import NuvemshopCouponPayload
from hudlab.services.nuvemshop_client import NuvemshopAPIError, NuvemshopClient
from hudlab.services.supabase_service import SupabaseService, utcnow_iso

logger = structlog.get_logger()

AUTO_COUPON_PERCENTAGE = 15
AUTO_COUPON_VALID_DAYS = 365
_CODE_ALPHABET = string.ascii_uppercase + string.digits


class CouponError(Exception):
    """Coupon request rejected; status_code is the HTTP status to answer with."""

    def __init__(self, message: str, status_code: int = 400, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}


def is_franchise_brand(brand: Optional[str]) -> bool:
    return bool(brand) and brand.strip().lower() in {b.lower() for b in settings.franchise_brands}


def brand_code_prefix(brand: str) -> str:
    """ASCII letters of the brand, uppercased, at most 10 characters."""
    ascii_brand = unicodedata.normalize("NFKD", brand).encode("ascii", "ignore").decode("ascii")
    letters = "".join(ch for ch in ascii_brand.upper() if ch in string.ascii_uppercase)
    return letters[:10] or "CUPOM"


def generate_coupon_code(brand: str, percentage: int) -> str:
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(4))
    return f"{brand_code_prefix(brand)}{percentage}{suffix}"


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float) and value.is_integer() and value > 0:
        return int(value)
    if isinstance(value, str) and value.strip().isdigit() and int(value) > 0:
        return int(value)
    return None


class CouponService:
    """Coupon operations backed by Supabase and the Nuvemshop API."""

    def __init__(self, supabase_service: SupabaseService, nuvemshop_client: NuvemshopClient):
        self.supabase_service = supabase_service
        self.nuvemshop_client = nuvemshop_client

    async def _create_in_nuvemshop(
        self, payload: NuvemshopCouponPayload, allow_unrestricted_fallback: bool = True
    ) -> Dict[str, Any]:
        """Create the coupon restricted to products; retry once without restrictions."""
        try:
            return await self.nuvemshop_client.create_coupon(payload)
        except NuvemshopAPIError as e:
            if not payload.products or not allow_unrestricted_fallback:
                raise
            logger.warning(
                "Coupon with product restrictions rejected, retrying without products",
                code=payload.code,
                status_code=e.status_code,
            )
            return await self.nuvemshop_client.create_coupon(payload.model_copy(update={"products": None}))

    async def generate_partner_coupon(self, body: Dict[str, Any], created_by: str) -> Dict[str, Any]:
        """
        Validate a generate request, persist the coupon and create it in Nuvemshop.

        Args:
            body: {percentage, validDays, maxUses, brand, franchise?}
            created_by: Id of the owner/admin issuing the coupon

        Returns:
            Coupon summary for the response

        Raises:
            CouponError: 400 for invalid input, 409 for a duplicate active coupon,
                500 when Nuvemshop refuses the coupon
        """
        percentage = body.get("percentage")
        valid_days = body.get("validDays")
        max_uses = body.get("maxUses")
        brand = body.get("brand")
        franchise = body.get("franchise") or None

        if percentage in (None, "") or valid_days in (None, "") or max_uses in (None, "") or not brand:
            raise CouponError("Missing required fields")

        if isinstance(percentage, bool) or not isinstance(percentage, (int, float)):
            raise CouponError("Percentage must be a number")
        if percentage < 1 or percentage > settings.coupon_max_percentage:
            raise CouponError(f"Percentage must be between 1 and {settings.coupon_max_percentage}")
        if not float(percentage).is_integer():
            raise CouponError("Percentage must be a whole number")
        percentage = int(percentage)

        valid_days = _positive_int(valid_days)
        max_uses = _positive_int(max_uses)
        if valid_days is None or max_uses is None:
            raise CouponError("validDays and maxUses must be positive integers")

        brand = str(brand).strip()
        if not is_franchise_brand(brand):
            franchise = None

        if self.supabase_service.find_active_coupon(brand, franchise, auto_generated=False):
            target = f"{brand} / {franchise}" if franchise else brand
            raise CouponError(f"An active coupon already exists for {target}", status_code=409)

        product_ids = self._numeric_ids(self.supabase_service.get_published_product_ids(brand))
        if not product_ids:
            raise CouponError("No published products found for this brand")

        code = generate_coupon_code(brand, percentage)
        valid_until = datetime.now(timezone.utc) + timedelta(days=valid_days)

        coupon = self.supabase_service.insert_coupon(
            {
                "code": code,
                "percentage": percentage,
                "brand": brand,
                "franchise": franchise,
                "valid_until": valid_until.isoformat(),
                "max_uses": max_uses,
                "created_by": created_by,
                "created_by_brand": brand,
                "nuvemshop_status": "pending",
                "is_active": True,
                "is_auto_generated": False,
            }
        )

        payload = NuvemshopCouponPayload(
            code=code,
            value=str(percentage),
            max_uses=max_uses,
            start_date=datetime.now(timezone.utc).date().isoformat(),
            end_date=valid_until.date().isoformat(),
            combines_with_other_discounts=False,
            products=product_ids,
        )

        try:
            remote = await self._create_in_nuvemshop(payload)
        except Exception as e:
            logger.error("Failed to create coupon in Nuvemshop", code=code, brand=brand, error=str(e))
            self.supabase_service.update_coupon(
                coupon["id"],
                {"nuvemshop_status": "error", "nuvemshop_error": str(e), "is_active": False},
            )
            raise CouponError(
                f"Failed to create coupon in Nuvemshop: {str(e)}",
                status_code=500,
                details={"payload": payload.model_dump(exclude_none=True)},
            ) from e

        self.supabase_service.update_coupon(
            coupon["id"],
            {
                "nuvemshop_status": "created",
                "nuvemshop_coupon_id": str(remote.get("id")),
                "nuvemshop_error": None,
            },
        )

        logger.info("Partner coupon created", code=code, brand=brand, franchise=franchise)
        return {
            "id": coupon["id"],
            "code": code,
            "percentage": percentage,
            "validUntil": valid_until.isoformat(),
            "maxUses": max_uses,
            "brand": brand,
            "franchise": franchise,
            "nuvemshopId": remote.get("id"),
        }

    async def create_auto_coupon(self, brand: str) -> Optional[Dict[str, Any]]:
        """
        Create the automatic FIRSTWORD15 coupon for a brand that has none.

        Returns:
            The coupon row, or None when the brand already has one or the code is taken
        """
        if self.supabase_service.find_active_coupon(brand, auto_generated=True):
            logger.info("Brand already has an auto coupon", brand=brand)
            return None

        first_word = brand.strip().split()[0]
        code = f"{first_word.upper()}{AUTO_COUPON_PERCENTAGE}"
        if self.supabase_service.get_coupon_by_code(code):
            logger.warning("Auto coupon code already in use", brand=brand, code=code)
            return None

        now = datetime.now(timezone.utc)
        valid_until = now + timedelta(days=AUTO_COUPON_VALID_DAYS)
        coupon = self.supabase_service.insert_coupon(
            {
                "code": code,
                "percentage": AUTO_COUPON_PERCENTAGE,
                "brand": brand,
                "valid_until": valid_until.isoformat(),
                "max_uses": None,
                "created_by": None,
                "created_by_brand": brand,
                "nuvemshop_status": "pending",
                "is_active": True,
                "is_auto_generated": True,
            }
        )

        payload = NuvemshopCouponPayload(
            code=code,
            value=str(AUTO_COUPON_PERCENTAGE),
            start_date=now.date().isoformat(),
            end_date=valid_until.date().isoformat(),
            combines_with_other_discounts=False,
            products=self._numeric_ids(self.supabase_service.get_published_product_ids(brand)) or None,
        )

        try:
            remote = await self.nuvemshop_client.create_coupon(payload)
        except Exception as e:
            logger.error("Failed to create auto coupon in Nuvemshop", brand=brand, code=code, error=str(e))
            return self.supabase_service.update_coupon(
                coupon["id"], {"nuvemshop_status": "error", "nuvemshop_error": str(e)}
            )

        logger.info("Auto coupon created", brand=brand, code=code)
        return self.supabase_service.update_coupon(
            coupon["id"],
            {
                "nuvemshop_status": "created",
                "nuvemshop_coupon_id": str(remote.get("id")),
                "nuvemshop_error": None,
            },
        )

    async def sync_coupon_from_order(self, code: str) -> Optional[str]:
        """
        Record one use of the coupon applied to an order.

        Known codes get current_uses + 1; unknown codes are imported from Nuvemshop.

        Returns:
            'usage_incremented', 'imported' or None when the code is unknown upstream too
        """
        existing = self.supabase_service.get_coupon_by_code(code)
        if existing:
            uses = (existing.get("current_uses") or 0) + 1
            self.supabase_service.update_coupon(existing["id"], {"current_uses": uses, "updated_at": utcnow_iso()})
            logger.info("Coupon usage incremented", code=code, current_uses=uses)
            return "usage_incremented"

        remote_coupons = await self.nuvemshop_client.list_coupons(code=code)
        match = next((c for c in remote_coupons if c.get("code") == code), None)
        if not match:
            logger.warning("Coupon used in order not found in Nuvemshop", code=code)
            return None

        return self.reconcile_remote_coupon(match, current_uses=1)

    def reconcile_remote_coupon(self, remote: Dict[str, Any], current_uses: Optional[int] = None) -> str:
        """
        Mirror one Nuvemshop coupon into generated_coupons.

        Known codes get their upstream usage, limits and validity; brand and
        percentage stay as stored. Unknown codes are imported with the brand of
        their first product.

        Args:
            remote: Coupon as listed by Nuvemshop
            current_uses: Usage to record instead of the upstream 'used' counter

        Returns:
            'updated' or 'imported'
        """
        code = remote["code"]
        uses = current_uses if current_uses is not None else int(remote.get("used") or 0)
        mirrored = {
            "valid_until": remote.get("end_date"),
            "max_uses": remote.get("max_uses"),
            "current_uses": uses,
            "nuvemshop_coupon_id": str(remote.get("id")),
            "nuvemshop_status": "created",
            "is_active": bool(remote.get("valid", False)),
        }

        existing = self.supabase_service.get_coupon_by_code(code)
        if existing:
            self.supabase_service.update_coupon(existing["id"], {**mirrored, "updated_at": utcnow_iso()})
            return "updated"

        brand = None
        products: List[Any] = remote.get("products") or []
        if products:
            first = products[0]
            first_id = first.get("id") if isinstance(first, dict) else first
            product = self.supabase_service.get_product_row(str(first_id))
            brand = product.get("brand") if product else None

        self.supabase_service.insert_coupon(
            {
                "code": code,
                "percentage": int(float(remote["value"])) if remote.get("type") == "percentage" and remote.get("value") else None,
                "brand": brand,
                "is_auto_generated": False,
                "created_by": None,
                "created_by_brand": brand,
                **mirrored,
            }
        )
        logger.info("Coupon imported from Nuvemshop", code=code, brand=brand)
        return "imported"

    @staticmethod
    def _numeric_ids(product_ids: List[str]) -> List[int]:
        return [int(pid) for pid in product_ids if str(pid).isdigit()]
