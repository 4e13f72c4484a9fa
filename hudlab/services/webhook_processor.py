"""
Nuvemshop webhook processor.
Turns order/* and product/* events into nuvemshop_orders / nuvemshop_products
writes and coupon/deleted into coupon deactivation. The outcome is recorded
on the webhook log row.
"""
import asyncio
import time
import zlib
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
import structlog

from hudlab.models.database import NuvemshopOrderRow, NuvemshopProductRow
from hudlab.services.coupon_service import CouponService
from hudlab.services.nuvemshop_client import NuvemshopAPIError, NuvemshopClient
from hudlab.services.supabase_service import SupabaseService, utcnow_iso

logger = structlog.get_logger()

ADVISORY_LOCK_RETRY_DELAY_SECONDS = 0.5


def should_retry_error(error: BaseException) -> bool:
    """
    Whether a failed webhook is worth replaying.

    4xx other than 408 are final. 5xx, timeouts and network failures are retryable.
    """
    status_code = getattr(error, "status_code", None)
    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code

    if isinstance(status_code, int):
        if 400 <= status_code < 500 and status_code != 408:
            return False
        if status_code >= 500 or status_code == 408:
            return True

    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True

    message = str(error).lower()
    network_markers = (
        "statement timeout",
        "timeout",
        "econnreset",
        "econnrefused",
        "enotfound",
        "etimedout",
        "connection reset",
        "network",
        "socket hang up",
    )
    return any(marker in message for marker in network_markers)


def _safe_iso(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def _to_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def extract_coupon_code(order: Dict[str, Any]) -> Optional[str]:
    """Code of the coupon actually applied to an order, if any."""
    coupon = order.get("coupon")
    if not coupon:
        return None

    if isinstance(coupon, str):
        trimmed = coupon.strip()
        return None if trimmed in ("", "null", "undefined") else trimmed

    if isinstance(coupon, list):
        discount_applied = _to_float(order.get("discount_coupon")) > 0
        for item in coupon:
            if isinstance(item, dict) and (_to_float(item.get("used")) > 0 or discount_applied):
                return item.get("code") or None
        return None

    if isinstance(coupon, dict):
        return coupon.get("code") or None

    return None


def build_order_row(order: Dict[str, Any]) -> NuvemshopOrderRow:
    shipping_address = order.get("shipping_address") or None
    payment_details = order.get("payment_details")
    payment_method = None
    if isinstance(payment_details, list) and payment_details:
        first = payment_details[0] or {}
        payment_method = (first.get("payment_method") or {}).get("name") or first.get("type")
    elif isinstance(payment_details, dict):
        payment_method = payment_details.get("method")

    return NuvemshopOrderRow(
        order_id=str(order["id"]),
        order_number=str(order.get("number") or order.get("name") or "") or None,
        completed_at=_safe_iso(order.get("completed_at")),
        created_at_nuvemshop=_safe_iso(order.get("created_at")),
        contact_name=order.get("contact_name"),
        shipping_address=shipping_address if isinstance(shipping_address, dict) else None,
        province=(shipping_address or {}).get("province") if isinstance(shipping_address, dict) else None,
        products=order.get("products") or [],
        subtotal=_to_float(order.get("subtotal")),
        shipping_cost_customer=_to_float(order.get("shipping_cost_customer")),
        coupon=extract_coupon_code(order),
        promotional_discount=_to_float(order.get("promotional_discount")),
        total_discount_amount=_to_float(order.get("total_discount_amount")),
        discount_coupon=_to_float(order.get("discount_coupon")),
        discount_gateway=_to_float(order.get("discount_gateway")),
        total=_to_float(order.get("total")),
        payment_details=payment_details,
        payment_method=payment_method,
        payment_status=order.get("payment_status"),
        status=order.get("status"),
        fulfillment_status=order.get("fulfillment_status") or order.get("shipping_status"),
        api_updated_at=_safe_iso(order.get("updated_at")),
        last_synced_at=utcnow_iso(),
    )


def _portuguese(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("pt") or value.get("por") or value.get("default")
    if isinstance(value, str):
        return value
    return None


def build_product_row(product: Dict[str, Any]) -> NuvemshopProductRow:
    images: List[Dict[str, Any]] = product.get("images") or []
    featured = next((img for img in images if img.get("featured")), images[0] if images else None)

    return NuvemshopProductRow(
        product_id=str(product["id"]),
        name=product.get("name"),
        name_pt=_portuguese(product.get("name")),
        brand=product.get("brand") or None,
        description=_portuguese(product.get("description")),
        handle=product.get("handle"),
        canonical_url=product.get("canonical_url"),
        variants=product.get("variants") or [],
        images=images,
        featured_image_id=str(featured["id"]) if featured and featured.get("id") is not None else None,
        featured_image_src=featured.get("src") if featured else None,
        published=bool(product.get("published")),
        free_shipping=bool(product.get("free_shipping")),
        seo_title=product.get("seo_title"),
        seo_description=product.get("seo_description"),
        tags=product.get("tags") or [],
        api_updated_at=_safe_iso(product.get("updated_at")),
        last_synced_at=utcnow_iso(),
    )


class NuvemshopWebhookProcessor:
    """Processes a single Nuvemshop webhook event and finalizes its log row."""

    def __init__(
        self,
        supabase_service: SupabaseService,
        nuvemshop_client: NuvemshopClient,
        coupon_service: Optional[CouponService] = None,
    ):
        self.supabase_service = supabase_service
        self.nuvemshop_client = nuvemshop_client
        self.coupon_service = coupon_service or CouponService(supabase_service, nuvemshop_client)

    async def process_webhook(self, event: str, payload: Dict[str, Any], log_id: str) -> Dict[str, Any]:
        """
        Process one webhook event.

        Args:
            event: Nuvemshop event name, e.g. 'order/paid'
            payload: Webhook body ({store_id, event, id})
            log_id: nuvemshop_webhook_logs row to finalize

        Returns:
            {success, processed_data | error_message, processing_time_ms, should_retry}
        """
        start_time = time.time()
        log = logger.bind(event=event, log_id=log_id, resource_id=payload.get("id"))

        try:
            if event.startswith("order/"):
                result = await self._process_order_event(event, payload)
            elif event.startswith("product/"):
                result = await self._process_product_event(event, payload)
            elif event == "coupon/deleted":
                result = self._process_coupon_deleted(event, payload)
            else:
                log.info("Webhook event not handled, ignoring")
                result = {"ignored": True, "reason": "Event not handled"}

            duration_ms = int((time.time() - start_time) * 1000)
            self.supabase_service.update_webhook_log(
                log_id,
                {
                    "status": "ignored" if result.get("ignored") else "processed",
                    "processing_completed_at": utcnow_iso(),
                    "processing_duration_ms": duration_ms,
                    "result_data": result,
                },
            )
            log.info("Webhook processed", duration_ms=duration_ms, action=result.get("action"))
            return {
                "success": True,
                "processed_data": result,
                "processing_time_ms": duration_ms,
                "should_retry": False,
            }
        except Exception as e:
            duration_ms = int((time.time() - start_time) * 1000)
            retry = should_retry_error(e)
            log.error("Webhook processing failed", error=str(e), should_retry=retry)
            self.supabase_service.update_webhook_log(
                log_id,
                {
                    "status": "failed",
                    "processing_completed_at": utcnow_iso(),
                    "processing_duration_ms": duration_ms,
                    "error_message": str(e),
                    "error_details": {
                        "error": str(e),
                        "exception_type": type(e).__name__,
                        "status_code": getattr(e, "status_code", None),
                        "timestamp": utcnow_iso(),
                    },
                },
            )
            return {
                "success": False,
                "error_message": str(e),
                "processing_time_ms": duration_ms,
                "should_retry": retry,
            }

    async def _process_order_event(self, event: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        order_id = str(payload["id"])
        order = await self.nuvemshop_client.get_order(order_id)
        row = build_order_row(order)

        self.supabase_service.upsert_order(row.model_dump())

        coupon_action = None
        if row.coupon:
            try:
                coupon_action = await self.coupon_service.sync_coupon_from_order(row.coupon)
            except Exception as e:
                logger.error("Failed to sync coupon from order", order_id=order_id, coupon=row.coupon, error=str(e))

        return {
            "order_id": order_id,
            "event": event,
            "action": "upserted",
            "coupon": row.coupon,
            "coupon_action": coupon_action,
            "processed_at": utcnow_iso(),
        }

    def _process_coupon_deleted(self, event: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        coupon_id = str(payload["id"])
        deactivated = self.supabase_service.deactivate_coupons_by_nuvemshop_id(coupon_id)
        if deactivated:
            logger.info(
                "Coupons deleted upstream, deactivated",
                nuvemshop_coupon_id=coupon_id,
                codes=[row.get("code") for row in deactivated],
            )

        return {
            "coupon_id": coupon_id,
            "event": event,
            "action": "deactivated" if deactivated else "no_active_coupons",
            "affected_coupons": len(deactivated),
            "processed_at": utcnow_iso(),
        }

    async def _process_product_event(self, event: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        product_id = str(payload["id"])

        if event == "product/deleted":
            self.supabase_service.delete_product(product_id)
            return {
                "product_id": product_id,
                "event": event,
                "action": "deleted",
                "processed_at": utcnow_iso(),
            }

        try:
            product = await self.nuvemshop_client.get_product(product_id)
        except NuvemshopAPIError as e:
            if e.status_code != 404:
                raise
            logger.info("Product not found upstream, marking deleted", product_id=product_id)
            self.supabase_service.update_product(
                product_id, {"sync_status": "deleted", "last_synced_at": utcnow_iso()}
            )
            return {
                "product_id": product_id,
                "event": event,
                "action": "marked_as_deleted",
                "processed_at": utcnow_iso(),
            }

        row = build_product_row(product)
        lock_key = int(product_id) % 2147483647 if product_id.isdigit() else zlib.crc32(product_id.encode()) % 2147483647

        locked = self.supabase_service.try_advisory_lock(lock_key)
        if not locked and event != "product/updated":
            await asyncio.sleep(ADVISORY_LOCK_RETRY_DELAY_SECONDS)
            locked = self.supabase_service.try_advisory_lock(lock_key)
        if not locked:
            # Proceeding unguarded keeps the event; the upsert is idempotent
            logger.info("Product busy, processing without advisory lock", product_id=product_id)

        try:
            result = self.write_product(event, product_id, row)
        finally:
            if locked:
                self.supabase_service.advisory_unlock(lock_key)

        if result["action"] == "upserted" and event == "product/created" and row.brand and row.published:
            try:
                coupon = await self.coupon_service.create_auto_coupon(row.brand)
                result["auto_coupon"] = coupon.get("code") if coupon else None
            except Exception as e:
                logger.error("Auto coupon creation failed", brand=row.brand, error=str(e))

        return result

    def write_product(self, event: str, product_id: str, row: NuvemshopProductRow) -> Dict[str, Any]:
        existing = self.supabase_service.get_product_row(product_id)
        result = {"product_id": product_id, "event": event, "processed_at": utcnow_iso()}

        if existing and existing.get("api_updated_at") == row.api_updated_at:
            self.supabase_service.update_product(
                product_id, {"last_synced_at": utcnow_iso(), "sync_status": "synced"}
            )
            result["action"] = "sync_timestamp_updated"
            return result

        if existing and existing.get("brand") != row.brand:
            logger.info(
                "Product brand changed, keeping stored brand",
                product_id=product_id,
                stored_brand=existing.get("brand"),
                new_brand=row.brand,
            )
            fields = row.model_dump()
            fields["brand"] = existing.get("brand")
            self.supabase_service.update_product(product_id, fields)
            result["action"] = "updated_brand_kept"
            return result

        self.supabase_service.upsert_product(row.model_dump())
        result["action"] = "upserted"
        return result
