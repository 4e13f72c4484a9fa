"""
Nuvemshop bulk sync.
Pages through the store's orders, products and coupons and reconciles them into
nuvemshop_orders, nuvemshop_products and generated_coupons, catching up on
webhook deliveries that never arrived.
"""
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog

from hudlab.config import settings
from hudlab.models.database import NuvemshopSyncLog
from hudlab.services.nuvemshop_client import NuvemshopAPIError, NuvemshopClient
from hudlab.services.supabase_service import SupabaseService, get_supabase_service, utcnow_iso
from hudlab.services.webhook_processor import NuvemshopWebhookProcessor, build_order_row, build_product_row
from hudlab.workers.deal_sync_worker import SyncAlreadyRunningError

logger = structlog.get_logger()

NUVEMSHOP_SYNC_LOCK_NAME = "nuvemshop_sync"
SYNC_RESOURCES = ("orders", "products", "coupons")


class NuvemshopSyncJob:
    """One bulk sync run: lock, log row, paged fetch per resource, per-record upsert."""

    def __init__(
        self,
        supabase_service: Optional[SupabaseService] = None,
        nuvemshop_client: Optional[NuvemshopClient] = None,
    ):
        self.supabase_service = supabase_service or get_supabase_service()
        self.nuvemshop_client = nuvemshop_client or NuvemshopClient()
        self.processor = NuvemshopWebhookProcessor(self.supabase_service, self.nuvemshop_client)
        self.page_size = max(settings.nuvemshop_sync_page_size, 1)
        self.max_pages = max(settings.nuvemshop_sync_max_pages, 1)

    async def close(self):
        await self.nuvemshop_client.close()

    async def run(self, resources: Optional[Sequence[str]] = None, triggered_by: str = "manual") -> Dict[str, Any]:
        """
        Sync the requested resources in order.

        Args:
            resources: Any of orders, products, coupons (all three when empty)
            triggered_by: Recorded on the sync log row (manual, cron)

        Returns:
            Totals plus per-resource fetched/processed/errors/pages

        Raises:
            ValueError: Unknown resource name
            SyncAlreadyRunningError: Another Nuvemshop sync holds the lock
        """
        selected = list(resources or SYNC_RESOURCES)
        unknown = [r for r in selected if r not in SYNC_RESOURCES]
        if unknown:
            raise ValueError(f"Unknown resources: {', '.join(unknown)}")

        run_id = uuid.uuid4().hex
        stale_before = datetime.now(timezone.utc) - timedelta(minutes=settings.sync_lock_stale_minutes)
        if not self.supabase_service.acquire_sync_lock(NUVEMSHOP_SYNC_LOCK_NAME, run_id, stale_before):
            logger.warning("Nuvemshop sync already running, refusing to start")
            raise SyncAlreadyRunningError("A Nuvemshop sync is already running")

        summary = NuvemshopSyncLog(
            sync_type=selected[0] if len(selected) == 1 else "full",
            triggered_by=triggered_by,
        )
        details: Dict[str, Dict[str, int]] = {}
        log_id: Optional[str] = None
        start_time = time.time()
        log = logger.bind(run_id=run_id, sync_type=summary.sync_type)

        try:
            log_id = self.supabase_service.create_nuvemshop_sync_log(summary.sync_type, triggered_by)
            log.info("Nuvemshop sync started", sync_log_id=log_id, resources=selected)

            for resource in selected:
                stats = await self._sync_resource(resource)
                details[resource] = stats
                summary.total_records += stats["fetched"]
                summary.processed_records += stats["processed"]
                summary.error_records += stats["errors"]

            summary.status = "completed"
        except Exception as e:
            summary.status = "failed"
            summary.error_message = str(e) or type(e).__name__
            log.error("Nuvemshop sync failed", error=summary.error_message, sync_log_id=log_id)
            raise
        finally:
            summary.duration_seconds = int(round(time.time() - start_time))
            if log_id is not None:
                self.supabase_service.update_nuvemshop_sync_log(
                    log_id,
                    {
                        **summary.model_dump(
                            include={
                                "status",
                                "duration_seconds",
                                "total_records",
                                "processed_records",
                                "error_records",
                                "error_message",
                            }
                        ),
                        "completed_at": utcnow_iso(),
                    },
                )
            self.supabase_service.release_sync_lock(NUVEMSHOP_SYNC_LOCK_NAME, run_id)

        log.info(
            "Nuvemshop sync completed",
            total_records=summary.total_records,
            processed_records=summary.processed_records,
            error_records=summary.error_records,
        )
        return {
            "sync_log_id": log_id,
            "sync_type": summary.sync_type,
            "total_records": summary.total_records,
            "processed_records": summary.processed_records,
            "error_records": summary.error_records,
            "duration_seconds": summary.duration_seconds,
            "details": details,
        }

    async def _sync_resource(self, resource: str) -> Dict[str, int]:
        fetch_page, store = {
            "orders": (self.nuvemshop_client.list_orders, self._store_order),
            "products": (self.nuvemshop_client.list_products, self._store_product),
            "coupons": (self.nuvemshop_client.list_coupons, self._store_coupon),
        }[resource]
        stats = {"fetched": 0, "processed": 0, "errors": 0, "pages": 0}

        for page in range(1, self.max_pages + 1):
            items = await self._fetch_page(fetch_page, page)
            stats["pages"] += 1

            for item in items:
                stats["fetched"] += 1
                try:
                    store(item)
                    stats["processed"] += 1
                except Exception as e:
                    # One bad record must not stop the rest of the page
                    stats["errors"] += 1
                    logger.warning(
                        "Failed to store Nuvemshop record",
                        resource=resource,
                        record_id=item.get("id") if isinstance(item, dict) else None,
                        error=str(e),
                    )

            logger.debug("Fetched Nuvemshop page", resource=resource, page=page, items=len(items))
            if len(items) < self.page_size:
                break
        else:
            logger.warning("Nuvemshop sync stopped at page limit", resource=resource, max_pages=self.max_pages)

        return stats

    async def _fetch_page(
        self, fetch_page: Callable[..., Awaitable[List[Dict[str, Any]]]], page: int
    ) -> List[Dict[str, Any]]:
        try:
            return await fetch_page(page=page, per_page=self.page_size)
        except NuvemshopAPIError as e:
            # Nuvemshop answers 404 "Last page is N" past the end of a listing
            if e.status_code == 404 and (page > 1 or "last page" in (e.body or "").lower()):
                return []
            raise

    def _store_order(self, order: Dict[str, Any]) -> None:
        self.supabase_service.upsert_order(build_order_row(order).model_dump())

    def _store_product(self, product: Dict[str, Any]) -> None:
        row = build_product_row(product)
        self.processor.write_product("product/sync", row.product_id, row)

    def _store_coupon(self, coupon: Dict[str, Any]) -> None:
        self.processor.coupon_service.reconcile_remote_coupon(coupon)
