"""
Deal sync job.
Pulls deals and deal custom field data from ActiveCampaign with bounded page
concurrency, normalizes them and upserts them into deals_cache keyed on deal_id.
"""
import asyncio
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from hudlab.config import settings
from hudlab.models.database import DealCacheRow
from hudlab.services.activecampaign_client import ActiveCampaignClient
from hudlab.services.alert_service import AlertService, get_alert_service
from hudlab.services.deal_transformer import (
    CONTACT_FIELD_COLUMNS,
    build_deal_row,
    map_custom_fields,
)
from hudlab.services.supabase_service import SupabaseService, get_supabase_service, utcnow_iso
from hudlab.utils.dates import trailing_day_range
from hudlab.utils.sync_state import SyncStateStore, sync_state

logger = structlog.get_logger()

SYNC_LOCK_NAME = "deals_sync"

# The bulk pull does not read contact fields; leave what the webhook stored.
_BULK_EXCLUDED_COLUMNS = set(CONTACT_FIELD_COLUMNS.values())


class SyncAlreadyRunningError(Exception):
    """Another deal sync holds the lock."""

    pass


class DealSyncTimeoutError(Exception):
    """The sync run exceeded deal_sync_timeout_seconds."""

    pass


class DealSyncJob:
    """One deal sync run: lock, fetch, transform, window-filter, upsert, log."""

    def __init__(
        self,
        supabase_service: Optional[SupabaseService] = None,
        ac_client: Optional[ActiveCampaignClient] = None,
        state: Optional[SyncStateStore] = None,
        alert_service: Optional[AlertService] = None,
    ):
        self.supabase_service = supabase_service or get_supabase_service()
        self.ac_client = ac_client or ActiveCampaignClient()
        self.state = state or sync_state
        self.alert_service = alert_service or get_alert_service()
        self.page_size = settings.deal_sync_page_size
        self.concurrency = max(settings.deal_sync_concurrency, 1)
        self.batch_size = max(settings.deal_sync_upsert_batch_size, 1)

    async def close(self):
        await self.ac_client.close()

    async def run(
        self,
        window_days: Optional[int] = None,
        all_deals: bool = False,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """
        Run one sync.

        Args:
            window_days: Trailing window on closing_date (defaults to deal_sync_window_days)
            all_deals: Skip the window filter and upsert every deal
            dry_run: Fetch and transform only; no log row, no upserts

        Returns:
            Run summary (counts, window, duration)

        Raises:
            SyncAlreadyRunningError: The lock is held by another run
            DealSyncTimeoutError: The run exceeded the configured timeout
        """
        run_id = uuid.uuid4().hex
        stale_before = datetime.now(timezone.utc) - timedelta(minutes=settings.sync_lock_stale_minutes)
        if not self.supabase_service.acquire_sync_lock(SYNC_LOCK_NAME, run_id, stale_before):
            logger.warning("Deal sync already running, refusing to start")
            raise SyncAlreadyRunningError("A deal sync is already running")

        start_time = time.time()
        log_id: Optional[int] = None
        log = logger.bind(run_id=run_id, all_deals=all_deals, dry_run=dry_run)
        self.state.publish(
            is_running=True,
            phase="starting",
            deals_fetched=0,
            deals_upserted=0,
            last_error=None,
        )

        try:
            if not dry_run:
                log_id = self.supabase_service.create_deals_sync_log()

            log.info("Deal sync started", sync_log_id=log_id)
            result = await asyncio.wait_for(
                self._sync(window_days, all_deals, dry_run),
                timeout=settings.deal_sync_timeout_seconds,
            )

            duration = time.time() - start_time
            result["sync_duration_seconds"] = round(duration, 2)
            result["sync_log_id"] = log_id

            if log_id is not None:
                self.supabase_service.update_deals_sync_log(
                    log_id,
                    {
                        "sync_status": "completed",
                        "sync_completed_at": utcnow_iso(),
                        "deals_processed": result["deals_processed"],
                        "deals_added": result["deals_upserted"],
                        "deals_updated": 0,
                        "deals_deleted": 0,
                        "sync_duration_seconds": int(round(duration)),
                    },
                )

            self.state.publish(is_running=False, phase="completed")
            log.info("Deal sync completed", **{k: v for k, v in result.items() if k != "window"})
            return result

        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                message = f"Deal sync timed out after {settings.deal_sync_timeout_seconds:.0f}s"
            else:
                message = str(e) or type(e).__name__

            log.error("Deal sync failed", error=message, sync_log_id=log_id)
            if log_id is not None:
                self.supabase_service.update_deals_sync_log(
                    log_id,
                    {
                        "sync_status": "failed",
                        "sync_completed_at": utcnow_iso(),
                        "sync_duration_seconds": int(round(time.time() - start_time)),
                        "error_message": message,
                    },
                )
            self.state.publish(is_running=False, phase="failed", last_error=message)
            await self.alert_service.send_sync_failure_alert(message, sync_log_id=log_id)

            if isinstance(e, asyncio.TimeoutError):
                raise DealSyncTimeoutError(message) from e
            raise

        finally:
            self.supabase_service.release_sync_lock(SYNC_LOCK_NAME, run_id)

    async def _sync(self, window_days: Optional[int], all_deals: bool, dry_run: bool) -> Dict[str, Any]:
        self.state.publish(phase="fetching_deals")
        deals = await self._fetch_all_pages(self.ac_client.list_deals, "deals")

        self.state.publish(phase="fetching_custom_fields")
        custom_field_data = await self._fetch_all_pages(
            self.ac_client.list_deal_custom_field_data, "custom field data"
        )

        self.state.publish(phase="transforming")
        fields_by_deal = map_custom_fields(custom_field_data)
        synced_at = utcnow_iso()

        rows_by_id: Dict[str, DealCacheRow] = {}
        for deal in deals:
            rows_by_id[deal.id] = build_deal_row(deal, fields_by_deal.get(deal.id, {}), synced_at=synced_at)
        duplicates_removed = len(deals) - len(rows_by_id)
        if duplicates_removed:
            logger.warning("Duplicate deals returned by ActiveCampaign", duplicates_removed=duplicates_removed)

        rows = list(rows_by_id.values())
        window = None
        if not all_deals:
            start, end = trailing_day_range(window_days or settings.deal_sync_window_days)
            window = {"start_date": start, "end_date": end}
            rows = [r for r in rows if r.closing_date and start <= r.closing_date <= end]

        upserted = 0
        if not dry_run:
            self.state.publish(phase="upserting")
            for i in range(0, len(rows), self.batch_size):
                batch = rows[i:i + self.batch_size]
                upserted += self.supabase_service.upsert_deals(
                    [row.to_row(exclude=_BULK_EXCLUDED_COLUMNS) for row in batch]
                )
                self.state.publish(deals_upserted=upserted)

        return {
            "deals_fetched": len(deals),
            "deals_processed": len(rows),
            "deals_upserted": upserted,
            "duplicates_removed": duplicates_removed,
            "custom_field_entries": len(custom_field_data),
            "window": window,
            "dry_run": dry_run,
        }

    async def _fetch_all_pages(
        self, fetch_page: Callable[..., Awaitable[List[Any]]], label: str
    ) -> List[Any]:
        """
        Fetch pages in rounds of `concurrency` concurrent requests until a short page.

        Request starts are paced by the client's RequestPacer. A failed page
        (after the client's own retries) cancels the rest of its round and aborts
        the whole pull.
        """
        items: List[Any] = []
        offset = 0

        while True:
            offsets = [offset + n * self.page_size for n in range(self.concurrency)]
            pages = await self._fetch_round(fetch_page, offsets)

            reached_end = False
            for page in pages:
                items.extend(page)
                if len(page) < self.page_size:
                    reached_end = True
                    break

            if label == "deals":
                self.state.publish(deals_fetched=len(items))
            logger.debug("Fetched page round", label=label, offset=offset, total=len(items))

            if reached_end:
                return items
            offset += self.concurrency * self.page_size

    async def _fetch_round(
        self, fetch_page: Callable[..., Awaitable[List[Any]]], offsets: List[int]
    ) -> List[List[Any]]:
        tasks = [asyncio.ensure_future(fetch_page(limit=self.page_size, offset=o)) for o in offsets]
        try:
            return await asyncio.gather(*tasks)
        except BaseException:
            # Sibling pages still in flight are abandoned with the round
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise


async def run_deal_sync(window_days: Optional[int] = None, all_deals: bool = False, dry_run: bool = False) -> Dict[str, Any]:
    """Run one sync with default collaborators and close the API client afterwards."""
    job = DealSyncJob()
    try:
        return await job.run(window_days=window_days, all_deals=all_deals, dry_run=dry_run)
    finally:
        await job.close()
