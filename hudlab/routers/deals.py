"""
FastAPI routers for the deals cache: cached listing, sync status, manual and
cron-triggered syncs, and the admin lock reset.
"""
from datetime import date
from typing import Any, AsyncIterator, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from hudlab.routers.auth import AuthContext, require_admin, require_approved, require_cron_secret
from hudlab.services.deal_transformer import cents_to_display
from hudlab.services.supabase_service import SupabaseService, get_supabase_service
from hudlab.utils.dates import trailing_day_range
from hudlab.utils.request_body import read_json_object
from hudlab.utils.swr_cache import response_cache
from hudlab.utils.sync_state import sync_state
from hudlab.workers.deal_sync_worker import (
    SYNC_LOCK_NAME,
    DealSyncJob,
    DealSyncTimeoutError,
    SyncAlreadyRunningError,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/api/deals-cache", tags=["deals"])
cron_router = APIRouter(prefix="/api/cron", tags=["cron"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])

DEALS_CACHE_PREFIX = "deals:"
ALLOWED_PERIODS = (30, 60, 90)


async def get_deal_sync_job(
    supabase_service: SupabaseService = Depends(get_supabase_service),
) -> AsyncIterator[DealSyncJob]:
    job = DealSyncJob(supabase_service=supabase_service)
    try:
        yield job
    finally:
        await job.close()


async def _run_sync(job: DealSyncJob, **kwargs) -> Dict[str, Any]:
    try:
        result = await job.run(**kwargs)
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except DealSyncTimeoutError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    except Exception as e:
        logger.error("Deal sync request failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Sync failed: {str(e)}",
        )

    response_cache.invalidate(prefix=DEALS_CACHE_PREFIX)
    return result


def _validate_date(value: str, name: str) -> str:
    try:
        return date.fromisoformat(value).isoformat()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{name} must be a date in YYYY-MM-DD format",
        )


@router.get("")
async def list_cached_deals(
    period: int = Query(30),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    auth: AuthContext = Depends(require_approved),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    """
    Synced deals whose closing date falls in the requested range, newest first.

    Explicit startDate/endDate win over period. Values are integer cents;
    value_display carries the decimal amount.
    """
    if start_date or end_date:
        if not (start_date and end_date):
            raise HTTPException(status_code=400, detail="startDate and endDate must be given together")
        start = _validate_date(start_date, "startDate")
        end = _validate_date(end_date, "endDate")
        if start > end:
            raise HTTPException(status_code=400, detail="startDate must not be after endDate")
    else:
        if period not in ALLOWED_PERIODS:
            raise HTTPException(status_code=400, detail="period must be one of 30, 60, 90")
        start, end = trailing_day_range(period)

    async def fetch_deals():
        deals = supabase_service.get_deals_by_closing_date(start, end)
        return [{**deal, "value_display": cents_to_display(deal.get("value"))} for deal in deals]

    try:
        deals = await response_cache.get_or_fetch(
            f"{DEALS_CACHE_PREFIX}{start}:{end}", fetch_deals, policy="deals"
        )
    except Exception as e:
        logger.error("Failed to load cached deals", error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to load deals: {str(e)}")

    return {
        "data": deals,
        "count": len(deals),
        "period": period,
        "startDate": start,
        "endDate": end,
        "lastSync": supabase_service.get_latest_deals_sync_log(),
    }


@router.post("")
async def trigger_sync(
    request: Request,
    auth: AuthContext = Depends(require_admin),
    job: DealSyncJob = Depends(get_deal_sync_job),
):
    """Run a sync of the trailing window now (owner/admin)."""
    body = await read_json_object(request, required=False)
    window_days = body.get("window_days") or body.get("period")
    if window_days is not None and (not isinstance(window_days, int) or window_days < 1):
        raise HTTPException(status_code=400, detail="window_days must be a positive integer")

    logger.info("Manual deal sync requested", user_id=auth.user_id, window_days=window_days)
    result = await _run_sync(job, window_days=window_days, dry_run=bool(body.get("dry_run")))
    return {"success": True, "result": result}


@router.get("/status")
async def sync_status(
    auth: AuthContext = Depends(require_approved),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    """Latest sync log row plus live progress, for UI polling."""
    return {
        "lastSync": supabase_service.get_latest_deals_sync_log(),
        "live": sync_state.snapshot(),
    }


@cron_router.get("/sync-deals")
async def cron_sync_deals(
    _: None = Depends(require_cron_secret),
    job: DealSyncJob = Depends(get_deal_sync_job),
):
    """Scheduled full backfill. Requires Authorization: Bearer <CRON_SECRET>."""
    logger.info("Cron deal sync triggered")
    result = await _run_sync(job, all_deals=True)
    return {"message": "Cron sync completed successfully", "syncResult": result}


@cron_router.post("/sync-deals")
async def manual_cron_sync_deals(
    auth: AuthContext = Depends(require_admin),
    job: DealSyncJob = Depends(get_deal_sync_job),
):
    """Manual trigger of the cron backfill (owner/admin)."""
    logger.info("Manual cron trigger requested", user_id=auth.user_id)
    result = await _run_sync(job, all_deals=True)
    return {"message": "Manual cron trigger completed successfully", "syncResult": result}


@admin_router.post("/reset-sync-lock")
async def reset_sync_lock(
    auth: AuthContext = Depends(require_admin),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    """Force-release the deal sync lock and fail any log rows left running."""
    try:
        released = supabase_service.release_sync_lock(SYNC_LOCK_NAME)
        failed_logs = supabase_service.fail_running_deals_sync_logs("Sync lock reset manually")
    except Exception as e:
        logger.error("Failed to reset sync lock", error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to reset sync lock: {str(e)}")

    sync_state.reset()
    logger.warning("Deal sync lock reset", user_id=auth.user_id, failed_logs=failed_logs)
    return {"success": True, "lock_released": released, "logs_marked_failed": failed_logs}
