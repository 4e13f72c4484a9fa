"""
FastAPI routers for the Nuvemshop bulk sync: manual trigger, status and the
scheduled reconciliation run.
"""
from typing import Any, AsyncIterator, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from hudlab.routers.auth import AuthContext, require_admin, require_cron_secret
from hudlab.services.supabase_service import SupabaseService, get_supabase_service
from hudlab.utils.request_body import read_json_object
from hudlab.workers.deal_sync_worker import SyncAlreadyRunningError
from hudlab.workers.nuvemshop_sync_worker import SYNC_RESOURCES, NuvemshopSyncJob

logger = structlog.get_logger()

router = APIRouter(prefix="/api/nuvemshop-sync", tags=["nuvemshop-sync"])
cron_router = APIRouter(prefix="/api/cron", tags=["cron"])


async def get_nuvemshop_sync_job(
    supabase_service: SupabaseService = Depends(get_supabase_service),
) -> AsyncIterator[NuvemshopSyncJob]:
    job = NuvemshopSyncJob(supabase_service=supabase_service)
    try:
        yield job
    finally:
        await job.close()


async def _run_sync(job: NuvemshopSyncJob, **kwargs) -> Dict[str, Any]:
    try:
        return await job.run(**kwargs)
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except Exception as e:
        logger.error("Nuvemshop sync request failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Nuvemshop sync failed: {str(e)}",
        )


@router.post("")
async def trigger_nuvemshop_sync(
    request: Request,
    auth: AuthContext = Depends(require_admin),
    job: NuvemshopSyncJob = Depends(get_nuvemshop_sync_job),
):
    """
    Reconcile Nuvemshop data now (owner/admin).

    Body (optional): {"resources": ["orders", "products", "coupons"]}
    """
    body = await read_json_object(request, required=False)
    resources = body.get("resources") or list(SYNC_RESOURCES)
    if not isinstance(resources, list) or any(r not in SYNC_RESOURCES for r in resources):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"resources must be a list drawn from: {', '.join(SYNC_RESOURCES)}",
        )

    logger.info("Manual Nuvemshop sync requested", user_id=auth.user_id, resources=resources)
    result = await _run_sync(job, resources=resources, triggered_by="manual")
    return {"success": True, "result": result}


@router.get("/status")
async def nuvemshop_sync_status(
    auth: AuthContext = Depends(require_admin),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    return {"lastSync": supabase_service.get_latest_nuvemshop_sync_log()}


@cron_router.get("/sync-nuvemshop")
async def cron_sync_nuvemshop(
    _: None = Depends(require_cron_secret),
    job: NuvemshopSyncJob = Depends(get_nuvemshop_sync_job),
):
    """Scheduled reconciliation of all resources. Requires Authorization: Bearer <CRON_SECRET>."""
    logger.info("Cron Nuvemshop sync triggered")
    result = await _run_sync(job, triggered_by="cron")
    return {"message": "Nuvemshop sync completed successfully", "syncResult": result}
