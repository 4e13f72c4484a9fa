"""
Webhook routers.
ActiveCampaign deal updates, Nuvemshop order/product events, and the admin
retry endpoints for failed Nuvemshop deliveries.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import time
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import parse_qs

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from hudlab.config import settings
from hudlab.models.nuvemshop import NuvemshopWebhookPayload
from hudlab.routers.auth import AuthContext, require_admin
from hudlab.services.activecampaign_client import ActiveCampaignClient
from hudlab.services.alert_service import get_alert_service
from hudlab.services.deal_transformer import build_deal_row, map_contact_fields, map_custom_fields
from hudlab.services.nuvemshop_client import NuvemshopClient
from hudlab.services.supabase_service import (
    DEALS_LIVE_TABLE,
    SupabaseService,
    get_supabase_service,
    utcnow_iso,
)
from hudlab.services.webhook_processor import NuvemshopWebhookProcessor
from hudlab.utils.rate_limit import SlidingWindowRateLimiter
from hudlab.utils.request_body import read_json_object
from hudlab.utils.swr_cache import response_cache

logger = structlog.get_logger()

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

webhook_rate_limiter = SlidingWindowRateLimiter(
    max_requests=settings.webhook_rate_limit_per_minute,
    window_seconds=60,
)

# Business columns copied from a ghost sibling onto a zero-value deal.
GHOST_HEAL_COLUMNS = (
    "title",
    "value",
    "status",
    "stage_id",
    "closing_date",
    "custom_field_value",
    "custom_field_id",
    "estado",
    "quantidade-de-pares",
    "vendedor",
    "designer",
    "utm-source",
    "utm-medium",
    "segmento_de_negocio",
    "intencao_de_compra",
)


async def get_nuvemshop_client() -> AsyncIterator[NuvemshopClient]:
    client = NuvemshopClient()
    try:
        yield client
    finally:
        await client.close()


async def get_activecampaign_client() -> AsyncIterator[ActiveCampaignClient]:
    client = ActiveCampaignClient()
    try:
        yield client
    finally:
        await client.close()


def get_webhook_processor(
    supabase_service: SupabaseService = Depends(get_supabase_service),
    nuvemshop_client: NuvemshopClient = Depends(get_nuvemshop_client),
) -> NuvemshopWebhookProcessor:
    return NuvemshopWebhookProcessor(supabase_service, nuvemshop_client)


def verify_nuvemshop_webhook(data: bytes, hmac_header: str, secret: str) -> bool:
    """
    Verify a Nuvemshop webhook signature.

    Nuvemshop sends HMAC-SHA256 of the raw body as hex; base64 is accepted too.
    """
    if not hmac_header:
        return False

    digest = hmac.new(secret.encode("utf-8"), data, hashlib.sha256).digest()
    signature = hmac_header.strip()
    return hmac.compare_digest(digest.hex(), signature.lower()) or hmac.compare_digest(
        base64.b64encode(digest).decode("utf-8"), signature
    )


def _client_ip(request: Request) -> str:
    """Peer address, or the hop our own proxy appended to X-Forwarded-For when that proxy is trusted."""
    if settings.webhook_trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[-1].strip()
    return request.client.host if request.client else "unknown"


def _extract_deal_id(body_bytes: bytes, content_type: str) -> Optional[str]:
    """deal[id] from a form body, or deal.id / dealId from a JSON body."""
    text = body_bytes.decode("utf-8", errors="replace")

    if "json" not in content_type:
        form = parse_qs(text)
        values = form.get("deal[id]")
        if values and values[0]:
            return values[0]

    try:
        payload = json.loads(text)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None

    deal = payload.get("deal")
    deal_id = deal.get("id") if isinstance(deal, dict) else None
    deal_id = deal_id or payload.get("dealId")
    return str(deal_id) if deal_id else None


def _heal_ghost_deal(supabase_service: SupabaseService, deal_id: str, contact_id: str) -> bool:
    """Copy business fields from a valued sibling deal of the same contact."""
    ghost = supabase_service.find_ghost_sibling(contact_id, deal_id)
    if not ghost:
        return False

    patch = {column: ghost.get(column) for column in GHOST_HEAL_COLUMNS}
    patch["last_synced_at"] = utcnow_iso()
    supabase_service.update_deal(deal_id, patch)
    supabase_service.update_deal(deal_id, patch, table=DEALS_LIVE_TABLE)
    logger.info(
        "Ghost deal healed",
        deal_id=deal_id,
        ghost_deal_id=ghost.get("deal_id"),
        value=ghost.get("value"),
    )
    return True


@router.post("/active-campaign")
async def activecampaign_webhook(
    request: Request,
    token: Optional[str] = Query(None),
    supabase_service: SupabaseService = Depends(get_supabase_service),
    ac_client: ActiveCampaignClient = Depends(get_activecampaign_client),
):
    """
    Handle an ActiveCampaign deal webhook.

    Refreshes one deal (with custom and contact fields) into deals_cache and
    deals_live, then heals it from a ghost sibling when its value is zero.
    """
    start_time = time.time()

    secret = settings.activecampaign_webhook_secret
    if secret and not (token and hmac.compare_digest(token, secret)):
        logger.warning("ActiveCampaign webhook with invalid token")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid webhook token")

    body_bytes = await request.body()
    deal_id = _extract_deal_id(body_bytes, request.headers.get("content-type", ""))
    if not deal_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Deal ID not found in webhook payload")

    log = logger.bind(deal_id=deal_id)
    log.info("ActiveCampaign webhook received")

    try:
        deal = await ac_client.get_deal(deal_id)
        custom_fields = map_custom_fields(await ac_client.get_deal_custom_field_data(deal_id))
        contact_fields = None
        if deal.contact:
            contact_fields = map_contact_fields(await ac_client.get_contact_field_values(deal.contact))

        row = build_deal_row(deal, custom_fields.get(deal.id, {}), contact_fields)
        supabase_service.upsert_deals([row.to_row()])
    except HTTPException:
        raise
    except Exception as e:
        log.error("Failed to refresh deal from webhook", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to process deal webhook: {str(e)}",
        )

    try:
        supabase_service.upsert_deals([row.to_row()], table=DEALS_LIVE_TABLE)
    except Exception as e:
        log.error("Failed to upsert deal into deals_live", error=str(e))

    ghost_healed = False
    if row.value == 0 and row.contact_id:
        try:
            ghost_healed = _heal_ghost_deal(supabase_service, deal_id, row.contact_id)
        except Exception as e:
            log.error("Ghost deal healing failed", error=str(e))

    response_cache.invalidate(prefix="deals:")

    processing_time_ms = int((time.time() - start_time) * 1000)
    log.info("ActiveCampaign webhook processed", ghost_healed=ghost_healed, processing_time_ms=processing_time_ms)
    return {
        "success": True,
        "deal_id": deal_id,
        "ghost_healed": ghost_healed,
        "processing_time_ms": processing_time_ms,
    }


@router.post("/nuvemshop")
async def nuvemshop_webhook(
    request: Request,
    x_linkedstore_hmac_sha256: Optional[str] = Header(None, alias="x-linkedstore-hmac-sha256"),
    supabase_service: SupabaseService = Depends(get_supabase_service),
    processor: NuvemshopWebhookProcessor = Depends(get_webhook_processor),
):
    """
    Handle a Nuvemshop webhook.

    Verifies, logs and processes the event. Responds 500 on retryable failures
    so Nuvemshop redelivers, 422 on final ones.
    """
    start_time = time.time()
    body_bytes = await request.body()

    hmac_verified = False
    if settings.nuvemshop_webhook_secret:
        if not verify_nuvemshop_webhook(body_bytes, x_linkedstore_hmac_sha256 or "", settings.nuvemshop_webhook_secret):
            logger.warning("Invalid Nuvemshop webhook signature")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid webhook signature")
        hmac_verified = True

    try:
        raw_payload = json.loads(body_bytes.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    if not isinstance(raw_payload, dict) or not raw_payload.get("store_id") or not raw_payload.get("event"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing store_id or event")

    payload = NuvemshopWebhookPayload.model_validate(raw_payload)
    store_id = str(payload.store_id)
    if settings.nuvemshop_user_id and store_id != settings.nuvemshop_user_id:
        logger.warning("Nuvemshop webhook for unexpected store", store_id=store_id)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid store_id")

    ip_address = _client_ip(request)
    if not webhook_rate_limiter.is_allowed(f"{store_id}:{ip_address}"):
        logger.warning("Nuvemshop webhook rate limit exceeded", store_id=store_id, ip_address=ip_address)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Rate limit exceeded")

    resource_id = str(payload.id) if payload.id is not None else None
    log = logger.bind(event=payload.event, resource_id=resource_id)

    try:
        log_row = supabase_service.create_webhook_log(
            {
                "event": payload.event,
                "store_id": store_id,
                "resource_id": resource_id,
                "status": "received",
                "headers": dict(request.headers),
                "payload": raw_payload,
                "hmac_signature": x_linkedstore_hmac_sha256,
                "hmac_verified": hmac_verified,
                "user_agent": request.headers.get("user-agent"),
                "ip_address": ip_address,
            }
        )
    except Exception as e:
        log.error("Failed to log Nuvemshop webhook", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to log webhook")

    log_id = log_row["id"]
    supabase_service.update_webhook_log(log_id, {"status": "processing", "processing_started_at": utcnow_iso()})

    result = await processor.process_webhook(payload.event, raw_payload, log_id)
    total_time_ms = int((time.time() - start_time) * 1000)

    if result["success"]:
        return {
            "success": True,
            "message": "Webhook processed successfully",
            "event": payload.event,
            "resource_id": resource_id,
            "processing_time_ms": total_time_ms,
            "log_id": log_id,
        }

    return JSONResponse(
        status_code=500 if result["should_retry"] else 422,
        content={
            "success": False,
            "error": result["error_message"],
            "event": payload.event,
            "resource_id": resource_id,
            "should_retry": result["should_retry"],
            "processing_time_ms": total_time_ms,
            "log_id": log_id,
        },
    )


@router.get("/nuvemshop")
async def nuvemshop_webhook_health(supabase_service: SupabaseService = Depends(get_supabase_service)):
    """Health check with the 10 most recent webhook deliveries."""
    try:
        recent_logs, _ = supabase_service.list_webhook_logs(limit=10)
    except Exception as e:
        logger.error("Webhook health check failed", error=str(e))
        return JSONResponse(
            status_code=500,
            content={"status": "unhealthy", "timestamp": utcnow_iso(), "error": str(e)},
        )

    return {
        "status": "healthy",
        "timestamp": utcnow_iso(),
        "recent_webhooks": len(recent_logs),
        "recent_logs": [
            {"event": row.get("event"), "status": row.get("status"), "received_at": row.get("received_at")}
            for row in recent_logs
        ],
    }


async def _replay(
    log_row: Dict[str, Any],
    supabase_service: SupabaseService,
    processor: NuvemshopWebhookProcessor,
) -> Dict[str, Any]:
    """
    Claim a failed log row and replay its payload.

    Raises HTTPException 409 when another caller claimed the row first.
    """
    log_id = log_row["id"]
    seen_retry_count = log_row.get("retry_count") or 0

    claimed = supabase_service.claim_webhook_log_for_retry(log_id, seen_retry_count)
    if claimed is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Webhook is already being retried")

    retry_count = seen_retry_count + 1
    result = await processor.process_webhook(log_row["event"], log_row.get("payload") or {}, log_id)

    if not result["success"] and retry_count >= settings.webhook_max_retries:
        logger.error("Webhook retries exhausted", log_id=log_id, event=log_row["event"], retry_count=retry_count)
        await get_alert_service().send_webhook_exhausted_alert(
            log_id, log_row["event"], result.get("error_message"), retry_count
        )

    return {**result, "retry_count": retry_count}


@router.post("/retry")
async def retry_webhook(
    request: Request,
    auth: AuthContext = Depends(require_admin),
    supabase_service: SupabaseService = Depends(get_supabase_service),
    processor: NuvemshopWebhookProcessor = Depends(get_webhook_processor),
):
    """Replay one failed webhook (owner/admin)."""
    body = await read_json_object(request)
    log_id = body.get("log_id") or body.get("logId")
    if not log_id:
        raise HTTPException(status_code=400, detail="log_id is required")

    log_row = supabase_service.get_webhook_log(str(log_id))
    if not log_row:
        raise HTTPException(status_code=404, detail="Webhook log not found")

    if log_row.get("status") != "failed":
        raise HTTPException(
            status_code=400,
            detail={"message": "Only failed webhooks can be retried", "current_status": log_row.get("status")},
        )

    max_retries = settings.webhook_max_retries
    if (log_row.get("retry_count") or 0) + 1 > max_retries:
        raise HTTPException(
            status_code=400,
            detail={
                "message": f"Maximum retry attempts exceeded ({max_retries})",
                "retry_count": log_row.get("retry_count"),
            },
        )

    logger.info("Retrying webhook", log_id=log_id, user_id=auth.user_id, event=log_row.get("event"))
    result = await _replay(log_row, supabase_service, processor)

    if result["success"]:
        return {
            "success": True,
            "message": "Webhook retried successfully",
            "log_id": log_id,
            "retry_count": result["retry_count"],
            "processing_time_ms": result["processing_time_ms"],
        }

    return JSONResponse(
        status_code=500 if result["should_retry"] else 422,
        content={
            "success": False,
            "error": result["error_message"],
            "log_id": log_id,
            "retry_count": result["retry_count"],
            "should_retry": result["should_retry"],
        },
    )


@router.put("/retry")
async def batch_retry_webhooks(
    event: Optional[str] = Query(None),
    resource_id: Optional[str] = Query(None),
    limit: int = Query(10, ge=1, le=100),
    auth: AuthContext = Depends(require_admin),
    supabase_service: SupabaseService = Depends(get_supabase_service),
    processor: NuvemshopWebhookProcessor = Depends(get_webhook_processor),
):
    """Replay up to `limit` failed webhooks, newest first, one at a time (owner/admin)."""
    failed_logs = supabase_service.list_failed_webhook_logs(
        settings.webhook_max_retries, event=event, resource_id=resource_id, limit=limit
    )
    if not failed_logs:
        return {"success": True, "message": "No failed webhooks found to retry", "total_processed": 0}

    logger.info("Batch webhook retry started", count=len(failed_logs), user_id=auth.user_id)

    results = []
    success_count = 0
    for index, log_row in enumerate(failed_logs):
        if index > 0:
            await asyncio.sleep(settings.webhook_batch_retry_delay_seconds)

        try:
            result = await _replay(log_row, supabase_service, processor)
        except HTTPException as e:
            results.append({"log_id": log_row["id"], "success": False, "error": str(e.detail)})
            continue
        except Exception as e:
            logger.error("Batch retry item failed", log_id=log_row["id"], error=str(e))
            results.append({"log_id": log_row["id"], "success": False, "error": str(e)})
            continue

        if result["success"]:
            success_count += 1
        results.append(
            {
                "log_id": log_row["id"],
                "success": result["success"],
                "retry_count": result["retry_count"],
                "error": result.get("error_message"),
            }
        )

    logger.info("Batch webhook retry finished", success_count=success_count, total=len(results))
    return {
        "success": True,
        "message": f"Batch retry completed: {success_count} successful, {len(results) - success_count} failed",
        "total_processed": len(results),
        "success_count": success_count,
        "failure_count": len(results) - success_count,
        "results": results,
    }


@router.get("/logs")
async def list_webhook_logs(
    status_filter: Optional[str] = Query(None, alias="status"),
    event: Optional[str] = Query(None),
    resource_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(require_admin),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    """Filtered, paginated webhook log listing (owner/admin)."""
    try:
        rows, total = supabase_service.list_webhook_logs(
            status=status_filter, event=event, resource_id=resource_id, limit=limit, offset=offset
        )
    except Exception as e:
        logger.error("Failed to list webhook logs", error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to list webhook logs: {str(e)}")

    return {
        "logs": rows,
        "total": total,
        "limit": limit,
        "offset": offset,
        "has_more": offset + len(rows) < total,
    }
