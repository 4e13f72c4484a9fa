"""
FastAPI router for in-app notifications.
"""

from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from hudlab.models.database import Notification, UserRole
from hudlab.routers.auth import ALL_ROLES, AuthContext, require_admin, require_approved
from hudlab.services.supabase_service import SupabaseService, get_supabase_service, utcnow_iso
from hudlab.utils.request_body import read_json_object

logger = structlog.get_logger()

router = APIRouter(prefix="/api/notifications", tags=["notifications"])

NOTIFICATION_TYPES = ("info", "success", "warning", "error", "sale")
TARGET_TYPES = ("role", "user", "brand_partners")


@router.get("")
async def list_notifications(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    unread_only: bool = Query(False),
    auth: AuthContext = Depends(require_approved),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    """The caller's notifications, newest first, with the unread count."""
    try:
        rows, total = supabase_service.list_user_notifications(
            auth.user_id, limit=limit, offset=offset, unread_only=unread_only
        )
        unread_count = supabase_service.count_unread_notifications(auth.user_id)
    except Exception as e:
        logger.error("Failed to list notifications", user_id=auth.user_id, error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to list notifications: {str(e)}")

    return {
        "notifications": rows,
        "total": total,
        "unread_count": unread_count,
        "has_more": offset + len(rows) < total,
    }


def _validate_notification(body: Dict[str, Any]) -> Notification:
    if not body.get("title") or not body.get("message"):
        raise HTTPException(status_code=400, detail="title and message are required")

    notification_type = body.get("type") or "info"
    if notification_type not in NOTIFICATION_TYPES:
        raise HTTPException(status_code=400, detail=f"type must be one of: {', '.join(NOTIFICATION_TYPES)}")

    target_type = body.get("target_type")
    if target_type not in TARGET_TYPES:
        raise HTTPException(status_code=400, detail=f"target_type must be one of: {', '.join(TARGET_TYPES)}")

    target_roles = body.get("target_roles") or None
    target_user_ids = body.get("target_user_ids") or None
    target_brand = body.get("target_brand") or None

    if target_type == "role":
        if not isinstance(target_roles, list) or any(role not in ALL_ROLES for role in target_roles):
            raise HTTPException(status_code=400, detail="target_roles must be a list of valid roles")
    elif target_type == "user":
        if not isinstance(target_user_ids, list):
            raise HTTPException(status_code=400, detail="target_user_ids must be a non-empty list")
    elif not target_brand:
        raise HTTPException(status_code=400, detail="target_brand is required for brand_partners")

    data = body.get("data") or {}
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="data must be an object")

    return Notification(
        title=str(body["title"]),
        message=str(body["message"]),
        type=notification_type,
        data=data,
        target_type=target_type,
        target_roles=target_roles if target_type == "role" else None,
        target_user_ids=[str(u) for u in target_user_ids] if target_type == "user" else None,
        target_brand=target_brand if target_type == "brand_partners" else None,
    )


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_notification(
    request: Request,
    auth: AuthContext = Depends(require_admin),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    """
    Create a notification and fan it out to every approved target user.

    Targets:
        role: approved users with any of target_roles
        user: approved users among target_user_ids
        brand_partners: approved partners-media users assigned to target_brand
    """
    notification = _validate_notification(await read_json_object(request))

    if notification.target_type == "role":
        user_ids = supabase_service.list_approved_user_ids(roles=notification.target_roles)
    elif notification.target_type == "user":
        user_ids = supabase_service.list_approved_user_ids(user_ids=notification.target_user_ids)
    else:
        user_ids = supabase_service.list_approved_user_ids(
            roles=[UserRole.PARTNERS_MEDIA.value], brand=notification.target_brand
        )

    if not user_ids:
        raise HTTPException(status_code=400, detail="No approved users match the notification target")

    try:
        notification.created_by = auth.user_id
        row = supabase_service.create_notification(notification.model_dump(exclude={"id", "sent_at"}))
        delivered = supabase_service.create_user_notifications(
            [{"notification_id": row["id"], "user_id": user_id} for user_id in user_ids]
        )
        supabase_service.update_notification(row["id"], {"status": "sent", "sent_at": utcnow_iso()})
    except Exception as e:
        logger.error("Failed to create notification", error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to create notification: {str(e)}")

    logger.info(
        "Notification sent",
        notification_id=row["id"],
        target_type=notification.target_type,
        recipients=delivered,
    )
    return {"success": True, "notification_id": row["id"], "recipients": delivered}


@router.post("/mark-read")
async def mark_notifications_read(
    request: Request,
    auth: AuthContext = Depends(require_approved),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    """Mark one notification ({notificationId}) or all of them ({markAll: true}) as read."""
    body = await read_json_object(request)
    notification_id = body.get("notificationId")
    mark_all = body.get("markAll") is True

    if not notification_id and not mark_all:
        raise HTTPException(status_code=400, detail="notificationId or markAll is required")

    updated = supabase_service.mark_notifications_read(
        auth.user_id, notification_id=None if mark_all else str(notification_id)
    )
    return {"success": True, "updated": updated}
