"""
Supabase service layer for database operations.
Handles deals_cache/deals_live, deal sync logs and locks, Nuvemshop webhook logs,
orders, products, coupons, partner records, profiles and notifications.
"""

from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

import structlog
from supabase import Client, create_client

from hudlab.config import settings
from hudlab.models.database import UserProfile

logger = structlog.get_logger()

DEALS_CACHE_TABLE = "deals_cache"
DEALS_LIVE_TABLE = "deals_live"
WEBHOOK_LOGS_TABLE = "nuvemshop_webhook_logs"
NUVEMSHOP_SYNC_LOG_TABLE = "nuvemshop_sync_log"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseService:
    """Service for interacting with Supabase database."""

    def __init__(self, client: Optional[Client] = None):
        """
        Initialize Supabase service.

        Args:
            client: Pre-built client; when omitted one is created from settings on first use
        """
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = create_client(settings.supabase_url, settings.supabase_service_key)
        return self._client

    def _serialize(self, data: Any) -> Any:
        """Recursively convert datetime/UUID values to JSON-safe strings."""
        if isinstance(data, dict):
            return {k: self._serialize(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [self._serialize(item) for item in data]
        elif isinstance(data, datetime):
            return data.isoformat()
        elif isinstance(data, UUID):
            return str(data)
        else:
            return data

    # Deals

    def upsert_deals(self, rows: List[Dict[str, Any]], table: str = DEALS_CACHE_TABLE) -> int:
        """
        Upsert deal rows keyed on deal_id.

        Args:
            rows: Column-named deal rows
            table: deals_cache or deals_live

        Returns:
            Number of rows written
        """
        if not rows:
            return 0
        try:
            result = (
                self.client.table(table)
                .upsert(self._serialize(rows), on_conflict="deal_id")
                .execute()
            )
            return len(result.data) if result.data else len(rows)
        except Exception as e:
            logger.error("Failed to upsert deals", table=table, count=len(rows), error=str(e))
            raise

    def get_deals_by_closing_date(self, start_date: str, end_date: str) -> List[Dict[str, Any]]:
        """Deals with closing_date in [start_date, end_date], newest first."""
        result = (
            self.client.table(DEALS_CACHE_TABLE)
            .select("*")
            .gte("closing_date", start_date)
            .lte("closing_date", end_date)
            .order("closing_date", desc=True)
            .execute()
        )
        return result.data or []

    def count_deals(self) -> int:
        result = self.client.table(DEALS_CACHE_TABLE).select("deal_id", count="exact").execute()
        return result.count or 0

    def find_ghost_sibling(self, contact_id: str, deal_id: str) -> Optional[Dict[str, Any]]:
        """Highest-value deal of the same contact, other than deal_id, with value > 0."""
        result = (
            self.client.table(DEALS_CACHE_TABLE)
            .select("*")
            .eq("contact_id", contact_id)
            .neq("deal_id", deal_id)
            .gt("value", 0)
            .order("value", desc=True)
            .limit(1)
            .execute()
        )
        if result.data and len(result.data) > 0:
            return result.data[0]
        return None

    def update_deal(self, deal_id: str, patch: Dict[str, Any], table: str = DEALS_CACHE_TABLE) -> None:
        self.client.table(table).update(self._serialize(patch)).eq("deal_id", deal_id).execute()

    # Deal sync log

    def create_deals_sync_log(self) -> Optional[int]:
        """Insert a running deals_sync_log row and return its id."""
        try:
            result = (
                self.client.table("deals_sync_log")
                .insert({"sync_started_at": utcnow_iso(), "sync_status": "running"})
                .execute()
            )
            if result.data:
                return result.data[0]["id"]
            raise Exception("No data returned from insert")
        except Exception as e:
            logger.error("Failed to create deals sync log", error=str(e))
            raise

    def update_deals_sync_log(self, log_id: int, fields: Dict[str, Any]) -> None:
        try:
            self.client.table("deals_sync_log").update(self._serialize(fields)).eq("id", log_id).execute()
        except Exception as e:
            # A lost log update must not mask the sync outcome
            logger.error("Failed to update deals sync log", log_id=log_id, error=str(e))

    def get_latest_deals_sync_log(self) -> Optional[Dict[str, Any]]:
        try:
            result = (
                self.client.table("deals_sync_log")
                .select("*")
                .order("sync_started_at", desc=True)
                .limit(1)
                .execute()
            )
            if result.data and len(result.data) > 0:
                return result.data[0]
            return None
        except Exception as e:
            logger.error("Failed to get latest deals sync log", error=str(e))
            return None

    def fail_running_deals_sync_logs(self, error_message: str) -> int:
        result = (
            self.client.table("deals_sync_log")
            .update(
                {
                    "sync_status": "failed",
                    "sync_completed_at": utcnow_iso(),
                    "error_message": error_message,
                }
            )
            .eq("sync_status", "running")
            .execute()
        )
        return len(result.data or [])

    # Nuvemshop sync log

    def create_nuvemshop_sync_log(self, sync_type: str, triggered_by: str) -> str:
        """Insert a running nuvemshop_sync_log row and return its id."""
        try:
            result = (
                self.client.table(NUVEMSHOP_SYNC_LOG_TABLE)
                .insert(
                    {
                        "sync_type": sync_type,
                        "status": "running",
                        "started_at": utcnow_iso(),
                        "triggered_by": triggered_by,
                    }
                )
                .execute()
            )
            if result.data:
                return result.data[0]["id"]
            raise Exception("No data returned from insert")
        except Exception as e:
            logger.error("Failed to create nuvemshop sync log", error=str(e))
            raise

    def update_nuvemshop_sync_log(self, log_id: str, fields: Dict[str, Any]) -> None:
        try:
            self.client.table(NUVEMSHOP_SYNC_LOG_TABLE).update(self._serialize(fields)).eq("id", log_id).execute()
        except Exception as e:
            logger.error("Failed to update nuvemshop sync log", log_id=log_id, error=str(e))

    def get_latest_nuvemshop_sync_log(self) -> Optional[Dict[str, Any]]:
        result = (
            self.client.table(NUVEMSHOP_SYNC_LOG_TABLE)
            .select("*")
            .order("started_at", desc=True)
            .limit(1)
            .execute()
        )
        if result.data and len(result.data) > 0:
            return result.data[0]
        return None

    # Sync locks

    def acquire_sync_lock(self, name: str, holder: str, stale_before: datetime) -> bool:
        """
        Take the named lock with conditional updates only.

        Free lock: holder is null. Stale lock: locked_at older than stale_before.
        A missing lock row is inserted; a unique violation means someone else won.
        """
        claim = {"holder": holder, "locked_at": utcnow_iso()}

        result = (
            self.client.table("sync_locks")
            .update(claim)
            .eq("name", name)
            .is_("holder", "null")
            .execute()
        )
        if result.data:
            return True

        result = (
            self.client.table("sync_locks")
            .update(claim)
            .eq("name", name)
            .lt("locked_at", stale_before.astimezone(timezone.utc).isoformat())
            .execute()
        )
        if result.data:
            logger.warning("Took over stale sync lock", name=name, holder=holder)
            return True

        existing = self.client.table("sync_locks").select("name").eq("name", name).limit(1).execute()
        if existing.data:
            return False

        try:
            self.client.table("sync_locks").insert({"name": name, **claim}).execute()
            return True
        except Exception as e:
            logger.info("Sync lock insert lost the race", name=name, error=str(e))
            return False

    def release_sync_lock(self, name: str, holder: Optional[str] = None) -> bool:
        """Release the lock; with holder set only that holder's claim is released."""
        query = (
            self.client.table("sync_locks")
            .update({"holder": None, "locked_at": None})
            .eq("name", name)
        )
        if holder is not None:
            query = query.eq("holder", holder)
        result = query.execute()
        return bool(result.data)

    # Nuvemshop webhook logs

    def create_webhook_log(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = self.client.table(WEBHOOK_LOGS_TABLE).insert(self._serialize(data)).execute()
            if result.data:
                return result.data[0]
            raise Exception("No data returned from insert")
        except Exception as e:
            logger.error("Failed to create webhook log", event=data.get("event"), error=str(e))
            raise

    def update_webhook_log(self, log_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            result = (
                self.client.table(WEBHOOK_LOGS_TABLE)
                .update(self._serialize(fields))
                .eq("id", log_id)
                .execute()
            )
            if result.data:
                return result.data[0]
            return None
        except Exception as e:
            logger.error("Failed to update webhook log", log_id=log_id, error=str(e))
            return None

    def get_webhook_log(self, log_id: str) -> Optional[Dict[str, Any]]:
        result = (
            self.client.table(WEBHOOK_LOGS_TABLE)
            .select("*")
            .eq("id", log_id)
            .limit(1)
            .execute()
        )
        if result.data and len(result.data) > 0:
            return result.data[0]
        return None

    def claim_webhook_log_for_retry(self, log_id: str, seen_retry_count: int) -> Optional[Dict[str, Any]]:
        """
        Atomically move a failed log to processing and bump retry_count.

        Returns the updated row, or None when another caller changed the row first.
        """
        result = (
            self.client.table(WEBHOOK_LOGS_TABLE)
            .update(
                {
                    "status": "processing",
                    "retry_count": seen_retry_count + 1,
                    "last_retry_at": utcnow_iso(),
                    "processing_started_at": utcnow_iso(),
                    "error_message": None,
                    "error_details": None,
                }
            )
            .eq("id", log_id)
            .eq("status", "failed")
            .eq("retry_count", seen_retry_count)
            .execute()
        )
        if result.data and len(result.data) > 0:
            return result.data[0]
        return None

    def list_failed_webhook_logs(
        self,
        max_retries: int,
        event: Optional[str] = None,
        resource_id: Optional[str] = None,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        query = (
            self.client.table(WEBHOOK_LOGS_TABLE)
            .select("*")
            .eq("status", "failed")
            .lt("retry_count", max_retries)
        )
        if event:
            query = query.eq("event", event)
        if resource_id:
            query = query.eq("resource_id", resource_id)
        result = query.order("received_at", desc=True).limit(limit).execute()
        return result.data or []

    def list_webhook_logs(
        self,
        status: Optional[str] = None,
        event: Optional[str] = None,
        resource_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        query = self.client.table(WEBHOOK_LOGS_TABLE).select("*", count="exact")
        if status:
            query = query.eq("status", status)
        if event:
            query = query.eq("event", event)
        if resource_id:
            query = query.eq("resource_id", resource_id)
        result = (
            query.order("received_at", desc=True)
            .range(offset, offset + limit - 1)
            .execute()
        )
        return result.data or [], result.count or 0

    # Nuvemshop orders and products

    def upsert_order(self, row: Dict[str, Any]) -> None:
        self.client.table("nuvemshop_orders").upsert(
            self._serialize(row), on_conflict="order_id"
        ).execute()

    def get_product_row(self, product_id: str) -> Optional[Dict[str, Any]]:
        result = (
            self.client.table("nuvemshop_products")
            .select("*")
            .eq("product_id", product_id)
            .limit(1)
            .execute()
        )
        if result.data and len(result.data) > 0:
            return result.data[0]
        return None

    def upsert_product(self, row: Dict[str, Any]) -> None:
        self.client.table("nuvemshop_products").upsert(
            self._serialize(row), on_conflict="product_id"
        ).execute()

    def update_product(self, product_id: str, fields: Dict[str, Any]) -> None:
        self.client.table("nuvemshop_products").update(
            self._serialize(fields)
        ).eq("product_id", product_id).execute()

    def delete_product(self, product_id: str) -> int:
        result = self.client.table("nuvemshop_products").delete().eq("product_id", product_id).execute()
        return len(result.data or [])

    def get_published_product_ids(self, brand: str) -> List[str]:
        result = (
            self.client.table("nuvemshop_products")
            .select("product_id")
            .eq("brand", brand)
            .eq("published", True)
            .neq("sync_status", "deleted")
            .execute()
        )
        return [str(row["product_id"]) for row in result.data or []]

    def try_advisory_lock(self, key: int) -> bool:
        try:
            result = self.client.rpc("pg_try_advisory_lock", {"key": key}).execute()
            return bool(result.data)
        except Exception as e:
            # Without the RPC the processor runs unguarded
            logger.warning("Advisory lock unavailable", key=key, error=str(e))
            return True

    def advisory_unlock(self, key: int) -> None:
        try:
            self.client.rpc("pg_advisory_unlock", {"key": key}).execute()
        except Exception as e:
            logger.warning("Advisory unlock failed", key=key, error=str(e))

    # Coupons

    def get_coupon_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        result = (
            self.client.table("generated_coupons")
            .select("*")
            .eq("code", code)
            .limit(1)
            .execute()
        )
        if result.data and len(result.data) > 0:
            return result.data[0]
        return None

    def find_active_coupon(
        self,
        brand: str,
        franchise: Optional[str] = None,
        auto_generated: Optional[bool] = None,
    ) -> Optional[Dict[str, Any]]:
        query = (
            self.client.table("generated_coupons")
            .select("*")
            .eq("brand", brand)
            .eq("is_active", True)
        )
        if franchise is not None:
            query = query.eq("franchise", franchise)
        if auto_generated is not None:
            query = query.eq("is_auto_generated", auto_generated)
        result = query.limit(1).execute()
        if result.data and len(result.data) > 0:
            return result.data[0]
        return None

    def insert_coupon(self, data: Dict[str, Any]) -> Dict[str, Any]:
        result = self.client.table("generated_coupons").insert(self._serialize(data)).execute()
        if result.data:
            return result.data[0]
        raise Exception("No data returned from insert")

    def update_coupon(self, coupon_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        result = (
            self.client.table("generated_coupons")
            .update(self._serialize(fields))
            .eq("id", coupon_id)
            .execute()
        )
        if result.data:
            return result.data[0]
        return None

    def deactivate_coupons_by_nuvemshop_id(self, nuvemshop_coupon_id: str) -> List[Dict[str, Any]]:
        """Mark every not-yet-deleted coupon with this Nuvemshop id as deleted and inactive."""
        result = (
            self.client.table("generated_coupons")
            .update({"nuvemshop_status": "deleted", "is_active": False, "updated_at": utcnow_iso()})
            .eq("nuvemshop_coupon_id", nuvemshop_coupon_id)
            .neq("nuvemshop_status", "deleted")
            .execute()
        )
        return result.data or []

    def list_coupons(self, brand: Optional[str] = None) -> List[Dict[str, Any]]:
        query = self.client.table("generated_coupons").select("*")
        if brand:
            query = query.eq("brand", brand)
        result = query.order("created_at", desc=True).execute()
        return result.data or []

    # Brand-scoped partner records (commission_payments, partner_pix_keys, partnership_contracts)

    def list_brand_rows(
        self,
        table: str,
        brand: Optional[str] = None,
        franchise: Optional[str] = None,
        order_by: str = "created_at",
    ) -> List[Dict[str, Any]]:
        query = self.client.table(table).select("*")
        if brand:
            query = query.eq("brand", brand)
        if franchise:
            query = query.eq("franchise", franchise)
        result = query.order(order_by, desc=True).execute()
        return result.data or []

    def get_row(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        result = self.client.table(table).select("*").eq("id", row_id).limit(1).execute()
        if result.data and len(result.data) > 0:
            return result.data[0]
        return None

    def find_brand_row(
        self, table: str, brand: str, franchise: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        query = self.client.table(table).select("*").eq("brand", brand)
        if franchise is not None:
            query = query.eq("franchise", franchise)
        result = query.limit(1).execute()
        if result.data and len(result.data) > 0:
            return result.data[0]
        return None

    def insert_row(self, table: str, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = self.client.table(table).insert(self._serialize(data)).execute()
            if result.data:
                return result.data[0]
            raise Exception("No data returned from insert")
        except Exception as e:
            logger.error("Failed to insert row", table=table, error=str(e))
            raise

    def update_row(self, table: str, row_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        result = self.client.table(table).update(self._serialize(fields)).eq("id", row_id).execute()
        if result.data:
            return result.data[0]
        return None

    def delete_row(self, table: str, row_id: str) -> bool:
        result = self.client.table(table).delete().eq("id", row_id).execute()
        return bool(result.data)

    # User profiles

    def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        try:
            result = (
                self.client.table("user_profiles")
                .select("*")
                .eq("id", user_id)
                .limit(1)
                .execute()
            )
            if result.data and len(result.data) > 0:
                return UserProfile(**result.data[0])
            return None
        except Exception as e:
            logger.error("Failed to get user profile", user_id=user_id, error=str(e))
            return None

    def list_approved_user_ids(
        self,
        roles: Optional[List[str]] = None,
        user_ids: Optional[List[str]] = None,
        brand: Optional[str] = None,
    ) -> List[str]:
        query = self.client.table("user_profiles").select("id").eq("approved", True)
        if roles:
            query = query.in_("role", roles)
        if user_ids:
            query = query.in_("id", user_ids)
        if brand:
            query = query.eq("assigned_brand", brand)
        result = query.execute()
        return [row["id"] for row in result.data or []]

    # Notifications

    def create_notification(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.insert_row("notifications", data)

    def update_notification(self, notification_id: str, fields: Dict[str, Any]) -> None:
        self.client.table("notifications").update(self._serialize(fields)).eq("id", notification_id).execute()

    def create_user_notifications(self, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        result = self.client.table("user_notifications").insert(self._serialize(rows)).execute()
        return len(result.data or [])

    def list_user_notifications(
        self, user_id: str, limit: int = 20, offset: int = 0, unread_only: bool = False
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Caller's user_notifications with their notification embedded, plus total count."""
        query = (
            self.client.table("user_notifications")
            .select("*", count="exact")
            .eq("user_id", user_id)
        )
        if unread_only:
            query = query.eq("read", False)
        result = query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
        rows = result.data or []

        notification_ids = list({row["notification_id"] for row in rows})
        notifications: Dict[str, Dict[str, Any]] = {}
        if notification_ids:
            found = (
                self.client.table("notifications")
                .select("*")
                .in_("id", notification_ids)
                .execute()
            )
            notifications = {n["id"]: n for n in found.data or []}

        for row in rows:
            row["notification"] = notifications.get(row["notification_id"])
        return rows, result.count or 0

    def count_unread_notifications(self, user_id: str) -> int:
        result = (
            self.client.table("user_notifications")
            .select("id", count="exact")
            .eq("user_id", user_id)
            .eq("read", False)
            .execute()
        )
        return result.count or 0

    def mark_notifications_read(self, user_id: str, notification_id: Optional[str] = None) -> int:
        query = (
            self.client.table("user_notifications")
            .update({"read": True, "read_at": utcnow_iso()})
            .eq("user_id", user_id)
            .eq("read", False)
        )
        if notification_id:
            query = query.eq("notification_id", notification_id)
        result = query.execute()
        return len(result.data or [])


@lru_cache
def get_supabase_service() -> SupabaseService:
    """Shared service instance, exposed as a FastAPI dependency."""
    return SupabaseService()
