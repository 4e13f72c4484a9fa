"""
Pydantic models for Supabase database tables.
These models represent the structure of data stored in Supabase.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field


class DealStatus(str, Enum):
    """Closed set of deal outcomes. ActiveCampaign encodes them as 0/1/2."""

    OPEN = "open"
    WON = "won"
    LOST = "lost"

    @property
    def code(self) -> int:
        return _DEAL_STATUS_CODES[self]


_DEAL_STATUS_CODES = {DealStatus.OPEN: 0, DealStatus.WON: 1, DealStatus.LOST: 2}


class UserRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MANAGER = "manager"
    PARTNERS_MEDIA = "partners-media"
    USER = "user"


class DealCacheRow(BaseModel):
    """Model for deals_cache table (also mirrored into deals_live)."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    deal_id: str
    title: str = ""
    value: int = 0  # integer cents
    currency: str = "BRL"
    status: Optional[DealStatus] = None
    stage_id: Optional[str] = None
    closing_date: Optional[str] = None  # YYYY-MM-DD
    created_date: Optional[str] = None
    custom_field_value: Optional[str] = None  # raw closing date as typed in the CRM
    custom_field_id: str = "5"
    estado: Optional[str] = None
    quantidade_de_pares: Optional[str] = Field(None, alias="quantidade-de-pares")
    vendedor: Optional[str] = None
    designer: Optional[str] = None
    utm_source: Optional[str] = Field(None, alias="utm-source")
    utm_medium: Optional[str] = Field(None, alias="utm-medium")
    segmento_de_negocio: Optional[str] = None
    intencao_de_compra: Optional[str] = None
    contact_id: Optional[str] = None
    organization_id: Optional[str] = None
    api_updated_at: Optional[str] = None
    last_synced_at: Optional[str] = None
    sync_status: str = "synced"

    def to_row(self, exclude: Optional[Set[str]] = None) -> Dict[str, Any]:
        """Column-named dict ready for upsert."""
        return self.model_dump(by_alias=True, exclude=exclude)


class DealsSyncLog(BaseModel):
    """Model for deals_sync_log table."""

    id: Optional[int] = None
    sync_started_at: Optional[datetime] = None
    sync_completed_at: Optional[datetime] = None
    sync_status: str = "running"  # running, completed, failed
    deals_processed: int = 0
    deals_added: int = 0
    deals_updated: int = 0
    deals_deleted: int = 0
    sync_duration_seconds: Optional[int] = None
    error_message: Optional[str] = None


class NuvemshopSyncLog(BaseModel):
    """Model for nuvemshop_sync_log table."""

    id: Optional[str] = None
    sync_type: str  # full, orders, products, coupons
    status: str = "running"  # running, completed, failed
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    total_records: int = 0
    processed_records: int = 0
    error_records: int = 0
    error_message: Optional[str] = None
    triggered_by: Optional[str] = None  # manual, cron, cli


class SyncLock(BaseModel):
    """Model for sync_locks table."""

    name: str
    holder: Optional[str] = None
    locked_at: Optional[datetime] = None


class WebhookLog(BaseModel):
    """Model for nuvemshop_webhook_logs table."""

    id: Optional[str] = None
    event: str
    store_id: str
    resource_id: Optional[str] = None
    status: str = "received"  # received, processing, processed, ignored, failed
    headers: Optional[Dict[str, Any]] = None
    payload: Optional[Dict[str, Any]] = None
    hmac_signature: Optional[str] = None
    hmac_verified: bool = False
    retry_count: int = 0
    received_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    processing_duration_ms: Optional[int] = None
    result_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


class NuvemshopOrderRow(BaseModel):
    """Model for nuvemshop_orders table."""

    order_id: str
    order_number: Optional[str] = None
    completed_at: Optional[str] = None
    created_at_nuvemshop: Optional[str] = None
    contact_name: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    province: Optional[str] = None
    products: List[Any] = Field(default_factory=list)
    subtotal: float = 0
    shipping_cost_customer: float = 0
    coupon: Optional[str] = None  # code of the applied coupon
    promotional_discount: float = 0
    total_discount_amount: float = 0
    discount_coupon: float = 0
    discount_gateway: float = 0
    total: float = 0
    payment_details: Optional[Any] = None
    payment_method: Optional[str] = None
    payment_status: Optional[str] = None
    status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    api_updated_at: Optional[str] = None
    last_synced_at: Optional[str] = None
    sync_status: str = "synced"


class NuvemshopProductRow(BaseModel):
    """Model for nuvemshop_products table."""

    product_id: str
    name: Optional[Any] = None  # localized dict as sent by Nuvemshop
    name_pt: Optional[str] = None
    brand: Optional[str] = None
    description: Optional[str] = None
    handle: Optional[Any] = None
    canonical_url: Optional[str] = None
    variants: List[Any] = Field(default_factory=list)
    images: List[Any] = Field(default_factory=list)
    featured_image_id: Optional[str] = None
    featured_image_src: Optional[str] = None
    published: bool = False
    free_shipping: bool = False
    seo_title: Optional[Any] = None
    seo_description: Optional[Any] = None
    tags: Optional[Any] = None
    api_updated_at: Optional[str] = None
    last_synced_at: Optional[str] = None
    sync_status: str = "synced"  # synced, deleted


class GeneratedCoupon(BaseModel):
    """Model for generated_coupons table."""

    id: Optional[str] = None
    code: str
    percentage: Optional[int] = None
    brand: Optional[str] = None
    franchise: Optional[str] = None
    valid_until: Optional[str] = None
    max_uses: Optional[int] = None
    current_uses: int = 0
    created_by: Optional[str] = None
    created_by_brand: Optional[str] = None
    is_active: bool = True
    is_auto_generated: bool = False
    nuvemshop_status: str = "pending"  # pending, created, error
    nuvemshop_coupon_id: Optional[str] = None
    nuvemshop_error: Optional[str] = None
    created_at: Optional[datetime] = None


class CommissionPayment(BaseModel):
    """Model for commission_payments table."""

    id: Optional[str] = None
    brand: str
    franchise: Optional[str] = None
    amount: float
    payment_date: str
    payment_method: str = "pix"
    status: str = "sent"  # sent, confirmed, cancelled
    description: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None


class PartnerPixKey(BaseModel):
    """Model for partner_pix_keys table."""

    id: Optional[str] = None
    brand: str
    franchise: Optional[str] = None
    pix_key: str
    pix_type: str  # cpf, cnpj, email, phone, random
    holder_name: Optional[str] = None
    created_by: Optional[str] = None


class PartnershipContract(BaseModel):
    """Model for partnership_contracts table."""

    id: Optional[str] = None
    brand: str
    franchise: Optional[str] = None
    contract_url: str
    contract_name: Optional[str] = None
    created_by: Optional[str] = None


class UserProfile(BaseModel):
    """Model for user_profiles table."""

    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = UserRole.USER.value
    approved: bool = False
    assigned_brand: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Notification(BaseModel):
    """Model for notifications table."""

    id: Optional[str] = None
    title: str
    message: str
    type: str = "info"  # info, success, warning, error, sale
    data: Dict[str, Any] = Field(default_factory=dict)
    target_type: str  # role, user, brand_partners
    target_roles: Optional[List[str]] = None
    target_user_ids: Optional[List[str]] = None
    target_brand: Optional[str] = None
    status: str = "pending"  # pending, sent
    sent_at: Optional[datetime] = None
    created_by: Optional[str] = None


class UserNotification(BaseModel):
    """Model for user_notifications table."""

    id: Optional[str] = None
    notification_id: str
    user_id: str
    read: bool = False
    read_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
