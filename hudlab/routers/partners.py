"""
FastAPI router for partner management: coupons, commission payments,
PIX keys and partnership contracts. Every record is scoped to a brand;
partners-media users only ever see their assigned brand.
"""

import re
from datetime import date
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from hudlab.models.database import UserRole
from hudlab.routers.auth import ADMIN_ROLES, AuthContext, require_admin, require_roles
from hudlab.routers.webhooks import get_nuvemshop_client
from hudlab.services.coupon_service import CouponError, CouponService, is_franchise_brand
from hudlab.services.nuvemshop_client import NuvemshopClient
from hudlab.services.supabase_service import SupabaseService, get_supabase_service
from hudlab.utils.request_body import read_json_object

logger = structlog.get_logger()

router = APIRouter(prefix="/api/partners", tags=["partners"])

PARTNERS_MEDIA = UserRole.PARTNERS_MEDIA.value
PARTNER_VIEW_ROLES = (*ADMIN_ROLES, UserRole.MANAGER.value, PARTNERS_MEDIA)
COMMISSION_VIEW_ROLES = (*ADMIN_ROLES, PARTNERS_MEDIA)

COMMISSION_PAYMENTS_TABLE = "commission_payments"
PIX_KEYS_TABLE = "partner_pix_keys"
CONTRACTS_TABLE = "partnership_contracts"

PAYMENT_STATUSES = ("sent", "confirmed", "cancelled")
PIX_TYPES = ("cpf", "cnpj", "email", "phone", "random")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

require_partner_viewer = require_roles(*PARTNER_VIEW_ROLES)
require_commission_viewer = require_roles(*COMMISSION_VIEW_ROLES)
require_pix_editor = require_roles(*ADMIN_ROLES, PARTNERS_MEDIA)


def get_coupon_service(
    supabase_service: SupabaseService = Depends(get_supabase_service),
    nuvemshop_client: NuvemshopClient = Depends(get_nuvemshop_client),
) -> CouponService:
    return CouponService(supabase_service, nuvemshop_client)


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _scoped_brand(auth: AuthContext, requested_brand: Optional[str]) -> Optional[str]:
    """Brand filter for a listing: the assigned brand for partners-media, else the requested one."""
    if auth.role == PARTNERS_MEDIA:
        if not auth.profile.assigned_brand:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No brand assigned")
        return auth.profile.assigned_brand
    return requested_brand


def _ensure_brand_access(auth: AuthContext, brand: Optional[str]) -> None:
    if auth.role == PARTNERS_MEDIA and (not auth.profile.assigned_brand or brand != auth.profile.assigned_brand):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only manage records for your assigned brand",
        )


def _brand_and_franchise(body: Dict[str, Any]) -> tuple:
    brand = str(body.get("brand") or "").strip()
    franchise = body.get("franchise") or None
    if not is_franchise_brand(brand):
        return brand, None
    if not franchise:
        raise _bad_request(f"franchise is required for brand {brand}")
    return brand, str(franchise).strip()


def _ensure_unique(
    supabase_service: SupabaseService,
    table: str,
    label: str,
    brand: str,
    franchise: Optional[str],
    exclude_id: Optional[str] = None,
) -> None:
    """One record per brand, or per (brand, franchise) for franchise brands."""
    existing = supabase_service.find_brand_row(table, brand, franchise)
    if existing and str(existing.get("id")) != str(exclude_id):
        target = f"{brand} - {franchise}" if franchise else brand
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"{label} already exists for {target}",
        )


def _get_or_404(supabase_service: SupabaseService, table: str, row_id: str, label: str) -> Dict[str, Any]:
    row = supabase_service.get_row(table, row_id)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found")
    return row


# Coupons


@router.post("/coupons/generate", status_code=status.HTTP_201_CREATED)
async def generate_coupon(
    request: Request,
    auth: AuthContext = Depends(require_admin),
    coupon_service: CouponService = Depends(get_coupon_service),
):
    """
    Generate a partner coupon for a brand and create it in Nuvemshop.

    Body: {percentage, validDays, maxUses, brand, franchise?}
    """
    body = await read_json_object(request)
    try:
        coupon = await coupon_service.generate_partner_coupon(body, created_by=auth.user_id)
    except CouponError as e:
        detail: Any = e.message
        if e.details:
            detail = {"message": e.message, **e.details}
        raise HTTPException(status_code=e.status_code, detail=detail)
    except Exception as e:
        logger.error("Failed to generate coupon", brand=body.get("brand"), error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to generate coupon: {str(e)}")

    return {"success": True, "coupon": coupon}


@router.get("/coupons")
async def list_coupons(
    brand: Optional[str] = Query(None),
    auth: AuthContext = Depends(require_partner_viewer),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    coupons = supabase_service.list_coupons(brand=_scoped_brand(auth, brand))
    return {"coupons": coupons, "count": len(coupons)}


# Commission payments


def _validate_payment_fields(body: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}

    if not partial or "amount" in body:
        amount = body.get("amount")
        try:
            if isinstance(amount, bool):
                raise ValueError
            amount = float(amount)
        except (TypeError, ValueError):
            raise _bad_request("Amount must be a positive number")
        if amount <= 0:
            raise _bad_request("Amount must be a positive number")
        fields["amount"] = amount

    if not partial or "payment_date" in body:
        payment_date = str(body.get("payment_date") or "")
        try:
            if not _DATE_RE.match(payment_date):
                raise ValueError
            date.fromisoformat(payment_date)
        except ValueError:
            raise _bad_request("Payment date must be in YYYY-MM-DD format")
        fields["payment_date"] = payment_date

    if not partial or "status" in body:
        payment_status = body.get("status") or "sent"
        if payment_status not in PAYMENT_STATUSES:
            raise _bad_request(f"Status must be one of: {', '.join(PAYMENT_STATUSES)}")
        fields["status"] = payment_status

    for key in ("payment_method", "description", "notes"):
        if key in body:
            fields[key] = body[key]

    return fields


@router.get("/commission-payments")
async def list_commission_payments(
    brand: Optional[str] = Query(None),
    franchise: Optional[str] = Query(None),
    auth: AuthContext = Depends(require_commission_viewer),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    payments = supabase_service.list_brand_rows(
        COMMISSION_PAYMENTS_TABLE,
        brand=_scoped_brand(auth, brand),
        franchise=franchise,
        order_by="payment_date",
    )
    return {"payments": payments}


@router.post("/commission-payments", status_code=status.HTTP_201_CREATED)
async def create_commission_payment(
    request: Request,
    auth: AuthContext = Depends(require_admin),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    body = await read_json_object(request)
    if not body.get("brand") or body.get("amount") in (None, "") or not body.get("payment_date"):
        raise _bad_request("Brand, amount, and payment_date are required")

    fields = _validate_payment_fields(body)
    brand = str(body["brand"]).strip()
    franchise = body.get("franchise") or None

    try:
        payment = supabase_service.insert_row(
            COMMISSION_PAYMENTS_TABLE,
            {
                "payment_method": "pix",
                **fields,
                "brand": brand,
                "franchise": franchise if is_franchise_brand(brand) else None,
                "created_by": auth.user_id,
            },
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to create commission payment: {str(e)}")

    logger.info("Commission payment created", brand=brand, amount=fields["amount"], user_id=auth.user_id)
    return {"payment": payment}


@router.put("/commission-payments/{payment_id}")
async def update_commission_payment(
    payment_id: str,
    request: Request,
    auth: AuthContext = Depends(require_admin),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    body = await read_json_object(request)
    _get_or_404(supabase_service, COMMISSION_PAYMENTS_TABLE, payment_id, "Commission payment")
    fields = _validate_payment_fields(body, partial=True)
    if not fields:
        raise _bad_request("No fields to update")

    payment = supabase_service.update_row(COMMISSION_PAYMENTS_TABLE, payment_id, fields)
    return {"payment": payment}


@router.delete("/commission-payments/{payment_id}")
async def delete_commission_payment(
    payment_id: str,
    auth: AuthContext = Depends(require_admin),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    _get_or_404(supabase_service, COMMISSION_PAYMENTS_TABLE, payment_id, "Commission payment")
    supabase_service.delete_row(COMMISSION_PAYMENTS_TABLE, payment_id)
    logger.info("Commission payment deleted", payment_id=payment_id, user_id=auth.user_id)
    return {"success": True}


# PIX keys


def _validate_pix_type(pix_type: Any) -> str:
    if pix_type not in PIX_TYPES:
        raise _bad_request(f"pix_type must be one of: {', '.join(PIX_TYPES)}")
    return pix_type


@router.get("/pix-keys")
async def list_pix_keys(
    brand: Optional[str] = Query(None),
    franchise: Optional[str] = Query(None),
    auth: AuthContext = Depends(require_partner_viewer),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    pix_keys = supabase_service.list_brand_rows(
        PIX_KEYS_TABLE, brand=_scoped_brand(auth, brand), franchise=franchise
    )
    return {"pixKeys": pix_keys}


@router.post("/pix-keys", status_code=status.HTTP_201_CREATED)
async def create_pix_key(
    request: Request,
    auth: AuthContext = Depends(require_pix_editor),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    """Create the PIX key of a brand. partners-media may only create one for their own brand."""
    body = await read_json_object(request)
    if not body.get("pix_key") or not body.get("brand"):
        raise _bad_request("pix_key and brand are required")
    pix_type = _validate_pix_type(body.get("pix_type"))

    brand, franchise = _brand_and_franchise(body)
    _ensure_brand_access(auth, brand)
    _ensure_unique(supabase_service, PIX_KEYS_TABLE, "Pix key", brand, franchise)

    try:
        pix_key = supabase_service.insert_row(
            PIX_KEYS_TABLE,
            {
                "brand": brand,
                "franchise": franchise,
                "pix_key": str(body["pix_key"]).strip(),
                "pix_type": pix_type,
                "holder_name": body.get("holder_name"),
                "created_by": auth.user_id,
            },
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to create pix key: {str(e)}")

    return {"pixKey": pix_key}


@router.put("/pix-keys/{pix_key_id}")
async def update_pix_key(
    pix_key_id: str,
    request: Request,
    auth: AuthContext = Depends(require_pix_editor),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    body = await read_json_object(request)
    if not body.get("pix_key"):
        raise _bad_request("pix_key is required")

    existing = _get_or_404(supabase_service, PIX_KEYS_TABLE, pix_key_id, "Pix key")
    _ensure_brand_access(auth, existing.get("brand"))

    fields: Dict[str, Any] = {"pix_key": str(body["pix_key"]).strip()}
    if "pix_type" in body:
        fields["pix_type"] = _validate_pix_type(body["pix_type"])
    if "holder_name" in body:
        fields["holder_name"] = body["holder_name"]

    pix_key = supabase_service.update_row(PIX_KEYS_TABLE, pix_key_id, fields)
    return {"pixKey": pix_key}


@router.delete("/pix-keys/{pix_key_id}")
async def delete_pix_key(
    pix_key_id: str,
    auth: AuthContext = Depends(require_pix_editor),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    existing = _get_or_404(supabase_service, PIX_KEYS_TABLE, pix_key_id, "Pix key")
    _ensure_brand_access(auth, existing.get("brand"))
    supabase_service.delete_row(PIX_KEYS_TABLE, pix_key_id)
    return {"success": True}


# Contracts


def _validate_contract_url(value: Any) -> str:
    url = str(value or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise _bad_request("contract_url must be a valid http(s) URL")
    return url


@router.get("/contracts")
async def list_contracts(
    brand: Optional[str] = Query(None),
    franchise: Optional[str] = Query(None),
    auth: AuthContext = Depends(require_partner_viewer),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    contracts = supabase_service.list_brand_rows(
        CONTRACTS_TABLE, brand=_scoped_brand(auth, brand), franchise=franchise
    )
    return {"contracts": contracts}


@router.post("/contracts", status_code=status.HTTP_201_CREATED)
async def create_contract(
    request: Request,
    auth: AuthContext = Depends(require_admin),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    body = await read_json_object(request)
    if not body.get("contract_url") or not body.get("brand"):
        raise _bad_request("contract_url and brand are required")
    contract_url = _validate_contract_url(body["contract_url"])

    brand, franchise = _brand_and_franchise(body)
    _ensure_unique(supabase_service, CONTRACTS_TABLE, "Contract", brand, franchise)

    try:
        contract = supabase_service.insert_row(
            CONTRACTS_TABLE,
            {
                "brand": brand,
                "franchise": franchise,
                "contract_url": contract_url,
                "contract_name": body.get("contract_name"),
                "created_by": auth.user_id,
            },
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to create contract: {str(e)}")

    return {"contract": contract}


@router.put("/contracts/{contract_id}")
async def update_contract(
    contract_id: str,
    request: Request,
    auth: AuthContext = Depends(require_admin),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    body = await read_json_object(request)
    _get_or_404(supabase_service, CONTRACTS_TABLE, contract_id, "Contract")

    fields: Dict[str, Any] = {}
    if "contract_url" in body:
        fields["contract_url"] = _validate_contract_url(body["contract_url"])
    if "contract_name" in body:
        fields["contract_name"] = body["contract_name"]
    if not fields:
        raise _bad_request("No fields to update")

    contract = supabase_service.update_row(CONTRACTS_TABLE, contract_id, fields)
    return {"contract": contract}


@router.delete("/contracts/{contract_id}")
async def delete_contract(
    contract_id: str,
    auth: AuthContext = Depends(require_admin),
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    _get_or_404(supabase_service, CONTRACTS_TABLE, contract_id, "Contract")
    supabase_service.delete_row(CONTRACTS_TABLE, contract_id)
    return {"success": True}
