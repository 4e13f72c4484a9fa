"""
Deal transformer.
Normalizes ActiveCampaign deals (plus their custom fields and contact fields)
into deals_cache rows.
"""
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional, Union

import structlog

from hudlab.models.activecampaign import (
    ActiveCampaignDeal,
    ContactFieldValue,
    DealCustomFieldDatum,
)
from hudlab.models.database import DealCacheRow, DealStatus

logger = structlog.get_logger()

CLOSING_DATE_FIELD_ID = 5

# Deal custom field id -> deals_cache attribute
CUSTOM_FIELD_COLUMNS: Dict[int, str] = {
    CLOSING_DATE_FIELD_ID: "custom_field_value",
    25: "estado",
    39: "quantidade_de_pares",
    45: "vendedor",
    47: "designer",
    49: "utm_source",
    50: "utm_medium",
}

# Contact custom field id -> deals_cache attribute
CONTACT_FIELD_COLUMNS: Dict[int, str] = {
    7: "segmento_de_negocio",
    50: "intencao_de_compra",
}

_STATUS_BY_CODE = {0: DealStatus.OPEN, 1: DealStatus.WON, 2: DealStatus.LOST}


def convert_date_format(value: Optional[str]) -> Optional[str]:
    """
    Convert a CRM date string to YYYY-MM-DD.

    Accepts MM/DD/YYYY, YYYY-MM-DD and ISO datetimes. Returns None for anything
    else; never raises.
    """
    if not value or not isinstance(value, str):
        return None

    text = value.strip()

    try:
        if "/" in text:
            month, day, year = text.split("/")
            return date(int(year), int(month), int(day)).isoformat()

        if len(text) == 10:
            return date.fromisoformat(text).isoformat()

        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc)
        return parsed.date().isoformat()
    except (ValueError, TypeError):
        logger.debug("Unparsable deal date", value=value)
        return None


def normalize_deal_status(raw: Union[int, str, None]) -> Optional[DealStatus]:
    """Map 0/1/2, "0"/"1"/"2" or open/won/lost (any case) to DealStatus."""
    if raw is None or isinstance(raw, bool):
        return None

    if isinstance(raw, int):
        return _STATUS_BY_CODE.get(raw)

    text = str(raw).strip().lower()
    if text.isdigit():
        return _STATUS_BY_CODE.get(int(text))

    try:
        return DealStatus(text)
    except ValueError:
        return None


def parse_value_cents(raw: Union[int, float, str, None]) -> int:
    """
    Parse an ActiveCampaign deal value into integer cents.

    ActiveCampaign already reports values in cents ("150000" is R$ 1.500,00),
    sometimes with a fractional part. Empty or invalid input is 0.
    """
    if raw is None or raw == "":
        return 0

    try:
        amount = Decimal(str(raw).strip())
    except InvalidOperation:
        logger.warning("Invalid deal value", value=raw)
        return 0

    if not amount.is_finite():
        return 0

    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_display(cents: Optional[int]) -> str:
    """Integer cents -> decimal amount string ("1500.00")."""
    return str((Decimal(cents or 0) / Decimal(100)).quantize(Decimal("0.01")))


def map_custom_fields(items: Iterable[DealCustomFieldDatum]) -> Dict[str, Dict[int, str]]:
    """Group known custom field values by deal id."""
    by_deal: Dict[str, Dict[int, str]] = {}
    for item in items:
        if item.customFieldId not in CUSTOM_FIELD_COLUMNS:
            continue
        by_deal.setdefault(item.dealId, {})[item.customFieldId] = item.fieldValue or ""
    return by_deal


def map_contact_fields(items: Iterable[ContactFieldValue]) -> Dict[int, str]:
    return {item.field: item.value or "" for item in items if item.field in CONTACT_FIELD_COLUMNS}


def build_deal_row(
    deal: ActiveCampaignDeal,
    custom_fields: Dict[int, str],
    contact_fields: Optional[Dict[int, str]] = None,
    synced_at: Optional[str] = None,
) -> DealCacheRow:
    """
    Build a deals_cache row from a deal and its field maps.

    Args:
        deal: Deal as returned by ActiveCampaign
        custom_fields: Deal custom field id -> value
        contact_fields: Contact field id -> value, when the contact was fetched
        synced_at: Timestamp recorded in last_synced_at

    Returns:
        DealCacheRow
    """
    columns: Dict[str, Any] = {}
    for field_id, column in CUSTOM_FIELD_COLUMNS.items():
        columns[column] = custom_fields.get(field_id) or None

    for field_id, column in CONTACT_FIELD_COLUMNS.items():
        columns[column] = (contact_fields or {}).get(field_id) or None

    raw_closing_date = columns["custom_field_value"]

    return DealCacheRow(
        deal_id=deal.id,
        title=deal.title or "",
        value=parse_value_cents(deal.value),
        currency=(deal.currency or "BRL").upper(),
        status=normalize_deal_status(deal.status),
        stage_id=deal.stage,
        closing_date=convert_date_format(raw_closing_date) if raw_closing_date else None,
        created_date=deal.cdate,
        contact_id=deal.contact,
        organization_id=deal.organization,
        api_updated_at=deal.mdate or deal.cdate,
        last_synced_at=synced_at or datetime.now(timezone.utc).isoformat(),
        sync_status="synced",
        **columns,
    )
