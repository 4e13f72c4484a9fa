"""
Pydantic models for ActiveCampaign API v3 responses.
Only the fields the deal sync reads are declared; the rest are kept as extras.
"""
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator


class ActiveCampaignDeal(BaseModel):
    """Single entry of /api/3/deals."""

    model_config = ConfigDict(extra="allow")

    id: str
    title: Optional[str] = None
    value: Optional[str] = None  # cents, as a decimal string
    currency: Optional[str] = None
    status: Optional[Union[int, str]] = None
    stage: Optional[str] = None
    contact: Optional[str] = None
    organization: Optional[str] = None
    cdate: Optional[str] = None
    mdate: Optional[str] = None

    @field_validator("id", "stage", "contact", "organization", mode="before")
    @classmethod
    def _coerce_ids(cls, v):
        return str(v) if v is not None else None

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_value(cls, v):
        return str(v) if v is not None else None


class DealCustomFieldDatum(BaseModel):
    """Single entry of /api/3/dealCustomFieldData."""

    model_config = ConfigDict(extra="allow")

    dealId: str
    customFieldId: int
    fieldValue: Optional[str] = None

    @field_validator("dealId", mode="before")
    @classmethod
    def _coerce_deal_id(cls, v):
        return str(v)

    @field_validator("fieldValue", mode="before")
    @classmethod
    def _coerce_field_value(cls, v):
        if v is None:
            return None
        return str(v)


class ContactFieldValue(BaseModel):
    """Single entry of /api/3/contacts/{id}/fieldValues."""

    model_config = ConfigDict(extra="allow")

    field: int
    value: Optional[str] = None

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_value(cls, v):
        if v is None:
            return None
        return str(v)
