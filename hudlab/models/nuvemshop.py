"""
Pydantic models for Nuvemshop API requests and webhook payloads.
"""
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class NuvemshopWebhookPayload(BaseModel):
    """Body Nuvemshop posts for every webhook event."""

    model_config = ConfigDict(extra="allow")

    store_id: Union[int, str]
    event: str
    id: Optional[Union[int, str]] = Field(None, description="Resource id (order or product)")


class NuvemshopCouponPayload(BaseModel):
    """POST /coupons body."""

    code: str
    type: str = "percentage"  # percentage, absolute, shipping
    value: str
    valid: bool = True
    start_date: Optional[str] = None  # YYYY-MM-DD
    end_date: Optional[str] = None  # YYYY-MM-DD
    min_price: float = 0
    max_uses: Optional[int] = None
    includes_shipping: bool = False
    first_consumer_purchase: bool = False
    combines_with_other_discounts: bool = True
    categories: Optional[List[int]] = None
    products: Optional[List[int]] = None
