"""
ActiveCampaign API v3 client with retry logic and optional request pacing.
Covers deals, deal custom field data, contact field values and deal stages.
"""
from typing import Any, Dict, List, Optional

import httpx
import structlog

from hudlab.config import settings
from hudlab.models.activecampaign import (
    ActiveCampaignDeal,
    ContactFieldValue,
    DealCustomFieldDatum,
)
from hudlab.utils.rate_limit import RequestPacer
from hudlab.utils.retry import retry_with_backoff
from hudlab.utils.swr_cache import response_cache

logger = structlog.get_logger()


class ActiveCampaignAPIError(Exception):
    """Raised on non-2xx responses from ActiveCampaign."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ActiveCampaignClient:
    """Client for the ActiveCampaign REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        requests_per_second: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize ActiveCampaign client.

        Args:
            base_url: Account URL, defaults to settings.activecampaign_base_url
            api_token: API token, defaults to settings.activecampaign_api_token
            requests_per_second: Pacing budget; 0 disables pacing
            transport: Optional httpx transport (used by tests)
        """
        base = (base_url or settings.activecampaign_base_url).rstrip("/")
        token = api_token if api_token is not None else settings.activecampaign_api_token
        rps = (
            requests_per_second
            if requests_per_second is not None
            else settings.activecampaign_requests_per_second
        )

        if not base or not token:
            logger.warning("ActiveCampaign credentials not configured")

        self.base_url = f"{base}/api/3"
        self.pacer = RequestPacer(rps) if rps and rps > 0 else None
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(30.0),
            headers={"Api-Token": token, "Accept": "application/json"},
            transport=transport,
        )

    async def close(self):
        await self.client.aclose()

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if self.pacer:
            await self.pacer.wait()

        response = await self.client.get(path, params=params)

        if response.status_code >= 400:
            logger.error(
                "ActiveCampaign API error",
                path=path,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise ActiveCampaignAPIError(
                f"ActiveCampaign API error {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        return response.json()

    @retry_with_backoff(
        max_attempts=settings.max_retry_attempts,
        initial_delay=settings.retry_initial_delay_seconds,
        multiplier=settings.retry_backoff_multiplier,
    )
    async def list_deals(self, limit: int = 100, offset: int = 0) -> List[ActiveCampaignDeal]:
        data = await self._get("/deals", params={"limit": limit, "offset": offset})
        return [ActiveCampaignDeal(**d) for d in data.get("deals", [])]

    @retry_with_backoff(
        max_attempts=settings.max_retry_attempts,
        initial_delay=settings.retry_initial_delay_seconds,
        multiplier=settings.retry_backoff_multiplier,
    )
    async def get_deal(self, deal_id: str) -> ActiveCampaignDeal:
        data = await self._get(f"/deals/{deal_id}")
        deal = data.get("deal")
        if not deal:
            raise ActiveCampaignAPIError(f"Deal {deal_id} not found", status_code=404, body=str(data))
        return ActiveCampaignDeal(**deal)

    @retry_with_backoff(
        max_attempts=settings.max_retry_attempts,
        initial_delay=settings.retry_initial_delay_seconds,
        multiplier=settings.retry_backoff_multiplier,
    )
    async def list_deal_custom_field_data(
        self, limit: int = 100, offset: int = 0
    ) -> List[DealCustomFieldDatum]:
        data = await self._get("/dealCustomFieldData", params={"limit": limit, "offset": offset})
        return [DealCustomFieldDatum(**d) for d in data.get("dealCustomFieldData", [])]

    @retry_with_backoff(
        max_attempts=settings.max_retry_attempts,
        initial_delay=settings.retry_initial_delay_seconds,
        multiplier=settings.retry_backoff_multiplier,
    )
    async def get_deal_custom_field_data(self, deal_id: str) -> List[DealCustomFieldDatum]:
        data = await self._get("/dealCustomFieldData", params={"deal": deal_id, "limit": 100})
        return [DealCustomFieldDatum(**d) for d in data.get("dealCustomFieldData", [])]

    @retry_with_backoff(
        max_attempts=settings.max_retry_attempts,
        initial_delay=settings.retry_initial_delay_seconds,
        multiplier=settings.retry_backoff_multiplier,
    )
    async def get_contact_field_values(self, contact_id: str) -> List[ContactFieldValue]:
        data = await self._get(f"/contacts/{contact_id}/fieldValues")
        return [ContactFieldValue(**v) for v in data.get("fieldValues", [])]

    async def list_deal_stages(self) -> List[Dict[str, Any]]:
        """Deal stages change rarely; served through the static cache policy."""
        return await response_cache.get_or_fetch(
            "activecampaign:deal_stages", self._fetch_deal_stages, policy="static"
        )

    @retry_with_backoff(
        max_attempts=settings.max_retry_attempts,
        initial_delay=settings.retry_initial_delay_seconds,
        multiplier=settings.retry_backoff_multiplier,
    )
    async def _fetch_deal_stages(self) -> List[Dict[str, Any]]:
        data = await self._get("/dealStages", params={"limit": 100})
        return data.get("dealStages", [])
