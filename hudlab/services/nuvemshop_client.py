"""
Nuvemshop (Tiendanube) API client.
Fetches orders and products for webhook processing and bulk sync, and lists and
creates discount coupons.
"""
from typing import Any, Dict, List, Optional

import httpx
import structlog

from hudlab.config import settings
from hudlab.models.nuvemshop import NuvemshopCouponPayload
from hudlab.utils.rate_limit import RequestPacer
from hudlab.utils.retry import retry_with_backoff

logger = structlog.get_logger()


class NuvemshopAPIError(Exception):
    """Raised on non-2xx responses from Nuvemshop."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class NuvemshopClient:
    """Client for the Nuvemshop store API."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        user_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        requests_per_second: Optional[float] = None,
    ):
        token = access_token if access_token is not None else settings.nuvemshop_access_token
        store_id = user_id if user_id is not None else settings.nuvemshop_user_id

        if not token or not store_id:
            logger.warning("Nuvemshop credentials not configured")

        rps = requests_per_second if requests_per_second is not None else settings.nuvemshop_requests_per_second
        self.pacer = RequestPacer(rps) if rps and rps > 0 else None
        self.base_url = f"{settings.nuvemshop_api_base_url.rstrip('/')}/{store_id}"
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(30.0),
            headers={
                "Authentication": f"bearer {token}",
                "Content-Type": "application/json",
                "User-Agent": settings.nuvemshop_user_agent,
            },
            transport=transport,
        )

    async def close(self):
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        if self.pacer:
            await self.pacer.wait()

        logger.debug("Nuvemshop API request", method=method, path=path)
        response = await self.client.request(method, path, **kwargs)

        if response.status_code >= 400:
            logger.error(
                "Nuvemshop API error",
                method=method,
                path=path,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise NuvemshopAPIError(
                f"Nuvemshop API error {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        return response.json()

    @retry_with_backoff(
        max_attempts=settings.max_retry_attempts,
        initial_delay=settings.retry_initial_delay_seconds,
        multiplier=settings.retry_backoff_multiplier,
    )
    async def get_order(self, order_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/orders/{order_id}")

    @retry_with_backoff(
        max_attempts=settings.max_retry_attempts,
        initial_delay=settings.retry_initial_delay_seconds,
        multiplier=settings.retry_backoff_multiplier,
    )
    async def get_product(self, product_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/products/{product_id}")

    @retry_with_backoff(
        max_attempts=settings.max_retry_attempts,
        initial_delay=settings.retry_initial_delay_seconds,
        multiplier=settings.retry_backoff_multiplier,
    )
    async def list_coupons(self, code: Optional[str] = None, per_page: int = 50, page: int = 1) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"per_page": per_page, "page": page}
        if code:
            params["q"] = code
        return await self._list("/coupons", params, "coupons")

    @retry_with_backoff(
        max_attempts=settings.max_retry_attempts,
        initial_delay=settings.retry_initial_delay_seconds,
        multiplier=settings.retry_backoff_multiplier,
    )
    async def list_orders(self, page: int = 1, per_page: int = 100) -> List[Dict[str, Any]]:
        """One page of orders in any status (open, closed and cancelled)."""
        return await self._list("/orders", {"page": page, "per_page": per_page, "status": "any"}, "orders")

    @retry_with_backoff(
        max_attempts=settings.max_retry_attempts,
        initial_delay=settings.retry_initial_delay_seconds,
        multiplier=settings.retry_backoff_multiplier,
    )
    async def list_products(self, page: int = 1, per_page: int = 100) -> List[Dict[str, Any]]:
        return await self._list("/products", {"page": page, "per_page": per_page}, "products")

    async def _list(self, path: str, params: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
        # Listings are usually a bare array; some API versions wrap it
        data = await self._request("GET", path, params=params)
        if isinstance(data, dict):
            data = data.get(key) or []
        return data

    async def create_coupon(self, payload: NuvemshopCouponPayload) -> Dict[str, Any]:
        """
        Create a coupon. Not retried: a replayed POST could create a duplicate code.

        Args:
            payload: Coupon definition

        Returns:
            Created coupon as returned by Nuvemshop (includes its numeric id)
        """
        body = payload.model_dump(exclude_none=True)
        if "max_uses" not in body:
            body["max_uses"] = None
        logger.info("Creating Nuvemshop coupon", code=payload.code, products=len(payload.products or []))
        return await self._request("POST", "/coupons", json=body)
