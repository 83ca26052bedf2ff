"""
Square API Service
"""
from typing import List, Dict, Any, Optional
import asyncio
import logging

import httpx

from app.config import settings
from app.services.catalog_snapshot import CatalogSnapshot
from app.services.rate_limiter import RateLimiter
from app.services.retry import SquareAPIError, with_network_retry

logger = logging.getLogger(__name__)

CATALOG_OBJECT_TYPES = ["ITEM", "IMAGE", "CATEGORY"]


def _error_message(response: httpx.Response) -> str:
    try:
        errors = response.json().get("errors", [])
    except ValueError:
        return response.text[:200]
    if errors:
        return "; ".join(e.get("detail") or e.get("code", "") for e in errors)
    return response.reason_phrase


class SquareService:
    """Service for interacting with Square API"""

    def __init__(
        self,
        access_token: Optional[str] = None,
        environment: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: Optional[int] = None,
        retry_base_delay_ms: Optional[int] = None,
        retry_sleep=asyncio.sleep,
    ):
        environment = environment or settings.SQUARE_ENVIRONMENT
        self.base_url = "https://connect.squareupsandbox.com" if environment == "sandbox" else "https://connect.squareup.com"
        self.api_version = settings.SQUARE_API_VERSION
        self.access_token = access_token if access_token is not None else settings.SQUARE_ACCESS_TOKEN
        self.rate_limiter = rate_limiter or RateLimiter()
        self.transport = transport
        self.max_retries = max_retries
        self.retry_base_delay_ms = retry_base_delay_ms
        self.retry_sleep = retry_sleep

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Square-Version": self.api_version,
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None,
                       params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Issue one throttled, retried request

        Raises:
            SquareAPIError: non-retryable error response
            ExhaustedRetries: 429/5xx on every attempt
        """
        url = f"{self.base_url}{path}"

        async def send():
            await self.rate_limiter.throttle()
            async with httpx.AsyncClient(timeout=30.0, transport=self.transport) as client:
                response = await client.request(method, url, headers=self._headers(), json=json, params=params)
                try:
                    response.raise_for_status()
                except httpx.HTTPStatusError as e:
                    raise SquareAPIError(response.status_code, _error_message(response)) from e
                return response.json()

        return await with_network_retry(
            send,
            max_attempts=self.max_retries,
            base_delay_ms=self.retry_base_delay_ms,
            sleep=self.retry_sleep,
            label=f"{method} {path}",
        )

    async def search_catalog_objects(self, cursor: Optional[str] = None) -> Dict[str, Any]:
        """
        Search the catalog for items, images and categories

        Args:
            cursor: Pagination cursor

        Returns:
            Raw response with objects, related_objects and cursor
        """
        body: Dict[str, Any] = {
            "object_types": CATALOG_OBJECT_TYPES,
            "include_related_objects": True,
            "include_deleted_objects": False,
        }
        if cursor:
            body["cursor"] = cursor
        return await self._request("POST", "/v2/catalog/search", json=body)

    async def fetch_catalog_snapshot(self) -> CatalogSnapshot:
        """Page through the catalog search and build one snapshot"""
        objects: List[Dict[str, Any]] = []
        related: List[Dict[str, Any]] = []
        cursor = None
        pages = 0

        while True:
            data = await self.search_catalog_objects(cursor=cursor)
            objects.extend(data.get("objects", []))
            related.extend(data.get("related_objects", []))
            pages += 1

            cursor = data.get("cursor")
            if not cursor:
                break

        snapshot = CatalogSnapshot.from_objects(objects, related)
        logger.info(
            "Fetched catalog snapshot: %d items, %d categories, %d images (%d pages)",
            len(snapshot.items), len(snapshot.categories), len(snapshot.images), pages,
        )
        return snapshot

    async def retrieve_catalog_object(self, object_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve one catalog object

        Args:
            object_id: Square catalog object ID

        Returns:
            The catalog object, or None if Square returned nothing
        """
        data = await self._request(
            "GET",
            f"/v2/catalog/object/{object_id}",
            params={"include_related_objects": "false"},
        )
        return data.get("object")

    async def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve an order with its fulfillments

        Args:
            order_id: Square order ID

        Returns:
            The order object
        """
        data = await self._request("GET", f"/v2/orders/{order_id}")
        return data.get("order")


square_service = SquareService()
