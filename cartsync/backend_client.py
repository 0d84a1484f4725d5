"""
HTTP client for the shop backend (cart details, records, cart status, orders).
"""
import json
import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from cartsync.config import Config
from cartsync.exceptions import BackendError
from cartsync.logging_config import hash_identifier
from cartsync.models import CartStatus, RecordInfo
from cartsync.payloads import normalize_cart_status, normalize_item_count, normalize_record

logger = logging.getLogger(__name__)


def _email_path(email: str) -> str:
    return quote(email, safe="")


class ShopBackend:
    """
    Async wrapper over the shop backend's REST API.

    Every failure (transport error, timeout, non-2xx status, undecodable body
    where a body is required) is raised as BackendError. Calls are never
    retried here; mutations in particular are not idempotent on the backend.

    Usage:
        backend = ShopBackend(token=token)
        details = await backend.fetch_cart_details(email)
        await backend.mutate_cart_detail(email, record_id, +1)
        await backend.aclose()
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url or Config.API_BASE_URL).rstrip("/") + "/"
        self.token = token if token is not None else Config.API_TOKEN
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else Config.BACKEND_TIMEOUT_SECONDS,
            transport=transport
        )

    def set_token(self, token: Optional[str]) -> None:
        self.token = token

    def _headers(self, extra: Optional[dict] = None) -> dict:
        headers = dict(extra or {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        extra_headers: Optional[dict] = None,
        **kwargs
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, headers=self._headers(extra_headers), **kwargs)
        except httpx.HTTPError as e:
            logger.error(
                f"Backend request failed: {method} {path.split('/')[0]}: {type(e).__name__}",
                extra={"method": method, "error_type": type(e).__name__}
            )
            raise BackendError(f"Backend unreachable: {e}")

        if response.is_error:
            logger.warning(
                f"Backend returned {response.status_code} for {method} {path.split('/')[0]}",
                extra={"method": method, "status_code": response.status_code}
            )
            raise BackendError(
                f"Backend returned {response.status_code}",
                status_code=response.status_code
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        """Decoded body, or None when the body is empty or not JSON"""
        if not response.content:
            return None
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None

    async def fetch_cart_details(self, email: str) -> Any:
        """Raw cart detail payload; shape varies, see payloads.unwrap_collection"""
        response = await self._request("GET", f"CartDetails/GetCartDetails/{_email_path(email)}")
        return self._json(response)

    async def mutate_cart_detail(self, email: str, record_id: int, delta: int) -> None:
        """Add (+1) or remove (-1) one unit of a record in the owner's cart"""
        if delta not in (1, -1):
            raise ValueError("delta must be +1 or -1")

        action = "addToCartDetailAndCart" if delta > 0 else "removeFromCartDetailAndCart"
        logger.info(
            f"Cart mutation {action}",
            extra={"hashed_email": hash_identifier(email), "record_id": record_id, "delta": delta}
        )
        await self._request(
            "POST",
            f"CartDetails/{action}/{_email_path(email)}",
            params={"recordId": record_id, "amount": abs(delta)}
        )

    async def fetch_record(self, record_id: int) -> RecordInfo:
        response = await self._request("GET", f"Records/{record_id}")
        record = normalize_record(self._json(response), record_id)
        if record is None:
            raise BackendError(f"The updated record {record_id} could not be obtained")
        return record

    async def fetch_cart_status(self, email: str) -> CartStatus:
        """Cart enabled flag; any failure or odd response counts as enabled"""
        if not email:
            return CartStatus(enabled=True)
        try:
            response = await self._request("GET", f"Carts/GetCartStatus/{_email_path(email)}")
        except BackendError as e:
            logger.warning(f"Error getting cart status, defaulting to enabled: {e}")
            return CartStatus(enabled=True)
        return normalize_cart_status(self._json(response))

    async def fetch_cart_item_count(self, email: str) -> int:
        response = await self._request("GET", f"CartDetails/GetCartItemCount/{_email_path(email)}")
        return normalize_item_count(self._json(response))

    async def enable_cart(self, email: str) -> None:
        await self._request("POST", f"Carts/Enable/{_email_path(email)}")

    async def disable_cart(self, email: str) -> None:
        await self._request("POST", f"Carts/Disable/{_email_path(email)}")

    async def create_order_from_cart(self, email: str, payment_method: str) -> Any:
        # The backend expects the payment method as a raw JSON string
        response = await self._request(
            "POST",
            f"Orders/from-cart/{_email_path(email)}",
            content=json.dumps(payment_method).encode(),
            extra_headers={"Content-Type": "application/json"}
        )
        return self._json(response)

    async def aclose(self) -> None:
        await self._client.aclose()
