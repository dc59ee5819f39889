# order_api/clients.py

import logging

import httpx

from common.errors import StockError, UpstreamError
from common.security import SERVICE_TOKEN_HEADER, create_service_token
from order_api.models import OrderItem

logger = logging.getLogger(__name__)

UNKNOWN_EMAIL = "Unknown"


class StockClient:
    """
    Calls the product service to check and reserve stock for an order.

    The call is made exactly once: a timeout or transport error fails the
    reservation, and nothing is considered reserved unless the product
    service answered with success.
    """

    def __init__(self, base_url: str, service_name: str, service_secret: str,
                 timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.service_name = service_name
        self.service_secret = service_secret
        self.timeout = timeout
        self.transport = transport

    async def check_and_reserve_stock(self, items: list[OrderItem]) -> list:
        """
        Returns the product service's ``updatedProducts`` list.

        Raises:
            StockError: Some items are out of stock.
            UpstreamError: The product service failed or was unreachable.
        """
        payload = {"items": [{"productId": item.product_id, "quantity": item.qty} for item in items]}
        headers = {SERVICE_TOKEN_HEADER: create_service_token(self.service_name, self.service_secret)}
        logger.info(f"Checking stock for {len(items)} products")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/api/products/internal/check-stock",
                    json=payload,
                    headers=headers,
                )
        except httpx.HTTPError as e:
            logger.error(f"Error checking and updating product stock: {e}")
            raise UpstreamError("Failed to update product stock") from e

        if response.is_success:
            updated = response.json().get("updatedProducts") or []
            logger.info(f"Stock check successful, updated {len(updated)} products")
            return updated

        try:
            body = response.json()
        except ValueError:
            body = {}
        logger.error(f"Stock check failed ({response.status_code}): {body or response.text}")

        out_of_stock = body.get("outOfStockItems") or []
        if out_of_stock:
            raise StockError(out_of_stock)
        raise UpstreamError(
            body.get("message") or "Failed to check product stock",
            status_code=response.status_code,
        )


class UserDirectory:
    """Looks up user emails in the user service. Lookups never raise."""

    def __init__(self, base_url: str, service_name: str, service_secret: str,
                 timeout: float = 5.0, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.service_name = service_name
        self.service_secret = service_secret
        self.timeout = timeout
        self.transport = transport

    async def get_user_email(self, user_id: str) -> str:
        headers = {SERVICE_TOKEN_HEADER: create_service_token(self.service_name, self.service_secret)}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(f"{self.base_url}/api/users/internal/{user_id}", headers=headers)
                response.raise_for_status()
                email = response.json().get("email")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error fetching user info for {user_id}: {e}")
            return UNKNOWN_EMAIL
        return email or UNKNOWN_EMAIL
