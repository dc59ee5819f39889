# payment_api/order_client.py

import asyncio
import logging

import httpx

from common.errors import UpstreamError
from common.security import SERVICE_TOKEN_HEADER, create_service_token

logger = logging.getLogger(__name__)

RETRY_DELAY_SECONDS = 0.5
ALREADY_PAID_MESSAGE = "Order is already paid"


def _message(response: httpx.Response) -> str | None:
    try:
        return response.json().get("message")
    except ValueError:
        return None


class OrderClient:
    """
    Client for the order service's internal routes.

    ``mark_order_paid`` is retried on transport errors and 5xx answers. The
    order service rejects a second MarkPaid with 409 "Order is already paid",
    which is treated as success, so a retry after a lost response cannot pay
    twice. Any other 409 (a cancelled order) is a rejection.
    """

    def __init__(self, base_url: str, service_name: str, service_secret: str,
                 timeout: float = 10.0, attempts: int = 3, retry_delay: float = RETRY_DELAY_SECONDS,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.service_name = service_name
        self.service_secret = service_secret
        self.timeout = timeout
        self.attempts = max(attempts, 1)
        self.retry_delay = retry_delay
        self.transport = transport

    def _headers(self) -> dict:
        return {SERVICE_TOKEN_HEADER: create_service_token(self.service_name, self.service_secret)}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def get_order(self, order_id: str) -> dict | None:
        """Returns the order as JSON, or None when the order service does not know it."""
        try:
            async with self._client() as client:
                response = await client.get(f"/api/orders/internal/{order_id}", headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(f"Error fetching order {order_id}: {e}")
            raise UpstreamError("Failed to fetch order details") from e

        if response.status_code == 404:
            return None
        if not response.is_success:
            logger.error(f"Order service answered {response.status_code} for order {order_id}")
            raise UpstreamError("Failed to fetch order details", status_code=response.status_code)
        return response.json()

    async def mark_order_paid(self, order_id: str, payment_result: dict, payment_method: str) -> bool:
        """
        Pushes the paid callback. Returns True when the order is paid, either
        by this call or an earlier one.

        Raises:
            UpstreamError: The callback failed after every attempt.
        """
        body = {"payment_result": payment_result, "payment_method": payment_method}
        last_error = "no attempt made"

        for attempt in range(1, self.attempts + 1):
            try:
                async with self._client() as client:
                    response = await client.put(
                        f"/api/orders/internal/{order_id}/pay", json=body, headers=self._headers()
                    )
            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__
                logger.warning(f"Paid callback for order {order_id} failed (attempt {attempt}): {last_error}")
            else:
                if response.is_success:
                    logger.info(f"Order {order_id} marked as paid")
                    return True
                if response.status_code == 409 and _message(response) == ALREADY_PAID_MESSAGE:
                    logger.info(f"Order {order_id} was already paid")
                    return True
                if response.status_code < 500:
                    raise UpstreamError(
                        f"Order service rejected paid callback for order {order_id}: {_message(response)}",
                        status_code=response.status_code,
                    )
                last_error = f"HTTP {response.status_code}"
                logger.warning(f"Paid callback for order {order_id} failed (attempt {attempt}): {last_error}")

            if attempt < self.attempts:
                await asyncio.sleep(self.retry_delay * attempt)

        raise UpstreamError(f"Failed to mark order {order_id} as paid: {last_error}")

    async def update_order_status(self, order_id: str, status: str) -> dict:
        try:
            async with self._client() as client:
                response = await client.put(
                    f"/api/orders/internal/{order_id}/status",
                    json={"status": status},
                    headers=self._headers(),
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Error updating order {order_id} status to {status}: {e}")
            raise UpstreamError(f"Failed to update order {order_id} status") from e
        return response.json()
