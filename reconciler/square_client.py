import logging

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from reconciler.errors import ProviderApiError

logger = logging.getLogger(__name__)


class SquareClient:
    """Read access to the Square Orders API, used to backfill unknown orders."""

    def __init__(self, http_client: httpx.AsyncClient, base_url: str, access_token: str, api_version: str):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.api_version = api_version

    @property
    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Square-Version": self.api_version,
            "Accept": "application/json",
        }

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def retrieve_order(self, order_id: str) -> dict:
        response = await self.http_client.get(f"{self.base_url}/v2/orders/{order_id}", headers=self._headers)
        if response.status_code >= 400:
            raise ProviderApiError(
                f"Square order lookup for {order_id} failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        order = response.json().get("order")
        if not order:
            raise ProviderApiError(f"Square returned no order for {order_id}", status_code=response.status_code)
        return order
