"""
Tremendous Gift Card Service

Issues rewards by creating an order against the Tremendous v2 API.
"""

import logging
import time
from typing import Any

import httpx

from engagement_engine.providers.base import GiftCardService, IssueResult, ProviderError

logger = logging.getLogger(__name__)


class TremendousGiftCardService(GiftCardService):
    """
    Tremendous orders API client.

    ``reference`` becomes the order's external_id; Tremendous rejects a
    second order with the same external_id.
    """

    name = "tremendous"

    def __init__(
        self,
        api_key: str | None,
        funding_source_id: str | None,
        campaign_id: str | None = None,
        message_field_id: str | None = None,
        base_url: str = "https://testflight.tremendous.com/api/v2",
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.funding_source_id = funding_source_id
        self.campaign_id = campaign_id
        self.message_field_id = message_field_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _post(self, path: str, json_data: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}{path}",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json=json_data,
            )
        except httpx.RequestError as e:
            raise ProviderError(
                message=f"HTTP request failed: {e}",
                code="HTTP_ERROR",
                retryable=True,
            )

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            raise ProviderError(
                message=str(data.get("errors") or data.get("message") or response.text or "Unknown error"),
                code=str(response.status_code),
                details=data,
                retryable=response.status_code >= 500,
            )
        return data

    def build_order(
        self,
        amount: float,
        recipient_email: str,
        recipient_name: str,
        message: str | None,
        reference: str | None = None,
    ) -> dict[str, Any]:
        reward: dict[str, Any] = {
            "value": {"denomination": amount, "currency_code": "USD"},
            "delivery": {
                "method": "EMAIL",
                "recipient": {"email": recipient_email, "name": recipient_name},
            },
        }
        if self.campaign_id:
            reward["campaign_id"] = self.campaign_id
        if self.message_field_id:
            reward["custom_fields"] = [
                {
                    "id": self.message_field_id,
                    "value": message
                    or f"Congratulations! You've won ${amount:g} in the ColorCompete monthly drawing!",
                }
            ]

        return {
            "external_id": reference or f"colorcompete_monthly_{int(time.time() * 1000)}",
            "payment": {"funding_source_id": self.funding_source_id},
            "reward": reward,
        }

    async def issue(
        self,
        amount: float,
        recipient_email: str,
        recipient_name: str,
        message: str | None = None,
        reference: str | None = None,
    ) -> IssueResult:
        """Create an order for one EMAIL-delivered reward."""
        if not self.api_key:
            return IssueResult(success=False, error="TREMENDOUS_API_KEY not configured")
        if not self.funding_source_id:
            return IssueResult(success=False, error="TREMENDOUS_FUNDING_SOURCE_ID not configured")

        order = self.build_order(amount, recipient_email, recipient_name, message, reference)

        try:
            data = await self._post("/orders", order)
        except ProviderError as e:
            logger.error(
                f"Tremendous order failed: {e}",
                extra={"recipient": recipient_email, "code": e.code},
            )
            return IssueResult(success=False, error=str(e))

        order_data = data.get("order") or {}
        reward = order_data.get("reward") or {}

        logger.info(
            f"Gift card issued via Tremendous",
            extra={"recipient": recipient_email, "amount": amount, "order_id": order_data.get("id")},
        )

        return IssueResult(
            success=True,
            card_id=reward.get("id"),
            redeem_url=reward.get("redemption_url") or reward.get("redemption_link"),
            code=reward.get("credential_identifier") or reward.get("id"),
            order_id=order_data.get("id"),
            raw_response=data,
        )
