"""
Stub Providers

Development providers that log all operations without making real API calls.
Useful for local development and testing.
"""

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from engagement_engine.providers.base import (
    DeliveryGateway,
    GiftCardService,
    IssueResult,
    ProviderMessageStats,
    SendResult,
)

logger = logging.getLogger(__name__)


class StubDeliveryGateway(DeliveryGateway):
    """
    Stub gateway for development and testing.

    - Records every send in ``sent_messages``
    - Generates fake message ids
    - ``fail_for`` addresses get an error result
    - ``raise_for`` addresses raise, like a transport bug would
    """

    name = "stub"

    def __init__(
        self,
        fail_for: set[str] | None = None,
        raise_for: set[str] | None = None,
        stats: list[ProviderMessageStats] | None = None,
    ):
        self.fail_for = set(fail_for or ())
        self.raise_for = set(raise_for or ())
        self.stats = list(stats or [])
        self.sent_messages: list[dict[str, Any]] = []

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
        to_name: str | None = None,
    ) -> SendResult:
        """Log and return success for an email."""
        if to in self.raise_for:
            raise RuntimeError(f"Stub transport error for {to}")

        message_id = f"stub_msg_{uuid4().hex[:16]}"
        self.sent_messages.append(
            {
                "to": to,
                "to_name": to_name,
                "subject": subject,
                "html": html,
                "text": text,
                "message_id": message_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

        logger.info(
            f"[STUB] Sending email",
            extra={"to": to, "subject": subject[:100], "message_id": message_id},
        )

        if to in self.fail_for:
            return SendResult(success=False, error="Simulated failure for testing")

        return SendResult(
            success=True,
            provider_message_id=message_id,
            raw_response={"stub": True, "id": message_id},
        )

    async def fetch_message_stats(self) -> list[ProviderMessageStats]:
        return list(self.stats)


class StubGiftCardService(GiftCardService):
    """
    Stub gift card service.

    ``fail`` makes every issue return an error result until it is reset.
    """

    name = "stub"

    def __init__(self, fail: bool = False, error: str = "Simulated gift card failure"):
        self.fail = fail
        self.error = error
        self.issued: list[dict[str, Any]] = []
        self.call_count = 0

    async def issue(
        self,
        amount: float,
        recipient_email: str,
        recipient_name: str,
        message: str | None = None,
        reference: str | None = None,
    ) -> IssueResult:
        self.call_count += 1

        logger.info(
            f"[STUB] Issuing gift card",
            extra={"recipient": recipient_email, "amount": amount, "reference": reference},
        )

        if self.fail:
            return IssueResult(success=False, error=self.error)

        card_id = f"stub_card_{uuid4().hex[:12]}"
        order_id = f"stub_order_{uuid4().hex[:12]}"
        self.issued.append(
            {
                "amount": amount,
                "recipient_email": recipient_email,
                "recipient_name": recipient_name,
                "message": message,
                "reference": reference,
                "card_id": card_id,
            }
        )
        return IssueResult(
            success=True,
            card_id=card_id,
            redeem_url=f"https://rewards.example.com/redeem/{card_id}",
            code=card_id.upper(),
            order_id=order_id,
        )
