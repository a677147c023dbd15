"""
Engagement Provider Base

Abstract interfaces for the external collaborators the engine talks to:

- DeliveryGateway: sends email and reports per-message statistics
  (SendPulse, Stub)
- GiftCardService: issues reward gift cards (Tremendous, Stub)
- WebhookAdapter: maps a provider's raw webhook payload to DeliveryEvents
  (SendPulse, SendGrid)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from engagement_engine.contracts.event_types import DeliveryEventType
from engagement_engine.errors import ProviderError

__all__ = [
    "DeliveryEvent",
    "DeliveryGateway",
    "GiftCardService",
    "IssueResult",
    "ProviderError",
    "ProviderMessageStats",
    "SendResult",
    "WebhookAdapter",
]


@dataclass
class DeliveryEvent:
    """
    Normalized delivery event.

    Provider-agnostic representation of a webhook event. ``metadata`` carries
    user_agent, ip and url where the provider reports them.
    """

    provider_message_id: str
    event_type: DeliveryEventType
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SendResult:
    """
    Response from the delivery gateway after sending one message.
    """

    success: bool
    provider_message_id: str | None = None
    error: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderMessageStats:
    """
    Per-message statistics pulled from a provider for reconciliation.
    """

    provider_message_id: str
    status: str | None = None
    opened: bool = False
    clicked: bool = False
    error: str | None = None


@dataclass
class IssueResult:
    """
    Response from the gift card service.
    """

    success: bool
    card_id: str | None = None
    redeem_url: str | None = None
    code: str | None = None
    order_id: str | None = None
    error: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


class DeliveryGateway(ABC):
    """
    Abstract interface for email delivery providers.
    """

    name: str = "base"

    @abstractmethod
    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
        to_name: str | None = None,
    ) -> SendResult:
        """
        Send one email.

        Args:
            to: Recipient email address
            subject: Rendered subject
            html: Rendered HTML body
            text: Plain-text body (derived from HTML when omitted)
            to_name: Recipient display name

        Returns:
            SendResult with the provider message id if accepted
        """
        ...

    @abstractmethod
    async def fetch_message_stats(self) -> list[ProviderMessageStats]:
        """
        Pull recent per-message statistics.

        Raises:
            ProviderError: If the provider cannot be reached
        """
        ...

    async def close(self) -> None:
        """Release HTTP resources."""
        return None


class GiftCardService(ABC):
    """
    Abstract interface for reward gift card providers.
    """

    name: str = "base"

    @abstractmethod
    async def issue(
        self,
        amount: float,
        recipient_email: str,
        recipient_name: str,
        message: str | None = None,
        reference: str | None = None,
    ) -> IssueResult:
        """
        Issue a gift card to a recipient.

        Args:
            amount: Card value in USD
            recipient_email: Where the provider delivers the card
            recipient_name: Recipient display name
            message: Personal message printed on the card
            reference: Caller idempotency key, passed through to the provider

        Returns:
            IssueResult; failures are reported with success=False
        """
        ...

    async def close(self) -> None:
        """Release HTTP resources."""
        return None


class WebhookAdapter(ABC):
    """
    Maps one provider's webhook payload shape to DeliveryEvents.
    """

    provider: str = "base"

    @abstractmethod
    def parse(self, payload: Any) -> list[DeliveryEvent]:
        """
        Normalize a webhook payload.

        Entries that cannot be correlated (no message id) or whose type is
        not a tracked lifecycle event are skipped.

        Raises:
            ProviderError: If the payload is not a JSON object or array
        """
        ...
