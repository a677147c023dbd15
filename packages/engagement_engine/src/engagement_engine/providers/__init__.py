"""
Engagement Providers

Delivery gateways, gift card services and webhook adapters.
Supports SendPulse and Tremendous (production) and Stub (development).
"""

from basecore.settings import get_settings

from engagement_engine.providers.base import (
    DeliveryEvent,
    DeliveryGateway,
    GiftCardService,
    IssueResult,
    ProviderError,
    ProviderMessageStats,
    SendResult,
    WebhookAdapter,
)
from engagement_engine.providers.sendgrid.webhook import SendGridWebhookAdapter
from engagement_engine.providers.sendpulse.client import SendPulseDeliveryGateway
from engagement_engine.providers.sendpulse.webhook import SendPulseWebhookAdapter
from engagement_engine.providers.stub.client import StubDeliveryGateway, StubGiftCardService
from engagement_engine.providers.tremendous.client import TremendousGiftCardService

WEBHOOK_ADAPTERS: dict[str, type[WebhookAdapter]] = {
    "sendpulse": SendPulseWebhookAdapter,
    "sendgrid": SendGridWebhookAdapter,
}


def get_delivery_gateway(provider_type: str | None = None) -> DeliveryGateway:
    """
    Get the configured delivery gateway.

    Uses DELIVERY_PROVIDER if provider_type is not specified.
    """
    settings = get_settings()
    provider_type = provider_type or settings.DELIVERY_PROVIDER

    if provider_type == "sendpulse":
        return SendPulseDeliveryGateway(
            client_id=settings.SENDPULSE_CLIENT_ID,
            client_secret=settings.SENDPULSE_CLIENT_SECRET,
            from_email=settings.FROM_EMAIL,
            from_name=settings.FROM_NAME,
            token_url=settings.SENDPULSE_TOKEN_URL,
            send_url=settings.SENDPULSE_SEND_URL,
        )
    return StubDeliveryGateway()


def get_gift_card_service(provider_type: str | None = None) -> GiftCardService:
    """
    Get the configured gift card service.

    Uses GIFT_CARD_PROVIDER if provider_type is not specified.
    """
    settings = get_settings()
    provider_type = provider_type or settings.GIFT_CARD_PROVIDER

    if provider_type == "tremendous":
        return TremendousGiftCardService(
            api_key=settings.TREMENDOUS_API_KEY,
            funding_source_id=settings.TREMENDOUS_FUNDING_SOURCE_ID,
            campaign_id=settings.TREMENDOUS_CAMPAIGN_ID,
            message_field_id=settings.TREMENDOUS_MESSAGE_FIELD_ID,
            base_url=settings.TREMENDOUS_BASE_URL,
        )
    return StubGiftCardService()


def get_webhook_adapter(provider: str) -> WebhookAdapter:
    """Adapter for a webhook provider name; KeyError for unknown ones."""
    return WEBHOOK_ADAPTERS[provider]()


__all__ = [
    "DeliveryEvent",
    "DeliveryGateway",
    "GiftCardService",
    "IssueResult",
    "ProviderError",
    "ProviderMessageStats",
    "SendResult",
    "WebhookAdapter",
    "get_delivery_gateway",
    "get_gift_card_service",
    "get_webhook_adapter",
]
