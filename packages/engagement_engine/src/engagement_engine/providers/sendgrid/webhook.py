"""
SendGrid Webhook Utilities

SendGrid's event webhook posts an array of events with an exact ``event``
name and a Unix ``timestamp`` in seconds.
"""

import logging
from typing import Any

from engagement_engine.contracts.event_types import DeliveryEventType
from engagement_engine.providers.base import DeliveryEvent, WebhookAdapter
from engagement_engine.providers.sendpulse.webhook import as_event_list, parse_timestamp

logger = logging.getLogger(__name__)

EVENT_MAP: dict[str, DeliveryEventType] = {
    "delivered": DeliveryEventType.DELIVERED,
    "open": DeliveryEventType.OPENED,
    "click": DeliveryEventType.CLICKED,
    "bounce": DeliveryEventType.BOUNCED,
    "hard_bounce": DeliveryEventType.BOUNCED,
    "soft_bounce": DeliveryEventType.BOUNCED,
    "dropped": DeliveryEventType.FAILED,
}


class SendGridWebhookAdapter(WebhookAdapter):
    """Normalizes SendGrid event webhook payloads."""

    provider = "sendgrid"

    def parse(self, payload: Any) -> list[DeliveryEvent]:
        events: list[DeliveryEvent] = []

        for entry in as_event_list(payload):
            if not isinstance(entry, dict):
                continue

            message_id = (
                entry.get("sg_message_id")
                or entry.get("smtp_id")
                or entry.get("id")
                or entry.get("transmission_id")
            )
            if not message_id:
                logger.info("SendGrid event without message id, skipping")
                continue

            event_type = EVENT_MAP.get(str(entry.get("event", "")).lower())
            if event_type is None:
                continue

            metadata: dict[str, Any] = {
                "user_agent": entry.get("useragent") or entry.get("user_agent"),
                "ip": entry.get("ip"),
            }
            if event_type == DeliveryEventType.CLICKED:
                metadata["url"] = entry.get("url")
            if event_type in (DeliveryEventType.BOUNCED, DeliveryEventType.FAILED):
                metadata["reason"] = entry.get("reason") or entry.get("error")

            events.append(
                DeliveryEvent(
                    provider_message_id=str(message_id),
                    event_type=event_type,
                    timestamp=parse_timestamp(entry.get("timestamp")),
                    metadata={k: v for k, v in metadata.items() if v is not None},
                )
            )

        return events
