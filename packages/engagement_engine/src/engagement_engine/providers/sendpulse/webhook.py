"""
SendPulse Webhook Utilities

SendPulse posts either a single event object or an array of them. The event
name lives in ``event`` or ``type`` and is matched by substring
("delivered", "opened", "email_click", "hard_bounce", ...).
"""

import logging
from datetime import datetime, timezone
from typing import Any

from engagement_engine.contracts.event_types import DeliveryEventType
from engagement_engine.providers.base import DeliveryEvent, ProviderError, WebhookAdapter

logger = logging.getLogger(__name__)

# Checked in order; "open" must not shadow "click" etc.
_TYPE_MATCHERS: list[tuple[str, DeliveryEventType]] = [
    ("deliver", DeliveryEventType.DELIVERED),
    ("open", DeliveryEventType.OPENED),
    ("click", DeliveryEventType.CLICKED),
    ("bounce", DeliveryEventType.BOUNCED),
    ("fail", DeliveryEventType.FAILED),
]


def parse_timestamp(value: Any) -> datetime:
    """Unix seconds (or ISO string) to an aware datetime; now() when absent."""
    if value in (None, ""):
        return datetime.now(timezone.utc)
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError):
        pass
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def as_event_list(payload: Any) -> list[Any]:
    """Accept an object or an array of objects."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        return [payload]
    raise ProviderError(
        "Webhook payload must be a JSON object or array",
        code="MALFORMED_PAYLOAD",
        details={"type": type(payload).__name__},
    )


def match_event_type(name: str) -> DeliveryEventType | None:
    name = name.lower()
    for needle, event_type in _TYPE_MATCHERS:
        if needle in name:
            return event_type
    return None


class SendPulseWebhookAdapter(WebhookAdapter):
    """Normalizes SendPulse webhook payloads."""

    provider = "sendpulse"

    def parse(self, payload: Any) -> list[DeliveryEvent]:
        events: list[DeliveryEvent] = []

        for entry in as_event_list(payload):
            if not isinstance(entry, dict):
                logger.warning("Skipping non-object SendPulse event")
                continue

            message_id = entry.get("id") or entry.get("smtp_id") or entry.get("transmission_id")
            if not message_id:
                logger.info("SendPulse event without message id, skipping")
                continue

            event_type = match_event_type(str(entry.get("event") or entry.get("type") or ""))
            if event_type is None:
                logger.debug(
                    "Ignoring SendPulse event type",
                    extra={"event": entry.get("event") or entry.get("type")},
                )
                continue

            metadata = {
                "user_agent": entry.get("user_agent") or entry.get("useragent"),
                "ip": entry.get("ip"),
            }
            if event_type == DeliveryEventType.CLICKED:
                metadata["url"] = entry.get("url")
            if event_type in (DeliveryEventType.BOUNCED, DeliveryEventType.FAILED):
                metadata["reason"] = entry.get("error") or entry.get("reason")

            events.append(
                DeliveryEvent(
                    provider_message_id=str(message_id),
                    event_type=event_type,
                    timestamp=parse_timestamp(entry.get("timestamp")),
                    metadata={k: v for k, v in metadata.items() if v is not None},
                )
            )

        return events
