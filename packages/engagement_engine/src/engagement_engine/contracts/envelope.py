"""
Delivery Event Envelope

Wrapper for normalized delivery events travelling from the webhook app to the
worker over a Redis Stream.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from engagement_engine.contracts.event_types import DeliveryEventType
from engagement_engine.providers.base import DeliveryEvent


@dataclass
class DeliveryEnvelope:
    """
    Stream envelope for one normalized delivery event.

    Attributes:
        event_id: Unique identifier for this envelope
        provider: Provider that reported the event (sendpulse, sendgrid, ...)
        received_at: When the webhook app received the event (UTC)
        event: The normalized delivery event
        version: Envelope contract version
        metadata: Transport metadata (stream message id, retry count, ...)
    """

    event_id: UUID
    provider: str
    received_at: datetime
    event: DeliveryEvent
    version: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, provider: str, event: DeliveryEvent) -> "DeliveryEnvelope":
        """Create a new envelope with auto-generated event_id and timestamp."""
        return cls(
            event_id=uuid4(),
            provider=provider,
            received_at=datetime.now(timezone.utc),
            event=event,
        )

    @classmethod
    def from_stream_message(cls, msg_id: str, data: dict[str, str]) -> "DeliveryEnvelope":
        """Parse a Redis Stream message into an envelope."""
        metadata = json.loads(data.get("metadata") or "{}")
        metadata["stream_msg_id"] = msg_id

        event = DeliveryEvent(
            provider_message_id=data["provider_message_id"],
            event_type=DeliveryEventType(data["event_type"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            metadata=json.loads(data.get("event_metadata") or "{}"),
        )

        return cls(
            event_id=UUID(data["event_id"]),
            provider=data.get("provider", "unknown"),
            received_at=(
                datetime.fromisoformat(data["received_at"])
                if data.get("received_at")
                else datetime.now(timezone.utc)
            ),
            event=event,
            version=int(data.get("version", "1")),
            metadata=metadata,
        )

    def to_stream_data(self) -> dict[str, str]:
        """Convert to dictionary suitable for Redis Stream (all string values)."""
        return {
            "event_id": str(self.event_id),
            "provider": self.provider,
            "received_at": self.received_at.isoformat(),
            "version": str(self.version),
            "provider_message_id": self.event.provider_message_id,
            "event_type": self.event.event_type.value,
            "timestamp": self.event.timestamp.isoformat(),
            "event_metadata": json.dumps(self.event.metadata, default=str),
            "metadata": json.dumps(self.metadata, default=str),
        }
