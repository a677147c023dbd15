"""
Delivery Event Producer

Publishes normalized delivery events to Redis Streams.
"""

import logging

import redis

from engagement_engine.contracts.envelope import DeliveryEnvelope
from engagement_engine.providers.base import DeliveryEvent
from engagement_engine.streams.groups import DELIVERY_DLQ_STREAM, DELIVERY_EVENTS_STREAM

logger = logging.getLogger(__name__)


class DeliveryEventProducer:
    """
    Producer for publishing delivery events to Redis Streams.
    """

    def __init__(self, redis_client: redis.Redis, max_len: int = 100000):
        self.redis = redis_client
        self.max_len = max_len

    def publish(self, provider: str, event: DeliveryEvent) -> str:
        """
        Publish one normalized webhook event.

        Returns:
            Stream message ID
        """
        envelope = DeliveryEnvelope.create(provider=provider, event=event)
        return self._publish(DELIVERY_EVENTS_STREAM, envelope)

    def publish_many(self, provider: str, events: list[DeliveryEvent]) -> list[str]:
        return [self.publish(provider, event) for event in events]

    def publish_to_dlq(self, envelope: DeliveryEnvelope, error: str) -> str:
        """Park an event that keeps failing."""
        envelope.metadata["error"] = error
        return self._publish(DELIVERY_DLQ_STREAM, envelope)

    def _publish(self, stream_name: str, envelope: DeliveryEnvelope) -> str:
        msg_id = self.redis.xadd(
            stream_name,
            envelope.to_stream_data(),
            maxlen=self.max_len,
            approximate=True,
        )
        logger.debug(
            f"Published delivery event to {stream_name}",
            extra={
                "stream_msg_id": msg_id,
                "provider": envelope.provider,
                "event_type": envelope.event.event_type.value,
                "provider_message_id": envelope.event.provider_message_id,
            },
        )
        return msg_id
