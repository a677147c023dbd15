"""
Delivery Event Consumer

Consumes delivery events from Redis Streams using XREADGROUP.
"""

import logging
from typing import Any

import redis

from engagement_engine.contracts.envelope import DeliveryEnvelope
from engagement_engine.streams.groups import DELIVERY_EVENTS_STREAM, TRACKER_GROUP

logger = logging.getLogger(__name__)


class DeliveryEventConsumer:
    """
    Consumer for reading delivery events from Redis Streams.

    Uses XREADGROUP for consumer group support and reliable delivery.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        consumer_name: str,
        group_name: str = TRACKER_GROUP,
        stream_name: str = DELIVERY_EVENTS_STREAM,
    ):
        self.redis = redis_client
        self.consumer_name = consumer_name
        self.group_name = group_name
        self.stream_name = stream_name

    def read_messages(self, count: int = 10, block_ms: int = 5000) -> list[tuple[str, DeliveryEnvelope]]:
        """
        Read new messages for this consumer.

        Returns:
            List of (message_id, envelope) tuples
        """
        try:
            result = self.redis.xreadgroup(
                self.group_name,
                self.consumer_name,
                {self.stream_name: ">"},
                count=count,
                block=block_ms,
            )
        except redis.ResponseError as e:
            if "NOGROUP" in str(e):
                logger.error(f"Consumer group {self.group_name} does not exist for {self.stream_name}")
            raise

        if not result:
            return []

        messages = []
        for _stream, entries in result:
            for msg_id, data in entries:
                try:
                    messages.append((msg_id, DeliveryEnvelope.from_stream_message(msg_id, data)))
                except (KeyError, ValueError) as e:
                    logger.error(f"Failed to parse message {msg_id}: {e}")
                    # ACK invalid messages to prevent blocking
                    self.ack(msg_id)
        return messages

    def ack(self, message_id: str) -> int:
        """Acknowledge a message as processed."""
        return self.redis.xack(self.stream_name, self.group_name, message_id)

    def get_pending(self, min_idle_ms: int = 60000, count: int = 100) -> list[dict[str, Any]]:
        """Pending messages that have been idle at least min_idle_ms."""
        try:
            pending_range = self.redis.xpending_range(
                self.stream_name,
                self.group_name,
                min="-",
                max="+",
                count=count,
            )
        except redis.ResponseError:
            return []

        return [
            {
                "message_id": entry["message_id"],
                "consumer": entry["consumer"],
                "idle_ms": entry["time_since_delivered"],
                "delivery_count": entry["times_delivered"],
            }
            for entry in pending_range
            if entry.get("time_since_delivered", 0) >= min_idle_ms
        ]

    def claim_messages(self, message_ids: list[str], min_idle_ms: int = 60000) -> list[tuple[str, DeliveryEnvelope]]:
        """Claim idle pending messages from other consumers."""
        if not message_ids:
            return []

        result = self.redis.xclaim(
            self.stream_name,
            self.group_name,
            self.consumer_name,
            min_idle_ms,
            message_ids,
        )

        messages = []
        for msg_id, data in result:
            if not data:
                # Deleted from the stream meanwhile
                self.ack(msg_id)
                continue
            try:
                messages.append((msg_id, DeliveryEnvelope.from_stream_message(msg_id, data)))
            except (KeyError, ValueError) as e:
                logger.error(f"Failed to parse claimed message {msg_id}: {e}")
                self.ack(msg_id)
        return messages
