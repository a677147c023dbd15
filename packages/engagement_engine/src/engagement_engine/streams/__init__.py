"""
Engagement Redis Streams

Producer and consumer for normalized delivery events.
"""

from engagement_engine.streams.consumer import DeliveryEventConsumer
from engagement_engine.streams.groups import (
    DELIVERY_DLQ_STREAM,
    DELIVERY_EVENTS_STREAM,
    MAX_DELIVERIES,
    TRACKER_GROUP,
    StreamConfig,
    ensure_engagement_streams,
)
from engagement_engine.streams.producer import DeliveryEventProducer

__all__ = [
    "DELIVERY_DLQ_STREAM",
    "DELIVERY_EVENTS_STREAM",
    "MAX_DELIVERIES",
    "TRACKER_GROUP",
    "DeliveryEventConsumer",
    "DeliveryEventProducer",
    "StreamConfig",
    "ensure_engagement_streams",
]
