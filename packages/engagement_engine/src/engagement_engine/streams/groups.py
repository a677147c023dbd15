"""
Redis Stream Configuration

Stream names, consumer groups, and setup utilities.
"""

import logging
from dataclasses import dataclass

import redis

from basecore.redis import ensure_stream_group

logger = logging.getLogger(__name__)

# Normalized provider webhook events, published by the webhook app
DELIVERY_EVENTS_STREAM = "engagement:delivery-events"
# Events that failed to apply more than MAX_DELIVERIES times
DELIVERY_DLQ_STREAM = "engagement:delivery-events:dlq"

# Consumer group
TRACKER_GROUP = "engagement-tracker"

MAX_DELIVERIES = 5


@dataclass
class StreamConfig:
    """Configuration for a stream and its consumer group."""

    stream_name: str
    group_name: str
    max_len: int = 100000
    start_id: str = "0"  # "0" = all history, "$" = new only


STREAM_CONFIGS = [
    StreamConfig(DELIVERY_EVENTS_STREAM, TRACKER_GROUP),
    StreamConfig(DELIVERY_DLQ_STREAM, TRACKER_GROUP),
]


def ensure_engagement_streams(client: redis.Redis) -> None:
    """
    Ensure all engagement streams and consumer groups exist.

    Called on startup by the webhook app and the worker.
    """
    for config in STREAM_CONFIGS:
        if ensure_stream_group(client, config.stream_name, config.group_name, config.start_id):
            logger.info(f"Created consumer group '{config.group_name}' for stream '{config.stream_name}'")
