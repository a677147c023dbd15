"""
Engagement Engine Contracts

Trigger types, delivery event types and tiers. The stream envelope lives in
``engagement_engine.contracts.envelope``.
"""

from engagement_engine.contracts.event_types import (
    DeliveryEventType,
    Recurrence,
    Tier,
    TriggerType,
)

__all__ = [
    "DeliveryEventType",
    "Recurrence",
    "Tier",
    "TriggerType",
]
