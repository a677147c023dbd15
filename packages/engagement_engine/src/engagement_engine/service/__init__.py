"""
Engagement Engine Services

Dispatcher, tracker, scheduler, automation runner and drawing engine,
plus the EngagementEngine facade that wires them together.
"""

from engagement_engine.service.automations import AutomationRunner, FireResult, FireStatus
from engagement_engine.service.dispatcher import (
    CampaignDispatcher,
    DispatchResult,
    MessageTemplate,
    Recipient,
    RecipientResult,
    SendMode,
    build_personalization,
)
from engagement_engine.service.drawing import DrawingOutcome, DrawingStatus, MonthlyDrawingEngine
from engagement_engine.service.engine import EngagementEngine
from engagement_engine.service.rate_limit import RateLimitedQueue
from engagement_engine.service.scheduler import AutomationScheduler, next_fire_time
from engagement_engine.service.tracker import ApplyResult, DeliveryStatusTracker, ReconcileSummary

__all__ = [
    "ApplyResult",
    "AutomationRunner",
    "AutomationScheduler",
    "CampaignDispatcher",
    "DeliveryStatusTracker",
    "DispatchResult",
    "DrawingOutcome",
    "DrawingStatus",
    "EngagementEngine",
    "FireResult",
    "FireStatus",
    "MessageTemplate",
    "MonthlyDrawingEngine",
    "RateLimitedQueue",
    "ReconcileSummary",
    "Recipient",
    "RecipientResult",
    "SendMode",
    "build_personalization",
    "next_fire_time",
]
