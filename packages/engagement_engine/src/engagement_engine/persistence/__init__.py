"""
Engagement Engine Persistence

SQLAlchemy models and repository for engagement engine tables.
These tables are OWNED by the engagement engine; the member directory is
only read.
"""

from basecore.db import get_engine

from engagement_engine.persistence.models import (
    Automation,
    Campaign,
    CampaignStatus,
    DeliveryLog,
    DeliveryStatus,
    EngagementBase,
    Member,
    MonthlyDrawing,
)
from engagement_engine.persistence.repo import EngagementRepository


def init_db(engine=None) -> None:
    """Create all engagement tables that do not exist yet."""
    EngagementBase.metadata.create_all(bind=engine or get_engine())


__all__ = [
    "Automation",
    "Campaign",
    "CampaignStatus",
    "DeliveryLog",
    "DeliveryStatus",
    "EngagementBase",
    "EngagementRepository",
    "Member",
    "MonthlyDrawing",
    "init_db",
]
