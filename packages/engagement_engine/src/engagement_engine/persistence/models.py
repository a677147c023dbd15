"""
Engagement Engine Database Models

Tables owned by the engagement engine.

Tables:
- engagement_automations: Scheduled and event-driven email automations
- engagement_campaigns: One-off broadcast campaigns with delivery counters
- engagement_delivery_logs: One row per (recipient, message) with lifecycle state
- engagement_monthly_drawings: One row per (month, year, tier) drawing
- engagement_members: Read-only view of the subscriber directory
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

EngagementBase = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class CampaignStatus(str, Enum):
    """Status of a campaign. Transitions only move forward."""

    DRAFT = "draft"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class DeliveryStatus(str, Enum):
    """Lifecycle status of a single delivered message."""

    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    FAILED = "failed"


class EngagementModelMixin:
    """Common fields for all engagement engine models."""

    id = Column(Uuid, primary_key=True, default=uuid4)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Automation(EngagementBase, EngagementModelMixin):
    """
    An email automation.

    Time-based triggers are fired by the scheduler; event-based triggers are
    fired by callers through fire_now. Only production sends touch
    total_sent and last_triggered.
    """

    __tablename__ = "engagement_automations"

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    trigger_type = Column(String(50), nullable=False)

    # Template
    subject = Column(String(500), nullable=False)
    html_content = Column(Text, nullable=False)
    text_content = Column(Text, nullable=True)

    # {time: "HH:MM", timezone, day_of_week (0 = Sunday), day_of_month}
    schedule = Column(JSONDocument, nullable=False, default=dict)
    # {gift_card_amount, gift_card_message}
    reward_settings = Column(JSONDocument, nullable=False, default=dict)
    # {subscription_tier, prize_amount, drawing_day}
    drawing_settings = Column(JSONDocument, nullable=False, default=dict)

    total_sent = Column(Integer, nullable=False, default=0)
    last_triggered = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_engagement_automations_trigger_active", "trigger_type", "is_active"),
    )


class Campaign(EngagementBase, EngagementModelMixin):
    """
    A one-off broadcast to a target audience.
    """

    __tablename__ = "engagement_campaigns"

    name = Column(String(255), nullable=False)
    subject = Column(String(500), nullable=True)
    html_content = Column(Text, nullable=True)
    text_content = Column(Text, nullable=True)

    # {all_members, subscription_tiers[], user_ids[]}
    target_audience = Column(JSONDocument, nullable=False, default=dict)

    recipient_count = Column(Integer, nullable=False, default=0)
    sent_count = Column(Integer, nullable=False, default=0)
    delivered_count = Column(Integer, nullable=False, default=0)
    opened_count = Column(Integer, nullable=False, default=0)
    clicked_count = Column(Integer, nullable=False, default=0)
    bounced_count = Column(Integer, nullable=False, default=0)

    status = Column(String(20), nullable=False, default=CampaignStatus.DRAFT.value)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_engagement_campaigns_status", "status"),)


class DeliveryLog(EngagementBase, EngagementModelMixin):
    """
    One message sent to one recipient.

    Provider message ids are used to correlate webhook events.
    """

    __tablename__ = "engagement_delivery_logs"

    recipient_user_id = Column(String(64), nullable=True, index=True)
    recipient_email = Column(String(320), nullable=False)
    campaign_id = Column(Uuid, nullable=True, index=True)
    automation_id = Column(Uuid, nullable=True, index=True)
    subject = Column(String(500), nullable=True)

    status = Column(String(20), nullable=False, default=DeliveryStatus.SENT.value)
    provider_message_id = Column(String(255), nullable=True)
    is_diagnostic = Column(Boolean, nullable=False, default=False)

    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    opened_at = Column(DateTime(timezone=True), nullable=True)
    clicked_at = Column(DateTime(timezone=True), nullable=True)
    bounced_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)

    # Append-only [{timestamp, user_agent, ip[, url]}]
    opens = Column(JSONDocument, nullable=False, default=list)
    clicks = Column(JSONDocument, nullable=False, default=list)

    __table_args__ = (
        UniqueConstraint("provider_message_id", name="uq_engagement_delivery_logs_provider_message_id"),
        Index("idx_engagement_delivery_logs_campaign_status", "campaign_id", "status"),
    )


class MonthlyDrawing(EngagementBase, EngagementModelMixin):
    """
    A monthly gift card drawing for one subscription tier.

    At most one row exists per (month, year, subscription_tier). The winner
    is fixed when the row is inserted; gift_card_details is only set once
    the card has been issued.
    """

    __tablename__ = "engagement_monthly_drawings"

    month = Column(Integer, nullable=False)  # 1-12
    year = Column(Integer, nullable=False)
    subscription_tier = Column(String(10), nullable=False)
    prize_amount = Column(Float, nullable=False)

    # [{user_id, email, name, entry_date}]
    participants = Column(JSONDocument, nullable=False, default=list)
    # {user_id, email, name}
    winner = Column(JSONDocument, nullable=True)
    drawing_date = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # {gift_card_id, gift_card_code, redeem_url, order_id, sent_at}
    gift_card_details = Column(JSONDocument, nullable=True)
    is_completed = Column(Boolean, nullable=False, default=False)

    disbursement_attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    disbursement_lease_until = Column(DateTime(timezone=True), nullable=True)

    automation_id = Column(Uuid, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "month", "year", "subscription_tier", name="uq_engagement_monthly_drawings_period_tier"
        ),
        Index("idx_engagement_monthly_drawings_tier_completed", "subscription_tier", "is_completed"),
    )

    @property
    def period_label(self) -> str:
        return f"{self.year}-{self.month:02d}"


class Member(EngagementBase, EngagementModelMixin):
    """
    Subscriber directory entry.

    Owned by the account/subscription service; the engine only reads it.
    """

    __tablename__ = "engagement_members"

    user_id = Column(String(64), nullable=False)
    email = Column(String(320), nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    username = Column(String(100), nullable=True)

    subscription_tier = Column(String(10), nullable=True)  # lite, pro, champ
    subscription_active = Column(Boolean, nullable=False, default=False)

    email_notifications = Column(Boolean, nullable=False, default=True)
    reward_notifications = Column(Boolean, nullable=False, default=True)

    # {submissions_count, wins_count, votes_count}
    metrics = Column(JSONDocument, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_engagement_members_user_id"),
        Index("idx_engagement_members_tier_active", "subscription_tier", "subscription_active"),
    )

    @property
    def display_name(self) -> str:
        full = " ".join(p for p in (self.first_name, self.last_name) if p)
        return full or self.username or self.email
