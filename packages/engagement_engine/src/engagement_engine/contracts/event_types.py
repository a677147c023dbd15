"""
Engagement Event Types

Trigger types for automations, delivery event types for the tracker,
and the subscription tiers that drawings run for.
"""

from enum import Enum


class Recurrence(str, Enum):
    """How often a time-based automation fires."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class TriggerType(str, Enum):
    """
    Automation trigger types.

    Time-based types are fired by the scheduler's timers.
    Event-based types are fired by an external collaborator via fire_now.
    """

    # Time-based
    DAILY_WINNER = "daily_winner"
    WEEKLY_SUMMARY = "weekly_summary"
    MONTHLY_WINNER = "monthly_winner"
    MONTHLY_DRAWING_LITE = "monthly_drawing_lite"
    MONTHLY_DRAWING_PRO = "monthly_drawing_pro"
    MONTHLY_DRAWING_CHAMP = "monthly_drawing_champ"

    # Event-based
    WINNER_REWARD = "winner_reward"
    WELCOME = "welcome"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    CONTEST_ANNOUNCEMENT = "contest_announcement"
    VOTING_RESULTS = "voting_results"
    COMMENT_FEEDBACK = "comment_feedback"
    ADMIN_BROADCAST = "admin_broadcast"
    MONTHLY_DRAWING_LITE_PARTICIPANT = "monthly_drawing_lite_participant"
    MONTHLY_DRAWING_PRO_PARTICIPANT = "monthly_drawing_pro_participant"
    MONTHLY_DRAWING_CHAMP_PARTICIPANT = "monthly_drawing_champ_participant"

    def __str__(self) -> str:
        return self.value

    @property
    def recurrence(self) -> Recurrence | None:
        """Recurrence for time-based triggers, None for event-based ones."""
        return TIME_BASED_TRIGGERS.get(self)

    @property
    def is_time_based(self) -> bool:
        return self in TIME_BASED_TRIGGERS

    @property
    def drawing_tier(self) -> "Tier | None":
        """Tier for monthly_drawing_<tier> triggers."""
        return DRAWING_TRIGGERS.get(self)


class Tier(str, Enum):
    """Subscription tiers eligible for monthly drawings."""

    LITE = "lite"
    PRO = "pro"
    CHAMP = "champ"

    def __str__(self) -> str:
        return self.value

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @property
    def drawing_trigger(self) -> TriggerType:
        return TriggerType(f"monthly_drawing_{self.value}")

    @property
    def participant_trigger(self) -> TriggerType:
        return TriggerType(f"monthly_drawing_{self.value}_participant")


class DeliveryEventType(str, Enum):
    """Normalized delivery lifecycle events from providers."""

    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


TIME_BASED_TRIGGERS: dict[TriggerType, Recurrence] = {
    TriggerType.DAILY_WINNER: Recurrence.DAILY,
    TriggerType.WEEKLY_SUMMARY: Recurrence.WEEKLY,
    TriggerType.MONTHLY_WINNER: Recurrence.MONTHLY,
    TriggerType.MONTHLY_DRAWING_LITE: Recurrence.MONTHLY,
    TriggerType.MONTHLY_DRAWING_PRO: Recurrence.MONTHLY,
    TriggerType.MONTHLY_DRAWING_CHAMP: Recurrence.MONTHLY,
}

DRAWING_TRIGGERS: dict[TriggerType, Tier] = {
    TriggerType.MONTHLY_DRAWING_LITE: Tier.LITE,
    TriggerType.MONTHLY_DRAWING_PRO: Tier.PRO,
    TriggerType.MONTHLY_DRAWING_CHAMP: Tier.CHAMP,
}
