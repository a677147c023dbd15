"""
Engagement Repository

Repository pattern for engagement engine database operations.
Counter updates, status transitions and the drawing lease are single
conditional UPDATE statements so concurrent workers never lose an increment
or both win a transition.
"""

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from engagement_engine.persistence.models import (
    Automation,
    Campaign,
    CampaignStatus,
    DeliveryLog,
    DeliveryStatus,
    Member,
    MonthlyDrawing,
    utcnow,
)

CAMPAIGN_COUNTERS = (
    "recipient_count",
    "sent_count",
    "delivered_count",
    "opened_count",
    "clicked_count",
    "bounced_count",
)

# Statuses that imply a stage was reached
_REACHED_DELIVERED = (DeliveryStatus.DELIVERED.value, DeliveryStatus.OPENED.value, DeliveryStatus.CLICKED.value)
_REACHED_OPENED = (DeliveryStatus.OPENED.value, DeliveryStatus.CLICKED.value)

_NO_SYNC = {"synchronize_session": False}


class EngagementRepository:
    """Repository for engagement engine database operations."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # Automations
    # =========================================================================

    def get_automation(self, automation_id: UUID) -> Automation | None:
        """Get automation by ID."""
        return self.db.query(Automation).filter(Automation.id == automation_id).first()

    def get_active_automation_by_trigger(self, trigger_type: str) -> Automation | None:
        """Oldest active automation for a trigger type."""
        return (
            self.db.query(Automation)
            .filter(
                Automation.trigger_type == str(trigger_type),
                Automation.is_active == True,  # noqa: E712
            )
            .order_by(Automation.created_at.asc())
            .first()
        )

    def list_automations(self, active_only: bool = False) -> list[Automation]:
        query = self.db.query(Automation)
        if active_only:
            query = query.filter(Automation.is_active == True)  # noqa: E712
        return query.order_by(Automation.created_at.asc()).all()

    def create_automation(
        self,
        name: str,
        trigger_type: str,
        subject: str,
        html_content: str,
        text_content: str | None = None,
        schedule: dict[str, Any] | None = None,
        reward_settings: dict[str, Any] | None = None,
        drawing_settings: dict[str, Any] | None = None,
        description: str | None = None,
        is_active: bool = True,
    ) -> Automation:
        """Create a new automation."""
        automation = Automation(
            name=name,
            description=description,
            trigger_type=str(trigger_type),
            subject=subject,
            html_content=html_content,
            text_content=text_content,
            schedule=schedule or {},
            reward_settings=reward_settings or {},
            drawing_settings=drawing_settings or {},
            is_active=is_active,
        )
        self.db.add(automation)
        self.db.flush()
        return automation

    def record_automation_sends(self, automation_id: UUID, count: int, at: datetime) -> None:
        """Atomically add to total_sent and stamp last_triggered."""
        self.db.execute(
            update(Automation)
            .where(Automation.id == automation_id)
            .values(total_sent=Automation.total_sent + count, last_triggered=at, updated_at=at)
            .execution_options(**_NO_SYNC)
        )

    # =========================================================================
    # Campaigns
    # =========================================================================

    def get_campaign(self, campaign_id: UUID) -> Campaign | None:
        """Get campaign by ID."""
        return self.db.query(Campaign).filter(Campaign.id == campaign_id).first()

    def create_campaign(
        self,
        name: str,
        subject: str | None,
        html_content: str | None,
        text_content: str | None = None,
        target_audience: dict[str, Any] | None = None,
    ) -> Campaign:
        """Create a new draft campaign."""
        campaign = Campaign(
            name=name,
            subject=subject,
            html_content=html_content,
            text_content=text_content,
            target_audience=target_audience or {},
            status=CampaignStatus.DRAFT.value,
        )
        self.db.add(campaign)
        self.db.flush()
        return campaign

    def transition_campaign(
        self,
        campaign_id: UUID,
        from_status: CampaignStatus,
        to_status: CampaignStatus,
        **values: Any,
    ) -> bool:
        """
        Move a campaign between statuses.

        Returns:
            False if the campaign was not in from_status
        """
        result = self.db.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id, Campaign.status == from_status.value)
            .values(status=to_status.value, updated_at=utcnow(), **values)
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount == 1

    def increment_campaign_counters(self, campaign_id: UUID, **deltas: int) -> None:
        """Atomically add to one or more campaign counters."""
        values = {
            name: getattr(Campaign, name) + delta
            for name, delta in deltas.items()
            if name in CAMPAIGN_COUNTERS and delta
        }
        if not values:
            return
        self.db.execute(
            update(Campaign)
            .where(Campaign.id == campaign_id)
            .values(**values)
            .execution_options(**_NO_SYNC)
        )

    def count_campaign_stages(self, campaign_id: UUID) -> dict[str, int]:
        """Recount counters from the campaign's production delivery logs."""
        base = self.db.query(func.count(DeliveryLog.id)).filter(
            DeliveryLog.campaign_id == campaign_id,
            DeliveryLog.is_diagnostic == False,  # noqa: E712
        )
        return {
            "sent_count": base.filter(DeliveryLog.status != DeliveryStatus.FAILED.value).scalar() or 0,
            "delivered_count": base.filter(DeliveryLog.status.in_(_REACHED_DELIVERED)).scalar() or 0,
            "opened_count": base.filter(DeliveryLog.status.in_(_REACHED_OPENED)).scalar() or 0,
            "clicked_count": base.filter(DeliveryLog.status == DeliveryStatus.CLICKED.value).scalar() or 0,
            "bounced_count": base.filter(DeliveryLog.status == DeliveryStatus.BOUNCED.value).scalar() or 0,
        }

    def raise_campaign_counters(self, campaign: Campaign, counts: dict[str, int]) -> bool:
        """Set counters to max(current, recount). Returns True if any changed."""
        self.db.refresh(campaign)
        changed = False
        for name, value in counts.items():
            if value > (getattr(campaign, name) or 0):
                setattr(campaign, name, value)
                changed = True
        return changed

    # =========================================================================
    # Members
    # =========================================================================

    def get_member(self, user_id: str) -> Member | None:
        return self.db.query(Member).filter(Member.user_id == str(user_id)).first()

    def add_member(self, user_id: str, email: str, **fields: Any) -> Member:
        """Create a directory entry (directory sync and tests)."""
        member = Member(user_id=str(user_id), email=email, **fields)
        self.db.add(member)
        self.db.flush()
        return member

    def list_members(self, user_ids: list[str] | None = None) -> list[Member]:
        query = self.db.query(Member).filter(Member.email != "")
        if user_ids is not None:
            query = query.filter(Member.user_id.in_([str(u) for u in user_ids]))
        return query.order_by(Member.created_at.asc(), Member.user_id.asc()).all()

    def resolve_audience(self, target_audience: dict[str, Any]) -> list[Member]:
        """
        Members a campaign is addressed to.

        all_members wins over the filters; otherwise subscription_tiers and
        user_ids narrow the directory together. Members who turned email
        notifications off are excluded.
        """
        query = self.db.query(Member).filter(
            Member.email != "",
            Member.email_notifications == True,  # noqa: E712
        )

        if not target_audience.get("all_members"):
            tiers = target_audience.get("subscription_tiers") or []
            user_ids = target_audience.get("user_ids") or []
            if not tiers and not user_ids:
                return []
            if tiers:
                query = query.filter(Member.subscription_tier.in_([str(t) for t in tiers]))
            if user_ids:
                query = query.filter(Member.user_id.in_([str(u) for u in user_ids]))

        return query.order_by(Member.created_at.asc(), Member.user_id.asc()).all()

    def list_tier_subscribers(self, tier: str) -> list[Member]:
        """
        Active subscribers of a tier who accept reward notifications.

        Email address validity is checked by the caller.
        """
        return (
            self.db.query(Member)
            .filter(
                Member.subscription_tier == str(tier),
                Member.subscription_active == True,  # noqa: E712
                Member.reward_notifications == True,  # noqa: E712
            )
            .order_by(Member.created_at.asc(), Member.user_id.asc())
            .all()
        )

    # =========================================================================
    # Delivery Logs
    # =========================================================================

    def create_delivery_log(
        self,
        recipient_email: str,
        subject: str,
        status: DeliveryStatus,
        recipient_user_id: str | None = None,
        campaign_id: UUID | None = None,
        automation_id: UUID | None = None,
        provider_message_id: str | None = None,
        failure_reason: str | None = None,
        is_diagnostic: bool = False,
    ) -> DeliveryLog:
        """Record one send attempt."""
        now = utcnow()
        log = DeliveryLog(
            recipient_user_id=str(recipient_user_id) if recipient_user_id else None,
            recipient_email=recipient_email,
            campaign_id=campaign_id,
            automation_id=automation_id,
            subject=subject,
            status=status.value,
            provider_message_id=provider_message_id,
            failure_reason=failure_reason,
            is_diagnostic=is_diagnostic,
            sent_at=now if status == DeliveryStatus.SENT else None,
            opens=[],
            clicks=[],
        )
        self.db.add(log)
        self.db.flush()
        return log

    def get_log_by_provider_id(self, provider_message_id: str, for_update: bool = False) -> DeliveryLog | None:
        """
        Get delivery log by provider message ID (for event correlation).

        for_update locks the row on databases that support it.
        """
        query = self.db.query(DeliveryLog).filter(DeliveryLog.provider_message_id == provider_message_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def list_logs(
        self,
        campaign_id: UUID | None = None,
        automation_id: UUID | None = None,
        limit: int = 100,
    ) -> list[DeliveryLog]:
        query = self.db.query(DeliveryLog)
        if campaign_id:
            query = query.filter(DeliveryLog.campaign_id == campaign_id)
        if automation_id:
            query = query.filter(DeliveryLog.automation_id == automation_id)
        return query.order_by(DeliveryLog.created_at.desc()).limit(limit).all()

    # =========================================================================
    # Monthly Drawings
    # =========================================================================

    def get_drawing(self, month: int, year: int, tier: str) -> MonthlyDrawing | None:
        """Get the drawing for a period and tier, bypassing stale identity-map state."""
        return (
            self.db.query(MonthlyDrawing)
            .filter(
                MonthlyDrawing.month == month,
                MonthlyDrawing.year == year,
                MonthlyDrawing.subscription_tier == str(tier),
            )
            .populate_existing()
            .first()
        )

    def get_drawing_by_id(self, drawing_id: UUID) -> MonthlyDrawing | None:
        return (
            self.db.query(MonthlyDrawing)
            .filter(MonthlyDrawing.id == drawing_id)
            .populate_existing()
            .first()
        )

    def insert_drawing_if_absent(
        self,
        month: int,
        year: int,
        tier: str,
        prize_amount: float,
        participants: list[dict[str, Any]],
        winner: dict[str, Any],
        drawing_date: datetime,
        automation_id: UUID | None = None,
    ) -> tuple[MonthlyDrawing, bool]:
        """
        Insert a drawing unless one exists for (month, year, tier).

        Returns:
            Tuple of (stored drawing, created). When another worker won the
            race the stored row, with its winner, is returned.
        """
        now = utcnow()
        values = {
            "id": uuid4(),
            "month": month,
            "year": year,
            "subscription_tier": str(tier),
            "prize_amount": prize_amount,
            "participants": participants,
            "winner": winner,
            "drawing_date": drawing_date,
            "is_completed": False,
            "disbursement_attempts": 0,
            "automation_id": automation_id,
            "created_at": now,
            "updated_at": now,
        }

        dialect = self.db.get_bind().dialect.name
        if dialect in ("postgresql", "sqlite"):
            if dialect == "postgresql":
                from sqlalchemy.dialects.postgresql import insert
            else:
                from sqlalchemy.dialects.sqlite import insert

            stmt = (
                insert(MonthlyDrawing)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["month", "year", "subscription_tier"])
            )
            created = self.db.execute(stmt).rowcount == 1
        else:
            try:
                with self.db.begin_nested():
                    self.db.add(MonthlyDrawing(**values))
                created = True
            except IntegrityError:
                created = False

        return self.get_drawing(month, year, tier), created

    def claim_disbursement(self, drawing_id: UUID, lease_seconds: int, now: datetime | None = None) -> bool:
        """
        Take the disbursement lease for an incomplete drawing.

        Succeeds only if no other worker holds an unexpired lease.
        """
        now = now or utcnow()
        result = self.db.execute(
            update(MonthlyDrawing)
            .where(
                MonthlyDrawing.id == drawing_id,
                MonthlyDrawing.is_completed == False,  # noqa: E712
                or_(
                    MonthlyDrawing.disbursement_lease_until.is_(None),
                    MonthlyDrawing.disbursement_lease_until < now,
                ),
            )
            .values(
                disbursement_lease_until=now + timedelta(seconds=lease_seconds),
                updated_at=now,
            )
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount == 1

    def complete_drawing(self, drawing_id: UUID, gift_card_details: dict[str, Any]) -> bool:
        """Store card details and mark completed in one statement."""
        now = utcnow()
        result = self.db.execute(
            update(MonthlyDrawing)
            .where(
                MonthlyDrawing.id == drawing_id,
                MonthlyDrawing.is_completed == False,  # noqa: E712
            )
            .values(
                gift_card_details=gift_card_details,
                is_completed=True,
                last_error=None,
                disbursement_attempts=MonthlyDrawing.disbursement_attempts + 1,
                disbursement_lease_until=None,
                updated_at=now,
            )
            .execution_options(**_NO_SYNC)
        )
        return result.rowcount == 1

    def record_disbursement_failure(self, drawing_id: UUID, error: str) -> None:
        """Count the failed attempt, keep the error and release the lease."""
        self.db.execute(
            update(MonthlyDrawing)
            .where(MonthlyDrawing.id == drawing_id)
            .values(
                disbursement_attempts=MonthlyDrawing.disbursement_attempts + 1,
                last_error=error,
                disbursement_lease_until=None,
                updated_at=utcnow(),
            )
            .execution_options(**_NO_SYNC)
        )

    def list_drawings(self, tier: str | None = None, limit: int = 12) -> list[MonthlyDrawing]:
        """Most recent drawings first."""
        query = self.db.query(MonthlyDrawing)
        if tier:
            query = query.filter(MonthlyDrawing.subscription_tier == str(tier))
        return (
            query.order_by(MonthlyDrawing.year.desc(), MonthlyDrawing.month.desc())
            .limit(limit)
            .all()
        )

    def drawing_stats(self, tiers: list[str]) -> dict[str, dict[str, Any]]:
        """
        Per-tier drawing statistics.

        Returns:
            {tier: {total_drawings, completed_drawings, total_prize_money,
            average_participants}}
        """
        stats: dict[str, dict[str, Any]] = {}
        for tier in tiers:
            drawings = (
                self.db.query(MonthlyDrawing)
                .filter(MonthlyDrawing.subscription_tier == str(tier))
                .all()
            )
            completed = [d for d in drawings if d.is_completed]
            stats[str(tier)] = {
                "total_drawings": len(drawings),
                "completed_drawings": len(completed),
                "total_prize_money": sum(d.prize_amount for d in completed),
                "average_participants": (
                    round(sum(len(d.participants or []) for d in drawings) / len(drawings), 2)
                    if drawings
                    else 0
                ),
            }
        return stats
