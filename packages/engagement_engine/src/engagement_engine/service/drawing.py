"""
Monthly Drawing Engine

Runs the per-tier monthly gift card drawing with "exactly once per period"
semantics:

1. A completed drawing for (month, year, tier) is returned unchanged.
2. Otherwise eligible subscribers are snapshotted and a winner is picked
   uniformly at random, then stored with an insert-if-absent. A worker that
   loses the insert race adopts the stored winner.
3. Disbursement runs under a lease so concurrent retries never issue two
   cards. A failed disbursement leaves the winner in place for a retry.
4. On success the winner, and optionally the other participants, are
   notified through the dispatcher.
"""

import logging
import random
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import pytz
from email_validator import EmailNotValidError, validate_email
from sqlalchemy.orm import Session

from basecore.settings import Settings, get_settings

from engagement_engine.contracts.event_types import Tier
from engagement_engine.errors import ConcurrencyConflict, DisbursementError
from engagement_engine.persistence.models import Automation, Member, MonthlyDrawing, as_utc
from engagement_engine.persistence.repo import EngagementRepository
from engagement_engine.providers.base import GiftCardService
from engagement_engine.service.dispatcher import (
    CampaignDispatcher,
    DispatchResult,
    MessageTemplate,
    Recipient,
    SendMode,
)
from engagement_engine.templates.registry import template_registry, wrap_document

logger = logging.getLogger(__name__)

WINNER_TEMPLATE = "monthly_drawing_winner"


class DrawingStatus:
    COMPLETED = "completed"
    ALREADY_COMPLETED = "already_completed"
    NO_ELIGIBLE = "no_eligible_participants"
    DISBURSEMENT_FAILED = "disbursement_failed"
    IN_PROGRESS = "disbursement_in_progress"


@dataclass
class DrawingOutcome:
    status: str
    tier: str
    month: int
    year: int
    drawing_id: UUID | None = None
    winner: dict[str, Any] | None = None
    participants_count: int = 0
    prize_amount: float = 0.0
    gift_card: dict[str, Any] | None = None
    error: str | None = None
    winner_notified: bool = False
    participants_notified: int = 0

    @property
    def success(self) -> bool:
        return self.status in (
            DrawingStatus.COMPLETED,
            DrawingStatus.ALREADY_COMPLETED,
            DrawingStatus.NO_ELIGIBLE,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["drawing_id"] = str(self.drawing_id) if self.drawing_id else None
        data["success"] = self.success
        return data


def is_valid_email(address: str | None) -> bool:
    if not address:
        return False
    try:
        validate_email(address, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def participant_entry(member: Member, entry_date: datetime) -> dict[str, Any]:
    return {
        "user_id": member.user_id,
        "email": member.email,
        "name": member.display_name,
        "entry_date": entry_date.isoformat(),
    }


class MonthlyDrawingEngine:
    """
    Selects and rewards one winner per tier per month.
    """

    def __init__(
        self,
        db: Session,
        gift_cards: GiftCardService,
        dispatcher: CampaignDispatcher | None = None,
        settings: Settings | None = None,
        rng: random.Random | None = None,
    ):
        self.db = db
        self.repo = EngagementRepository(db)
        self.gift_cards = gift_cards
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()
        self.rng = rng or random.SystemRandom()

    def period_for(self, now: datetime) -> tuple[int, int]:
        """(month, year) of ``now`` in the drawing timezone."""
        local = as_utc(now).astimezone(pytz.timezone(self.settings.DRAWING_TIMEZONE))
        return local.month, local.year

    def prize_for(self, tier: Tier, automation: Automation | None) -> float:
        settings = (automation.drawing_settings or {}) if automation else {}
        amount = settings.get("prize_amount")
        if amount is None:
            amount = self.settings.drawing_prizes[tier.value]
        return float(amount)

    def eligible_members(self, tier: Tier) -> list[Member]:
        """Active tier subscribers with reward notifications on and a valid address."""
        members = self.repo.list_tier_subscribers(tier.value)
        eligible = [m for m in members if is_valid_email(m.email)]
        if len(eligible) < len(members):
            logger.info(
                f"Excluded {len(members) - len(eligible)} {tier.value} subscribers with invalid emails"
            )
        return eligible

    async def run_drawing(
        self,
        tier: Tier | str,
        automation: Automation | None = None,
        now: datetime | None = None,
        mode: SendMode = SendMode.PRODUCTION,
    ) -> DrawingOutcome:
        """
        Run (or resume) the drawing for the current period.

        Args:
            tier: Subscription tier
            automation: The monthly_drawing_<tier> automation, for prize
                settings and the winner email template
            now: Reference time (defaults to now)
            mode: Send mode for notifications

        Returns:
            DrawingOutcome; disbursement problems are reported in it, not raised
        """
        tier = Tier(tier)
        now = now or datetime.now(timezone.utc)
        month, year = self.period_for(now)
        outcome = DrawingOutcome(status=DrawingStatus.COMPLETED, tier=tier.value, month=month, year=year)

        drawing = self.repo.get_drawing(month, year, tier.value)
        try:
            if drawing is None:
                drawing = self._select_winner(tier, month, year, now, automation)
                if drawing is None:
                    outcome.status = DrawingStatus.NO_ELIGIBLE
                    logger.info(f"No eligible participants for {tier.value} drawing {year}-{month:02d}")
                    return outcome
            self._raise_if_completed(drawing)
        except ConcurrencyConflict:
            self._describe(outcome, drawing)
            outcome.status = DrawingStatus.ALREADY_COMPLETED
            logger.info(f"Drawing for {tier.value} {year}-{month:02d} already completed")
            return outcome

        self._describe(outcome, drawing)

        if not self.repo.claim_disbursement(drawing.id, self.settings.DRAWING_LEASE_SECONDS, now=now):
            self.db.commit()
            drawing = self.repo.get_drawing_by_id(drawing.id)
            self._describe(outcome, drawing)
            outcome.status = (
                DrawingStatus.ALREADY_COMPLETED if drawing.is_completed else DrawingStatus.IN_PROGRESS
            )
            return outcome
        self.db.commit()

        try:
            details = await self._disburse(drawing)
        except DisbursementError as e:
            self.repo.record_disbursement_failure(drawing.id, e.message)
            self.db.commit()
            outcome.status = DrawingStatus.DISBURSEMENT_FAILED
            outcome.error = e.message
            logger.error(
                f"Gift card disbursement failed for {tier.value} drawing {drawing.period_label}: {e.message}",
                extra={"drawing_id": str(drawing.id), "winner": (drawing.winner or {}).get("email")},
            )
            return outcome

        self.repo.complete_drawing(drawing.id, details)
        self.db.commit()
        drawing = self.repo.get_drawing_by_id(drawing.id)
        self._describe(outcome, drawing)
        outcome.status = DrawingStatus.COMPLETED

        logger.info(
            f"Monthly drawing completed for {tier.value} {drawing.period_label}",
            extra={"drawing_id": str(drawing.id), "winner": drawing.winner.get("email")},
        )

        await self._notify(drawing, tier, automation, mode, outcome)
        return outcome

    # =========================================================================
    # Steps
    # =========================================================================

    def _select_winner(
        self,
        tier: Tier,
        month: int,
        year: int,
        now: datetime,
        automation: Automation | None,
    ) -> MonthlyDrawing | None:
        eligible = self.eligible_members(tier)
        if not eligible:
            return None

        winner = self.rng.choice(eligible)
        drawing, created = self.repo.insert_drawing_if_absent(
            month=month,
            year=year,
            tier=tier.value,
            prize_amount=self.prize_for(tier, automation),
            participants=[participant_entry(m, now) for m in eligible],
            winner={"user_id": winner.user_id, "email": winner.email, "name": winner.display_name},
            drawing_date=now,
            automation_id=automation.id if automation else None,
        )
        self.db.commit()

        if not created:
            logger.info(
                f"Drawing for {tier.value} {year}-{month:02d} was created concurrently; using stored winner",
                extra={"drawing_id": str(drawing.id)},
            )
        return drawing

    @staticmethod
    def _raise_if_completed(drawing: MonthlyDrawing) -> None:
        if drawing.is_completed:
            raise ConcurrencyConflict(
                "Drawing already completed for this period",
                details={"drawing_id": str(drawing.id)},
            )

    async def _disburse(self, drawing: MonthlyDrawing) -> dict[str, Any]:
        winner = drawing.winner or {}
        tier = Tier(drawing.subscription_tier)
        message = (
            f"Congratulations! You've won ${drawing.prize_amount:g} in the ColorCompete "
            f"{tier.display_name} monthly drawing!"
        )
        try:
            result = await self.gift_cards.issue(
                amount=drawing.prize_amount,
                recipient_email=winner["email"],
                recipient_name=winner.get("name") or winner["email"],
                message=message,
                reference=f"drawing-{drawing.id}",
            )
        except Exception as e:
            logger.exception("Gift card service raised")
            raise DisbursementError(str(e) or type(e).__name__)

        if not result.success:
            raise DisbursementError(result.error or "Gift card service returned no error detail")

        return {
            "gift_card_id": result.card_id,
            "gift_card_code": result.code,
            "redeem_url": result.redeem_url,
            "order_id": result.order_id,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }

    async def _notify(
        self,
        drawing: MonthlyDrawing,
        tier: Tier,
        automation: Automation | None,
        mode: SendMode,
        outcome: DrawingOutcome,
    ) -> None:
        if self.dispatcher is None:
            return

        period = datetime(drawing.year, drawing.month, 1).strftime("%B %Y")
        card = drawing.gift_card_details or {}
        winner = drawing.winner or {}
        variables = {
            "winner_name": (winner.get("name") or "").split(" ")[0] or winner.get("name"),
            "prize_amount": f"{drawing.prize_amount:g}",
            "tier_name": tier.display_name,
            "month_year": period,
            "gift_card_code": card.get("gift_card_code"),
            "redeem_url": card.get("redeem_url"),
            "participants_count": len(drawing.participants or []),
        }

        try:
            result = await self._notify_winner(drawing, automation, variables, mode)
            outcome.winner_notified = result.sent > 0
        except Exception:
            logger.exception(f"Failed to notify winner of drawing {drawing.id}")

        try:
            outcome.participants_notified = await self._notify_participants(drawing, tier, variables, mode)
        except Exception:
            logger.exception(f"Failed to notify participants of drawing {drawing.id}")

    async def _notify_winner(
        self,
        drawing: MonthlyDrawing,
        automation: Automation | None,
        variables: dict[str, Any],
        mode: SendMode,
    ) -> DispatchResult:
        if automation is not None and automation.subject and automation.html_content:
            template = MessageTemplate(automation.subject, automation.html_content, automation.text_content)
        else:
            named = template_registry.get(WINNER_TEMPLATE)
            template = MessageTemplate(named.subject, wrap_document(named.subject, named.html), named.text)

        winner = drawing.winner or {}
        member = self.repo.get_member(winner.get("user_id")) if winner.get("user_id") else None
        recipient = (
            Recipient.from_member(member)
            if member
            else Recipient(email=winner["email"], user_id=winner.get("user_id"), first_name=winner.get("name"))
        )
        return await self.dispatcher.dispatch(
            template,
            [recipient],
            mode=mode,
            variables=variables,
            automation_id=automation.id if automation else None,
        )

    async def _notify_participants(
        self,
        drawing: MonthlyDrawing,
        tier: Tier,
        variables: dict[str, Any],
        mode: SendMode,
    ) -> int:
        automation = self.repo.get_active_automation_by_trigger(tier.participant_trigger.value)
        if automation is None:
            return 0

        winner_id = (drawing.winner or {}).get("user_id")
        others = [p["user_id"] for p in drawing.participants or [] if p.get("user_id") != winner_id]
        if not others:
            return 0

        recipients = [Recipient.from_member(m) for m in self.repo.list_members(others)]
        template = MessageTemplate(automation.subject, automation.html_content, automation.text_content)
        result = await self.dispatcher.dispatch(
            template,
            recipients,
            mode=mode,
            variables=variables,
            automation_id=automation.id,
        )
        return result.sent

    @staticmethod
    def _describe(outcome: DrawingOutcome, drawing: MonthlyDrawing) -> None:
        outcome.drawing_id = drawing.id
        outcome.winner = dict(drawing.winner) if drawing.winner else None
        outcome.participants_count = len(drawing.participants or [])
        outcome.prize_amount = drawing.prize_amount
        outcome.gift_card = dict(drawing.gift_card_details) if drawing.gift_card_details else None
        outcome.error = drawing.last_error

    # =========================================================================
    # Reporting
    # =========================================================================

    def stats(self) -> dict[str, dict[str, Any]]:
        """Drawing statistics per tier."""
        return self.repo.drawing_stats([t.value for t in Tier])

    def history(self, tier: Tier | str | None = None, limit: int = 12) -> list[MonthlyDrawing]:
        return self.repo.list_drawings(Tier(tier).value if tier else None, limit=limit)
