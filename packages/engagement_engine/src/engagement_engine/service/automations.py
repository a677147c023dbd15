"""
Automation Runner

Turns one firing of an automation into a dispatch: picks the recipients for
its trigger type, builds the shared and per-recipient scope, and hands the
automation's template to the dispatcher. Drawing triggers go to the drawing
engine instead.

Contest data (yesterday's winner, weekly numbers, ...) lives outside the
engine. It reaches a firing either through the ``context`` passed to
``fire_now`` or through a context provider registered per trigger type.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from engagement_engine.contracts.event_types import TriggerType
from engagement_engine.errors import ValidationError
from engagement_engine.persistence.models import Automation
from engagement_engine.persistence.repo import EngagementRepository
from engagement_engine.providers.base import GiftCardService
from engagement_engine.service.dispatcher import (
    CampaignDispatcher,
    DispatchResult,
    MessageTemplate,
    Recipient,
    SendMode,
)

logger = logging.getLogger(__name__)

DEFAULT_GIFT_CARD_AMOUNT = 25.0

# Everyone with an address, unless the context narrows it with user_ids
BROADCAST_TRIGGERS = {
    TriggerType.DAILY_WINNER,
    TriggerType.WEEKLY_SUMMARY,
    TriggerType.MONTHLY_WINNER,
    TriggerType.CONTEST_ANNOUNCEMENT,
    TriggerType.ADMIN_BROADCAST,
}

# One user, named by context["user_id"]
SINGLE_USER_TRIGGERS = {
    TriggerType.WELCOME,
    TriggerType.SUBSCRIPTION_EXPIRED,
    TriggerType.COMMENT_FEEDBACK,
}

# A list of users, named by context["user_ids"]
LISTED_USER_TRIGGERS = {
    TriggerType.VOTING_RESULTS,
    TriggerType.MONTHLY_DRAWING_LITE_PARTICIPANT,
    TriggerType.MONTHLY_DRAWING_PRO_PARTICIPANT,
    TriggerType.MONTHLY_DRAWING_CHAMP_PARTICIPANT,
}

# (automation, context) -> context additions, or None to skip this firing
ContextProvider = Callable[[Automation, dict[str, Any]], dict[str, Any] | None]


class FireStatus:
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    INACTIVE = "inactive"
    NOT_FOUND = "not_found"


@dataclass
class FireResult:
    """Outcome of one automation firing."""

    automation_id: UUID | None
    status: str
    trigger_type: str | None = None
    dispatch: DispatchResult | None = None
    drawing: Any = None
    error: str | None = None
    reason: str | None = None

    @property
    def success(self) -> bool:
        return self.status in (FireStatus.COMPLETED, FireStatus.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "automation_id": str(self.automation_id) if self.automation_id else None,
            "status": self.status,
            "success": self.success,
            "trigger_type": self.trigger_type,
            "dispatch": self.dispatch.to_dict() if self.dispatch else None,
            "drawing": self.drawing.to_dict() if self.drawing is not None else None,
            "error": self.error,
            "reason": self.reason,
        }


class AutomationRunner:
    """
    Runs automations by trigger type.

    Args:
        db: Session shared with the dispatcher
        dispatcher: Sends the automation's template
        gift_cards: Issues winner_reward cards
        drawing_engine: MonthlyDrawingEngine for monthly_drawing_<tier>
        context_providers: Optional per-trigger scope providers
    """

    def __init__(
        self,
        db: Session,
        dispatcher: CampaignDispatcher,
        gift_cards: GiftCardService | None = None,
        drawing_engine=None,
        context_providers: dict[TriggerType, ContextProvider] | None = None,
    ):
        self.db = db
        self.repo = EngagementRepository(db)
        self.dispatcher = dispatcher
        self.gift_cards = gift_cards
        self.drawing_engine = drawing_engine
        self.context_providers = dict(context_providers or {})

    def register_provider(self, trigger: TriggerType, provider: ContextProvider) -> None:
        self.context_providers[TriggerType(trigger)] = provider

    async def run(
        self,
        automation: Automation,
        context: dict[str, Any] | None = None,
        mode: SendMode = SendMode.PRODUCTION,
    ) -> FireResult:
        """
        Execute one firing.

        Raises:
            ValidationError: Template fields missing (before any send)
        """
        trigger = TriggerType(automation.trigger_type)
        result = FireResult(automation_id=automation.id, status=FireStatus.COMPLETED, trigger_type=trigger.value)
        logger.info(f"Executing automation: {automation.name}", extra={"trigger": trigger.value, "mode": mode.value})

        if trigger.drawing_tier is not None:
            return await self._run_drawing(automation, trigger, mode, result)

        template = self._template_for(automation)
        context = dict(context or {})

        provider = self.context_providers.get(trigger)
        if provider is not None:
            extra = provider(automation, context)
            if extra is None:
                result.status = FireStatus.SKIPPED
                result.reason = "no_content"
                logger.info(f"Automation {automation.name} skipped: nothing to send")
                return result
            context.update(extra)

        if trigger == TriggerType.WINNER_REWARD:
            return await self._run_winner_reward(automation, template, context, mode, result)

        recipients = self._recipients_for(trigger, context)
        if recipients is None:
            result.status = FireStatus.SKIPPED
            result.reason = "no_recipients"
            logger.info(f"Automation {automation.name} skipped: no recipients in context")
            return result

        result.dispatch = await self._dispatch(automation, template, recipients, context, mode)
        return result

    # =========================================================================
    # Trigger handling
    # =========================================================================

    @staticmethod
    def _template_for(automation: Automation) -> MessageTemplate:
        missing = [f for f in ("subject", "html_content") if not (getattr(automation, f) or "").strip()]
        if missing:
            raise ValidationError(
                f"Automation {automation.name} is missing template fields",
                details={"automation_id": str(automation.id), "missing": missing},
            )
        return MessageTemplate(automation.subject, automation.html_content, automation.text_content)

    def _recipients_for(self, trigger: TriggerType, context: dict[str, Any]) -> list[Recipient] | None:
        if trigger in SINGLE_USER_TRIGGERS:
            user_id = context.get("user_id")
            if not user_id:
                return None
            member = self.repo.get_member(user_id)
            return [Recipient.from_member(member)] if member else []

        user_ids = context.get("user_ids")
        if trigger in LISTED_USER_TRIGGERS and not user_ids:
            return None
        members = self.repo.list_members([str(u) for u in user_ids] if user_ids else None)
        return [Recipient.from_member(m) for m in members]

    async def _dispatch(
        self,
        automation: Automation,
        template: MessageTemplate,
        recipients: list[Recipient],
        context: dict[str, Any],
        mode: SendMode,
    ) -> DispatchResult:
        per_recipient: dict[str, dict[str, Any]] = {
            str(k): v for k, v in (context.get("per_recipient") or {}).items()
        }

        def personalize(recipient: Recipient) -> dict[str, Any]:
            return per_recipient.get(str(recipient.user_id), {})

        return await self.dispatcher.dispatch(
            template,
            recipients,
            personalization=personalize if per_recipient else None,
            mode=mode,
            variables=context.get("variables"),
            automation_id=automation.id,
        )

    async def _run_winner_reward(
        self,
        automation: Automation,
        template: MessageTemplate,
        context: dict[str, Any],
        mode: SendMode,
        result: FireResult,
    ) -> FireResult:
        user_id = context.get("user_id")
        member = self.repo.get_member(user_id) if user_id else None
        if member is None:
            result.status = FireStatus.SKIPPED
            result.reason = "no_recipients"
            return result

        reward = automation.reward_settings or {}
        amount = float(reward.get("gift_card_amount") or DEFAULT_GIFT_CARD_AMOUNT)
        challenge_title = context.get("challenge_title") or (context.get("variables") or {}).get("challenge_title")

        if self.gift_cards is None:
            result.status = FireStatus.FAILED
            result.error = "No gift card service configured"
            return result

        message = reward.get("gift_card_message") or (
            f"Congratulations on winning {challenge_title}!" if challenge_title else "Congratulations on your win!"
        )
        issued = await self.gift_cards.issue(
            amount=amount,
            recipient_email=member.email,
            recipient_name=member.display_name,
            message=message,
            reference=context.get("reference"),
        )
        if not issued.success:
            # No card, no email
            result.status = FireStatus.FAILED
            result.error = issued.error or "Gift card issue failed"
            logger.error(
                f"Winner reward gift card failed for {member.email}: {result.error}",
                extra={"automation_id": str(automation.id)},
            )
            return result

        variables = {
            **(context.get("variables") or {}),
            "winner_name": member.first_name or member.username or "",
            "winner_username": member.username or "",
            "challenge_title": challenge_title or "",
            "reward_amount": f"{amount:g}",
            "gift_card_code": issued.code,
            "redeem_url": issued.redeem_url,
        }
        result.dispatch = await self.dispatcher.dispatch(
            template,
            [Recipient.from_member(member)],
            mode=mode,
            variables=variables,
            automation_id=automation.id,
        )
        return result

    async def _run_drawing(
        self,
        automation: Automation,
        trigger: TriggerType,
        mode: SendMode,
        result: FireResult,
    ) -> FireResult:
        if mode == SendMode.DIAGNOSTIC:
            result.status = FireStatus.SKIPPED
            result.reason = "drawings do not run in diagnostic mode"
            return result
        if self.drawing_engine is None:
            result.status = FireStatus.FAILED
            result.error = "No drawing engine configured"
            return result

        outcome = await self.drawing_engine.run_drawing(trigger.drawing_tier, automation=automation)
        result.drawing = outcome
        if not outcome.success:
            result.status = FireStatus.FAILED
            result.error = outcome.error or outcome.status
        return result
