"""
Campaign Dispatcher

Renders a template per recipient, sends it through the delivery gateway
under the rate-limited queue, and writes one DeliveryLog per recipient.

A failure for one recipient (error result or raised exception) is recorded
in that recipient's result and never aborts the batch.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from basecore.settings import Settings, get_settings

from engagement_engine.errors import DeliveryError, ValidationError
from engagement_engine.persistence.models import CampaignStatus, DeliveryStatus, Member
from engagement_engine.persistence.repo import EngagementRepository
from engagement_engine.providers.base import DeliveryGateway, SendResult
from engagement_engine.service.rate_limit import RateLimitedQueue
from engagement_engine.templates.renderer import render

logger = logging.getLogger(__name__)


class SendMode(str, Enum):
    """
    PRODUCTION updates campaign and automation counters.
    DIAGNOSTIC renders and delivers identically but leaves them alone.
    """

    PRODUCTION = "production"
    DIAGNOSTIC = "diagnostic"


@dataclass
class Recipient:
    """One addressee with the fields used for personalization."""

    email: str
    user_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    username: str | None = None
    metrics: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_member(cls, member: Member) -> "Recipient":
        return cls(
            email=member.email,
            user_id=member.user_id,
            first_name=member.first_name,
            last_name=member.last_name,
            username=member.username,
            metrics=dict(member.metrics or {}),
        )

    @property
    def display_name(self) -> str:
        full = " ".join(p for p in (self.first_name, self.last_name) if p)
        return full or self.username or self.email


@dataclass
class MessageTemplate:
    """Unrendered subject/html/text."""

    subject: str
    html: str
    text: str | None = None


@dataclass
class RecipientResult:
    email: str
    user_id: str | None
    success: bool
    provider_message_id: str | None = None
    error: str | None = None
    log_id: UUID | None = None


@dataclass
class DispatchResult:
    """Per-batch summary; attempted = sent + failed."""

    attempted: int = 0
    sent: int = 0
    failed: int = 0
    results: list[RecipientResult] = field(default_factory=list)
    skipped: int = 0
    campaign_status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for result in data["results"]:
            if result["log_id"] is not None:
                result["log_id"] = str(result["log_id"])
        return data


PersonalizationBuilder = Callable[[Recipient], dict[str, Any]]


def build_personalization(
    recipient: Recipient,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Per-recipient template scope.

    Keys are snake_case; the renderer's alias table serves camelCase and
    synonym spellings (``userName``, ``firstName``, ...).
    """
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)
    frontend = settings.FRONTEND_URL.rstrip("/")
    metrics = recipient.metrics or {}

    unsubscribe_url = f"{frontend}/unsubscribe"
    if recipient.user_id:
        unsubscribe_url += f"?userId={recipient.user_id}"

    return {
        "user_id": recipient.user_id,
        "email": recipient.email,
        "user_name": recipient.first_name or recipient.username or "",
        "username": recipient.username or "",
        "last_name": recipient.last_name or "",
        "full_name": recipient.display_name,
        "submissions_count": metrics.get("submissions_count", 0),
        "wins_count": metrics.get("wins_count", 0),
        "votes_count": metrics.get("votes_count", 0),
        "unsubscribe_url": unsubscribe_url,
        "dashboard_url": f"{frontend}/dashboard",
        "website_url": frontend,
        "year": now.year,
    }


class CampaignDispatcher:
    """
    Sends one template to many recipients.
    """

    def __init__(
        self,
        db: Session,
        gateway: DeliveryGateway,
        settings: Settings | None = None,
        queue: RateLimitedQueue | None = None,
    ):
        self.db = db
        self.repo = EngagementRepository(db)
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.queue = queue or RateLimitedQueue(
            min_interval=self.settings.DISPATCH_MIN_INTERVAL_MS / 1000,
            workers=self.settings.DISPATCH_WORKERS,
            maxsize=self.settings.DISPATCH_QUEUE_SIZE,
        )

    def stop(self) -> None:
        """Stop after the sends already in flight."""
        self.queue.stop()

    async def dispatch(
        self,
        template: MessageTemplate,
        recipients: list[Recipient],
        personalization: PersonalizationBuilder | None = None,
        mode: SendMode = SendMode.PRODUCTION,
        variables: dict[str, Any] | None = None,
        campaign_id: UUID | None = None,
        automation_id: UUID | None = None,
    ) -> DispatchResult:
        """
        Render and send a template to each recipient in order.

        Args:
            template: Subject/html/text to render
            recipients: Addressees, attempted in the order given
            personalization: Extra per-recipient scope on top of the defaults
            mode: PRODUCTION or DIAGNOSTIC
            variables: Scope shared by every recipient
            campaign_id: Owning campaign (for logs and counters)
            automation_id: Owning automation (for logs and counters)

        Returns:
            DispatchResult with one RecipientResult per attempted recipient
        """
        shared = dict(variables or {})

        async def send_one(recipient: Recipient) -> RecipientResult:
            try:
                scope = {**shared, **build_personalization(recipient, self.settings)}
                if personalization:
                    scope.update(personalization(recipient) or {})
            except Exception as e:
                logger.exception(f"Personalization failed for {recipient.email}")
                failed = SendResult(success=False, error=f"Personalization failed: {str(e) or type(e).__name__}")
                return self._record(recipient, template.subject, failed, mode, campaign_id, automation_id)
            return await self._send_one(template, recipient, scope, mode, campaign_id, automation_id)

        outcomes = await self.queue.run(recipients, send_one)

        result = DispatchResult()
        for outcome in outcomes:
            if outcome.error is not None:
                recipient: Recipient = outcome.item
                item = RecipientResult(
                    email=recipient.email,
                    user_id=recipient.user_id,
                    success=False,
                    error=str(outcome.error),
                )
            else:
                item = outcome.value
            result.results.append(item)
            result.attempted += 1
            if item.success:
                result.sent += 1
            else:
                result.failed += 1
        result.skipped = len(recipients) - result.attempted

        logger.info(
            f"Dispatch finished",
            extra={
                "attempted": result.attempted,
                "sent": result.sent,
                "failed": result.failed,
                "mode": mode.value,
                "campaign_id": str(campaign_id) if campaign_id else None,
                "automation_id": str(automation_id) if automation_id else None,
            },
        )
        return result

    async def _send_one(
        self,
        template: MessageTemplate,
        recipient: Recipient,
        scope: dict[str, Any],
        mode: SendMode,
        campaign_id: UUID | None,
        automation_id: UUID | None,
    ) -> RecipientResult:
        subject = render(template.subject, scope)
        html = render(template.html, scope)
        text = render(template.text, scope) if template.text else None

        try:
            send_result = await self.gateway.send(
                to=recipient.email,
                subject=subject,
                html=html,
                text=text,
                to_name=recipient.display_name,
            )
        except Exception as e:
            failure = DeliveryError(str(e) or type(e).__name__, recipient=recipient.email)
            logger.exception(f"Delivery gateway raised for {failure.recipient}")
            send_result = SendResult(success=False, error=failure.message)

        return self._record(recipient, subject, send_result, mode, campaign_id, automation_id)

    def _record(
        self,
        recipient: Recipient,
        subject: str,
        send_result: SendResult,
        mode: SendMode,
        campaign_id: UUID | None,
        automation_id: UUID | None,
    ) -> RecipientResult:
        """Write the recipient's delivery log and bump counters for production sends."""
        result = RecipientResult(
            email=recipient.email,
            user_id=recipient.user_id,
            success=send_result.success,
            provider_message_id=send_result.provider_message_id,
            error=send_result.error,
        )

        try:
            log = self.repo.create_delivery_log(
                recipient_email=recipient.email,
                recipient_user_id=recipient.user_id,
                subject=subject,
                status=DeliveryStatus.SENT if send_result.success else DeliveryStatus.FAILED,
                campaign_id=campaign_id,
                automation_id=automation_id,
                provider_message_id=send_result.provider_message_id,
                failure_reason=None if send_result.success else send_result.error,
                is_diagnostic=mode == SendMode.DIAGNOSTIC,
            )
            log_id = log.id
            if send_result.success and mode == SendMode.PRODUCTION:
                if campaign_id:
                    self.repo.increment_campaign_counters(campaign_id, sent_count=1)
                if automation_id:
                    self.repo.record_automation_sends(automation_id, 1, datetime.now(timezone.utc))
            self.db.commit()
            result.log_id = log_id
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"Failed to record delivery log: {e}",
                extra={"to": recipient.email, "provider_message_id": send_result.provider_message_id},
            )

        return result

    async def dispatch_campaign(self, campaign_id: UUID) -> DispatchResult:
        """
        Send a draft campaign to its target audience.

        Moves the campaign draft -> sending -> sent, or -> failed when the
        batch aborts or every send fails.

        Raises:
            ValidationError: Campaign missing, not a draft, incomplete or
                without an audience; raised before any send
        """
        campaign = self.repo.get_campaign(campaign_id)
        if campaign is None:
            raise ValidationError(f"Campaign not found: {campaign_id}")
        if campaign.status != CampaignStatus.DRAFT.value:
            raise ValidationError(
                "Campaign has already been sent",
                details={"status": campaign.status},
            )

        missing = [f for f in ("subject", "html_content") if not (getattr(campaign, f) or "").strip()]
        if missing:
            raise ValidationError("Campaign is missing required fields", details={"missing": missing})

        audience = campaign.target_audience or {}
        if not (audience.get("all_members") or audience.get("subscription_tiers") or audience.get("user_ids")):
            raise ValidationError("Campaign has no target audience")

        recipients = [Recipient.from_member(m) for m in self.repo.resolve_audience(audience)]
        template = MessageTemplate(
            subject=campaign.subject,
            html=campaign.html_content,
            text=campaign.text_content,
        )

        if not self.repo.transition_campaign(
            campaign.id,
            CampaignStatus.DRAFT,
            CampaignStatus.SENDING,
            recipient_count=len(recipients),
        ):
            raise ValidationError("Campaign is already being sent")
        self.db.commit()

        try:
            result = await self.dispatch(template, recipients, campaign_id=campaign.id)
        except Exception:
            self.db.rollback()
            self.repo.transition_campaign(campaign.id, CampaignStatus.SENDING, CampaignStatus.FAILED)
            self.db.commit()
            logger.exception(f"Campaign {campaign.id} aborted")
            raise

        final = CampaignStatus.FAILED if result.attempted and result.sent == 0 else CampaignStatus.SENT
        values = {"sent_at": datetime.now(timezone.utc)} if final == CampaignStatus.SENT else {}
        self.repo.transition_campaign(campaign.id, CampaignStatus.SENDING, final, **values)
        self.db.commit()

        result.campaign_status = final.value
        logger.info(
            f"Campaign {campaign.id} {final.value}",
            extra={"recipients": len(recipients), "sent": result.sent, "failed": result.failed},
        )
        return result
