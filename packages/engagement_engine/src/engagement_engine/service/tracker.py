"""
Delivery Status Tracker

Applies normalized provider events to delivery logs and reconciles them
against provider statistics.

Status only moves forward: sent -> delivered -> opened -> clicked, or
sent -> bounced | failed, which are terminal. Opens and clicks are always
added to the history of a non-terminal log, even when the status does not
change. Campaign counters go up once for every stage a log newly reaches.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from engagement_engine.contracts.event_types import DeliveryEventType
from engagement_engine.errors import ProviderError
from engagement_engine.persistence.models import DeliveryLog, DeliveryStatus
from engagement_engine.persistence.repo import EngagementRepository
from engagement_engine.providers.base import DeliveryEvent, DeliveryGateway, ProviderMessageStats

logger = logging.getLogger(__name__)

# Position on the forward path
STATUS_RANK = {
    DeliveryStatus.SENT.value: 0,
    DeliveryStatus.DELIVERED.value: 1,
    DeliveryStatus.OPENED.value: 2,
    DeliveryStatus.CLICKED.value: 3,
}
TERMINAL_STATUSES = {DeliveryStatus.BOUNCED.value, DeliveryStatus.FAILED.value}

# (status, timestamp column, campaign counter) per forward stage
_STAGES = [
    (DeliveryStatus.DELIVERED.value, "delivered_at", "delivered_count"),
    (DeliveryStatus.OPENED.value, "opened_at", "opened_count"),
    (DeliveryStatus.CLICKED.value, "clicked_at", "clicked_count"),
]

_PROVIDER_BOUNCE_STATUSES = {"error", "bounced", "failed", "hard_bounce", "soft_bounce"}
_PROVIDER_DELIVERED_STATUSES = {"sent", "delivered"}


@dataclass
class ApplyResult:
    """What happened to one event."""

    provider_message_id: str
    event_type: str
    applied: bool
    status: str | None = None
    reason: str | None = None  # unknown_message, terminal, stale

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ReconcileSummary:
    total: int = 0
    synced: int = 0
    not_found: int = 0
    errors: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _history_entry(event: DeliveryEvent) -> dict[str, Any]:
    entry = {
        "timestamp": event.timestamp.isoformat(),
        "user_agent": event.metadata.get("user_agent"),
        "ip": event.metadata.get("ip"),
    }
    if event.event_type == DeliveryEventType.CLICKED:
        entry["url"] = event.metadata.get("url")
    return entry


class DeliveryStatusTracker:
    """
    Applies delivery events and provider statistics to delivery logs.
    """

    def __init__(self, db: Session, gateway: DeliveryGateway | None = None):
        self.db = db
        self.repo = EngagementRepository(db)
        self.gateway = gateway

    # =========================================================================
    # Webhook events
    # =========================================================================

    def apply_event(self, event: DeliveryEvent) -> ApplyResult:
        """
        Apply one event and commit.

        An event for an unknown message id is logged and skipped.
        """
        result = self._apply(event)
        self.db.commit()
        return result

    def apply_events(self, events: list[DeliveryEvent]) -> list[ApplyResult]:
        """Apply events in order; one bad event does not stop the rest."""
        results = []
        for event in events:
            try:
                results.append(self.apply_event(event))
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Failed to apply delivery event {event.provider_message_id}")
                results.append(
                    ApplyResult(
                        provider_message_id=event.provider_message_id,
                        event_type=event.event_type.value,
                        applied=False,
                        reason=f"error: {e}",
                    )
                )
        return results

    def _apply(self, event: DeliveryEvent) -> ApplyResult:
        event_type = DeliveryEventType(event.event_type)
        log = self.repo.get_log_by_provider_id(event.provider_message_id, for_update=True)

        def skipped(reason: str) -> ApplyResult:
            return ApplyResult(
                provider_message_id=event.provider_message_id,
                event_type=event_type.value,
                applied=False,
                status=log.status if log else None,
                reason=reason,
            )

        if log is None:
            logger.info(
                "Delivery event for unknown message",
                extra={"provider_message_id": event.provider_message_id, "event_type": event_type.value},
            )
            return skipped("unknown_message")

        if log.status in TERMINAL_STATUSES:
            return skipped("terminal")

        if event_type in (DeliveryEventType.BOUNCED, DeliveryEventType.FAILED):
            if log.status != DeliveryStatus.SENT.value:
                return skipped("stale")
            self._mark_bounced(
                log,
                DeliveryStatus(event_type.value),
                event.timestamp,
                event.metadata.get("reason"),
            )
            return ApplyResult(event.provider_message_id, event_type.value, True, log.status)

        if event_type == DeliveryEventType.SENT:
            return skipped("stale")

        if event_type == DeliveryEventType.OPENED:
            log.opens = [*(log.opens or []), _history_entry(event)]
        elif event_type == DeliveryEventType.CLICKED:
            log.clicks = [*(log.clicks or []), _history_entry(event)]

        advanced = self._advance(log, event_type.value, event.timestamp)
        if not advanced and event_type == DeliveryEventType.DELIVERED:
            return skipped("stale")
        return ApplyResult(event.provider_message_id, event_type.value, True, log.status)

    def _advance(self, log: DeliveryLog, target: str, at: datetime) -> bool:
        """
        Move a log forward to target, filling in skipped stages.

        Returns:
            True if the status changed
        """
        current_rank = STATUS_RANK[log.status]
        target_rank = STATUS_RANK[target]
        if target_rank <= current_rank:
            return False

        reached: dict[str, int] = {}
        for status, column, counter in _STAGES:
            rank = STATUS_RANK[status]
            if current_rank < rank <= target_rank:
                if getattr(log, column) is None:
                    setattr(log, column, at)
                reached[counter] = 1

        log.status = target
        if log.campaign_id and not log.is_diagnostic:
            self.repo.increment_campaign_counters(log.campaign_id, **reached)
        return True

    def _mark_bounced(
        self,
        log: DeliveryLog,
        status: DeliveryStatus,
        at: datetime,
        reason: str | None,
    ) -> None:
        log.status = status.value
        log.bounced_at = at
        log.failure_reason = reason or ("Bounced" if status == DeliveryStatus.BOUNCED else "Failed")
        if status == DeliveryStatus.BOUNCED and log.campaign_id and not log.is_diagnostic:
            self.repo.increment_campaign_counters(log.campaign_id, bounced_count=1)

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile(self) -> ReconcileSummary:
        """
        Pull provider statistics and apply forward-only corrections.

        History is never touched. Campaign counters of affected campaigns are
        then recounted from their logs, never decreasing.
        """
        summary = ReconcileSummary()
        if self.gateway is None:
            summary.error = "No delivery gateway configured"
            summary.errors = 1
            return summary

        try:
            stats = await self.gateway.fetch_message_stats()
        except ProviderError as e:
            logger.error(f"Failed to fetch provider statistics: {e}")
            summary.errors = 1
            summary.error = str(e)
            return summary

        summary.total = len(stats)
        campaigns: set[UUID] = set()

        for stat in stats:
            try:
                log = self.repo.get_log_by_provider_id(stat.provider_message_id, for_update=True)
                if log is None:
                    summary.not_found += 1
                    continue
                if self._apply_stats(log, stat):
                    summary.synced += 1
                    if log.campaign_id and not log.is_diagnostic:
                        campaigns.add(log.campaign_id)
                self.db.commit()
            except Exception:
                self.db.rollback()
                summary.errors += 1
                logger.exception(f"Failed to reconcile message {stat.provider_message_id}")

        for campaign_id in campaigns:
            self.recount_campaign(campaign_id)

        logger.info(
            "Reconciliation finished",
            extra={
                "total": summary.total,
                "synced": summary.synced,
                "not_found": summary.not_found,
                "errors": summary.errors,
            },
        )
        return summary

    def _apply_stats(self, log: DeliveryLog, stat: ProviderMessageStats) -> bool:
        """Forward-only status correction from provider statistics."""
        if log.status in TERMINAL_STATUSES:
            return False

        now = datetime.now(timezone.utc)
        status = (stat.status or "").lower()

        if status in _PROVIDER_BOUNCE_STATUSES:
            if log.status != DeliveryStatus.SENT.value:
                return False
            # Status-only correction; counters are recounted afterwards
            log.status = DeliveryStatus.BOUNCED.value
            log.bounced_at = now
            log.failure_reason = stat.error or "Bounced"
            return True

        if stat.clicked:
            target = DeliveryStatus.CLICKED.value
        elif stat.opened:
            target = DeliveryStatus.OPENED.value
        elif status in _PROVIDER_DELIVERED_STATUSES:
            target = DeliveryStatus.DELIVERED.value
        else:
            return False

        current_rank = STATUS_RANK[log.status]
        if STATUS_RANK[target] <= current_rank:
            return False

        for stage, column, _counter in _STAGES:
            if current_rank < STATUS_RANK[stage] <= STATUS_RANK[target] and getattr(log, column) is None:
                setattr(log, column, now)
        log.status = target
        return True

    def recount_campaign(self, campaign_id: UUID) -> bool:
        """Raise a campaign's counters to what its logs show."""
        campaign = self.repo.get_campaign(campaign_id)
        if campaign is None:
            return False
        changed = self.repo.raise_campaign_counters(campaign, self.repo.count_campaign_stages(campaign_id))
        self.db.commit()
        return changed
