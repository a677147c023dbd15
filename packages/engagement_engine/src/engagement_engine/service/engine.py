"""
Engagement Engine

Callable surface used by the admin API, the CLI and the worker. Every
operation opens its own session, and returns a plain dict summary; errors
are reported in the summary instead of raised.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator
from uuid import UUID

from sqlalchemy.orm import Session

from basecore.db import get_sessionmaker
from basecore.settings import Settings, get_settings

from engagement_engine.contracts.event_types import Tier, TriggerType
from engagement_engine.errors import EngagementError
from engagement_engine.persistence.repo import EngagementRepository
from engagement_engine.providers import get_delivery_gateway, get_gift_card_service
from engagement_engine.providers.base import DeliveryEvent, DeliveryGateway, GiftCardService
from engagement_engine.service.automations import AutomationRunner, ContextProvider, FireResult, FireStatus
from engagement_engine.service.dispatcher import CampaignDispatcher, SendMode
from engagement_engine.service.drawing import MonthlyDrawingEngine
from engagement_engine.service.scheduler import AutomationScheduler
from engagement_engine.service.tracker import DeliveryStatusTracker
from engagement_engine.templates.registry import TemplateRegistry, template_registry

logger = logging.getLogger(__name__)


def _error_summary(e: Exception) -> dict[str, Any]:
    if isinstance(e, EngagementError):
        return {"success": False, "errors": [e.message], "details": e.details}
    return {"success": False, "errors": [str(e) or type(e).__name__]}


class EngagementEngine:
    """
    Facade over the dispatcher, tracker, drawing engine and scheduler.

    The delivery gateway and gift card service are shared across operations
    so their HTTP clients and tokens are reused; sessions are not.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        gateway: DeliveryGateway | None = None,
        gift_cards: GiftCardService | None = None,
        settings: Settings | None = None,
        registry: TemplateRegistry | None = None,
        context_providers: dict[TriggerType, ContextProvider] | None = None,
        rng=None,
    ):
        self.session_factory = session_factory or get_sessionmaker()
        self.settings = settings or get_settings()
        self.gateway = gateway or get_delivery_gateway()
        self.gift_cards = gift_cards or get_gift_card_service()
        self.registry = registry or template_registry
        self.context_providers = dict(context_providers or {})
        self.rng = rng

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _dispatcher(self, db: Session) -> CampaignDispatcher:
        return CampaignDispatcher(db, self.gateway, settings=self.settings)

    def _drawing_engine(self, db: Session, dispatcher: CampaignDispatcher) -> MonthlyDrawingEngine:
        return MonthlyDrawingEngine(db, self.gift_cards, dispatcher=dispatcher, settings=self.settings, rng=self.rng)

    def _runner(self, db: Session) -> AutomationRunner:
        dispatcher = self._dispatcher(db)
        return AutomationRunner(
            db,
            dispatcher,
            gift_cards=self.gift_cards,
            drawing_engine=self._drawing_engine(db, dispatcher),
            context_providers=self.context_providers,
        )

    # =========================================================================
    # Templates
    # =========================================================================

    def render_preview(self, template_name: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """Render a named template without sending it."""
        try:
            rendered = self.registry.render(template_name, variables)
        except Exception as e:
            return {"template": template_name, **_error_summary(e)}
        return {
            "success": True,
            "template": template_name,
            "subject": rendered.subject,
            "html": rendered.html,
            "text": rendered.text,
        }

    # =========================================================================
    # Automations
    # =========================================================================

    async def fire(
        self,
        automation_id: UUID,
        context: dict[str, Any] | None = None,
        mode: SendMode = SendMode.PRODUCTION,
        require_active: bool = True,
    ) -> FireResult:
        """
        Load an automation afresh and run it.

        Scheduler timers call this; a deactivated automation whose timer
        already fired is reported as inactive.
        """
        with self.session() as db:
            automation = EngagementRepository(db).get_automation(automation_id)
            if automation is None:
                return FireResult(automation_id=automation_id, status=FireStatus.NOT_FOUND)
            if require_active and not automation.is_active:
                return FireResult(
                    automation_id=automation_id,
                    status=FireStatus.INACTIVE,
                    trigger_type=automation.trigger_type,
                )
            return await self._runner(db).run(automation, context, mode)

    async def trigger_automation(
        self,
        automation_id: UUID,
        context: dict[str, Any] | None = None,
        diagnostic: bool = False,
    ) -> dict[str, Any]:
        """
        Fire an automation now.

        Diagnostic firings run even for inactive automations and never touch
        counters.
        """
        mode = SendMode.DIAGNOSTIC if diagnostic else SendMode.PRODUCTION
        try:
            result = await self.fire(automation_id, context, mode=mode, require_active=not diagnostic)
        except Exception as e:
            logger.exception(f"Automation {automation_id} failed")
            return {"automation_id": str(automation_id), **_error_summary(e)}
        summary = result.to_dict()
        summary["errors"] = [result.error] if result.error else []
        return summary

    def build_scheduler(self, **kwargs) -> AutomationScheduler:
        return AutomationScheduler(fire=self.fire, **kwargs)

    def start_scheduler(self, scheduler: AutomationScheduler) -> int:
        """Arm timers for every active automation. Must run inside the event loop."""
        with self.session() as db:
            automations = EngagementRepository(db).list_automations(active_only=True)
        return scheduler.start(automations)

    # =========================================================================
    # Campaigns, drawings, tracking
    # =========================================================================

    async def dispatch_campaign(self, campaign_id: UUID) -> dict[str, Any]:
        try:
            with self.session() as db:
                result = await self._dispatcher(db).dispatch_campaign(campaign_id)
        except Exception as e:
            logger.exception(f"Campaign {campaign_id} dispatch failed")
            return {"campaign_id": str(campaign_id), **_error_summary(e)}
        return {"campaign_id": str(campaign_id), "success": True, "errors": [], **result.to_dict()}

    async def run_drawing(self, tier: Tier | str) -> dict[str, Any]:
        """Run the current period's drawing for a tier, using its automation if one is active."""
        try:
            tier = Tier(tier)
            with self.session() as db:
                automation = EngagementRepository(db).get_active_automation_by_trigger(tier.drawing_trigger.value)
                engine = self._drawing_engine(db, self._dispatcher(db))
                outcome = await engine.run_drawing(tier, automation=automation)
        except Exception as e:
            logger.exception(f"Drawing for {tier} failed")
            return {"tier": str(tier), **_error_summary(e)}
        summary = outcome.to_dict()
        summary["errors"] = [outcome.error] if outcome.error and not outcome.success else []
        return summary

    def drawing_history(self, tier: Tier | str | None = None, limit: int = 12) -> list[dict[str, Any]]:
        with self.session() as db:
            drawings = EngagementRepository(db).list_drawings(Tier(tier).value if tier else None, limit=limit)
            return [
                {
                    "id": str(d.id),
                    "period": d.period_label,
                    "tier": d.subscription_tier,
                    "prize_amount": d.prize_amount,
                    "participants": len(d.participants or []),
                    "winner": (d.winner or {}).get("email"),
                    "is_completed": d.is_completed,
                    "attempts": d.disbursement_attempts,
                    "last_error": d.last_error,
                }
                for d in drawings
            ]

    def drawing_stats(self) -> dict[str, dict[str, Any]]:
        with self.session() as db:
            return EngagementRepository(db).drawing_stats([t.value for t in Tier])

    def apply_events(self, events: list[DeliveryEvent]) -> list[dict[str, Any]]:
        with self.session() as db:
            return [r.to_dict() for r in DeliveryStatusTracker(db).apply_events(events)]

    async def reconcile(self) -> dict[str, Any]:
        try:
            with self.session() as db:
                summary = await DeliveryStatusTracker(db, self.gateway).reconcile()
        except Exception as e:
            logger.exception("Reconciliation failed")
            return {**_error_summary(e), "total": 0, "synced": 0, "not_found": 0}
        data = summary.to_dict()
        data["success"] = summary.errors == 0
        return data

    async def close(self) -> None:
        await self.gateway.close()
        await self.gift_cards.close()
