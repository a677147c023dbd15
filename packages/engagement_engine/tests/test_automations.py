"""
Tests for automation runs and the engine facade.
"""

import asyncio
from uuid import uuid4

import pytest

from engagement_engine.contracts.event_types import TriggerType
from engagement_engine.errors import ValidationError
from engagement_engine.persistence.models import Automation
from engagement_engine.providers.stub import StubGiftCardService
from engagement_engine.service.automations import AutomationRunner, FireStatus
from engagement_engine.service.dispatcher import SendMode
from engagement_engine.service.engine import EngagementEngine


@pytest.fixture
def runner(db, dispatcher, gift_cards):
    return AutomationRunner(db, dispatcher, gift_cards=gift_cards)


@pytest.fixture
def engine(session_factory, gateway, gift_cards, settings):
    return EngagementEngine(
        session_factory=session_factory,
        gateway=gateway,
        gift_cards=gift_cards,
        settings=settings,
    )


def make(repo, db, trigger, subject="Hi {{userName}}", html="<p>{{headline}}</p>", **kwargs):
    automation = repo.create_automation(f"{trigger} automation", trigger, subject, html, **kwargs)
    db.commit()
    return automation


class TestAutomationRunner:
    """Tests for AutomationRunner.run."""

    def test_broadcast_reaches_every_member(self, db, repo, runner, gateway, add_members):
        """Test broadcast triggers address all members with shared variables."""
        add_members(3)
        automation = make(repo, db, "weekly_summary")

        result = asyncio.run(runner.run(automation, {"variables": {"headline": "Week 11"}}))

        assert result.status == FireStatus.COMPLETED
        assert result.dispatch.sent == 3
        assert [m["html"] for m in gateway.sent_messages] == ["<p>Week 11</p>"] * 3
        db.expire_all()
        assert repo.get_automation(automation.id).total_sent == 3

    def test_broadcast_narrowed_by_user_ids(self, db, repo, runner, gateway, add_members):
        """Test user_ids in the context narrow a broadcast."""
        add_members(3)
        automation = make(repo, db, "contest_announcement")

        asyncio.run(runner.run(automation, {"user_ids": ["u2"]}))

        assert [m["to"] for m in gateway.sent_messages] == ["user2@example.com"]

    def test_welcome_goes_to_one_user(self, db, repo, runner, gateway, add_members):
        """Test single-user triggers use context user_id."""
        add_members(2)
        automation = make(repo, db, "welcome", subject="Welcome {{firstName}}")

        result = asyncio.run(runner.run(automation, {"user_id": "u2"}))

        assert result.dispatch.sent == 1
        (message,) = gateway.sent_messages
        assert message["to"] == "user2@example.com"
        assert message["subject"] == "Welcome User2"

    def test_single_user_without_user_id_skipped(self, db, repo, runner, gateway, add_members):
        """Test a missing user_id skips instead of broadcasting."""
        add_members(2)
        automation = make(repo, db, "subscription_expired")

        result = asyncio.run(runner.run(automation, {}))

        assert result.status == FireStatus.SKIPPED
        assert result.reason == "no_recipients"
        assert result.success is True
        assert gateway.sent_messages == []

    def test_listed_users_with_per_recipient_values(self, db, repo, runner, gateway, add_members):
        """Test voting results go to the listed users with their own values."""
        add_members(3)
        automation = make(repo, db, "voting_results", html="<p>You placed {{place}}</p>")

        asyncio.run(
            runner.run(
                automation,
                {"user_ids": ["u1", "u3"], "per_recipient": {"u1": {"place": "1st"}, "u3": {"place": "4th"}}},
            )
        )

        assert {m["to"]: m["html"] for m in gateway.sent_messages} == {
            "user1@example.com": "<p>You placed 1st</p>",
            "user3@example.com": "<p>You placed 4th</p>",
        }

    def test_context_provider_can_skip(self, db, repo, runner, gateway, add_members):
        """Test a provider returning None means there is nothing to send."""
        add_members(2)
        automation = make(repo, db, "daily_winner")
        runner.register_provider(TriggerType.DAILY_WINNER, lambda automation, context: None)

        result = asyncio.run(runner.run(automation))

        assert result.status == FireStatus.SKIPPED
        assert result.reason == "no_content"
        assert gateway.sent_messages == []

    def test_context_provider_supplies_variables(self, db, repo, runner, gateway, add_members):
        """Test provider output is merged into the firing context."""
        add_members(1)
        automation = make(repo, db, "daily_winner")
        runner.register_provider(
            TriggerType.DAILY_WINNER,
            lambda automation, context: {"variables": {"headline": "Ana won Tulips"}},
        )

        asyncio.run(runner.run(automation))

        assert gateway.sent_messages[0]["html"] == "<p>Ana won Tulips</p>"

    def test_missing_template_fields(self, db, repo, runner, add_members):
        """Test an automation without a subject is rejected before sending."""
        add_members(1)
        automation = Automation(id=uuid4(), name="Broken", trigger_type="welcome", subject="", html_content="<p/>")

        with pytest.raises(ValidationError) as exc:
            asyncio.run(runner.run(automation, {"user_id": "u1"}))

        assert exc.value.details["missing"] == ["subject"]

    def test_winner_reward_issues_card_then_emails(self, db, repo, runner, gateway, gift_cards, add_members):
        """Test winner_reward pays first and includes the card in the email."""
        add_members(2)
        automation = make(
            repo,
            db,
            "winner_reward",
            subject="You won {{challenge_title}}",
            html="<p>${{reward_amount}} {{gift_card_code}}</p>",
            reward_settings={"gift_card_amount": 40},
        )

        result = asyncio.run(runner.run(automation, {"user_id": "u1", "challenge_title": "Tulips"}))

        assert result.status == FireStatus.COMPLETED
        assert gift_cards.call_count == 1
        assert gift_cards.issued[0]["amount"] == 40.0
        (message,) = gateway.sent_messages
        assert message["subject"] == "You won Tulips"
        code = gift_cards.issued[0]["card_id"].upper()
        assert message["html"] == f"<p>$40 {code}</p>"

    def test_winner_reward_without_card_sends_nothing(self, db, repo, dispatcher, gateway, add_members):
        """Test a failed gift card means no email."""
        add_members(1)
        automation = make(repo, db, "winner_reward")
        runner = AutomationRunner(db, dispatcher, gift_cards=StubGiftCardService(fail=True, error="Declined"))

        result = asyncio.run(runner.run(automation, {"user_id": "u1"}))

        assert result.status == FireStatus.FAILED
        assert result.error == "Declined"
        assert gateway.sent_messages == []

    def test_drawing_skipped_in_diagnostic_mode(self, db, repo, runner, gift_cards, add_members):
        """Test diagnostic firings never run a drawing."""
        add_members(2, tier="pro")
        automation = make(repo, db, "monthly_drawing_pro")

        result = asyncio.run(runner.run(automation, mode=SendMode.DIAGNOSTIC))

        assert result.status == FireStatus.SKIPPED
        assert gift_cards.call_count == 0


class TestEngagementEngine:
    """Tests for the EngagementEngine facade."""

    def test_trigger_unknown_automation(self, engine):
        """Test a missing automation is reported, not raised."""
        summary = asyncio.run(engine.trigger_automation(uuid4()))
        assert summary["status"] == FireStatus.NOT_FOUND
        assert summary["success"] is False

    def test_scheduled_fire_of_inactive_automation(self, db, repo, engine, gateway, add_members):
        """Test a deactivated automation does not send when its timer fires."""
        add_members(1)
        automation = make(repo, db, "daily_winner", is_active=False)

        result = asyncio.run(engine.fire(automation.id))

        assert result.status == FireStatus.INACTIVE
        assert gateway.sent_messages == []

    def test_diagnostic_trigger_runs_inactive_automation(self, db, repo, engine, gateway, add_members):
        """Test a diagnostic firing sends without touching counters."""
        add_members(2)
        automation = make(repo, db, "weekly_summary", is_active=False)

        summary = asyncio.run(engine.trigger_automation(automation.id, diagnostic=True))

        assert summary["success"] is True
        assert summary["dispatch"]["sent"] == 2
        db.expire_all()
        stored = repo.get_automation(automation.id)
        assert stored.total_sent == 0
        assert stored.last_triggered is None

    def test_trigger_reports_validation_errors(self, db, repo, engine, add_members):
        """Test validation problems come back as errors."""
        add_members(1)
        automation = make(repo, db, "welcome", subject="   ")

        summary = asyncio.run(engine.trigger_automation(automation.id, {"user_id": "u1"}))

        assert summary["success"] is False
        assert summary["details"]["missing"] == ["subject"]

    def test_render_preview(self, engine):
        """Test previews render registry templates."""
        preview = engine.render_preview("contest_announcement", {"contest_title": "Spring"})
        assert preview["success"] is True
        assert "Spring" in preview["subject"]

    def test_render_preview_unknown_template(self, engine):
        """Test unknown template names are reported."""
        preview = engine.render_preview("missing_template")
        assert preview["success"] is False
        assert preview["errors"]

    def test_dispatch_campaign_summary(self, db, repo, engine, add_members):
        """Test campaign dispatch through the facade."""
        add_members(2)
        campaign = repo.create_campaign("All", "s", "<p>h</p>", target_audience={"all_members": True})
        db.commit()

        summary = asyncio.run(engine.dispatch_campaign(campaign.id))

        assert summary["success"] is True
        assert summary["campaign_status"] == "sent"
        assert summary["sent"] == 2

    def test_dispatch_campaign_without_audience(self, db, repo, engine):
        """Test validation errors are summarized."""
        campaign = repo.create_campaign("None", "s", "<p>h</p>", target_audience={})
        db.commit()

        summary = asyncio.run(engine.dispatch_campaign(campaign.id))

        assert summary["success"] is False
        assert summary["errors"] == ["Campaign has no target audience"]

    def test_run_drawing_and_history(self, engine, add_members, gift_cards):
        """Test drawings through the facade."""
        add_members(2, tier="lite")

        summary = asyncio.run(engine.run_drawing("lite"))

        assert summary["success"] is True
        assert summary["status"] == "completed"
        assert gift_cards.call_count == 1
        (entry,) = engine.drawing_history("lite")
        assert entry["is_completed"] is True
        assert entry["participants"] == 2
        assert engine.drawing_stats()["lite"]["completed_drawings"] == 1

    def test_reconcile_summary(self, engine):
        """Test reconcile with no provider statistics."""
        summary = asyncio.run(engine.reconcile())
        assert summary["success"] is True
        assert summary["total"] == 0
