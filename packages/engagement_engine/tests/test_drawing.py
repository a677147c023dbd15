"""
Tests for the monthly drawing engine.
"""

import asyncio
import random
from datetime import datetime, timezone

import pytest

from engagement_engine.contracts.event_types import Tier
from engagement_engine.persistence.models import MonthlyDrawing
from engagement_engine.providers.stub import StubGiftCardService
from engagement_engine.service.drawing import DrawingStatus, MonthlyDrawingEngine, is_valid_email


@pytest.fixture
def drawing_engine(db, gift_cards, dispatcher, settings):
    return MonthlyDrawingEngine(db, gift_cards, dispatcher=dispatcher, settings=settings, rng=random.Random(7))


def stored_drawings(db):
    db.expire_all()
    return db.query(MonthlyDrawing).all()


def stale_first_lookup(monkeypatch, engine):
    """Make the engine's first period lookup miss, as if another worker inserted meanwhile."""
    lookup = engine.repo.get_drawing
    calls = []

    def get_drawing(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            return None
        return lookup(*args, **kwargs)

    monkeypatch.setattr(engine.repo, "get_drawing", get_drawing)


class TestPeriod:
    """Tests for period and prize resolution."""

    def test_period_uses_drawing_timezone(self, drawing_engine):
        """Test the UTC first of the month is still last month in New York."""
        assert drawing_engine.period_for(datetime(2026, 4, 1, 2, 0, tzinfo=timezone.utc)) == (3, 2026)
        assert drawing_engine.period_for(datetime(2026, 4, 1, 5, 0, tzinfo=timezone.utc)) == (4, 2026)

    def test_prize_from_settings_or_automation(self, drawing_engine, repo):
        """Test the automation's prize_amount overrides the tier default."""
        automation = repo.create_automation(
            "Pro drawing", "monthly_drawing_pro", "s", "h", drawing_settings={"prize_amount": 75}
        )
        assert drawing_engine.prize_for(Tier.PRO, None) == 50.0
        assert drawing_engine.prize_for(Tier.PRO, automation) == 75.0

    def test_email_validation(self):
        """Test addresses are checked syntactically."""
        assert is_valid_email("user1@example.com") is True
        assert is_valid_email("not-an-email") is False
        assert is_valid_email("") is False
        assert is_valid_email(None) is False


class TestRunDrawing:
    """Tests for MonthlyDrawingEngine.run_drawing."""

    def test_no_eligible_participants(self, db, drawing_engine, gift_cards, add_members, fixed_now):
        """Test nothing is stored when nobody qualifies."""
        add_members(2, tier="lite")
        add_members(1, tier="pro", active=False)

        outcome = asyncio.run(drawing_engine.run_drawing(Tier.PRO, now=fixed_now))

        assert outcome.status == DrawingStatus.NO_ELIGIBLE
        assert outcome.success is True
        assert stored_drawings(db) == []
        assert gift_cards.call_count == 0

    def test_completed_drawing(self, db, drawing_engine, gift_cards, gateway, add_members, fixed_now):
        """Test a full run selects, pays and notifies one winner."""
        members = add_members(3, tier="pro")

        outcome = asyncio.run(drawing_engine.run_drawing(Tier.PRO, now=fixed_now))

        assert outcome.status == DrawingStatus.COMPLETED
        assert (outcome.month, outcome.year) == (3, 2026)
        assert outcome.participants_count == 3
        assert outcome.prize_amount == 50.0
        assert outcome.winner["user_id"] in {m.user_id for m in members}
        assert outcome.winner_notified is True

        assert gift_cards.call_count == 1
        issued = gift_cards.issued[0]
        assert issued["amount"] == 50.0
        assert issued["recipient_email"] == outcome.winner["email"]
        assert issued["reference"] == f"drawing-{outcome.drawing_id}"

        (drawing,) = stored_drawings(db)
        assert drawing.is_completed is True
        assert drawing.disbursement_attempts == 1
        assert drawing.gift_card_details["gift_card_code"] == outcome.gift_card["gift_card_code"]

        (message,) = gateway.sent_messages
        assert message["to"] == outcome.winner["email"]
        assert "Pro Monthly Drawing" in message["subject"]
        assert outcome.gift_card["gift_card_code"] in message["html"]
        assert "March 2026" in message["html"]

    def test_second_run_is_idempotent(self, db, drawing_engine, gift_cards, add_members, fixed_now):
        """Test a completed period is returned unchanged and not paid twice."""
        add_members(3, tier="champ")
        first = asyncio.run(drawing_engine.run_drawing(Tier.CHAMP, now=fixed_now))

        second = asyncio.run(drawing_engine.run_drawing(Tier.CHAMP, now=fixed_now))

        assert second.status == DrawingStatus.ALREADY_COMPLETED
        assert second.success is True
        assert second.drawing_id == first.drawing_id
        assert second.winner == first.winner
        assert gift_cards.call_count == 1
        assert len(stored_drawings(db)) == 1

    def test_failed_disbursement_keeps_winner(self, db, dispatcher, settings, add_members, fixed_now):
        """Test a retry after a failed payout pays the same winner."""
        add_members(4, tier="lite")
        cards = StubGiftCardService(fail=True, error="Funding source empty")
        engine = MonthlyDrawingEngine(db, cards, dispatcher=dispatcher, settings=settings, rng=random.Random(1))

        failed = asyncio.run(engine.run_drawing(Tier.LITE, now=fixed_now))

        assert failed.status == DrawingStatus.DISBURSEMENT_FAILED
        assert failed.success is False
        assert failed.error == "Funding source empty"
        (drawing,) = stored_drawings(db)
        assert drawing.is_completed is False
        assert drawing.last_error == "Funding source empty"
        assert drawing.disbursement_lease_until is None

        cards.fail = False
        # A different rng must not change the stored winner
        engine.rng = random.Random(99)
        retried = asyncio.run(engine.run_drawing(Tier.LITE, now=fixed_now))

        assert retried.status == DrawingStatus.COMPLETED
        assert retried.winner == failed.winner
        assert retried.drawing_id == failed.drawing_id
        assert cards.call_count == 2
        (drawing,) = stored_drawings(db)
        assert drawing.is_completed is True
        assert drawing.disbursement_attempts == 2
        assert drawing.last_error is None

    def test_lost_insert_race_adopts_completed_drawing(
        self, db, drawing_engine, dispatcher, settings, gift_cards, add_members, fixed_now, monkeypatch
    ):
        """Test a worker that loses the insert returns the stored, completed drawing."""
        add_members(4, tier="pro")
        first = asyncio.run(drawing_engine.run_drawing(Tier.PRO, now=fixed_now))

        other = MonthlyDrawingEngine(db, gift_cards, dispatcher=dispatcher, settings=settings, rng=random.Random(99))
        stale_first_lookup(monkeypatch, other)
        second = asyncio.run(other.run_drawing(Tier.PRO, now=fixed_now))

        assert second.status == DrawingStatus.ALREADY_COMPLETED
        assert second.drawing_id == first.drawing_id
        assert second.winner == first.winner
        assert gift_cards.call_count == 1
        assert len(stored_drawings(db)) == 1

    def test_lost_insert_race_pays_stored_winner(
        self, db, dispatcher, settings, add_members, fixed_now, monkeypatch
    ):
        """Test a worker that loses the insert pays the stored winner of an incomplete drawing."""
        add_members(4, tier="lite")
        failing = StubGiftCardService(fail=True)
        engine = MonthlyDrawingEngine(db, failing, dispatcher=dispatcher, settings=settings, rng=random.Random(1))
        first = asyncio.run(engine.run_drawing(Tier.LITE, now=fixed_now))
        assert first.status == DrawingStatus.DISBURSEMENT_FAILED

        cards = StubGiftCardService()
        other = MonthlyDrawingEngine(db, cards, dispatcher=dispatcher, settings=settings, rng=random.Random(99))
        stale_first_lookup(monkeypatch, other)
        second = asyncio.run(other.run_drawing(Tier.LITE, now=fixed_now))

        assert second.status == DrawingStatus.COMPLETED
        assert second.drawing_id == first.drawing_id
        assert second.winner == first.winner
        assert cards.call_count == 1
        assert cards.issued[0]["recipient_email"] == first.winner["email"]
        (drawing,) = stored_drawings(db)
        assert drawing.is_completed is True
        assert drawing.disbursement_attempts == 2

    def test_raising_gift_card_service(self, db, dispatcher, settings, add_members, fixed_now):
        """Test an exception from the gift card service is reported, not raised."""

        class BrokenCards(StubGiftCardService):
            async def issue(self, *args, **kwargs):
                raise ConnectionError("timeout")

        add_members(2, tier="pro")
        engine = MonthlyDrawingEngine(db, BrokenCards(), dispatcher=dispatcher, settings=settings)

        outcome = asyncio.run(engine.run_drawing(Tier.PRO, now=fixed_now))

        assert outcome.status == DrawingStatus.DISBURSEMENT_FAILED
        assert outcome.error == "timeout"

    def test_held_lease_reports_in_progress(self, db, repo, settings, dispatcher, add_members, fixed_now):
        """Test a concurrent disbursement is not duplicated."""
        add_members(2, tier="pro")
        cards = StubGiftCardService(fail=True)
        engine = MonthlyDrawingEngine(db, cards, dispatcher=dispatcher, settings=settings)
        failed = asyncio.run(engine.run_drawing(Tier.PRO, now=fixed_now))

        # Another worker takes the lease
        assert repo.claim_disbursement(failed.drawing_id, 300, now=fixed_now) is True
        db.commit()
        cards.fail = False

        outcome = asyncio.run(engine.run_drawing(Tier.PRO, now=fixed_now))

        assert outcome.status == DrawingStatus.IN_PROGRESS
        assert outcome.winner == failed.winner
        assert cards.call_count == 1

    def test_invalid_and_opted_out_excluded(self, db, repo, drawing_engine, add_members, fixed_now):
        """Test only valid, opted-in active subscribers take part."""
        add_members(2, tier="pro")
        add_members(1, tier="pro", reward_notifications=False)
        repo.add_member("bad", "not-an-email", subscription_tier="pro", subscription_active=True)
        db.commit()

        outcome = asyncio.run(drawing_engine.run_drawing(Tier.PRO, now=fixed_now))

        assert outcome.participants_count == 2
        (drawing,) = stored_drawings(db)
        assert {p["user_id"] for p in drawing.participants} == {"u1", "u2"}

    def test_participants_notified(self, db, repo, drawing_engine, gateway, add_members, fixed_now):
        """Test the participant automation reaches everyone but the winner."""
        add_members(3, tier="pro")
        repo.create_automation(
            "Pro participants",
            "monthly_drawing_pro_participant",
            "The {{tier_name}} drawing for {{month_year}} is done",
            "<p>Hi {{user_name}}, {{participants_count}} entered.</p>",
        )
        db.commit()

        outcome = asyncio.run(drawing_engine.run_drawing(Tier.PRO, now=fixed_now))

        assert outcome.participants_notified == 2
        recipients = [m["to"] for m in gateway.sent_messages]
        assert len(recipients) == 3
        assert recipients.count(outcome.winner["email"]) == 1
        participant_messages = [m for m in gateway.sent_messages if m["to"] != outcome.winner["email"]]
        assert all(m["subject"] == "The Pro drawing for March 2026 is done" for m in participant_messages)
        assert all("3 entered" in m["html"] for m in participant_messages)

    def test_automation_template_for_winner(self, db, repo, drawing_engine, gateway, add_members, fixed_now):
        """Test the drawing automation's own template is used for the winner."""
        add_members(1, tier="lite")
        automation = repo.create_automation(
            "Lite drawing",
            "monthly_drawing_lite",
            "You won ${{prize_amount}}",
            "<p>{{winner_name}}: {{gift_card_code}}</p>",
            drawing_settings={"prize_amount": 30},
        )
        db.commit()

        outcome = asyncio.run(drawing_engine.run_drawing(Tier.LITE, automation=automation, now=fixed_now))

        (message,) = gateway.sent_messages
        assert message["subject"] == "You won $30"
        assert message["html"] == f"<p>User1: {outcome.gift_card['gift_card_code']}</p>"
        db.expire_all()
        assert repo.get_automation(automation.id).total_sent == 1


class TestReporting:
    """Tests for drawing statistics and history."""

    def test_stats_and_history(self, db, drawing_engine, add_members, fixed_now):
        """Test per-tier statistics count completed prize money."""
        add_members(2, tier="pro")
        add_members(4, tier="lite")
        asyncio.run(drawing_engine.run_drawing(Tier.PRO, now=fixed_now))
        asyncio.run(drawing_engine.run_drawing(Tier.LITE, now=fixed_now))

        stats = drawing_engine.stats()

        assert stats["pro"] == {
            "total_drawings": 1,
            "completed_drawings": 1,
            "total_prize_money": 50.0,
            "average_participants": 2.0,
        }
        assert stats["lite"]["average_participants"] == 4.0
        assert stats["champ"]["total_drawings"] == 0
        assert [d.subscription_tier for d in drawing_engine.history("pro")] == ["pro"]
        assert len(drawing_engine.history()) == 2
