"""
Tests for delivery event application and provider reconciliation.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from engagement_engine.contracts.event_types import DeliveryEventType
from engagement_engine.persistence.models import DeliveryStatus
from engagement_engine.providers.base import DeliveryEvent, ProviderMessageStats
from engagement_engine.providers.stub import StubDeliveryGateway
from engagement_engine.service.tracker import DeliveryStatusTracker

AT = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def event(message_id, event_type, **metadata):
    return DeliveryEvent(
        provider_message_id=message_id,
        event_type=event_type,
        timestamp=AT,
        metadata=metadata,
    )


@pytest.fixture
def campaign(db, repo):
    campaign = repo.create_campaign("Tracked", "s", "<p>h</p>", target_audience={"all_members": True})
    db.commit()
    return campaign


@pytest.fixture
def sent_log(db, repo, campaign):
    """A production log in status sent, owned by a campaign."""

    def _make(message_id="msg_1", is_diagnostic=False):
        log = repo.create_delivery_log(
            recipient_email=f"{message_id}@example.com",
            subject="s",
            status=DeliveryStatus.SENT,
            campaign_id=campaign.id,
            provider_message_id=message_id,
            is_diagnostic=is_diagnostic,
        )
        db.commit()
        return log

    return _make


def counters(db, repo, campaign_id):
    db.expire_all()
    c = repo.get_campaign(campaign_id)
    return {
        "delivered": c.delivered_count,
        "opened": c.opened_count,
        "clicked": c.clicked_count,
        "bounced": c.bounced_count,
    }


class TestApplyEvent:
    """Tests for DeliveryStatusTracker.apply_event."""

    def test_forward_path(self, db, repo, campaign, sent_log):
        """Test sent -> delivered -> opened -> clicked."""
        log = sent_log()
        tracker = DeliveryStatusTracker(db)

        for event_type in (DeliveryEventType.DELIVERED, DeliveryEventType.OPENED, DeliveryEventType.CLICKED):
            result = tracker.apply_event(event("msg_1", event_type))
            assert result.applied is True
            assert result.status == event_type.value

        db.refresh(log)
        assert log.status == "clicked"
        assert log.delivered_at is not None
        assert log.opened_at is not None
        assert log.clicked_at is not None
        assert counters(db, repo, campaign.id) == {"delivered": 1, "opened": 1, "clicked": 1, "bounced": 0}

    def test_click_implies_skipped_stages(self, db, repo, campaign, sent_log):
        """Test a click on a sent message also counts delivered and opened."""
        log = sent_log()
        result = DeliveryStatusTracker(db).apply_event(
            event("msg_1", DeliveryEventType.CLICKED, url="https://x.test/a", ip="1.2.3.4")
        )

        assert result.applied is True
        db.refresh(log)
        assert log.status == "clicked"
        assert log.delivered_at is not None
        assert log.opened_at is not None
        assert log.opens == []
        assert log.clicks[0]["url"] == "https://x.test/a"
        assert log.clicks[0]["ip"] == "1.2.3.4"
        assert counters(db, repo, campaign.id) == {"delivered": 1, "opened": 1, "clicked": 1, "bounced": 0}

    def test_late_delivered_is_stale(self, db, repo, campaign, sent_log):
        """Test delivered after opened changes nothing."""
        log = sent_log()
        tracker = DeliveryStatusTracker(db)
        tracker.apply_event(event("msg_1", DeliveryEventType.OPENED))

        result = tracker.apply_event(event("msg_1", DeliveryEventType.DELIVERED))

        assert result.applied is False
        assert result.reason == "stale"
        db.refresh(log)
        assert log.status == "opened"
        assert counters(db, repo, campaign.id)["delivered"] == 1

    def test_unknown_message(self, db):
        """Test events for unknown ids are skipped."""
        result = DeliveryStatusTracker(db).apply_event(event("nope", DeliveryEventType.DELIVERED))
        assert result.applied is False
        assert result.reason == "unknown_message"

    def test_bounce_is_terminal(self, db, repo, campaign, sent_log):
        """Test a bounced log ignores later events."""
        log = sent_log()
        tracker = DeliveryStatusTracker(db)

        bounced = tracker.apply_event(event("msg_1", DeliveryEventType.BOUNCED, reason="mailbox full"))
        later = tracker.apply_event(event("msg_1", DeliveryEventType.OPENED))

        assert bounced.applied is True
        assert later.applied is False
        assert later.reason == "terminal"
        db.refresh(log)
        assert log.status == "bounced"
        assert log.failure_reason == "mailbox full"
        assert log.opens == []
        assert counters(db, repo, campaign.id) == {"delivered": 0, "opened": 0, "clicked": 0, "bounced": 1}

    def test_bounce_after_delivery_is_stale(self, db, sent_log):
        """Test bounce is only accepted from sent."""
        log = sent_log()
        tracker = DeliveryStatusTracker(db)
        tracker.apply_event(event("msg_1", DeliveryEventType.DELIVERED))

        result = tracker.apply_event(event("msg_1", DeliveryEventType.BOUNCED))

        assert result.reason == "stale"
        db.refresh(log)
        assert log.status == "delivered"

    def test_repeat_opens_append_history(self, db, repo, campaign, sent_log):
        """Test every open is recorded but counted once."""
        log = sent_log()
        tracker = DeliveryStatusTracker(db)

        tracker.apply_event(event("msg_1", DeliveryEventType.OPENED, user_agent="A"))
        second = tracker.apply_event(event("msg_1", DeliveryEventType.OPENED, user_agent="B"))

        assert second.applied is True
        db.refresh(log)
        assert [o["user_agent"] for o in log.opens] == ["A", "B"]
        assert counters(db, repo, campaign.id)["opened"] == 1

    def test_diagnostic_logs_do_not_count(self, db, repo, campaign, sent_log):
        """Test events on diagnostic logs update the log only."""
        log = sent_log(is_diagnostic=True)
        DeliveryStatusTracker(db).apply_event(event("msg_1", DeliveryEventType.CLICKED))

        db.refresh(log)
        assert log.status == "clicked"
        assert counters(db, repo, campaign.id) == {"delivered": 0, "opened": 0, "clicked": 0, "bounced": 0}

    def test_apply_events_keeps_going(self, db, sent_log):
        """Test a batch reports each event."""
        sent_log("msg_1")
        sent_log("msg_2")

        results = DeliveryStatusTracker(db).apply_events(
            [
                event("msg_1", DeliveryEventType.DELIVERED),
                event("missing", DeliveryEventType.DELIVERED),
                event("msg_2", DeliveryEventType.OPENED),
            ]
        )

        assert [r.applied for r in results] == [True, False, True]


class TestReconcile:
    """Tests for reconciliation against provider statistics."""

    def test_forward_corrections_and_counters(self, db, repo, campaign, sent_log):
        """Test stats advance logs and counters are recounted."""
        first = sent_log("msg_1")
        second = sent_log("msg_2")
        third = sent_log("msg_3")
        gateway = StubDeliveryGateway(
            stats=[
                ProviderMessageStats("msg_1", status="delivered"),
                ProviderMessageStats("msg_2", status="sent", opened=True),
                ProviderMessageStats("msg_3", status="error", error="Hard bounce"),
                ProviderMessageStats("msg_unknown", status="delivered"),
            ]
        )

        summary = asyncio.run(DeliveryStatusTracker(db, gateway).reconcile())

        assert summary.total == 4
        assert summary.synced == 3
        assert summary.not_found == 1
        assert summary.errors == 0
        for log in (first, second, third):
            db.refresh(log)
        assert first.status == "delivered"
        assert second.status == "opened"
        assert third.status == "bounced"
        assert third.failure_reason == "Hard bounce"
        assert counters(db, repo, campaign.id) == {"delivered": 2, "opened": 1, "clicked": 0, "bounced": 1}

    def test_counters_never_decrease(self, db, repo, campaign, sent_log):
        """Test a recount below the stored value keeps the stored value."""
        sent_log("msg_1")
        stored = repo.get_campaign(campaign.id)
        stored.clicked_count = 7
        db.commit()

        gateway = StubDeliveryGateway(stats=[ProviderMessageStats("msg_1", status="delivered")])
        asyncio.run(DeliveryStatusTracker(db, gateway).reconcile())

        result = counters(db, repo, campaign.id)
        assert result["clicked"] == 7
        assert result["delivered"] == 1

    def test_history_untouched(self, db, sent_log):
        """Test reconciliation never writes open or click history."""
        log = sent_log("msg_1")
        gateway = StubDeliveryGateway(stats=[ProviderMessageStats("msg_1", clicked=True)])

        asyncio.run(DeliveryStatusTracker(db, gateway).reconcile())

        db.refresh(log)
        assert log.status == "clicked"
        assert log.opens == []
        assert log.clicks == []

    def test_terminal_logs_left_alone(self, db, sent_log):
        """Test a bounced log is not revived by stats."""
        log = sent_log("msg_1")
        tracker = DeliveryStatusTracker(db, StubDeliveryGateway(stats=[ProviderMessageStats("msg_1", opened=True)]))
        tracker.apply_event(event("msg_1", DeliveryEventType.BOUNCED))

        summary = asyncio.run(tracker.reconcile())

        assert summary.synced == 0
        db.refresh(log)
        assert log.status == "bounced"

    def test_without_gateway(self, db):
        """Test reconcile reports a missing gateway."""
        summary = asyncio.run(DeliveryStatusTracker(db).reconcile())
        assert summary.errors == 1
        assert summary.error == "No delivery gateway configured"
