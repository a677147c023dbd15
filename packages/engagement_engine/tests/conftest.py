"""
Pytest fixtures for engagement engine tests.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from basecore.db import build_engine
from basecore.settings import Settings

from engagement_engine.persistence import EngagementRepository, init_db
from engagement_engine.providers.stub import StubDeliveryGateway, StubGiftCardService
from engagement_engine.service.dispatcher import CampaignDispatcher
from engagement_engine.service.rate_limit import RateLimitedQueue


@pytest.fixture
def settings():
    """Settings with no pacing between sends and a fixed frontend URL."""
    return Settings(
        _env_file=None,
        FRONTEND_URL="https://colorcompete.test",
        DISPATCH_MIN_INTERVAL_MS=0,
        DRAWING_TIMEZONE="America/New_York",
    )


@pytest.fixture
def db_engine():
    """In-memory SQLite engine with all engagement tables."""
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    """Database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def repo(db):
    return EngagementRepository(db)


@pytest.fixture
def gateway():
    """Stub delivery gateway that records every send."""
    return StubDeliveryGateway()


@pytest.fixture
def gift_cards():
    """Stub gift card service."""
    return StubGiftCardService()


@pytest.fixture
def dispatcher(db, gateway, settings):
    return CampaignDispatcher(db, gateway, settings=settings, queue=RateLimitedQueue(min_interval=0))


@pytest.fixture
def add_members(repo, db):
    """Create members u1..uN with predictable emails."""

    def _add(count, tier=None, active=True, **fields):
        members = []
        start = len(repo.list_members()) + 1
        for i in range(start, start + count):
            members.append(
                repo.add_member(
                    f"u{i}",
                    f"user{i}@example.com",
                    first_name=f"User{i}",
                    username=f"user{i}",
                    subscription_tier=tier,
                    subscription_active=active,
                    metrics={"submissions_count": i, "wins_count": 0, "votes_count": i * 2},
                    **fields,
                )
            )
        db.commit()
        return members

    return _add


@pytest.fixture
def fixed_now():
    """Mid-month instant, well clear of any timezone month boundary."""
    return datetime(2026, 3, 15, 17, 0, tzinfo=timezone.utc)
