"""PostgreSQL-backed checks for the concurrency guarantees.

Skipped unless LIFECYCLE_TEST_DATABASE_URL points at a disposable
database; the tables are created and dropped around the module.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from sports_lifecycle.db import Base, db_models
from sports_lifecycle.models.schemas import RawEvent
from sports_lifecycle.normalization import normalize_event
from sports_lifecycle.persistence import job_locks as lock_store
from sports_lifecycle.persistence import settlement_queue as queue
from sports_lifecycle.persistence.events import upsert_event

DATABASE_URL = os.environ.get("LIFECYCLE_TEST_DATABASE_URL")

pytestmark = pytest.mark.skipif(
    not DATABASE_URL, reason="LIFECYCLE_TEST_DATABASE_URL not set"
)


def _utc_now() -> datetime:
    return datetime.now(UTC)


@pytest.fixture(scope="module")
def engine():
    engine = create_engine(DATABASE_URL, future=True)
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def make_session(engine):
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    opened = []

    def make():
        session = factory()
        opened.append(session)
        return session

    yield make
    for session in opened:
        session.rollback()
        session.close()
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


def _final_event(session, external_id: str) -> db_models.SportsEvent:
    raw = RawEvent(
        league="NBA",
        external_id=external_id,
        starts_at=_utc_now() - timedelta(hours=3),
        home_team="Home",
        away_team="Away",
        home_score=100,
        away_score=90,
        status_raw="FT",
    )
    result = upsert_event(session, normalize_event(raw))
    session.commit()
    return session.get(db_models.SportsEvent, result.event_id)


class TestEventUpsert:
    def test_reapplying_event_keeps_one_row(self, make_session):
        session = make_session()
        first = _final_event(session, "1")
        second = _final_event(session, "1")
        count = session.execute(select(func.count()).select_from(db_models.SportsEvent)).scalar_one()
        assert first.id == second.id
        assert count == 1
        assert second.winner_side == "HOME"


class TestSettlementQueue:
    def test_enqueue_twice_creates_one_row(self, make_session):
        session = make_session()
        event = _final_event(session, "1")

        assert queue.enqueue_settlement(session, event) is True
        assert queue.enqueue_settlement(session, event) is False
        session.commit()

        rows = session.execute(select(db_models.SettlementQueueItem)).scalars().all()
        assert len(rows) == 1
        assert rows[0].outcome == "HOME"

    def test_final_without_scores_is_reported_not_queued(self, make_session):
        session = make_session()
        raw = RawEvent(
            league="NBA",
            external_id="9",
            starts_at=_utc_now() - timedelta(hours=3),
            home_team="Home",
            away_team="Away",
            status_raw="FT",
        )
        upsert_event(session, normalize_event(raw))
        session.commit()

        assert queue.count_unqueued_settleable_events(session) == 0
        assert queue.count_final_events_without_winner(session) == 1
        assert [e.external_id for e in queue.find_final_events_without_winner(session, 10)] == ["9"]

    def test_concurrent_claims_take_different_items(self, make_session):
        setup = make_session()
        for external_id in ("1", "2"):
            queue.enqueue_settlement(setup, _final_event(setup, external_id))
        setup.commit()

        first, second = make_session(), make_session()
        # first claim stays uncommitted, holding its row lock
        claimed_a = queue.claim_next_item(first, "worker-a")
        claimed_b = queue.claim_next_item(second, "worker-b")

        assert claimed_a is not None and claimed_b is not None
        assert claimed_a.id != claimed_b.id
        assert claimed_a.status == "PROCESSING"
        assert queue.claim_next_item(second, "worker-b") is None

    def test_settled_transition_requires_claim_holder(self, make_session):
        session = make_session()
        queue.enqueue_settlement(session, _final_event(session, "1"))
        session.commit()
        item = queue.claim_next_item(session, "worker-a")
        session.commit()

        assert queue.mark_item_settled(session, item.id, "worker-b") is False
        assert queue.mark_item_settled(session, item.id, "worker-a") is True
        session.commit()
        assert queue.claim_next_item(session, "worker-a") is None


class TestJobLocks:
    def test_second_insert_is_refused(self, make_session):
        now = _utc_now()
        first, second = make_session(), make_session()

        assert lock_store.insert_lock(first, "sync", "worker-a", now, now + timedelta(minutes=5))
        first.commit()
        assert not lock_store.insert_lock(second, "sync", "worker-b", now, now + timedelta(minutes=5))
        second.commit()

        assert lock_store.get_lock(second, "sync").locked_by == "worker-a"

    def test_expired_lock_replaced(self, make_session):
        now = _utc_now()
        session = make_session()
        lock_store.insert_lock(session, "settle", "worker-a", now - timedelta(minutes=10), now - timedelta(minutes=5))
        session.commit()

        assert lock_store.delete_expired_locks(session, now, job_name="settle") == 1
        assert lock_store.insert_lock(session, "settle", "worker-b", now, now + timedelta(minutes=5))
        session.commit()
