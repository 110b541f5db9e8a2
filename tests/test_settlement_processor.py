"""Tests for SettlementProcessor and the operator retry helpers."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from sports_lifecycle.models.enums import SettlementStatus
from sports_lifecycle.persistence.settlement_queue import FailureRecord
from sports_lifecycle.services.settlement import (
    SettlementProcessor,
    reset_failed_item,
    retry_failed_items,
)
from sports_lifecycle.services.settlement_executor import SettlementOutcome
from sports_lifecycle.utils.retry import RetryPolicy

_MOD = "sports_lifecycle.services.settlement"
_WORKER = "worker-a"
_POLICY = RetryPolicy(max_attempts=3, base_delay_seconds=60, factor=5, max_delay_seconds=3600)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _make_event(event_id: int, **kwargs) -> SimpleNamespace:
    defaults = {
        "id": event_id,
        "league": "NBA",
        "provider": "api-sports",
        "external_id": str(400 + event_id),
        "status_norm": "FINAL",
        "winner_side": "HOME",
        "home_score": 101,
        "away_score": 99,
        "settled_at": None,
    }
    defaults.update(kwargs)
    return SimpleNamespace(**defaults)


class FakeQueue:
    """In-memory settlement queue with the same claim/transition rules as the table."""

    def __init__(self) -> None:
        self.items: dict[int, SimpleNamespace] = {}

    def add(self, event, **kwargs) -> SimpleNamespace:
        item = SimpleNamespace(
            id=len(self.items) + 1,
            event_id=event.id,
            league=event.league,
            provider=event.provider,
            external_id=event.external_id,
            outcome=event.winner_side,
            status="QUEUED",
            attempts=kwargs.get("attempts", 0),
            next_attempt_at=kwargs.get("next_attempt_at", _utc_now() - timedelta(seconds=1)),
            locked_by=None,
            locked_at=None,
            last_error=None,
            settled_at=None,
        )
        self.items[item.id] = item
        return item

    def claim_next_item(self, session, worker_id, now=None):
        now = now or _utc_now()
        due = [
            item
            for item in self.items.values()
            if item.status == "QUEUED" and item.next_attempt_at <= now
        ]
        if not due:
            return None
        item = min(due, key=lambda i: i.id)
        item.status = "PROCESSING"
        item.locked_by = worker_id
        item.locked_at = now
        return item

    def mark_item_settled(self, session, item_id, worker_id, now=None):
        item = self.items[item_id]
        if item.status != "PROCESSING" or item.locked_by != worker_id:
            return False
        item.status = "SETTLED"
        item.settled_at = now or _utc_now()
        item.locked_by = None
        return True

    def mark_item_failed(self, session, item, worker_id, error, policy, now=None):
        now = now or _utc_now()
        if item.status != "PROCESSING" or item.locked_by != worker_id:
            return None
        item.attempts += 1
        if policy.exhausted(item.attempts):
            item.status = "FAILED"
            item.next_attempt_at = max(item.next_attempt_at, now)
        else:
            item.status = "QUEUED"
            item.next_attempt_at = policy.next_attempt_at(item.attempts, now, item.next_attempt_at)
        item.last_error = error
        item.locked_by = None
        return FailureRecord(
            status=SettlementStatus(item.status),
            attempts=item.attempts,
            next_attempt_at=item.next_attempt_at,
        )

    def settlement_outcome(self, event):
        return event.winner_side


class RecordingExecutor:
    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.requests = []

    def settle(self, request):
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else SettlementOutcome(success=True)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def fake_queue():
    queue = FakeQueue()
    with patch(f"{_MOD}.queue", queue):
        yield queue


@pytest.fixture
def events():
    return {}


@pytest.fixture
def session(events):
    session = MagicMock()
    session.get.side_effect = lambda model, event_id: events.get(event_id)
    return session


def _processor(executor) -> SettlementProcessor:
    return SettlementProcessor(executor, worker_id=_WORKER, policy=_POLICY)


# ---------------------------------------------------------------------------
# process_one / process_all
# ---------------------------------------------------------------------------


class TestProcessOne:
    def test_success_settles_item_and_event(self, session, events, fake_queue):
        events[1] = _make_event(1)
        fake_queue.add(events[1])
        executor = RecordingExecutor()
        processor = _processor(executor)

        item = processor.lock_next_item(session)
        result = processor.process_one(session, item)

        assert result.success is True
        assert result.status == SettlementStatus.SETTLED
        assert fake_queue.items[1].status == "SETTLED"
        assert events[1].settled_at is not None
        request = executor.requests[0]
        assert request.idempotency_key == "settle:api-sports:401"
        assert request.outcome == "HOME"
        assert (request.home_score, request.away_score) == (101, 99)

    def test_claim_is_committed_before_executor_runs(self, session, events, fake_queue):
        events[1] = _make_event(1)
        fake_queue.add(events[1])
        commits_at_settle = []

        class Executor:
            def settle(self, request):
                commits_at_settle.append(session.commit.call_count)
                return SettlementOutcome(success=True)

        processor = _processor(Executor())
        processor.process_all(session)

        assert commits_at_settle == [1]

    def test_already_settled_event_skips_executor(self, session, events, fake_queue):
        events[1] = _make_event(1, settled_at=_utc_now() - timedelta(minutes=5))
        fake_queue.add(events[1])
        executor = RecordingExecutor()
        processor = _processor(executor)

        result = processor.process_one(session, processor.lock_next_item(session))

        assert result.success is True
        assert result.executor_called is False
        assert executor.requests == []
        assert fake_queue.items[1].status == "SETTLED"

    def test_failure_requeues_with_backoff(self, session, events, fake_queue):
        events[1] = _make_event(1)
        fake_queue.add(events[1])
        processor = _processor(RecordingExecutor(SettlementOutcome(success=False, error="HTTP 503")))

        before = _utc_now()
        result = processor.process_one(session, processor.lock_next_item(session))

        item = fake_queue.items[1]
        assert result.success is False
        assert result.status == SettlementStatus.QUEUED
        assert item.attempts == 1
        assert item.last_error == "HTTP 503"
        assert item.next_attempt_at >= before + timedelta(seconds=60)
        assert events[1].settled_at is None

    def test_exhausted_attempts_park_item(self, session, events, fake_queue):
        events[1] = _make_event(1)
        fake_queue.add(events[1], attempts=2)
        processor = _processor(RecordingExecutor(SettlementOutcome(success=False, error="nope")))

        result = processor.process_one(session, processor.lock_next_item(session))

        assert result.status == SettlementStatus.FAILED
        assert fake_queue.items[1].status == "FAILED"
        assert fake_queue.items[1].attempts == 3

    def test_executor_exception_recorded_as_failure(self, session, events, fake_queue):
        events[1] = _make_event(1)
        fake_queue.add(events[1])
        processor = _processor(RecordingExecutor(RuntimeError("connection reset")))

        result = processor.process_one(session, processor.lock_next_item(session))

        assert result.success is False
        assert result.error == "connection reset"
        assert fake_queue.items[1].status == "QUEUED"

    def test_missing_event_recorded_as_failure(self, session, events, fake_queue):
        fake_queue.add(_make_event(9))
        executor = RecordingExecutor()
        processor = _processor(executor)

        result = processor.process_one(session, processor.lock_next_item(session))

        assert result.success is False
        assert "not found" in result.error
        assert executor.requests == []

    def test_lost_claim_reports_no_status(self, session, events, fake_queue):
        events[1] = _make_event(1)
        fake_queue.add(events[1])
        processor = _processor(RecordingExecutor(SettlementOutcome(success=False, error="x")))
        item = processor.lock_next_item(session)
        # released as stale by the health check, then claimed elsewhere
        item.locked_by = "worker-b"

        result = processor.process_one(session, item)

        assert result.success is False
        assert result.status is None
        assert fake_queue.items[1].attempts == 0


class TestProcessAll:
    def test_idle_queue(self, session, fake_queue):
        result = _processor(RecordingExecutor()).process_all(session, max_items=10)
        assert result.attempted == 0

    def test_failure_does_not_halt_batch(self, session, events, fake_queue):
        for event_id in (1, 2, 3):
            events[event_id] = _make_event(event_id)
            fake_queue.add(events[event_id])
        executor = RecordingExecutor(
            SettlementOutcome(success=True),
            SettlementOutcome(success=False, error="HTTP 500"),
            SettlementOutcome(success=True),
        )

        result = _processor(executor).process_all(session, max_items=10)

        assert result.attempted == 3
        assert result.succeeded == 2
        assert result.failed == 1
        assert result.requeued == 1
        assert result.errors == ["item 2: HTTP 500"]
        # the requeued item is not due again within the same batch
        assert len(executor.requests) == 3

    def test_exactly_once_across_runs(self, session, events, fake_queue):
        events[1] = _make_event(1)
        fake_queue.add(events[1])
        executor = RecordingExecutor()
        processor = _processor(executor)

        first = processor.process_all(session, max_items=10)
        second = processor.process_all(session, max_items=10)

        assert first.succeeded == 1
        assert second.attempted == 0
        assert len(executor.requests) == 1

    def test_respects_max_items(self, session, events, fake_queue):
        for event_id in range(1, 6):
            events[event_id] = _make_event(event_id)
            fake_queue.add(events[event_id])

        result = _processor(RecordingExecutor()).process_all(session, max_items=2)

        assert result.attempted == 2
        assert [i.status for i in fake_queue.items.values()].count("QUEUED") == 3

    def test_store_error_rolls_back_and_continues(self, session, events, fake_queue):
        events[2] = _make_event(2)
        fake_queue.add(_make_event(1))
        fake_queue.add(events[2])

        def get(model, event_id):
            if event_id == 1:
                raise OperationalError("SELECT", {}, Exception("server closed the connection"))
            return events.get(event_id)

        session.get.side_effect = get
        result = _processor(RecordingExecutor()).process_all(session, max_items=10)

        session.rollback.assert_called_once()
        assert result.attempted == 2
        assert result.succeeded == 1
        assert result.failed == 1
        # left PROCESSING for the stale-claim release
        assert fake_queue.items[1].status == "PROCESSING"


# ---------------------------------------------------------------------------
# Operator retry
# ---------------------------------------------------------------------------


class TestRetryHelpers:
    def test_reset_failed_item(self):
        session = MagicMock()
        with patch(f"{_MOD}.queue") as queue:
            queue.reset_failed_item.return_value = True
            assert reset_failed_item(session, 7) is True
        queue.reset_failed_item.assert_called_once_with(session, 7)
        session.commit.assert_called_once()

    def test_retry_failed_items_counts_resets(self):
        session = MagicMock()
        with patch(f"{_MOD}.queue") as queue:
            queue.find_failed_item_ids.return_value = [3, 4, 5]
            queue.reset_failed_item.side_effect = [True, False, True]
            assert retry_failed_items(session, limit=3) == 2
        queue.find_failed_item_ids.assert_called_once_with(session, 3)
