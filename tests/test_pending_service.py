"""
tests/test_pending_service.py — Pending Reward Queue Tests
===========================================================
Saving, leasing, backoff and reconciliation of parked grants.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from conftest import make_policies
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from rally.config import PendingSettings
from rally.database.models import (
    DailyActionCounter,
    LedgerEntry,
    PendingResolution,
    PendingStatus,
)
from rally.engine.policy import RewardRule
from rally.services.pending_service import (
    PendingRewardStore,
    execute_manual_retry,
    reconcile_pending,
)
from rally.services.reward_service import RewardEngine


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock(datetime(2026, 5, 10, 12, 0, tzinfo=UTC))


@pytest.fixture
def store(db_engine, clock):
    return PendingRewardStore(db_engine, PendingSettings(max_backoff_minutes=60), clock=clock)


@pytest.fixture
def engine(db_engine, clock):
    return RewardEngine(db_engine, make_policies(), clock=clock)


def _park(store, action_key="comment", context_id="c1", metadata=None, user_id="u1") -> int:
    if metadata is None:
        metadata = {"comment_id": context_id}
    return store.save(user_id, action_key, context_id, metadata, "connection reset", "ECONNRESET")


class TestSave:
    def test_save_creates_open_record(self, store):
        record_id = _park(store)
        record = store.get(record_id)
        assert record["status"] == PendingStatus.OPEN.value
        assert record["retry_count"] == 0
        assert record["error_code"] == "ECONNRESET"

    def test_same_grant_keeps_one_open_record(self, store):
        first = _park(store)
        second = store.save("u1", "comment", "c1", {"comment_id": "c1"}, "timeout", "ETIMEDOUT")

        assert first == second
        assert store.get(first)["error_code"] == "ETIMEDOUT"
        assert len(store.list_pending()) == 1

    def test_metadata_made_json_safe(self, store):
        when = datetime(2026, 5, 10, 9, 30, tzinfo=UTC)
        record_id = _park(store, metadata={"comment_id": "c1", "seen_at": when})
        assert store.get(record_id)["metadata"]["seen_at"] == when.isoformat()

    def test_occurred_at_is_server_time(self, store, clock):
        record_id = _park(
            store, metadata={"comment_id": "c1", "occurred_at": "2001-01-01T00:00:00+00:00"}
        )
        record = store.get(record_id)
        assert record["occurred_at"] == clock.now.isoformat()
        assert "occurred_at" not in record["metadata"]


class TestClaim:
    def test_claim_leases_due_records(self, store):
        record_id = _park(store)

        claims = store.claim()
        assert [c.id for c in claims] == [record_id]
        assert claims[0].metadata == {"comment_id": "c1"}
        assert store.claim() == []

    def test_lease_expires(self, store, clock):
        _park(store)
        store.claim()
        clock.advance(seconds=store.settings.lease_seconds + 1)
        assert len(store.claim()) == 1

    def test_claim_respects_limit(self, store):
        for i in range(3):
            _park(store, context_id=f"c{i}")
        assert len(store.claim(limit=2)) == 2


class TestMarkFailed:
    def test_backoff_doubles_and_caps(self, store, clock):
        record_id = _park(store)

        first = store.mark_failed(record_id, "still down", "UNAVAILABLE")
        assert first == clock.now + timedelta(minutes=2)
        second = store.mark_failed(record_id, "still down", "UNAVAILABLE")
        assert second == clock.now + timedelta(minutes=4)

        for _ in range(10):
            last = store.mark_failed(record_id, "still down", "UNAVAILABLE")
        assert last == clock.now + timedelta(minutes=60)

        record = store.get(record_id)
        assert record["retry_count"] == 12
        assert record["status"] == PendingStatus.OPEN.value

    def test_backed_off_record_not_due(self, store):
        record_id = _park(store)
        store.mark_failed(record_id, "down", "UNAVAILABLE")
        assert store.claim() == []

    def test_unknown_record(self, store):
        with pytest.raises(LookupError):
            store.mark_failed(999, "x", None)


class TestReconcile:
    def test_replay_grants_and_resolves(self, store, engine, db_engine):
        record_id = _park(store)

        summary = reconcile_pending(store, engine, sleep=lambda _: None)

        assert summary["total_processed"] == 1
        assert summary["success_count"] == 1
        assert summary["fail_count"] == 0
        record = store.get(record_id)
        assert record["status"] == PendingStatus.RESOLVED.value
        assert record["resolution"] == PendingResolution.GRANTED.value
        assert record["granted_amount"] == 1
        with Session(db_engine) as session:
            assert session.get(LedgerEntry, "comment:u1:c1") is not None

    def test_already_granted_resolves_as_duplicate(self, store, engine):
        engine.grant_for_action("u1", "comment", {"comment_id": "c1"})
        record_id = _park(store)

        reconcile_pending(store, engine, sleep=lambda _: None)
        assert store.get(record_id)["resolution"] == PendingResolution.DUPLICATE.value

    def test_removed_policy_resolves_as_no_policy(self, store, db_engine, clock):
        engine = RewardEngine(db_engine, make_policies(RewardRule("other", 1)), clock=clock)
        record_id = _park(store)

        reconcile_pending(store, engine, sleep=lambda _: None)
        assert store.get(record_id)["resolution"] == PendingResolution.NO_POLICY.value

    def test_daily_limit_resolves(self, store, engine):
        for i in range(5):
            engine.grant_for_action("u1", "comment", {"comment_id": f"done{i}"})
        record_id = _park(store)

        reconcile_pending(store, engine, sleep=lambda _: None)
        assert store.get(record_id)["resolution"] == PendingResolution.DAILY_LIMIT.value

    def test_missing_context_resolves_invalid(self, store, engine):
        record_id = _park(store, metadata={})
        reconcile_pending(store, engine, sleep=lambda _: None)
        assert store.get(record_id)["resolution"] == PendingResolution.INVALID.value

    def test_failed_replay_stays_open_with_backoff(self, store):
        broken = MagicMock(spec=RewardEngine)
        broken.grant_for_action.side_effect = OperationalError("x", {}, Exception("db down"))
        record_id = _park(store)

        summary = reconcile_pending(store, broken, sleep=lambda _: None)

        assert summary["failed_ids"] == [record_id]
        record = store.get(record_id)
        assert record["status"] == PendingStatus.OPEN.value
        assert record["retry_count"] == 1
        assert record["error_code"] == "UNAVAILABLE"
        assert summary["stats"]["open"] == 1
        assert summary["stats"]["due"] == 0

    def test_pauses_between_items(self, store, engine):
        for i in range(3):
            _park(store, context_id=f"c{i}")
        pauses = []

        reconcile_pending(store, engine, sleep=pauses.append)
        assert pauses == [store.settings.item_delay_seconds] * 2

    def test_stats(self, store, engine):
        _park(store, context_id="c1")
        failing = _park(store, context_id="c2")
        store.mark_failed(failing, "down", "UNAVAILABLE")

        stats = store.stats()
        assert stats == {"open": 2, "resolved": 0, "due": 1, "max_retry_count": 1}


class TestManualRetry:
    def test_ignores_backoff(self, store, engine):
        record_id = _park(store)
        store.mark_failed(record_id, "down", "UNAVAILABLE")

        result = execute_manual_retry(store, engine, record_id)

        assert result["resolved"] is True
        assert result["record"]["resolution"] == PendingResolution.GRANTED.value

    def test_resolved_record_is_left_alone(self, store, engine):
        record_id = _park(store)
        reconcile_pending(store, engine, sleep=lambda _: None)

        result = execute_manual_retry(store, engine, record_id)
        assert result["resolved"] is None

    def test_leased_record_is_left_alone(self, store, engine):
        record_id = _park(store)
        store.claim()
        assert execute_manual_retry(store, engine, record_id)["resolved"] is None

    def test_list_filters(self, store, engine):
        done = _park(store, context_id="c1")
        reconcile_pending(store, engine, sleep=lambda _: None)
        stubborn = _park(store, context_id="c2")
        store.mark_failed(stubborn, "down", "UNAVAILABLE")

        assert [r["id"] for r in store.list_pending()] == [stubborn]
        assert [r["id"] for r in store.list_pending(PendingStatus.RESOLVED)] == [done]
        assert [r["id"] for r in store.list_pending(None, min_retries=1)] == [stubborn]


class TestReplayDay:
    def test_replay_counts_against_the_parked_day(self, store, engine, db_engine, clock):
        record_id = _park(store)
        clock.advance(days=1)

        reconcile_pending(store, engine, sleep=lambda _: None)

        assert store.get(record_id)["resolution"] == PendingResolution.GRANTED.value
        with Session(db_engine) as session:
            assert session.get(DailyActionCounter, ("u1", "comment", "2026-05-10")).count == 1
            assert session.get(DailyActionCounter, ("u1", "comment", "2026-05-11")) is None

    def test_full_day_stays_full_after_midnight(self, store, engine, clock):
        for i in range(5):
            engine.grant_for_action("u1", "comment", {"comment_id": f"done{i}"})
        record_id = _park(store)
        clock.advance(days=1)

        reconcile_pending(store, engine, sleep=lambda _: None)
        assert store.get(record_id)["resolution"] == PendingResolution.DAILY_LIMIT.value
