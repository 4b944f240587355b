"""
tests/test_ledger.py — Action Ledger Tests
===========================================
Append-only entries, derived balance, expiry sweep and history pages.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rally.config import RallyConfig
from rally.database.models import ChangeType, LedgerEntry
from rally.services.ledger import ActionLedger, next_month_start

NOW = datetime(2026, 5, 10, 12, 0, tzinfo=UTC)


def _grant(
    entry_id: str,
    amount: int,
    *,
    user_id: str = "u1",
    expires_at: datetime | None = None,
    created_at: datetime = NOW - timedelta(days=1),
    consumed_amount: int = 0,
) -> LedgerEntry:
    return LedgerEntry(
        id=entry_id,
        user_id=user_id,
        amount=amount,
        reason="Reward",
        action_key="comment",
        change_type=ChangeType.ADD.value,
        source="action",
        created_at=created_at,
        expires_at=expires_at,
        consumed_amount=consumed_amount,
    )


@pytest.fixture
def ledger(db_engine):
    return ActionLedger(db_engine, clock=lambda: NOW)


class TestAppend:
    def test_first_append_creates(self, ledger, db_engine):
        result = ledger.append(_grant("comment:u1:c1", 1))
        assert result.created
        assert result.entry_id == "comment:u1:c1"

    def test_same_id_is_inert(self, ledger, db_engine):
        ledger.append(_grant("comment:u1:c1", 1))
        again = ledger.append(_grant("comment:u1:c1", 50))

        assert not again.created
        with Session(db_engine) as session:
            rows = session.scalars(select(LedgerEntry)).all()
            assert len(rows) == 1
            assert rows[0].amount == 1


class TestActiveBalance:
    def test_sums_active_grants(self, ledger):
        ledger.append(_grant("g1", 3, expires_at=NOW + timedelta(days=30)))
        ledger.append(_grant("g2", 4))  # never expires
        assert ledger.active_balance("u1") == 7

    def test_lapsed_grant_excluded_before_sweep(self, ledger):
        ledger.append(_grant("g1", 3, expires_at=NOW - timedelta(minutes=1)))
        ledger.append(_grant("g2", 4, expires_at=NOW + timedelta(days=1)))
        assert ledger.active_balance("u1") == 4

    def test_partially_consumed_grant_counts_remainder(self, ledger):
        ledger.append(_grant("g1", 10, consumed_amount=4))
        assert ledger.active_balance("u1") == 6

    def test_other_users_not_counted(self, ledger):
        ledger.append(_grant("g1", 3, user_id="u2"))
        assert ledger.active_balance("u1") == 0

    def test_explicit_now(self, ledger):
        ledger.append(_grant("g1", 3, expires_at=NOW + timedelta(days=2)))
        assert ledger.active_balance("u1", now=NOW + timedelta(days=3)) == 0


class TestExpireGrants:
    def test_writes_expiration_entry_for_remainder(self, ledger, db_engine):
        ledger.append(_grant("g1", 10, expires_at=NOW - timedelta(hours=1), consumed_amount=4))

        report = ledger.expire_grants()

        assert report.grants_expired == 1
        assert report.points_expired == 6
        assert report.user_ids == ["u1"]
        with Session(db_engine) as session:
            grant = session.get(LedgerEntry, "g1")
            assert grant.consumed_at is not None
            expiry = session.get(LedgerEntry, "expiration:g1")
            assert expiry.amount == -6
            assert expiry.source == "expiration"
            assert expiry.change_type == ChangeType.DEDUCT.value

    def test_sweep_is_repeatable(self, ledger, db_engine):
        ledger.append(_grant("g1", 5, expires_at=NOW - timedelta(hours=1)))
        ledger.expire_grants()
        second = ledger.expire_grants()

        assert second.grants_expired == 0
        with Session(db_engine) as session:
            count = session.scalar(select(func.count()).select_from(LedgerEntry))
            assert count == 2

    def test_fully_spent_grant_closed_without_entry(self, ledger, db_engine):
        ledger.append(_grant("g1", 5, expires_at=NOW - timedelta(hours=1), consumed_amount=5))
        report = ledger.expire_grants()

        assert report.grants_expired == 1
        assert report.points_expired == 0
        with Session(db_engine) as session:
            assert session.get(LedgerEntry, "expiration:g1") is None

    def test_unexpired_and_other_users_untouched(self, ledger):
        ledger.append(_grant("g1", 5, expires_at=NOW + timedelta(days=1)))
        ledger.append(_grant("g2", 5, user_id="u2", expires_at=NOW - timedelta(days=1)))

        report = ledger.expire_grants(user_id="u1")

        assert report.grants_expired == 0
        assert ledger.active_balance("u1") == 5

    def test_balance_unchanged_by_sweep(self, ledger):
        ledger.append(_grant("g1", 5, expires_at=NOW - timedelta(hours=1)))
        ledger.append(_grant("g2", 2))
        before = ledger.active_balance("u1")
        ledger.expire_grants()
        assert ledger.active_balance("u1") == before == 2


class TestHistory:
    def _seed(self, ledger):
        ledger.append(_grant("g1", 5, expires_at=datetime(2026, 5, 20, tzinfo=UTC),
                             created_at=NOW - timedelta(days=3)))
        ledger.append(_grant("g2", 7, expires_at=datetime(2026, 7, 1, tzinfo=UTC),
                             created_at=NOW - timedelta(days=2)))
        ledger.append(LedgerEntry(
            id="admin:1", user_id="u1", amount=-2, reason="Correction",
            change_type=ChangeType.DEDUCT.value, source="admin",
            created_at=NOW - timedelta(days=1),
        ))
        ledger.append(LedgerEntry(
            id="expiration:old", user_id="u1", amount=-1, reason="Reward expired",
            change_type=ChangeType.DEDUCT.value, source="expiration",
            created_at=NOW - timedelta(hours=1),
        ))

    def test_all_newest_first(self, ledger):
        self._seed(ledger)
        page = ledger.history("u1")
        assert [e["id"] for e in page.entries] == ["expiration:old", "admin:1", "g2", "g1"]
        assert page.total == 4
        assert not page.has_more

    def test_kind_filters(self, ledger):
        self._seed(ledger)
        assert [e["id"] for e in ledger.history("u1", kind="earned").entries] == ["g2", "g1"]
        assert [e["id"] for e in ledger.history("u1", kind="used").entries] == ["admin:1"]
        assert [e["id"] for e in ledger.history("u1", kind="expired").entries] == [
            "expiration:old"
        ]

    def test_available_and_expiring_this_month(self, ledger):
        self._seed(ledger)
        page = ledger.history("u1")
        assert page.available == 12
        assert page.expiring_this_month == 5

    def test_pagination(self, ledger):
        self._seed(ledger)
        first = ledger.history("u1", page=0, size=3)
        second = ledger.history("u1", page=1, size=3)
        assert len(first.entries) == 3
        assert first.has_more
        assert [e["id"] for e in second.entries] == ["g1"]
        assert not second.has_more

    def test_unknown_kind_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.history("u1", kind="refunded")


class TestNextMonthStart:
    def test_december_rolls_year(self):
        assert next_month_start(datetime(2026, 12, 15, tzinfo=UTC), UTC) == datetime(
            2027, 1, 1, tzinfo=UTC
        )

    def test_month_taken_in_local_timezone(self):
        seoul = ZoneInfo("Asia/Seoul")
        # 16:00 UTC on Mar 31 is already April 1st in Seoul.
        start = next_month_start(datetime(2026, 3, 31, 16, 0, tzinfo=UTC), seoul)
        assert start == datetime(2026, 5, 1, tzinfo=seoul)
        assert start.tzinfo is UTC

    def test_config_timezone_drives_history_window(self, db_engine):
        config = RallyConfig(timezone="Asia/Seoul")
        ledger = ActionLedger(db_engine, config, clock=lambda: NOW)
        assert ledger.config.reward_tz == ZoneInfo("Asia/Seoul")
