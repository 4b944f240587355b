"""
rally.services.ledger — Append-Only Action Ledger
==================================================

Every balance change is one immutable ``ledger_entries`` row.  The balance
is never stored; it is derived on read from the *active grants*::

    SUM(amount - consumed_amount)
    WHERE change_type = 'add'
      AND consumed_at IS NULL
      AND (expires_at IS NULL OR expires_at > now)

so a grant that has lapsed drops out of the balance the moment its
``expires_at`` passes, whether or not the expiry sweep has visited it yet.

Session-level helpers (``append_entry``, ``consume_grants``…) run inside a
caller's transaction; :class:`ActionLedger` wraps them for callers that
want a transaction of their own.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import TYPE_CHECKING

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rally.config import RallyConfig
from rally.constants import EXPIRATION_REASON, SOURCE_EXPIRATION
from rally.database.engine import get_session, run_transaction
from rally.database.models import ChangeType, LedgerEntry, as_utc, utcnow
from rally.engine.results import AppendResult

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

HISTORY_KINDS = ("all", "earned", "used", "expired")


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class ExpiryReport:
    grants_expired: int = 0
    points_expired: int = 0
    user_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class HistoryPage:
    entries: list[dict]
    total: int
    page: int
    size: int
    available: int
    expiring_this_month: int

    @property
    def has_more(self) -> bool:
        return (self.page + 1) * self.size < self.total


# ---------------------------------------------------------------------------
# Session-level helpers
# ---------------------------------------------------------------------------
def append_entry(session: Session, entry: LedgerEntry) -> AppendResult:
    """Insert *entry* unless an entry with the same id already exists.

    A duplicate leaves the store untouched and reports ``created=False``.
    Concurrent inserts of the same id are settled by the primary key: the
    loser's SAVEPOINT rolls back and the outer transaction stays usable.
    """
    if session.get(LedgerEntry, entry.id) is not None:
        return AppendResult(entry_id=entry.id, created=False)

    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(entry)
            session.flush()
    except IntegrityError:
        logger.debug("Ledger entry %s already recorded", entry.id)
        return AppendResult(entry_id=entry.id, created=False)
    return AppendResult(entry_id=entry.id, created=True)


def _active_grant_clauses(user_id: str, now: datetime) -> list:
    return [
        LedgerEntry.user_id == user_id,
        LedgerEntry.change_type == ChangeType.ADD.value,
        LedgerEntry.consumed_at.is_(None),
        or_(LedgerEntry.expires_at.is_(None), LedgerEntry.expires_at > now),
    ]


def active_balance_in(session: Session, user_id: str, now: datetime) -> int:
    total = session.scalar(
        select(
            func.coalesce(func.sum(LedgerEntry.amount - LedgerEntry.consumed_amount), 0)
        ).where(*_active_grant_clauses(user_id, now))
    )
    return int(total or 0)


def consume_grants(session: Session, user_id: str, amount: int, now: datetime) -> int:
    """Spend up to *amount* from the user's active grants, soonest-expiring first.

    Grants are row-locked for the rest of the transaction.  Returns the
    amount actually consumed (less than *amount* if the balance is short).
    """
    grants = session.scalars(
        select(LedgerEntry)
        .where(*_active_grant_clauses(user_id, now))
        .order_by(
            LedgerEntry.expires_at.is_(None),
            LedgerEntry.expires_at,
            LedgerEntry.created_at,
        )
        .with_for_update()
    ).all()

    remaining = amount
    for grant in grants:
        if remaining <= 0:
            break
        available = grant.amount - grant.consumed_amount
        if available <= 0:
            continue
        take = min(available, remaining)
        grant.consumed_amount += take
        if grant.consumed_amount >= grant.amount:
            grant.consumed_at = now
        remaining -= take
    return amount - remaining


def next_month_start(now: datetime, tz: tzinfo) -> datetime:
    """First instant of the month after *now* (month boundaries taken in *tz*), as UTC."""
    local = now.astimezone(tz)
    if local.month == 12:
        start = datetime(local.year + 1, 1, 1, tzinfo=tz)
    else:
        start = datetime(local.year, local.month + 1, 1, tzinfo=tz)
    return as_utc(start)


def entry_to_dict(entry: LedgerEntry, now: datetime | None = None) -> dict:
    expires_at = as_utc(entry.expires_at)
    return {
        "id": entry.id,
        "amount": entry.amount,
        "reason": entry.reason,
        "action_key": entry.action_key,
        "change_type": entry.change_type,
        "source": entry.source,
        "created_at": as_utc(entry.created_at).isoformat() if entry.created_at else None,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "is_expired": bool(expires_at and now and expires_at <= now),
    }


# ---------------------------------------------------------------------------
# ActionLedger — transaction-owning facade
# ---------------------------------------------------------------------------
class ActionLedger:
    """Ledger operations that open their own transaction."""

    def __init__(
        self,
        engine: Engine,
        config: RallyConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.config = config or RallyConfig()
        self._clock = clock

    def append(self, entry: LedgerEntry) -> AppendResult:
        return run_transaction(self.engine, append_entry, entry)

    def active_balance(self, user_id: str, now: datetime | None = None) -> int:
        with get_session(self.engine) as session:
            return active_balance_in(session, user_id, as_utc(now) or self._clock())

    # -------------------------------------------------------------------
    # Expiry sweep
    # -------------------------------------------------------------------
    def expire_grants(
        self,
        user_id: str | None = None,
        now: datetime | None = None,
        limit: int = 500,
    ) -> ExpiryReport:
        """Close out lapsed grants and record what they took with them.

        Each lapsed grant is stamped ``consumed_at`` and its unspent
        remainder is written as an ``expiration`` deduction with id
        ``expiration:{grant_id}``, so running the sweep twice is harmless.
        Balances are unaffected; they already exclude lapsed grants.
        """
        now = as_utc(now) or self._clock()
        return run_transaction(self.engine, self._expire_tx, user_id, now, limit)

    def _expire_tx(
        self, session: Session, user_id: str | None, now: datetime, limit: int
    ) -> ExpiryReport:
        query = select(LedgerEntry).where(
            LedgerEntry.change_type == ChangeType.ADD.value,
            LedgerEntry.consumed_at.is_(None),
            LedgerEntry.expires_at.is_not(None),
            LedgerEntry.expires_at <= now,
        )
        if user_id is not None:
            query = query.where(LedgerEntry.user_id == user_id)
        grants = session.scalars(
            query.order_by(LedgerEntry.expires_at).limit(limit).with_for_update()
        ).all()

        report = ExpiryReport()
        users: set[str] = set()
        for grant in grants:
            remainder = grant.amount - grant.consumed_amount
            grant.consumed_at = now
            report.grants_expired += 1
            if remainder <= 0:
                continue
            result = append_entry(session, LedgerEntry(
                id=f"expiration:{grant.id}",
                user_id=grant.user_id,
                amount=-remainder,
                reason=EXPIRATION_REASON,
                action_key=grant.action_key,
                change_type=ChangeType.DEDUCT.value,
                source=SOURCE_EXPIRATION,
                metadata_={"grant_id": grant.id},
                created_at=now,
            ))
            if result.created:
                report.points_expired += remainder
                users.add(grant.user_id)

        report.user_ids = sorted(users)
        if report.grants_expired:
            logger.info(
                "Expiry sweep: %d grants closed, %d points expired across %d users",
                report.grants_expired, report.points_expired, len(users),
            )
        return report

    # -------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------
    def history(
        self,
        user_id: str,
        page: int = 0,
        size: int = 20,
        kind: str = "all",
        now: datetime | None = None,
    ) -> HistoryPage:
        """Paginated ledger entries for *user_id*, newest first.

        *kind* is one of ``all``, ``earned`` (grants), ``used`` (deductions
        other than expiry) or ``expired`` (expiry deductions).
        """
        if kind not in HISTORY_KINDS:
            raise ValueError(f"Unknown history kind {kind!r}; expected one of {HISTORY_KINDS}")
        now = as_utc(now) or self._clock()
        page = max(page, 0)
        size = max(1, min(size, 100))

        clauses = [LedgerEntry.user_id == user_id]
        if kind == "earned":
            clauses.append(LedgerEntry.change_type == ChangeType.ADD.value)
        elif kind == "used":
            clauses.append(and_(
                LedgerEntry.change_type == ChangeType.DEDUCT.value,
                LedgerEntry.source != SOURCE_EXPIRATION,
            ))
        elif kind == "expired":
            clauses.append(LedgerEntry.source == SOURCE_EXPIRATION)

        with get_session(self.engine) as session:
            total = session.scalar(
                select(func.count()).select_from(LedgerEntry).where(*clauses)
            ) or 0
            rows = session.scalars(
                select(LedgerEntry)
                .where(*clauses)
                .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id)
                .offset(page * size)
                .limit(size)
            ).all()
            available = active_balance_in(session, user_id, now)

            cutoff = next_month_start(now, self.config.reward_tz)
            expiring = session.scalar(
                select(
                    func.coalesce(
                        func.sum(LedgerEntry.amount - LedgerEntry.consumed_amount), 0
                    )
                ).where(
                    *_active_grant_clauses(user_id, now),
                    LedgerEntry.expires_at.is_not(None),
                    LedgerEntry.expires_at < cutoff,
                )
            )

            return HistoryPage(
                entries=[entry_to_dict(row, now) for row in rows],
                total=int(total),
                page=page,
                size=size,
                available=available,
                expiring_this_month=int(expiring or 0),
            )
