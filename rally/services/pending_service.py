"""
rally.services.pending_service — Pending Reward Queue & Reconciliation
=======================================================================

When the retry shell gives up on a grant it parks the request here as an
``open`` :class:`~rally.database.models.PendingReward`.  A periodic
reconciliation pass claims due records, replays them through the grant
engine and either resolves them or pushes their next attempt back.

Record lifecycle::

    open ──(replay ok / duplicate / no policy / daily limit)──▶ resolved
     ▲                                                        │
     └──── replay failed: retry_count += 1, back off 2^n min ─┘ (stays open)

Records are never dropped: a grant that keeps failing stays ``open`` and
visible in :meth:`PendingRewardStore.stats` until an operator retries it.
Claims take a short lease (``claimed_until``) so overlapping passes do not
replay the same record concurrently.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rally.config import PendingSettings
from rally.database.engine import get_session, run_transaction
from rally.database.models import (
    PendingResolution,
    PendingReward,
    PendingStatus,
    as_utc,
    utcnow,
)
from rally.engine.errors import error_code
from rally.engine.results import ErrorKind, GrantResult

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from rally.services.reward_service import RewardEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PendingClaim:
    """Snapshot of a claimed record, safe to use outside the session."""

    id: int
    user_id: str
    action_key: str
    context_id: str
    metadata: dict
    retry_count: int
    occurred_at: datetime | None = None


def _json_safe(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, list | tuple | set):
        return [_json_safe(v) for v in value]
    if isinstance(value, datetime | date):
        return value.isoformat()
    if value is None or isinstance(value, str | int | float | bool):
        return value
    return str(value)


def pending_to_dict(row: PendingReward) -> dict:
    def _iso(value):
        value = as_utc(value)
        return value.isoformat() if value else None

    return {
        "id": row.id,
        "user_id": row.user_id,
        "action_key": row.action_key,
        "context_id": row.context_id,
        "metadata": row.metadata_ or {},
        "status": row.status,
        "error": row.error,
        "error_code": row.error_code,
        "retry_count": row.retry_count,
        "occurred_at": _iso(row.occurred_at),
        "next_retry_at": _iso(row.next_retry_at),
        "resolution": row.resolution,
        "granted_amount": row.granted_amount,
        "created_at": _iso(row.created_at),
        "resolved_at": _iso(row.resolved_at),
    }


# ---------------------------------------------------------------------------
# PendingRewardStore
# ---------------------------------------------------------------------------
class PendingRewardStore:
    """CRUD and claiming for ``pending_rewards``.  All methods are sync."""

    def __init__(
        self,
        engine: Engine,
        settings: PendingSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.settings = settings or PendingSettings()
        self._clock = clock

    # -------------------------------------------------------------------
    # Save
    # -------------------------------------------------------------------
    def save(
        self,
        user_id: str,
        action_key: str,
        context_id: str,
        metadata: Mapping | None,
        error: str | None,
        code: str | None,
        occurred_at: datetime | None = None,
    ) -> int:
        """Park a failed grant.  Returns the record id.

        *occurred_at* (default: now) is the server time of the original
        attempt; replays count against that day's cap.  If an open record
        for the same (user, action, context) exists, its last error is
        refreshed and its id returned instead.
        """
        metadata = {k: v for k, v in (metadata or {}).items() if k != "occurred_at"}
        return run_transaction(
            self.engine, self._save_tx,
            user_id, action_key, context_id, _json_safe(metadata), error, code, occurred_at,
        )

    def _save_tx(
        self,
        session: Session,
        user_id: str,
        action_key: str,
        context_id: str,
        metadata: dict,
        error: str | None,
        code: str | None,
        occurred_at: datetime | None,
    ) -> int:
        existing = self._find_open(session, user_id, action_key, context_id)
        if existing is not None:
            existing.error = error
            existing.error_code = code
            logger.info("Pending reward %d already open; error refreshed", existing.id)
            return existing.id

        now = self._clock()
        record = PendingReward(
            user_id=user_id,
            action_key=action_key,
            context_id=context_id,
            metadata_=metadata,
            occurred_at=as_utc(occurred_at) or now,
            status=PendingStatus.OPEN.value,
            error=error,
            error_code=code,
            retry_count=0,
            next_retry_at=now,
            created_at=now,
        )
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(record)
                session.flush()
        except IntegrityError:
            # Another request parked the same grant first.
            existing = self._find_open(session, user_id, action_key, context_id)
            if existing is None:
                raise
            return existing.id

        logger.warning(
            "Pending reward %d saved: user=%s action=%s code=%s",
            record.id, user_id, action_key, code,
        )
        return record.id

    @staticmethod
    def _find_open(
        session: Session, user_id: str, action_key: str, context_id: str
    ) -> PendingReward | None:
        return session.scalar(
            select(PendingReward).where(
                PendingReward.user_id == user_id,
                PendingReward.action_key == action_key,
                PendingReward.context_id == context_id,
                PendingReward.status == PendingStatus.OPEN.value,
            )
        )

    # -------------------------------------------------------------------
    # Claim / resolve / fail
    # -------------------------------------------------------------------
    def claim(self, limit: int | None = None, record_id: int | None = None) -> list[PendingClaim]:
        """Lease up to *limit* due open records (or exactly *record_id*)."""
        return run_transaction(
            self.engine, self._claim_tx, limit or self.settings.batch_size, record_id
        )

    def _claim_tx(
        self, session: Session, limit: int, record_id: int | None
    ) -> list[PendingClaim]:
        now = self._clock()
        query = select(PendingReward).where(
            PendingReward.status == PendingStatus.OPEN.value,
            or_(PendingReward.claimed_until.is_(None), PendingReward.claimed_until < now),
        )
        if record_id is not None:
            query = query.where(PendingReward.id == record_id)
        else:
            query = query.where(
                or_(PendingReward.next_retry_at.is_(None), PendingReward.next_retry_at <= now)
            )
        rows = session.scalars(
            query.order_by(PendingReward.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        ).all()

        lease_until = now + timedelta(seconds=self.settings.lease_seconds)
        claims = []
        for row in rows:
            row.claimed_until = lease_until
            claims.append(PendingClaim(
                id=row.id,
                user_id=row.user_id,
                action_key=row.action_key,
                context_id=row.context_id,
                metadata=dict(row.metadata_ or {}),
                retry_count=row.retry_count,
                occurred_at=as_utc(row.occurred_at),
            ))
        return claims

    def resolve(self, record_id: int, resolution: PendingResolution, amount: int = 0) -> None:
        now = self._clock()
        with get_session(self.engine) as session:
            session.execute(
                update(PendingReward)
                .where(PendingReward.id == record_id)
                .values(
                    status=PendingStatus.RESOLVED.value,
                    resolution=resolution.value,
                    granted_amount=amount,
                    resolved_at=now,
                    claimed_until=None,
                )
            )

    def mark_failed(self, record_id: int, error: str, code: str | None) -> datetime:
        """Record a failed replay and schedule the next one.  Returns its time."""
        with get_session(self.engine) as session:
            row = session.get(PendingReward, record_id, with_for_update=True)
            if row is None:
                raise LookupError(f"Pending reward {record_id} not found")
            row.retry_count += 1
            backoff = min(2 ** row.retry_count, self.settings.max_backoff_minutes)
            row.next_retry_at = self._clock() + timedelta(minutes=backoff)
            row.claimed_until = None
            row.error = error
            row.error_code = code
            return row.next_retry_at

    def schedule_now(self, record_id: int) -> bool:
        """Make an open record due immediately.  False if not open or leased."""
        now = self._clock()
        with get_session(self.engine) as session:
            result = session.execute(
                update(PendingReward)
                .where(
                    PendingReward.id == record_id,
                    PendingReward.status == PendingStatus.OPEN.value,
                    or_(PendingReward.claimed_until.is_(None), PendingReward.claimed_until < now),
                )
                .values(next_retry_at=now)
            )
            return result.rowcount == 1

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def get(self, record_id: int) -> dict | None:
        with get_session(self.engine) as session:
            row = session.get(PendingReward, record_id)
            return pending_to_dict(row) if row else None

    def list_pending(
        self,
        status: PendingStatus | None = PendingStatus.OPEN,
        limit: int = 50,
        offset: int = 0,
        min_retries: int = 0,
    ) -> list[dict]:
        """List records, oldest first.  ``min_retries`` narrows to stubborn ones."""
        query = select(PendingReward)
        if status is not None:
            query = query.where(PendingReward.status == status.value)
        if min_retries:
            query = query.where(PendingReward.retry_count >= min_retries)
        with get_session(self.engine) as session:
            rows = session.scalars(
                query.order_by(PendingReward.created_at, PendingReward.id)
                .offset(offset)
                .limit(limit)
            ).all()
            return [pending_to_dict(row) for row in rows]

    def stats(self) -> dict:
        now = self._clock()
        with get_session(self.engine) as session:
            by_status = dict(
                session.execute(
                    select(PendingReward.status, func.count())
                    .group_by(PendingReward.status)
                ).all()
            )
            due = session.scalar(
                select(func.count()).select_from(PendingReward).where(
                    PendingReward.status == PendingStatus.OPEN.value,
                    or_(
                        PendingReward.next_retry_at.is_(None),
                        PendingReward.next_retry_at <= now,
                    ),
                )
            ) or 0
            max_retries = session.scalar(
                select(func.max(PendingReward.retry_count)).where(
                    PendingReward.status == PendingStatus.OPEN.value
                )
            ) or 0
        return {
            "open": int(by_status.get(PendingStatus.OPEN.value, 0)),
            "resolved": int(by_status.get(PendingStatus.RESOLVED.value, 0)),
            "due": int(due),
            "max_retry_count": int(max_retries),
        }


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------
def _resolution_for(result: GrantResult) -> PendingResolution | None:
    """Map a replay result to a resolution, or ``None`` to keep it open."""
    if result.success:
        if result.duplicate:
            return PendingResolution.DUPLICATE
        if result.amount == 0:
            return PendingResolution.NO_POLICY
        return PendingResolution.GRANTED
    if result.error is ErrorKind.DAILY_LIMIT_EXCEEDED:
        return PendingResolution.DAILY_LIMIT
    if result.error in (ErrorKind.BAD_REQUEST, ErrorKind.NOT_FOUND):
        return PendingResolution.INVALID
    return None


def replay_claim(
    store: PendingRewardStore, engine: RewardEngine, claim: PendingClaim
) -> bool:
    """Replay one claimed record through the grant engine.  True if resolved."""
    try:
        result = engine.grant_for_action(
            claim.user_id, claim.action_key, claim.metadata, occurred_at=claim.occurred_at
        )
    except Exception as exc:
        next_at = store.mark_failed(claim.id, str(exc), error_code(exc))
        logger.warning(
            "Pending reward %d replay failed (%s); next attempt at %s",
            claim.id, exc, next_at.isoformat(),
        )
        return False

    resolution = _resolution_for(result)
    if resolution is None:
        store.mark_failed(claim.id, result.message, result.error.value if result.error else None)
        return False
    store.resolve(claim.id, resolution, result.amount)
    logger.info("Pending reward %d resolved as %s", claim.id, resolution.value)
    return True


def reconcile_pending(
    store: PendingRewardStore,
    engine: RewardEngine,
    limit: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict:
    """Replay due pending rewards.

    Returns ``{"total_processed", "success_count", "fail_count",
    "failed_ids", "stats"}``.
    """
    claims = store.claim(limit)
    success, failed_ids = 0, []
    for index, claim in enumerate(claims):
        if index:
            sleep(store.settings.item_delay_seconds)
        if replay_claim(store, engine, claim):
            success += 1
        else:
            failed_ids.append(claim.id)

    summary = {
        "total_processed": len(claims),
        "success_count": success,
        "fail_count": len(failed_ids),
        "failed_ids": failed_ids,
        "stats": store.stats(),
    }
    if claims:
        logger.info(
            "Pending reconciliation: processed=%d resolved=%d failed=%d",
            len(claims), success, len(failed_ids),
        )
    return summary


def execute_manual_retry(
    store: PendingRewardStore, engine: RewardEngine, record_id: int
) -> dict:
    """Replay one record right now, ignoring its backoff.

    Returns ``{"id", "resolved", "record"}``; ``resolved`` is ``None`` when
    the record is not open (or is leased by a running pass).
    """
    if not store.schedule_now(record_id):
        return {"id": record_id, "resolved": None, "record": store.get(record_id)}
    claims = store.claim(limit=1, record_id=record_id)
    if not claims:
        return {"id": record_id, "resolved": None, "record": store.get(record_id)}
    resolved = replay_claim(store, engine, claims[0])
    return {"id": record_id, "resolved": resolved, "record": store.get(record_id)}
