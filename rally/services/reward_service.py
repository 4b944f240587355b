"""
rally.services.reward_service — Reward Grant Engine
====================================================

Turns "user U did action A in context C" into at most one ledger entry.

Per grant, in one transaction:

    1. Look up the action's policy (amount, daily cap, expiry).
    2. Derive the deterministic entry id ``{action_key}:{user_id}:{context_id}``.
    3. Insert-if-absent into the ledger.  Already there → duplicate, done;
       the daily counter is *not* touched.
    4. Bump the daily counter with a conditional upsert.  Cap reached →
       the whole transaction rolls back and the caller gets
       ``DAILY_LIMIT_EXCEEDED``.

Store failures are raised, not returned; classifying and retrying them is
the retry shell's job (:mod:`rally.services.retry_shell`).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.orm import Session

from rally.config import RallyConfig
from rally.constants import (
    BROADCAST_REASON,
    DEFAULT_REASON,
    REVOCATION_REASON,
    SOURCE_ACTION,
    SOURCE_ADMIN,
    SOURCE_BROADCAST,
    SOURCE_REVOCATION,
)
from rally.database.engine import get_session, run_transaction
from rally.database.models import ChangeType, LedgerEntry, as_utc, utcnow
from rally.engine.errors import RallyError
from rally.engine.policy import (
    PolicySource,
    PostContext,
    RewardRule,
    ledger_entry_id,
    resolve_context_id,
    resolve_post_action,
)
from rally.engine.results import (
    AddResult,
    DeductResult,
    ErrorKind,
    GrantResult,
)
from rally.services.ledger import (
    active_balance_in,
    append_entry,
    consume_grants,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


class _DailyLimitReached(RallyError):
    """Raised inside a grant transaction to roll it back."""

    code = ErrorKind.DAILY_LIMIT_EXCEEDED.value


class _DeductionExists(RallyError):
    """Raised when a concurrent deduction committed the same id first."""

    code = "ALREADY_EXISTS"


# ---------------------------------------------------------------------------
# Counter upsert
# ---------------------------------------------------------------------------
def bump_daily_counter(
    session: Session,
    user_id: str,
    action_key: str,
    day: str,
    cap: int | None,
) -> bool:
    """Increment the (user, action, day) counter.

    With a *cap*, the increment only happens while ``count < cap``; the
    return value says whether it did.  Atomic under concurrency because
    the check and the write are one statement.
    """
    params = {"user_id": user_id, "action_key": action_key, "day": day}
    if cap is None:
        session.execute(
            text("""
                INSERT INTO daily_action_counters (user_id, action_key, day, count)
                VALUES (:user_id, :action_key, :day, 1)
                ON CONFLICT (user_id, action_key, day)
                DO UPDATE SET count = daily_action_counters.count + 1
            """),
            params,
        )
        return True

    if cap <= 0:
        return False
    result = session.execute(
        text("""
            INSERT INTO daily_action_counters (user_id, action_key, day, count)
            VALUES (:user_id, :action_key, :day, 1)
            ON CONFLICT (user_id, action_key, day)
            DO UPDATE SET count = daily_action_counters.count + 1
            WHERE daily_action_counters.count < :cap
        """),
        {**params, "cap": cap},
    )
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# RewardEngine
# ---------------------------------------------------------------------------
class RewardEngine:
    """Exactly-once reward grants over the action ledger.

    All methods are synchronous; async callers go through
    ``await run_db(engine.method, ...)``.
    """

    def __init__(
        self,
        engine: Engine,
        policies: PolicySource,
        config: RallyConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.policies = policies
        self.config = config or RallyConfig()
        self._clock = clock

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------
    def day_key(self, when: datetime) -> str:
        """Calendar day of *when* in the configured reward timezone."""
        return when.astimezone(self.config.reward_tz).strftime("%Y-%m-%d")

    def _expires_at(self, rule: RewardRule, granted_at: datetime) -> datetime:
        days = rule.expiry_days or self.config.default_expiry_days
        return granted_at + timedelta(days=days)

    def balance(self, user_id: str) -> int:
        with get_session(self.engine) as session:
            return active_balance_in(session, user_id, self._clock())

    # -------------------------------------------------------------------
    # Action grants
    # -------------------------------------------------------------------
    def grant_for_action(
        self,
        user_id: str,
        action_key: str,
        metadata: Mapping | None = None,
        *,
        occurred_at: datetime | None = None,
    ) -> GrantResult:
        """Grant the reward for one action, at most once per context.

        Returns a :class:`GrantResult`; ``duplicate=True`` with
        ``success=True`` means the action had already been paid.

        The daily counter is keyed by *occurred_at*, which only server code
        sets (the pending queue replays with the time a grant was parked);
        it defaults to the engine clock.  An ``occurred_at`` key in
        *metadata* is discarded.
        """
        metadata = dict(metadata or {})
        metadata.pop("occurred_at", None)
        rule = self.policies.reward_rule(action_key)
        if rule is None or not rule.pays:
            logger.debug("No active reward policy for %s", action_key)
            return GrantResult.no_reward(f"No active reward policy for {action_key}")

        context_id = resolve_context_id(metadata, user_id, rule.once_per_user)
        if context_id is None:
            return GrantResult.failed(
                ErrorKind.BAD_REQUEST,
                f"{action_key} needs a context id (comment_id, post_id or target_id)",
            )

        now = self._clock()
        day = self.day_key(as_utc(occurred_at) or now)
        entry = LedgerEntry(
            id=ledger_entry_id(action_key, user_id, context_id),
            user_id=user_id,
            amount=rule.amount,
            reason=rule.reason or DEFAULT_REASON,
            action_key=action_key,
            change_type=ChangeType.ADD.value,
            source=SOURCE_ACTION,
            metadata_=metadata or None,
            created_at=now,
            expires_at=self._expires_at(rule, now),
        )

        try:
            created = run_transaction(self.engine, self._grant_tx, entry, rule, day)
        except _DailyLimitReached:
            logger.info(
                "Daily limit reached: user=%s action=%s cap=%s",
                user_id, action_key, rule.daily_cap,
            )
            return GrantResult.failed(
                ErrorKind.DAILY_LIMIT_EXCEEDED,
                f"Daily limit of {rule.daily_cap} reached for {action_key}",
            )

        if not created:
            logger.debug("Duplicate grant ignored: %s", entry.id)
            return GrantResult(success=True, amount=0, duplicate=True, entry_id=entry.id)

        logger.info("Granted %d to %s for %s (%s)", rule.amount, user_id, action_key, entry.id)
        return GrantResult(success=True, amount=rule.amount, entry_id=entry.id)

    def _grant_tx(
        self, session: Session, entry: LedgerEntry, rule: RewardRule, day: str
    ) -> bool:
        appended = append_entry(session, entry)
        if not appended.created:
            return False
        if not bump_daily_counter(session, entry.user_id, rule.action_key, day, rule.daily_cap):
            raise _DailyLimitReached(f"{rule.action_key} capped at {rule.daily_cap}")
        return True

    def grant_for_post(self, user_id: str, post: PostContext) -> GrantResult:
        """Grant the reward a community post earns, keyed by the post id."""
        action_key = resolve_post_action(post)
        if action_key is None:
            return GrantResult.no_reward("No reward for this post type")
        return self.grant_for_action(user_id, action_key, post.metadata())

    # -------------------------------------------------------------------
    # Raw primitives
    # -------------------------------------------------------------------
    def add_reward_to_user(
        self,
        user_id: str,
        amount: int,
        action_key: str,
        entry_id: str,
        expires_at: datetime | None = None,
        reason: str = BROADCAST_REASON,
        source: str = SOURCE_BROADCAST,
    ) -> AddResult:
        """Append a grant with a caller-chosen id.  No policy, no daily cap."""
        if amount <= 0:
            raise ValueError("add_reward_to_user needs a positive amount")
        now = self._clock()
        entry = LedgerEntry(
            id=entry_id,
            user_id=user_id,
            amount=amount,
            reason=reason,
            action_key=action_key,
            change_type=ChangeType.ADD.value,
            source=source,
            created_at=now,
            expires_at=as_utc(expires_at)
            or now + timedelta(days=self.config.default_expiry_days),
        )
        appended = run_transaction(self.engine, append_entry, entry)
        return AddResult(entry_id=entry_id, is_duplicate=not appended.created)

    def deduct(
        self,
        user_id: str,
        amount: int,
        reason: str,
        entry_id: str,
        *,
        action_key: str | None = None,
        source: str = SOURCE_ADMIN,
        metadata: Mapping | None = None,
    ) -> DeductResult:
        """Deduct up to *amount* from the user's active balance.

        Idempotent by *entry_id*.  The deduction is capped at the current
        balance, so balances never go negative; the recorded entry carries
        the amount actually deducted.
        """
        if amount <= 0:
            raise ValueError("deduct needs a positive amount")
        try:
            return run_transaction(
                self.engine, self._deduct_tx,
                user_id, amount, reason, entry_id, action_key, source, dict(metadata or {}),
            )
        except _DeductionExists:
            logger.info("Deduction %s committed concurrently; treated as duplicate", entry_id)
            return DeductResult(entry_id=entry_id, deducted=0, duplicate=True)

    def _deduct_tx(
        self,
        session: Session,
        user_id: str,
        amount: int,
        reason: str,
        entry_id: str,
        action_key: str | None,
        source: str,
        metadata: dict,
    ) -> DeductResult:
        if session.get(LedgerEntry, entry_id) is not None:
            return DeductResult(entry_id=entry_id, deducted=0, duplicate=True)

        now = self._clock()
        taken = consume_grants(session, user_id, amount, now)
        appended = append_entry(session, LedgerEntry(
            id=entry_id,
            user_id=user_id,
            amount=-taken,
            reason=reason,
            action_key=action_key,
            change_type=ChangeType.DEDUCT.value,
            source=source,
            metadata_={**metadata, "requested": amount} if metadata or taken != amount else None,
            created_at=now,
        ))
        if not appended.created:
            # Lost a race with the same id; roll back our consumption.
            raise _DeductionExists(f"Concurrent deduction {entry_id}")
        if taken < amount:
            logger.info(
                "Deduction %s capped at balance: requested=%d deducted=%d",
                entry_id, amount, taken,
            )
        return DeductResult(entry_id=entry_id, deducted=taken, duplicate=False)

    # -------------------------------------------------------------------
    # Revocation
    # -------------------------------------------------------------------
    def revoke_for_context(
        self, user_id: str, action_key: str, context_id: str
    ) -> DeductResult:
        """Take back the unspent part of a grant whose content was deleted.

        No grant (never paid, or already revoked) is a no-op.
        """
        grant_id = ledger_entry_id(action_key, user_id, context_id)
        return run_transaction(self.engine, self._revoke_tx, grant_id)

    def _revoke_tx(self, session: Session, grant_id: str) -> DeductResult:
        revocation_id = f"revocation:{grant_id}"
        if session.get(LedgerEntry, revocation_id) is not None:
            return DeductResult(entry_id=revocation_id, deducted=0, duplicate=True)

        grant = session.get(LedgerEntry, grant_id, with_for_update=True)
        if grant is None:
            logger.debug("Nothing to revoke for %s", grant_id)
            return DeductResult(entry_id=revocation_id, deducted=0, duplicate=False)

        now = self._clock()
        remainder = 0
        expires_at = as_utc(grant.expires_at)
        if grant.consumed_at is None and (expires_at is None or expires_at > now):
            remainder = grant.amount - grant.consumed_amount
        if grant.consumed_at is None:
            grant.consumed_at = now

        append_entry(session, LedgerEntry(
            id=revocation_id,
            user_id=grant.user_id,
            amount=-remainder,
            reason=REVOCATION_REASON,
            action_key=grant.action_key,
            change_type=ChangeType.DEDUCT.value,
            source=SOURCE_REVOCATION,
            metadata_={"grant_id": grant_id},
            created_at=now,
        ))
        logger.info("Revoked %d from %s (%s)", remainder, grant.user_id, grant_id)
        return DeductResult(entry_id=revocation_id, deducted=remainder, duplicate=False)
