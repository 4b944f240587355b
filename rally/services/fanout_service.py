"""
rally.services.fanout_service — Bulk Broadcast Coordinator
===========================================================

Sends one message (optionally with a point payout) to a large recipient
set without letting a single bad recipient, or a single bad batch, sink
the whole run.

    recipients ─dedupe─▶ eligibility filter ─▶ batches of N
        per batch:  grant rewards concurrently  (id broadcast:{job}:{user})
                    deliver only to users whose grant succeeded
        between batches: sleep (external rate limits)
    ─▶ FanoutReport  (COMPLETED / PARTIAL / FAILED + failed ids by class)

Reward ids are deterministic per (job, user), so re-running a job after a
crash pays nobody twice; a duplicate grant counts as granted.

:meth:`FanoutCoordinator.run_broadcast_record` runs a persisted
:class:`~rally.database.models.Broadcast` and writes the outcome back to
it and to the content mirror.  A run holds the row in SENDING under a
lease (``claimed_until``); if the worker dies the lease lapses and the next
pass runs the broadcast again.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import and_, or_, select, update

from rally.config import FanoutSettings
from rally.constants import BROADCAST_REASON, BROADCAST_REWARD, SOURCE_BROADCAST
from rally.database.engine import get_session, run_db
from rally.database.models import AdminActionType, Broadcast, BroadcastStatus, User, utcnow
from rally.engine.results import FailedRecipients, FanoutReport
from rally.services.audit_service import record_admin_action
from rally.services.mirror import ContentMirror, NullMirror, sync_best_effort

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from rally.services.delivery import DeliveryService
    from rally.services.reward_service import RewardEngine

logger = logging.getLogger(__name__)

EligibilityFilter = Callable[[Sequence[str]], set[str]]


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------
class ConsentFilter:
    """Keeps users who opted in to marketing messages.  Unknown users are dropped."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def __call__(self, user_ids: Sequence[str]) -> set[str]:
        if not user_ids:
            return set()
        with get_session(self.engine) as session:
            rows = session.scalars(
                select(User.id).where(
                    User.id.in_(list(user_ids)), User.marketing_consent.is_(True)
                )
            ).all()
        return set(rows)


# ---------------------------------------------------------------------------
# Job state
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class FanoutJob:
    """Running tallies for one broadcast."""

    job_key: str
    recipients: list[str]
    payload: dict
    reward_amount: int = 0
    expires_at: datetime | None = None
    eligible: list[str] = field(default_factory=list)
    delivered: list[str] = field(default_factory=list)
    failed: FailedRecipients = field(default_factory=FailedRecipients)

    def entry_id(self, user_id: str) -> str:
        return f"broadcast:{self.job_key}:{user_id}"

    def report(self) -> FanoutReport:
        success = len(self.delivered)
        if self.eligible and success == len(self.eligible):
            status = BroadcastStatus.COMPLETED
        elif success > 0:
            status = BroadcastStatus.PARTIAL
        else:
            status = BroadcastStatus.FAILED
        return FanoutReport(
            job_key=self.job_key,
            status=status.value,
            success_count=success,
            failure_count=self.failed.total(),
            eligible_count=len(self.eligible),
            failed_ids=self.failed,
        )


def _batched(items: Sequence[str], size: int) -> list[list[str]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


# ---------------------------------------------------------------------------
# FanoutCoordinator
# ---------------------------------------------------------------------------
class FanoutCoordinator:
    """Batched reward + notification fan-out with partial-failure accounting."""

    def __init__(
        self,
        engine: Engine,
        rewards: RewardEngine,
        delivery: DeliveryService,
        settings: FanoutSettings | None = None,
        mirror: ContentMirror | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.rewards = rewards
        self.delivery = delivery
        self.settings = settings or FanoutSettings()
        self.mirror = mirror or NullMirror()
        self._sleep = sleep
        self._clock = clock

    async def run_broadcast(
        self,
        recipient_ids: Sequence[str],
        message: Mapping,
        reward_amount: int = 0,
        eligibility: EligibilityFilter | None = None,
        expires_at: datetime | None = None,
        job_key: str | None = None,
    ) -> FanoutReport:
        """Fan *message* (and *reward_amount* points) out to *recipient_ids*.

        A negative *reward_amount* deducts instead of granting.  Never
        raises for recipient or batch failures; those land in the report.
        """
        job = FanoutJob(
            job_key=job_key or uuid.uuid4().hex,
            recipients=list(dict.fromkeys(str(r) for r in recipient_ids if r)),
            payload=dict(message),
            reward_amount=reward_amount,
            expires_at=expires_at,
        )

        if eligibility is not None:
            allowed = await run_db(eligibility, job.recipients)
            job.eligible = [r for r in job.recipients if r in allowed]
            job.failed.filtered = [r for r in job.recipients if r not in allowed]
        else:
            job.eligible = list(job.recipients)

        batches = _batched(job.eligible, self.settings.batch_size)
        logger.info(
            "Broadcast %s: %d recipients, %d eligible, %d batches, reward=%d",
            job.job_key, len(job.recipients), len(job.eligible), len(batches), reward_amount,
        )

        for index, batch in enumerate(batches):
            if index:
                await self._sleep(self.settings.batch_delay_seconds)
            await self._run_batch(job, batch, index)

        report = job.report()
        logger.info(
            "Broadcast %s finished: status=%s success=%d failed=%d",
            job.job_key, report.status, report.success_count, report.failure_count,
        )
        return report

    async def _run_batch(self, job: FanoutJob, batch: list[str], index: int) -> None:
        if job.reward_amount:
            granted = await self._grant_batch(job, batch)
        else:
            granted = batch

        if not granted:
            return
        try:
            result = await self.delivery.deliver(granted, job.payload)
        except Exception:
            logger.exception(
                "Broadcast %s batch %d delivery failed; %d users marked failed",
                job.job_key, index, len(granted),
            )
            job.failed.delivery_failed.extend(granted)
            return
        job.delivered.extend(result.delivered)
        job.failed.delivery_failed.extend(result.failed)

    async def _grant_batch(self, job: FanoutJob, batch: list[str]) -> list[str]:
        """Grant (or deduct) for every user in *batch* concurrently."""
        if job.reward_amount > 0:
            calls = [
                run_db(
                    self.rewards.add_reward_to_user,
                    user_id,
                    job.reward_amount,
                    BROADCAST_REWARD,
                    job.entry_id(user_id),
                    job.expires_at,
                    BROADCAST_REASON,
                    SOURCE_BROADCAST,
                )
                for user_id in batch
            ]
        else:
            calls = [
                run_db(
                    self.rewards.deduct,
                    user_id,
                    -job.reward_amount,
                    BROADCAST_REASON,
                    job.entry_id(user_id),
                    action_key=BROADCAST_REWARD,
                    source=SOURCE_BROADCAST,
                )
                for user_id in batch
            ]
        results = await asyncio.gather(*calls, return_exceptions=True)

        granted = []
        for user_id, result in zip(batch, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Broadcast %s reward failed for %s: %s", job.job_key, user_id, result
                )
                job.failed.reward_failed.append(user_id)
            else:
                granted.append(user_id)
        return granted

    # -------------------------------------------------------------------
    # Persisted broadcasts
    # -------------------------------------------------------------------
    def _runnable(self, now: datetime):
        """PENDING rows, plus SENDING rows whose run lease has lapsed."""
        return or_(
            Broadcast.status == BroadcastStatus.PENDING.value,
            and_(
                Broadcast.status == BroadcastStatus.SENDING.value,
                or_(Broadcast.claimed_until.is_(None), Broadcast.claimed_until < now),
            ),
        )

    def _claim_broadcast(self, broadcast_id: int) -> dict | None:
        """Move a runnable broadcast to SENDING under a lease; return its fields."""
        now = self._clock()
        with get_session(self.engine) as session:
            claimed = session.execute(
                update(Broadcast)
                .where(Broadcast.id == broadcast_id, self._runnable(now))
                .values(
                    status=BroadcastStatus.SENDING.value,
                    claimed_until=now + timedelta(seconds=self.settings.lease_seconds),
                )
            )
            if claimed.rowcount != 1:
                return None
            row = session.get(Broadcast, broadcast_id)
            return {
                "id": row.id,
                "title": row.title,
                "body": row.body,
                "message_type": row.message_type,
                "reward_amount": row.reward_amount,
                "reward_expires_at": row.reward_expires_at,
                "requires_marketing_consent": row.requires_marketing_consent,
                "recipient_ids": list(row.recipient_ids or []),
                "created_by": row.created_by,
            }

    def _store_report(self, broadcast_id: int, report: FanoutReport) -> None:
        with get_session(self.engine) as session:
            session.execute(
                update(Broadcast)
                .where(Broadcast.id == broadcast_id)
                .values(
                    status=report.status,
                    success_count=report.success_count,
                    failure_count=report.failure_count,
                    failed_ids=report.failed_ids.to_dict(),
                    sent_at=self._clock(),
                    claimed_until=None,
                )
            )

    def _release_broadcast(self, broadcast_id: int) -> None:
        with get_session(self.engine) as session:
            session.execute(
                update(Broadcast)
                .where(Broadcast.id == broadcast_id)
                .values(status=BroadcastStatus.PENDING.value, claimed_until=None)
            )

    async def run_broadcast_record(self, broadcast_id: int) -> FanoutReport | None:
        """Run a stored broadcast and write the result back.

        Picks up PENDING broadcasts and SENDING ones whose worker died
        mid-run (lease expired); grants are idempotent, so a re-run pays
        nobody twice.  Returns ``None`` if the broadcast doesn't exist, is
        finished, or is held by a live run.
        """
        record = await run_db(self._claim_broadcast, broadcast_id)
        if record is None:
            logger.info("Broadcast %s not runnable; skipped", broadcast_id)
            return None

        eligibility = ConsentFilter(self.engine) if record["requires_marketing_consent"] else None
        message = {
            "title": record["title"],
            "body": record["body"],
            "type": record["message_type"],
            "broadcast_id": str(record["id"]),
        }
        try:
            report = await self.run_broadcast(
                record["recipient_ids"],
                message,
                reward_amount=record["reward_amount"],
                eligibility=eligibility,
                expires_at=record["reward_expires_at"],
                job_key=str(record["id"]),
            )
        except Exception:
            # Grants are idempotent per (job, user); a later run picks up where this stopped.
            logger.exception("Broadcast %s aborted; returned to PENDING", broadcast_id)
            await run_db(self._release_broadcast, broadcast_id)
            raise

        await run_db(self._store_report, broadcast_id, report)
        await run_db(
            sync_best_effort,
            "update_broadcast_status",
            self.mirror.update_broadcast_status,
            broadcast_id,
            report.to_dict(),
        )
        await run_db(
            record_admin_action,
            self.engine,
            actor_id=record["created_by"],
            action_type=AdminActionType.BROADCAST.value,
            target_table="broadcasts",
            target_id=broadcast_id,
            details={
                "status": report.status,
                "success_count": report.success_count,
                "failure_count": report.failure_count,
            },
        )
        return report

    async def run_pending_broadcasts(self, limit: int = 10) -> list[FanoutReport]:
        """Run every runnable broadcast (oldest first, up to *limit*).

        Includes SENDING broadcasts abandoned by a crashed run.
        """

        def _pending_ids() -> list[int]:
            with get_session(self.engine) as session:
                return list(session.scalars(
                    select(Broadcast.id)
                    .where(self._runnable(self._clock()))
                    .order_by(Broadcast.created_at, Broadcast.id)
                    .limit(limit)
                ).all())

        reports = []
        for broadcast_id in await run_db(_pending_ids):
            try:
                report = await self.run_broadcast_record(broadcast_id)
            except Exception:
                logger.exception("Pending broadcast %s failed", broadcast_id)
                continue
            if report is not None:
                reports.append(report)
        return reports
