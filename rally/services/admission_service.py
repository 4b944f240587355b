"""
rally.services.admission_service — First-Come Program Admission
================================================================

``apply`` admits a user to a capacity-bounded program.  The checks that
depend on *other* applicants all run in one transaction that starts by
locking the program row, so two applicants can never both see the last
free seat:

    pre-transaction   program exists, recruiting, nickname well-formed
    ── lock program ─────────────────────────────────────────────────
    1. read every membership of the program
    2. user already applied            → DUPLICATE_APPLICATION
    3. nickname held by a non-rejected → NICKNAME_DUPLICATE
    4. capacity enforced and approved ≥ capacity
                                       → FIRST_COME_DEADLINE_REACHED
    5. insert a ``pending`` membership
    ── commit ───────────────────────────────────────────────────────
    after commit      mirror the application (best effort)
                      grant the join reward, if the program has one

Approving a member also notifies them (inbox plus push, best effort).

The database backs the transaction up with a unique (program, user) key
and a partial unique index on (program, nickname) for non-rejected rows.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rally.config import RallyConfig
from rally.database.engine import get_session, run_transaction
from rally.database.models import (
    AdminActionType,
    Membership,
    MembershipStatus,
    Program,
    utcnow,
)
from rally.engine.errors import RallyError
from rally.engine.nickname import normalize_nickname, validate_nickname
from rally.engine.results import AdmissionError, AdmissionResult
from rally.services.audit_service import log_admin_action
from rally.services.mirror import ContentMirror, NullMirror, sync_best_effort

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from rally.engine.policy import PolicySource
    from rally.services.notification_service import Notifier
    from rally.services.retry_shell import RewardService

logger = logging.getLogger(__name__)


class _Rejected(RallyError):
    """Raised inside an admission transaction to roll it back."""

    def __init__(self, error: AdmissionError, message: str = "") -> None:
        super().__init__(message or error.value, code=error.value)
        self.error = error


def _lock_program(session: Session, program_id: int) -> Program:
    program = session.scalar(
        select(Program).where(Program.id == program_id).with_for_update()
    )
    if program is None:
        raise _Rejected(AdmissionError.PROGRAM_NOT_FOUND)
    return program


def _approved_count(memberships) -> int:
    return sum(1 for m in memberships if m.status == MembershipStatus.APPROVED.value)


class AdmissionController:
    """Transactional first-come admission plus status transitions."""

    def __init__(
        self,
        engine: Engine,
        policies: PolicySource,
        rewards: RewardService | None = None,
        mirror: ContentMirror | None = None,
        config: RallyConfig | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.engine = engine
        self.policies = policies
        self.rewards = rewards
        self.mirror = mirror or NullMirror()
        self.config = config or RallyConfig()
        self.notifier = notifier

    # -------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------
    def apply(self, program_id: int, user_id: str, nickname: str) -> AdmissionResult:
        """Apply *user_id* to *program_id* under *nickname*.

        Never raises for business outcomes; see :class:`AdmissionError`.
        """
        nickname = normalize_nickname(nickname)
        policy = self.policies.program_policy(program_id)
        if policy is None:
            return AdmissionResult.rejected(AdmissionError.PROGRAM_NOT_FOUND)
        if not policy.is_recruiting:
            return AdmissionResult.rejected(
                AdmissionError.RECRUITMENT_CLOSED, "This program is not recruiting"
            )
        problem = validate_nickname(nickname, self.config.nickname)
        if problem is not None:
            return AdmissionResult.rejected(AdmissionError.NICKNAME_INVALID, problem)

        try:
            membership_id = run_transaction(
                self.engine, self._apply_tx, program_id, user_id, nickname
            )
        except _Rejected as rejected:
            logger.info(
                "Application rejected: program=%s user=%s reason=%s",
                program_id, user_id, rejected.error.value,
            )
            return AdmissionResult.rejected(rejected.error, str(rejected))
        except IntegrityError:
            # A concurrent writer beat the in-transaction checks to the index.
            error = self._classify_conflict(program_id, user_id)
            logger.info(
                "Application lost a race: program=%s user=%s reason=%s",
                program_id, user_id, error.value,
            )
            return AdmissionResult.rejected(error)

        logger.info(
            "Application accepted: program=%s user=%s membership=%s",
            program_id, user_id, membership_id,
        )
        self._mirror_application(membership_id, program_id, user_id, nickname)

        join_reward = None
        if policy.join_action_key and self.rewards is not None:
            join_reward = self.rewards.grant_reward(
                user_id, policy.join_action_key, {"context_id": f"program:{program_id}"}
            )
        return AdmissionResult(
            success=True, membership_id=membership_id, join_reward=join_reward
        )

    def _apply_tx(
        self, session: Session, program_id: int, user_id: str, nickname: str
    ) -> int:
        program = _lock_program(session, program_id)
        memberships = session.scalars(
            select(Membership).where(Membership.program_id == program_id)
        ).all()

        if any(m.user_id == user_id for m in memberships):
            raise _Rejected(AdmissionError.DUPLICATE_APPLICATION)
        if any(
            m.nickname == nickname and m.status != MembershipStatus.REJECTED.value
            for m in memberships
        ):
            raise _Rejected(
                AdmissionError.NICKNAME_DUPLICATE, "This nickname is already taken"
            )
        if (
            program.is_capacity_enforced
            and program.capacity is not None
            and _approved_count(memberships) >= program.capacity
        ):
            raise _Rejected(
                AdmissionError.FIRST_COME_DEADLINE_REACHED, "All seats have been filled"
            )

        membership = Membership(
            program_id=program_id,
            user_id=user_id,
            nickname=nickname,
            status=MembershipStatus.PENDING.value,
            joined_at=utcnow(),
        )
        session.add(membership)
        session.flush()
        return membership.id

    def _classify_conflict(self, program_id: int, user_id: str) -> AdmissionError:
        with get_session(self.engine) as session:
            exists = session.scalar(
                select(Membership.id).where(
                    Membership.program_id == program_id,
                    Membership.user_id == user_id,
                )
            )
        if exists is not None:
            return AdmissionError.DUPLICATE_APPLICATION
        return AdmissionError.NICKNAME_DUPLICATE

    def _mirror_application(
        self, membership_id: int, program_id: int, user_id: str, nickname: str
    ) -> None:
        ref = sync_best_effort(
            "record_application",
            self.mirror.record_application,
            {
                "membership_id": membership_id,
                "program_id": program_id,
                "user_id": user_id,
                "nickname": nickname,
                "status": MembershipStatus.PENDING.value,
            },
        )
        if not ref:
            return
        try:
            with get_session(self.engine) as session:
                session.execute(
                    update(Membership)
                    .where(Membership.id == membership_id)
                    .values(mirror_ref=str(ref))
                )
        except Exception:
            logger.warning(
                "Could not store mirror ref for membership %s", membership_id, exc_info=True
            )

    # -------------------------------------------------------------------
    # Status transitions
    # -------------------------------------------------------------------
    def approve(
        self, program_id: int, user_id: str, actor_id: str | None = None
    ) -> AdmissionResult:
        """Approve an application, enforcing capacity at approval time."""
        return self._transition(program_id, user_id, MembershipStatus.APPROVED, actor_id)

    def reject(
        self, program_id: int, user_id: str, actor_id: str | None = None
    ) -> AdmissionResult:
        return self._transition(program_id, user_id, MembershipStatus.REJECTED, actor_id)

    def reset_to_pending(
        self, program_id: int, user_id: str, actor_id: str | None = None
    ) -> AdmissionResult:
        return self._transition(program_id, user_id, MembershipStatus.PENDING, actor_id)

    def _transition(
        self,
        program_id: int,
        user_id: str,
        target: MembershipStatus,
        actor_id: str | None,
    ) -> AdmissionResult:
        try:
            membership_id, mirror_ref, changed, program_name = run_transaction(
                self.engine, self._transition_tx, program_id, user_id, target, actor_id
            )
        except _Rejected as rejected:
            return AdmissionResult.rejected(rejected.error, str(rejected))
        except IntegrityError:
            # Un-rejecting onto a nickname someone else has since taken.
            return AdmissionResult.rejected(
                AdmissionError.NICKNAME_DUPLICATE, "This nickname is already taken"
            )

        if changed:
            logger.info(
                "Membership %s → %s (program=%s user=%s)",
                membership_id, target.value, program_id, user_id,
            )
            if mirror_ref:
                sync_best_effort(
                    "update_membership_status",
                    self.mirror.update_membership_status,
                    mirror_ref,
                    target.value,
                )
            if target is MembershipStatus.APPROVED:
                self._notify_approved(program_id, program_name, user_id)
        return AdmissionResult(success=True, membership_id=membership_id)

    def _notify_approved(self, program_id: int, program_name: str, user_id: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify([user_id], {
                "title": "Application approved",
                "body": f"Your application to \"{program_name}\" was approved.",
                "type": "program",
                "program_id": str(program_id),
            })
        except Exception:
            logger.warning(
                "Approval notification failed: program=%s user=%s", program_id, user_id
            )

    def _transition_tx(
        self,
        session: Session,
        program_id: int,
        user_id: str,
        target: MembershipStatus,
        actor_id: str | None,
    ) -> tuple[int, str | None, bool, str]:
        program = _lock_program(session, program_id)
        memberships = session.scalars(
            select(Membership).where(Membership.program_id == program_id)
        ).all()
        membership = next((m for m in memberships if m.user_id == user_id), None)
        if membership is None:
            raise _Rejected(AdmissionError.MEMBERSHIP_NOT_FOUND)
        if membership.status == target.value:
            return membership.id, membership.mirror_ref, False, program.name

        if target is MembershipStatus.APPROVED and (
            program.is_capacity_enforced
            and program.capacity is not None
            and _approved_count(memberships) >= program.capacity
        ):
            raise _Rejected(AdmissionError.CAPACITY_REACHED, "Program is full")

        before = membership.status
        now = utcnow()
        membership.status = target.value
        if target is MembershipStatus.APPROVED:
            membership.approved_at = now
        elif target is MembershipStatus.REJECTED:
            membership.rejected_at = now
        session.flush()

        action = {
            MembershipStatus.APPROVED: AdminActionType.APPROVE,
            MembershipStatus.REJECTED: AdminActionType.REJECT,
            MembershipStatus.PENDING: AdminActionType.RESET,
        }[target]
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=action.value,
            target_table="memberships",
            target_id=membership.id,
            details={"before": before, "after": target.value, "user_id": user_id},
        )
        return membership.id, membership.mirror_ref, True, program.name

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def list_members(self, program_id: int, status: MembershipStatus | None = None) -> list[dict]:
        query = select(Membership).where(Membership.program_id == program_id)
        if status is not None:
            query = query.where(Membership.status == status.value)
        with get_session(self.engine) as session:
            rows = session.scalars(query.order_by(Membership.joined_at, Membership.id)).all()
            return [
                {
                    "id": m.id,
                    "user_id": m.user_id,
                    "nickname": m.nickname,
                    "status": m.status,
                    "role": m.role,
                }
                for m in rows
            ]
