"""
rally.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- ledger_entries        — Append-only balance changes (deterministic ids)
- daily_action_counters — Per-user per-action per-day grant counters
- pending_rewards       — Grants that exhausted their retries
- users                 — Recipient attributes (consent flags)
- device_tokens         — Push tokens per user
- notifications         — Per-user in-app inbox
- reward_policies       — Amount / daily cap per action key
- programs              — Capacity-bounded programs users apply to
- memberships           — One application per (program, user)
- broadcasts            — Fan-out jobs and their final tallies
- admin_log             — Append-only audit trail

There is no stored balance: a user's balance is derived from the active
grants in ``ledger_entries`` (see :mod:`rally.services.ledger`).
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
JsonColumn = JSONB().with_variant(JSON(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize to aware UTC.  Naive values (SQLite read-backs) are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Rally ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class ChangeType(enum.StrEnum):
    ADD = "add"
    DEDUCT = "deduct"


class PendingStatus(enum.StrEnum):
    OPEN = "open"
    RESOLVED = "resolved"


class PendingResolution(enum.StrEnum):
    """Why a pending reward left the queue."""
    GRANTED = "granted"
    DUPLICATE = "duplicate"
    NO_POLICY = "no_policy"
    DAILY_LIMIT = "daily_limit"
    INVALID = "invalid"


class MembershipStatus(enum.StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class BroadcastStatus(enum.StrEnum):
    PENDING = "PENDING"
    SENDING = "SENDING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class AdminActionType(enum.StrEnum):
    """Categories of admin mutations recorded in admin_log."""
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    RESET = "RESET"
    MANUAL_RETRY = "MANUAL_RETRY"
    BROADCAST = "BROADCAST"
    EXPIRE = "EXPIRE"


# ---------------------------------------------------------------------------
# LedgerEntry — one immutable balance change
# ---------------------------------------------------------------------------
class LedgerEntry(Base):
    """Append-only balance change.

    ``id`` is deterministic for action grants
    (``{action_key}:{user_id}:{context_id}``) so a replayed grant collides
    on the primary key instead of paying twice.  Grants (``change_type='add'``)
    carry the spend bookkeeping: ``consumed_amount`` grows as deductions eat
    into the grant FIFO, and ``consumed_at`` is stamped once nothing is left
    (or the grant lapsed / was revoked).
    """

    __tablename__ = "ledger_entries"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(200), nullable=False)
    action_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    change_type: Mapped[str] = mapped_column(String(10), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="action")
    metadata_: Mapped[dict | None] = mapped_column("metadata", JsonColumn, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    consumed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    consumed_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_ledger_user_time", "user_id", "created_at"),
        Index("ix_ledger_active_grants", "user_id", "change_type", "consumed_at", "expires_at"),
        Index("ix_ledger_expires", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry id={self.id!r} user={self.user_id!r} "
            f"amount={self.amount} type={self.change_type}>"
        )


# ---------------------------------------------------------------------------
# DailyActionCounter — grants per user per action per day
# ---------------------------------------------------------------------------
class DailyActionCounter(Base):
    __tablename__ = "daily_action_counters"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    action_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    day: Mapped[str] = mapped_column(String(10), primary_key=True)  # YYYY-MM-DD
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<DailyActionCounter user={self.user_id!r} action={self.action_key} "
            f"day={self.day} count={self.count}>"
        )


# ---------------------------------------------------------------------------
# PendingReward — grants that could not be completed online
# ---------------------------------------------------------------------------
class PendingReward(Base):
    __tablename__ = "pending_rewards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    action_key: Mapped[str] = mapped_column(String(64), nullable=False)
    context_id: Mapped[str] = mapped_column(String(255), nullable=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JsonColumn, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PendingStatus.OPEN.value
    )
    # Server time of the original attempt; replays count against that day.
    occurred_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    claimed_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolution: Mapped[str | None] = mapped_column(String(20), nullable=True)
    granted_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        # One open record per logical grant; resolved rows are history.
        Index(
            "uq_pending_open_grant",
            "user_id", "action_key", "context_id",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
        Index("ix_pending_status_due", "status", "next_retry_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PendingReward id={self.id} user={self.user_id!r} "
            f"action={self.action_key} status={self.status} retries={self.retry_count}>"
        )


# ---------------------------------------------------------------------------
# Users & device tokens — recipient attributes for fan-out filters
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    nickname: Mapped[str | None] = mapped_column(String(50), nullable=True)
    marketing_consent: Mapped[bool] = mapped_column(Boolean, default=False)
    push_consent: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    tokens: Mapped[list[DeviceToken]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User id={self.id!r} nickname={self.nickname!r}>"


class DeviceToken(Base):
    __tablename__ = "device_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    user: Mapped[User] = relationship(back_populates="tokens")

    __table_args__ = (
        Index("ix_device_tokens_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<DeviceToken id={self.id} user={self.user_id!r}>"


# ---------------------------------------------------------------------------
# Notification — one in-app inbox item
# ---------------------------------------------------------------------------
class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    data: Mapped[dict | None] = mapped_column(JsonColumn, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    read_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_notifications_user_time", "user_id", "created_at"),
        Index("ix_notifications_user_unread", "user_id", "is_read"),
    )

    def __repr__(self) -> str:
        return f"<Notification id={self.id} user={self.user_id!r} read={self.is_read}>"


# ---------------------------------------------------------------------------
# RewardPolicy — what an action is worth
# ---------------------------------------------------------------------------
class RewardPolicy(Base):
    __tablename__ = "reward_policies"

    action_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    daily_cap: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    once_per_user: Mapped[bool] = mapped_column(Boolean, default=False)
    expiry_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str | None] = mapped_column(String(200), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<RewardPolicy {self.action_key} amount={self.amount} "
            f"cap={self.daily_cap} active={self.is_active}>"
        )


# ---------------------------------------------------------------------------
# Programs & memberships — first-come admission
# ---------------------------------------------------------------------------
class Program(Base):
    __tablename__ = "programs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_capacity_enforced: Mapped[bool] = mapped_column(Boolean, default=False)
    is_recruiting: Mapped[bool] = mapped_column(Boolean, default=True)
    join_action_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    mirror_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    memberships: Mapped[list[Membership]] = relationship(
        back_populates="program", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Program id={self.id} name={self.name!r} capacity={self.capacity}>"


class Membership(Base):
    __tablename__ = "memberships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    program_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("programs.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    nickname: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MembershipStatus.PENDING.value
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="member")
    mirror_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    rejected_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    program: Mapped[Program] = relationship(back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("program_id", "user_id", name="uq_memberships_program_user"),
        # Rejected applicants free their nickname.
        Index(
            "uq_memberships_program_nickname",
            "program_id", "nickname",
            unique=True,
            postgresql_where=text("status <> 'rejected'"),
            sqlite_where=text("status <> 'rejected'"),
        ),
        Index("ix_memberships_program_status", "program_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Membership id={self.id} program={self.program_id} "
            f"user={self.user_id!r} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# Broadcast — persisted fan-out job
# ---------------------------------------------------------------------------
class Broadcast(Base):
    __tablename__ = "broadcasts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    message_type: Mapped[str] = mapped_column(String(50), nullable=False, default="notice")
    reward_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reward_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    requires_marketing_consent: Mapped[bool] = mapped_column(Boolean, default=True)
    recipient_ids: Mapped[list] = mapped_column(JsonColumn, nullable=False, default=list)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BroadcastStatus.PENDING.value
    )
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_ids: Mapped[dict | None] = mapped_column(JsonColumn, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    # Lease on a SENDING row; past it, a crashed run may be picked up again.
    claimed_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_broadcasts_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Broadcast id={self.id} title={self.title!r} status={self.status}>"


# ---------------------------------------------------------------------------
# AdminLog — append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    details: Mapped[dict | None] = mapped_column(JsonColumn, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor_id", "timestamp"),
        Index("ix_admin_log_target", "target_table", "target_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id!r} action={self.action_type}>"
