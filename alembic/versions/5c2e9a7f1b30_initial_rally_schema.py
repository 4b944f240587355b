"""Initial Rally schema

Revision ID: 5c2e9a7f1b30
Revises:
Create Date: 2026-09-28 10:12:41.118204

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '5c2e9a7f1b30'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _ts(name: str, nullable: bool = True, **kw) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, **kw)


def upgrade() -> None:
    """Create the ledger, pending queue, programs and broadcast tables."""

    # --- ledger_entries ---
    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("reason", sa.String(200), nullable=False),
        sa.Column("action_key", sa.String(64), nullable=True),
        sa.Column("change_type", sa.String(10), nullable=False),
        sa.Column("source", sa.String(20), nullable=False, server_default="action"),
        sa.Column("metadata", _JSON, nullable=True),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("expires_at"),
        _ts("consumed_at"),
        sa.Column("consumed_amount", sa.Integer, nullable=False, server_default="0"),
    )
    op.create_index("ix_ledger_user_time", "ledger_entries", ["user_id", "created_at"])
    op.create_index(
        "ix_ledger_active_grants", "ledger_entries",
        ["user_id", "change_type", "consumed_at", "expires_at"],
    )
    op.create_index("ix_ledger_expires", "ledger_entries", ["expires_at"])

    # --- daily_action_counters ---
    op.create_table(
        "daily_action_counters",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("action_key", sa.String(64), primary_key=True),
        sa.Column("day", sa.String(10), primary_key=True),
        sa.Column("count", sa.Integer, nullable=False, server_default="0"),
    )

    # --- pending_rewards ---
    op.create_table(
        "pending_rewards",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("action_key", sa.String(64), nullable=False),
        sa.Column("context_id", sa.String(255), nullable=False),
        sa.Column("metadata", _JSON, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("error_code", sa.String(50), nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        _ts("next_retry_at"),
        _ts("claimed_until"),
        sa.Column("resolution", sa.String(20), nullable=True),
        sa.Column("granted_amount", sa.Integer, nullable=True),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("resolved_at"),
    )
    op.create_index(
        "uq_pending_open_grant", "pending_rewards",
        ["user_id", "action_key", "context_id"],
        unique=True,
        postgresql_where=sa.text("status = 'open'"),
        sqlite_where=sa.text("status = 'open'"),
    )
    op.create_index("ix_pending_status_due", "pending_rewards", ["status", "next_retry_at"])

    # --- users / device_tokens ---
    op.create_table(
        "users",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("nickname", sa.String(50), nullable=True),
        sa.Column("marketing_consent", sa.Boolean, server_default=sa.false()),
        sa.Column("push_consent", sa.Boolean, server_default=sa.true()),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        "device_tokens",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.String(128),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("token", sa.String(512), nullable=False, unique=True),
        _ts("last_used_at"),
    )
    op.create_index("ix_device_tokens_user", "device_tokens", ["user_id"])

    # --- reward_policies ---
    op.create_table(
        "reward_policies",
        sa.Column("action_key", sa.String(64), primary_key=True),
        sa.Column("amount", sa.Integer, nullable=False, server_default="0"),
        sa.Column("daily_cap", sa.Integer, nullable=True),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("once_per_user", sa.Boolean, server_default=sa.false()),
        sa.Column("expiry_days", sa.Integer, nullable=True),
        sa.Column("reason", sa.String(200), nullable=True),
        _ts("updated_at", nullable=False, server_default=sa.func.now()),
    )

    # --- programs / memberships ---
    op.create_table(
        "programs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("capacity", sa.Integer, nullable=True),
        sa.Column("is_capacity_enforced", sa.Boolean, server_default=sa.false()),
        sa.Column("is_recruiting", sa.Boolean, server_default=sa.true()),
        sa.Column("join_action_key", sa.String(64), nullable=True),
        sa.Column("mirror_ref", sa.String(128), nullable=True),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        "memberships",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "program_id", sa.Integer,
            sa.ForeignKey("programs.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("nickname", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("role", sa.String(20), nullable=False, server_default="member"),
        sa.Column("mirror_ref", sa.String(128), nullable=True),
        _ts("joined_at", nullable=False, server_default=sa.func.now()),
        _ts("approved_at"),
        _ts("rejected_at"),
        sa.UniqueConstraint("program_id", "user_id", name="uq_memberships_program_user"),
    )
    op.create_index(
        "uq_memberships_program_nickname", "memberships",
        ["program_id", "nickname"],
        unique=True,
        postgresql_where=sa.text("status <> 'rejected'"),
        sqlite_where=sa.text("status <> 'rejected'"),
    )
    op.create_index("ix_memberships_program_status", "memberships", ["program_id", "status"])

    # --- broadcasts ---
    op.create_table(
        "broadcasts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("body", sa.Text, nullable=False, server_default=""),
        sa.Column("message_type", sa.String(50), nullable=False, server_default="notice"),
        sa.Column("reward_amount", sa.Integer, nullable=False, server_default="0"),
        _ts("reward_expires_at"),
        sa.Column("requires_marketing_consent", sa.Boolean, server_default=sa.true()),
        sa.Column("recipient_ids", _JSON, nullable=False, server_default="[]"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("success_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_ids", _JSON, nullable=True),
        sa.Column("created_by", sa.String(128), nullable=True),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("sent_at"),
    )
    op.create_index("ix_broadcasts_status", "broadcasts", ["status"])

    # --- admin_log ---
    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.String(128), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("details", _JSON, nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        _ts("timestamp", nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor_id", "timestamp"])
    op.create_index(
        "ix_admin_log_target", "admin_log", ["target_table", "target_id", "timestamp"]
    )


def downgrade() -> None:
    """Drop every Rally table."""
    for table in (
        "admin_log",
        "broadcasts",
        "memberships",
        "programs",
        "reward_policies",
        "device_tokens",
        "users",
        "pending_rewards",
        "daily_action_counters",
        "ledger_entries",
    ):
        op.drop_table(table)
