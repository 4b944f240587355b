"""Add notification inbox, broadcast lease and pending occurred_at

Revision ID: 8d4b6f2e0a17
Revises: 5c2e9a7f1b30
Create Date: 2026-10-19 09:41:07.552310

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '8d4b6f2e0a17'
down_revision: str | Sequence[str] | None = '5c2e9a7f1b30'
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("body", sa.Text, nullable=False, server_default=""),
        sa.Column("type", sa.String(50), nullable=False, server_default="general"),
        sa.Column("data", _JSON, nullable=True),
        sa.Column("is_read", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_notifications_user_time", "notifications", ["user_id", "created_at"])
    op.create_index("ix_notifications_user_unread", "notifications", ["user_id", "is_read"])

    with op.batch_alter_table("broadcasts") as batch:
        batch.add_column(sa.Column("claimed_until", sa.DateTime(timezone=True), nullable=True))

    with op.batch_alter_table("pending_rewards") as batch:
        batch.add_column(sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=True))

    with op.batch_alter_table("device_tokens") as batch:
        batch.add_column(sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False,
            server_default=sa.func.now(),
        ))


def downgrade() -> None:
    with op.batch_alter_table("device_tokens") as batch:
        batch.drop_column("created_at")
    with op.batch_alter_table("pending_rewards") as batch:
        batch.drop_column("occurred_at")
    with op.batch_alter_table("broadcasts") as batch:
        batch.drop_column("claimed_until")
    op.drop_index("ix_notifications_user_unread", table_name="notifications")
    op.drop_index("ix_notifications_user_time", table_name="notifications")
    op.drop_table("notifications")
