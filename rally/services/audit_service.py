"""
rally.services.audit_service — Admin Audit Trail
=================================================

Appends ``admin_log`` rows for operator actions (approvals, manual pending
retries, broadcasts).  Two flavours:

* :func:`log_admin_action` — inside the caller's transaction.
* :func:`record_admin_action` — own transaction, best-effort: the action it
  describes has already happened, so a failed audit write is only logged.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from rally.database.engine import get_session
from rally.database.models import AdminLog, as_utc

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def log_admin_action(
    session: Session,
    *,
    actor_id: str | None,
    action_type: str,
    target_table: str,
    target_id: str | int | None,
    details: Mapping | None = None,
    reason: str | None = None,
) -> None:
    """Insert a row into admin_log within the current transaction."""
    session.add(AdminLog(
        actor_id=actor_id or SYSTEM_ACTOR,
        action_type=action_type,
        target_table=target_table,
        target_id=str(target_id) if target_id is not None else None,
        details=dict(details) if details else None,
        reason=reason,
    ))


def record_admin_action(engine: Engine, **fields) -> None:
    """Best-effort :func:`log_admin_action` in its own transaction."""
    try:
        with get_session(engine) as session:
            log_admin_action(session, **fields)
    except Exception:
        logger.exception(
            "Failed to write admin log: %s %s/%s",
            fields.get("action_type"), fields.get("target_table"), fields.get("target_id"),
        )


def recent_actions(engine: Engine, limit: int = 50) -> list[dict]:
    with get_session(engine) as session:
        rows = session.scalars(
            select(AdminLog).order_by(AdminLog.timestamp.desc(), AdminLog.id.desc()).limit(limit)
        ).all()
        return [
            {
                "id": row.id,
                "actor_id": row.actor_id,
                "action_type": row.action_type,
                "target_table": row.target_table,
                "target_id": row.target_id,
                "details": row.details,
                "reason": row.reason,
                "timestamp": as_utc(row.timestamp).isoformat(),
            }
            for row in rows
        ]
