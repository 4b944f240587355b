"""
rally.database.seed — Default Reward Policy Seeder
===================================================

Baseline policies seeded on first startup so actions pay out before an
operator has touched the policy table.

Idempotent — only inserts action keys that don't already exist.  Amounts
edited later are never overwritten.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from rally.constants import DEFAULT_POLICIES
from rally.database.models import RewardPolicy

logger = logging.getLogger(__name__)


def seed_default_policies(engine: Engine) -> int:
    """Insert any missing default policies.  Returns the number inserted."""
    with Session(engine) as session:
        existing = set(session.scalars(select(RewardPolicy.action_key)).all())
        inserted = 0
        for action_key, (amount, daily_cap, once_per_user, reason) in DEFAULT_POLICIES.items():
            if action_key in existing:
                continue
            session.add(RewardPolicy(
                action_key=action_key,
                amount=amount,
                daily_cap=daily_cap,
                is_active=True,
                once_per_user=once_per_user,
                reason=reason,
            ))
            inserted += 1
        session.commit()

    if inserted:
        logger.info("Seeded %d default reward policies", inserted)
    return inserted
