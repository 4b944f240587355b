"""
rally.engine.policy — Reward & Program Policy Sources
======================================================

The grant engine never hard-codes what an action is worth.  It asks an
injected :class:`PolicySource`:

* :class:`DbPolicySource` — reads ``reward_policies`` / ``programs``,
  caching reward rules in memory for ``ttl`` seconds.
* :class:`StaticPolicySource` — fixed in-memory rules for tests and
  one-off scripts.

Also home to post-type resolution: which action key a community post
earns, including the media sniffing for gathering reviews.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from rally.constants import (
    CONTEXT_KEYS,
    GATHERING_REVIEW,
    GATHERING_REVIEW_MEDIA,
    GATHERING_REVIEW_TEXT,
    POST_TYPE_ACTIONS,
)
from rally.database.models import Program, RewardPolicy

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Policy value objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RewardRule:
    action_key: str
    amount: int
    daily_cap: int | None = None
    is_active: bool = True
    once_per_user: bool = False
    expiry_days: int | None = None
    reason: str | None = None

    @property
    def pays(self) -> bool:
        return self.is_active and self.amount > 0


@dataclass(frozen=True, slots=True)
class ProgramPolicy:
    program_id: int
    capacity: int | None
    is_capacity_enforced: bool
    is_recruiting: bool
    join_action_key: str | None = None


class PolicySource(Protocol):
    def reward_rule(self, action_key: str) -> RewardRule | None: ...

    def program_policy(self, program_id: int) -> ProgramPolicy | None: ...


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------
class StaticPolicySource:
    """In-memory rules.  Programs are optional."""

    def __init__(
        self,
        rules: Mapping[str, RewardRule] | None = None,
        programs: Mapping[int, ProgramPolicy] | None = None,
    ) -> None:
        self._rules = dict(rules or {})
        self._programs = dict(programs or {})

    def reward_rule(self, action_key: str) -> RewardRule | None:
        return self._rules.get(action_key)

    def program_policy(self, program_id: int) -> ProgramPolicy | None:
        return self._programs.get(program_id)


class DbPolicySource:
    """Table-backed policy source.

    Reward rules are cached for ``ttl`` seconds; program policy is read
    fresh every time because admission re-reads it under lock anyway.
    Store errors propagate so the retry shell can classify them.
    """

    def __init__(self, engine: Engine, ttl: float = 60.0) -> None:
        self._engine = engine
        self._ttl = ttl
        self._lock = threading.Lock()
        self._rules: dict[str, RewardRule] = {}
        self._loaded_at: float = 0.0

    def _refresh(self) -> None:
        now = time.monotonic()
        if self._loaded_at and now - self._loaded_at < self._ttl:
            return  # cache still fresh

        with Session(self._engine) as session:
            rows = session.scalars(select(RewardPolicy)).all()
            rules = {
                row.action_key: RewardRule(
                    action_key=row.action_key,
                    amount=row.amount,
                    daily_cap=row.daily_cap,
                    is_active=row.is_active,
                    once_per_user=row.once_per_user,
                    expiry_days=row.expiry_days,
                    reason=row.reason,
                )
                for row in rows
            }
        with self._lock:
            self._rules = rules
            self._loaded_at = now
        logger.debug("Reward policy cache refreshed (%d rules)", len(rules))

    def invalidate(self) -> None:
        with self._lock:
            self._loaded_at = 0.0

    def reward_rule(self, action_key: str) -> RewardRule | None:
        self._refresh()
        with self._lock:
            return self._rules.get(action_key)

    def program_policy(self, program_id: int) -> ProgramPolicy | None:
        with Session(self._engine) as session:
            program = session.get(Program, program_id)
            if program is None:
                return None
            return ProgramPolicy(
                program_id=program.id,
                capacity=program.capacity,
                is_capacity_enforced=program.is_capacity_enforced,
                is_recruiting=program.is_recruiting,
                join_action_key=program.join_action_key,
            )


# ---------------------------------------------------------------------------
# Context & post resolution
# ---------------------------------------------------------------------------
def resolve_context_id(
    metadata: Mapping | None, user_id: str, once_per_user: bool = False
) -> str | None:
    """Pick the id that makes an action unique for a user.

    Checks ``context_id``, ``comment_id``, ``post_id``, ``target_id`` in
    that order.  Actions that pay once per user fall back to the user id.
    """
    metadata = metadata or {}
    for key in CONTEXT_KEYS:
        value = metadata.get(key)
        if value not in (None, ""):
            return str(value)
    if once_per_user:
        return str(user_id)
    return None


def ledger_entry_id(action_key: str, user_id: str, context_id: str) -> str:
    return f"{action_key}:{user_id}:{context_id}"


_FENCED_CODE = re.compile(r"```.*?```", re.DOTALL)
_INLINE_CODE = re.compile(r"`[^`\n]*`")
_IMG_TAG = re.compile(r"<img\b", re.IGNORECASE)


def has_inline_image(content: str | None) -> bool:
    """True if *content* embeds an ``<img>`` tag outside code blocks."""
    if not content:
        return False
    stripped = _FENCED_CODE.sub("", content)
    stripped = _INLINE_CODE.sub("", stripped)
    return bool(_IMG_TAG.search(stripped))


@dataclass(frozen=True, slots=True)
class PostContext:
    """The bits of a community post that decide its reward."""

    post_id: str
    post_type: str
    content: str | None = None
    media: tuple[str, ...] = ()
    community_id: str | None = None

    def metadata(self) -> dict:
        data = {"post_id": self.post_id, "post_type": self.post_type}
        if self.community_id:
            data["community_id"] = self.community_id
        return data


def resolve_post_action(post: PostContext) -> str | None:
    """Map a post to the action key it earns, or ``None`` for no reward."""
    post_type = (post.post_type or "").upper()
    if post_type == GATHERING_REVIEW:
        if post.media or has_inline_image(post.content):
            return GATHERING_REVIEW_MEDIA
        return GATHERING_REVIEW_TEXT
    return POST_TYPE_ACTIONS.get(post_type)
