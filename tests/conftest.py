"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of rally.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from collections.abc import Mapping, Sequence  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from rally.database.engine import create_db_engine, enable_sqlite_transactions  # noqa: E402
from rally.database.models import Base, DeviceToken, Program, User  # noqa: E402
from rally.engine.policy import RewardRule, StaticPolicySource  # noqa: E402


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Rally tables.

    Uses StaticPool so every session sees the same in-memory database.
    One connection means one transaction at a time: tests that hit the
    store from several threads at once use :func:`file_engine` instead.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_transactions(engine)
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """File-backed SQLite engine: real connection pool, writers serialize
    on ``BEGIN IMMEDIATE``.  For concurrency and fan-out tests."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'rally.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


# ---------------------------------------------------------------------------
# Policy helpers
# ---------------------------------------------------------------------------
COMMENT_RULE = RewardRule(action_key="comment", amount=1, daily_cap=5, reason="Comment written")
ROUTINE_RULE = RewardRule(action_key="routine_post", amount=5, reason="Routine post")
ONCE_RULE = RewardRule(
    action_key="consecutive_days_5", amount=20, once_per_user=True, reason="Streak"
)


def make_policies(*rules: RewardRule) -> StaticPolicySource:
    """Static policy source; defaults to the comment / routine / streak rules."""
    rules = rules or (COMMENT_RULE, ROUTINE_RULE, ONCE_RULE)
    return StaticPolicySource({rule.action_key: rule for rule in rules})


@pytest.fixture
def policies() -> StaticPolicySource:
    return make_policies()


# ---------------------------------------------------------------------------
# Data helpers
# ---------------------------------------------------------------------------
def add_users(
    engine: Engine,
    user_ids: Sequence[str],
    *,
    marketing: bool = True,
    push: bool = True,
    tokens_per_user: int = 1,
) -> None:
    """Insert users with ``tokens_per_user`` device tokens each (``tok-{user}-{n}``)."""
    with Session(engine) as session:
        for user_id in user_ids:
            session.add(User(id=user_id, marketing_consent=marketing, push_consent=push))
            for n in range(tokens_per_user):
                session.add(DeviceToken(user_id=user_id, token=f"tok-{user_id}-{n}"))
        session.commit()


def add_program(
    engine: Engine,
    *,
    capacity: int | None = None,
    enforced: bool = False,
    recruiting: bool = True,
    join_action_key: str | None = None,
    name: str = "Morning Run Club",
) -> int:
    with Session(engine) as session:
        program = Program(
            name=name,
            capacity=capacity,
            is_capacity_enforced=enforced,
            is_recruiting=recruiting,
            join_action_key=join_action_key,
        )
        session.add(program)
        session.commit()
        return program.id


class FakeGateway:
    """Push gateway double: records calls, fails listed tokens."""

    def __init__(self, failing_tokens: Sequence[str] = (), raise_on_call: int | None = None):
        self.failing_tokens = set(failing_tokens)
        self.raise_on_call = raise_on_call
        self.calls: list[tuple[list[str], dict]] = []

    async def send(self, tokens: Sequence[str], payload: Mapping) -> list[bool]:
        self.calls.append((list(tokens), dict(payload)))
        if self.raise_on_call is not None and len(self.calls) == self.raise_on_call:
            raise ConnectionResetError("gateway connection reset")
        return [token not in self.failing_tokens for token in tokens]

    @property
    def sent_tokens(self) -> list[str]:
        return [token for tokens, _ in self.calls for token in tokens]


# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------
@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()


@pytest.fixture
def user_token():
    return make_user_token()


def make_admin_token(sub: str = "admin-1", username: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from rally.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def make_user_token(sub: str = "user-1") -> str:
    import jwt

    from rally.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode({"sub": sub, "is_admin": False}, JWT_SECRET, algorithm=JWT_ALGORITHM)
