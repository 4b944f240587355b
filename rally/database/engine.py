"""
rally.database.engine — Database Connection, Transactions & Async Helper
=========================================================================

SQLAlchemy + psycopg2 is **synchronous**.  Services are written as plain
sync functions that open a session, do their work and commit; async
callers (the fan-out coordinator, the worker loops, async routes) ship
them to a thread with :func:`run_db` so the event loop stays free.

Two transaction helpers sit on top of the engine:

* :func:`get_session` — commit on success, roll back on exception.
* :func:`run_transaction` — the same, re-run a bounded number of times
  when the store reports a lost race (serialization failure, deadlock,
  ``database is locked``).  Grants and admissions go through this.

SQLite (tests, local dev) gets ``BEGIN IMMEDIATE`` on every transaction so
writers serialize and SAVEPOINTs behave, see :func:`enable_sqlite_transactions`.

Usage::

    from rally.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS …

    balance = await run_db(ledger.active_balance, user_id)
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from collections.abc import Callable
from contextlib import contextmanager
from typing import Concatenate, ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from rally.database.models import Base
from rally.engine.errors import is_serialization_failure

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from *url* or ``DATABASE_URL``.

    PostgreSQL pool:
    * ``pool_size=5`` — five persistent connections.
    * ``max_overflow=10`` — up to 10 extra connections under load.
    * ``pool_timeout=10`` — fail after 10 s if no connection is available.
    * ``pool_recycle=3600`` — recycle connections after 1 hour.

    Raises
    ------
    RuntimeError
        If no URL is given and ``DATABASE_URL`` is not set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        enable_sqlite_transactions(engine)
    else:
        engine = create_engine(
            url,
            echo=False,        # Set True for SQL debugging
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,   # Reconnect stale connections automatically
            pool_timeout=10,      # Fail after 10s instead of hanging forever
            pool_recycle=3600,    # Recycle connections after 1 hour
        )
    logger.info("Database engine created → %s", engine.url.host or engine.url.database)
    return engine


def enable_sqlite_transactions(engine: Engine) -> None:
    """Take transaction control away from pysqlite and emit ``BEGIN IMMEDIATE``.

    pysqlite defers ``BEGIN`` until the first DML statement, which breaks
    SAVEPOINT handling and lets two writers read the same snapshot before
    either locks.  ``BEGIN IMMEDIATE`` takes the write lock up front.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables defined in :mod:`rally.database.models`.

    Safe to call on every startup.  Seeds the default reward policies
    afterwards; seeding only inserts action keys that don't exist yet.

    .. note::

        In production the schema is managed by Alembic (``alembic upgrade
        head``).  ``create_all`` is retained for dev/test environments.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")

    from rally.database.seed import seed_default_policies

    seed_default_policies(engine)


# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that auto-commits on success and rolls back
    on exception.

    Usage::

        with get_session(engine) as session:
            session.add(User(id="u1", nickname="drew"))
            # commit happens automatically on block exit
    """
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def run_transaction(
    engine: Engine,
    func: Callable[Concatenate[Session, P], T],
    *args: P.args,
    **kwargs: P.kwargs,
) -> T:
    """Run ``func(session, *args, **kwargs)`` in one transaction.

    Serialization failures and deadlocks are re-run up to three times with
    a short jittered pause; any other exception (or the last conflict)
    propagates after rollback.
    """
    attempts = 3
    for attempt in range(attempts):
        try:
            with get_session(engine) as session:
                return func(session, *args, **kwargs)
        except DBAPIError as exc:
            if attempt == attempts - 1 or not is_serialization_failure(exc):
                raise
            pause = 0.02 * (2 ** attempt) + random.uniform(0, 0.02)
            logger.debug(
                "Transaction conflict in %s (attempt %d/%d), retrying in %.3fs",
                getattr(func, "__name__", func), attempt + 1, attempts, pause,
            )
            time.sleep(pause)
    raise AssertionError("unreachable")


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Under the hood it calls :func:`asyncio.to_thread`, which schedules
    *func* on the default ``ThreadPoolExecutor`` so the event loop is never
    blocked::

        result = await run_db(engine_obj.add_reward_to_user, user_id, 10, ...)
    """
    return await asyncio.to_thread(func, *args, **kwargs)
