"""
rally.worker.tasks — Periodic Background Tasks
===============================================

Scheduled jobs run by the worker process:

- **Pending reconciliation** — every ``reconcile_interval_seconds``
  (default 10 min), replays due pending rewards.
- **Broadcast dispatch** — every ``broadcast_interval_seconds``, picks
  up broadcasts left in PENDING and fans them out.
- **Grant expiry** — daily, retires unspent grants past ``expires_at``.

Blocking store work goes through ``run_db()`` so the loop stays free for
the fan-out's concurrent sends.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from rally.database.engine import run_db
from rally.services.pending_service import reconcile_pending

if TYPE_CHECKING:
    from rally.wiring import Services

logger = logging.getLogger(__name__)


class PeriodicTasks:
    """Owns the worker's background loops."""

    def __init__(self, services: Services) -> None:
        self.services = services
        self.settings = services.config.worker
        self._tasks: list[asyncio.Task] = []

    # -------------------------------------------------------------------
    # Single passes
    # -------------------------------------------------------------------
    async def reconcile_once(self) -> dict | None:
        """Replay due pending rewards."""
        try:
            return await run_db(
                reconcile_pending, self.services.pending, self.services.engine
            )
        except Exception:
            logger.exception("Pending reconciliation failed", extra={"task": "reconcile"})
            return None

    async def broadcasts_once(self) -> int:
        """Dispatch PENDING broadcasts; returns how many ran."""
        try:
            reports = await self.services.fanout.run_pending_broadcasts()
        except Exception:
            logger.exception("Broadcast dispatch failed", extra={"task": "broadcasts"})
            return 0
        return len(reports)

    async def expiry_once(self) -> int:
        """Expire overdue grants; returns the number of grants retired."""
        try:
            report = await run_db(self.services.ledger.expire_grants)
        except Exception:
            logger.exception("Grant expiry failed", extra={"task": "expiry"})
            return 0
        if report.grants_expired:
            logger.info(
                "Expired %d grants (%d points) for %d users",
                report.grants_expired, report.points_expired, len(report.user_ids),
            )
        return report.grants_expired

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        """Start every loop.  Calling twice is a no-op."""
        if self._tasks:
            return

        def _every(seconds: float, job: Callable[[], Awaitable], name: str) -> asyncio.Task:
            async def _loop() -> None:
                while True:
                    await job()
                    await asyncio.sleep(seconds)

            return loop.create_task(_loop(), name=name)

        self._tasks = [
            _every(self.settings.reconcile_interval_seconds, self.reconcile_once, "pending-reconcile"),
            _every(self.settings.broadcast_interval_seconds, self.broadcasts_once, "broadcast-dispatch"),
            _every(self.settings.expiry_interval_seconds, self.expiry_once, "grant-expiry"),
        ]
        logger.info("Started %d periodic tasks", len(self._tasks))

    def stop(self) -> None:
        """Cancel all loops."""
        for task in self._tasks:
            task.cancel()
        self._tasks = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)
