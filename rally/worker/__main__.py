"""
rally.worker.__main__ — Entry point for ``python -m rally.worker``
==================================================================

Wiring:
1. Load .env (secrets, gateway URLs).
2. Load config.yaml (soft settings).
3. Create the SQLAlchemy engine, ensure tables exist, seed policies.
4. Build the service graph.
5. Run the periodic tasks until interrupted.

Run with::

    uv run python -m rally.worker
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from rally.config import load_config
from rally.database.engine import create_db_engine, init_db
from rally.wiring import build_services
from rally.worker.tasks import PeriodicTasks

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("rally")


async def _serve(tasks: PeriodicTasks) -> None:
    tasks.start(asyncio.get_running_loop())
    try:
        await asyncio.Event().wait()
    finally:
        tasks.stop()


def main() -> None:
    """Bootstrap and run the Rally worker."""

    # 1. Environment variables (secrets).
    load_dotenv()

    if not os.getenv("PUSH_GATEWAY_URL"):
        logger.critical(
            "PUSH_GATEWAY_URL is not set.  "
            "Copy .env.example → .env and point it at the push relay."
        )
        sys.exit(1)

    # 2. Soft configuration.
    cfg = load_config(os.getenv("RALLY_CONFIG", "config.yaml"))
    logger.info("Config loaded — Community: %s (tz=%s)", cfg.community_name, cfg.timezone)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. Services.
    services = build_services(engine, cfg)

    # 5. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting Rally worker…")
    try:
        asyncio.run(_serve(PeriodicTasks(services)))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
