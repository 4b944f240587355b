"""
rally.api.main — FastAPI application entry point
=================================================

Run with::

    uvicorn rally.api.main:app --reload --port 8000
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from rally.api.deps import get_config, get_engine, get_services  # noqa: E402
from rally.api.routes.admin import router as admin_router  # noqa: E402
from rally.api.routes.broadcasts import router as broadcasts_router  # noqa: E402
from rally.api.routes.notifications import router as notifications_router  # noqa: E402
from rally.api.routes.programs import router as programs_router  # noqa: E402
from rally.api.routes.rewards import router as rewards_router  # noqa: E402

logger = logging.getLogger(__name__)


def _web_origins() -> list[str]:
    """Rally web app origins allowed to call the API (``RALLY_WEB_ORIGINS``)."""
    raw = os.getenv("RALLY_WEB_ORIGINS", "")
    return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine, bind the notifier loop."""
    engine = get_engine()
    services = get_services(engine, get_config())
    # Approval pushes are scheduled from request threads onto this loop.
    services.notifier.bind_loop(asyncio.get_running_loop())
    logger.info("Rally API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Rally API shutting down")


app = FastAPI(
    title="Rally API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_web_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(rewards_router, prefix="/api")
app.include_router(programs_router, prefix="/api")
app.include_router(broadcasts_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(notifications_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
