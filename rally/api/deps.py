"""
rally.api.deps — FastAPI dependency injection
==============================================
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from rally.config import RallyConfig, load_config
from rally.database.engine import create_db_engine
from rally.wiring import Services, build_services

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"


def _signing_secret() -> str:
    """HS256 key shared with the Rally auth service.

    Startup fails unless ``JWT_SECRET`` holds at least 32 characters and
    is not a ``change-me`` placeholder.
    """
    secret = os.getenv("JWT_SECRET", "").strip()
    if len(secret) < 32 or "change-me" in secret:
        raise RuntimeError("JWT_SECRET must be a random string of 32+ characters")
    return secret


JWT_SECRET: str = _signing_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> RallyConfig:
    path = Path(os.getenv("RALLY_CONFIG", "config.yaml"))
    if not path.exists():
        logger.warning("%s not found; using built-in defaults", path)
        return RallyConfig()
    return load_config(path)


@lru_cache(maxsize=4)
def _services_for(engine: Engine, config: RallyConfig) -> Services:
    return build_services(engine, config)


def get_services(
    engine: Annotated[Engine, Depends(get_engine)],
    config: Annotated[RallyConfig, Depends(get_config)],
) -> Services:
    """The process-wide service graph, built on first use."""
    return _services_for(engine, config)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
def _decode(authorization: str) -> dict:
    token = authorization.split(" ", 1)[1]
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")


def get_optional_user(
    authorization: Annotated[str | None, Header()] = None,
) -> dict | None:
    """JWT payload if a bearer token was sent, else ``None``.  Bad tokens → 401."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return _decode(authorization)


def get_current_user(
    user: Annotated[dict | None, Depends(get_optional_user)],
) -> dict:
    if user is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    return user


def get_current_admin(
    user: Annotated[dict, Depends(get_current_user)],
) -> dict:
    """Validate JWT and return admin user payload. Raises 401/403."""
    if not user.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return user
