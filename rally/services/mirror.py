"""
rally.services.mirror — Best-Effort Content Mirror
===================================================

Operators watch applications and broadcast results in an external content
workspace.  Writes there are *never* on the critical path: a failed mirror
call is logged and forgotten, and the primary record stands.

* :class:`NullMirror` — default; does nothing.
* :class:`HttpContentMirror` — posts JSON to ``CONTENT_MIRROR_URL`` via httpx.
* :func:`sync_best_effort` — call any mirror method, swallow and log failures.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from typing import ParamSpec, Protocol, TypeVar

import httpx

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class ContentMirror(Protocol):
    def record_application(self, application: Mapping) -> str | None:
        """Create a row for a new application; return its external id."""

    def update_membership_status(self, mirror_ref: str, status: str) -> None: ...

    def update_broadcast_status(self, broadcast_id: int, report: Mapping) -> None: ...


class NullMirror:
    def record_application(self, application: Mapping) -> str | None:
        return None

    def update_membership_status(self, mirror_ref: str, status: str) -> None:
        return None

    def update_broadcast_status(self, broadcast_id: int, report: Mapping) -> None:
        return None


class HttpContentMirror:
    """JSON-over-HTTP mirror.  Raises on transport or HTTP errors."""

    def __init__(self, base_url: str, token: str | None = None, timeout: float = 5.0) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.Client(base_url=base_url.rstrip("/"), headers=headers, timeout=timeout)

    @classmethod
    def from_env(cls) -> HttpContentMirror | None:
        url = os.getenv("CONTENT_MIRROR_URL", "").strip()
        if not url:
            return None
        return cls(url, token=os.getenv("CONTENT_MIRROR_TOKEN") or None)

    def record_application(self, application: Mapping) -> str | None:
        resp = self._client.post("/applications", json=dict(application))
        resp.raise_for_status()
        return resp.json().get("id")

    def update_membership_status(self, mirror_ref: str, status: str) -> None:
        resp = self._client.patch(f"/applications/{mirror_ref}", json={"status": status})
        resp.raise_for_status()

    def update_broadcast_status(self, broadcast_id: int, report: Mapping) -> None:
        resp = self._client.patch(f"/broadcasts/{broadcast_id}", json=dict(report))
        resp.raise_for_status()


def sync_best_effort(
    label: str, func: Callable[P, T], *args: P.args, **kwargs: P.kwargs
) -> T | None:
    """Call *func*; on any exception log a warning and return ``None``."""
    try:
        return func(*args, **kwargs)
    except Exception:
        logger.warning("Content mirror %s failed", label, exc_info=True)
        return None
