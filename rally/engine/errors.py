"""
rally.engine.errors — Error Taxonomy & Classification
======================================================

Every failure that reaches the retry shell is reduced to a short string
*code* (``UNAVAILABLE``, ``ABORTED``, ``ECONNRESET``…) and then judged
retryable or terminal.  Codes line up with the ones the platform's
clients already understand, so a ``PendingReward.error_code`` is readable
without knowing whether the failure came from the database or the network.

Mapping for exceptions that carry no code of their own:

=======================================  ======================
SQLAlchemy pool ``TimeoutError``         ``DEADLINE_EXCEEDED``
serialization failure / deadlock / lock  ``ABORTED``
invalidated connection / other           ``UNAVAILABLE``
``OperationalError``
other ``DBAPIError``                     ``INTERNAL``
``TimeoutError`` (socket, asyncio)       ``ETIMEDOUT``
``ConnectionResetError``                 ``ECONNRESET``
``socket.gaierror``                      ``ENOTFOUND``
other ``ConnectionError``                ``UNAVAILABLE``
httpx timeouts / transport errors        ``ETIMEDOUT`` / ``UNAVAILABLE``
=======================================  ======================
"""

from __future__ import annotations

import socket

import httpx
from sqlalchemy import exc as sa_exc

RETRYABLE_CODES: frozenset[str] = frozenset({
    "UNAVAILABLE",
    "RESOURCE_EXHAUSTED",
    "DEADLINE_EXCEEDED",
    "ABORTED",
    "INTERNAL",
    "INTERNAL_ERROR",
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
})

NETWORK_KEYWORDS: tuple[str, ...] = (
    "network",
    "timeout",
    "connection",
    "econnreset",
    "etimedout",
    "socket",
)

# PostgreSQL SQLSTATEs that mean "another transaction won, try again".
_SERIALIZATION_PGCODES = frozenset({"40001", "40P01", "55P03"})


# ---------------------------------------------------------------------------
# Domain exceptions
# ---------------------------------------------------------------------------
class RallyError(Exception):
    """Base class for errors raised by Rally services."""

    code: str = "INTERNAL"

    def __init__(self, message: str = "", code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class GatewayError(RallyError):
    """The push gateway returned something we cannot interpret."""

    code = "UNAVAILABLE"


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------
def is_serialization_failure(exc: BaseException) -> bool:
    """True if *exc* is a lost race the store expects the caller to retry."""
    if not isinstance(exc, sa_exc.DBAPIError):
        return False
    orig = exc.orig
    if getattr(orig, "pgcode", None) in _SERIALIZATION_PGCODES:
        return True
    message = str(orig).lower()
    return "database is locked" in message or "deadlock" in message


def error_code(exc: BaseException) -> str | None:
    """Reduce *exc* to a short error code, or ``None`` if it has none."""
    if isinstance(exc, RallyError):
        return exc.code
    if isinstance(exc, sa_exc.TimeoutError):
        return "DEADLINE_EXCEEDED"
    if isinstance(exc, sa_exc.DBAPIError):
        if is_serialization_failure(exc):
            return "ABORTED"
        if exc.connection_invalidated or isinstance(
            exc, sa_exc.OperationalError | sa_exc.InterfaceError
        ):
            return "UNAVAILABLE"
        return "INTERNAL"
    if isinstance(exc, httpx.TimeoutException):
        return "ETIMEDOUT"
    if isinstance(exc, httpx.TransportError):
        return "UNAVAILABLE"
    if isinstance(exc, TimeoutError):
        return "ETIMEDOUT"
    if isinstance(exc, ConnectionResetError):
        return "ECONNRESET"
    if isinstance(exc, socket.gaierror):
        return "ENOTFOUND"
    if isinstance(exc, ConnectionError):
        return "UNAVAILABLE"

    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return code
    return None


def is_retryable(exc: BaseException) -> bool:
    """Decide whether *exc* is worth another attempt.

    Known transient codes are retryable; otherwise the message is searched
    for network-ish keywords.
    """
    code = error_code(exc)
    if code is not None and code.upper() in RETRYABLE_CODES:
        return True
    message = str(exc).lower()
    return any(keyword in message for keyword in NETWORK_KEYWORDS)
