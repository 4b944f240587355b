"""
rally.engine.results — Typed Operation Outcomes
================================================

Business outcomes (duplicate, daily limit, capacity reached…) are values,
not exceptions.  Every public operation returns one of these dataclasses
so callers branch on fields instead of catching.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field


class ErrorKind(enum.StrEnum):
    """Why the grant engine refused a grant."""
    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"


class OutcomeReason(enum.StrEnum):
    """Reason attached to a retry-shell outcome that did not grant."""
    PENDING = "PENDING"
    DAILY_LIMIT = "DAILY_LIMIT"
    ERROR = "ERROR"
    NO_AUTH = "NO_AUTH"


class AdmissionError(enum.StrEnum):
    PROGRAM_NOT_FOUND = "PROGRAM_NOT_FOUND"
    RECRUITMENT_CLOSED = "RECRUITMENT_CLOSED"
    NICKNAME_INVALID = "NICKNAME_INVALID"
    DUPLICATE_APPLICATION = "DUPLICATE_APPLICATION"
    NICKNAME_DUPLICATE = "NICKNAME_DUPLICATE"
    FIRST_COME_DEADLINE_REACHED = "FIRST_COME_DEADLINE_REACHED"
    CAPACITY_REACHED = "CAPACITY_REACHED"
    MEMBERSHIP_NOT_FOUND = "MEMBERSHIP_NOT_FOUND"


# ---------------------------------------------------------------------------
# Ledger / grant engine
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AppendResult:
    entry_id: str
    created: bool


@dataclass(frozen=True, slots=True)
class GrantResult:
    """Output of the grant engine for a single action."""

    success: bool
    amount: int = 0
    duplicate: bool = False
    entry_id: str | None = None
    error: ErrorKind | None = None
    message: str = ""

    @classmethod
    def no_reward(cls, message: str) -> GrantResult:
        return cls(success=True, amount=0, message=message)

    @classmethod
    def failed(cls, error: ErrorKind, message: str = "") -> GrantResult:
        return cls(success=False, error=error, message=message or error.value)


@dataclass(frozen=True, slots=True)
class AddResult:
    entry_id: str
    is_duplicate: bool


@dataclass(frozen=True, slots=True)
class DeductResult:
    entry_id: str
    deducted: int
    duplicate: bool


# ---------------------------------------------------------------------------
# Retry shell
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class GrantOutcome:
    """What the retry shell reports back to a request handler.

    ``reason`` is ``None`` on success; otherwise one of
    :class:`OutcomeReason`.  ``pending_id`` is set when the grant was
    parked for later reconciliation.
    """

    success: bool
    amount: int = 0
    duplicate: bool = False
    reason: OutcomeReason | None = None
    error: str | None = None
    error_code: str | None = None
    pending_id: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AdmissionResult:
    success: bool
    membership_id: int | None = None
    error: AdmissionError | None = None
    message: str = ""
    join_reward: GrantOutcome | None = None

    @classmethod
    def rejected(cls, error: AdmissionError, message: str = "") -> AdmissionResult:
        return cls(success=False, error=error, message=message or error.value)


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class FailedRecipients:
    """Recipients that did not get the full broadcast, by failure class."""

    filtered: list[str] = field(default_factory=list)
    reward_failed: list[str] = field(default_factory=list)
    delivery_failed: list[str] = field(default_factory=list)

    def total(self) -> int:
        return len(self.filtered) + len(self.reward_failed) + len(self.delivery_failed)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "filtered": list(self.filtered),
            "reward_failed": list(self.reward_failed),
            "delivery_failed": list(self.delivery_failed),
        }


@dataclass(slots=True)
class FanoutReport:
    job_key: str
    status: str
    success_count: int = 0
    failure_count: int = 0
    eligible_count: int = 0
    failed_ids: FailedRecipients = field(default_factory=FailedRecipients)

    def to_dict(self) -> dict:
        return {
            "job_key": self.job_key,
            "status": self.status,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "eligible_count": self.eligible_count,
            "failed_ids": self.failed_ids.to_dict(),
        }
