"""
rally.services.retry_shell — Retry/Backoff Shell with Pending Fallback
=======================================================================

The only reward entry point request handlers call.  Wraps the grant engine
so a store hiccup never surfaces as a failed request:

    ATTEMPT ──▶ CLASSIFY ──▶ DONE      (engine returned a result)
                   │
                   ├──────▶ RETRY     (retryable, attempts and time left)
                   │          └──sleep base·2^n──▶ ATTEMPT
                   │
                   └──────▶ PERSIST   (terminal, or out of attempts/time)
                              └──▶ PendingReward saved, reason=PENDING

Business outcomes from the engine pass straight through: a daily limit is
``reason=DAILY_LIMIT``, a malformed request is ``reason=ERROR``; neither
leaves a pending record.  :meth:`RewardService.grant_reward` never raises.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING

from rally.config import RetrySettings
from rally.engine.errors import error_code, is_retryable
from rally.engine.policy import PostContext, resolve_context_id, resolve_post_action
from rally.engine.results import ErrorKind, GrantOutcome, GrantResult, OutcomeReason

if TYPE_CHECKING:
    from rally.services.pending_service import PendingRewardStore
    from rally.services.reward_service import RewardEngine

logger = logging.getLogger(__name__)


class ShellState(enum.Enum):
    ATTEMPT = "attempt"
    CLASSIFY = "classify"
    RETRY = "retry"
    DONE = "done"
    PERSIST = "persist"


def outcome_from_result(result: GrantResult) -> GrantOutcome:
    """Translate an engine result into what the caller sees."""
    if result.success:
        return GrantOutcome(success=True, amount=result.amount, duplicate=result.duplicate)
    if result.error is ErrorKind.DAILY_LIMIT_EXCEEDED:
        return GrantOutcome(
            success=False,
            reason=OutcomeReason.DAILY_LIMIT,
            error=result.message,
            error_code=result.error.value,
        )
    return GrantOutcome(
        success=False,
        reason=OutcomeReason.ERROR,
        error=result.message,
        error_code=result.error.value if result.error else None,
    )


class RewardService:
    """Retrying facade over :class:`~rally.services.reward_service.RewardEngine`.

    Built once per process and injected into request handlers.
    ``sleep`` and ``clock`` are injectable so tests don't wait.
    """

    def __init__(
        self,
        engine: RewardEngine,
        pending: PendingRewardStore,
        settings: RetrySettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.pending = pending
        self.settings = settings or RetrySettings()
        self._sleep = sleep
        self._clock = clock

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------
    def grant_reward(
        self,
        user_id: str | None,
        action_key: str,
        metadata: Mapping | None = None,
    ) -> GrantOutcome:
        """Grant the reward for an action, retrying transient failures.

        Returns a :class:`GrantOutcome`.  ``reason`` is ``None`` on success,
        ``NO_AUTH`` without a user, ``DAILY_LIMIT`` / ``ERROR`` for business
        refusals and ``PENDING`` when the grant was parked for later.
        """
        if not user_id:
            return GrantOutcome(success=False, reason=OutcomeReason.NO_AUTH, error="Login required")
        metadata = dict(metadata or {})
        return self._run(
            user_id,
            action_key,
            metadata,
            lambda: self.engine.grant_for_action(user_id, action_key, metadata),
        )

    def grant_post_reward(self, user_id: str | None, post: PostContext) -> GrantOutcome:
        """Grant the reward a post earns.  Post types without a reward succeed with 0."""
        if not user_id:
            return GrantOutcome(success=False, reason=OutcomeReason.NO_AUTH, error="Login required")
        action_key = resolve_post_action(post)
        if action_key is None:
            return GrantOutcome(success=True, amount=0)
        return self.grant_reward(user_id, action_key, post.metadata())

    # -------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------
    def _delay_for(self, attempt: int) -> float:
        return self.settings.base_delay_ms * (2 ** attempt) / 1000.0

    def _run(
        self,
        user_id: str,
        action_key: str,
        metadata: dict,
        attempt_fn: Callable[[], GrantResult],
    ) -> GrantOutcome:
        state = ShellState.ATTEMPT
        attempt = 0
        started = self._clock()
        result: GrantResult | None = None
        error: Exception | None = None

        while True:
            if state is ShellState.ATTEMPT:
                try:
                    result, error = attempt_fn(), None
                except Exception as exc:
                    result, error = None, exc
                state = ShellState.CLASSIFY

            elif state is ShellState.CLASSIFY:
                if result is not None:
                    state = ShellState.DONE
                elif self._may_retry(error, attempt, started):
                    state = ShellState.RETRY
                else:
                    state = ShellState.PERSIST

            elif state is ShellState.RETRY:
                delay = self._delay_for(attempt)
                logger.info(
                    "Grant %s for %s failed (%s: %s); retry %d in %.0f ms",
                    action_key, user_id, error_code(error), error,
                    attempt + 1, delay * 1000,
                )
                self._sleep(delay)
                attempt += 1
                state = ShellState.ATTEMPT

            elif state is ShellState.DONE:
                return outcome_from_result(result)

            else:  # PERSIST
                return self._persist(user_id, action_key, metadata, error)

    def _may_retry(self, error: Exception | None, attempt: int, started: float) -> bool:
        if error is None or not is_retryable(error):
            return False
        if attempt + 1 >= self.settings.max_attempts:
            return False
        elapsed = self._clock() - started
        return elapsed + self._delay_for(attempt) <= self.settings.timeout_budget_seconds

    def _persist(
        self,
        user_id: str,
        action_key: str,
        metadata: dict,
        error: Exception | None,
    ) -> GrantOutcome:
        code = error_code(error) if error is not None else None
        message = str(error) if error is not None else "unknown error"
        context_id = resolve_context_id(metadata, user_id) or user_id

        pending_id = None
        try:
            pending_id = self.pending.save(user_id, action_key, context_id, metadata, message, code)
        except Exception:
            logger.exception(
                "Failed to save pending reward: user=%s action=%s", user_id, action_key
            )

        logger.warning(
            "Grant %s for %s parked as pending (id=%s, code=%s)",
            action_key, user_id, pending_id, code,
        )
        return GrantOutcome(
            success=False,
            reason=OutcomeReason.PENDING,
            error=message,
            error_code=code,
            pending_id=pending_id,
        )
