"""
rally.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for tuning values: retry budget, fan-out batching,
the day boundary used by daily caps, reward expiry, nickname rules and
worker intervals.  Secrets and connection strings (``DATABASE_URL``,
``JWT_SECRET``, gateway URLs) stay in the environment / ``.env``.

Usage::

    from rally.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.retry.max_attempts)    # 3
    print(cfg.fanout.batch_size)     # 100
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo

import yaml


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RetrySettings:
    """Retry shell tuning.  Delay before attempt *n* is ``base_delay_ms * 2**n``."""

    max_attempts: int = 3
    base_delay_ms: int = 100
    timeout_budget_seconds: float = 2.0


@dataclass(frozen=True, slots=True)
class FanoutSettings:
    batch_size: int = 100
    batch_delay_seconds: float = 1.2
    max_tokens_per_send: int = 500
    max_tokens_per_user: int = 5
    lease_seconds: int = 900  # SENDING rows older than this are re-run


@dataclass(frozen=True, slots=True)
class PendingSettings:
    """Pending-reward reconciliation tuning."""

    batch_size: int = 50
    item_delay_seconds: float = 0.1
    lease_seconds: int = 300
    max_backoff_minutes: int = 1440


@dataclass(frozen=True, slots=True)
class NicknameRules:
    min_length: int = 2
    max_length: int = 20
    banned_words: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class WorkerSettings:
    reconcile_interval_seconds: int = 600
    broadcast_interval_seconds: int = 60
    expiry_interval_seconds: int = 86400


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RallyConfig:
    """Immutable configuration loaded from ``config.yaml``.

    Every section has defaults so services can be built without a file
    (tests, one-off scripts).  :func:`load_config` still insists on the
    identity keys being present.
    """

    community_name: str = "Rally"
    timezone: str = "UTC"  # Day boundary for daily caps and monthly expiry
    default_expiry_days: int = 120

    retry: RetrySettings = field(default_factory=RetrySettings)
    fanout: FanoutSettings = field(default_factory=FanoutSettings)
    pending: PendingSettings = field(default_factory=PendingSettings)
    nickname: NicknameRules = field(default_factory=NicknameRules)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @property
    def reward_tz(self) -> tzinfo:
        if self.timezone.upper() == "UTC":
            return UTC
        return ZoneInfo(self.timezone)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> RallyConfig:
    """Read *path* and return a :class:`RallyConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return parse_config(raw)


def parse_config(raw: dict) -> RallyConfig:
    """Build a :class:`RallyConfig` from an already-parsed YAML mapping."""
    retry = raw.get("retry") or {}
    fanout = raw.get("fanout") or {}
    pending = raw.get("pending") or {}
    nickname = raw.get("nickname") or {}
    worker = raw.get("worker") or {}

    return RallyConfig(
        community_name=raw["community_name"],
        timezone=str(raw["timezone"]),
        default_expiry_days=int(raw.get("default_expiry_days", 120)),
        retry=RetrySettings(
            max_attempts=int(retry.get("max_attempts", 3)),
            base_delay_ms=int(retry.get("base_delay_ms", 100)),
            timeout_budget_seconds=float(retry.get("timeout_budget_seconds", 2.0)),
        ),
        fanout=FanoutSettings(
            batch_size=int(fanout.get("batch_size", 100)),
            batch_delay_seconds=float(fanout.get("batch_delay_seconds", 1.2)),
            max_tokens_per_send=int(fanout.get("max_tokens_per_send", 500)),
            max_tokens_per_user=int(fanout.get("max_tokens_per_user", 5)),
            lease_seconds=int(fanout.get("lease_seconds", 900)),
        ),
        pending=PendingSettings(
            batch_size=int(pending.get("batch_size", 50)),
            item_delay_seconds=float(pending.get("item_delay_seconds", 0.1)),
            lease_seconds=int(pending.get("lease_seconds", 300)),
            max_backoff_minutes=int(pending.get("max_backoff_minutes", 1440)),
        ),
        nickname=NicknameRules(
            min_length=int(nickname.get("min_length", 2)),
            max_length=int(nickname.get("max_length", 20)),
            banned_words=tuple(str(w) for w in nickname.get("banned_words") or ()),
        ),
        worker=WorkerSettings(
            reconcile_interval_seconds=int(worker.get("reconcile_interval_seconds", 600)),
            broadcast_interval_seconds=int(worker.get("broadcast_interval_seconds", 60)),
            expiry_interval_seconds=int(worker.get("expiry_interval_seconds", 86400)),
        ),
    )
