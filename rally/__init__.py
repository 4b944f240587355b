"""
Rally — Reward & Notification Fan-out Engine
=============================================
Grants point rewards for community actions exactly once, admits members to
capacity-bounded programs on a first-come basis, and fans out push
notifications with attached payouts to large, filtered audiences.

Package layout::

    rally/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Action keys, post types, default policies
    ├── wiring.py          # Builds the service graph from an engine
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, sessions, transaction retry
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Default reward policy seeder
    ├── engine/
    │   ├── errors.py      # Error classification (retryable vs terminal)
    │   ├── results.py     # Typed outcomes returned by every operation
    │   ├── policy.py      # Policy sources + post type resolution
    │   └── nickname.py    # Nickname validation rules
    ├── services/
    │   ├── ledger.py          # Append-only action ledger + derived balance
    │   ├── reward_service.py  # Reward grant engine
    │   ├── retry_shell.py     # Retry/backoff shell with pending fallback
    │   ├── pending_service.py # Pending reward queue + reconciliation
    │   ├── admission_service.py  # First-come program admission
    │   ├── delivery.py        # Push gateway + token fan-out
    │   ├── fanout_service.py  # Bulk broadcast coordinator
    │   ├── mirror.py          # Best-effort content mirror
    │   └── audit_service.py   # Best-effort admin audit trail
    ├── worker/
    │   ├── tasks.py       # Periodic reconciliation / broadcast / expiry loops
    │   └── __main__.py    # ``python -m rally.worker``
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # JWT auth + service injection
        └── routes/        # Rewards, programs, broadcasts, admin
"""

__version__ = "0.1.0"
