"""
Aureus — Time-Locked Yield Staking Ledger & Position Synchronizer
=================================================================
Holds the authoritative staking ledger (principal locks, package snapshots,
linear reward vesting), projects its event log into a queryable read-model,
and serves both over a small REST API.

Package layout::

    aureus/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Year length, basis points, bounds, default packages
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # Ledger, read-model and audit tables
    │   └── seed.py        # Default settings, contract state, packages
    ├── engine/
    │   ├── accrual.py     # Pure integer reward math
    │   ├── errors.py      # StakingError hierarchy
    │   └── events.py      # ChainEvent envelope + event names
    ├── chain/
    │   ├── provider.py    # Event sources (ledger journal, JSON-RPC node)
    │   └── retry.py       # Backoff + circuit breaker
    ├── services/
    │   ├── ledger_service.py         # stake / claim / withdraw
    │   ├── admin_service.py          # Audit-logged parameter changes
    │   ├── settings_service.py       # Runtime tuning knobs
    │   ├── projection_service.py     # Idempotent event application
    │   ├── sync_service.py           # Cursor, status machine, worker loop
    │   ├── read_service.py           # Read-model queries
    │   └── reconciliation_service.py # Drift detection & repair
    ├── api/
    │   ├── main.py        # FastAPI app
    │   ├── deps.py        # DI + JWT guards
    │   └── routes/        # Public, ledger and admin endpoints
    └── sync/
        └── __main__.py    # ``python -m aureus.sync`` polling worker
"""

__version__ = "0.1.0"
