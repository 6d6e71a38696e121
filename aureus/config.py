"""
aureus.config — YAML Configuration Loader
==========================================

Reads ``config.yaml`` for **infrastructure-only** settings (which chain and
contract to follow, where the JSON-RPC node lives, the initial ledger
minimum).  Sync tuning values (confirmations, batch size, poll interval,
retry policy) live in the ``settings`` database table so admins can adjust
them without a redeploy.

Usage::

    from aureus.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.chain_id)              # 31337
    print(cfg.contract_address)      # "0x5fbdb2315678afecb367f032d93f642f64180aa3"
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from aureus.engine.events import normalize_address

EVENT_SOURCES = frozenset({"ledger", "rpc"})


# ---------------------------------------------------------------------------
# Typed settings object: infrastructure/identity only.
# Sync tuning lives in the DB ``settings`` table.
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AureusConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Chain identity
    chain_id: int
    contract_address: str

    # Where events come from: the local ledger journal or a JSON-RPC node
    event_source: str

    # Dashboard / API
    dashboard_port: int

    # Ledger bootstrap
    min_stake_amount: int
    token_decimals: int = 18

    # Optional
    rpc_url: str | None = None
    rpc_timeout_seconds: float = 10.0
    start_block: int = 0  # First block the synchronizer scans for a new cursor


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> AureusConfig:
    """Read *path* and return an :class:`AureusConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    ValueError
        If ``event_source`` is unknown, or ``rpc`` is selected without an
        ``rpc_url``.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh)

    event_source = str(raw.get("event_source", "ledger")).lower()
    if event_source not in EVENT_SOURCES:
        raise ValueError(
            f"event_source must be one of {sorted(EVENT_SOURCES)}, got {event_source!r}"
        )
    rpc_url = raw.get("rpc_url") or None
    if event_source == "rpc" and not rpc_url:
        raise ValueError("event_source 'rpc' requires rpc_url")

    return AureusConfig(
        chain_id=int(raw["chain_id"]),
        contract_address=normalize_address(raw["contract_address"]),
        event_source=event_source,
        dashboard_port=int(raw["dashboard_port"]),
        min_stake_amount=int(raw["min_stake_amount"]),
        token_decimals=int(raw.get("token_decimals", 18)),
        rpc_url=rpc_url,
        rpc_timeout_seconds=float(raw.get("rpc_timeout_seconds", 10.0)),
        start_block=int(raw.get("start_block", 0)),
    )
