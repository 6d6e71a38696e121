"""
aureus.database.seed — Default Settings & Ledger Genesis
=========================================================

Baseline rows seeded on first startup:

* ``settings`` — sync tuning knobs (confirmations, batch size, retries …).
* ``ledger_contracts`` — one row for the configured contract, with the
  initial ``min_stake_amount`` from ``config.yaml``.
* Default packages.  For the ``ledger`` event source they are written
  through a genesis block that emits ``PackageUpdated`` for each, so the
  projector learns them the same way it learns every later change.  For
  the ``rpc`` source the projected ``staking_packages`` are pre-filled
  instead (the deployed contract's constructor sets them silently); any
  on-chain ``PackageUpdated`` overrides them.

Idempotent — only inserts rows that don't already exist.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from aureus.constants import DEFAULT_PACKAGES
from aureus.database.models import (
    EventName,
    LedgerContract,
    LedgerPackage,
    Setting,
    StakingPackage,
)

if TYPE_CHECKING:
    from aureus.config import AureusConfig

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default settings catalogue
# ---------------------------------------------------------------------------
DEFAULT_SETTINGS: dict[str, tuple[object, str, str]] = {
    "sync.confirmations": (
        12, "sync",
        "Blocks behind head treated as not yet final on an RPC node (the ledger journal needs none)",
    ),
    "sync.batch_size": (500, "sync", "Blocks fetched per provider request"),
    "sync.poll_interval_seconds": (5, "sync", "Seconds between sync passes"),
    "sync.max_retries": (3, "sync", "Provider retries per request before failing the pass"),
    "sync.retry_delay_seconds": (1.0, "sync", "Initial retry delay (doubles each attempt)"),
    "sync.max_backoff_seconds": (60, "sync", "Upper bound for retry and failure backoff"),
    "sync.lease_seconds": (300, "sync", "How long a sync pass may hold the cursor lease"),
    "sync.process_limit": (1000, "sync", "Max events applied per projection pass"),
}
"""Each entry maps ``key`` → ``(default_value, category, description)``."""


# ---------------------------------------------------------------------------
# Seeders
# ---------------------------------------------------------------------------
def seed_default_settings(engine: Engine) -> None:
    """Insert default settings that don't yet exist."""
    session = Session(engine)
    inserted = 0
    try:
        for key, (value, category, desc) in DEFAULT_SETTINGS.items():
            if session.get(Setting, key) is None:
                session.add(Setting(
                    key=key,
                    value_json=json.dumps(value),
                    category=category,
                    description=desc,
                ))
                inserted += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if inserted:
        logger.info("Seeded %d default settings.", inserted)


def seed_contract(engine: Engine, cfg: AureusConfig, *, now: int | None = None) -> None:
    """Create the configured contract's ledger row and default packages."""
    from aureus.services.ledger_service import open_block

    t = int(time.time()) if now is None else int(now)
    session = Session(engine)
    try:
        contract = session.scalar(
            select(LedgerContract).where(
                LedgerContract.chain_id == cfg.chain_id,
                LedgerContract.contract_address == cfg.contract_address,
            )
        )
        if contract is not None:
            return

        contract = LedgerContract(
            chain_id=cfg.chain_id,
            contract_address=cfg.contract_address,
            min_stake_amount=cfg.min_stake_amount,
            max_stake_per_user=0,
            max_total_staked_per_package=0,
            total_locked=0,
            total_reward_debt=0,
            reward_balance=0,
            stake_count=0,
            block_height=0,
        )
        session.add(contract)
        session.flush()

        if cfg.event_source == "ledger":
            block = open_block(session, contract, t)
            for package_id, (lock, apy) in DEFAULT_PACKAGES.items():
                session.add(LedgerPackage(
                    contract_id=contract.id,
                    package_id=package_id,
                    lock_period_seconds=lock,
                    apy_basis_points=apy,
                    enabled=True,
                    total_staked=0,
                ))
                block.emit(EventName.PACKAGE_UPDATED, {
                    "id": package_id,
                    "lockPeriod": lock,
                    "apy": apy,
                    "enabled": True,
                })
        else:
            for package_id, (lock, apy) in DEFAULT_PACKAGES.items():
                session.add(StakingPackage(
                    chain_id=cfg.chain_id,
                    contract_address=cfg.contract_address,
                    package_id=package_id,
                    lock_period_seconds=lock,
                    apy_basis_points=apy,
                    enabled=True,
                    updated_block=0,
                    updated_log_index=-1,  # any real event wins
                ))
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    logger.info(
        "Seeded ledger for %s on chain %d (%d default packages, source=%s)",
        cfg.contract_address, cfg.chain_id, len(DEFAULT_PACKAGES), cfg.event_source,
    )
