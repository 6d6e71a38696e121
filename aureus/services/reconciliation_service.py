"""
aureus.services.reconciliation_service — Projection & Ledger Reconciliation
============================================================================

Two periodic checks, both safe to run at any time:

:func:`reconcile_positions`
    Re-folds every projected position from its processed events and
    overwrites any field that drifted.  Positions whose events exist but
    have no projected row yet are created.

:func:`verify_ledger_solvency`
    Recomputes ``total_locked`` and ``total_reward_debt`` from the ledger's
    own positions and reports mismatches plus whether the reward balance
    still covers every outstanding reward.  Read-only: counter drift in
    the authoritative ledger is a bug to investigate, not to paper over.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import Engine, distinct, select
from sqlalchemy.orm import Session

from aureus.database.engine import get_session
from aureus.database.models import (
    BlockchainEvent,
    LedgerContract,
    LedgerPosition,
    StakePosition,
)
from aureus.engine.errors import InvalidParameter
from aureus.engine.events import normalize_address
from aureus.services.projection_service import PROJECTION_ERRORS, derive_position

logger = logging.getLogger(__name__)


def _jsonable(value):
    # Token amounts exceed JSON number precision
    return str(value) if type(value) is int else value


def reconcile_positions(engine: Engine, chain_id: int, contract_address: str) -> dict:
    """Re-derive projected positions and fix drift.

    Returns ``{"checked", "corrected", "corrections", "skipped", "timestamp"}``.
    """
    contract_address = normalize_address(contract_address)
    corrections: list[dict] = []
    skipped: list[dict] = []
    checked = 0

    with get_session(engine) as session:
        keys = session.scalars(
            select(distinct(BlockchainEvent.position_key)).where(
                BlockchainEvent.chain_id == chain_id,
                BlockchainEvent.contract_address == contract_address,
                BlockchainEvent.processed.is_(True),
                BlockchainEvent.position_key.is_not(None),
            )
        ).all()

        for key in sorted(keys):
            checked += 1
            try:
                truth = derive_position(session, chain_id, contract_address, key)
            except PROJECTION_ERRORS as exc:
                skipped.append({"position_key": key, "reason": str(exc)})
                continue

            position = session.scalar(
                select(StakePosition).where(
                    StakePosition.chain_id == chain_id,
                    StakePosition.contract_address == contract_address,
                    StakePosition.position_key == key,
                )
            )
            if position is None:
                position = StakePosition(
                    chain_id=chain_id, contract_address=contract_address, position_key=key,
                )
                session.add(position)
                diffs = {name: {"stored": None, "actual": v} for name, v in truth.items()}
            else:
                diffs = {
                    name: {"stored": getattr(position, name), "actual": value}
                    for name, value in truth.items()
                    if getattr(position, name) != value
                }
            if not diffs:
                continue

            for name, value in truth.items():
                setattr(position, name, value)
            corrections.append({
                "position_key": key,
                "fields": {
                    name: {"stored": _jsonable(d["stored"]), "actual": _jsonable(d["actual"])}
                    for name, d in diffs.items()
                },
            })

    if corrections:
        logger.warning(
            "Position reconciliation: corrected %d/%d positions: %s",
            len(corrections), checked, [c["position_key"] for c in corrections],
        )
    else:
        logger.info("Position reconciliation: all %d positions match", checked)
    if skipped:
        logger.warning("Position reconciliation skipped %d position(s): %s", len(skipped), skipped)

    return {
        "checked": checked,
        "corrected": len(corrections),
        "corrections": corrections,
        "skipped": skipped,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def verify_ledger_solvency(engine: Engine, chain_id: int, contract_address: str) -> dict:
    """Compare the ledger's aggregate counters with its positions."""
    contract_address = normalize_address(contract_address)
    with Session(engine) as session:
        contract = session.scalar(
            select(LedgerContract).where(
                LedgerContract.chain_id == chain_id,
                LedgerContract.contract_address == contract_address,
            )
        )
        if contract is None:
            raise InvalidParameter(
                f"No ledger for contract {contract_address} on chain {chain_id}"
            )
        open_positions = session.scalars(
            select(LedgerPosition).where(
                LedgerPosition.contract_id == contract.id,
                LedgerPosition.is_withdrawn.is_(False),
                LedgerPosition.is_emergency_withdrawn.is_(False),
            )
        ).all()

        locked = sum(p.principal for p in open_positions)
        debt = sum(p.reward_total - p.reward_claimed for p in open_positions)
        mismatches = []
        if locked != contract.total_locked:
            mismatches.append({
                "field": "total_locked",
                "stored": str(contract.total_locked),
                "actual": str(locked),
            })
        if debt != contract.total_reward_debt:
            mismatches.append({
                "field": "total_reward_debt",
                "stored": str(contract.total_reward_debt),
                "actual": str(debt),
            })
        balance = contract.reward_balance
        solvent = balance >= debt

    if mismatches:
        logger.error("Ledger counters drifted for %s: %s", contract_address, mismatches)
    if not solvent:
        logger.error("Ledger %s is under-funded for its reward debt", contract_address)

    return {
        "open_positions": len(open_positions),
        "total_locked": locked,
        "total_reward_debt": debt,
        "reward_balance": balance,
        "solvent": solvent,
        "mismatches": mismatches,
        "timestamp": datetime.now(UTC).isoformat(),
    }
