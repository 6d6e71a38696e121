"""
aureus.services.admin_service — Admin Mutation Service Layer
=============================================================

Forward-looking parameter administration for the ledger.  Every write
follows the pattern:
  1. Begin a serialized ledger transaction
  2. Read "before" snapshot
  3. Apply change (and emit the ledger event, if the contract would)
  4. Write admin_log with before/after JSON
  5. Commit

Nothing here touches ``ledger_positions``: a package update changes terms
for future stakes only, existing positions keep their snapshot.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from aureus.constants import (
    MAX_AMOUNT,
    MAX_APY_BPS,
    MAX_LOCK_PERIOD,
    MAX_PACKAGE_ID,
    MIN_APY_BPS,
    MIN_LOCK_PERIOD,
)
from aureus.database.models import (
    AdminActionType,
    AdminLog,
    EmergencyPolicy,
    EventName,
    LedgerPackage,
    TokenAmount,
)
from aureus.engine.errors import (
    ContractNotPaused,
    ContractPaused,
    ExceedsExcess,
    InvalidAmount,
    InvalidParameter,
)
from aureus.services.ledger_service import (
    TxReceipt,
    ledger_transaction,
    open_block,
    resolve_now,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Generic audit helpers
# ---------------------------------------------------------------------------

def _row_to_dict(obj: Any) -> dict | None:
    """Convert a model instance to a JSON-serializable dict.

    Token amounts become decimal strings, datetimes ISO strings.
    """
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key, None)
        if isinstance(val, datetime):
            val = val.isoformat()
        elif isinstance(col.type, TokenAmount) and val is not None:
            val = str(val)
        result[col.name] = val
    return result


def _log_admin_action(
    session: Session,
    *,
    actor_id: str,
    action_type: AdminActionType,
    target_table: str,
    target_id: str | None,
    before: dict | None,
    after: dict | None,
    reason: str | None = None,
) -> None:
    """Insert a row into admin_log within the current transaction."""
    session.add(AdminLog(
        actor_id=str(actor_id),
        action_type=action_type.value,
        target_table=target_table,
        target_id=target_id,
        before_snapshot=before,
        after_snapshot=after,
        reason=reason,
    ))


def _require_amount(value: int, name: str, *, allow_zero: bool = True) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmount(f"{name} must be an integer, got {value!r}")
    if value < 0 or value > MAX_AMOUNT or (value == 0 and not allow_zero):
        raise InvalidAmount(f"{name} {value} out of range")
    return value


def _update_contract_field(
    engine: Engine,
    *,
    chain_id: int,
    contract_address: str,
    actor_id: str,
    field: str,
    value: Any,
    reason: str | None,
) -> dict:
    """Audited single-column update on the contract row."""
    with ledger_transaction(engine, chain_id, contract_address) as (session, contract):
        before = _row_to_dict(contract)
        setattr(contract, field, value)
        session.flush()
        after = _row_to_dict(contract)
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.UPDATE,
            target_table="ledger_contracts",
            target_id=str(contract.id),
            before=before,
            after=after,
            reason=reason,
        )
    logger.info("Admin %s set %s=%s on %s", actor_id, field, value, contract_address)
    return after


# ---------------------------------------------------------------------------
# Packages
# ---------------------------------------------------------------------------

def set_package(
    engine: Engine,
    *,
    chain_id: int,
    contract_address: str,
    actor_id: str,
    package_id: int,
    lock_period_seconds: int,
    apy_basis_points: int,
    enabled: bool,
    reason: str | None = None,
    now: int | None = None,
) -> TxReceipt:
    """Create or update a package and emit ``PackageUpdated``.

    Raises ``InvalidParameter`` when the id, lock period or APY is out of
    bounds.
    """
    for name, value in (
        ("package_id", package_id),
        ("lock_period_seconds", lock_period_seconds),
        ("apy_basis_points", apy_basis_points),
    ):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidParameter(f"{name} must be an integer, got {value!r}")
    if not 0 <= package_id <= MAX_PACKAGE_ID:
        raise InvalidParameter(f"package_id {package_id} out of range 0..{MAX_PACKAGE_ID}")
    if not MIN_LOCK_PERIOD <= lock_period_seconds <= MAX_LOCK_PERIOD:
        raise InvalidParameter(
            f"lock_period_seconds {lock_period_seconds} outside "
            f"{MIN_LOCK_PERIOD}..{MAX_LOCK_PERIOD}"
        )
    if not MIN_APY_BPS <= apy_basis_points <= MAX_APY_BPS:
        raise InvalidParameter(
            f"apy_basis_points {apy_basis_points} outside {MIN_APY_BPS}..{MAX_APY_BPS}"
        )
    t = resolve_now(now)

    with ledger_transaction(engine, chain_id, contract_address) as (session, contract):
        pkg = session.scalar(
            select(LedgerPackage).where(
                LedgerPackage.contract_id == contract.id,
                LedgerPackage.package_id == package_id,
            )
        )
        before = _row_to_dict(pkg)
        if pkg is None:
            pkg = LedgerPackage(
                contract_id=contract.id,
                package_id=package_id,
                total_staked=0,
            )
            session.add(pkg)
            action = AdminActionType.CREATE
        else:
            action = AdminActionType.UPDATE
        pkg.lock_period_seconds = lock_period_seconds
        pkg.apy_basis_points = apy_basis_points
        pkg.enabled = bool(enabled)
        session.flush()

        block = open_block(session, contract, t)
        block.emit(EventName.PACKAGE_UPDATED, {
            "id": package_id,
            "lockPeriod": lock_period_seconds,
            "apy": apy_basis_points,
            "enabled": bool(enabled),
        })
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=action,
            target_table="ledger_packages",
            target_id=str(package_id),
            before=before,
            after=_row_to_dict(pkg),
            reason=reason,
        )
        receipt = block.receipt()

    logger.info(
        "Package %d %s by %s: lock=%ds apy=%dbps enabled=%s",
        package_id, action.value.lower(), actor_id,
        lock_period_seconds, apy_basis_points, enabled,
    )
    return receipt


# ---------------------------------------------------------------------------
# Global parameters
# ---------------------------------------------------------------------------

def set_min_stake_amount(
    engine: Engine, *, chain_id: int, contract_address: str, actor_id: str,
    amount: int, reason: str | None = None,
) -> dict:
    _require_amount(amount, "min_stake_amount", allow_zero=False)
    return _update_contract_field(
        engine, chain_id=chain_id, contract_address=contract_address,
        actor_id=actor_id, field="min_stake_amount", value=amount, reason=reason,
    )


def set_max_stake_per_user(
    engine: Engine, *, chain_id: int, contract_address: str, actor_id: str,
    amount: int, reason: str | None = None,
) -> dict:
    """0 lifts the cap."""
    _require_amount(amount, "max_stake_per_user")
    return _update_contract_field(
        engine, chain_id=chain_id, contract_address=contract_address,
        actor_id=actor_id, field="max_stake_per_user", value=amount, reason=reason,
    )


def set_max_total_staked_per_package(
    engine: Engine, *, chain_id: int, contract_address: str, actor_id: str,
    amount: int, reason: str | None = None,
) -> dict:
    """0 lifts the cap."""
    _require_amount(amount, "max_total_staked_per_package")
    return _update_contract_field(
        engine, chain_id=chain_id, contract_address=contract_address,
        actor_id=actor_id, field="max_total_staked_per_package", value=amount, reason=reason,
    )


def set_emergency_policy(
    engine: Engine, *, chain_id: int, contract_address: str, actor_id: str,
    policy: EmergencyPolicy | str, reason: str | None = None,
) -> dict:
    try:
        policy = EmergencyPolicy(policy)
    except ValueError as exc:
        raise InvalidParameter(f"Unknown emergency policy {policy!r}") from exc
    return _update_contract_field(
        engine, chain_id=chain_id, contract_address=contract_address,
        actor_id=actor_id, field="emergency_policy", value=policy.value, reason=reason,
    )


# ---------------------------------------------------------------------------
# Pause switch
# ---------------------------------------------------------------------------

def _set_paused(
    engine: Engine,
    *,
    chain_id: int,
    contract_address: str,
    actor_id: str,
    paused: bool,
    reason: str | None,
    now: int | None,
) -> TxReceipt:
    t = resolve_now(now)
    with ledger_transaction(engine, chain_id, contract_address) as (session, contract):
        if paused and contract.paused:
            raise ContractPaused("Contract is already paused")
        if not paused and not contract.paused:
            raise ContractNotPaused("Contract is not paused")
        before = _row_to_dict(contract)
        contract.paused = paused
        block = open_block(session, contract, t)
        block.emit(
            EventName.PAUSED if paused else EventName.UNPAUSED,
            {"account": str(actor_id)},
        )
        session.flush()
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.PAUSE if paused else AdminActionType.UNPAUSE,
            target_table="ledger_contracts",
            target_id=str(contract.id),
            before=before,
            after=_row_to_dict(contract),
            reason=reason,
        )
        receipt = block.receipt()

    logger.warning(
        "Contract %s %s by %s", contract_address, "PAUSED" if paused else "unpaused", actor_id,
    )
    return receipt


def pause(
    engine: Engine, *, chain_id: int, contract_address: str, actor_id: str,
    reason: str | None = None, now: int | None = None,
) -> TxReceipt:
    return _set_paused(
        engine, chain_id=chain_id, contract_address=contract_address,
        actor_id=actor_id, paused=True, reason=reason, now=now,
    )


def unpause(
    engine: Engine, *, chain_id: int, contract_address: str, actor_id: str,
    reason: str | None = None, now: int | None = None,
) -> TxReceipt:
    return _set_paused(
        engine, chain_id=chain_id, contract_address=contract_address,
        actor_id=actor_id, paused=False, reason=reason, now=now,
    )


# ---------------------------------------------------------------------------
# Reward liquidity
# ---------------------------------------------------------------------------

def fund_rewards(
    engine: Engine, *, chain_id: int, contract_address: str, actor_id: str,
    amount: int, reason: str | None = None, now: int | None = None,
) -> TxReceipt:
    """Add reward liquidity; new stakes need it to cover their reward."""
    _require_amount(amount, "amount", allow_zero=False)
    t = resolve_now(now)
    with ledger_transaction(engine, chain_id, contract_address) as (session, contract):
        before = _row_to_dict(contract)
        contract.reward_balance += amount
        block = open_block(session, contract, t)
        block.emit(EventName.REWARD_FUNDED, {"admin": str(actor_id), "amount": amount})
        session.flush()
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.FUND,
            target_table="ledger_contracts",
            target_id=str(contract.id),
            before=before,
            after=_row_to_dict(contract),
            reason=reason,
        )
        receipt = block.receipt()

    logger.info("Reward liquidity +%d on %s by %s", amount, contract_address, actor_id)
    return receipt


def withdraw_excess_reward(
    engine: Engine, *, chain_id: int, contract_address: str, actor_id: str,
    amount: int, reason: str | None = None, now: int | None = None,
) -> TxReceipt:
    """Take back liquidity not owed to any open position.

    Raises ``ExceedsExcess`` when *amount* is more than
    ``reward_balance - total_reward_debt``.
    """
    _require_amount(amount, "amount", allow_zero=False)
    t = resolve_now(now)
    with ledger_transaction(engine, chain_id, contract_address) as (session, contract):
        excess = contract.reward_balance - contract.total_reward_debt
        if amount > excess:
            raise ExceedsExcess(f"Exceeds excess: requested {amount}, available {excess}")
        before = _row_to_dict(contract)
        contract.reward_balance -= amount
        block = open_block(session, contract, t)
        block.emit(EventName.EXCESS_REWARD_WITHDRAWN, {"admin": str(actor_id), "amount": amount})
        session.flush()
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.WITHDRAW_EXCESS,
            target_table="ledger_contracts",
            target_id=str(contract.id),
            before=before,
            after=_row_to_dict(contract),
            reason=reason,
        )
        receipt = block.receipt()

    logger.info("Excess reward -%d on %s by %s", amount, contract_address, actor_id)
    return receipt


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

def list_audit_log(
    engine: Engine,
    *,
    page: int = 1,
    page_size: int = 50,
    target_table: str | None = None,
) -> dict:
    """Paginated admin_log, newest first."""
    with Session(engine) as session:
        query = select(AdminLog)
        count_query = select(func.count()).select_from(AdminLog)
        if target_table:
            query = query.where(AdminLog.target_table == target_table)
            count_query = count_query.where(AdminLog.target_table == target_table)
        total = session.scalar(count_query) or 0
        rows = session.scalars(
            query.order_by(AdminLog.timestamp.desc(), AdminLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return {
            "total": total,
            "page": page,
            "page_size": page_size,
            "entries": [
                {
                    "id": r.id,
                    "actor_id": r.actor_id,
                    "action_type": r.action_type,
                    "target_table": r.target_table,
                    "target_id": r.target_id,
                    "before": r.before_snapshot,
                    "after": r.after_snapshot,
                    "reason": r.reason,
                    "timestamp": r.timestamp.isoformat() if r.timestamp else None,
                }
                for r in rows
            ],
        }
