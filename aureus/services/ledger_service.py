"""
aureus.services.ledger_service — Authoritative Staking Ledger
==============================================================

The off-chain equivalent of the staking contract.  Owns locked principal,
package snapshots and reward accounting, and emits the same events the
contract would.

Every mutation follows the same shape:
  1. Take the in-process writer lock, open a transaction
  2. ``SELECT … FOR UPDATE`` the contract row (total order across processes)
  3. Run every check (nothing is written until all pass)
  4. Open a journal block, apply position + aggregate changes, emit events
  5. Commit — or roll back everything on any exception

Because step 3 precedes step 4, a raised :class:`~aureus.engine.errors.StakingError`
never leaves a partial effect.  Reward math comes from
:mod:`aureus.engine.accrual` and only ever reads the snapshot fields stored
on the position, never the current package terms.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from aureus.constants import MAX_AMOUNT, MAX_PACKAGE_ID, MAX_STAKE_ID
from aureus.database.engine import get_session
from aureus.database.models import (
    EventName,
    LedgerContract,
    LedgerJournal,
    LedgerPackage,
    LedgerPosition,
    LedgerUserTotal,
)
from aureus.engine.accrual import (
    claimable_at,
    compute_reward_total,
    emergency_payout,
    reward_accrued_at,
)
from aureus.engine.errors import (
    AlreadyWithdrawn,
    ContractNotPaused,
    ContractPaused,
    ExceedsPackageCap,
    ExceedsUserCap,
    InsufficientRewardLiquidity,
    InvalidAmount,
    InvalidPackage,
    InvalidParameter,
    NothingToClaim,
    PackageDisabled,
    PositionNotFound,
    PositionWithdrawn,
    StakeLimitReached,
    StillLocked,
)
from aureus.engine.events import ChainEvent, normalize_address, serialize_event_data

logger = logging.getLogger(__name__)

# Serializes writers inside one process; the row lock covers the rest.
_WRITE_LOCK = threading.Lock()


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TxReceipt:
    """What a mutation hands back: the block it landed in and its logs."""

    tx_hash: str
    block_number: int
    events: list[ChainEvent] = field(default_factory=list)
    position_id: int | None = None
    principal_paid: int = 0
    reward_paid: int = 0
    reward_lost: int = 0


# ---------------------------------------------------------------------------
# Journal blocks
# ---------------------------------------------------------------------------
class JournalBlock:
    """One ledger block holding one transaction.

    Opening a block bumps ``block_height``; each :meth:`emit` appends a
    journal row with the next ``log_index``.
    """

    def __init__(self, session: Session, contract: LedgerContract, timestamp: int) -> None:
        contract.block_height += 1
        self._session = session
        self._contract = contract
        self.block_number = contract.block_height
        self.tx_hash = "0x" + secrets.token_hex(32)
        self.timestamp = timestamp
        self.events: list[ChainEvent] = []

    def emit(self, event_name: EventName, data: dict) -> ChainEvent:
        payload = serialize_event_data({**data, "timestamp": self.timestamp})
        log_index = len(self.events)
        self._session.add(LedgerJournal(
            contract_id=self._contract.id,
            block_number=self.block_number,
            tx_hash=self.tx_hash,
            log_index=log_index,
            event_name=event_name.value,
            event_data=payload,
            timestamp=self.timestamp,
        ))
        event = ChainEvent(
            event_name=event_name.value,
            chain_id=self._contract.chain_id,
            contract_address=self._contract.contract_address,
            tx_hash=self.tx_hash,
            log_index=log_index,
            block_number=self.block_number,
            event_data=payload,
            block_timestamp=self.timestamp,
        )
        self.events.append(event)
        return event

    def receipt(self, **kwargs) -> TxReceipt:
        return TxReceipt(
            tx_hash=self.tx_hash,
            block_number=self.block_number,
            events=list(self.events),
            **kwargs,
        )


def open_block(session: Session, contract: LedgerContract, timestamp: int) -> JournalBlock:
    return JournalBlock(session, contract, timestamp)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------
def resolve_now(now: int | None) -> int:
    return int(time.time()) if now is None else int(now)


def normalize_owner(owner: str) -> str:
    try:
        return normalize_address(owner)
    except ValueError as exc:
        raise InvalidParameter(str(exc)) from exc


def lock_contract(session: Session, chain_id: int, contract_address: str) -> LedgerContract:
    """Load the contract row with ``FOR UPDATE``."""
    contract = session.scalar(
        select(LedgerContract)
        .where(
            LedgerContract.chain_id == chain_id,
            LedgerContract.contract_address == contract_address,
        )
        .with_for_update()
    )
    if contract is None:
        raise InvalidParameter(
            f"No ledger for contract {contract_address} on chain {chain_id}"
        )
    return contract


@contextmanager
def ledger_transaction(engine: Engine, chain_id: int, contract_address: str):
    """Yield ``(session, contract)`` with the ledger serialized.

    Used by every ledger and admin mutation.  Commits on clean exit, rolls
    back on any exception.
    """
    with _WRITE_LOCK, get_session(engine) as session:
        yield session, lock_contract(session, chain_id, contract_address)


def _get_package(session: Session, contract: LedgerContract, package_id: int) -> LedgerPackage | None:
    return session.scalar(
        select(LedgerPackage).where(
            LedgerPackage.contract_id == contract.id,
            LedgerPackage.package_id == package_id,
        )
    )


def _get_owned_position(
    session: Session, contract: LedgerContract, owner: str, position_id: int,
) -> LedgerPosition:
    position = session.scalar(
        select(LedgerPosition).where(
            LedgerPosition.contract_id == contract.id,
            LedgerPosition.stake_id == position_id,
        )
    )
    # Someone else's stake is indistinguishable from a missing one
    if position is None or position.owner != owner:
        raise PositionNotFound(f"Position {position_id} not found")
    return position


def _release_principal(session: Session, contract: LedgerContract, position: LedgerPosition) -> None:
    contract.total_locked -= position.principal
    user_total = session.get(LedgerUserTotal, (contract.id, position.owner))
    if user_total is not None:
        user_total.total_staked -= position.principal
    pkg = _get_package(session, contract, position.package_id)
    if pkg is not None:
        pkg.total_staked -= position.principal


def _position_to_dict(position: LedgerPosition, t: int) -> dict:
    return {
        "position_id": position.stake_id,
        "owner": position.owner,
        "package_id": position.package_id,
        "principal": position.principal,
        "lock_period_seconds": position.lock_period_seconds,
        "apy_basis_points": position.apy_basis_points,
        "start_timestamp": position.start_timestamp,
        "unlock_timestamp": position.unlock_timestamp,
        "reward_total": position.reward_total,
        "reward_claimed": position.reward_claimed,
        "reward_accrued": reward_accrued_at(
            position.reward_total, position.start_timestamp,
            position.lock_period_seconds, t,
        ),
        "claimable": 0 if position.is_closed else claimable_at(
            position.reward_total, position.reward_claimed,
            position.start_timestamp, position.lock_period_seconds, t,
        ),
        "last_claim_timestamp": position.last_claim_timestamp,
        "is_withdrawn": position.is_withdrawn,
        "is_emergency_withdrawn": position.is_emergency_withdrawn,
        "is_unlocked": t >= position.unlock_timestamp,
        "stake_tx_hash": position.stake_tx_hash,
        "close_tx_hash": position.close_tx_hash,
    }


def _event_identity(position: LedgerPosition) -> dict:
    return {
        "user": position.owner,
        "packageId": position.package_id,
        "stakeId": position.stake_id,
    }


# ---------------------------------------------------------------------------
# Write surface
# ---------------------------------------------------------------------------
def stake(
    engine: Engine,
    *,
    chain_id: int,
    contract_address: str,
    owner: str,
    amount: int,
    package_id: int,
    now: int | None = None,
) -> TxReceipt:
    """Lock *amount* into *package_id* and snapshot the package terms.

    Raises ``ContractPaused``, ``InvalidAmount``, ``InvalidPackage``,
    ``PackageDisabled``, ``ExceedsUserCap``, ``ExceedsPackageCap``,
    ``StakeLimitReached`` or ``InsufficientRewardLiquidity``.
    """
    owner = normalize_owner(owner)
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"Amount must be an integer, got {amount!r}")
    if isinstance(package_id, bool) or not isinstance(package_id, int):
        raise InvalidPackage(f"Package id must be an integer, got {package_id!r}")
    t = resolve_now(now)

    with ledger_transaction(engine, chain_id, contract_address) as (session, contract):

        if contract.paused:
            raise ContractPaused("Contract is paused")
        if amount <= 0 or amount > MAX_AMOUNT:
            raise InvalidAmount(f"Amount {amount} out of range")
        if amount < contract.min_stake_amount:
            raise InvalidAmount(
                f"Amount {amount} below minimum stake {contract.min_stake_amount}"
            )
        if not 0 <= package_id <= MAX_PACKAGE_ID:
            raise InvalidPackage(f"Package {package_id} out of range")
        pkg = _get_package(session, contract, package_id)
        if pkg is None:
            raise InvalidPackage(f"Package {package_id} does not exist")
        if not pkg.enabled:
            raise PackageDisabled(f"Package {package_id} is disabled")

        user_total = session.get(LedgerUserTotal, (contract.id, owner))
        current_user_total = user_total.total_staked if user_total else 0
        if contract.max_stake_per_user and current_user_total + amount > contract.max_stake_per_user:
            raise ExceedsUserCap(
                f"User total {current_user_total + amount} exceeds cap "
                f"{contract.max_stake_per_user}"
            )
        if (
            contract.max_total_staked_per_package
            and pkg.total_staked + amount > contract.max_total_staked_per_package
        ):
            raise ExceedsPackageCap(
                f"Package {package_id} total would exceed "
                f"{contract.max_total_staked_per_package}"
            )

        stake_id = contract.stake_count
        if stake_id > MAX_STAKE_ID:
            raise StakeLimitReached("Stake id space exhausted")

        lock_period = pkg.lock_period_seconds
        apy = pkg.apy_basis_points
        reward_total = compute_reward_total(amount, apy, lock_period)
        if contract.reward_balance < contract.total_reward_debt + reward_total:
            raise InsufficientRewardLiquidity("Insufficient reward liquidity")

        # --- all checks passed; mutate ---
        block = open_block(session, contract, t)
        unlock = t + lock_period
        session.add(LedgerPosition(
            contract_id=contract.id,
            stake_id=stake_id,
            owner=owner,
            package_id=package_id,
            principal=amount,
            lock_period_seconds=lock_period,
            apy_basis_points=apy,
            start_timestamp=t,
            unlock_timestamp=unlock,
            reward_total=reward_total,
            reward_claimed=0,
            stake_tx_hash=block.tx_hash,
        ))
        contract.stake_count = stake_id + 1
        contract.total_locked += amount
        contract.total_reward_debt += reward_total
        pkg.total_staked += amount
        if user_total is None:
            session.add(LedgerUserTotal(contract_id=contract.id, owner=owner, total_staked=amount))
        else:
            user_total.total_staked += amount

        block.emit(EventName.STAKED, {
            "user": owner,
            "packageId": package_id,
            "stakeId": stake_id,
            "amount": amount,
            "rewardTotal": reward_total,
            "lockPeriod": lock_period,
            "apy": apy,
            "startTimestamp": t,
            "unlockTimestamp": unlock,
        })
        receipt = block.receipt(position_id=stake_id)

    logger.info(
        "Staked: owner=%s package=%d stake=%d amount=%d reward_total=%d block=%d",
        owner, package_id, stake_id, amount, reward_total, receipt.block_number,
    )
    return receipt


def claim(
    engine: Engine,
    *,
    chain_id: int,
    contract_address: str,
    owner: str,
    position_id: int,
    now: int | None = None,
) -> TxReceipt:
    """Pay out vested-but-unclaimed reward.

    Raises ``ContractPaused``, ``PositionNotFound``, ``PositionWithdrawn``
    or ``NothingToClaim``.
    """
    owner = normalize_owner(owner)
    t = resolve_now(now)

    with ledger_transaction(engine, chain_id, contract_address) as (session, contract):
        if contract.paused:
            raise ContractPaused("Contract is paused")
        position = _get_owned_position(session, contract, owner, position_id)
        if position.is_closed:
            raise PositionWithdrawn(f"Position {position_id} is withdrawn")

        claimable = claimable_at(
            position.reward_total, position.reward_claimed,
            position.start_timestamp, position.lock_period_seconds, t,
        )
        if claimable <= 0:
            raise NothingToClaim(f"Nothing to claim on position {position_id}")

        block = open_block(session, contract, t)
        position.reward_claimed += claimable
        position.last_claim_timestamp = t
        contract.total_reward_debt -= claimable
        contract.reward_balance -= claimable

        block.emit(EventName.CLAIMED, {**_event_identity(position), "amount": claimable})
        receipt = block.receipt(position_id=position_id, reward_paid=claimable)

    logger.info(
        "Claimed: owner=%s stake=%d amount=%d block=%d",
        owner, position_id, claimable, receipt.block_number,
    )
    return receipt


def withdraw(
    engine: Engine,
    *,
    chain_id: int,
    contract_address: str,
    owner: str,
    position_id: int,
    now: int | None = None,
) -> TxReceipt:
    """Return principal plus all remaining reward once unlocked.

    Raises ``ContractPaused``, ``PositionNotFound``, ``AlreadyWithdrawn``
    or ``StillLocked``.
    """
    owner = normalize_owner(owner)
    t = resolve_now(now)

    with ledger_transaction(engine, chain_id, contract_address) as (session, contract):
        if contract.paused:
            raise ContractPaused("Contract is paused")
        position = _get_owned_position(session, contract, owner, position_id)
        if position.is_closed:
            raise AlreadyWithdrawn(f"Position {position_id} already withdrawn")
        if t < position.unlock_timestamp:
            raise StillLocked(
                f"Position {position_id} unlocks at {position.unlock_timestamp}"
            )

        remaining = position.reward_total - position.reward_claimed
        principal = position.principal

        block = open_block(session, contract, t)
        position.reward_claimed = position.reward_total
        position.is_withdrawn = True
        position.close_tx_hash = block.tx_hash
        _release_principal(session, contract, position)
        contract.total_reward_debt -= remaining
        contract.reward_balance -= remaining

        block.emit(EventName.WITHDRAWN, {
            **_event_identity(position),
            "principal": principal,
            "reward": remaining,
        })
        receipt = block.receipt(
            position_id=position_id, principal_paid=principal, reward_paid=remaining,
        )

    logger.info(
        "Withdrawn: owner=%s stake=%d principal=%d reward=%d block=%d",
        owner, position_id, principal, remaining, receipt.block_number,
    )
    return receipt


def emergency_withdraw(
    engine: Engine,
    *,
    chain_id: int,
    contract_address: str,
    owner: str,
    position_id: int,
    now: int | None = None,
) -> TxReceipt:
    """Exit a position while the contract is paused.

    Principal is returned in full; the unclaimed reward is split into paid
    and lost according to the contract's ``emergency_policy``.

    Raises ``ContractNotPaused``, ``PositionNotFound`` or ``AlreadyWithdrawn``.
    """
    owner = normalize_owner(owner)
    t = resolve_now(now)

    with ledger_transaction(engine, chain_id, contract_address) as (session, contract):
        if not contract.paused:
            raise ContractNotPaused("Emergency withdrawal requires a paused contract")
        position = _get_owned_position(session, contract, owner, position_id)
        if position.is_closed:
            raise AlreadyWithdrawn(f"Position {position_id} already withdrawn")

        policy = contract.emergency_policy
        paid, lost = emergency_payout(
            policy,
            position.reward_total, position.reward_claimed,
            position.start_timestamp, position.lock_period_seconds, t,
        )
        principal = position.principal

        block = open_block(session, contract, t)
        position.reward_claimed += paid
        position.is_emergency_withdrawn = True
        position.close_tx_hash = block.tx_hash
        _release_principal(session, contract, position)
        contract.total_reward_debt -= paid + lost
        contract.reward_balance -= paid

        block.emit(EventName.EMERGENCY_WITHDRAWN, {
            **_event_identity(position),
            "principal": principal,
            "paidReward": paid,
            "lostReward": lost,
        })
        receipt = block.receipt(
            position_id=position_id, principal_paid=principal,
            reward_paid=paid, reward_lost=lost,
        )

    logger.warning(
        "Emergency withdrawn: owner=%s stake=%d principal=%d paid=%d lost=%d policy=%s",
        owner, position_id, principal, paid, lost, policy,
    )
    return receipt


# ---------------------------------------------------------------------------
# Read surface
# ---------------------------------------------------------------------------
def _find_contract(session: Session, chain_id: int, contract_address: str) -> LedgerContract:
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
    return contract


def get_position(
    engine: Engine,
    *,
    chain_id: int,
    contract_address: str,
    position_id: int,
    now: int | None = None,
) -> dict:
    """Snapshot fields plus the accrual view at *now*."""
    t = resolve_now(now)
    with Session(engine) as session:
        contract = _find_contract(session, chain_id, contract_address)
        position = session.scalar(
            select(LedgerPosition).where(
                LedgerPosition.contract_id == contract.id,
                LedgerPosition.stake_id == position_id,
            )
        )
        if position is None:
            raise PositionNotFound(f"Position {position_id} not found")
        return _position_to_dict(position, t)


def list_positions(
    engine: Engine,
    *,
    chain_id: int,
    contract_address: str,
    owner: str,
    now: int | None = None,
) -> list[dict]:
    owner = normalize_owner(owner)
    t = resolve_now(now)
    with Session(engine) as session:
        contract = _find_contract(session, chain_id, contract_address)
        rows = session.scalars(
            select(LedgerPosition)
            .where(
                LedgerPosition.contract_id == contract.id,
                LedgerPosition.owner == owner,
            )
            .order_by(LedgerPosition.stake_id)
        ).all()
        return [_position_to_dict(p, t) for p in rows]


def get_claimable(
    engine: Engine,
    *,
    chain_id: int,
    contract_address: str,
    position_id: int,
    now: int | None = None,
) -> int:
    """What :func:`claim` would pay if called at *now*."""
    return get_position(
        engine, chain_id=chain_id, contract_address=contract_address,
        position_id=position_id, now=now,
    )["claimable"]


def get_contract_state(engine: Engine, *, chain_id: int, contract_address: str) -> dict:
    with Session(engine) as session:
        contract = _find_contract(session, chain_id, contract_address)
        return {
            "chain_id": contract.chain_id,
            "contract_address": contract.contract_address,
            "paused": contract.paused,
            "emergency_policy": contract.emergency_policy,
            "min_stake_amount": contract.min_stake_amount,
            "max_stake_per_user": contract.max_stake_per_user,
            "max_total_staked_per_package": contract.max_total_staked_per_package,
            "total_locked": contract.total_locked,
            "total_reward_debt": contract.total_reward_debt,
            "reward_balance": contract.reward_balance,
            "excess_reward": contract.reward_balance - contract.total_reward_debt,
            "stake_count": contract.stake_count,
            "block_height": contract.block_height,
        }


def list_packages(engine: Engine, *, chain_id: int, contract_address: str) -> list[dict]:
    with Session(engine) as session:
        contract = _find_contract(session, chain_id, contract_address)
        rows = session.scalars(
            select(LedgerPackage)
            .where(LedgerPackage.contract_id == contract.id)
            .order_by(LedgerPackage.package_id)
        ).all()
        return [
            {
                "package_id": p.package_id,
                "lock_period_seconds": p.lock_period_seconds,
                "apy_basis_points": p.apy_basis_points,
                "enabled": p.enabled,
                "total_staked": p.total_staked,
            }
            for p in rows
        ]
