"""
aureus.services.read_service — Projection Queries
==================================================

Read-only views over the projected read-model (``stake_positions``,
``staking_packages``, ``contract_states``, ``blockchain_events``).

Claimable amounts are never stored: they are computed at request time from
the event-confirmed fields with the same accrual function the ledger uses.
Token amounts are ``int`` here; the API layer turns them into decimal
strings.
"""

from __future__ import annotations

import logging
import re
import time

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from aureus.constants import SECONDS_PER_DAY
from aureus.database.models import (
    BlockchainEvent,
    ContractStateProjection,
    EventName,
    StakePosition,
    StakingPackage,
)
from aureus.engine.accrual import claimable_at, is_unlocked, reward_accrued_at
from aureus.engine.errors import InvalidParameter, PositionNotFound, TransactionNotFound
from aureus.engine.events import POSITION_EVENTS, amount, normalize_address

logger = logging.getLogger(__name__)

POSITION_STATUSES = ("all", "active", "withdrawn", "emergency")

_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def _now(now: int | None) -> int:
    return int(time.time()) if now is None else now


def _owner(owner: str) -> str:
    try:
        return normalize_address(owner)
    except ValueError as exc:
        raise InvalidParameter(str(exc)) from exc


# ---------------------------------------------------------------------------
# Row → dict
# ---------------------------------------------------------------------------
def _position_dict(p: StakePosition, t: int) -> dict:
    closed = p.is_closed
    return {
        "id": p.id,
        "position_key": p.position_key,
        "owner": p.owner,
        "package_id": p.package_id,
        "stake_id": p.stake_id,
        "principal": p.principal,
        "lock_period_seconds": p.lock_period_seconds,
        "lock_period_days": p.lock_period_seconds // SECONDS_PER_DAY,
        "apy_basis_points": p.apy_basis_points,
        "start_timestamp": p.start_timestamp,
        "unlock_timestamp": p.unlock_timestamp,
        "reward_total": p.reward_total,
        "reward_claimed": p.reward_claimed,
        "lost_reward": p.lost_reward,
        "reward_accrued": reward_accrued_at(
            p.reward_total, p.start_timestamp, p.lock_period_seconds, t,
        ),
        "claimable_reward": 0 if closed else claimable_at(
            p.reward_total, p.reward_claimed, p.start_timestamp, p.lock_period_seconds, t,
        ),
        "is_unlocked": is_unlocked(p.unlock_timestamp, t),
        "is_withdrawn": p.is_withdrawn,
        "is_emergency_withdrawn": p.is_emergency_withdrawn,
        "last_claim_timestamp": p.last_claim_timestamp,
        "stake_tx_hash": p.stake_tx_hash,
        "close_tx_hash": p.close_tx_hash,
        "last_event_block": p.last_event_block,
    }


def _scope(query, model, chain_id: int, contract_address: str):
    return query.where(
        model.chain_id == chain_id,
        model.contract_address == normalize_address(contract_address),
    )


# ---------------------------------------------------------------------------
# Packages
# ---------------------------------------------------------------------------
def list_packages(engine: Engine, chain_id: int, contract_address: str) -> list[dict]:
    with Session(engine) as session:
        rows = session.scalars(
            _scope(select(StakingPackage), StakingPackage, chain_id, contract_address)
            .order_by(StakingPackage.package_id)
        ).all()
        return [
            {
                "package_id": p.package_id,
                "lock_period_seconds": p.lock_period_seconds,
                "lock_period_days": p.lock_period_seconds // SECONDS_PER_DAY,
                "apy_basis_points": p.apy_basis_points,
                "enabled": p.enabled,
                "updated_block": p.updated_block,
            }
            for p in rows
        ]


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------
def list_positions(
    engine: Engine,
    chain_id: int,
    contract_address: str,
    *,
    owner: str | None = None,
    status: str = "all",
    package_id: int | None = None,
    page: int = 1,
    limit: int = 20,
    now: int | None = None,
) -> dict:
    """Paginated positions, newest stake first.

    *status* is one of ``all``, ``active``, ``withdrawn`` or ``emergency``.
    """
    if status not in POSITION_STATUSES:
        raise InvalidParameter(f"Unknown status filter {status!r}")
    t = _now(now)
    query = _scope(select(StakePosition), StakePosition, chain_id, contract_address)
    if owner is not None:
        query = query.where(StakePosition.owner == _owner(owner))
    if package_id is not None:
        query = query.where(StakePosition.package_id == package_id)
    if status == "active":
        query = query.where(
            StakePosition.is_withdrawn.is_(False),
            StakePosition.is_emergency_withdrawn.is_(False),
        )
    elif status == "withdrawn":
        query = query.where(StakePosition.is_withdrawn.is_(True))
    elif status == "emergency":
        query = query.where(StakePosition.is_emergency_withdrawn.is_(True))

    with Session(engine) as session:
        total = session.scalar(
            select(func.count()).select_from(query.subquery())
        ) or 0
        rows = session.scalars(
            query.order_by(StakePosition.stake_id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return {
            "total": total,
            "page": page,
            "limit": limit,
            "positions": [_position_dict(p, t) for p in rows],
        }


def get_position(engine: Engine, position_id: int, *, now: int | None = None) -> dict:
    with Session(engine) as session:
        p = session.get(StakePosition, position_id)
        if p is None:
            raise PositionNotFound(f"Position {position_id} not found")
        return _position_dict(p, _now(now))


def get_positions_summary(
    engine: Engine,
    chain_id: int,
    contract_address: str,
    owner: str,
    *,
    now: int | None = None,
) -> dict:
    """Portfolio totals for one owner plus their next five unlocks."""
    t = _now(now)
    with Session(engine) as session:
        rows = session.scalars(
            _scope(select(StakePosition), StakePosition, chain_id, contract_address)
            .where(StakePosition.owner == _owner(owner))
        ).all()

        active = [p for p in rows if not p.is_closed]
        total_earned = sum(
            min(
                p.reward_claimed if p.is_closed
                else reward_accrued_at(p.reward_total, p.start_timestamp, p.lock_period_seconds, t),
                p.reward_total,
            )
            for p in rows
        )
        upcoming = sorted(
            (p for p in active if p.unlock_timestamp > t),
            key=lambda p: p.unlock_timestamp,
        )[:5]
        return {
            "owner": _owner(owner),
            "total_positions": len(rows),
            "active_positions": len(active),
            "total_staked": sum(p.principal for p in active),
            "total_earned": total_earned,
            "total_claimed": sum(p.reward_claimed for p in rows),
            "total_pending": sum(
                claimable_at(
                    p.reward_total, p.reward_claimed, p.start_timestamp,
                    p.lock_period_seconds, t,
                )
                for p in active
            ),
            "upcoming_unlocks": [
                {
                    "id": p.id,
                    "stake_id": p.stake_id,
                    "package_id": p.package_id,
                    "principal": p.principal,
                    "unlock_timestamp": p.unlock_timestamp,
                    "seconds_remaining": p.unlock_timestamp - t,
                }
                for p in upcoming
            ],
        }


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------
_TX_AMOUNT_FIELD = {
    EventName.STAKED: "amount",
    EventName.CLAIMED: "amount",
    EventName.WITHDRAWN: "principal",
    EventName.EMERGENCY_WITHDRAWN: "principal",
}


def _tx_dict(r: BlockchainEvent) -> dict:
    data = r.event_data
    item = {
        "event_name": r.event_name,
        "tx_hash": r.tx_hash,
        "log_index": r.log_index,
        "block_number": r.block_number,
        "timestamp": int(data["timestamp"]) if "timestamp" in data else r.block_timestamp,
        "package_id": int(data["packageId"]),
        "stake_id": int(data["stakeId"]),
        "amount": amount(data, _TX_AMOUNT_FIELD[EventName(r.event_name)], 0),
    }
    if r.event_name == EventName.WITHDRAWN:
        item["reward"] = amount(data, "reward", 0)
    elif r.event_name == EventName.EMERGENCY_WITHDRAWN:
        item["lost_reward"] = amount(data, "lostReward", 0)
    return item


def _owner_events(chain_id: int, contract_address: str, owner: str, names):
    """Position events of *owner* (processed or not) named in *names*."""
    return _scope(select(BlockchainEvent), BlockchainEvent, chain_id, contract_address).where(
        BlockchainEvent.event_name.in_([EventName(n).value for n in names]),
        BlockchainEvent.position_key.startswith(f"{_owner(owner)}:", autoescape=True),
    )


def list_transactions(
    engine: Engine,
    chain_id: int,
    contract_address: str,
    owner: str,
    *,
    page: int = 1,
    limit: int = 20,
) -> dict:
    """An owner's processed position events, newest first."""
    query = _owner_events(chain_id, contract_address, owner, POSITION_EVENTS).where(
        BlockchainEvent.processed.is_(True),
    )
    with Session(engine) as session:
        total = session.scalar(select(func.count()).select_from(query.subquery())) or 0
        rows = session.scalars(
            query.order_by(BlockchainEvent.block_number.desc(), BlockchainEvent.log_index.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()

        return {
            "total": total,
            "page": page,
            "limit": limit,
            "transactions": [_tx_dict(r) for r in rows],
        }


def get_transaction_summary(
    engine: Engine, chain_id: int, contract_address: str, owner: str,
) -> dict:
    """Lifetime totals of an owner's confirmed position events.

    ``total_withdrawn`` is principal returned by normal and emergency
    withdrawals; rewards paid on withdrawal are not included.  Events still
    waiting for projection count as pending, not in the totals.
    """
    query = _owner_events(chain_id, contract_address, owner, POSITION_EVENTS)
    with Session(engine) as session:
        rows = session.scalars(
            query.order_by(BlockchainEvent.block_number.desc(), BlockchainEvent.log_index.desc())
        ).all()

    confirmed = [r for r in rows if r.processed]
    staked = claimed = withdrawn = 0
    for r in confirmed:
        name = EventName(r.event_name)
        value = amount(r.event_data, _TX_AMOUNT_FIELD[name], 0)
        if name is EventName.STAKED:
            staked += value
        elif name is EventName.CLAIMED:
            claimed += value
        else:
            withdrawn += value
    return {
        "owner": _owner(owner),
        "total_staked": staked,
        "total_claimed": claimed,
        "total_withdrawn": withdrawn,
        "transaction_count": len(confirmed),
        "pending_transactions": len(rows) - len(confirmed),
        "recent_transactions": [_tx_dict(r) for r in confirmed[:5]],
    }


def list_reward_history(
    engine: Engine,
    chain_id: int,
    contract_address: str,
    owner: str,
    *,
    page: int = 1,
    limit: int = 10,
) -> dict:
    """An owner's confirmed claims, newest first, with the position's APY."""
    query = _owner_events(chain_id, contract_address, owner, [EventName.CLAIMED]).where(
        BlockchainEvent.processed.is_(True),
    )
    with Session(engine) as session:
        total = session.scalar(select(func.count()).select_from(query.subquery())) or 0
        rows = session.scalars(
            query.order_by(BlockchainEvent.block_number.desc(), BlockchainEvent.log_index.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        apy = dict(session.execute(
            _scope(
                select(StakePosition.position_key, StakePosition.apy_basis_points),
                StakePosition, chain_id, contract_address,
            ).where(StakePosition.position_key.in_([r.position_key for r in rows]))
        ).all())

    return {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": -(-total // limit),
        "rewards": [
            {**_tx_dict(r), "apy_basis_points": apy.get(r.position_key)} for r in rows
        ],
    }


def get_transaction_by_tx_hash(
    engine: Engine, chain_id: int, contract_address: str, tx_hash: str,
) -> dict:
    """Every ingested log of one transaction, in log order."""
    if not isinstance(tx_hash, str) or not _TX_HASH_RE.match(tx_hash):
        raise InvalidParameter(f"Invalid transaction hash: {tx_hash!r}")
    tx_hash = tx_hash.lower()
    with Session(engine) as session:
        rows = session.scalars(
            _scope(select(BlockchainEvent), BlockchainEvent, chain_id, contract_address)
            .where(BlockchainEvent.tx_hash == tx_hash)
            .order_by(BlockchainEvent.log_index)
        ).all()
        if not rows:
            raise TransactionNotFound(f"Transaction {tx_hash} not found")
        return {
            "tx_hash": tx_hash,
            "block_number": rows[0].block_number,
            "block_timestamp": rows[0].block_timestamp,
            "processed": all(r.processed for r in rows),
            "events": [_event_dict(r) for r in rows],
        }


# ---------------------------------------------------------------------------
# Global stats
# ---------------------------------------------------------------------------
def get_global_stats(
    engine: Engine, chain_id: int, contract_address: str, *, now: int | None = None,
) -> dict:
    t = _now(now)
    with Session(engine) as session:
        rows = session.scalars(
            _scope(select(StakePosition), StakePosition, chain_id, contract_address)
        ).all()
        state = session.scalar(
            _scope(select(ContractStateProjection), ContractStateProjection,
                   chain_id, contract_address)
        )
        active = [p for p in rows if not p.is_closed]
        return {
            "chain_id": chain_id,
            "contract_address": normalize_address(contract_address),
            "total_locked": sum(p.principal for p in active),
            "outstanding_reward": sum(p.reward_total - p.reward_claimed for p in active),
            "claimable_now": sum(
                claimable_at(
                    p.reward_total, p.reward_claimed, p.start_timestamp,
                    p.lock_period_seconds, t,
                )
                for p in active
            ),
            "active_positions": len(active),
            "total_positions": len(rows),
            "unique_stakers": len({p.owner for p in rows}),
            "paused": bool(state.paused) if state is not None else False,
        }


# ---------------------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------------------
def get_leaderboard(
    engine: Engine,
    chain_id: int,
    contract_address: str,
    *,
    page: int = 1,
    limit: int = 10,
) -> dict:
    """Owners ranked by principal in open positions (ties by address)."""
    with Session(engine) as session:
        rows = session.scalars(
            _scope(select(StakePosition), StakePosition, chain_id, contract_address)
            .where(
                StakePosition.is_withdrawn.is_(False),
                StakePosition.is_emergency_withdrawn.is_(False),
            )
        ).all()

    # Principal is a decimal string column, so the sum happens here.
    staked: dict[str, int] = {}
    counts: dict[str, int] = {}
    for p in rows:
        staked[p.owner] = staked.get(p.owner, 0) + p.principal
        counts[p.owner] = counts.get(p.owner, 0) + 1
    ranked = sorted(staked, key=lambda owner: (-staked[owner], owner))

    offset = (page - 1) * limit
    return {
        "total": len(ranked),
        "page": page,
        "limit": limit,
        "leaderboard": [
            {
                "rank": offset + i + 1,
                "owner": owner,
                "total_staked": staked[owner],
                "stakes_count": counts[owner],
            }
            for i, owner in enumerate(ranked[offset:offset + limit])
        ],
    }


# ---------------------------------------------------------------------------
# Event log
# ---------------------------------------------------------------------------
def _event_dict(r: BlockchainEvent) -> dict:
    return {
        "id": r.id,
        "event_name": r.event_name,
        "tx_hash": r.tx_hash,
        "log_index": r.log_index,
        "block_number": r.block_number,
        "block_timestamp": r.block_timestamp,
        "position_key": r.position_key,
        "event_data": r.event_data,
        "processed": r.processed,
        "error_message": r.error_message,
    }


def list_recent_events(
    engine: Engine, chain_id: int, contract_address: str, *, limit: int = 20,
) -> list[dict]:
    """The newest ingested events, processed or not."""
    with Session(engine) as session:
        rows = session.scalars(
            _scope(select(BlockchainEvent), BlockchainEvent, chain_id, contract_address)
            .order_by(BlockchainEvent.block_number.desc(), BlockchainEvent.log_index.desc())
            .limit(limit)
        ).all()
        return [_event_dict(r) for r in rows]


def list_unprocessed_events(
    engine: Engine, chain_id: int, contract_address: str, *, limit: int = 50,
) -> dict:
    """Events still waiting for projection, oldest first.

    ``failed`` counts the ones whose last attempt recorded an error (orphans
    and the like); the rest are simply not reached yet.
    """
    query = _scope(select(BlockchainEvent), BlockchainEvent, chain_id, contract_address).where(
        BlockchainEvent.processed.is_(False),
    )
    with Session(engine) as session:
        total = session.scalar(select(func.count()).select_from(query.subquery())) or 0
        failed = session.scalar(
            select(func.count()).select_from(
                query.where(BlockchainEvent.error_message.is_not(None)).subquery()
            )
        ) or 0
        rows = session.scalars(
            query.order_by(BlockchainEvent.block_number, BlockchainEvent.log_index).limit(limit)
        ).all()
        return {
            "total": total,
            "failed": failed,
            "events": [_event_dict(r) for r in rows],
        }
