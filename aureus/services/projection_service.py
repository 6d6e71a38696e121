"""
aureus.services.projection_service — Idempotent Event Projection
=================================================================

Turns ingested :class:`~aureus.database.models.BlockchainEvent` rows into
the read-model (``stake_positions``, ``staking_packages``,
``contract_states``).

Idempotence comes from two places:

* **Ingestion** — ``(tx_hash, log_index)`` is unique; a redelivered log
  hits the constraint inside a SAVEPOINT and is skipped.
* **Application** — a processed row is never applied again, and position
  rows are never incremented in place.  Every position event triggers a
  full re-fold of that position from all of its processed events in
  ``(block_number, log_index)`` order, so replays and out-of-order arrival
  converge on the same state.

Package terms and the pause flag are single-valued, so they use
newer-wins on ``(block_number, log_index)`` instead.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aureus.database.models import (
    BlockchainEvent,
    ContractStateProjection,
    EventName,
    StakePosition,
    StakingPackage,
)
from aureus.engine.errors import OrphanEventError, StakingError
from aureus.engine.events import POSITION_EVENTS, ChainEvent, amount, normalize_address

logger = logging.getLogger(__name__)

# Errors that mean "this event can't be projected (yet)" rather than
# "the database is broken".  They are recorded on the row, not raised past
# the batch.
PROJECTION_ERRORS = (StakingError, KeyError, ValueError)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

def ingest_events(engine: Engine, events: Iterable[ChainEvent]) -> int:
    """Store new events unprocessed.  Returns how many were new."""
    inserted = 0
    duplicates = 0
    with Session(engine) as session:
        for ev in events:
            row = BlockchainEvent(
                chain_id=ev.chain_id,
                contract_address=normalize_address(ev.contract_address),
                event_name=ev.event_name,
                tx_hash=ev.tx_hash.lower(),
                log_index=ev.log_index,
                block_number=ev.block_number,
                block_timestamp=ev.block_timestamp,
                position_key=ev.position_key,
                event_data=dict(ev.event_data),
                processed=False,
            )
            try:
                with session.begin_nested():   # SAVEPOINT
                    session.add(row)
                    session.flush()
            except IntegrityError:
                duplicates += 1
                logger.debug(
                    "Duplicate event skipped: tx=%s log=%d", ev.tx_hash, ev.log_index,
                )
                continue
            inserted += 1
        session.commit()

    if inserted or duplicates:
        logger.info("Ingested %d new event(s), %d duplicate(s)", inserted, duplicates)
    return inserted


# ---------------------------------------------------------------------------
# Position folding
# ---------------------------------------------------------------------------

def _event_time(row: BlockchainEvent) -> int | None:
    ts = row.event_data.get("timestamp")
    if ts is not None:
        return int(ts)
    return row.block_timestamp


def _position_events(
    session: Session, chain_id: int, contract_address: str, key: str,
) -> list[BlockchainEvent]:
    return list(session.scalars(
        select(BlockchainEvent)
        .where(
            BlockchainEvent.chain_id == chain_id,
            BlockchainEvent.contract_address == contract_address,
            BlockchainEvent.position_key == key,
            BlockchainEvent.processed.is_(True),
        )
        .order_by(BlockchainEvent.block_number, BlockchainEvent.log_index)
    ).all())


def fold_position(
    session: Session,
    chain_id: int,
    contract_address: str,
    key: str,
    rows: list[BlockchainEvent],
    known_terms: tuple[int, int | None] | None = None,
) -> dict:
    """Derive a position's fields from its events.

    When the ``Staked`` payload lacks the lock period (raw contract logs),
    *known_terms* ``(lock, apy)`` from an earlier fold are used, and only
    failing that the current projected package.  A package edit therefore
    never shifts an already-projected position.

    *rows* must already be in ``(block_number, log_index)`` order.  Raises
    :class:`OrphanEventError` when there is no ``Staked`` event, or when
    the stake's terms can't be resolved yet.
    """
    staked_idx = next(
        (i for i, r in enumerate(rows) if r.event_name == EventName.STAKED), None,
    )
    if staked_idx is None:
        raise OrphanEventError(f"No Staked event for position {key}")
    staked = rows[staked_idx]
    data = staked.event_data

    lock = data.get("lockPeriod")
    apy = data.get("apy")
    if lock is None and known_terms is not None:
        lock = known_terms[0]
        if apy is None:
            apy = known_terms[1]
    if lock is None:
        pkg = session.scalar(
            select(StakingPackage).where(
                StakingPackage.chain_id == chain_id,
                StakingPackage.contract_address == contract_address,
                StakingPackage.package_id == int(data["packageId"]),
            )
        )
        if pkg is None:
            raise OrphanEventError(
                f"Package {data['packageId']} unknown for position {key}"
            )
        lock = pkg.lock_period_seconds
        if apy is None:
            apy = pkg.apy_basis_points
    start = data.get("startTimestamp")
    if start is None:
        start = _event_time(staked)
    if start is None:
        raise OrphanEventError(f"No timestamp for Staked event of position {key}")
    lock = int(lock)
    start = int(start)
    reward_total = amount(data, "rewardTotal")

    fields = {
        "owner": normalize_address(data["user"]),
        "package_id": int(data["packageId"]),
        "stake_id": int(data["stakeId"]),
        "principal": amount(data, "amount"),
        "lock_period_seconds": lock,
        "apy_basis_points": int(apy) if apy is not None else None,
        "start_timestamp": start,
        "unlock_timestamp": int(data.get("unlockTimestamp", start + lock)),
        "reward_total": reward_total,
        "reward_claimed": 0,
        "lost_reward": 0,
        "last_claim_timestamp": None,
        "is_withdrawn": False,
        "is_emergency_withdrawn": False,
        "stake_tx_hash": staked.tx_hash,
        "close_tx_hash": None,
        "last_event_block": staked.block_number,
    }

    for prior in rows[:staked_idx]:
        logger.warning(
            "Event %s (block %d) precedes Staked for %s; ignored",
            prior.event_name, prior.block_number, key,
        )

    for row in rows[staked_idx + 1:]:
        ev = row.event_data
        if fields["is_withdrawn"] or fields["is_emergency_withdrawn"]:
            logger.warning(
                "Event %s (block %d) after terminal state for %s; ignored",
                row.event_name, row.block_number, key,
            )
            continue
        if row.event_name == EventName.STAKED:
            logger.warning("Second Staked event for %s at block %d; ignored", key, row.block_number)
            continue
        if row.event_name == EventName.CLAIMED:
            fields["reward_claimed"] += amount(ev, "amount")
            fields["last_claim_timestamp"] = _event_time(row)
        elif row.event_name == EventName.WITHDRAWN:
            fields["reward_claimed"] += amount(ev, "reward", 0)
            fields["is_withdrawn"] = True
            fields["close_tx_hash"] = row.tx_hash
        elif row.event_name == EventName.EMERGENCY_WITHDRAWN:
            lost = amount(ev, "lostReward", 0)
            unclaimed = max(reward_total - fields["reward_claimed"], 0)
            paid = amount(ev, "paidReward", max(unclaimed - lost, 0))
            fields["reward_claimed"] += paid
            fields["lost_reward"] = lost
            fields["is_emergency_withdrawn"] = True
            fields["close_tx_hash"] = row.tx_hash
        fields["last_event_block"] = row.block_number

    fields["reward_claimed"] = min(fields["reward_claimed"], reward_total)
    return fields


def _find_position(
    session: Session, chain_id: int, contract_address: str, key: str,
) -> StakePosition | None:
    return session.scalar(
        select(StakePosition).where(
            StakePosition.chain_id == chain_id,
            StakePosition.contract_address == contract_address,
            StakePosition.position_key == key,
        )
    )


def _terms_of(position: StakePosition | None) -> tuple[int, int | None] | None:
    if position is None:
        return None
    return position.lock_period_seconds, position.apy_basis_points


def derive_position(session: Session, chain_id: int, contract_address: str, key: str) -> dict:
    """Fold a position from its already-processed events only."""
    return fold_position(
        session, chain_id, contract_address, key,
        _position_events(session, chain_id, contract_address, key),
        known_terms=_terms_of(_find_position(session, chain_id, contract_address, key)),
    )


def _apply_position_event(session: Session, row: BlockchainEvent) -> None:
    key = row.position_key
    if key is None:
        raise ValueError(f"{row.event_name} event {row.id} has no position key")
    rows = _position_events(session, row.chain_id, row.contract_address, key)
    rows.append(row)
    rows.sort(key=lambda r: (r.block_number, r.log_index))

    position = _find_position(session, row.chain_id, row.contract_address, key)
    fields = fold_position(
        session, row.chain_id, row.contract_address, key, rows,
        known_terms=_terms_of(position),
    )
    if position is None:
        position = StakePosition(
            chain_id=row.chain_id,
            contract_address=row.contract_address,
            position_key=key,
        )
        session.add(position)
    for name, value in fields.items():
        setattr(position, name, value)


# ---------------------------------------------------------------------------
# Single-valued projections (newer-wins)
# ---------------------------------------------------------------------------

def _apply_package_updated(session: Session, row: BlockchainEvent) -> None:
    data = row.event_data
    package_id = int(data["id"])
    pkg = session.scalar(
        select(StakingPackage).where(
            StakingPackage.chain_id == row.chain_id,
            StakingPackage.contract_address == row.contract_address,
            StakingPackage.package_id == package_id,
        )
    )
    if pkg is None:
        pkg = StakingPackage(
            chain_id=row.chain_id,
            contract_address=row.contract_address,
            package_id=package_id,
        )
        session.add(pkg)
    elif (row.block_number, row.log_index) <= (pkg.updated_block, pkg.updated_log_index):
        logger.debug("Stale PackageUpdated for package %d ignored", package_id)
        return
    pkg.lock_period_seconds = int(data["lockPeriod"])
    pkg.apy_basis_points = int(data["apy"])
    pkg.enabled = bool(data["enabled"])
    pkg.updated_block = row.block_number
    pkg.updated_log_index = row.log_index


def _apply_pause_flag(session: Session, row: BlockchainEvent, paused: bool) -> None:
    state = session.scalar(
        select(ContractStateProjection).where(
            ContractStateProjection.chain_id == row.chain_id,
            ContractStateProjection.contract_address == row.contract_address,
        )
    )
    if state is None:
        state = ContractStateProjection(
            chain_id=row.chain_id, contract_address=row.contract_address,
        )
        session.add(state)
    elif (row.block_number, row.log_index) <= (state.updated_block, state.updated_log_index):
        logger.debug("Stale %s event ignored", row.event_name)
        return
    state.paused = paused
    state.updated_block = row.block_number
    state.updated_log_index = row.log_index


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def _dispatch(session: Session, row: BlockchainEvent) -> None:
    name = row.event_name
    if name in POSITION_EVENTS:
        _apply_position_event(session, row)
    elif name == EventName.PACKAGE_UPDATED:
        _apply_package_updated(session, row)
    elif name == EventName.PAUSED:
        _apply_pause_flag(session, row, True)
    elif name == EventName.UNPAUSED:
        _apply_pause_flag(session, row, False)
    elif name in (EventName.REWARD_FUNDED, EventName.EXCESS_REWARD_WITHDRAWN):
        pass  # informational; nothing projected
    else:
        logger.debug("Unknown event type: %s", name)


def _mark_processed(row: BlockchainEvent) -> None:
    row.processed = True
    row.processed_at = datetime.now(UTC)
    row.error_message = None


def apply_event(engine: Engine, event_id: int) -> BlockchainEvent | None:
    """Apply one ingested event to the read-model.

    Already-processed events are a no-op.  On failure the error is stored
    on the row (which stays unprocessed for a later retry) and re-raised.
    Returns the (detached) row, or ``None`` if *event_id* doesn't exist.
    """
    with Session(engine, expire_on_commit=False) as session:
        row = session.get(BlockchainEvent, event_id)
        if row is None:
            logger.warning("Event %d not found", event_id)
            return None
        if row.processed:
            logger.debug("Event %d already processed", event_id)
            session.expunge(row)
            return row
        try:
            with session.begin_nested():
                _dispatch(session, row)
                _mark_processed(row)
        except PROJECTION_ERRORS as exc:
            row.error_message = str(exc)
            session.commit()
            logger.warning("Event %d (%s) not applied: %s", event_id, row.event_name, exc)
            raise
        session.commit()
        session.expunge(row)
        return row


def process_pending_events(
    engine: Engine,
    chain_id: int,
    contract_address: str,
    up_to_block: int | None = None,
    limit: int = 1000,
) -> dict:
    """Apply unprocessed events in ``(block_number, log_index)`` order.

    Events that fail keep ``processed = false`` with ``error_message`` set
    and are retried on the next call.  Returns
    ``{"processed", "failed", "errors"}``.
    """
    results = {"processed": 0, "failed": 0, "errors": []}
    with Session(engine) as session:
        query = select(BlockchainEvent).where(
            BlockchainEvent.chain_id == chain_id,
            BlockchainEvent.contract_address == contract_address,
            BlockchainEvent.processed.is_(False),
        )
        if up_to_block is not None:
            query = query.where(BlockchainEvent.block_number <= up_to_block)
        rows = session.scalars(
            query.order_by(
                BlockchainEvent.block_number, BlockchainEvent.log_index, BlockchainEvent.id,
            ).limit(limit)
        ).all()

        for row in rows:
            try:
                with session.begin_nested():
                    _dispatch(session, row)
                    _mark_processed(row)
            except PROJECTION_ERRORS as exc:
                row.error_message = str(exc)
                results["failed"] += 1
                results["errors"].append(f"Event {row.id}: {exc}")
                logger.warning(
                    "Event %d (%s @ %d:%d) not applied: %s",
                    row.id, row.event_name, row.block_number, row.log_index, exc,
                )
            else:
                results["processed"] += 1
        session.commit()

    if rows:
        logger.info(
            "Projected %d event(s), %d failed", results["processed"], results["failed"],
        )
    return results


def count_unprocessed(
    session: Session, chain_id: int, contract_address: str, up_to_block: int,
) -> int:
    return session.scalar(
        select(func.count()).select_from(BlockchainEvent).where(
            BlockchainEvent.chain_id == chain_id,
            BlockchainEvent.contract_address == contract_address,
            BlockchainEvent.processed.is_(False),
            BlockchainEvent.block_number <= up_to_block,
        )
    ) or 0
