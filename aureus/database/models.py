"""
aureus.database.models — SQLAlchemy 2.0 Data Models
====================================================

Two groups of tables share one schema.

Ledger (authoritative, written only by the ledger and admin services):
- ledger_contracts    — Per-contract parameters, aggregate counters, block height
- ledger_packages     — Lock-period / APY tiers offered for new stakes
- ledger_positions    — One row per stake, holding the immutable package snapshot
- ledger_user_totals  — Open principal per owner (per-user cap)
- ledger_journal      — Append-only event log, one block per mutation

Read-model (written only by the synchronizer / projector):
- blockchain_events   — Ingested events, idempotent on (tx_hash, log_index)
- blockchain_sync     — Sync cursor + status per (chain_id, contract_address)
- staking_packages    — Projected package terms
- stake_positions     — Projected positions, re-folded from events
- contract_states     — Projected pause flag

Shared:
- admin_log           — Append-only audit trail
- settings            — Admin-configurable key-value store
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Aureus ORM models."""


# ---------------------------------------------------------------------------
# Column types
# ---------------------------------------------------------------------------
class TokenAmount(TypeDecorator):
    """Unsigned integer amount in the token's smallest unit.

    Stored as a decimal string so 256-bit values survive every backend
    without float or NUMERIC rounding.  Python side is always ``int``.
    """

    impl = String
    cache_ok = True

    def __init__(self, length: int = 78, **kwargs) -> None:
        super().__init__(length=length, **kwargs)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = int(value)
        if value < 0:
            raise ValueError(f"token amounts are unsigned, got {value}")
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class EventName(enum.StrEnum):
    """Events emitted by the staking ledger / contract."""
    STAKED = "Staked"
    CLAIMED = "Claimed"
    WITHDRAWN = "Withdrawn"
    EMERGENCY_WITHDRAWN = "EmergencyWithdrawn"
    PACKAGE_UPDATED = "PackageUpdated"
    PAUSED = "Paused"
    UNPAUSED = "Unpaused"
    REWARD_FUNDED = "RewardFunded"
    EXCESS_REWARD_WITHDRAWN = "ExcessRewardWithdrawn"


class SyncStatus(enum.StrEnum):
    """Lifecycle of a sync cursor."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class EmergencyPolicy(enum.StrEnum):
    """How much unclaimed reward an emergency withdrawal still pays."""
    PAY_VESTED = "pay_vested"    # vested-but-unclaimed is paid, unvested is lost
    FORFEIT_ALL = "forfeit_all"  # every unclaimed unit is lost


class AdminActionType(enum.StrEnum):
    """Categories of admin mutations recorded in admin_log."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    PAUSE = "PAUSE"
    UNPAUSE = "UNPAUSE"
    FUND = "FUND"
    WITHDRAW_EXCESS = "WITHDRAW_EXCESS"


# ---------------------------------------------------------------------------
# LedgerContract: per-contract parameters and aggregate counters
# ---------------------------------------------------------------------------
class LedgerContract(Base):
    """The ledger's equivalent of contract storage.

    Every ledger mutation locks this row first, which serializes all
    mutations for the contract the way block production does on-chain.
    """
    __tablename__ = "ledger_contracts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)

    # Forward-looking parameters (admin surface)
    min_stake_amount: Mapped[int] = mapped_column(TokenAmount(), nullable=False, default=1)
    max_stake_per_user: Mapped[int] = mapped_column(TokenAmount(), nullable=False, default=0)  # 0 = unlimited
    max_total_staked_per_package: Mapped[int] = mapped_column(
        TokenAmount(), nullable=False, default=0,
    )  # 0 = unlimited
    paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    emergency_policy: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EmergencyPolicy.PAY_VESTED.value,
    )

    # Aggregates, updated in the same transaction as the position
    total_locked: Mapped[int] = mapped_column(TokenAmount(), nullable=False, default=0)
    total_reward_debt: Mapped[int] = mapped_column(TokenAmount(), nullable=False, default=0)
    reward_balance: Mapped[int] = mapped_column(TokenAmount(), nullable=False, default=0)

    stake_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    block_height: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    packages: Mapped[list[LedgerPackage]] = relationship(
        back_populates="contract", order_by="LedgerPackage.package_id",
    )

    __table_args__ = (
        UniqueConstraint("chain_id", "contract_address", name="uq_ledger_contracts_chain_addr"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerContract id={self.id} chain={self.chain_id} "
            f"addr={self.contract_address!r} paused={self.paused}>"
        )


# ---------------------------------------------------------------------------
# LedgerPackage: lock-period / APY tiers
# ---------------------------------------------------------------------------
class LedgerPackage(Base):
    __tablename__ = "ledger_packages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("ledger_contracts.id", ondelete="CASCADE"), nullable=False
    )
    package_id: Mapped[int] = mapped_column(Integer, nullable=False)
    lock_period_seconds: Mapped[int] = mapped_column(BigInteger, nullable=False)
    apy_basis_points: Mapped[int] = mapped_column(Integer, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    total_staked: Mapped[int] = mapped_column(TokenAmount(), nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    contract: Mapped[LedgerContract] = relationship(back_populates="packages")

    __table_args__ = (
        UniqueConstraint("contract_id", "package_id", name="uq_ledger_packages_contract_pkg"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerPackage id={self.package_id} lock={self.lock_period_seconds} "
            f"apy={self.apy_basis_points} enabled={self.enabled}>"
        )


# ---------------------------------------------------------------------------
# LedgerPosition: one user's lock instance (immutable snapshot + claim state)
# ---------------------------------------------------------------------------
class LedgerPosition(Base):
    __tablename__ = "ledger_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("ledger_contracts.id", ondelete="CASCADE"), nullable=False
    )
    stake_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    owner: Mapped[str] = mapped_column(String(42), nullable=False)

    # Snapshot taken at stake time, never rewritten
    package_id: Mapped[int] = mapped_column(Integer, nullable=False)
    principal: Mapped[int] = mapped_column(TokenAmount(), nullable=False)
    lock_period_seconds: Mapped[int] = mapped_column(BigInteger, nullable=False)
    apy_basis_points: Mapped[int] = mapped_column(Integer, nullable=False)
    start_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    unlock_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reward_total: Mapped[int] = mapped_column(TokenAmount(), nullable=False)

    # Mutable claim state
    reward_claimed: Mapped[int] = mapped_column(TokenAmount(), nullable=False, default=0)
    last_claim_timestamp: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_withdrawn: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_emergency_withdrawn: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    stake_tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    close_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    __table_args__ = (
        UniqueConstraint("contract_id", "stake_id", name="uq_ledger_positions_contract_stake"),
        Index("ix_ledger_positions_owner", "contract_id", "owner"),
    )

    @property
    def is_closed(self) -> bool:
        return self.is_withdrawn or self.is_emergency_withdrawn

    def __repr__(self) -> str:
        return (
            f"<LedgerPosition stake={self.stake_id} owner={self.owner!r} "
            f"principal={self.principal} closed={self.is_closed}>"
        )


# ---------------------------------------------------------------------------
# LedgerUserTotal: open principal per owner
# ---------------------------------------------------------------------------
class LedgerUserTotal(Base):
    __tablename__ = "ledger_user_totals"

    contract_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("ledger_contracts.id", ondelete="CASCADE"), primary_key=True
    )
    owner: Mapped[str] = mapped_column(String(42), primary_key=True)
    total_staked: Mapped[int] = mapped_column(TokenAmount(), nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<LedgerUserTotal owner={self.owner!r} total={self.total_staked}>"


# ---------------------------------------------------------------------------
# LedgerJournal: append-only emitted events
# ---------------------------------------------------------------------------
class LedgerJournal(Base):
    """Events emitted by the ledger, in the same shape a chain would log them.

    Each mutation is one block holding one transaction; its events get
    ``log_index`` 0..n.  Rows are never updated or deleted.
    """
    __tablename__ = "ledger_journal"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    contract_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("ledger_contracts.id", ondelete="CASCADE"), nullable=False
    )
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    event_name: Mapped[str] = mapped_column(String(64), nullable=False)
    event_data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_ledger_journal_tx_log"),
        Index("ix_ledger_journal_contract_block", "contract_id", "block_number", "log_index"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerJournal block={self.block_number} log={self.log_index} "
            f"name={self.event_name!r}>"
        )


# ---------------------------------------------------------------------------
# BlockchainEvent: ingested events (projection input)
# ---------------------------------------------------------------------------
class BlockchainEvent(Base):
    """One ingested log.  ``processed`` gates application to the read-model."""
    __tablename__ = "blockchain_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    event_name: Mapped[str] = mapped_column(String(64), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_timestamp: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    # "<owner>:<package_id>:<stake_id>" for position events, NULL otherwise
    position_key: Mapped[str | None] = mapped_column(String(120), nullable=True)
    event_data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        # Idempotency: at-least-once delivery from the provider
        UniqueConstraint("tx_hash", "log_index", name="uq_blockchain_events_tx_log"),
        Index(
            "ix_blockchain_events_pending",
            "chain_id", "contract_address", "processed", "block_number", "log_index",
        ),
        Index("ix_blockchain_events_position", "chain_id", "contract_address", "position_key"),
    )

    def __repr__(self) -> str:
        return (
            f"<BlockchainEvent id={self.id} name={self.event_name!r} "
            f"block={self.block_number} log={self.log_index} processed={self.processed}>"
        )


# ---------------------------------------------------------------------------
# BlockchainSync: cursor and status per followed contract
# ---------------------------------------------------------------------------
class BlockchainSync(Base):
    __tablename__ = "blockchain_sync"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    last_processed_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    current_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SyncStatus.PENDING.value,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Single-pass mutual exclusion
    lease_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("chain_id", "contract_address", name="uq_blockchain_sync_chain_addr"),
    )

    def __repr__(self) -> str:
        return (
            f"<BlockchainSync chain={self.chain_id} addr={self.contract_address!r} "
            f"last={self.last_processed_block} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# StakingPackage: projected package terms
# ---------------------------------------------------------------------------
class StakingPackage(Base):
    __tablename__ = "staking_packages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    package_id: Mapped[int] = mapped_column(Integer, nullable=False)
    lock_period_seconds: Mapped[int] = mapped_column(BigInteger, nullable=False)
    apy_basis_points: Mapped[int] = mapped_column(Integer, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Position of the event that last wrote this row (newer-wins)
    updated_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "chain_id", "contract_address", "package_id",
            name="uq_staking_packages_chain_addr_pkg",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<StakingPackage id={self.package_id} lock={self.lock_period_seconds} "
            f"apy={self.apy_basis_points} enabled={self.enabled}>"
        )


# ---------------------------------------------------------------------------
# StakePosition: projected position (re-folded from events)
# ---------------------------------------------------------------------------
class StakePosition(Base):
    __tablename__ = "stake_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    position_key: Mapped[str] = mapped_column(String(120), nullable=False)
    owner: Mapped[str] = mapped_column(String(42), nullable=False)
    package_id: Mapped[int] = mapped_column(Integer, nullable=False)
    stake_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    principal: Mapped[int] = mapped_column(TokenAmount(), nullable=False)
    lock_period_seconds: Mapped[int] = mapped_column(BigInteger, nullable=False)
    apy_basis_points: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    unlock_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reward_total: Mapped[int] = mapped_column(TokenAmount(), nullable=False)
    reward_claimed: Mapped[int] = mapped_column(TokenAmount(), nullable=False, default=0)
    lost_reward: Mapped[int] = mapped_column(TokenAmount(), nullable=False, default=0)
    last_claim_timestamp: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_withdrawn: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_emergency_withdrawn: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    stake_tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    close_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    last_event_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "chain_id", "contract_address", "position_key",
            name="uq_stake_positions_chain_addr_key",
        ),
        Index("ix_stake_positions_owner", "owner", "is_withdrawn"),
        Index("ix_stake_positions_unlock", "unlock_timestamp"),
    )

    @property
    def is_closed(self) -> bool:
        return self.is_withdrawn or self.is_emergency_withdrawn

    def __repr__(self) -> str:
        return (
            f"<StakePosition key={self.position_key!r} principal={self.principal} "
            f"claimed={self.reward_claimed}/{self.reward_total}>"
        )


# ---------------------------------------------------------------------------
# ContractStateProjection: projected pause flag
# ---------------------------------------------------------------------------
class ContractStateProjection(Base):
    __tablename__ = "contract_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("chain_id", "contract_address", name="uq_contract_states_chain_addr"),
    )

    def __repr__(self) -> str:
        return f"<ContractStateProjection addr={self.contract_address!r} paused={self.paused}>"


# ---------------------------------------------------------------------------
# AdminLog: append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor_id", "timestamp"),
        Index("ix_admin_log_target", "target_table", "target_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id} action={self.action_type}>"


# ---------------------------------------------------------------------------
# Setting: admin-configurable key-value store
# ---------------------------------------------------------------------------
class Setting(Base):
    """Key-value configuration store.

    Sync tuning knobs (confirmations, batch size, retry policy) live here so
    admins can adjust them from the dashboard without redeploying.  Values
    are stored as JSON strings; typed reads go through
    :mod:`aureus.services.settings_service`.
    """
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    description: Mapped[str | None] = mapped_column(Text, default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_settings_category", "category"),
    )

    def __repr__(self) -> str:
        return f"<Setting key={self.key!r} category={self.category!r}>"
