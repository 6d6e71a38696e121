"""Initial staking schema: ledger, read-model, audit and settings tables

Revision ID: 4c1e7a9b2d10
Revises:
Create Date: 2026-10-19 09:12:41.118204

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '4c1e7a9b2d10'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# Token amounts are unsigned 256-bit integers stored as decimal strings.
AMOUNT = sa.String(78)


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    cols = [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(),
        ),
    ]
    if updated:
        cols.append(sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(),
        ))
    return cols


def upgrade() -> None:
    """Create every table of the ledger and the read-model."""

    # --- ledger ---
    op.create_table(
        "ledger_contracts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("chain_id", sa.BigInteger, nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("min_stake_amount", AMOUNT, nullable=False),
        sa.Column("max_stake_per_user", AMOUNT, nullable=False),
        sa.Column("max_total_staked_per_package", AMOUNT, nullable=False),
        sa.Column("paused", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("emergency_policy", sa.String(20), nullable=False, server_default="pay_vested"),
        sa.Column("total_locked", AMOUNT, nullable=False),
        sa.Column("total_reward_debt", AMOUNT, nullable=False),
        sa.Column("reward_balance", AMOUNT, nullable=False),
        sa.Column("stake_count", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("block_height", sa.BigInteger, nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("chain_id", "contract_address", name="uq_ledger_contracts_chain_addr"),
    )

    op.create_table(
        "ledger_packages",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "contract_id", sa.Integer,
            sa.ForeignKey("ledger_contracts.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("package_id", sa.Integer, nullable=False),
        sa.Column("lock_period_seconds", sa.BigInteger, nullable=False),
        sa.Column("apy_basis_points", sa.Integer, nullable=False),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("total_staked", AMOUNT, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("contract_id", "package_id", name="uq_ledger_packages_contract_pkg"),
    )

    op.create_table(
        "ledger_positions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "contract_id", sa.Integer,
            sa.ForeignKey("ledger_contracts.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("stake_id", sa.BigInteger, nullable=False),
        sa.Column("owner", sa.String(42), nullable=False),
        sa.Column("package_id", sa.Integer, nullable=False),
        sa.Column("principal", AMOUNT, nullable=False),
        sa.Column("lock_period_seconds", sa.BigInteger, nullable=False),
        sa.Column("apy_basis_points", sa.Integer, nullable=False),
        sa.Column("start_timestamp", sa.BigInteger, nullable=False),
        sa.Column("unlock_timestamp", sa.BigInteger, nullable=False),
        sa.Column("reward_total", AMOUNT, nullable=False),
        sa.Column("reward_claimed", AMOUNT, nullable=False),
        sa.Column("last_claim_timestamp", sa.BigInteger, nullable=True),
        sa.Column("is_withdrawn", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_emergency_withdrawn", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("stake_tx_hash", sa.String(66), nullable=False),
        sa.Column("close_tx_hash", sa.String(66), nullable=True),
        sa.UniqueConstraint("contract_id", "stake_id", name="uq_ledger_positions_contract_stake"),
    )
    op.create_index("ix_ledger_positions_owner", "ledger_positions", ["contract_id", "owner"])

    op.create_table(
        "ledger_user_totals",
        sa.Column(
            "contract_id", sa.Integer,
            sa.ForeignKey("ledger_contracts.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("owner", sa.String(42), primary_key=True),
        sa.Column("total_staked", AMOUNT, nullable=False),
    )

    op.create_table(
        "ledger_journal",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "contract_id", sa.Integer,
            sa.ForeignKey("ledger_contracts.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("block_number", sa.BigInteger, nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer, nullable=False),
        sa.Column("event_name", sa.String(64), nullable=False),
        sa.Column("event_data", postgresql.JSONB, nullable=False),
        sa.Column("timestamp", sa.BigInteger, nullable=False),
        *_timestamps(updated=False),
        sa.UniqueConstraint("tx_hash", "log_index", name="uq_ledger_journal_tx_log"),
    )
    op.create_index(
        "ix_ledger_journal_contract_block", "ledger_journal",
        ["contract_id", "block_number", "log_index"],
    )

    # --- read-model ---
    op.create_table(
        "blockchain_events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("chain_id", sa.BigInteger, nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("event_name", sa.String(64), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer, nullable=False),
        sa.Column("block_number", sa.BigInteger, nullable=False),
        sa.Column("block_timestamp", sa.BigInteger, nullable=True),
        sa.Column("position_key", sa.String(120), nullable=True),
        sa.Column("event_data", postgresql.JSONB, nullable=False),
        sa.Column("processed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        *_timestamps(updated=False),
        sa.UniqueConstraint("tx_hash", "log_index", name="uq_blockchain_events_tx_log"),
    )
    op.create_index(
        "ix_blockchain_events_pending", "blockchain_events",
        ["chain_id", "contract_address", "processed", "block_number", "log_index"],
    )
    op.create_index(
        "ix_blockchain_events_position", "blockchain_events",
        ["chain_id", "contract_address", "position_key"],
    )

    op.create_table(
        "blockchain_sync",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("chain_id", sa.BigInteger, nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("last_processed_block", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("current_block", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_token", sa.String(36), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consecutive_failures", sa.Integer, nullable=False, server_default="0"),
        sa.UniqueConstraint("chain_id", "contract_address", name="uq_blockchain_sync_chain_addr"),
    )

    op.create_table(
        "staking_packages",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("chain_id", sa.BigInteger, nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("package_id", sa.Integer, nullable=False),
        sa.Column("lock_period_seconds", sa.BigInteger, nullable=False),
        sa.Column("apy_basis_points", sa.Integer, nullable=False),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("updated_block", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("updated_log_index", sa.Integer, nullable=False, server_default="0"),
        sa.UniqueConstraint(
            "chain_id", "contract_address", "package_id",
            name="uq_staking_packages_chain_addr_pkg",
        ),
    )

    op.create_table(
        "stake_positions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("chain_id", sa.BigInteger, nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("position_key", sa.String(120), nullable=False),
        sa.Column("owner", sa.String(42), nullable=False),
        sa.Column("package_id", sa.Integer, nullable=False),
        sa.Column("stake_id", sa.BigInteger, nullable=False),
        sa.Column("principal", AMOUNT, nullable=False),
        sa.Column("lock_period_seconds", sa.BigInteger, nullable=False),
        sa.Column("apy_basis_points", sa.Integer, nullable=True),
        sa.Column("start_timestamp", sa.BigInteger, nullable=False),
        sa.Column("unlock_timestamp", sa.BigInteger, nullable=False),
        sa.Column("reward_total", AMOUNT, nullable=False),
        sa.Column("reward_claimed", AMOUNT, nullable=False),
        sa.Column("lost_reward", AMOUNT, nullable=False),
        sa.Column("last_claim_timestamp", sa.BigInteger, nullable=True),
        sa.Column("is_withdrawn", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_emergency_withdrawn", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("stake_tx_hash", sa.String(66), nullable=False),
        sa.Column("close_tx_hash", sa.String(66), nullable=True),
        sa.Column("last_event_block", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "chain_id", "contract_address", "position_key",
            name="uq_stake_positions_chain_addr_key",
        ),
    )
    op.create_index("ix_stake_positions_owner", "stake_positions", ["owner", "is_withdrawn"])
    op.create_index("ix_stake_positions_unlock", "stake_positions", ["unlock_timestamp"])

    op.create_table(
        "contract_states",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("chain_id", sa.BigInteger, nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("paused", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("updated_block", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("updated_log_index", sa.Integer, nullable=False, server_default="0"),
        sa.UniqueConstraint("chain_id", "contract_address", name="uq_contract_states_chain_addr"),
    )

    # --- shared ---
    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("before_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column(
            "timestamp", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor_id", "timestamp"])
    op.create_index(
        "ix_admin_log_target", "admin_log", ["target_table", "target_id", "timestamp"],
    )

    op.create_table(
        "settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value_json", sa.Text, nullable=False),
        sa.Column("category", sa.String(50), nullable=False, server_default="general"),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_settings_category", "settings", ["category"])


def downgrade() -> None:
    """Drop every table in reverse dependency order."""
    op.drop_index("ix_settings_category", table_name="settings")
    op.drop_table("settings")
    op.drop_index("ix_admin_log_target", table_name="admin_log")
    op.drop_index("ix_admin_log_actor_time", table_name="admin_log")
    op.drop_table("admin_log")
    op.drop_table("contract_states")
    op.drop_index("ix_stake_positions_unlock", table_name="stake_positions")
    op.drop_index("ix_stake_positions_owner", table_name="stake_positions")
    op.drop_table("stake_positions")
    op.drop_table("staking_packages")
    op.drop_table("blockchain_sync")
    op.drop_index("ix_blockchain_events_position", table_name="blockchain_events")
    op.drop_index("ix_blockchain_events_pending", table_name="blockchain_events")
    op.drop_table("blockchain_events")
    op.drop_index("ix_ledger_journal_contract_block", table_name="ledger_journal")
    op.drop_table("ledger_journal")
    op.drop_table("ledger_user_totals")
    op.drop_index("ix_ledger_positions_owner", table_name="ledger_positions")
    op.drop_table("ledger_positions")
    op.drop_table("ledger_packages")
    op.drop_table("ledger_contracts")
