"""
tests/test_ledger_service.py — Staking Ledger Tests
====================================================

Exercises stake / claim / withdraw / emergency_withdraw against an
in-memory SQLite ledger seeded with the default packages.
"""

from __future__ import annotations

import pytest
from conftest import ADMIN, ALICE, BOB, CHAIN_ID, CONTRACT, DAY, T0
from sqlalchemy import select
from sqlalchemy.orm import Session

from aureus.database.models import EventName, LedgerJournal
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
    StillLocked,
)
from aureus.services import admin_service, ledger_service

PRINCIPAL = 1_000_000_000
REWARD_90D = 49_315_068

SCOPE = {"chain_id": CHAIN_ID, "contract_address": CONTRACT}


def _stake(engine, owner=ALICE, amount=PRINCIPAL, package_id=0, now=T0):
    return ledger_service.stake(
        engine, **SCOPE, owner=owner, amount=amount, package_id=package_id, now=now,
    )


def _state(engine) -> dict:
    return ledger_service.get_contract_state(engine, **SCOPE)


def _pause(engine, now=T0):
    admin_service.pause(engine, **SCOPE, actor_id=ADMIN, now=now)


# ===========================================================================
# stake
# ===========================================================================
class TestStake:
    def test_creates_snapshot_and_updates_counters(self, funded_engine):
        receipt = _stake(funded_engine)

        assert receipt.position_id == 0
        assert receipt.tx_hash.startswith("0x") and len(receipt.tx_hash) == 66
        pos = ledger_service.get_position(funded_engine, **SCOPE, position_id=0, now=T0)
        assert pos["owner"] == ALICE
        assert pos["principal"] == PRINCIPAL
        assert pos["lock_period_seconds"] == 90 * DAY
        assert pos["apy_basis_points"] == 2000
        assert pos["start_timestamp"] == T0
        assert pos["unlock_timestamp"] == T0 + 90 * DAY
        assert pos["reward_total"] == REWARD_90D
        assert pos["reward_claimed"] == 0

        state = _state(funded_engine)
        assert state["total_locked"] == PRINCIPAL
        assert state["total_reward_debt"] == REWARD_90D
        assert state["stake_count"] == 1

    def test_emits_staked_event_with_snapshot(self, funded_engine):
        receipt = _stake(funded_engine)

        assert [e.event_name for e in receipt.events] == [EventName.STAKED]
        data = receipt.events[0].event_data
        assert data["user"] == ALICE
        assert data["amount"] == str(PRINCIPAL)
        assert data["rewardTotal"] == str(REWARD_90D)
        assert data["lockPeriod"] == str(90 * DAY)
        assert receipt.events[0].log_index == 0

    def test_each_mutation_is_a_new_block(self, funded_engine):
        first = _stake(funded_engine)
        second = _stake(funded_engine, owner=BOB)
        assert second.block_number == first.block_number + 1
        assert second.position_id == 1
        assert _state(funded_engine)["block_height"] == second.block_number

    def test_mixed_case_owner_is_normalized(self, funded_engine):
        _stake(funded_engine, owner=ALICE.upper().replace("0X", "0x"))
        assert ledger_service.list_positions(funded_engine, **SCOPE, owner=ALICE, now=T0)

    @pytest.mark.parametrize("amount", [0, -5, 999, 2**128])
    def test_invalid_amounts(self, funded_engine, amount):
        with pytest.raises(InvalidAmount):
            _stake(funded_engine, amount=amount)
        assert _state(funded_engine)["stake_count"] == 0

    def test_unknown_package(self, funded_engine):
        with pytest.raises(InvalidPackage):
            _stake(funded_engine, package_id=42)

    def test_disabled_package(self, funded_engine):
        admin_service.set_package(
            funded_engine, **SCOPE, actor_id=ADMIN, package_id=1,
            lock_period_seconds=180 * DAY, apy_basis_points=2500, enabled=False,
        )
        with pytest.raises(PackageDisabled):
            _stake(funded_engine, package_id=1)

    def test_paused(self, funded_engine):
        _pause(funded_engine)
        with pytest.raises(ContractPaused):
            _stake(funded_engine)

    def test_user_cap(self, funded_engine):
        admin_service.set_max_stake_per_user(
            funded_engine, **SCOPE, actor_id=ADMIN, amount=PRINCIPAL + 500,
        )
        _stake(funded_engine)
        with pytest.raises(ExceedsUserCap):
            _stake(funded_engine, amount=1_000)
        # Another owner is unaffected
        _stake(funded_engine, owner=BOB)

    def test_user_cap_frees_up_after_withdraw(self, funded_engine):
        admin_service.set_max_stake_per_user(
            funded_engine, **SCOPE, actor_id=ADMIN, amount=PRINCIPAL,
        )
        _stake(funded_engine)
        ledger_service.withdraw(
            funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0 + 90 * DAY,
        )
        _stake(funded_engine, now=T0 + 91 * DAY)

    def test_package_cap(self, funded_engine):
        admin_service.set_max_total_staked_per_package(
            funded_engine, **SCOPE, actor_id=ADMIN, amount=PRINCIPAL,
        )
        _stake(funded_engine)
        with pytest.raises(ExceedsPackageCap):
            _stake(funded_engine, owner=BOB, amount=1_000)
        _stake(funded_engine, owner=BOB, package_id=1)

    def test_requires_reward_liquidity(self, ledger_engine):
        with pytest.raises(InsufficientRewardLiquidity):
            _stake(ledger_engine)
        state = _state(ledger_engine)
        assert state["total_locked"] == 0
        assert state["stake_count"] == 0

    def test_failed_stake_writes_no_journal(self, funded_engine):
        height = _state(funded_engine)["block_height"]
        with pytest.raises(InvalidPackage):
            _stake(funded_engine, package_id=9)
        assert _state(funded_engine)["block_height"] == height
        with Session(funded_engine) as session:
            blocks = session.scalars(select(LedgerJournal.block_number)).all()
        assert max(blocks) == height

    def test_invalid_owner(self, funded_engine):
        with pytest.raises(InvalidParameter):
            _stake(funded_engine, owner="alice")


# ===========================================================================
# Snapshot isolation
# ===========================================================================
class TestSnapshotIsolation:
    def test_package_change_does_not_touch_existing_position(self, funded_engine):
        _stake(funded_engine)
        admin_service.set_package(
            funded_engine, **SCOPE, actor_id=ADMIN, package_id=0,
            lock_period_seconds=30 * DAY, apy_basis_points=9000, enabled=True,
        )
        pos = ledger_service.get_position(
            funded_engine, **SCOPE, position_id=0, now=T0 + 45 * DAY,
        )
        assert pos["apy_basis_points"] == 2000
        assert pos["lock_period_seconds"] == 90 * DAY
        assert pos["reward_total"] == REWARD_90D
        assert pos["claimable"] == 24_657_534

        # New stakes get the new terms
        _stake(funded_engine, owner=BOB, now=T0 + DAY)
        bob = ledger_service.get_position(funded_engine, **SCOPE, position_id=1, now=T0 + DAY)
        assert bob["apy_basis_points"] == 9000
        assert bob["lock_period_seconds"] == 30 * DAY


# ===========================================================================
# claim
# ===========================================================================
class TestClaim:
    def test_claims_vested_amount(self, funded_engine):
        _stake(funded_engine)
        receipt = ledger_service.claim(
            funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0 + 45 * DAY,
        )
        assert receipt.reward_paid == 24_657_534
        assert receipt.events[0].event_name == EventName.CLAIMED
        assert receipt.events[0].event_data["amount"] == "24657534"

        pos = ledger_service.get_position(
            funded_engine, **SCOPE, position_id=0, now=T0 + 45 * DAY,
        )
        assert pos["reward_claimed"] == 24_657_534
        assert pos["claimable"] == 0
        assert pos["last_claim_timestamp"] == T0 + 45 * DAY
        assert _state(funded_engine)["total_reward_debt"] == REWARD_90D - 24_657_534

    def test_second_claim_at_same_instant_has_nothing(self, funded_engine):
        _stake(funded_engine)
        t = T0 + 10 * DAY
        ledger_service.claim(funded_engine, **SCOPE, owner=ALICE, position_id=0, now=t)
        with pytest.raises(NothingToClaim):
            ledger_service.claim(funded_engine, **SCOPE, owner=ALICE, position_id=0, now=t)

    def test_claim_at_start_has_nothing(self, funded_engine):
        _stake(funded_engine)
        with pytest.raises(NothingToClaim):
            ledger_service.claim(funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0)

    def test_total_claims_never_exceed_reward_total(self, funded_engine):
        _stake(funded_engine)
        paid = 0
        for day in (7, 30, 31, 89, 90, 200):
            try:
                receipt = ledger_service.claim(
                    funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0 + day * DAY,
                )
            except NothingToClaim:
                continue
            paid += receipt.reward_paid
        assert paid == REWARD_90D

    def test_other_owner_cannot_claim(self, funded_engine):
        _stake(funded_engine)
        with pytest.raises(PositionNotFound):
            ledger_service.claim(
                funded_engine, **SCOPE, owner=BOB, position_id=0, now=T0 + 45 * DAY,
            )

    def test_claim_after_withdraw(self, funded_engine):
        _stake(funded_engine)
        ledger_service.withdraw(
            funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0 + 90 * DAY,
        )
        with pytest.raises(PositionWithdrawn):
            ledger_service.claim(
                funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0 + 91 * DAY,
            )

    def test_claim_while_paused(self, funded_engine):
        _stake(funded_engine)
        _pause(funded_engine, now=T0 + DAY)
        with pytest.raises(ContractPaused):
            ledger_service.claim(
                funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0 + 45 * DAY,
            )


# ===========================================================================
# withdraw
# ===========================================================================
class TestWithdraw:
    def test_still_locked(self, funded_engine):
        _stake(funded_engine)
        with pytest.raises(StillLocked):
            ledger_service.withdraw(
                funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0 + 90 * DAY - 1,
            )

    def test_pays_principal_and_remaining_reward(self, funded_engine):
        _stake(funded_engine)
        ledger_service.claim(
            funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0 + 45 * DAY,
        )
        receipt = ledger_service.withdraw(
            funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0 + 90 * DAY,
        )
        assert receipt.principal_paid == PRINCIPAL
        assert receipt.reward_paid == REWARD_90D - 24_657_534
        data = receipt.events[0].event_data
        assert data["principal"] == str(PRINCIPAL)
        assert data["reward"] == str(REWARD_90D - 24_657_534)

        state = _state(funded_engine)
        assert state["total_locked"] == 0
        assert state["total_reward_debt"] == 0
        pos = ledger_service.get_position(
            funded_engine, **SCOPE, position_id=0, now=T0 + 90 * DAY,
        )
        assert pos["is_withdrawn"] is True
        assert pos["reward_claimed"] == REWARD_90D

    def test_second_withdraw(self, funded_engine):
        _stake(funded_engine)
        t = T0 + 100 * DAY
        ledger_service.withdraw(funded_engine, **SCOPE, owner=ALICE, position_id=0, now=t)
        with pytest.raises(AlreadyWithdrawn):
            ledger_service.withdraw(funded_engine, **SCOPE, owner=ALICE, position_id=0, now=t)

    def test_unknown_position(self, funded_engine):
        with pytest.raises(PositionNotFound):
            ledger_service.withdraw(
                funded_engine, **SCOPE, owner=ALICE, position_id=7, now=T0,
            )


# ===========================================================================
# emergency_withdraw
# ===========================================================================
class TestEmergencyWithdraw:
    def test_requires_paused(self, funded_engine):
        _stake(funded_engine)
        with pytest.raises(ContractNotPaused):
            ledger_service.emergency_withdraw(
                funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0 + DAY,
            )

    def test_pay_vested_default(self, funded_engine):
        _stake(funded_engine)
        _pause(funded_engine, now=T0 + 45 * DAY)
        receipt = ledger_service.emergency_withdraw(
            funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0 + 45 * DAY,
        )
        assert receipt.principal_paid == PRINCIPAL
        assert receipt.reward_paid == 24_657_534
        assert receipt.reward_lost == REWARD_90D - 24_657_534
        data = receipt.events[0].event_data
        assert receipt.events[0].event_name == EventName.EMERGENCY_WITHDRAWN
        assert data["lostReward"] == str(REWARD_90D - 24_657_534)

        state = _state(funded_engine)
        assert state["total_locked"] == 0
        assert state["total_reward_debt"] == 0

    def test_forfeit_all_policy(self, funded_engine):
        _stake(funded_engine)
        admin_service.set_emergency_policy(
            funded_engine, **SCOPE, actor_id=ADMIN, policy="forfeit_all",
        )
        _pause(funded_engine, now=T0 + 45 * DAY)
        receipt = ledger_service.emergency_withdraw(
            funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0 + 45 * DAY,
        )
        assert receipt.reward_paid == 0
        assert receipt.reward_lost == REWARD_90D

    def test_claimed_reward_not_paid_twice(self, funded_engine):
        _stake(funded_engine)
        ledger_service.claim(
            funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0 + 45 * DAY,
        )
        _pause(funded_engine, now=T0 + 45 * DAY)
        receipt = ledger_service.emergency_withdraw(
            funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0 + 45 * DAY,
        )
        assert receipt.reward_paid == 0
        assert receipt.reward_paid + receipt.reward_lost == REWARD_90D - 24_657_534

    def test_terminal_states_are_exclusive(self, funded_engine):
        _stake(funded_engine)
        _pause(funded_engine, now=T0 + DAY)
        ledger_service.emergency_withdraw(
            funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0 + DAY,
        )
        admin_service.unpause(funded_engine, **SCOPE, actor_id=ADMIN, now=T0 + 2 * DAY)
        with pytest.raises(AlreadyWithdrawn):
            ledger_service.withdraw(
                funded_engine, **SCOPE, owner=ALICE, position_id=0, now=T0 + 100 * DAY,
            )
        pos = ledger_service.get_position(
            funded_engine, **SCOPE, position_id=0, now=T0 + 100 * DAY,
        )
        assert pos["is_emergency_withdrawn"] is True
        assert pos["is_withdrawn"] is False
        assert pos["claimable"] == 0


# ===========================================================================
# Views
# ===========================================================================
class TestViews:
    def test_claimable_matches_what_claim_pays(self, funded_engine):
        _stake(funded_engine)
        t = T0 + 17 * DAY + 1234
        quoted = ledger_service.get_claimable(funded_engine, **SCOPE, position_id=0, now=t)
        receipt = ledger_service.claim(
            funded_engine, **SCOPE, owner=ALICE, position_id=0, now=t,
        )
        assert receipt.reward_paid == quoted

    def test_list_packages_has_defaults(self, funded_engine):
        packages = ledger_service.list_packages(funded_engine, **SCOPE)
        assert [p["package_id"] for p in packages] == [0, 1, 2, 3]
        assert [p["apy_basis_points"] for p in packages] == [2000, 2500, 3500, 5000]

    def test_unknown_contract(self, funded_engine):
        with pytest.raises(InvalidParameter):
            ledger_service.get_contract_state(
                funded_engine, chain_id=1, contract_address=CONTRACT,
            )
