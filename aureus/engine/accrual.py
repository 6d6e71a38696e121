"""
aureus.engine.accrual — Reward Math
====================================

Pure integer functions shared by the ledger (to pay out) and the read-model
(to display).  Both sides call the same code, so the ``claimable`` a user
sees always equals what a claim at that instant would pay.

Every division floors, matching the contract's integer semantics.  No
function here touches the database.

Example (6-decimal token, 90-day package at 2000 bps)::

    >>> total = compute_reward_total(1_000_000_000, 2000, 90 * 86_400)
    >>> total
    49315068
    >>> reward_accrued_at(total, 0, 90 * 86_400, 45 * 86_400)
    24657534
"""

from __future__ import annotations

from aureus.constants import BASIS_POINTS, SECONDS_PER_YEAR
from aureus.database.models import EmergencyPolicy


def compute_reward_total(principal: int, apy_basis_points: int, lock_period_seconds: int) -> int:
    """Reward owed for the full lock, fixed at stake time.

    ``principal * apy / 10000 * lock / year``, computed as a single floor
    division so no intermediate truncation is lost.
    """
    if principal < 0 or apy_basis_points < 0 or lock_period_seconds <= 0:
        raise ValueError("principal and apy must be non-negative, lock must be positive")
    return (principal * apy_basis_points * lock_period_seconds) // (
        SECONDS_PER_YEAR * BASIS_POINTS
    )


def reward_accrued_at(
    reward_total: int,
    start_timestamp: int,
    lock_period_seconds: int,
    t: int,
) -> int:
    """Linearly vested reward at time *t*.

    Clamped to ``[0, reward_total]``: a *t* before ``start_timestamp``
    (clock skew) vests nothing, anything at or after unlock vests all.
    """
    if lock_period_seconds <= 0:
        return reward_total
    elapsed = t - start_timestamp
    if elapsed <= 0:
        return 0
    if elapsed >= lock_period_seconds:
        return reward_total
    return reward_total * elapsed // lock_period_seconds


def claimable_at(
    reward_total: int,
    reward_claimed: int,
    start_timestamp: int,
    lock_period_seconds: int,
    t: int,
) -> int:
    """Vested minus already claimed, floored at zero."""
    vested = reward_accrued_at(reward_total, start_timestamp, lock_period_seconds, t)
    return max(vested - reward_claimed, 0)


def emergency_payout(
    policy: EmergencyPolicy | str,
    reward_total: int,
    reward_claimed: int,
    start_timestamp: int,
    lock_period_seconds: int,
    t: int,
) -> tuple[int, int]:
    """Split the unclaimed reward into ``(paid, lost)`` under *policy*.

    ``paid + lost == reward_total - reward_claimed`` always holds, so the
    already-claimed part is never paid twice.
    """
    unclaimed = max(reward_total - reward_claimed, 0)
    policy = EmergencyPolicy(policy)
    if policy is EmergencyPolicy.FORFEIT_ALL:
        return 0, unclaimed
    paid = min(
        claimable_at(reward_total, reward_claimed, start_timestamp, lock_period_seconds, t),
        unclaimed,
    )
    return paid, unclaimed - paid


def is_unlocked(unlock_timestamp: int, t: int) -> bool:
    return t >= unlock_timestamp
