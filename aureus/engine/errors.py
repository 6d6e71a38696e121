"""
aureus.engine.errors — Staking Error Taxonomy
==============================================

Every failure the ledger, admin surface or synchronizer can report is a
:class:`StakingError` with a stable ``code``.  Three families:

* :class:`ValidationError` — malformed or out-of-range input, rejected
  before any state is read for mutation.
* :class:`PreconditionError` — the request is well-formed but the current
  state forbids it (locked, withdrawn, paused, capped …).
* :class:`ProviderError` — transient infrastructure failure talking to the
  chain; surfaced as a degraded sync status, never as data corruption.

Ledger operations raise before touching any balance or flag, and the
surrounding transaction is rolled back, so a raised error never leaves a
partial effect behind.
"""

from __future__ import annotations


class StakingError(Exception):
    """Base class for all domain errors."""

    code = "staking_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
class ValidationError(StakingError):
    code = "validation_error"


class InvalidAmount(ValidationError):
    code = "invalid_amount"


class InvalidPackage(ValidationError):
    code = "invalid_package"


class InvalidParameter(ValidationError):
    code = "invalid_parameter"


# ---------------------------------------------------------------------------
# State preconditions
# ---------------------------------------------------------------------------
class PreconditionError(StakingError):
    code = "precondition_failed"


class PackageDisabled(PreconditionError):
    code = "package_disabled"


class ContractPaused(PreconditionError):
    code = "contract_paused"


class ContractNotPaused(PreconditionError):
    code = "contract_not_paused"


class ExceedsUserCap(PreconditionError):
    code = "exceeds_user_cap"


class ExceedsPackageCap(PreconditionError):
    code = "exceeds_package_cap"


class InsufficientRewardLiquidity(PreconditionError):
    code = "insufficient_reward_liquidity"


class ExceedsExcess(PreconditionError):
    code = "exceeds_excess"


class StakeLimitReached(PreconditionError):
    code = "stake_limit_reached"


class PositionNotFound(PreconditionError):
    code = "position_not_found"


class TransactionNotFound(PreconditionError):
    code = "transaction_not_found"


class NothingToClaim(PreconditionError):
    code = "nothing_to_claim"


class PositionWithdrawn(PreconditionError):
    code = "position_withdrawn"


class StillLocked(PreconditionError):
    code = "still_locked"


class AlreadyWithdrawn(PreconditionError):
    code = "already_withdrawn"


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------
class ProviderError(StakingError):
    """The chain provider failed (disconnect, bad response, open breaker)."""

    code = "provider_error"


class ProviderTimeout(ProviderError):
    code = "provider_timeout"


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------
class OrphanEventError(StakingError):
    """A position event arrived before the ``Staked`` event that opens it."""

    code = "orphan_event"
