"""
aureus.constants — Shared Constants
====================================

Single source of truth for the fixed-point units and parameter bounds used
by the ledger, the admin surface and the projector.
"""

from __future__ import annotations

SECONDS_PER_DAY = 86_400
SECONDS_PER_YEAR = 365 * SECONDS_PER_DAY

# 1% = 100 basis points
BASIS_POINTS = 10_000

# ---------------------------------------------------------------------------
# Package parameter bounds (admin surface)
# ---------------------------------------------------------------------------
MIN_APY_BPS = 0
MAX_APY_BPS = 10_000
MIN_LOCK_PERIOD = 1 * SECONDS_PER_DAY
MAX_LOCK_PERIOD = 5 * 365 * SECONDS_PER_DAY
MAX_PACKAGE_ID = 255  # uint8 on-chain

# ---------------------------------------------------------------------------
# Amount / identifier widths (mirror the contract's storage types)
# ---------------------------------------------------------------------------
MAX_AMOUNT = 2**128 - 1
MAX_STAKE_ID = 2**32 - 1

# ---------------------------------------------------------------------------
# Default packages seeded on first start: id → (lock seconds, apy bps)
# ---------------------------------------------------------------------------
DEFAULT_PACKAGES: dict[int, tuple[int, int]] = {
    0: (90 * SECONDS_PER_DAY, 2000),   # 90 days, 20%
    1: (180 * SECONDS_PER_DAY, 2500),  # 180 days, 25%
    2: (270 * SECONDS_PER_DAY, 3500),  # 270 days, 35%
    3: (360 * SECONDS_PER_DAY, 5000),  # 360 days, 50%
}
