"""
aureus.engine.events — ChainEvent envelope
==========================================

Every log the synchronizer ingests, whether it came from the ledger's own
journal or from a JSON-RPC node, is normalized into a :class:`ChainEvent`
before the projector sees it.

Amounts inside ``event_data`` travel as decimal strings so 256-bit values
survive JSON round-trips; use :func:`amount` to read them back as ``int``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from web3 import Web3

from aureus.database.models import EventName

__all__ = [
    "ChainEvent",
    "POSITION_EVENTS",
    "amount",
    "normalize_address",
    "position_key",
    "serialize_event_data",
]

# Events that belong to a single stake position
POSITION_EVENTS: frozenset[str] = frozenset({
    EventName.STAKED,
    EventName.CLAIMED,
    EventName.WITHDRAWN,
    EventName.EMERGENCY_WITHDRAWN,
})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def normalize_address(address: str) -> str:
    """Lower-case and validate a 20-byte hex address.

    Raises ``ValueError`` unless *address* is ``0x`` + 40 hex digits.  Mixed
    case must be a valid EIP-55 checksum.
    """
    if not isinstance(address, str):
        raise ValueError(f"Invalid address: {address!r}")
    address = address.strip()
    if not address.startswith("0x") or not Web3.is_address(address):
        raise ValueError(f"Invalid address: {address!r}")
    return address.lower()


def position_key(owner: str, package_id: int, stake_id: int) -> str:
    """Projection key of one position within a contract."""
    return f"{normalize_address(owner)}:{int(package_id)}:{int(stake_id)}"


def serialize_event_data(data: dict) -> dict:
    """Return a JSON-safe copy of *data* with every integer as a decimal string.

    Booleans are left alone (``bool`` is an ``int`` subclass).
    """
    out: dict = {}
    for key, value in data.items():
        if isinstance(value, bool) or value is None:
            out[key] = value
        elif isinstance(value, int):
            out[key] = str(value)
        else:
            out[key] = value
    return out


def amount(data: dict, key: str, default: int | None = None) -> int:
    """Read an integer field from serialized event data."""
    value = data.get(key)
    if value is None:
        if default is None:
            raise KeyError(f"event data is missing {key!r}")
        return default
    return int(value)


# ---------------------------------------------------------------------------
# ChainEvent: the universal event envelope
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ChainEvent:
    """One emitted log, normalized across event sources."""

    event_name: str
    chain_id: int
    contract_address: str
    tx_hash: str
    log_index: int
    block_number: int
    event_data: dict = field(default_factory=dict)
    block_timestamp: int | None = None

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    @property
    def position_key(self) -> str | None:
        if self.event_name not in POSITION_EVENTS:
            return None
        data = self.event_data
        return position_key(data["user"], int(data["packageId"]), int(data["stakeId"]))

    def to_dict(self) -> dict:
        return {
            "eventName": self.event_name,
            "contractAddress": self.contract_address,
            "chainId": self.chain_id,
            "txHash": self.tx_hash,
            "logIndex": self.log_index,
            "blockNumber": self.block_number,
            "eventData": self.event_data,
        }
