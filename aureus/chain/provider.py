"""
aureus.chain.provider — Event Sources
=====================================

The synchronizer only needs two things from "the chain":

* ``get_block_number()`` — the current head.
* ``get_events(from_block, to_block)`` — every staking log in the inclusive
  range, as :class:`~aureus.engine.events.ChainEvent`.

Two implementations:

:class:`LedgerEventSource`
    Reads the off-chain ledger's own ``ledger_journal``.  Each ledger
    mutation is one block, so the journal looks exactly like a chain, except
    that a journaled block is final and never reorganized.

:class:`JsonRpcEventSource`
    Talks to an EVM node over JSON-RPC with ``httpx``.  Logs are matched on
    the keccak ``topic0`` of each event in :data:`STAKING_ABI` and decoded
    with ``eth_abi``.  Timeouts become :class:`ProviderTimeout`, every
    other transport or RPC failure :class:`ProviderError`.
"""

from __future__ import annotations

import itertools
import logging
from typing import Protocol

import httpx
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from sqlalchemy import Engine, select
from sqlalchemy.orm import Session
from web3 import Web3

from aureus.chain.retry import CircuitBreaker
from aureus.database.models import EventName, LedgerContract, LedgerJournal
from aureus.engine.errors import ProviderError, ProviderTimeout
from aureus.engine.events import ChainEvent, normalize_address, serialize_event_data

logger = logging.getLogger(__name__)


class EventSource(Protocol):
    # True when fetched blocks can never be reorganized, so the sync needs
    # no confirmation margin.
    reorg_safe: bool

    def get_block_number(self) -> int: ...

    def get_events(self, from_block: int, to_block: int) -> list[ChainEvent]: ...


# ---------------------------------------------------------------------------
# Ledger journal
# ---------------------------------------------------------------------------
class LedgerEventSource:
    """Serves the ledger journal for one contract."""

    reorg_safe = True

    def __init__(self, engine: Engine, chain_id: int, contract_address: str) -> None:
        self._engine = engine
        self.chain_id = chain_id
        self.contract_address = contract_address

    def _contract_id(self, session: Session) -> int | None:
        return session.scalar(
            select(LedgerContract.id).where(
                LedgerContract.chain_id == self.chain_id,
                LedgerContract.contract_address == self.contract_address,
            )
        )

    def get_block_number(self) -> int:
        with Session(self._engine) as session:
            height = session.scalar(
                select(LedgerContract.block_height).where(
                    LedgerContract.chain_id == self.chain_id,
                    LedgerContract.contract_address == self.contract_address,
                )
            )
            return int(height or 0)

    def get_events(self, from_block: int, to_block: int) -> list[ChainEvent]:
        if to_block < from_block:
            return []
        with Session(self._engine) as session:
            contract_id = self._contract_id(session)
            if contract_id is None:
                return []
            rows = session.scalars(
                select(LedgerJournal)
                .where(
                    LedgerJournal.contract_id == contract_id,
                    LedgerJournal.block_number >= from_block,
                    LedgerJournal.block_number <= to_block,
                )
                .order_by(LedgerJournal.block_number, LedgerJournal.log_index)
            ).all()
            return [
                ChainEvent(
                    event_name=r.event_name,
                    chain_id=self.chain_id,
                    contract_address=self.contract_address,
                    tx_hash=r.tx_hash,
                    log_index=r.log_index,
                    block_number=r.block_number,
                    event_data=dict(r.event_data),
                    block_timestamp=r.timestamp,
                )
                for r in rows
            ]


# ---------------------------------------------------------------------------
# Staking contract ABI (events only)
# ---------------------------------------------------------------------------
def _event(name: EventName, *inputs: tuple[str, str, bool]) -> dict:
    return {
        "type": "event",
        "name": name.value,
        "anonymous": False,
        "inputs": [
            {"name": field, "type": sol_type, "indexed": indexed}
            for field, sol_type, indexed in inputs
        ],
    }


STAKING_ABI: list[dict] = [
    _event(
        EventName.STAKED,
        ("user", "address", True),
        ("packageId", "uint8", True),
        ("stakeId", "uint32", False),
        ("amount", "uint256", False),
        ("rewardTotal", "uint256", False),
    ),
    _event(
        EventName.CLAIMED,
        ("user", "address", True),
        ("packageId", "uint8", True),
        ("stakeId", "uint32", False),
        ("amount", "uint256", False),
    ),
    _event(
        EventName.WITHDRAWN,
        ("user", "address", True),
        ("packageId", "uint8", True),
        ("stakeId", "uint32", False),
        ("principal", "uint256", False),
        ("reward", "uint256", False),
    ),
    _event(
        EventName.EMERGENCY_WITHDRAWN,
        ("user", "address", True),
        ("packageId", "uint8", True),
        ("stakeId", "uint32", False),
        ("principal", "uint256", False),
        ("lostReward", "uint256", False),
    ),
    _event(
        EventName.PACKAGE_UPDATED,
        ("id", "uint8", True),
        ("lockPeriod", "uint64", False),
        ("apy", "uint32", False),
        ("enabled", "bool", False),
    ),
    _event(
        EventName.EXCESS_REWARD_WITHDRAWN,
        ("admin", "address", True),
        ("amount", "uint256", False),
    ),
    _event(EventName.PAUSED, ("account", "address", False)),
    _event(EventName.UNPAUSED, ("account", "address", False)),
]


def event_signature(abi: dict) -> str:
    """Canonical signature, e.g. ``Claimed(address,uint8,uint32,uint256)``."""
    return f"{abi['name']}({','.join(i['type'] for i in abi['inputs'])})"


def event_topic(abi: dict) -> str:
    """``topic0`` of an event: keccak-256 of its signature, ``0x``-prefixed."""
    return Web3.to_hex(Web3.keccak(text=event_signature(abi)))


TOPICS: dict[str, dict] = {event_topic(abi): abi for abi in STAKING_ABI}


def decode_log(abi: dict, log: dict) -> dict:
    """Decode a raw ``eth_getLogs`` entry against its event ABI.

    Raises ``eth_abi.exceptions.DecodingError`` (or ``ValueError`` for a
    missing topic) when the log doesn't match the ABI.
    """
    indexed = [i for i in abi["inputs"] if i["indexed"]]
    plain = [i for i in abi["inputs"] if not i["indexed"]]
    topics = log.get("topics") or []
    if len(topics) != len(indexed) + 1:
        raise ValueError(
            f"expected {len(indexed)} indexed topic(s), got {max(len(topics) - 1, 0)}"
        )

    out: dict = {}
    for item, topic in zip(indexed, topics[1:]):
        out[item["name"]] = abi_decode([item["type"]], Web3.to_bytes(hexstr=topic))[0]
    values = abi_decode([i["type"] for i in plain], Web3.to_bytes(hexstr=log.get("data") or "0x"))
    out.update(zip((i["name"] for i in plain), values))
    # eth_abi returns checksummed addresses; the read-model stores lower case.
    for item in abi["inputs"]:
        if item["type"] == "address":
            out[item["name"]] = out[item["name"]].lower()
    return out


# ---------------------------------------------------------------------------
# JSON-RPC node
# ---------------------------------------------------------------------------
class JsonRpcEventSource:
    """Reads staking logs from an EVM node.

    ``transport`` lets tests plug in :class:`httpx.MockTransport`.
    """

    reorg_safe = False

    def __init__(
        self,
        rpc_url: str,
        chain_id: int,
        contract_address: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.contract_address = normalize_address(contract_address)
        self._client = httpx.Client(timeout=timeout, transport=transport)
        self._breaker = breaker or CircuitBreaker()
        self._ids = itertools.count(1)

    def close(self) -> None:
        self._client.close()

    # -- transport -----------------------------------------------------------

    def _post(self, method: str, params: list) -> object:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = self._client.post(self.rpc_url, json=payload)
            resp.raise_for_status()
            body = resp.json()
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"{method} timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"{method} failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderError(f"{method} returned invalid JSON") from exc

        if body.get("error"):
            err = body["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise ProviderError(f"{method} RPC error: {message}")
        if "result" not in body:
            raise ProviderError(f"{method} returned no result")
        return body["result"]

    def _call(self, method: str, params: list) -> object:
        return self._breaker.call(lambda: self._post(method, params))

    def _block_timestamp(self, block_number: int, seen: dict[int, int | None]) -> int | None:
        if block_number not in seen:
            block = self._call("eth_getBlockByNumber", [hex(block_number), False])
            if isinstance(block, dict) and "timestamp" in block:
                seen[block_number] = int(block["timestamp"], 16)
            else:
                seen[block_number] = None
        return seen[block_number]

    # -- EventSource ---------------------------------------------------------

    def get_block_number(self) -> int:
        return int(str(self._call("eth_blockNumber", [])), 16)

    def get_events(self, from_block: int, to_block: int) -> list[ChainEvent]:
        if to_block < from_block:
            return []
        logs = self._call("eth_getLogs", [{
            "address": self.contract_address,
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
            "topics": [list(TOPICS)],
        }])
        if not isinstance(logs, list):
            raise ProviderError("eth_getLogs returned a non-list result")

        # Block timestamps are looked up at most once per block within a call.
        block_times: dict[int, int | None] = {}
        events: list[ChainEvent] = []
        for log in logs:
            if log.get("removed"):
                continue
            topics = log.get("topics") or []
            abi = TOPICS.get(topics[0].lower()) if topics else None
            if abi is None:
                logger.debug("Skipping log with unknown topic %s", topics[:1])
                continue
            try:
                data = decode_log(abi, log)
            except (DecodingError, ValueError) as exc:
                raise ProviderError(f"Undecodable {abi['name']} log: {exc}") from exc
            block_number = int(log["blockNumber"], 16)
            events.append(ChainEvent(
                event_name=abi["name"],
                chain_id=self.chain_id,
                contract_address=self.contract_address,
                tx_hash=log["transactionHash"].lower(),
                log_index=int(log["logIndex"], 16),
                block_number=block_number,
                event_data=serialize_event_data(data),
                block_timestamp=self._block_timestamp(block_number, block_times),
            ))
        events.sort(key=lambda e: e.sort_key)
        return events


def build_event_source(cfg, engine: Engine) -> EventSource:
    """Pick the event source named by ``cfg.event_source``."""
    if cfg.event_source == "rpc":
        return JsonRpcEventSource(
            cfg.rpc_url,
            cfg.chain_id,
            cfg.contract_address,
            timeout=cfg.rpc_timeout_seconds,
        )
    return LedgerEventSource(engine, cfg.chain_id, cfg.contract_address)
