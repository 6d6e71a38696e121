"""
tests/test_chain_provider.py — Event Source Tests
==================================================

The JSON-RPC source runs against an ``httpx.MockTransport`` node; the
ledger source against the seeded in-memory ledger.  Node logs are built
with the same keccak topics and ABI encoding a real contract emits.
"""

from __future__ import annotations

import json

import httpx
import pytest
from conftest import ALICE, CHAIN_ID, CONTRACT, T0, make_config
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from aureus.chain.provider import (
    STAKING_ABI,
    TOPICS,
    JsonRpcEventSource,
    LedgerEventSource,
    build_event_source,
    decode_log,
    event_signature,
    event_topic,
)
from aureus.chain.retry import BreakerState, CircuitBreaker
from aureus.database.models import EventName
from aureus.engine.errors import ProviderError, ProviderTimeout

ABIS = {abi["name"]: abi for abi in STAKING_ABI}


def _log(name: EventName, block: int, log_index: int, indexed: list, data: list, **extra) -> dict:
    abi = ABIS[name.value]
    indexed_types = [i["type"] for i in abi["inputs"] if i["indexed"]]
    data_types = [i["type"] for i in abi["inputs"] if not i["indexed"]]
    log = {
        "address": CONTRACT,
        "topics": [event_topic(abi)] + [
            Web3.to_hex(abi_encode([t], [v])) for t, v in zip(indexed_types, indexed)
        ],
        "data": Web3.to_hex(abi_encode(data_types, data)),
        "blockNumber": hex(block),
        "transactionHash": "0x" + f"{block:064x}",
        "logIndex": hex(log_index),
        "removed": False,
    }
    log.update(extra)
    return log


class FakeNode:
    """Minimal JSON-RPC node answering the three methods the source uses."""

    def __init__(self, *, head: int = 0x20, logs: list[dict] | None = None) -> None:
        self.head = head
        self.logs = logs or []
        self.calls: list[str] = []
        self.fail_with: dict | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method = body["method"]
        self.calls.append(method)
        if self.fail_with is not None:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": self.fail_with})
        if method == "eth_blockNumber":
            result = hex(self.head)
        elif method == "eth_getBlockByNumber":
            result = {"number": body["params"][0], "timestamp": hex(T0 + int(body["params"][0], 16))}
        elif method == "eth_getLogs":
            result = self.logs
        else:
            return httpx.Response(200, json={
                "jsonrpc": "2.0", "id": body["id"],
                "error": {"code": -32601, "message": "method not found"},
            })
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


def _source(node, **kwargs) -> JsonRpcEventSource:
    return JsonRpcEventSource(
        "http://node.test", CHAIN_ID, CONTRACT, transport=httpx.MockTransport(node), **kwargs,
    )


# ===========================================================================
# ABI decoding
# ===========================================================================
class TestEventTopics:
    def test_signature(self):
        assert event_signature(ABIS["Staked"]) == "Staked(address,uint8,uint32,uint256,uint256)"

    def test_topic_is_keccak_of_signature(self):
        transfer = {
            "name": "Transfer",
            "inputs": [{"type": "address"}, {"type": "address"}, {"type": "uint256"}],
        }
        assert event_topic(transfer) == (
            "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
        )

    def test_every_event_has_a_distinct_topic(self):
        assert len(TOPICS) == len(STAKING_ABI)
        assert all(len(topic) == 66 and topic == topic.lower() for topic in TOPICS)


class TestDecodeLog:
    def test_staked(self):
        checksummed = Web3.to_checksum_address(ALICE)
        log = _log(EventName.STAKED, 5, 0, [checksummed, 2], [7, 10**24, 123_456])
        assert decode_log(ABIS["Staked"], log) == {
            "user": ALICE,
            "packageId": 2,
            "stakeId": 7,
            "amount": 10**24,
            "rewardTotal": 123_456,
        }

    def test_package_updated_bool(self):
        log = _log(EventName.PACKAGE_UPDATED, 5, 0, [3], [86_400, 2500, False])
        data = decode_log(ABIS["PackageUpdated"], log)
        assert data == {"id": 3, "lockPeriod": 86_400, "apy": 2500, "enabled": False}

    def test_unindexed_address(self):
        log = _log(EventName.PAUSED, 5, 0, [], [ALICE])
        assert decode_log(ABIS["Paused"], log) == {"account": ALICE}

    def test_short_data_rejected(self):
        log = _log(EventName.STAKED, 5, 0, [ALICE, 0], [1, 2, 3])
        log["data"] = log["data"][:-64]
        with pytest.raises(DecodingError):
            decode_log(ABIS["Staked"], log)

    def test_missing_topic_rejected(self):
        log = _log(EventName.CLAIMED, 5, 0, [ALICE, 0], [1, 2])
        log["topics"] = log["topics"][:2]
        with pytest.raises(ValueError, match="indexed topic"):
            decode_log(ABIS["Claimed"], log)


# ===========================================================================
# JSON-RPC source
# ===========================================================================
class TestJsonRpcEventSource:
    def test_block_number(self):
        assert _source(FakeNode(head=0x1234)).get_block_number() == 0x1234

    def test_not_reorg_safe(self):
        assert JsonRpcEventSource.reorg_safe is False

    def test_get_events_decodes_and_sorts(self):
        node = FakeNode(logs=[
            _log(EventName.CLAIMED, 9, 0, [ALICE, 0], [0, 500]),
            _log(EventName.STAKED, 8, 1, [ALICE, 0], [0, 10**21, 9_999]),
            _log(EventName.WITHDRAWN, 9, 1, [ALICE, 0], [0, 10**21, 9_499], removed=True),
            {**_log(EventName.PAUSED, 9, 2, [], [ALICE]), "topics": ["0x" + "ff" * 32]},
        ])
        source = _source(node)
        events = source.get_events(1, 10)

        assert [e.event_name for e in events] == ["Staked", "Claimed"]
        staked = events[0]
        assert staked.block_number == 8
        assert staked.log_index == 1
        assert staked.block_timestamp == T0 + 8
        assert staked.event_data["amount"] == str(10**21)
        assert staked.event_data["rewardTotal"] == "9999"
        assert staked.position_key == f"{ALICE}:0:0"
        assert events[1].event_data["amount"] == "500"
        assert events[1].block_timestamp == T0 + 9

    def test_filters_on_known_topics(self):
        node = FakeNode()
        requests: list[dict] = []

        def recording(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            return node(request)

        _source(recording).get_events(1, 5)
        (log_filter,) = requests[0]["params"]
        assert set(log_filter["topics"][0]) == set(TOPICS)
        assert log_filter["address"] == CONTRACT
        assert node.calls == ["eth_getLogs"]

    def test_undecodable_log_is_provider_error(self):
        bad = _log(EventName.STAKED, 4, 0, [ALICE, 0], [0, 1, 2])
        bad["data"] = "0x"
        with pytest.raises(ProviderError, match="Undecodable Staked"):
            _source(FakeNode(logs=[bad])).get_events(1, 5)

    def test_block_timestamps_fetched_once_per_block_per_call(self):
        node = FakeNode(logs=[
            _log(EventName.STAKED, 8, 0, [ALICE, 0], [0, 10**21, 9_999]),
            _log(EventName.CLAIMED, 8, 1, [ALICE, 0], [0, 500]),
        ])
        source = _source(node)
        source.get_events(1, 10)
        assert node.calls.count("eth_getBlockByNumber") == 1

        # Nothing is kept between calls, so a long-running worker stays bounded.
        source.get_events(1, 10)
        assert node.calls.count("eth_getBlockByNumber") == 2
        assert not any(isinstance(v, dict) for v in vars(source).values())

    def test_empty_range_makes_no_calls(self):
        node = FakeNode()
        assert _source(node).get_events(10, 9) == []
        assert node.calls == []

    def test_rpc_error(self):
        node = FakeNode()
        node.fail_with = {"code": -32000, "message": "header not found"}
        with pytest.raises(ProviderError, match="header not found"):
            _source(node).get_block_number()

    def test_http_error(self):
        source = JsonRpcEventSource(
            "http://node.test", CHAIN_ID, CONTRACT,
            transport=httpx.MockTransport(lambda request: httpx.Response(502)),
        )
        with pytest.raises(ProviderError):
            source.get_block_number()

    def test_timeout(self):
        def slow(request):
            raise httpx.ReadTimeout("node too slow", request=request)

        source = JsonRpcEventSource(
            "http://node.test", CHAIN_ID, CONTRACT, transport=httpx.MockTransport(slow),
        )
        with pytest.raises(ProviderTimeout):
            source.get_block_number()

    def test_open_breaker_fails_fast(self):
        node = FakeNode()
        node.fail_with = {"code": -32000, "message": "busy"}
        breaker = CircuitBreaker(threshold=1, timeout=60.0, clock=lambda: 0.0)
        source = _source(node, breaker=breaker)
        with pytest.raises(ProviderError):
            source.get_block_number()
        assert breaker.state is BreakerState.OPEN

        with pytest.raises(ProviderError, match="OPEN"):
            source.get_block_number()
        assert node.calls == ["eth_blockNumber"]


# ===========================================================================
# Ledger source
# ===========================================================================
class TestLedgerEventSource:
    def test_genesis_block(self, ledger_engine):
        source = LedgerEventSource(ledger_engine, CHAIN_ID, CONTRACT)
        assert source.get_block_number() == 1
        events = source.get_events(1, 1)
        assert [e.event_name for e in events] == ["PackageUpdated"] * 4
        assert [e.log_index for e in events] == [0, 1, 2, 3]
        assert len({e.tx_hash for e in events}) == 1

    def test_journal_blocks_are_final(self, ledger_engine):
        assert LedgerEventSource(ledger_engine, CHAIN_ID, CONTRACT).reorg_safe is True

    def test_unknown_contract(self, db_engine):
        source = LedgerEventSource(db_engine, CHAIN_ID, CONTRACT)
        assert source.get_block_number() == 0
        assert source.get_events(1, 100) == []


class TestBuildEventSource:
    def test_ledger(self, db_engine):
        assert isinstance(build_event_source(make_config(), db_engine), LedgerEventSource)

    def test_rpc(self, db_engine):
        source = build_event_source(make_config("rpc"), db_engine)
        try:
            assert isinstance(source, JsonRpcEventSource)
            assert source.rpc_url == "http://node.test"
        finally:
            source.close()
