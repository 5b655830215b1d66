"""
Unit tests for SignalListener (CacheUpdateFailed ingestion)

Tests:
- Log decoding and reason classification
- Filtering of removed logs, foreign topics and foreign emitters
- Idempotent enqueue of replayed logs
- Block checkpoints and eth_getLogs backfill
- WebSocket subscription, message dispatch and failover
"""

import sys
import json
import asyncio
from pathlib import Path
from unittest.mock import Mock

# Add worker/ to path
sys.path.insert(0, str(Path(__file__).parent))

import pytest
from web3 import Web3

from cachesync.types import ReasonCode, RPCError, UNKNOWN_VIEW_TARGET
from cachesync.config import CacheSyncConfig, RPCConfig, ContractsConfig
from cachesync.signal_listener import (
    SignalListener, WebSocketConnectionManager, decode_cache_update_failed, classify_reason,
    CACHE_UPDATE_FAILED_TOPIC, ERROR_STRING_SELECTOR, CHECKPOINT_KEY
)


CODEC = Web3().codec

EMITTER = Web3.to_checksum_address("0x1111111111111111111111111111111111111111")
USER = Web3.to_checksum_address("0xabcdef1234567890123456789012345678901234")
ASSET = Web3.to_checksum_address("0x4200000000000000000000000000000000000006")
VIEW = Web3.to_checksum_address("0x3333333333333333333333333333333333333333")


def topic_for(address: str) -> str:
    return "0x" + "00" * 12 + address[2:].lower()


def make_log(view=VIEW, collateral=1000, debt=400, reason=b"", block=123, index=4,
             removed=False, address=EMITTER, topic0=CACHE_UPDATE_FAILED_TOPIC):
    data = CODEC.encode(["address", "uint256", "uint256", "bytes"], [view, collateral, debt, reason])
    return {
        "address": address,
        "topics": [topic0, topic_for(USER), topic_for(ASSET)],
        "data": "0x" + data.hex(),
        "blockNumber": hex(block),
        "logIndex": hex(index),
        "removed": removed,
    }


def error_string(text: str) -> bytes:
    return ERROR_STRING_SELECTOR + CODEC.encode(["string"], [text])


def make_config(primary_ws="ws://localhost:8546", backup_ws=None, emitters=(EMITTER,)):
    return CacheSyncConfig(
        rpc=RPCConfig(primary_http="http://localhost:8545", primary_ws=primary_ws, backup_ws=backup_ws),
        contracts=ContractsConfig(signal_emitters=list(emitters))
    )


def make_w3(logs=None, block_number=200):
    w3 = Mock()
    w3.codec = CODEC
    w3.eth.get_logs = Mock(return_value=logs or [])
    w3.eth.block_number = block_number
    return w3


class FakeWebSocket:
    """Async-iterable stand-in for a websockets connection"""

    def __init__(self, messages):
        self.messages = list(messages)
        self.sent = []
        self.closed = False

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            yield message


def subscription_message(log):
    return json.dumps({
        "jsonrpc": "2.0",
        "method": "eth_subscription",
        "params": {"subscription": "0xsub", "result": log}
    })


@pytest.fixture
def listener(queue, redis_manager):
    return SignalListener(make_config(), queue, redis_manager, w3=make_w3())


# ============================================================================
# Decoding
# ============================================================================

def test_decode_cache_update_failed():
    signal = decode_cache_update_failed(CODEC, make_log(reason=error_string("view paused")))

    assert signal.subject == USER
    assert signal.asset == ASSET
    assert signal.view_target == VIEW
    assert signal.attempted_value_a == 1000
    assert signal.attempted_value_b == 400
    assert signal.reason_code == ReasonCode.PUSH_REVERTED
    assert signal.reason_detail == "view paused"
    assert signal.source_ref == "block123#log4"

    print("✓ CacheUpdateFailed log decodes into a failure signal")


def test_decode_requires_indexed_topics():
    log = make_log()
    log["topics"] = log["topics"][:1]
    with pytest.raises(ValueError):
        decode_cache_update_failed(CODEC, log)

    print("✓ Logs without indexed user and asset are rejected")


def test_classify_reason():
    zero = "0x0000000000000000000000000000000000000000"
    assert classify_reason(CODEC, zero, b"")[0] == ReasonCode.VIEW_UNRESOLVED

    code, detail = classify_reason(CODEC, VIEW, error_string("AccessControl: account is missing role"))
    assert code == ReasonCode.UNAUTHORIZED
    assert "missing role" in detail

    code, detail = classify_reason(CODEC, VIEW, bytes.fromhex("deadbeef"))
    assert code == ReasonCode.PUSH_REVERTED
    assert detail == "0xdeadbeef"

    print("✓ Revert payloads map onto reason codes")


def test_zero_view_is_recorded_as_unknown():
    signal = decode_cache_update_failed(CODEC, make_log(view="0x0000000000000000000000000000000000000000"))
    assert signal.view_target == UNKNOWN_VIEW_TARGET
    assert signal.reason_code == ReasonCode.VIEW_UNRESOLVED

    print("✓ Zero view address becomes the unknown sentinel")


# ============================================================================
# Log Processing
# ============================================================================

async def test_process_log_enqueues_and_checkpoints(listener, queue, redis_manager):
    signal = await listener.process_log(make_log(block=150))

    assert signal is not None
    jobs = queue.list_jobs()
    assert len(jobs) == 1
    assert jobs[0].source_ref == "block150#log4"
    assert listener.last_block == 150
    assert redis_manager.get(CHECKPOINT_KEY) == "150"

    print("✓ Log enqueued and checkpoint advanced")


async def test_process_log_filters(listener, queue):
    assert await listener.process_log(make_log(removed=True)) is None
    assert await listener.process_log(make_log(topic0="0x" + "ab" * 32)) is None
    assert await listener.process_log(
        make_log(address="0x9999999999999999999999999999999999999999")
    ) is None

    assert queue.list_jobs() == []

    print("✓ Removed, foreign-topic and foreign-emitter logs are ignored")


async def test_replayed_log_is_one_job(listener, queue):
    await listener.process_log(make_log())
    await listener.process_log(make_log())

    jobs = queue.list_jobs()
    assert len(jobs) == 1
    assert jobs[0].duplicate_signals == 1

    print("✓ Replayed log folds into the existing job")


async def test_checkpoint_never_moves_backwards(listener):
    await listener.process_log(make_log(block=200, index=0))
    await listener.process_log(make_log(block=190, index=0))

    assert listener.last_block == 200

    print("✓ Checkpoint only advances")


async def test_handle_message_dispatch(listener, queue):
    await listener.handle_message({"jsonrpc": "2.0", "id": 1, "result": "0xsub"})
    await listener.handle_message({"jsonrpc": "2.0", "id": 1, "error": {"code": -32000}})
    await listener.handle_message(json.loads(subscription_message(make_log())))

    assert len(queue.list_jobs()) == 1
    assert listener.signals_ingested == 1

    print("✓ Subscription messages dispatched to log processing")


# ============================================================================
# Checkpoints and Backfill
# ============================================================================

def test_checkpoint_loaded_on_start(queue, redis_manager):
    redis_manager.set(CHECKPOINT_KEY, "777", ttl=0)
    listener = SignalListener(make_config(), queue, redis_manager, w3=make_w3())

    assert listener.last_block == 777

    print("✓ Checkpoint restored from Redis")


async def test_backfill(queue, redis_manager):
    logs = [make_log(block=101, index=0), make_log(block=102, index=3), make_log(block=103, removed=True)]
    w3 = make_w3(logs=logs, block_number=110)
    listener = SignalListener(make_config(), queue, redis_manager, w3=w3)

    processed = await listener.backfill(100)

    assert processed == 2
    assert len(queue.list_jobs()) == 2
    assert listener.last_block == 110

    params = w3.eth.get_logs.call_args[0][0]
    assert params["fromBlock"] == 100
    assert params["toBlock"] == 110
    assert params["topics"] == [CACHE_UPDATE_FAILED_TOPIC]
    assert params["address"] == [EMITTER]

    print("✓ Backfill replays the range and checkpoints its end")


async def test_backfill_empty_range(listener):
    assert await listener.backfill(50, 40) == 0

    print("✓ Empty backfill range is a no-op")


# ============================================================================
# WebSocket
# ============================================================================

async def test_start_requires_websocket_url(queue, redis_manager):
    listener = SignalListener(make_config(primary_ws=None), queue, redis_manager, w3=make_w3())
    with pytest.raises(RPCError):
        await listener.start()

    print("✓ Listener refuses to start without a WebSocket URL")


async def test_connection_manager_subscribes_and_dispatches():
    ws = FakeWebSocket([
        json.dumps({"jsonrpc": "2.0", "id": 1, "result": "0xsub"}),
        subscription_message(make_log()),
    ])

    async def fake_connect(url, **kwargs):
        return ws

    received = []

    async def on_message(data):
        received.append(data)
        if len(received) == 2:
            await manager.stop()

    manager = WebSocketConnectionManager(
        "ws://primary", None, ["logs", {"topics": [CACHE_UPDATE_FAILED_TOPIC]}],
        on_message=on_message, connect_factory=fake_connect
    )
    await asyncio.wait_for(manager.start(), timeout=5)

    assert ws.sent[0]["method"] == "eth_subscribe"
    assert ws.sent[0]["params"][0] == "logs"
    assert received[1]["method"] == "eth_subscription"
    assert ws.closed

    print("✓ Manager subscribes and dispatches messages")


async def test_connection_manager_fails_over_to_backup():
    backup_ws = FakeWebSocket([json.dumps({"jsonrpc": "2.0", "id": 1, "result": "0xsub"})])
    attempted = []

    async def fake_connect(url, **kwargs):
        attempted.append(url)
        if url == "ws://primary":
            raise OSError("connection refused")
        return backup_ws

    async def on_message(data):
        await manager.stop()

    manager = WebSocketConnectionManager(
        "ws://primary", "ws://backup", ["logs", {}],
        on_message=on_message, connect_factory=fake_connect
    )
    manager.base_backoff = 0
    manager.max_reconnect_attempts = 2

    await asyncio.wait_for(manager.start(), timeout=5)

    assert not manager.is_primary
    assert attempted[-1] == "ws://backup"
    assert attempted.count("ws://primary") == 3

    print("✓ Manager fails over to the backup provider")


async def test_listener_end_to_end_over_websocket(queue, redis_manager):
    ws = FakeWebSocket([
        json.dumps({"jsonrpc": "2.0", "id": 1, "result": "0xsub"}),
        subscription_message(make_log(block=300)),
    ])

    async def fake_connect(url, **kwargs):
        return ws

    listener = SignalListener(make_config(), queue, redis_manager, w3=make_w3(),
                              connect_factory=fake_connect)
    await listener.start()

    for _ in range(200):
        if queue.list_jobs():
            break
        await asyncio.sleep(0.01)

    await listener.stop()

    assert len(queue.list_jobs()) == 1
    assert listener.last_block == 300

    print("✓ Listener ingests a log received over WebSocket")
