"""
SignalListener Module - On-chain failure signal ingestion

Subscribes to CacheUpdateFailed logs over WebSocket, decodes each into a
FailureSignal and enqueues it. Handles:
- Reconnection with exponential backoff and primary -> backup failover
- Reorged (removed) logs
- Block checkpoints in Redis and eth_getLogs backfill from the checkpoint
"""

import asyncio
import json
import logging
import time
from typing import Optional, Dict, Any, List, Callable, Awaitable, Tuple
from datetime import datetime, timezone

from web3 import Web3
from websockets import connect, ConnectionClosed

from .types import FailureSignal, ReasonCode, RPCError, UNKNOWN_VIEW_TARGET
from .config import CacheSyncConfig
from .database import RedisManager
from .retry_queue import RetryQueue
from .metrics_server import MetricsServer

logger = logging.getLogger(__name__)


CACHE_UPDATE_FAILED_SIGNATURE = "CacheUpdateFailed(address,address,address,uint256,uint256,bytes)"
CACHE_UPDATE_FAILED_TOPIC = Web3.to_hex(Web3.keccak(text=CACHE_UPDATE_FAILED_SIGNATURE))

# Error(string) revert selector
ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")

UNAUTHORIZED_MARKERS = ("Unauthorized", "MissingRole", "AccessControl")

CHECKPOINT_KEY = "checkpoint:signal_listener:last_block"


# ============================================================================
# Log Decoding
# ============================================================================

def _to_int(value) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


def _to_bytes(value) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = value[2:] if value.startswith("0x") else value
    return bytes.fromhex(text)


def _topic_to_address(topic) -> str:
    return Web3.to_checksum_address("0x" + _to_bytes(topic)[-20:].hex())


def classify_reason(codec, view: str, reason: bytes) -> Tuple[ReasonCode, str]:
    """Map the emitted view and revert payload onto a reason code and detail"""
    if not view or view.lower() == UNKNOWN_VIEW_TARGET:
        return ReasonCode.VIEW_UNRESOLVED, "0x" + reason.hex()

    if reason[:4] == ERROR_STRING_SELECTOR:
        try:
            (text,) = codec.decode(["string"], reason[4:])
        except Exception:
            text = None
        if text is not None:
            if any(marker in text for marker in UNAUTHORIZED_MARKERS):
                return ReasonCode.UNAUTHORIZED, text
            return ReasonCode.PUSH_REVERTED, text

    return ReasonCode.PUSH_REVERTED, "0x" + reason.hex()


def decode_cache_update_failed(codec, log: Dict[str, Any],
                               observed_at: Optional[datetime] = None) -> FailureSignal:
    """
    Decode a CacheUpdateFailed log.

    user and asset are indexed; view, collateral, debt and reason are in data.
    """
    topics = log["topics"]
    if len(topics) < 3:
        raise ValueError(f"CacheUpdateFailed log needs 3 topics, got {len(topics)}")

    user = _topic_to_address(topics[1])
    asset = _topic_to_address(topics[2])
    view, collateral, debt, reason = codec.decode(
        ["address", "uint256", "uint256", "bytes"], _to_bytes(log["data"])
    )
    view = Web3.to_checksum_address(view)
    reason_code, detail = classify_reason(codec, view, bytes(reason))

    block_number = _to_int(log["blockNumber"])
    log_index = _to_int(log["logIndex"])

    return FailureSignal(
        subject=user,
        asset=asset,
        view_target=UNKNOWN_VIEW_TARGET if reason_code == ReasonCode.VIEW_UNRESOLVED else view,
        attempted_value_a=int(collateral),
        attempted_value_b=int(debt),
        reason_code=reason_code,
        reason_detail=detail,
        source_ref=f"block{block_number}#log{log_index}",
        observed_at=observed_at
    )


# ============================================================================
# WebSocket Connection Manager
# ============================================================================

class WebSocketConnectionManager:
    """Manages a WebSocket log subscription with automatic reconnection and failover"""

    def __init__(
        self,
        primary_ws_url: str,
        backup_ws_url: Optional[str],
        subscription_params: List[Any],
        on_message: Callable[[Dict[str, Any]], Awaitable[None]],
        on_error: Optional[Callable[[Exception], None]] = None,
        on_connect: Optional[Callable[[], Awaitable[None]]] = None,
        connect_factory=connect
    ):
        self.primary_ws_url = primary_ws_url
        self.backup_ws_url = backup_ws_url
        self.subscription_params = subscription_params
        self.on_message = on_message
        self.on_error = on_error
        self.on_connect = on_connect
        self._connect = connect_factory

        self.ws = None
        self.is_primary = True
        self.is_connected = False
        self.reconnect_attempts = 0
        self.max_reconnect_attempts = 10
        self.base_backoff = 1.0  # seconds
        self.max_backoff = 60.0  # seconds

        self._running = False
        self._last_message_time = time.time()
        self._health_check_interval = 120  # seconds; failure logs are rare

    @property
    def current_url(self) -> str:
        return self.primary_ws_url if self.is_primary else self.backup_ws_url

    async def connect(self):
        """Establish WebSocket connection and subscribe"""
        provider_name = "primary" if self.is_primary else "backup"
        url = self.current_url

        try:
            logger.info(f"Connecting to {provider_name} WebSocket: {url}")
            self.ws = await self._connect(url, ping_interval=20, ping_timeout=10)
            self.is_connected = True
            self.reconnect_attempts = 0
            self._last_message_time = time.time()
            logger.info(f"Connected to {provider_name} WebSocket")

            await self.subscribe()
            if self.on_connect:
                await self.on_connect()

        except Exception as e:
            logger.error(f"Failed to connect to {provider_name} WebSocket: {e}")
            self.is_connected = False
            raise RPCError(f"WebSocket connection failed: {e}")

    async def subscribe(self):
        """Subscribe to logs"""
        if not self.ws:
            raise RPCError("WebSocket not connected")

        subscription_request = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": self.subscription_params
        }

        await self.ws.send(json.dumps(subscription_request))
        logger.info("Subscribed to CacheUpdateFailed logs")

    async def disconnect(self):
        """Close WebSocket connection"""
        if self.ws:
            await self.ws.close()
            self.ws = None
            self.is_connected = False
            logger.info("WebSocket disconnected")

    async def reconnect(self):
        """Reconnect with exponential backoff, failing over after repeated failures"""
        while self._running:
            if self.reconnect_attempts >= self.max_reconnect_attempts:
                logger.error("Max reconnection attempts reached")
                if self.is_primary and self.backup_ws_url:
                    logger.info("Failing over to backup WebSocket")
                    self.is_primary = False
                    self.reconnect_attempts = 0
                else:
                    raise RPCError("All WebSocket providers failed")

            backoff = min(
                self.base_backoff * (2 ** self.reconnect_attempts),
                self.max_backoff
            )

            logger.info(f"Reconnecting in {backoff:.1f} seconds (attempt {self.reconnect_attempts + 1})")
            await asyncio.sleep(backoff)

            self.reconnect_attempts += 1

            try:
                await self.disconnect()
                await self.connect()
                return
            except Exception as e:
                logger.error(f"Reconnection failed: {e}")

    async def start(self):
        """Start listening for messages"""
        self._running = True

        while self._running:
            try:
                if not self.is_connected:
                    await self.connect()

                async for message in self.ws:
                    self._last_message_time = time.time()

                    try:
                        data = json.loads(message)
                        await self.on_message(data)
                    except json.JSONDecodeError as e:
                        logger.error(f"Failed to parse WebSocket message: {e}")
                    except Exception as e:
                        logger.error(f"Error processing message: {e}")
                        if self.on_error:
                            self.on_error(e)

                # Server closed the stream cleanly
                self.is_connected = False
                if self._running:
                    await self.reconnect()

            except ConnectionClosed as e:
                logger.warning(f"WebSocket connection closed: {e}")
                self.is_connected = False
                if self._running:
                    await self.reconnect()

            except RPCError:
                # Initial connect failed; reconnect() raises once every provider is exhausted
                self.is_connected = False
                if self._running:
                    await self.reconnect()

    async def stop(self):
        """Stop listening and disconnect"""
        self._running = False
        await self.disconnect()

    def check_health(self) -> bool:
        """Check connection health"""
        if not self.is_connected:
            return False

        time_since_last_message = time.time() - self._last_message_time
        if time_since_last_message > self._health_check_interval:
            logger.warning(f"No messages received for {time_since_last_message:.1f} seconds")
            return False

        return True

    async def failover(self):
        """Manually trigger failover to backup"""
        if self.is_primary and self.backup_ws_url:
            logger.info("Manual failover to backup WebSocket")
            self.is_primary = False
            self.reconnect_attempts = 0
            await self.disconnect()
            await self.connect()
        else:
            logger.warning("No backup WebSocket to fail over to")


# ============================================================================
# Signal Listener
# ============================================================================

class SignalListener:
    """Turns CacheUpdateFailed logs into retry jobs"""

    def __init__(
        self,
        config: CacheSyncConfig,
        queue: RetryQueue,
        redis_manager: RedisManager,
        w3: Optional[Web3] = None,
        connect_factory=connect
    ):
        self.config = config
        self.queue = queue
        self.redis = redis_manager
        self.w3 = w3 or Web3(Web3.HTTPProvider(config.rpc.primary_http))
        self._connect_factory = connect_factory

        self.emitters = [
            Web3.to_checksum_address(a) for a in config.contracts.signal_emitters
        ]
        self._emitter_set = {a.lower() for a in self.emitters}

        self.ws_manager: Optional[WebSocketConnectionManager] = None
        self.last_block = self.load_checkpoint() or 0
        self.signals_ingested = 0
        self._running = False
        self._tasks: List[asyncio.Task] = []

        logger.info(f"SignalListener initialized (checkpoint block {self.last_block})")

    @property
    def log_filter(self) -> Dict[str, Any]:
        log_filter: Dict[str, Any] = {"topics": [CACHE_UPDATE_FAILED_TOPIC]}
        if self.emitters:
            log_filter["address"] = self.emitters
        return log_filter

    async def start(self):
        """Start the subscription and health monitoring"""
        if not self.config.rpc.primary_ws:
            raise RPCError("rpc.primary_ws is required for the signal listener")

        self._running = True
        logger.info("Starting SignalListener...")

        self.ws_manager = WebSocketConnectionManager(
            primary_ws_url=self.config.rpc.primary_ws,
            backup_ws_url=self.config.rpc.backup_ws,
            subscription_params=["logs", self.log_filter],
            on_message=self.handle_message,
            on_error=self._handle_ws_error,
            on_connect=self._catch_up,
            connect_factory=self._connect_factory
        )

        self._tasks = [
            asyncio.create_task(self.ws_manager.start()),
            asyncio.create_task(self._monitor_health()),
        ]
        logger.info("SignalListener started")

    async def stop(self):
        """Stop the listener"""
        self._running = False
        if self.ws_manager:
            await self.ws_manager.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        MetricsServer.update_listener(False)
        logger.info("SignalListener stopped")

    async def handle_message(self, data: Dict[str, Any]):
        """Handle incoming WebSocket message"""
        if data.get("method") == "eth_subscription":
            log = data.get("params", {}).get("result", {})
            if log:
                await self.process_log(log)

        elif "result" in data and "id" in data:
            logger.debug(f"Subscription confirmed: {data}")
            MetricsServer.update_listener(True)

        elif "error" in data:
            logger.error(f"Subscription error: {data['error']}")

    async def process_log(self, log: Dict[str, Any]) -> Optional[FailureSignal]:
        """Decode and enqueue one log; returns the signal if one was enqueued"""
        if log.get("removed"):
            # Reorged out; the re-included log arrives again with a new position
            logger.warning(f"Ignoring removed log at block {log.get('blockNumber')}")
            return None

        topics = log.get("topics") or []
        if not topics or Web3.to_hex(_to_bytes(topics[0])) != CACHE_UPDATE_FAILED_TOPIC:
            return None

        address = str(log.get("address", "")).lower()
        if self._emitter_set and address not in self._emitter_set:
            return None

        try:
            signal = decode_cache_update_failed(
                self.w3.codec, log, observed_at=datetime.now(timezone.utc).replace(tzinfo=None)
            )
        except Exception as e:
            logger.error(f"Failed to decode CacheUpdateFailed log: {e}")
            return None

        await asyncio.to_thread(self.queue.enqueue, signal, "signal-listener")
        self.signals_ingested += 1

        block_number = _to_int(log["blockNumber"])
        if block_number > self.last_block:
            self.save_checkpoint(block_number)

        return signal

    async def backfill(self, from_block: int, to_block: Optional[int] = None) -> int:
        """
        Replay CacheUpdateFailed logs in a block range via eth_getLogs.

        Enqueue is idempotent, so overlapping ranges are harmless.

        Returns:
            Number of logs processed
        """
        if to_block is None:
            to_block = await asyncio.to_thread(lambda: self.w3.eth.block_number)
        if from_block > to_block:
            return 0

        params = dict(self.log_filter, fromBlock=from_block, toBlock=to_block)
        logs = await asyncio.to_thread(self.w3.eth.get_logs, params)

        processed = 0
        for log in logs:
            if await self.process_log(dict(log)) is not None:
                processed += 1

        if to_block > self.last_block:
            self.save_checkpoint(to_block)

        logger.info(f"Backfilled blocks {from_block}-{to_block}: {processed} signals")
        return processed

    def load_checkpoint(self) -> Optional[int]:
        value = self.redis.get(CHECKPOINT_KEY)
        return int(value) if value else None

    def save_checkpoint(self, block_number: int):
        """Save last processed block for recovery"""
        self.last_block = block_number
        self.redis.set(CHECKPOINT_KEY, str(block_number), ttl=0)
        MetricsServer.update_listener(True, block_number)
        logger.debug(f"Checkpoint saved at block {block_number}")

    async def _catch_up(self):
        """Backfill anything emitted while disconnected"""
        if not self.last_block:
            return
        try:
            await self.backfill(self.last_block + 1)
        except Exception as e:
            logger.error(f"Catch-up backfill from block {self.last_block + 1} failed: {e}")

    async def _monitor_health(self):
        """Monitor WebSocket connection health"""
        while self._running:
            await asyncio.sleep(30)

            if self.ws_manager and not self.ws_manager.check_health():
                logger.warning("Signal listener connection unhealthy")
                MetricsServer.update_listener(False)

    def _handle_ws_error(self, error: Exception):
        """Handle WebSocket errors"""
        logger.error(f"WebSocket error: {error}")
