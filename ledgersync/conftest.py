"""
Pytest configuration and shared fixtures for ledgersync

This module provides shared fixtures for:
- A deterministic clock
- SQLite-backed database and in-memory Redis fallback
- A scriptable ledger reader
- Fully wired store, queue, lease coordinator and retry worker
- Failure signal generators
"""

import os
import sys
import random
import pytest
from pathlib import Path
from datetime import datetime
from unittest.mock import Mock

# Add worker/ to Python path so the cachesync package imports without installing
worker_path = str(Path(__file__).parent / "worker")
if worker_path not in sys.path:
    sys.path.insert(0, worker_path)

from cachesync.clock import FixedClock
from cachesync.config import DatabaseConfig, RedisConfig, CacheConfig, RetryConfig
from cachesync.database import DatabaseManager, RedisManager
from cachesync.types import FailureSignal, ReasonCode, LedgerReadError
from cachesync.ledger import LedgerReader
from cachesync.auditor import ReconciliationAuditor
from cachesync.cache_store import VersionedCacheStore
from cachesync.retry_queue import RetryQueue, BackoffPolicy
from cachesync.lease import LeaseCoordinator
from cachesync.resolver import StaticViewTargetResolver
from cachesync.retry_worker import RetryWorker
from cachesync.alerts import AlertNotifier
from cachesync.logging_config import init_logging


SUBJECT = "0xAbCdEf1234567890123456789012345678901234"
ASSET = "0x4200000000000000000000000000000000000006"
DEFAULT_VIEW_ADDRESS = "0x3333333333333333333333333333333333333333"
POSITIONS_VIEW_ADDRESS = "0x4444444444444444444444444444444444444444"

VIEW_TARGETS = {
    "default": DEFAULT_VIEW_ADDRESS,
    "positions": POSITIONS_VIEW_ADDRESS,
}


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom settings"""
    os.environ['ENVIRONMENT'] = 'test'
    os.environ['LOG_LEVEL'] = 'DEBUG'


def pytest_collection_modifyitems(config, items):
    """Add markers based on test file location"""
    for item in items:
        if "integration" in item.nodeid or "end_to_end" in item.nodeid:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


@pytest.fixture(scope="session", autouse=True)
def isolated_logging(tmp_path_factory):
    """Route log files to a temporary directory for the session"""
    init_logging(log_dir=tmp_path_factory.mktemp("logs"), log_level="DEBUG")


# ============================================================================
# Infrastructure Fixtures
# ============================================================================

class FakeLedger(LedgerReader):
    """Scriptable ledger: set balances, or make the next N reads fail"""

    def __init__(self):
        self.balances = {}
        self.fail_next = 0
        self.fail_always = False
        self.reads = 0

    def set(self, subject: str, asset: str, value_a: int, value_b: int):
        self.balances[(subject, asset)] = (value_a, value_b)

    def read_balances(self, subject: str, asset: str):
        self.reads += 1
        if self.fail_always:
            raise LedgerReadError("ledger unreachable")
        if self.fail_next > 0:
            self.fail_next -= 1
            raise LedgerReadError("ledger unreachable")
        return self.balances.get((subject, asset), (0, 0))


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 1, 12, 0, 0))


@pytest.fixture
def db_manager():
    """Fresh in-memory SQLite database per test"""
    manager = DatabaseManager(DatabaseConfig(url="sqlite://"))
    manager.create_tables()
    yield manager
    manager.dispose()


@pytest.fixture
def redis_manager(clock):
    """Redis manager forced onto the in-memory fallback"""
    manager = RedisManager(RedisConfig(enabled=False), clock=clock)
    yield manager
    manager.clear()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def cache_config():
    return CacheConfig(cache_duration_seconds=300)


@pytest.fixture
def retry_config():
    return RetryConfig(
        max_attempts=3,
        base_backoff_seconds=5.0,
        max_backoff_seconds=900.0,
        jitter_ratio=0.5,
        lease_ttl_seconds=30,
        worker_count=2,
        poll_interval_seconds=0.01,
        recovery_interval_seconds=0.01
    )


@pytest.fixture
def alerts():
    return Mock(spec=AlertNotifier)


# ============================================================================
# Component Fixtures
# ============================================================================

@pytest.fixture
def auditor(db_manager, clock):
    return ReconciliationAuditor(db_manager, clock=clock)


@pytest.fixture
def store(db_manager, auditor, cache_config, clock):
    return VersionedCacheStore(db_manager, auditor, cache_config, clock=clock)


@pytest.fixture
def queue(db_manager, auditor, retry_config, clock, alerts):
    backoff = BackoffPolicy.from_config(retry_config, rng=random.Random(7))
    return RetryQueue(db_manager, auditor, retry_config, clock=clock, backoff=backoff, alerts=alerts)


@pytest.fixture
def leases(redis_manager, clock, retry_config):
    return LeaseCoordinator(redis_manager, clock=clock,
                            default_ttl_seconds=retry_config.lease_ttl_seconds)


@pytest.fixture
def resolver():
    return StaticViewTargetResolver(VIEW_TARGETS)


@pytest.fixture
def worker(queue, store, leases, ledger, resolver, retry_config, cache_config, clock):
    return RetryWorker(
        worker_id="worker-1",
        queue=queue,
        store=store,
        leases=leases,
        ledger=ledger,
        resolver=resolver,
        config=retry_config,
        cache_config=cache_config,
        clock=clock
    )


# ============================================================================
# Test Data Generator Fixtures
# ============================================================================

@pytest.fixture
def signal_generator(clock):
    """Generate FailureSignal objects"""
    def generate(
        source_ref: str = "block100#log0",
        subject: str = SUBJECT,
        asset: str = ASSET,
        view_target: str = "default",
        reason_code: ReasonCode = ReasonCode.PUSH_REVERTED,
        value_a: int = 1000,
        value_b: int = 400
    ):
        return FailureSignal(
            subject=subject,
            asset=asset,
            view_target=view_target,
            attempted_value_a=value_a,
            attempted_value_b=value_b,
            reason_code=reason_code,
            reason_detail="execution reverted",
            source_ref=source_ref,
            observed_at=clock.now()
        )

    return generate
