"""
Unit tests for CachePusher (failure signalling on the write path)

Tests:
- Successful and rejected pushes never raise a signal
- Each reason code: view-unresolved, unauthorized, ledger-read-failed,
  ledger-mismatch, write-unavailable, unknown
- Malformed pushes are invalid and alerted
- Push never raises, even when the queue is down
"""

import sys
from pathlib import Path
from unittest.mock import Mock

# Add worker/ to path
sys.path.insert(0, str(Path(__file__).parent))

import pytest

from cachesync.types import ApplyStatus, ReasonCode, DatabaseError, UNKNOWN_VIEW_TARGET
from cachesync.config import CacheConfig
from cachesync.failure_signal import CachePusher


SUBJECT = "0xAbCdEf1234567890123456789012345678901234"
ASSET = "0x4200000000000000000000000000000000000006"


@pytest.fixture
def pusher(store, queue, resolver, cache_config, alerts, clock):
    return CachePusher(store, queue, resolver, cache_config, alerts=alerts, clock=clock)


def make_pusher(store, queue, resolver, clock, alerts=None, ledger=None, **cache_kwargs):
    return CachePusher(store, queue, resolver, CacheConfig(**cache_kwargs),
                       ledger=ledger, alerts=alerts, clock=clock)


# ============================================================================
# Reaching the Store
# ============================================================================

def test_push_applies(pusher, queue):
    outcome = pusher.push(SUBJECT, ASSET, 100, 20, request_id="r1", expected_next_version=1)

    assert outcome.reached_store
    assert outcome.result.status == ApplyStatus.APPLIED
    assert outcome.signal is None
    assert queue.list_jobs() == []

    print("✓ Successful push raises no signal")


def test_rejected_push_is_not_a_failure(pusher, queue):
    pusher.push(SUBJECT, ASSET, 100, 20, request_id="r1", expected_next_version=1)
    stale = pusher.push(SUBJECT, ASSET, 90, 10, request_id="r2", expected_next_version=1)
    dup = pusher.push(SUBJECT, ASSET, 90, 10, request_id="r1")

    assert stale.result.status == ApplyStatus.STALE_VERSION
    assert dup.result.status == ApplyStatus.DUPLICATE
    assert stale.signal is None and dup.signal is None
    assert queue.list_jobs() == []

    print("✓ Rejections are normal outcomes, not failure signals")


def test_invalid_push_alerts(pusher, alerts, queue):
    outcome = pusher.push(SUBJECT, ASSET, -1, 0, request_id="r1")

    assert outcome.result.status == ApplyStatus.INVALID
    alerts.invalid_write.assert_called_once()
    assert queue.list_jobs() == []

    print("✓ Invalid push is alerted and not retried")


def test_malformed_values_are_invalid(pusher):
    outcome = pusher.push(SUBJECT, ASSET, "not-a-number", 0)

    assert outcome.result.status == ApplyStatus.INVALID
    assert outcome.result.version == 0

    print("✓ Unparseable push is invalid")


# ============================================================================
# Failure Signals
# ============================================================================

def test_unresolved_view_signals(pusher, queue):
    outcome = pusher.push(SUBJECT, ASSET, 100, 20, view_target="retired-view",
                          source_ref="block10#log1")

    assert not outcome.reached_store
    assert outcome.signal.reason_code == ReasonCode.VIEW_UNRESOLVED
    assert outcome.signal.view_target == UNKNOWN_VIEW_TARGET
    assert outcome.job.view_target == UNKNOWN_VIEW_TARGET
    assert outcome.job.source_ref == "block10#log1"
    assert outcome.job.attempted_value_a == 100

    print("✓ Unresolved view raises view-unresolved")


def test_unauthorized_writer_signals(store, queue, resolver, clock):
    pusher = make_pusher(store, queue, resolver, clock, authorized_writers=["indexer"])

    outcome = pusher.push(SUBJECT, ASSET, 1, 1, writer="intruder")
    assert outcome.signal.reason_code == ReasonCode.UNAUTHORIZED
    assert outcome.job.view_target == "default"

    allowed = pusher.push(SUBJECT, ASSET, 1, 1, writer="indexer")
    assert allowed.result.status == ApplyStatus.APPLIED

    print("✓ Unauthorized writer raises unauthorized")


def test_ledger_verification(store, queue, resolver, clock, ledger):
    pusher = make_pusher(store, queue, resolver, clock, ledger=ledger, verify_against_ledger=True)
    ledger.set(SUBJECT, ASSET, 100, 20)

    mismatch = pusher.push(SUBJECT, ASSET, 99, 20, request_id="r1")
    assert mismatch.signal.reason_code == ReasonCode.LEDGER_MISMATCH

    match = pusher.push(SUBJECT, ASSET, 100, 20, request_id="r2")
    assert match.result.status == ApplyStatus.APPLIED

    ledger.fail_always = True
    down = pusher.push(SUBJECT, ASSET, 100, 20, request_id="r3")
    assert down.signal.reason_code == ReasonCode.LEDGER_READ_FAILED

    print("✓ Ledger verification raises mismatch and read-failed")


def test_verification_requires_ledger(store, queue, resolver, clock):
    with pytest.raises(ValueError):
        make_pusher(store, queue, resolver, clock, verify_against_ledger=True)

    print("✓ Verification without a ledger is a configuration error")


def test_store_unavailable_signals(pusher, store, queue):
    store.apply = Mock(side_effect=DatabaseError("connection refused"))

    outcome = pusher.push(SUBJECT, ASSET, 5, 5, request_id="r1")

    assert outcome.signal.reason_code == ReasonCode.WRITE_UNAVAILABLE
    assert outcome.job.source_ref == "request:r1"
    assert len(queue.list_jobs()) == 1

    print("✓ Store outage raises write-unavailable")


def test_unexpected_error_signals_unknown(pusher, store):
    store.apply = Mock(side_effect=KeyError("boom"))

    outcome = pusher.push(SUBJECT, ASSET, 5, 5)

    assert outcome.signal.reason_code == ReasonCode.UNKNOWN
    assert "KeyError" in outcome.signal.reason_detail
    assert outcome.job.source_ref.startswith("push@")

    print("✓ Unexpected error raises unknown")


def test_push_never_raises_when_queue_is_down(pusher, store, queue):
    store.apply = Mock(side_effect=DatabaseError("db down"))
    queue.enqueue = Mock(side_effect=DatabaseError("db down"))

    outcome = pusher.push(SUBJECT, ASSET, 5, 5)

    assert outcome.signal is not None
    assert outcome.job is None

    print("✓ Push survives a queue outage")


def test_repeated_failure_for_same_source_is_one_job(pusher, queue):
    pusher.push(SUBJECT, ASSET, 1, 1, view_target="retired-view", source_ref="block5#log0")
    pusher.push(SUBJECT, ASSET, 1, 1, view_target="retired-view", source_ref="block5#log0")

    jobs = queue.list_jobs()
    assert len(jobs) == 1
    assert jobs[0].duplicate_signals == 1

    print("✓ Repeated failure for one mutation is one job")
