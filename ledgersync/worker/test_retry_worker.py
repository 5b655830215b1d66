"""
Unit tests for RetryWorker and RetryWorkerPool

Tests:
- Convergence to ledger values and the audit trail it leaves
- Backoff, dead-letter threshold and permanent failures
- Lease contention, backoff gating, view target resolution
- Registry resolution, unexpected errors, racing workers
- Operator force retry and dry-run
- Worker pool draining the queue concurrently
"""

import sys
import asyncio
import threading
from pathlib import Path
from unittest.mock import Mock

# Add worker/ to path
sys.path.insert(0, str(Path(__file__).parent))

import pytest

from cachesync.types import (
    WriteAttempt, JobStatus, ApplyStatus, AuditAction, ReasonCode,
    InvalidJobTransitionError, WriteUnavailableError, UNKNOWN_VIEW_TARGET
)
from cachesync.config import ContractsConfig, RedisConfig
from cachesync.database import RedisManager
from cachesync.lease import LeaseCoordinator
from cachesync.resolver import RegistryViewTargetResolver, module_key_hash
from cachesync.retry_worker import RetryWorker, RetryWorkerPool
from cachesync.idempotency import derive_retry_request_id


SUBJECT = "0xAbCdEf1234567890123456789012345678901234"
ASSET = "0x4200000000000000000000000000000000000006"
POSITIONS_VIEW_ADDRESS = "0x4444444444444444444444444444444444444444"


def seed(store, value_a, value_b, view_target="default", request_id="seed"):
    return store.apply(WriteAttempt(
        subject=SUBJECT, asset=ASSET, view_target=view_target,
        new_value_a=value_a, new_value_b=value_b, request_id=request_id
    ))


# ============================================================================
# Convergence
# ============================================================================

def test_retry_converges_to_ledger(worker, queue, store, ledger, auditor, signal_generator):
    ledger.set(SUBJECT, ASSET, 1200, 450)
    job, _ = queue.enqueue(signal_generator())

    outcomes = worker.run_once()

    assert len(outcomes) == 1
    outcome = outcomes[0]
    assert outcome.status == JobStatus.SUCCEEDED
    assert outcome.apply_result.status == ApplyStatus.APPLIED

    entry = store.get_entry(SUBJECT, ASSET, "default")
    assert (entry.value_a, entry.value_b, entry.version) == (1200, 450, 1)
    assert entry.last_request_id == derive_retry_request_id(job.job_id, 1)

    actions = [r.action for r in auditor.history(job.job_id)]
    assert actions == [
        AuditAction.SIGNAL_RAISED,
        AuditAction.ENQUEUED,
        AuditAction.LEASED,
        AuditAction.APPLIED,
        AuditAction.SUCCEEDED,
    ]

    print("✓ Retry writes ledger values and audits each step")


def test_retry_uses_ledger_not_signal_values(worker, queue, store, ledger, signal_generator):
    ledger.set(SUBJECT, ASSET, 7, 3)
    queue.enqueue(signal_generator(value_a=999, value_b=999))

    worker.run_once()

    entry = store.get_entry(SUBJECT, ASSET, "default")
    assert (entry.value_a, entry.value_b) == (7, 3)

    print("✓ Retry re-reads the ledger")


def test_retry_advances_existing_entry(worker, queue, store, ledger, signal_generator):
    seed(store, 10, 1)
    ledger.set(SUBJECT, ASSET, 20, 2)
    queue.enqueue(signal_generator())

    outcome = worker.run_once()[0]

    assert outcome.status == JobStatus.SUCCEEDED
    assert outcome.current_version == 1
    assert store.get_entry(SUBJECT, ASSET).version == 2

    print("✓ Retry writes on top of the current version")


def test_cache_already_matches_ledger(worker, queue, store, ledger, auditor, signal_generator):
    seed(store, 50, 5)
    ledger.set(SUBJECT, ASSET, 50, 5)
    job, _ = queue.enqueue(signal_generator())

    outcome = worker.run_once()[0]

    assert outcome.status == JobStatus.SUCCEEDED
    assert outcome.apply_result is None
    assert store.get_entry(SUBJECT, ASSET).version == 1
    last = auditor.history(job.job_id)[-1]
    assert last.action == AuditAction.SUCCEEDED
    assert "already matches" in last.detail

    print("✓ Matching cache completes without a write")


# ============================================================================
# Failure Handling
# ============================================================================

def test_ledger_outage_backs_off_then_deadletters(worker, queue, ledger, clock, alerts, signal_generator):
    ledger.fail_always = True
    job, _ = queue.enqueue(signal_generator(source_ref="block123#log4"))

    delays = []
    for attempts in (1, 2, 3):
        outcome = worker.run_once()[0]
        assert outcome.status == JobStatus.PENDING
        assert "ledger read failed" in outcome.error

        current = queue.get(job.job_id)
        assert current.attempts == attempts
        delays.append((current.next_available_at - clock.now()).total_seconds())

        # Not due until the backoff elapses
        assert worker.run_once() == []
        clock.set(current.next_available_at)

    assert delays[0] < delays[1] < delays[2]

    final = worker.run_once()[0]
    assert final.status == JobStatus.DEADLETTER
    assert queue.get(job.job_id).attempts == 4
    alerts.deadletter.assert_called_once()

    print(f"✓ Backoff {delays}, dead-letter on the 4th failure")


def test_ledger_recovers_before_threshold(worker, queue, ledger, clock, signal_generator):
    ledger.fail_next = 2
    ledger.set(SUBJECT, ASSET, 5, 5)
    job, _ = queue.enqueue(signal_generator())

    for _ in range(2):
        worker.run_once()
        clock.set(queue.get(job.job_id).next_available_at)

    outcome = worker.run_once()[0]
    assert outcome.status == JobStatus.SUCCEEDED
    assert queue.get(job.job_id).attempts == 2

    print("✓ Job succeeds once the ledger comes back")


def test_invalid_write_deadletters_immediately(worker, queue, ledger, alerts, signal_generator):
    ledger.set(SUBJECT, ASSET, -1, 0)
    job, _ = queue.enqueue(signal_generator())

    outcome = worker.run_once()[0]

    assert outcome.status == JobStatus.DEADLETTER
    assert outcome.apply_result.status == ApplyStatus.INVALID
    assert queue.get(job.job_id).attempts == 1
    alerts.deadletter.assert_called_once()

    print("✓ Invalid write is a permanent failure")


def test_write_unavailable_is_retryable(worker, queue, store, ledger, signal_generator):
    ledger.set(SUBJECT, ASSET, 1, 1)
    job, _ = queue.enqueue(signal_generator())
    store.apply = Mock(side_effect=WriteUnavailableError("store down"))

    outcome = worker.run_once()[0]

    assert outcome.status == JobStatus.PENDING
    assert "write unavailable" in outcome.error
    assert queue.get(job.job_id).attempts == 1

    print("✓ Store outage consumes an attempt and backs off")


def test_lease_held_elsewhere_skips(worker, queue, leases, ledger, signal_generator):
    ledger.set(SUBJECT, ASSET, 1, 1)
    job, _ = queue.enqueue(signal_generator())
    leases.acquire((SUBJECT, ASSET, "default"), "other-worker")

    outcome = worker.run_once()[0]

    assert outcome.skipped
    assert outcome.skip_reason == "lease held by another worker"
    current = queue.get(job.job_id)
    assert current.status == JobStatus.PENDING
    assert current.attempts == 0

    print("✓ Contended key is skipped without using an attempt")


def test_lease_released_after_attempt(worker, queue, leases, ledger, signal_generator):
    ledger.fail_always = True
    queue.enqueue(signal_generator())

    worker.run_once()

    assert leases.holder_of((SUBJECT, ASSET, "default")) is None

    print("✓ Lease released even when the attempt fails")


def test_process_respects_backoff(worker, queue, ledger, clock, signal_generator):
    ledger.fail_always = True
    job, _ = queue.enqueue(signal_generator())
    worker.run_once()

    outcome = worker.process(job.job_id)
    assert outcome.skipped
    assert outcome.skip_reason == "backoff not elapsed"

    print("✓ Jobs are not retried before their backoff elapses")


def test_terminal_job_is_skipped(worker, queue, signal_generator):
    job, _ = queue.enqueue(signal_generator())
    queue.mark_ignored(job.job_id, "alice", "handled manually")

    outcome = worker.process(job.job_id)
    assert outcome.skipped
    assert outcome.status == JobStatus.IGNORED

    print("✓ Terminal jobs are never retried")


# ============================================================================
# View Target Resolution
# ============================================================================

def test_unresolved_view_consumes_attempt(worker, queue, ledger, signal_generator):
    ledger.set(SUBJECT, ASSET, 1, 1)
    job, _ = queue.enqueue(signal_generator(view_target="retired-view",
                                            reason_code=ReasonCode.VIEW_UNRESOLVED))

    outcome = worker.run_once()[0]

    assert outcome.status == JobStatus.PENDING
    assert "unresolved" in outcome.error
    assert queue.get(job.job_id).attempts == 1

    print("✓ Unresolvable view fails the attempt")


def test_unknown_view_falls_back_to_default(worker, queue, store, ledger, signal_generator):
    ledger.set(SUBJECT, ASSET, 9, 9)
    job, _ = queue.enqueue(signal_generator(view_target=UNKNOWN_VIEW_TARGET,
                                            reason_code=ReasonCode.VIEW_UNRESOLVED))

    outcome = worker.run_once()[0]

    assert outcome.status == JobStatus.SUCCEEDED
    assert store.get_entry(SUBJECT, ASSET, "default").value_a == 9
    assert queue.get(job.job_id).view_target == "default"

    print("✓ Unknown view re-resolves to the default view")


def test_view_address_maps_to_logical_name(worker, queue, store, ledger, signal_generator):
    ledger.set(SUBJECT, ASSET, 4, 2)
    job, _ = queue.enqueue(signal_generator(view_target=POSITIONS_VIEW_ADDRESS))

    worker.run_once()

    assert store.get_entry(SUBJECT, ASSET, "positions").value_a == 4
    assert queue.get(job.job_id).view_target == "positions"

    print("✓ On-chain view address maps to its logical view")


# ============================================================================
# Operator Retry
# ============================================================================

def test_force_retry_ignores_backoff(worker, queue, ledger, signal_generator):
    ledger.fail_next = 1
    ledger.set(SUBJECT, ASSET, 3, 3)
    job, _ = queue.enqueue(signal_generator())
    worker.run_once()

    outcome = worker.force_retry(job.job_id)

    assert outcome.status == JobStatus.SUCCEEDED

    print("✓ Force retry runs immediately")


def test_force_retry_requires_pending(worker, queue, signal_generator):
    job, _ = queue.enqueue(signal_generator())
    queue.mark_ignored(job.job_id, "alice", None)

    with pytest.raises(InvalidJobTransitionError):
        worker.force_retry(job.job_id)

    print("✓ Force retry refuses non-pending jobs")


def test_dry_run_previews_without_writing(worker, queue, store, ledger, auditor, signal_generator):
    seed(store, 10, 1)
    ledger.set(SUBJECT, ASSET, 11, 2)
    job, _ = queue.enqueue(signal_generator())
    audits_before = len(auditor.query())

    outcome = worker.force_retry(job.job_id, dry_run=True)

    assert outcome.dry_run
    assert outcome.current_version == 1
    assert outcome.preview.expected_next_version == 2
    assert (outcome.preview.new_value_a, outcome.preview.new_value_b) == (11, 2)
    assert outcome.preview.request_id == derive_retry_request_id(job.job_id, 1)

    assert store.get_entry(SUBJECT, ASSET).version == 1
    current = queue.get(job.job_id)
    assert current.status == JobStatus.PENDING
    assert current.attempts == 0
    assert len(auditor.query()) == audits_before

    print("✓ Dry-run shows the write and changes nothing")


# ============================================================================
# Worker Pool
# ============================================================================

async def test_pool_drains_queue(queue, store, leases, ledger, resolver, retry_config,
                                 cache_config, clock, signal_generator):
    subjects = [f"0x{i:040x}" for i in range(1, 7)]
    for i, subject in enumerate(subjects):
        ledger.set(subject, ASSET, 100 + i, i)
        queue.enqueue(signal_generator(source_ref=f"block200#log{i}", subject=subject))

    workers = [
        RetryWorker(f"worker-{n}", queue, store, leases, ledger, resolver,
                    retry_config, cache_config, clock)
        for n in range(3)
    ]
    pool = RetryWorkerPool(workers, queue, retry_config)
    await pool.start()
    assert pool.is_running

    for _ in range(500):
        if queue.queue_depth()['succeeded'] == len(subjects):
            break
        await asyncio.sleep(0.01)

    await pool.stop()
    assert not pool.is_running

    assert queue.queue_depth()['succeeded'] == len(subjects)
    for i, subject in enumerate(subjects):
        entry = store.get_entry(subject, ASSET)
        assert (entry.value_a, entry.version) == (100 + i, 1)

    print(f"✓ Pool of {len(workers)} drained {len(subjects)} jobs in {pool.cycles} cycles")


# ============================================================================
# Registry Resolution
# ============================================================================

REGISTRY = "0x5555555555555555555555555555555555555555"
DEFAULT_VIEW_ADDRESS = "0x3333333333333333333333333333333333333333"
UNMAPPED_VIEW_ADDRESS = "0x6666666666666666666666666666666666666666"


def registry_resolver(clock, modules=None, ttl=300):
    """RegistryViewTargetResolver over a mocked getModule(bytes32)"""
    modules = modules or {"DEFAULT_VIEW": DEFAULT_VIEW_ADDRESS,
                          "POSITION_VIEW": POSITIONS_VIEW_ADDRESS}
    by_hash = {module_key_hash(key): address for key, address in modules.items()}

    w3 = Mock()
    get_module = w3.eth.contract.return_value.functions.getModule
    get_module.side_effect = lambda key: Mock(call=Mock(return_value=by_hash[key]))

    contracts = ContractsConfig(
        registry=REGISTRY,
        view_module_keys={"default": "DEFAULT_VIEW", "positions": "POSITION_VIEW"},
        module_cache_ttl_seconds=ttl
    )
    return RegistryViewTargetResolver(w3, contracts, clock=clock), get_module


def test_registry_lookups_cached_until_ttl(clock):
    resolver, get_module = registry_resolver(clock, ttl=60)

    assert resolver.resolve("positions") == POSITIONS_VIEW_ADDRESS
    assert resolver.resolve("positions") == POSITIONS_VIEW_ADDRESS
    assert get_module.call_count == 1

    clock.advance(61)
    resolver.resolve("positions")
    assert get_module.call_count == 2

    resolver.refresh()
    resolver.resolve("positions")
    assert get_module.call_count == 3

    print("✓ Registry lookups cached for the TTL, cleared by refresh")


def test_registry_zero_address_is_unresolved(clock):
    resolver, _ = registry_resolver(clock, modules={
        "DEFAULT_VIEW": DEFAULT_VIEW_ADDRESS,
        "POSITION_VIEW": UNKNOWN_VIEW_TARGET,
    })

    assert resolver.resolve("positions") is None
    assert resolver.resolve(UNKNOWN_VIEW_TARGET) is None
    assert resolver.resolve("retired-view") is None
    # Addresses outside the registry's views are taken as given
    assert resolver.resolve(UNMAPPED_VIEW_ADDRESS) == UNMAPPED_VIEW_ADDRESS

    print("✓ Zero-address modules are unresolved")


def test_registry_name_for_queries_uncached_views(clock):
    resolver, get_module = registry_resolver(clock)

    assert resolver.name_for(POSITIONS_VIEW_ADDRESS) == "positions"
    assert get_module.call_count == 2
    assert resolver.name_for(UNMAPPED_VIEW_ADDRESS) is None

    print("✓ name_for resolves every registry view before answering")


def test_address_job_repairs_logical_row_via_registry(queue, store, leases, ledger, retry_config,
                                                      cache_config, clock, signal_generator):
    resolver, _ = registry_resolver(clock)
    worker = RetryWorker("worker-1", queue, store, leases, ledger, resolver,
                         retry_config, cache_config, clock)
    seed(store, 1, 1, view_target="positions")
    ledger.set(SUBJECT, ASSET, 4, 2)
    job, _ = queue.enqueue(signal_generator(view_target=POSITIONS_VIEW_ADDRESS))

    outcome = worker.run_once()[0]

    assert outcome.status == JobStatus.SUCCEEDED
    entry = store.get_entry(SUBJECT, ASSET, "positions")
    assert (entry.value_a, entry.value_b, entry.version) == (4, 2, 2)
    assert store.get_entry(SUBJECT, ASSET, POSITIONS_VIEW_ADDRESS) is None
    assert queue.get(job.job_id).view_target == "positions"

    print("✓ Registry-resolved address job repairs the logical row")


def test_unmapped_view_address_fails_attempt(worker, queue, store, ledger, signal_generator):
    ledger.set(SUBJECT, ASSET, 4, 2)
    job, _ = queue.enqueue(signal_generator(view_target=UNMAPPED_VIEW_ADDRESS))

    outcome = worker.run_once()[0]

    assert outcome.status == JobStatus.PENDING
    assert "unresolved" in outcome.error
    assert queue.get(job.job_id).attempts == 1
    assert store.get_entry(SUBJECT, ASSET, UNMAPPED_VIEW_ADDRESS) is None
    assert ledger.reads == 0

    print("✓ Address without a logical view is never written")


# ============================================================================
# Unexpected Errors
# ============================================================================

def test_unexpected_ledger_error_backs_off_then_deadletters(worker, queue, clock, alerts,
                                                             signal_generator):
    worker.ledger = Mock()
    worker.ledger.read_balances.side_effect = ConnectionError("socket closed")
    job, _ = queue.enqueue(signal_generator())

    for attempts in (1, 2, 3):
        outcome = worker.run_once()[0]
        assert outcome.status == JobStatus.PENDING
        assert "ConnectionError" in outcome.error

        current = queue.get(job.job_id)
        assert current.attempts == attempts
        assert current.next_available_at > clock.now()
        clock.set(current.next_available_at)

    final = worker.run_once()[0]
    assert final.status == JobStatus.DEADLETTER
    assert queue.get(job.job_id).attempts == 4
    assert queue.recover_expired() == 0
    alerts.deadletter.assert_called_once()

    print("✓ Unexpected errors count attempts and dead-letter")


# ============================================================================
# Concurrent Workers
# ============================================================================

def test_racing_workers_retry_job_once(queue, store, ledger, resolver, auditor, retry_config,
                                       cache_config, clock, signal_generator):
    ledger.set(SUBJECT, ASSET, 60, 6)
    job, _ = queue.enqueue(signal_generator())

    # Separate in-memory lease stores, as when each process has lost Redis
    workers = [
        RetryWorker(
            f"worker-{n}", queue, store,
            LeaseCoordinator(RedisManager(RedisConfig(enabled=False), clock=clock), clock=clock),
            ledger, resolver, retry_config, cache_config, clock
        )
        for n in ("a", "b")
    ]
    barrier = threading.Barrier(len(workers))
    outcomes = []
    lock = threading.Lock()

    def run(w):
        barrier.wait()
        outcome = w.process(job.job_id)
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=run, args=(w,)) for w in workers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(o.skipped for o in outcomes) == [False, True]
    winner = next(o for o in outcomes if not o.skipped)
    assert winner.status == JobStatus.SUCCEEDED
    assert ledger.reads == 1
    assert store.get_entry(SUBJECT, ASSET).version == 1
    leased = [r for r in auditor.history(job.job_id) if r.action == AuditAction.LEASED]
    assert len(leased) == 1

    print("✓ Two racing workers: one retries, the other skips")
