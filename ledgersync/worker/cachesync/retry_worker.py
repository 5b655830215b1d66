"""
RetryWorker Module - Drives retry jobs to completion

Per job: check it is due, take the per-key lease, re-read the ledger, write
a fresh versioned attempt and map the outcome onto the job state machine.
The lease is always released and every step is audited. A failure in one job
never affects another.
"""

import asyncio
import logging
import time
from typing import Optional, List

from .types import (
    RetryJob, RetryOutcome, WriteAttempt, CacheEntry, JobStatus, ApplyStatus,
    CacheSyncError, LedgerReadError, InvalidJobTransitionError, UNKNOWN_VIEW_TARGET
)
from .config import RetryConfig, CacheConfig
from .cache_store import VersionedCacheStore
from .retry_queue import RetryQueue
from .lease import LeaseCoordinator
from .resolver import ViewTargetResolver, ADDRESS_RE
from .idempotency import derive_retry_request_id
from .clock import Clock, SystemClock
from .metrics_server import MetricsServer

logger = logging.getLogger(__name__)


class RetryWorker:
    """Single retry worker; safe to run many side by side"""

    def __init__(
        self,
        worker_id: str,
        queue: RetryQueue,
        store: VersionedCacheStore,
        leases: LeaseCoordinator,
        ledger,
        resolver: ViewTargetResolver,
        config: Optional[RetryConfig] = None,
        cache_config: Optional[CacheConfig] = None,
        clock: Optional[Clock] = None
    ):
        self.worker_id = worker_id
        self.queue = queue
        self.store = store
        self.leases = leases
        self.ledger = ledger
        self.resolver = resolver
        self.config = config or RetryConfig()
        self.cache_config = cache_config or CacheConfig()
        self.clock = clock or SystemClock()

    # ========================================================================
    # Entry Points
    # ========================================================================

    def run_once(self, limit: Optional[int] = None) -> List[RetryOutcome]:
        """Process every due job once"""
        outcomes = []
        for job in self.queue.due_jobs(limit or self.config.batch_size):
            outcomes.append(self.process(job.job_id))
        return outcomes

    def process(self, job_id: str, force: bool = False) -> RetryOutcome:
        """Process one job; never raises"""
        try:
            return self._process(job_id, force)
        except Exception as e:
            logger.error(f"Worker {self.worker_id} failed on job {job_id}: {e}", exc_info=True)
            return RetryOutcome(job_id=job_id, status=JobStatus.PENDING, error=str(e))

    def force_retry(self, job_id: str, dry_run: bool = False) -> RetryOutcome:
        """
        Operator retry, ignoring backoff.

        Dry-run returns the attempt that would be written and the current
        cache version without taking a lease or writing.

        Raises:
            JobNotFoundError: Unknown job id
            InvalidJobTransitionError: Job is not pending
        """
        job = self.queue.get(job_id)
        if job.status != JobStatus.PENDING:
            raise InvalidJobTransitionError(job_id, job.status, JobStatus.LEASED)

        if dry_run:
            return self._preview(job)

        return self._process(job_id, force=True)

    # ========================================================================
    # Job Processing
    # ========================================================================

    def _process(self, job_id: str, force: bool) -> RetryOutcome:
        job = self.queue.get(job_id)

        if job.status != JobStatus.PENDING:
            return self._skipped(job, f"job is {job.status.value}")
        if not force and job.next_available_at > self.clock.now():
            return self._skipped(job, "backoff not elapsed")

        view_target = self._resolve_view(job)
        key = (job.subject, job.asset, view_target or job.view_target)

        lease = self.leases.acquire(key, self.worker_id, self.config.lease_ttl_seconds)
        if lease is None:
            return self._skipped(job, "lease held by another worker")

        started = time.monotonic()
        try:
            try:
                self.queue.mark_leased(job_id, self.worker_id, lease.expires_at)
            except InvalidJobTransitionError as e:
                # Another worker finished the job between our read and the lease
                return self._skipped(job, str(e))

            self.queue.mark_retrying(job_id, self.worker_id)
            try:
                return self._attempt(job, view_target)
            except Exception as e:
                # Anything unexpected still counts an attempt and backs off
                logger.error(f"Job {job_id} attempt raised: {e}", exc_info=True)
                return self._fail(job, f"unexpected error: {type(e).__name__}: {e}")
        finally:
            self.leases.release(lease)
            MetricsServer.observe_retry_latency(time.monotonic() - started)

    def _attempt(self, job: RetryJob, view_target: Optional[str]) -> RetryOutcome:
        if view_target is None:
            return self._fail(job, f"view target for {job.view_target} still unresolved")
        if view_target != job.view_target:
            self.queue.update_view_target(job.job_id, view_target)

        try:
            value_a, value_b = self._read_ledger(job)
        except LedgerReadError as e:
            return self._fail(job, f"ledger read failed: {e}")

        try:
            current = self.store.get_entry(job.subject, job.asset, view_target)
            if current is not None and (current.value_a, current.value_b) == (value_a, value_b):
                done = self.queue.complete_success(
                    job.job_id, self.worker_id,
                    detail=f"cache already matches ledger at version {current.version}"
                )
                return RetryOutcome(job_id=job.job_id, status=done.status,
                                    current_version=current.version)

            attempt = self._build_attempt(job, view_target, value_a, value_b, current)
            result = self.store.apply(attempt, actor=self.worker_id, job_id=job.job_id)
        except CacheSyncError as e:
            return self._fail(job, f"write unavailable: {e}")

        if result.converged:
            done = self.queue.complete_success(
                job.job_id, self.worker_id, detail=f"{result.status.value} at version {result.version}"
            )
        elif result.status == ApplyStatus.INVALID:
            done = self.queue.complete_failure(
                job.job_id, self.worker_id, f"invalid write: {result.reason}", permanent=True
            )
        else:
            done = self.queue.complete_failure(
                job.job_id, self.worker_id, f"{result.status.value}: {result.reason}"
            )

        logger.info(f"Job {job.job_id} -> {done.status.value} ({result.status.value})")
        return RetryOutcome(job_id=job.job_id, status=done.status, apply_result=result,
                            current_version=attempt.expected_next_version - 1)

    def _build_attempt(self, job: RetryJob, view_target: str, value_a: int,
                       value_b: int, entry: Optional[CacheEntry]) -> WriteAttempt:
        current_version = entry.version if entry is not None else 0
        return WriteAttempt(
            subject=job.subject,
            asset=job.asset,
            view_target=view_target,
            new_value_a=value_a,
            new_value_b=value_b,
            expected_next_version=current_version + 1,
            request_id=derive_retry_request_id(job.job_id, job.attempts + 1),
            source_ref=job.source_ref
        )

    def _preview(self, job: RetryJob) -> RetryOutcome:
        view_target = self._resolve_view(job)
        if view_target is None:
            return RetryOutcome(job_id=job.job_id, status=job.status, dry_run=True,
                                error=f"view target for {job.view_target} unresolved")
        try:
            value_a, value_b = self._read_ledger(job)
        except LedgerReadError as e:
            return RetryOutcome(job_id=job.job_id, status=job.status, dry_run=True, error=str(e))

        entry = self.store.get_entry(job.subject, job.asset, view_target)
        attempt = self._build_attempt(job, view_target, value_a, value_b, entry)
        return RetryOutcome(job_id=job.job_id, status=job.status, dry_run=True,
                            preview=attempt, current_version=attempt.expected_next_version - 1)

    # ========================================================================
    # Helpers
    # ========================================================================

    def _resolve_view(self, job: RetryJob) -> Optional[str]:
        """
        Logical view to write; unknown targets fall back to the default view.

        On-chain signals carry the view contract address, which maps back to
        the logical name the cache is keyed by. An address with no logical
        name is unresolved: writing under the address would key a row no
        reader serves.
        """
        view = job.view_target
        try:
            if view == UNKNOWN_VIEW_TARGET:
                view = self.cache_config.default_view_target
            elif ADDRESS_RE.match(view):
                name = self.resolver.name_for(view)
                if name is None:
                    logger.warning(f"View address {view} has no logical name")
                    return None
                view = name
            resolved = self.resolver.resolve(view)
        except Exception as e:
            logger.warning(f"View resolution for {view} failed: {e}")
            resolved = None
        return view if resolved is not None else None

    def _read_ledger(self, job: RetryJob):
        if self.ledger is None:
            raise LedgerReadError("no ledger reader configured")
        return self.ledger.read_balances(job.subject, job.asset)

    def _fail(self, job: RetryJob, error: str) -> RetryOutcome:
        done = self.queue.complete_failure(job.job_id, self.worker_id, error)
        logger.warning(f"Job {job.job_id} attempt failed -> {done.status.value}: {error}")
        return RetryOutcome(job_id=job.job_id, status=done.status, error=error)

    def _skipped(self, job: RetryJob, reason: str) -> RetryOutcome:
        logger.debug(f"Worker {self.worker_id} skipped job {job.job_id}: {reason}")
        return RetryOutcome(job_id=job.job_id, status=job.status, skipped=True, skip_reason=reason)


class RetryWorkerPool:
    """
    N independent workers on the asyncio loop.

    Each worker cycle runs in a thread so database and RPC calls never block
    the loop. A separate task returns jobs with expired leases to pending.
    """

    def __init__(self, workers: List[RetryWorker], queue: RetryQueue,
                 config: Optional[RetryConfig] = None):
        self.workers = workers
        self.queue = queue
        self.config = config or RetryConfig()
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self.cycles = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start worker and recovery tasks"""
        self._running = True
        for worker in self.workers:
            self._tasks.append(asyncio.create_task(self._run_worker(worker)))
        self._tasks.append(asyncio.create_task(self._recovery_loop()))
        logger.info(f"RetryWorkerPool started with {len(self.workers)} workers")

    async def stop(self, timeout: float = 10.0):
        """Let in-flight cycles finish, then cancel what is left"""
        self._running = False
        if not self._tasks:
            return

        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("RetryWorkerPool stopped")

    async def _run_worker(self, worker: RetryWorker):
        while self._running:
            try:
                outcomes = await asyncio.to_thread(worker.run_once)
            except Exception as e:
                logger.error(f"Worker {worker.worker_id} cycle failed: {e}", exc_info=True)
                outcomes = []

            self.cycles += 1
            if not any(not o.skipped for o in outcomes):
                await asyncio.sleep(self.config.poll_interval_seconds)

    async def _recovery_loop(self):
        while self._running:
            try:
                await asyncio.to_thread(self.queue.recover_expired)
            except Exception as e:
                logger.error(f"Lease recovery failed: {e}", exc_info=True)
            await asyncio.sleep(self.config.recovery_interval_seconds)
