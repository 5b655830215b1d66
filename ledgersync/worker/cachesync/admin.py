"""
Operator surface

Everything an operator can do to the retry subsystem and the cache. The
command line in main.py and the /health endpoint both go through here.
"""

import logging
from typing import Optional, List, Dict, Any, Tuple

from .types import (
    FailureSignal, RetryJob, RetryOutcome, JobStatus, ApplyResult,
    CachedPosition, AuditRecord, ConfigurationError
)
from .cache_store import VersionedCacheStore
from .retry_queue import RetryQueue
from .retry_worker import RetryWorker
from .auditor import ReconciliationAuditor
from .database import DatabaseManager, RedisManager
from .resolver import ViewTargetResolver

logger = logging.getLogger(__name__)


class AdminService:
    """Operator commands over the queue, worker, store and auditor"""

    def __init__(
        self,
        queue: RetryQueue,
        worker: RetryWorker,
        store: VersionedCacheStore,
        auditor: ReconciliationAuditor,
        ledger=None,
        resolver: Optional[ViewTargetResolver] = None,
        db_manager: Optional[DatabaseManager] = None,
        redis_manager: Optional[RedisManager] = None
    ):
        self.queue = queue
        self.worker = worker
        self.store = store
        self.auditor = auditor
        self.ledger = ledger
        self.resolver = resolver
        self.db_manager = db_manager
        self.redis_manager = redis_manager

    # ========================================================================
    # Retry Jobs
    # ========================================================================

    def enqueue_from_signal(self, signal: FailureSignal, operator: str) -> Tuple[RetryJob, bool]:
        """Manually enqueue a signal, e.g. one recovered from logs"""
        job, created = self.queue.enqueue(signal, actor=operator)
        logger.info(f"Operator {operator} enqueued signal {signal.source_ref} -> {job.job_id} (new={created})")
        return job, created

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        subject: Optional[str] = None,
        asset: Optional[str] = None,
        view_target: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[RetryJob]:
        return self.queue.list_jobs(status=status, subject=subject, asset=asset,
                                    view_target=view_target, limit=limit)

    def get_job(self, job_id: str) -> RetryJob:
        return self.queue.get(job_id)

    def job_history(self, job_id: str) -> List[AuditRecord]:
        return self.auditor.history(job_id)

    def force_retry(self, job_id: str, dry_run: bool = False, operator: str = "operator") -> RetryOutcome:
        logger.info(f"Operator {operator} forced retry of {job_id} (dry_run={dry_run})")
        return self.worker.force_retry(job_id, dry_run=dry_run)

    def mark_ignored(self, job_id: str, note: Optional[str], operator: str) -> RetryJob:
        job = self.queue.mark_ignored(job_id, operator, note)
        logger.warning(f"Operator {operator} ignored job {job_id}: {note}")
        return job

    def replay_deadletter(self, job_id: str, operator: str) -> RetryJob:
        job = self.queue.replay_deadletter(job_id, operator)
        logger.warning(f"Operator {operator} replayed dead-lettered job {job_id}")
        return job

    # ========================================================================
    # Cache
    # ========================================================================

    def read_cache(self, subject: str, asset: str,
                   view_target: Optional[str] = None) -> Optional[CachedPosition]:
        return self.store.read_cache(subject, asset, view_target)

    def read_with_fallback(self, subject: str, asset: str,
                           view_target: Optional[str] = None) -> CachedPosition:
        self._require_ledger()
        return self.store.read_with_fallback(subject, asset, self.ledger, view_target)

    def sync_from_ledger(self, subject: str, asset: str, operator: str,
                         view_target: Optional[str] = None) -> ApplyResult:
        self._require_ledger()
        return self.store.sync_from_ledger(subject, asset, self.ledger, operator, view_target)

    def refresh_view_targets(self):
        if self.resolver is not None:
            self.resolver.refresh()

    # ========================================================================
    # Health
    # ========================================================================

    def health(self) -> Dict[str, Any]:
        """Service health snapshot; status is 'ok' or 'degraded'"""
        snapshot: Dict[str, Any] = {'status': 'ok'}

        if self.db_manager is not None:
            db_ok = self.db_manager.health_check()
            snapshot['database'] = 'ok' if db_ok else 'down'
            if not db_ok:
                snapshot['status'] = 'degraded'
                return snapshot

        if self.redis_manager is not None:
            if self.redis_manager.health_check():
                snapshot['redis'] = 'ok'
            else:
                snapshot['redis'] = 'fallback'

        snapshot['reconciliation'] = self.auditor.health_metrics().to_dict()
        snapshot['cache'] = self.store.get_cache_stats()
        return snapshot

    def _require_ledger(self):
        if self.ledger is None:
            raise ConfigurationError("No ledger reader configured")
