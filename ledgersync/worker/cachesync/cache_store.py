"""
VersionedCacheStore Module - Versioned, idempotent position cache

Holds the latest (value_a, value_b) and version for each
(subject, asset, view_target) and decides whether a write attempt is applied
or rejected. Each decision is a single-row compare-and-set; a lost race is
re-evaluated against the fresh row.
"""

import logging
from typing import Optional, List, Callable, Dict, Any
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from .types import (
    WriteAttempt, ApplyResult, ApplyStatus, CacheEntry, CachedPosition,
    CacheEvent, CacheSyncError, WriteUnavailableError, ACTIVE_JOB_STATUSES,
    UNKNOWN_VIEW_TARGET
)
from .config import CacheConfig
from .database import DatabaseManager, CacheEntryModel, RetryJobModel
from .idempotency import IdempotencyLedger, derive_sync_request_id
from .auditor import ReconciliationAuditor
from .clock import Clock, SystemClock
from .metrics_server import MetricsServer

logger = logging.getLogger(__name__)


# Compare-and-set retries before the store is considered unavailable
MAX_CAS_ROUNDS = 16


class _VersionConflict(CacheSyncError):
    """Row changed between read and conditional update"""
    pass


def _snapshot(entry: Optional[CacheEntryModel]) -> Optional[Dict[str, Any]]:
    if entry is None:
        return None
    return {
        'version': entry.version,
        'value_a': int(entry.value_a),
        'value_b': int(entry.value_b),
        'last_request_id': entry.last_request_id,
        'last_sequence': entry.last_sequence,
    }


def validate_attempt(attempt: WriteAttempt) -> Optional[str]:
    """Reason the attempt is malformed, or None"""
    if not attempt.subject:
        return "empty subject"
    if not attempt.asset:
        return "empty asset"
    if not attempt.view_target:
        return "empty view_target"
    if attempt.new_value_a < 0 or attempt.new_value_b < 0:
        return "negative value"
    if attempt.sequence is not None and attempt.sequence < 0:
        return "negative sequence"
    return None


class VersionedCacheStore:
    """
    Per-key latest value with strict version monotonicity.

    Decision order for apply():
    1. request_id equals the last accepted one -> DUPLICATE
    2. expected_next_version set and not version + 1 -> STALE_VERSION
    3. strict sequencing on and sequence not above the last one -> OUT_OF_ORDER
    4. otherwise -> APPLIED, version + 1
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        auditor: ReconciliationAuditor,
        config: Optional[CacheConfig] = None,
        clock: Optional[Clock] = None
    ):
        self.db_manager = db_manager
        self.auditor = auditor
        self.config = config or CacheConfig()
        self.clock = clock or SystemClock()
        self.idempotency = IdempotencyLedger(db_manager)
        self._listeners: List[Callable[[CacheEvent], None]] = []

        logger.info(
            f"VersionedCacheStore initialized (strict_sequence={self.config.strict_sequence}, "
            f"validity={self.config.cache_duration_seconds}s)"
        )

    @property
    def cache_duration(self) -> timedelta:
        return timedelta(seconds=self.config.cache_duration_seconds)

    def add_listener(self, callback: Callable[[CacheEvent], None]):
        """Register a callback for every cached/rejected outcome"""
        self._listeners.append(callback)

    # ========================================================================
    # Write Path
    # ========================================================================

    def apply(
        self,
        attempt: WriteAttempt,
        actor: str = "writer",
        job_id: Optional[str] = None
    ) -> ApplyResult:
        """
        Apply or reject a write attempt.

        Args:
            attempt: Write to evaluate
            actor: Recorded in the audit log
            job_id: Retry job the attempt belongs to, if any

        Returns:
            ApplyResult; never raises for rejections

        Raises:
            DatabaseError: Store unreachable
            WriteUnavailableError: Compare-and-set kept losing races
        """
        for _ in range(MAX_CAS_ROUNDS):
            try:
                with self.db_manager.get_session() as session:
                    result = self._decide_and_write(session, attempt, actor, job_id)
            except (_VersionConflict, IntegrityError):
                logger.debug(f"CAS conflict on {attempt.key}, re-evaluating")
                continue

            self._publish(attempt, result)
            return result

        raise WriteUnavailableError(
            f"Compare-and-set on {attempt.key} did not settle after {MAX_CAS_ROUNDS} rounds"
        )

    def _decide_and_write(self, session, attempt: WriteAttempt, actor: str,
                          job_id: Optional[str]) -> ApplyResult:
        entry = session.get(CacheEntryModel, attempt.key)
        current_version = entry.version if entry is not None else 0
        before = _snapshot(entry)

        invalid_reason = validate_attempt(attempt)
        if invalid_reason:
            result = ApplyResult(
                status=ApplyStatus.INVALID, version=current_version,
                previous_version=current_version, reason=invalid_reason
            )
        elif self.idempotency.seen(attempt.key, attempt.request_id, session=session):
            result = ApplyResult(
                status=ApplyStatus.DUPLICATE, version=current_version,
                previous_version=current_version,
                reason=f"request {attempt.request_id} already applied"
            )
        elif attempt.expected_next_version != 0 and attempt.expected_next_version != current_version + 1:
            result = ApplyResult(
                status=ApplyStatus.STALE_VERSION, version=current_version,
                previous_version=current_version,
                reason=f"expected next version {attempt.expected_next_version}, current {current_version}"
            )
        elif self._out_of_order(entry, attempt):
            result = ApplyResult(
                status=ApplyStatus.OUT_OF_ORDER, version=current_version,
                previous_version=current_version,
                reason=f"sequence {attempt.sequence} not above {entry.last_sequence}"
            )
        else:
            self._write(session, entry, attempt, current_version)
            result = ApplyResult(
                status=ApplyStatus.APPLIED, version=current_version + 1,
                previous_version=current_version
            )

        self.auditor.record_decision(
            attempt, result, actor, before=before, job_id=job_id, session=session
        )
        return result

    def _out_of_order(self, entry: Optional[CacheEntryModel], attempt: WriteAttempt) -> bool:
        if not self.config.strict_sequence or attempt.sequence is None:
            return False
        if entry is None or entry.last_sequence is None:
            return False
        return attempt.sequence <= entry.last_sequence

    def _write(self, session, entry: Optional[CacheEntryModel], attempt: WriteAttempt,
               observed_version: int):
        now = self.clock.now()
        sequence = attempt.sequence
        if sequence is None and entry is not None:
            sequence = entry.last_sequence

        if entry is None:
            session.add(CacheEntryModel(
                subject=attempt.subject,
                asset=attempt.asset,
                view_target=attempt.view_target,
                value_a=attempt.new_value_a,
                value_b=attempt.new_value_b,
                version=1,
                last_request_id=attempt.request_id or None,
                last_sequence=sequence,
                source_ref=attempt.source_ref or None,
                updated_at=now
            ))
            # Concurrent first writes collide on the primary key here
            session.flush()
            return

        updated = (
            session.query(CacheEntryModel)
            .filter(
                CacheEntryModel.subject == attempt.subject,
                CacheEntryModel.asset == attempt.asset,
                CacheEntryModel.view_target == attempt.view_target,
                CacheEntryModel.version == observed_version
            )
            .update({
                CacheEntryModel.value_a: attempt.new_value_a,
                CacheEntryModel.value_b: attempt.new_value_b,
                CacheEntryModel.version: observed_version + 1,
                CacheEntryModel.last_request_id: attempt.request_id or None,
                CacheEntryModel.last_sequence: sequence,
                CacheEntryModel.source_ref: attempt.source_ref or None,
                CacheEntryModel.updated_at: now,
            }, synchronize_session=False)
        )
        if updated != 1:
            raise _VersionConflict(f"{attempt.key} moved past version {observed_version}")

    def _publish(self, attempt: WriteAttempt, result: ApplyResult):
        MetricsServer.record_apply(result.status.value)

        if result.applied:
            logger.info(f"Cached {attempt.key} at version {result.version}")
        elif result.status == ApplyStatus.INVALID:
            logger.warning(f"Invalid write for {attempt.key}: {result.reason}")
        else:
            logger.info(f"Rejected write for {attempt.key}: {result.status.value} ({result.reason})")

        event = CacheEvent(
            kind='cached' if result.applied else 'rejected',
            attempt=attempt,
            result=result,
            timestamp=self.clock.now()
        )
        for callback in self._listeners:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Cache event listener failed: {e}", exc_info=True)

    # ========================================================================
    # Read Path
    # ========================================================================

    def get_entry(self, subject: str, asset: str,
                  view_target: Optional[str] = None) -> Optional[CacheEntry]:
        """Raw cache row, or None if never written"""
        key = (subject, asset, view_target or self.config.default_view_target)
        with self.db_manager.get_session() as session:
            entry = session.get(CacheEntryModel, key)
            if entry is None:
                return None
            return self._model_to_entry(entry)

    def read_cache(self, subject: str, asset: str,
                   view_target: Optional[str] = None) -> Optional[CachedPosition]:
        """
        Latest local value with its staleness indicator.

        Returns:
            CachedPosition, or None for keys never written
        """
        view_target = view_target or self.config.default_view_target
        with self.db_manager.get_session() as session:
            entry = session.get(CacheEntryModel, (subject, asset, view_target))
            if entry is None:
                return None
            pending = self._has_open_job(session, subject, asset, view_target)
            entry = self._model_to_entry(entry)

        return CachedPosition(
            subject=subject,
            asset=asset,
            view_target=view_target,
            value_a=entry.value_a,
            value_b=entry.value_b,
            last_confirmed_version=entry.version,
            updated_at=entry.updated_at,
            is_fresh=self._is_fresh(entry),
            pending_correction=pending,
            is_valid=True
        )

    def read_with_fallback(self, subject: str, asset: str, ledger,
                           view_target: Optional[str] = None) -> CachedPosition:
        """
        Cached values when fresh, otherwise the ledger's values flagged invalid.

        Raises:
            LedgerReadError: Cache stale or missing and the ledger is unreachable
        """
        view_target = view_target or self.config.default_view_target
        cached = self.read_cache(subject, asset, view_target)
        if cached is not None and cached.is_fresh:
            return cached

        value_a, value_b = ledger.read_balances(subject, asset)
        if cached is None:
            with self.db_manager.get_session() as session:
                pending = self._has_open_job(session, subject, asset, view_target)
        else:
            pending = cached.pending_correction

        return CachedPosition(
            subject=subject,
            asset=asset,
            view_target=view_target,
            value_a=value_a,
            value_b=value_b,
            last_confirmed_version=cached.last_confirmed_version if cached else 0,
            updated_at=cached.updated_at if cached else None,
            is_fresh=False,
            pending_correction=pending,
            is_valid=False
        )

    def sync_from_ledger(self, subject: str, asset: str, ledger, actor: str,
                         view_target: Optional[str] = None) -> ApplyResult:
        """
        Operator resync: re-read the ledger and write it on top of the
        current version.

        Raises:
            LedgerReadError: Ledger unreachable
        """
        view_target = view_target or self.config.default_view_target
        value_a, value_b = ledger.read_balances(subject, asset)

        result = None
        for _ in range(MAX_CAS_ROUNDS):
            entry = self.get_entry(subject, asset, view_target)
            version = entry.version if entry is not None else 0
            attempt = WriteAttempt(
                subject=subject,
                asset=asset,
                view_target=view_target,
                new_value_a=value_a,
                new_value_b=value_b,
                expected_next_version=version + 1,
                request_id=derive_sync_request_id(subject, asset, view_target, version),
                source_ref="manual-sync"
            )
            result = self.apply(attempt, actor=actor)
            if result.status != ApplyStatus.STALE_VERSION:
                break

        logger.info(f"Manual sync of {(subject, asset, view_target)} by {actor}: {result.status.value}")
        return result

    def get_cache_stats(self) -> Dict[str, int]:
        """Total entries, entries inside the validity window, window length"""
        cutoff = self.clock.now() - self.cache_duration
        with self.db_manager.get_session() as session:
            total = session.query(CacheEntryModel).count()
            fresh = (
                session.query(CacheEntryModel)
                .filter(CacheEntryModel.updated_at > cutoff)
                .count()
            )

        return {
            'total_entries': total,
            'fresh_entries': fresh,
            'cache_duration_seconds': self.config.cache_duration_seconds
        }

    # ========================================================================
    # Helpers
    # ========================================================================

    def _is_fresh(self, entry: CacheEntry) -> bool:
        # Age equal to the window counts as expired
        return self.clock.now() - entry.updated_at < self.cache_duration

    def _has_open_job(self, session, subject: str, asset: str, view_target: str) -> bool:
        return (
            session.query(RetryJobModel.job_id)
            .filter(
                RetryJobModel.subject == subject,
                RetryJobModel.asset == asset,
                RetryJobModel.view_target.in_([view_target, UNKNOWN_VIEW_TARGET]),
                RetryJobModel.status.in_(ACTIVE_JOB_STATUSES)
            )
            .first()
        ) is not None

    def _model_to_entry(self, model: CacheEntryModel) -> CacheEntry:
        return CacheEntry(
            subject=model.subject,
            asset=model.asset,
            view_target=model.view_target,
            value_a=int(model.value_a),
            value_b=int(model.value_b),
            version=model.version,
            last_request_id=model.last_request_id,
            last_sequence=model.last_sequence,
            source_ref=model.source_ref,
            updated_at=model.updated_at
        )
