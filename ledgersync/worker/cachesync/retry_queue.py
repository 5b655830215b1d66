"""
RetryQueue Module - Durable retry jobs and their state machine

Turns failure signals into retry jobs and enforces the job lifecycle:

    pending -> leased -> retrying -> succeeded
                                  -> pending (attempts + 1, backoff)
                                  -> deadletter
    pending | deadletter -> ignored   (operator)
    deadletter -> pending             (operator replay)

Enqueue is idempotent by job id. Every transition is audited.
"""

import logging
import random
from typing import Optional, List, Dict, Tuple
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from .types import (
    FailureSignal, RetryJob, JobStatus, AuditAction, JobNotFoundError,
    InvalidJobTransitionError
)
from .config import RetryConfig
from .database import DatabaseManager, RetryJobModel
from .idempotency import derive_job_id
from .auditor import ReconciliationAuditor
from .clock import Clock, SystemClock
from .metrics_server import MetricsServer
from .logging_config import get_logger, log_job_transition, log_deadletter

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[JobStatus, Tuple[JobStatus, ...]] = {
    JobStatus.PENDING: (JobStatus.LEASED, JobStatus.IGNORED),
    JobStatus.LEASED: (JobStatus.RETRYING, JobStatus.PENDING),
    JobStatus.RETRYING: (JobStatus.SUCCEEDED, JobStatus.PENDING, JobStatus.DEADLETTER),
    JobStatus.DEADLETTER: (JobStatus.PENDING, JobStatus.IGNORED),
    JobStatus.SUCCEEDED: (),
    JobStatus.IGNORED: (),
}


class BackoffPolicy:
    """
    Exponential backoff with bounded jitter.

    delay(n) = base * 2^(n-1) plus up to jitter_ratio of that, capped at
    max_seconds. With jitter_ratio <= 1 successive delays strictly increase
    until the cap.
    """

    def __init__(self, base_seconds: float, max_seconds: float, jitter_ratio: float,
                 rng: Optional[random.Random] = None):
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self.jitter_ratio = jitter_ratio
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, config: RetryConfig, rng: Optional[random.Random] = None) -> "BackoffPolicy":
        return cls(config.base_backoff_seconds, config.max_backoff_seconds, config.jitter_ratio, rng)

    def delay(self, attempt: int) -> float:
        """Delay in seconds before retry number `attempt` + 1"""
        raw = self.base_seconds * (2 ** max(attempt - 1, 0))
        # random() is in [0, 1) so jitter never reaches the next step
        jitter = raw * self.jitter_ratio * self._rng.random()
        return min(raw + jitter, self.max_seconds)


class RetryQueue:
    """
    Durable retry job table.

    Responsibilities:
    - Idempotent enqueue of failure signals
    - Job state machine with audited transitions
    - Backoff scheduling and dead-lettering
    - Recovery of jobs held by crashed workers
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        auditor: ReconciliationAuditor,
        config: Optional[RetryConfig] = None,
        clock: Optional[Clock] = None,
        backoff: Optional[BackoffPolicy] = None,
        alerts=None
    ):
        self.db_manager = db_manager
        self.auditor = auditor
        self.config = config or RetryConfig()
        self.clock = clock or SystemClock()
        self.backoff = backoff or BackoffPolicy.from_config(self.config)
        self.alerts = alerts
        self.audit_log = get_logger("retry_queue")

        logger.info(f"RetryQueue initialized (max_attempts={self.config.max_attempts})")

    # ========================================================================
    # Enqueue
    # ========================================================================

    def enqueue(self, signal: FailureSignal, actor: str = "signal-listener") -> Tuple[RetryJob, bool]:
        """
        Record a failure signal as a retry job.

        A signal whose job id already exists only bumps duplicate_signals.

        Returns:
            (job, created)
        """
        job_id = derive_job_id(signal.source_ref, signal.view_target, signal.subject, signal.asset)
        MetricsServer.record_failure_signal(signal.reason_code.value)

        try:
            return self._enqueue(job_id, signal, actor)
        except IntegrityError:
            # Lost the insert race; the row exists now
            return self._enqueue(job_id, signal, actor)

    def _enqueue(self, job_id: str, signal: FailureSignal, actor: str) -> Tuple[RetryJob, bool]:
        now = self.clock.now()
        with self.db_manager.get_session() as session:
            model = session.get(RetryJobModel, job_id)

            if model is not None:
                model.duplicate_signals += 1
                model.updated_at = now
                self.auditor.record(
                    AuditAction.ENQUEUED, model.subject, model.asset, model.view_target,
                    actor, job_id=job_id,
                    detail=f"duplicate signal #{model.duplicate_signals} from {signal.source_ref}",
                    session=session
                )
                logger.info(f"Duplicate signal for job {job_id} ({model.duplicate_signals})")
                return self._model_to_job(model), False

            model = RetryJobModel(
                job_id=job_id,
                subject=signal.subject,
                asset=signal.asset,
                view_target=signal.view_target,
                source_ref=signal.source_ref,
                reason_code=signal.reason_code,
                reason_detail=signal.reason_detail,
                attempted_value_a=signal.attempted_value_a,
                attempted_value_b=signal.attempted_value_b,
                status=JobStatus.PENDING,
                attempts=0,
                duplicate_signals=0,
                next_available_at=now,
                created_at=signal.observed_at or now,
                updated_at=now
            )
            session.add(model)
            session.flush()

            signal_data = signal.model_dump(mode='json')
            self.auditor.record(
                AuditAction.SIGNAL_RAISED, signal.subject, signal.asset, signal.view_target,
                actor, job_id=job_id, after=signal_data,
                detail=signal.reason_code.value, session=session
            )
            self.auditor.record(
                AuditAction.ENQUEUED, signal.subject, signal.asset, signal.view_target,
                actor, job_id=job_id, detail=signal.source_ref, session=session
            )
            job = self._model_to_job(model)

        logger.info(f"Enqueued job {job_id} for {job.key} ({signal.reason_code.value})")
        return job, True

    # ========================================================================
    # Queries
    # ========================================================================

    def get(self, job_id: str) -> RetryJob:
        with self.db_manager.get_session() as session:
            return self._model_to_job(self._load(session, job_id))

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        subject: Optional[str] = None,
        asset: Optional[str] = None,
        view_target: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[RetryJob]:
        """Jobs matching every given filter, oldest first"""
        with self.db_manager.get_session() as session:
            q = session.query(RetryJobModel)
            if status is not None:
                q = q.filter(RetryJobModel.status == status)
            if subject is not None:
                q = q.filter(RetryJobModel.subject == subject)
            if asset is not None:
                q = q.filter(RetryJobModel.asset == asset)
            if view_target is not None:
                q = q.filter(RetryJobModel.view_target == view_target)
            q = q.order_by(RetryJobModel.created_at.asc(), RetryJobModel.job_id.asc())
            if limit is not None:
                q = q.limit(limit)
            return [self._model_to_job(m) for m in q.all()]

    def due_jobs(self, limit: Optional[int] = None) -> List[RetryJob]:
        """Pending jobs whose backoff has elapsed, earliest first"""
        now = self.clock.now()
        with self.db_manager.get_session() as session:
            q = (
                session.query(RetryJobModel)
                .filter(
                    RetryJobModel.status == JobStatus.PENDING,
                    RetryJobModel.next_available_at <= now
                )
                .order_by(RetryJobModel.next_available_at.asc())
            )
            if limit is not None:
                q = q.limit(limit)
            return [self._model_to_job(m) for m in q.all()]

    def queue_depth(self) -> Dict[str, int]:
        depth = {status.value: 0 for status in JobStatus}
        with self.db_manager.get_session() as session:
            for status, count in (
                session.query(RetryJobModel.status, func.count(RetryJobModel.job_id))
                .group_by(RetryJobModel.status)
                .all()
            ):
                depth[status.value] = count
        return depth

    # ========================================================================
    # Worker Transitions
    # ========================================================================

    def mark_leased(self, job_id: str, holder: str, lease_expires_at: datetime) -> RetryJob:
        """
        pending -> leased

        Conditional on the row still being pending, so the job row itself
        admits one holder even when leases fall back to process memory.

        Raises:
            InvalidJobTransitionError: Job is no longer pending
        """
        with self.db_manager.get_session() as session:
            model = self._load(session, job_id)
            now = self.clock.now()
            updated = (
                session.query(RetryJobModel)
                .filter(
                    RetryJobModel.job_id == job_id,
                    RetryJobModel.status == JobStatus.PENDING
                )
                .update({
                    RetryJobModel.status: JobStatus.LEASED,
                    RetryJobModel.lease_holder: holder,
                    RetryJobModel.lease_expires_at: lease_expires_at,
                    RetryJobModel.updated_at: now,
                }, synchronize_session=False)
            )
            if updated != 1:
                session.refresh(model)
                raise InvalidJobTransitionError(job_id, model.status, JobStatus.LEASED)

            self._transition(session, model, JobStatus.LEASED, holder, AuditAction.LEASED,
                             detail=f"lease until {lease_expires_at.isoformat()}")
            model.lease_holder = holder
            model.lease_expires_at = lease_expires_at
            return self._model_to_job(model)

    def mark_retrying(self, job_id: str, holder: str) -> RetryJob:
        """leased -> retrying"""
        with self.db_manager.get_session() as session:
            model = self._load(session, job_id)
            self._check_holder(model, holder, JobStatus.RETRYING)
            self._transition(session, model, JobStatus.RETRYING, holder, None)
            model.last_attempt_at = self.clock.now()
            return self._model_to_job(model)

    def release(self, job_id: str, holder: str) -> RetryJob:
        """leased -> pending without consuming an attempt"""
        with self.db_manager.get_session() as session:
            model = self._load(session, job_id)
            self._check_holder(model, holder, JobStatus.PENDING)
            self._transition(session, model, JobStatus.PENDING, holder, None)
            self._clear_lease(model)
            return self._model_to_job(model)

    def complete_success(self, job_id: str, holder: str, detail: Optional[str] = None) -> RetryJob:
        """retrying -> succeeded"""
        now = self.clock.now()
        with self.db_manager.get_session() as session:
            model = self._load(session, job_id)
            self._check_holder(model, holder, JobStatus.SUCCEEDED)
            self._transition(session, model, JobStatus.SUCCEEDED, holder, AuditAction.SUCCEEDED,
                             detail=detail)
            model.completed_at = now
            model.last_error = None
            self._clear_lease(model)
            job = self._model_to_job(model)

        MetricsServer.observe_time_to_repair((now - job.created_at).total_seconds())
        return job

    def complete_failure(self, job_id: str, holder: str, error: str,
                         permanent: bool = False) -> RetryJob:
        """
        retrying -> pending with backoff, or deadletter.

        Each failure consumes one attempt. The job dead-letters once attempts
        exceed max_attempts, or immediately when the failure is permanent.
        """
        now = self.clock.now()
        with self.db_manager.get_session() as session:
            model = self._load(session, job_id)
            target = JobStatus.DEADLETTER if permanent else JobStatus.PENDING
            self._check_holder(model, holder, target)

            model.attempts += 1
            model.last_error = error
            self._clear_lease(model)

            if permanent or model.attempts > self.config.max_attempts:
                self._transition(session, model, JobStatus.DEADLETTER, holder,
                                 AuditAction.DEADLETTERED, detail=error)
                model.completed_at = now
                deadlettered = True
            else:
                delay = self.backoff.delay(model.attempts)
                model.next_available_at = now + timedelta(seconds=delay)
                self._transition(session, model, JobStatus.PENDING, holder, AuditAction.RETRIED,
                                 detail=f"attempt {model.attempts} failed: {error}; "
                                        f"next at {model.next_available_at.isoformat()}")
                deadlettered = False
            job = self._model_to_job(model)

        if deadlettered:
            self._on_deadletter(job)
        return job

    def recover_expired(self) -> int:
        """Return leased/retrying jobs whose lease expired to pending"""
        now = self.clock.now()
        recovered = 0
        with self.db_manager.get_session() as session:
            stale = (
                session.query(RetryJobModel)
                .filter(
                    RetryJobModel.status.in_((JobStatus.LEASED, JobStatus.RETRYING)),
                    RetryJobModel.lease_expires_at <= now
                )
                .all()
            )
            for model in stale:
                holder = model.lease_holder
                previous = model.status
                model.status = JobStatus.PENDING
                model.updated_at = now
                self._clear_lease(model)
                self.auditor.record(
                    AuditAction.ENQUEUED, model.subject, model.asset, model.view_target,
                    "lease-recovery", job_id=model.job_id,
                    before={'status': previous.value, 'lease_holder': holder},
                    after={'status': JobStatus.PENDING.value},
                    detail="lease expired, requeued", session=session
                )
                MetricsServer.record_job_transition(previous.value, JobStatus.PENDING.value)
                recovered += 1

        if recovered:
            logger.warning(f"Recovered {recovered} jobs with expired leases")
        return recovered

    def update_view_target(self, job_id: str, view_target: str):
        """Record the view target resolved at retry time"""
        with self.db_manager.get_session() as session:
            model = self._load(session, job_id)
            model.view_target = view_target
            model.updated_at = self.clock.now()

    # ========================================================================
    # Operator Transitions
    # ========================================================================

    def mark_ignored(self, job_id: str, operator: str, note: Optional[str] = None) -> RetryJob:
        """pending | deadletter -> ignored"""
        with self.db_manager.get_session() as session:
            model = self._load(session, job_id)
            self._transition(session, model, JobStatus.IGNORED, operator, AuditAction.IGNORED,
                             detail=note)
            model.note = note
            model.completed_at = self.clock.now()
            return self._model_to_job(model)

    def replay_deadletter(self, job_id: str, operator: str) -> RetryJob:
        """deadletter -> pending with a fresh attempt budget"""
        with self.db_manager.get_session() as session:
            model = self._load(session, job_id)
            if model.status != JobStatus.DEADLETTER:
                raise InvalidJobTransitionError(job_id, model.status, JobStatus.PENDING)
            previous_attempts = model.attempts
            self._transition(session, model, JobStatus.PENDING, operator, AuditAction.REPLAYED,
                             detail=f"replayed after {previous_attempts} attempts")
            model.attempts = 0
            model.next_available_at = self.clock.now()
            model.completed_at = None
            return self._model_to_job(model)

    # ========================================================================
    # Helpers
    # ========================================================================

    def _load(self, session, job_id: str) -> RetryJobModel:
        model = session.get(RetryJobModel, job_id)
        if model is None:
            raise JobNotFoundError(job_id)
        return model

    def _check_holder(self, model: RetryJobModel, holder: str, to_status: JobStatus):
        if model.lease_holder != holder:
            raise InvalidJobTransitionError(model.job_id, model.status, to_status)

    def _clear_lease(self, model: RetryJobModel):
        model.lease_holder = None
        model.lease_expires_at = None

    def _transition(self, session, model: RetryJobModel, to_status: JobStatus, actor: str,
                    action: Optional[AuditAction], detail: Optional[str] = None):
        from_status = model.status
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidJobTransitionError(model.job_id, from_status, to_status)

        before = {'status': from_status.value, 'attempts': model.attempts}
        model.status = to_status
        model.updated_at = self.clock.now()

        if action is not None:
            self.auditor.record(
                action, model.subject, model.asset, model.view_target, actor,
                job_id=model.job_id, before=before,
                after={'status': to_status.value, 'attempts': model.attempts},
                detail=detail, session=session
            )

        MetricsServer.record_job_transition(from_status.value, to_status.value)
        log_job_transition(self.audit_log, model.job_id, from_status.value, to_status.value,
                           model.attempts, detail)

    def _on_deadletter(self, job: RetryJob):
        MetricsServer.record_deadletter(job.reason_code.value)
        log_deadletter(self.audit_log, job.job_id, job.reason_code.value, job.attempts, job.last_error)
        if self.alerts is not None:
            self.alerts.deadletter(job)

    def _model_to_job(self, model: RetryJobModel) -> RetryJob:
        """Convert database model to RetryJob"""
        return RetryJob(
            job_id=model.job_id,
            subject=model.subject,
            asset=model.asset,
            view_target=model.view_target,
            source_ref=model.source_ref,
            reason_code=model.reason_code,
            reason_detail=model.reason_detail,
            attempted_value_a=int(model.attempted_value_a or 0),
            attempted_value_b=int(model.attempted_value_b or 0),
            status=model.status,
            attempts=model.attempts,
            duplicate_signals=model.duplicate_signals,
            last_attempt_at=model.last_attempt_at,
            next_available_at=model.next_available_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
            completed_at=model.completed_at,
            lease_holder=model.lease_holder,
            lease_expires_at=model.lease_expires_at,
            last_error=model.last_error,
            note=model.note
        )
