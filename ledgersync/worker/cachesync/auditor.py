"""
ReconciliationAuditor Module - Append-only audit log and health metrics

Records every write decision, failure signal and retry job transition, and
derives reconciliation health (queue depth, pending age, failure and
dead-letter rates, time to repair) from the audit log and job table.
"""

import json
import logging
import math
from typing import Optional, List, Dict, Any
from datetime import datetime
from collections import defaultdict

from sqlalchemy import func

from .types import (
    AuditAction, AuditRecord, ApplyResult, WriteAttempt, HealthMetrics,
    JobStatus, AUDIT_ACTION_FOR_STATUS
)
from .database import DatabaseManager, AuditRecordModel, RetryJobModel
from .clock import Clock, SystemClock
from .metrics_server import MetricsServer

logger = logging.getLogger(__name__)


WRITE_DECISION_ACTIONS = tuple(AUDIT_ACTION_FOR_STATUS.values())


def _percentile(sorted_values: List[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list"""
    if not sorted_values:
        return 0.0
    rank = max(1, math.ceil(pct / 100.0 * len(sorted_values)))
    return sorted_values[min(rank, len(sorted_values)) - 1]


def key_label(subject: str, asset: str, view_target: str) -> str:
    return f"{subject}:{asset}:{view_target}"


class ReconciliationAuditor:
    """
    Append-only audit log.

    Records are never updated or deleted. Callers inside an open database
    session pass it through so the audit line commits with the change it
    describes.
    """

    def __init__(self, db_manager: DatabaseManager, clock: Optional[Clock] = None):
        self.db_manager = db_manager
        self.clock = clock or SystemClock()

    # ========================================================================
    # Recording
    # ========================================================================

    def record(
        self,
        action: AuditAction,
        subject: str,
        asset: str,
        view_target: str,
        actor: str,
        job_id: Optional[str] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        detail: Optional[str] = None,
        session=None
    ) -> AuditRecord:
        """Append one audit record"""
        model = AuditRecordModel(
            job_id=job_id,
            subject=subject,
            asset=asset,
            view_target=view_target,
            action=action,
            actor=actor,
            before=json.dumps(before, default=str) if before is not None else None,
            after=json.dumps(after, default=str) if after is not None else None,
            detail=detail,
            timestamp=self.clock.now()
        )

        if session is not None:
            session.add(model)
            session.flush()
        else:
            with self.db_manager.get_session() as own_session:
                own_session.add(model)
                own_session.flush()

        logger.info(
            f"audit {action.value} {key_label(subject, asset, view_target)} "
            f"actor={actor} job={job_id or '-'}"
        )
        return self._model_to_record(model)

    def record_decision(
        self,
        attempt: WriteAttempt,
        result: ApplyResult,
        actor: str,
        before: Optional[Dict[str, Any]] = None,
        job_id: Optional[str] = None,
        session=None
    ) -> AuditRecord:
        """Record the outcome of VersionedCacheStore.apply"""
        after = {
            'status': result.status.value,
            'version': result.version,
            'request_id': attempt.request_id,
            'value_a': attempt.new_value_a,
            'value_b': attempt.new_value_b,
            'expected_next_version': attempt.expected_next_version,
            'sequence': attempt.sequence,
        }
        return self.record(
            AUDIT_ACTION_FOR_STATUS[result.status],
            attempt.subject,
            attempt.asset,
            attempt.view_target,
            actor,
            job_id=job_id,
            before=before,
            after=after,
            detail=result.reason,
            session=session
        )

    # ========================================================================
    # Queries
    # ========================================================================

    def query(
        self,
        subject: Optional[str] = None,
        asset: Optional[str] = None,
        view_target: Optional[str] = None,
        job_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[AuditRecord]:
        """Audit records matching every given filter, oldest first"""
        with self.db_manager.get_session() as session:
            q = session.query(AuditRecordModel)
            if subject is not None:
                q = q.filter(AuditRecordModel.subject == subject)
            if asset is not None:
                q = q.filter(AuditRecordModel.asset == asset)
            if view_target is not None:
                q = q.filter(AuditRecordModel.view_target == view_target)
            if job_id is not None:
                q = q.filter(AuditRecordModel.job_id == job_id)
            if action is not None:
                q = q.filter(AuditRecordModel.action == action)
            if since is not None:
                q = q.filter(AuditRecordModel.timestamp >= since)
            if until is not None:
                q = q.filter(AuditRecordModel.timestamp <= until)

            q = q.order_by(AuditRecordModel.timestamp.asc(), AuditRecordModel.id.asc())
            if limit is not None:
                q = q.limit(limit)

            return [self._model_to_record(m) for m in q.all()]

    def history(self, job_id: str) -> List[AuditRecord]:
        """Full trail of one retry job"""
        return self.query(job_id=job_id)

    # ========================================================================
    # Health Metrics
    # ========================================================================

    def health_metrics(self, since: Optional[datetime] = None, publish: bool = True) -> HealthMetrics:
        """
        Derive reconciliation health.

        Args:
            since: Only audit records and jobs created at or after this time
            publish: Push queue depth, pending age and dead-letter rate to Prometheus

        Returns:
            HealthMetrics snapshot
        """
        now = self.clock.now()

        with self.db_manager.get_session() as session:
            depth = {status.value: 0 for status in JobStatus}
            for status, count in (
                session.query(RetryJobModel.status, func.count(RetryJobModel.job_id))
                .group_by(RetryJobModel.status)
                .all()
            ):
                depth[status.value] = count

            pending_created = [
                row[0] for row in
                session.query(RetryJobModel.created_at)
                .filter(RetryJobModel.status == JobStatus.PENDING)
                .all()
            ]

            jobs_q = session.query(RetryJobModel)
            if since is not None:
                jobs_q = jobs_q.filter(RetryJobModel.created_at >= since)
            jobs = jobs_q.all()

            audit_q = session.query(
                AuditRecordModel.subject, AuditRecordModel.asset,
                AuditRecordModel.view_target, AuditRecordModel.action
            ).filter(
                AuditRecordModel.action.in_(WRITE_DECISION_ACTIONS + (AuditAction.SIGNAL_RAISED,))
            )
            if since is not None:
                audit_q = audit_q.filter(AuditRecordModel.timestamp >= since)
            decisions = audit_q.all()

        ages = sorted((now - created).total_seconds() for created in pending_created)
        pending_age = {
            'count': float(len(ages)),
            'min': ages[0] if ages else 0.0,
            'p50': _percentile(ages, 50),
            'p90': _percentile(ages, 90),
            'max': ages[-1] if ages else 0.0,
        }

        totals: Dict[str, int] = defaultdict(int)
        failures: Dict[str, int] = defaultdict(int)
        failures_by_target: Dict[str, int] = defaultdict(int)
        write_decisions = 0
        for subject, asset, view_target, action in decisions:
            label = key_label(subject, asset, view_target)
            totals[label] += 1
            if action == AuditAction.SIGNAL_RAISED:
                failures[label] += 1
                failures_by_target[view_target] += 1
            else:
                write_decisions += 1

        failure_rate = {
            label: failures[label] / total
            for label, total in totals.items() if failures[label]
        }

        deadlettered = sum(1 for j in jobs if j.status == JobStatus.DEADLETTER)
        deadletter_rate = deadlettered / len(jobs) if jobs else 0.0

        repairs = [
            (j.completed_at - j.created_at).total_seconds()
            for j in jobs
            if j.status == JobStatus.SUCCEEDED and j.completed_at is not None
        ]
        mttr = sum(repairs) / len(repairs) if repairs else None

        metrics = HealthMetrics(
            timestamp=now,
            queue_depth=depth,
            pending_age_seconds=pending_age,
            failure_rate_by_key=failure_rate,
            failures_by_target=dict(failures_by_target),
            deadletter_rate=deadletter_rate,
            mean_time_to_repair_seconds=mttr,
            total_write_decisions=write_decisions
        )

        if publish:
            MetricsServer.update_queue_depth(depth)
            MetricsServer.update_oldest_pending_age(pending_age['max'])
            MetricsServer.update_deadletter_rate(deadletter_rate)

        return metrics

    # ========================================================================
    # Helpers
    # ========================================================================

    def _model_to_record(self, model: AuditRecordModel) -> AuditRecord:
        """Convert database model to AuditRecord"""
        return AuditRecord(
            id=model.id,
            job_id=model.job_id,
            subject=model.subject,
            asset=model.asset,
            view_target=model.view_target,
            action=model.action,
            actor=model.actor,
            before=json.loads(model.before) if model.before else None,
            after=json.loads(model.after) if model.after else None,
            detail=model.detail,
            timestamp=model.timestamp
        )
