"""
CachePusher Module - Best-effort write path with failure signalling

Upstream callers push position updates here after a ledger mutation. A push
never raises and never blocks the caller: when the write cannot reach the
store it is turned into a FailureSignal and queued for the retry workers.
"""

import logging
from typing import Optional
from dataclasses import dataclass

from pydantic import ValidationError

from .types import (
    WriteAttempt, ApplyResult, ApplyStatus, FailureSignal, RetryJob, ReasonCode,
    CacheSyncError, LedgerReadError, UNKNOWN_VIEW_TARGET
)
from .config import CacheConfig
from .cache_store import VersionedCacheStore
from .retry_queue import RetryQueue
from .resolver import ViewTargetResolver
from .clock import Clock, SystemClock
from .logging_config import get_logger, log_failure_signal, log_write_rejection

logger = logging.getLogger(__name__)


@dataclass
class PushOutcome:
    """What happened to one push"""
    result: Optional[ApplyResult] = None
    signal: Optional[FailureSignal] = None
    job: Optional[RetryJob] = None

    @property
    def reached_store(self) -> bool:
        return self.result is not None


class CachePusher:
    """
    Write-path entry point.

    Order of checks:
    1. Resolve the view target (unresolved -> view-unresolved)
    2. Writer authorization (-> unauthorized)
    3. Optional ledger verification (-> ledger-read-failed / ledger-mismatch)
    4. Apply to the store (unreachable -> write-unavailable)
    """

    def __init__(
        self,
        store: VersionedCacheStore,
        queue: RetryQueue,
        resolver: ViewTargetResolver,
        config: Optional[CacheConfig] = None,
        ledger=None,
        alerts=None,
        clock: Optional[Clock] = None
    ):
        self.store = store
        self.queue = queue
        self.resolver = resolver
        self.config = config or CacheConfig()
        self.ledger = ledger
        self.alerts = alerts
        self.clock = clock or SystemClock()
        self.event_log = get_logger("cache_pusher")

        if self.config.verify_against_ledger and self.ledger is None:
            raise ValueError("verify_against_ledger requires a ledger reader")

    def push(
        self,
        subject: str,
        asset: str,
        value_a: int,
        value_b: int,
        view_target: Optional[str] = None,
        request_id: str = "",
        expected_next_version: int = 0,
        sequence: Optional[int] = None,
        source_ref: str = "",
        writer: Optional[str] = None
    ) -> PushOutcome:
        """Push one position update. Never raises."""
        view = view_target or self.config.default_view_target
        source_ref = source_ref or self._fallback_source_ref(request_id)

        def signal(reason: ReasonCode, detail: str, target: str = view) -> PushOutcome:
            return self._raise_signal(FailureSignal(
                subject=subject,
                asset=asset,
                view_target=target,
                attempted_value_a=value_a,
                attempted_value_b=value_b,
                reason_code=reason,
                reason_detail=detail,
                source_ref=source_ref,
                observed_at=self.clock.now()
            ))

        try:
            resolved = self.resolver.resolve(view)
        except Exception as e:
            logger.error(f"View resolution for {view} failed: {e}")
            resolved = None
        if resolved is None:
            return signal(ReasonCode.VIEW_UNRESOLVED, f"view {view} unresolved", UNKNOWN_VIEW_TARGET)

        if self.config.authorized_writers and writer not in self.config.authorized_writers:
            return signal(ReasonCode.UNAUTHORIZED, f"writer {writer} not authorized")

        if self.config.verify_against_ledger:
            try:
                ledger_a, ledger_b = self.ledger.read_balances(subject, asset)
            except LedgerReadError as e:
                return signal(ReasonCode.LEDGER_READ_FAILED, str(e))
            if (ledger_a, ledger_b) != (value_a, value_b):
                return signal(
                    ReasonCode.LEDGER_MISMATCH,
                    f"pushed ({value_a}, {value_b}) ledger ({ledger_a}, {ledger_b})"
                )

        try:
            attempt = WriteAttempt(
                subject=subject,
                asset=asset,
                view_target=view,
                new_value_a=value_a,
                new_value_b=value_b,
                expected_next_version=expected_next_version,
                request_id=request_id,
                sequence=sequence,
                source_ref=source_ref
            )
        except ValidationError as e:
            logger.warning(f"Malformed push for ({subject}, {asset}): {e}")
            result = ApplyResult(status=ApplyStatus.INVALID, version=0, reason=str(e))
            return PushOutcome(result=result)

        try:
            result = self.store.apply(attempt, actor=writer or "writer")
        except CacheSyncError as e:
            return signal(ReasonCode.WRITE_UNAVAILABLE, str(e))
        except Exception as e:
            logger.error(f"Unexpected error applying push for {attempt.key}: {e}", exc_info=True)
            return signal(ReasonCode.UNKNOWN, f"{type(e).__name__}: {e}")

        if result.status == ApplyStatus.INVALID:
            if self.alerts is not None:
                self.alerts.invalid_write(attempt, result)
        elif not result.applied:
            log_write_rejection(
                self.event_log, subject, asset, view, result.status.value,
                result.version, request_id
            )

        return PushOutcome(result=result)

    def _raise_signal(self, signal: FailureSignal) -> PushOutcome:
        log_failure_signal(self.event_log, signal.model_dump(mode='json'))
        try:
            job, _ = self.queue.enqueue(signal, actor="cache-pusher")
        except CacheSyncError as e:
            # The signal payload above is the only record left
            logger.error(f"Failed to enqueue failure signal {signal.source_ref}: {e}")
            return PushOutcome(signal=signal)
        return PushOutcome(signal=signal, job=job)

    def _fallback_source_ref(self, request_id: str) -> str:
        if request_id:
            return f"request:{request_id}"
        return f"push@{self.clock.now().isoformat()}"
