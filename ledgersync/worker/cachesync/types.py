"""
Core Data Models and Types

Defines the write-path, failure-signal, retry-job and audit data structures
shared by every cachesync module.
"""

from enum import Enum
from typing import Optional, Dict, Any, Tuple
from datetime import datetime
from dataclasses import dataclass, field
from pydantic import BaseModel, ConfigDict, Field, field_validator


# Sentinel used when the view target of a failed push cannot be resolved
UNKNOWN_VIEW_TARGET = "0x0000000000000000000000000000000000000000"

# View namespace used when the caller does not name one
DEFAULT_VIEW_TARGET = "default"


# ============================================================================
# Enums
# ============================================================================

class ApplyStatus(str, Enum):
    """Outcome of a single write attempt against the cache"""
    APPLIED = "applied"                # Accepted, version advanced by one
    DUPLICATE = "duplicate"            # Same request id as the last accepted write
    STALE_VERSION = "stale_version"    # expected_next_version != version + 1
    OUT_OF_ORDER = "out_of_order"      # Sequence not above the last accepted one
    INVALID = "invalid"                # Malformed attempt, never retryable


class JobStatus(str, Enum):
    """Retry job lifecycle state"""
    PENDING = "pending"
    LEASED = "leased"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    IGNORED = "ignored"
    DEADLETTER = "deadletter"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.LEASED, JobStatus.RETRYING)
TERMINAL_JOB_STATUSES = (JobStatus.SUCCEEDED, JobStatus.IGNORED, JobStatus.DEADLETTER)


class ReasonCode(str, Enum):
    """Closed set of reasons a push never reached the cache"""
    VIEW_UNRESOLVED = "view-unresolved"        # Target lookup failed or returned zero address
    UNAUTHORIZED = "unauthorized"              # Writer not allowed to push
    WRITE_UNAVAILABLE = "write-unavailable"    # Store could not be reached
    PUSH_REVERTED = "push-reverted"            # Downstream call reverted
    LEDGER_READ_FAILED = "ledger-read-failed"  # Verification read of the ledger failed
    LEDGER_MISMATCH = "ledger-mismatch"        # Pushed values disagree with the ledger
    UNKNOWN = "unknown"


class AuditAction(str, Enum):
    """Every decision recorded by the reconciliation auditor"""
    APPLIED = "applied"
    REJECTED_STALE_VERSION = "rejected-stale-version"
    REJECTED_DUPLICATE = "rejected-duplicate"
    REJECTED_OUT_OF_ORDER = "rejected-out-of-order"
    REJECTED_INVALID = "rejected-invalid"
    SIGNAL_RAISED = "signal-raised"
    ENQUEUED = "enqueued"
    LEASED = "leased"
    RETRIED = "retried"
    SUCCEEDED = "succeeded"
    IGNORED = "ignored"
    DEADLETTERED = "deadlettered"
    REPLAYED = "replayed"


AUDIT_ACTION_FOR_STATUS = {
    ApplyStatus.APPLIED: AuditAction.APPLIED,
    ApplyStatus.DUPLICATE: AuditAction.REJECTED_DUPLICATE,
    ApplyStatus.STALE_VERSION: AuditAction.REJECTED_STALE_VERSION,
    ApplyStatus.OUT_OF_ORDER: AuditAction.REJECTED_OUT_OF_ORDER,
    ApplyStatus.INVALID: AuditAction.REJECTED_INVALID,
}


# ============================================================================
# Error Types
# ============================================================================

class CacheSyncError(Exception):
    """Base exception for all cachesync errors"""
    pass


class ConfigurationError(CacheSyncError):
    """Configuration validation or loading error"""
    pass


class DatabaseError(CacheSyncError):
    """Database connection or query error"""
    pass


class RPCError(CacheSyncError):
    """RPC provider connection or response error"""
    pass


class LedgerReadError(CacheSyncError):
    """Authoritative ledger could not be read"""
    pass


class WriteUnavailableError(CacheSyncError):
    """The cache write path could not be reached"""
    pass


class JobNotFoundError(CacheSyncError):
    """No retry job exists for the given id"""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Retry job not found: {job_id}")


class InvalidJobTransitionError(CacheSyncError):
    """Requested retry job transition is not allowed from the current state"""

    def __init__(self, job_id: str, from_status: "JobStatus", to_status: "JobStatus"):
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Job {job_id}: transition {from_status.value} -> {to_status.value} not allowed"
        )


# ============================================================================
# Write Path Models
# ============================================================================

class WriteAttempt(BaseModel):
    """A request to overwrite one cache row"""
    model_config = ConfigDict(frozen=True)

    subject: str = Field(..., description="Entity the values describe (account address)")
    asset: str = Field(..., description="Asset identifier")
    view_target: str = Field(default=DEFAULT_VIEW_TARGET, description="Cache instance addressed")
    new_value_a: int = Field(..., description="First cached field (collateral)")
    new_value_b: int = Field(..., description="Second cached field (debt)")
    expected_next_version: int = Field(default=0, ge=0, description="0 means unconditional")
    request_id: str = Field(default="", description="Idempotency token, empty for legacy pushes")
    sequence: Optional[int] = Field(default=None, description="Optional monotonic hint")
    source_ref: str = Field(default="", description="Ledger mutation that produced this write")

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.subject, self.asset, self.view_target)


class ApplyResult(BaseModel):
    """Outcome of VersionedCacheStore.apply"""
    status: ApplyStatus
    version: int = Field(..., description="Entry version after the decision")
    previous_version: int = Field(default=0)
    reason: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.status == ApplyStatus.APPLIED

    @property
    def converged(self) -> bool:
        """True when the cache now holds the attempted write"""
        return self.status in (ApplyStatus.APPLIED, ApplyStatus.DUPLICATE)

    @property
    def retryable(self) -> bool:
        return self.status in (ApplyStatus.STALE_VERSION, ApplyStatus.OUT_OF_ORDER)


class CacheEntry(BaseModel):
    """Last-known-good snapshot for one (subject, asset, view_target)"""
    model_config = ConfigDict(from_attributes=True)

    subject: str
    asset: str
    view_target: str
    value_a: int
    value_b: int
    version: int
    last_request_id: Optional[str] = None
    last_sequence: Optional[int] = None
    source_ref: Optional[str] = None
    updated_at: datetime


class CachedPosition(BaseModel):
    """Read-path view of a cache row with its staleness indicator"""
    subject: str
    asset: str
    view_target: str
    value_a: int
    value_b: int
    last_confirmed_version: int
    updated_at: Optional[datetime] = None
    is_fresh: bool = Field(default=False, description="Younger than the cache validity window")
    pending_correction: bool = Field(default=False, description="An open retry job exists")
    is_valid: bool = Field(default=True, description="False when values came from the ledger fallback")


@dataclass
class CacheEvent:
    """Observable outcome of a write attempt"""
    kind: str  # 'cached' or 'rejected'
    attempt: WriteAttempt
    result: ApplyResult
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'subject': self.attempt.subject,
            'asset': self.attempt.asset,
            'view_target': self.attempt.view_target,
            'request_id': self.attempt.request_id,
            'status': self.result.status.value,
            'version': self.result.version,
            'timestamp': self.timestamp.isoformat()
        }


# ============================================================================
# Failure / Retry Models
# ============================================================================

class FailureSignal(BaseModel):
    """Durable record of a push that never reached the cache"""
    subject: str
    asset: str
    view_target: str = Field(default=UNKNOWN_VIEW_TARGET)
    attempted_value_a: int = Field(default=0)
    attempted_value_b: int = Field(default=0)
    reason_code: ReasonCode = Field(default=ReasonCode.UNKNOWN)
    reason_detail: str = Field(default="", description="Opaque diagnostic payload (hex or text)")
    source_ref: str = Field(..., description="Ledger mutation pointer, e.g. block123#log4")
    observed_at: Optional[datetime] = None

    @field_validator('view_target')
    @classmethod
    def default_unknown_target(cls, v):
        """An unresolvable target is recorded with the sentinel, never dropped"""
        return v if v else UNKNOWN_VIEW_TARGET


class RetryJob(BaseModel):
    """Read model of a retry_jobs row"""
    model_config = ConfigDict(from_attributes=True)

    job_id: str
    subject: str
    asset: str
    view_target: str
    source_ref: str
    reason_code: ReasonCode
    reason_detail: Optional[str] = None
    attempted_value_a: int = 0
    attempted_value_b: int = 0
    status: JobStatus
    attempts: int = 0
    duplicate_signals: int = 0
    last_attempt_at: Optional[datetime] = None
    next_available_at: datetime
    created_at: datetime
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    lease_holder: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    note: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.subject, self.asset, self.view_target)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass
class Lease:
    """Time-boxed exclusive claim on a cache key"""
    key: Tuple[str, str, str]
    holder: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class AuditRecord(BaseModel):
    """Immutable audit log line"""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    job_id: Optional[str] = None
    subject: str
    asset: str
    view_target: str
    action: AuditAction
    actor: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    detail: Optional[str] = None
    timestamp: datetime


@dataclass
class RetryOutcome:
    """What one RetryWorker pass did with a job"""
    job_id: str
    status: JobStatus
    apply_result: Optional[ApplyResult] = None
    skipped: bool = False
    skip_reason: Optional[str] = None
    error: Optional[str] = None
    dry_run: bool = False
    preview: Optional[WriteAttempt] = None
    current_version: Optional[int] = None


@dataclass
class HealthMetrics:
    """Derived reconciliation health snapshot"""
    timestamp: datetime
    queue_depth: Dict[str, int] = field(default_factory=dict)
    pending_age_seconds: Dict[str, float] = field(default_factory=dict)
    failure_rate_by_key: Dict[str, float] = field(default_factory=dict)
    failures_by_target: Dict[str, int] = field(default_factory=dict)
    deadletter_rate: float = 0.0
    mean_time_to_repair_seconds: Optional[float] = None
    total_write_decisions: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'queue_depth': self.queue_depth,
            'pending_age_seconds': self.pending_age_seconds,
            'failure_rate_by_key': self.failure_rate_by_key,
            'failures_by_target': self.failures_by_target,
            'deadletter_rate': self.deadletter_rate,
            'mean_time_to_repair_seconds': self.mean_time_to_repair_seconds,
            'total_write_decisions': self.total_write_decisions
        }
