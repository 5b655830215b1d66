"""
Logging Infrastructure

Structured JSON logging with CloudWatch integration, log rotation, and a
separate audit log for reconciliation decisions and job transitions.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional
from datetime import datetime, timezone
import structlog
from structlog.types import EventDict, Processor
import boto3
from botocore.exceptions import ClientError


# Loggers whose records also go to audit.log
AUDIT_LOGGER_NAMES = ("cachesync.auditor", "cachesync.retry_queue", "auditor", "retry_queue")

# put_log_events limits: 1 MiB per call, 26 bytes of overhead per event
MAX_BATCH_BYTES = 1_048_576
EVENT_OVERHEAD_BYTES = 26


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Custom Processors
# ============================================================================

def add_module_name(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add module name to log record"""
    event_dict["module"] = logger.name
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add ISO 8601 timestamp to log record"""
    event_dict["timestamp"] = _utcnow().replace(tzinfo=None).isoformat() + "Z"
    return event_dict


def add_log_level(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add log level to log record"""
    event_dict["level"] = method_name.upper()
    return event_dict


def add_context(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Ensure context field exists"""
    if "context" not in event_dict:
        event_dict["context"] = {}
    return event_dict


def is_audit_record(record: logging.LogRecord) -> bool:
    return record.name in AUDIT_LOGGER_NAMES or record.name.endswith(AUDIT_LOGGER_NAMES[:2])


# ============================================================================
# CloudWatch Handler
# ============================================================================

class CloudWatchHandler(logging.Handler):
    """
    Handler for sending logs to AWS CloudWatch Logs.

    Batches log events and sends them once the batch is full or on close.
    """

    def __init__(
        self,
        log_group: str,
        log_stream: str,
        region: str = "us-east-1",
        batch_size: int = 100,
        client=None
    ):
        super().__init__()
        self.log_group = log_group
        self.log_stream = log_stream
        self.region = region
        self.batch_size = batch_size
        self.sequence_token: Optional[str] = None
        self.batch: list = []
        self.batch_bytes = 0

        try:
            self.client = client or boto3.client('logs', region_name=region)
            self._ensure_log_group_exists()
            self._ensure_log_stream_exists()
            self.enabled = True
        except Exception as e:
            # Logging must keep working without CloudWatch
            print(f"CloudWatch initialization failed: {e}", file=sys.stderr)
            self.enabled = False

    def _ensure_log_group_exists(self):
        """Create log group if it doesn't exist"""
        try:
            self.client.create_log_group(logGroupName=self.log_group)
            # Audit decisions must outlive the 30-day default of the main service
            self.client.put_retention_policy(
                logGroupName=self.log_group,
                retentionInDays=90
            )
        except ClientError as e:
            if e.response['Error']['Code'] != 'ResourceAlreadyExistsException':
                raise

    def _ensure_log_stream_exists(self):
        """Create log stream if it doesn't exist"""
        try:
            self.client.create_log_stream(
                logGroupName=self.log_group,
                logStreamName=self.log_stream
            )
        except ClientError as e:
            if e.response['Error']['Code'] != 'ResourceAlreadyExistsException':
                raise

    def emit(self, record: logging.LogRecord):
        """Queue one event; flush when the batch is full by count or size"""
        if not self.enabled:
            return

        try:
            message = self.format(record)
            event_bytes = len(message.encode('utf-8')) + EVENT_OVERHEAD_BYTES
            if self.batch and self.batch_bytes + event_bytes > MAX_BATCH_BYTES:
                self.flush()

            self.batch.append({
                'timestamp': int(record.created * 1000),
                'message': message
            })
            self.batch_bytes += event_bytes

            if len(self.batch) >= self.batch_size:
                self.flush()

        except Exception:
            self.handleError(record)

    def flush(self):
        """Send batched events; a stale sequence token is refreshed once"""
        if not self.enabled or not self.batch:
            return

        events = sorted(self.batch, key=lambda x: x['timestamp'])
        self.batch = []
        self.batch_bytes = 0

        try:
            self._put(events)
        except ClientError as e:
            error = e.response.get('Error', {})
            if error.get('Code') not in ('InvalidSequenceTokenException', 'DataAlreadyAcceptedException'):
                print(f"CloudWatch flush error: {e}", file=sys.stderr)
                return
            # Another process wrote to the stream; AWS reports the token it expects
            self.sequence_token = e.response.get('expectedSequenceToken')
            if error.get('Code') == 'InvalidSequenceTokenException':
                try:
                    self._put(events)
                except Exception as retry_error:
                    print(f"CloudWatch flush error: {retry_error}", file=sys.stderr)
        except Exception as e:
            print(f"CloudWatch flush error: {e}", file=sys.stderr)

    def _put(self, events: list):
        kwargs = {
            'logGroupName': self.log_group,
            'logStreamName': self.log_stream,
            'logEvents': events
        }
        if self.sequence_token:
            kwargs['sequenceToken'] = self.sequence_token

        response = self.client.put_log_events(**kwargs)
        self.sequence_token = response.get('nextSequenceToken')

    def close(self):
        """Flush remaining logs before closing"""
        self.flush()
        super().close()


# ============================================================================
# Logging Configuration
# ============================================================================

class LoggingConfig:
    """
    Centralized logging configuration for the cachesync service.

    Features:
    - Structured JSON logging
    - Console, rotating file, audit file and optional CloudWatch handlers
    - Module-specific loggers
    """

    def __init__(
        self,
        log_dir: Path = Path("logs"),
        log_level: str = "INFO",
        enable_cloudwatch: bool = False,
        cloudwatch_region: str = "us-east-1",
        cloudwatch_log_group: str = "LedgerSync",
        cloudwatch_log_stream: Optional[str] = None
    ):
        self.log_dir = Path(log_dir)
        self.log_level = log_level.upper()
        self.enable_cloudwatch = enable_cloudwatch
        self.cloudwatch_region = cloudwatch_region
        self.cloudwatch_log_group = cloudwatch_log_group
        self.cloudwatch_log_stream = cloudwatch_log_stream or f"cachesync-{_utcnow().strftime('%Y%m%d-%H%M%S')}"

        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._configure_structlog()
        self._configure_stdlib_logging()

    def _configure_structlog(self):
        """Configure structlog with custom processors"""
        processors: list[Processor] = [
            structlog.contextvars.merge_contextvars,
            add_module_name,
            add_timestamp,
            add_log_level,
            add_context,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ]

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.make_filtering_bound_logger(
                logging.getLevelName(self.log_level)
            ),
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

    def _configure_stdlib_logging(self):
        """Configure standard library logging handlers"""
        root_logger = logging.getLogger()
        root_logger.setLevel(self.log_level)

        root_logger.handlers.clear()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(logging.Formatter('%(message)s'))
        root_logger.addHandler(console_handler)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=self.log_dir / "cachesync.log",
            maxBytes=100 * 1024 * 1024,  # 100 MB
            backupCount=10,
            encoding='utf-8'
        )
        file_handler.setLevel(self.log_level)
        file_handler.setFormatter(logging.Formatter('%(message)s'))
        root_logger.addHandler(file_handler)

        # Reconciliation audit trail
        audit_handler = logging.handlers.RotatingFileHandler(
            filename=self.log_dir / "audit.log",
            maxBytes=100 * 1024 * 1024,  # 100 MB
            backupCount=50,
            encoding='utf-8'
        )
        audit_handler.setLevel(logging.INFO)
        audit_handler.setFormatter(logging.Formatter('%(asctime)s %(name)s %(message)s'))
        audit_handler.addFilter(is_audit_record)
        root_logger.addHandler(audit_handler)

        if self.enable_cloudwatch:
            cloudwatch_handler = CloudWatchHandler(
                log_group=self.cloudwatch_log_group,
                log_stream=self.cloudwatch_log_stream,
                region=self.cloudwatch_region,
                batch_size=100
            )
            cloudwatch_handler.setLevel(logging.INFO)
            cloudwatch_handler.setFormatter(logging.Formatter('%(message)s'))
            root_logger.addHandler(cloudwatch_handler)

    def get_logger(self, name: str) -> structlog.stdlib.BoundLogger:
        """Get a logger instance for a specific module"""
        return structlog.get_logger(name)


# ============================================================================
# Global Logger Instance
# ============================================================================

_logging_config: Optional[LoggingConfig] = None


def init_logging(
    log_dir: Path = Path("logs"),
    log_level: str = "INFO",
    enable_cloudwatch: bool = False,
    cloudwatch_region: str = "us-east-1",
    cloudwatch_log_group: str = "LedgerSync",
    cloudwatch_log_stream: Optional[str] = None
) -> LoggingConfig:
    """
    Initialize global logging configuration.

    Args:
        log_dir: Directory for log files
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_cloudwatch: Enable CloudWatch integration
        cloudwatch_region: AWS region for CloudWatch
        cloudwatch_log_group: CloudWatch log group name
        cloudwatch_log_stream: CloudWatch log stream name (auto-generated if None)

    Returns:
        LoggingConfig instance
    """
    global _logging_config
    _logging_config = LoggingConfig(
        log_dir=log_dir,
        log_level=log_level,
        enable_cloudwatch=enable_cloudwatch,
        cloudwatch_region=cloudwatch_region,
        cloudwatch_log_group=cloudwatch_log_group,
        cloudwatch_log_stream=cloudwatch_log_stream
    )
    return _logging_config


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance, initializing defaults on first use"""
    global _logging_config
    if _logging_config is None:
        init_logging()
    return _logging_config.get_logger(name)


# ============================================================================
# Convenience Functions
# ============================================================================

def log_write_rejection(
    logger: structlog.stdlib.BoundLogger,
    subject: str,
    asset: str,
    view_target: str,
    status: str,
    version: int,
    request_id: str = ""
):
    """Log a rejected write. Rejections are expected and never alerted."""
    logger.info(
        "write_rejected",
        context={
            "event_type": "write_rejected",
            "subject": subject,
            "asset": asset,
            "view_target": view_target,
            "status": status,
            "version": version,
            "request_id": request_id
        }
    )


def log_failure_signal(
    logger: structlog.stdlib.BoundLogger,
    signal: Dict[str, Any]
):
    """Log a raised failure signal"""
    logger.warning(
        "failure_signal",
        context={
            "event_type": "failure_signal",
            "signal": signal
        }
    )


def log_job_transition(
    logger: structlog.stdlib.BoundLogger,
    job_id: str,
    from_status: str,
    to_status: str,
    attempts: int,
    reason: Optional[str] = None
):
    """Log a retry job state transition"""
    logger.info(
        "job_transition",
        context={
            "event_type": "job_transition",
            "job_id": job_id,
            "from_status": from_status,
            "to_status": to_status,
            "attempts": attempts,
            "reason": reason
        }
    )


def log_deadletter(
    logger: structlog.stdlib.BoundLogger,
    job_id: str,
    reason_code: str,
    attempts: int,
    last_error: Optional[str] = None
):
    """Log a job moved to dead-letter"""
    logger.error(
        "job_deadlettered",
        context={
            "event_type": "job_deadlettered",
            "job_id": job_id,
            "reason_code": reason_code,
            "attempts": attempts,
            "last_error": last_error
        }
    )


def log_health_metrics(
    logger: structlog.stdlib.BoundLogger,
    metrics: Dict[str, Any]
):
    """Log a reconciliation health snapshot"""
    logger.info(
        "health_metrics",
        context={
            "event_type": "health_metrics",
            "metrics": metrics
        }
    )
