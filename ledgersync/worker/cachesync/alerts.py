"""
Operator alerts for dead-lettered jobs and malformed writes.

Alerts are always logged at CRITICAL and, when a topic is configured,
published to AWS SNS.
"""

import json
import logging
from typing import Optional, Dict, Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .types import RetryJob, WriteAttempt, ApplyResult
from .config import MonitoringConfig

logger = logging.getLogger(__name__)


class AlertNotifier:
    """Sends alerts to SNS"""

    def __init__(self, topic_arn: Optional[str] = None, region: str = "us-east-1", client=None):
        self.topic_arn = topic_arn
        self.client = client
        if self.topic_arn and self.client is None:
            self.client = boto3.client('sns', region_name=region)

    @classmethod
    def from_config(cls, config: MonitoringConfig) -> "AlertNotifier":
        return cls(topic_arn=config.alert_topic_arn, region=config.alert_region)

    def send(self, subject: str, payload: Dict[str, Any], severity: str = "HIGH") -> bool:
        """
        Log and publish one alert.

        Returns:
            True if published to SNS
        """
        message = {'severity': severity, 'subject': subject, **payload}
        logger.critical(f"ALERT: {subject}", extra={'alert': message})

        if not self.topic_arn:
            return False

        try:
            self.client.publish(
                TopicArn=self.topic_arn,
                Subject=subject[:100],  # SNS subject limit
                Message=json.dumps(message, default=str)
            )
            return True
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to publish alert to SNS: {e}")
            return False

    def deadletter(self, job: RetryJob) -> bool:
        return self.send(
            f"Retry job dead-lettered: {job.subject}/{job.asset}",
            {
                'job_id': job.job_id,
                'view_target': job.view_target,
                'source_ref': job.source_ref,
                'reason_code': job.reason_code.value,
                'attempts': job.attempts,
                'last_error': job.last_error,
            },
            severity='CRITICAL'
        )

    def invalid_write(self, attempt: WriteAttempt, result: ApplyResult) -> bool:
        return self.send(
            f"Malformed cache write: {attempt.subject}/{attempt.asset}",
            {
                'view_target': attempt.view_target,
                'request_id': attempt.request_id,
                'source_ref': attempt.source_ref,
                'reason': result.reason,
            }
        )
