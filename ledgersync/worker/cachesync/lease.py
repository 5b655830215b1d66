"""
LeaseCoordinator Module - Per-key exclusive, TTL-bound leases

At most one live lease per (subject, asset, view_target). Leases live in
Redis (SET NX PX with compare-and-delete / compare-and-expire scripts), or in
the RedisManager in-memory fallback when Redis is disabled or unreachable.
Expiry is the only cancellation mechanism: a crashed holder's lease simply
runs out.
"""

import logging
from typing import Optional, Tuple
from datetime import timedelta

from .types import Lease
from .database import RedisManager
from .clock import Clock, SystemClock
from .metrics_server import MetricsServer

logger = logging.getLogger(__name__)


def lease_key(key: Tuple[str, str, str]) -> str:
    subject, asset, view_target = key
    return f"lease:{subject}:{asset}:{view_target}"


class LeaseCoordinator:
    """Grants, renews and releases per-key leases"""

    def __init__(self, redis_manager: RedisManager, clock: Optional[Clock] = None,
                 default_ttl_seconds: int = 30):
        self.redis = redis_manager
        self.clock = clock or SystemClock()
        self.default_ttl_seconds = default_ttl_seconds

    def acquire(self, key: Tuple[str, str, str], holder: str,
                ttl_seconds: Optional[float] = None) -> Optional[Lease]:
        """
        Try to take the lease on `key`.

        The current holder re-acquiring extends its lease.

        Returns:
            Lease if granted, None if another holder has it
        """
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        ttl_ms = int(ttl * 1000)
        redis_key = lease_key(key)

        granted = self.redis.set_if_absent(redis_key, holder, ttl_ms)
        if not granted:
            granted = self.redis.compare_and_expire(redis_key, holder, ttl_ms)

        MetricsServer.record_lease(granted)
        if not granted:
            logger.debug(f"Lease on {key} denied to {holder}")
            return None

        return Lease(key=key, holder=holder, expires_at=self.clock.now() + timedelta(milliseconds=ttl_ms))

    def renew(self, lease: Lease, ttl_seconds: Optional[float] = None) -> Optional[Lease]:
        """Extend a lease still held by the same holder; None if it was lost"""
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        ttl_ms = int(ttl * 1000)

        if not self.redis.compare_and_expire(lease_key(lease.key), lease.holder, ttl_ms):
            logger.warning(f"Lease on {lease.key} lost by {lease.holder}")
            return None

        return Lease(key=lease.key, holder=lease.holder,
                     expires_at=self.clock.now() + timedelta(milliseconds=ttl_ms))

    def release(self, lease: Lease) -> bool:
        """Release only if still held by the same holder"""
        released = self.redis.compare_and_delete(lease_key(lease.key), lease.holder)
        if not released:
            logger.info(f"Lease on {lease.key} already expired or taken over")
        return released

    def holder_of(self, key: Tuple[str, str, str]) -> Optional[str]:
        """Current holder of the lease on `key`, None when free"""
        return self.redis.get(lease_key(key))
