"""
Database Schema and Connection Handling

SQLAlchemy models for the cache, retry-job and audit tables, plus connection
management with automatic reconnection. Redis backs leases and listener
checkpoints, with an in-memory fallback when it is disabled or unreachable.
"""

from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime, timedelta
from contextlib import contextmanager, nullcontext
import fnmatch
import logging
import threading

from sqlalchemy import (
    create_engine, text, Column, Integer, BigInteger, String, DateTime,
    Numeric, Text, Index, Enum as SQLEnum
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.exc import OperationalError, DisconnectionError, IntegrityError
import redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from .types import JobStatus, ReasonCode, AuditAction, DatabaseError, CacheSyncError
from .config import DatabaseConfig, RedisConfig
from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)

Base = declarative_base()


# ============================================================================
# SQLAlchemy Models
# ============================================================================

class CacheEntryModel(Base):
    """Versioned cache rows, one per (subject, asset, view_target)"""
    __tablename__ = 'cache_entries'

    subject = Column(String(128), primary_key=True)
    asset = Column(String(128), primary_key=True)
    view_target = Column(String(128), primary_key=True)

    value_a = Column(Numeric(78, 0), nullable=False, default=0)
    value_b = Column(Numeric(78, 0), nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)

    last_request_id = Column(String(132), nullable=True)
    last_sequence = Column(BigInteger, nullable=True)
    source_ref = Column(String(128), nullable=True)
    updated_at = Column(DateTime, nullable=False, index=True)


class RetryJobModel(Base):
    """Retry jobs keyed by the deterministic job id"""
    __tablename__ = 'retry_jobs'

    job_id = Column(String(66), primary_key=True)

    # Key
    subject = Column(String(128), nullable=False)
    asset = Column(String(128), nullable=False)
    view_target = Column(String(128), nullable=False)
    source_ref = Column(String(128), nullable=False)

    # Signal payload
    reason_code = Column(SQLEnum(ReasonCode), nullable=False)
    reason_detail = Column(Text, nullable=True)
    attempted_value_a = Column(Numeric(78, 0), nullable=False, default=0)
    attempted_value_b = Column(Numeric(78, 0), nullable=False, default=0)

    # State machine
    status = Column(SQLEnum(JobStatus), nullable=False, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    duplicate_signals = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    next_available_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Lease mirror, used to recover jobs from crashed workers
    lease_holder = Column(String(128), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    last_error = Column(Text, nullable=True)
    note = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_status_next_available', 'status', 'next_available_at'),
        Index('idx_job_key', 'subject', 'asset', 'view_target'),
    )


class AuditRecordModel(Base):
    """Append-only reconciliation audit log"""
    __tablename__ = 'audit_records'

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(66), nullable=True, index=True)

    subject = Column(String(128), nullable=False)
    asset = Column(String(128), nullable=False)
    view_target = Column(String(128), nullable=False)

    action = Column(SQLEnum(AuditAction), nullable=False, index=True)
    actor = Column(String(128), nullable=False)
    before = Column(Text, nullable=True)  # JSON string
    after = Column(Text, nullable=True)   # JSON string
    detail = Column(Text, nullable=True)
    timestamp = Column(DateTime, nullable=False, index=True)

    __table_args__ = (
        Index('idx_audit_key_time', 'subject', 'asset', 'timestamp'),
    )


# ============================================================================
# Database Connection Manager
# ============================================================================

class DatabaseManager:
    """Database connection manager with automatic reconnection"""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.engine = None
        self.SessionLocal = None
        self._session_lock = None
        self._initialize_engine()

    @property
    def is_sqlite(self) -> bool:
        return self.config.connection_url().startswith("sqlite")

    def _initialize_engine(self):
        """Initialize SQLAlchemy engine with connection pooling"""
        connection_string = self.config.connection_url()

        if self.is_sqlite:
            # One shared connection; sessions are serialized across threads
            self.engine = create_engine(
                connection_string,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                echo=False
            )
            self._session_lock = threading.RLock()
        else:
            self.engine = create_engine(
                connection_string,
                poolclass=QueuePool,
                pool_size=self.config.pool_size,
                max_overflow=self.config.max_overflow,
                pool_pre_ping=True,  # Verify connections before using
                pool_recycle=3600,   # Recycle connections after 1 hour
                echo=False
            )

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine
        )

        logger.info("Database engine initialized")

    def create_tables(self):
        """Create all tables if they don't exist"""
        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("Database tables created/verified")
        except Exception as e:
            logger.error(f"Failed to create tables: {e}")
            raise DatabaseError(f"Table creation failed: {e}")

    @contextmanager
    def get_session(self) -> Session:
        """Get database session with automatic cleanup"""
        with (self._session_lock if self._session_lock is not None else nullcontext()):
            session = self.SessionLocal()
            try:
                yield session
                session.commit()
            except (CacheSyncError, IntegrityError):
                # Domain errors and key conflicts are handled by the caller
                session.rollback()
                raise
            except (OperationalError, DisconnectionError) as e:
                session.rollback()
                logger.error(f"Database connection error: {e}")
                if not self.is_sqlite:
                    self._initialize_engine()
                raise DatabaseError(f"Database connection lost: {e}")
            except Exception as e:
                session.rollback()
                logger.error(f"Database error: {e}")
                raise DatabaseError(f"Database operation failed: {e}")
            finally:
                session.close()

    def health_check(self) -> bool:
        """Check database connection health"""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def dispose(self):
        if self.engine is not None:
            self.engine.dispose()


# ============================================================================
# Redis Connection Manager
# ============================================================================

# Delete the key only while it still holds the caller's value
_COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

# Extend the key's TTL only while it still holds the caller's value
_COMPARE_AND_EXPIRE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""


class RedisManager:
    """Redis connection manager with fallback to in-memory storage"""

    def __init__(self, config: RedisConfig, clock: Optional[Clock] = None):
        self.config = config
        self.clock = clock or SystemClock()
        self.client: Optional[redis.Redis] = None
        self._in_memory: Dict[str, Tuple[str, Optional[datetime]]] = {}
        self._memory_lock = threading.Lock()
        self._use_fallback = True
        self._cas_delete = None
        self._cas_expire = None
        if config.enabled:
            self._connect()
        else:
            logger.info("Redis disabled, using in-memory fallback")

    def _connect(self):
        """Connect to Redis"""
        try:
            self.client = redis.Redis(
                host=self.config.host,
                port=self.config.port,
                password=self.config.password,
                db=self.config.db,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_keepalive=True,
                health_check_interval=30
            )
            # Test connection
            self.client.ping()
            self._cas_delete = self.client.register_script(_COMPARE_AND_DELETE)
            self._cas_expire = self.client.register_script(_COMPARE_AND_EXPIRE)
            self._use_fallback = False
            logger.info("Redis connection established")
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning(f"Redis connection failed, using in-memory fallback: {e}")
            self._use_fallback = True

    def _switch_to_fallback(self, operation: str):
        logger.warning(f"Redis {operation} failed, switching to fallback")
        self._use_fallback = True

    @property
    def using_fallback(self) -> bool:
        return self._use_fallback

    def _key(self, key: str) -> str:
        return f"{self.config.key_prefix}:{key}"

    # ------------------------------------------------------------------
    # In-memory helpers (caller holds _memory_lock)
    # ------------------------------------------------------------------

    def _memory_get(self, key: str) -> Optional[str]:
        item = self._in_memory.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self.clock.now() >= expires_at:
            del self._in_memory[key]
            return None
        return value

    def _expiry(self, ttl_ms: Optional[int]) -> Optional[datetime]:
        if ttl_ms is None:
            return None
        return self.clock.now() + timedelta(milliseconds=ttl_ms)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set key-value with optional TTL in seconds (0 keeps the key forever)"""
        ttl = self.config.ttl_seconds if ttl is None else ttl
        full_key = self._key(key)

        if not self._use_fallback:
            try:
                if ttl:
                    self.client.setex(full_key, ttl, value)
                else:
                    self.client.set(full_key, value)
                return True
            except RedisConnectionError:
                self._switch_to_fallback("set")

        with self._memory_lock:
            self._in_memory[full_key] = (value, self._expiry(ttl * 1000 if ttl else None))
        return True

    def get(self, key: str) -> Optional[str]:
        """Get value by key"""
        full_key = self._key(key)

        if not self._use_fallback:
            try:
                return self.client.get(full_key)
            except RedisConnectionError:
                self._switch_to_fallback("get")

        with self._memory_lock:
            return self._memory_get(full_key)

    def delete(self, key: str) -> bool:
        """Delete key"""
        full_key = self._key(key)

        if not self._use_fallback:
            try:
                self.client.delete(full_key)
                return True
            except RedisConnectionError:
                self._switch_to_fallback("delete")

        with self._memory_lock:
            self._in_memory.pop(full_key, None)
        return True

    def keys(self, pattern: str) -> List[str]:
        """Get keys matching pattern (returned without the prefix)"""
        full_pattern = self._key(pattern)
        prefix_len = len(self.config.key_prefix) + 1

        if not self._use_fallback:
            try:
                return [k[prefix_len:] for k in self.client.keys(full_pattern)]
            except RedisConnectionError:
                self._switch_to_fallback("keys")

        with self._memory_lock:
            return [
                k[prefix_len:] for k in list(self._in_memory.keys())
                if fnmatch.fnmatch(k, full_pattern) and self._memory_get(k) is not None
            ]

    def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        """Atomically set key only if it does not exist (SET NX PX)"""
        full_key = self._key(key)

        if not self._use_fallback:
            try:
                return bool(self.client.set(full_key, value, nx=True, px=ttl_ms))
            except RedisConnectionError:
                self._switch_to_fallback("set_if_absent")

        with self._memory_lock:
            if self._memory_get(full_key) is not None:
                return False
            self._in_memory[full_key] = (value, self._expiry(ttl_ms))
            return True

    def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete key only if it still holds the expected value"""
        full_key = self._key(key)

        if not self._use_fallback:
            try:
                return bool(self._cas_delete(keys=[full_key], args=[expected]))
            except RedisConnectionError:
                self._switch_to_fallback("compare_and_delete")

        with self._memory_lock:
            if self._memory_get(full_key) != expected:
                return False
            del self._in_memory[full_key]
            return True

    def compare_and_expire(self, key: str, expected: str, ttl_ms: int) -> bool:
        """Reset key TTL only if it still holds the expected value"""
        full_key = self._key(key)

        if not self._use_fallback:
            try:
                return bool(self._cas_expire(keys=[full_key], args=[expected, ttl_ms]))
            except RedisConnectionError:
                self._switch_to_fallback("compare_and_expire")

        with self._memory_lock:
            if self._memory_get(full_key) != expected:
                return False
            self._in_memory[full_key] = (expected, self._expiry(ttl_ms))
            return True

    def ttl_ms(self, key: str) -> Optional[int]:
        """Remaining TTL in milliseconds, None if missing or persistent"""
        full_key = self._key(key)

        if not self._use_fallback:
            try:
                remaining = self.client.pttl(full_key)
                return remaining if remaining and remaining > 0 else None
            except RedisConnectionError:
                self._switch_to_fallback("ttl")

        with self._memory_lock:
            if self._memory_get(full_key) is None:
                return None
            expires_at = self._in_memory[full_key][1]
            if expires_at is None:
                return None
            return int((expires_at - self.clock.now()).total_seconds() * 1000)

    def clear(self):
        """Drop all keys under this manager's prefix"""
        for key in self.keys("*"):
            self.delete(key)

    def health_check(self) -> bool:
        """Check Redis connection health"""
        if self._use_fallback:
            return False

        try:
            self.client.ping()
            return True
        except RedisConnectionError:
            logger.warning("Redis health check failed")
            self._use_fallback = True
            return False

    def reconnect(self):
        """Attempt to reconnect to Redis"""
        if self._use_fallback and self.config.enabled:
            logger.info("Attempting to reconnect to Redis...")
            self._connect()


# ============================================================================
# Global Instances
# ============================================================================

_db_manager: Optional[DatabaseManager] = None
_redis_manager: Optional[RedisManager] = None


def init_database(config: DatabaseConfig) -> DatabaseManager:
    """Initialize database manager"""
    global _db_manager
    _db_manager = DatabaseManager(config)
    _db_manager.create_tables()
    return _db_manager


def init_redis(config: RedisConfig, clock: Optional[Clock] = None) -> RedisManager:
    """Initialize Redis manager"""
    global _redis_manager
    _redis_manager = RedisManager(config, clock=clock)
    return _redis_manager


def get_db_manager() -> DatabaseManager:
    """Get global database manager"""
    if _db_manager is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _db_manager


def get_redis_manager() -> RedisManager:
    """Get global Redis manager"""
    if _redis_manager is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_manager
