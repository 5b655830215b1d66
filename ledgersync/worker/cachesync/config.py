"""
Configuration Management System

Hierarchical configuration loading:
1. Environment variables (highest priority)
2. config.yaml file
3. Model defaults
"""

import os
from typing import Optional, Dict, Any, List
from pathlib import Path
import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .types import ConfigurationError, DEFAULT_VIEW_TARGET


class RPCConfig(BaseModel):
    """RPC provider configuration"""
    primary_http: str = Field(..., description="Primary HTTP RPC endpoint")
    primary_ws: Optional[str] = Field(default=None, description="Primary WebSocket RPC endpoint")
    backup_http: Optional[str] = Field(default=None, description="Backup HTTP RPC endpoint")
    backup_ws: Optional[str] = Field(default=None, description="Backup WebSocket RPC endpoint")
    request_timeout_seconds: int = Field(default=10)


class ContractsConfig(BaseModel):
    """Ledger, registry and view contract addresses"""
    collateral_manager: Optional[str] = Field(default=None, description="Ledger source of value_a")
    lending_engine: Optional[str] = Field(default=None, description="Ledger source of value_b")
    registry: Optional[str] = Field(default=None, description="Module registry for view resolution")
    # Logical view name -> contract address (static resolution)
    view_targets: Dict[str, str] = Field(default_factory=dict)
    # Logical view name -> registry module key (on-chain resolution)
    view_module_keys: Dict[str, str] = Field(default_factory=dict)
    # Contracts that emit CacheUpdateFailed
    signal_emitters: List[str] = Field(default_factory=list)
    module_cache_ttl_seconds: int = Field(default=300)


class DatabaseConfig(BaseModel):
    """Database configuration"""
    url: Optional[str] = Field(default=None, description="Full SQLAlchemy URL, overrides host/port")
    host: str = Field(default="localhost")
    port: int = Field(default=5432)
    database: str = Field(default="ledgersync")
    user: str = Field(default="ledgersync")
    password: str = Field(default="")
    pool_size: int = Field(default=20)
    max_overflow: int = Field(default=10)

    def connection_url(self) -> str:
        if self.url:
            return self.url
        return (
            f"postgresql://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class RedisConfig(BaseModel):
    """Redis configuration (leases and listener checkpoints)"""
    enabled: bool = Field(default=True, description="False forces the in-memory fallback")
    host: str = Field(default="localhost")
    port: int = Field(default=6379)
    password: Optional[str] = Field(default=None)
    db: int = Field(default=0)
    ttl_seconds: int = Field(default=60)
    key_prefix: str = Field(default="cachesync")


class CacheConfig(BaseModel):
    """Write-path configuration"""
    strict_sequence: bool = Field(default=False, description="Reject non-increasing sequence hints")
    cache_duration_seconds: int = Field(default=300, description="Cache validity window")
    default_view_target: str = Field(default=DEFAULT_VIEW_TARGET)
    verify_against_ledger: bool = Field(default=False)
    authorized_writers: List[str] = Field(default_factory=list, description="Empty allows any writer")

    @field_validator('cache_duration_seconds')
    @classmethod
    def validate_duration(cls, v):
        if v <= 0:
            raise ValueError("cache_duration_seconds must be positive")
        return v


class RetryConfig(BaseModel):
    """Retry queue, backoff and worker pool configuration"""
    max_attempts: int = Field(default=3, description="Failed retries tolerated before dead-letter")
    base_backoff_seconds: float = Field(default=5.0)
    max_backoff_seconds: float = Field(default=900.0)
    jitter_ratio: float = Field(default=0.5, description="Extra delay up to ratio * base delay")
    lease_ttl_seconds: int = Field(default=30)
    worker_count: int = Field(default=4)
    poll_interval_seconds: float = Field(default=1.0)
    batch_size: int = Field(default=10)
    recovery_interval_seconds: float = Field(default=15.0)

    @field_validator('max_attempts', 'lease_ttl_seconds', 'worker_count', 'batch_size')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator('jitter_ratio')
    @classmethod
    def validate_jitter(cls, v):
        if not 0 <= v <= 1:
            raise ValueError("jitter_ratio must be within [0, 1]")
        return v

    @model_validator(mode='after')
    def validate_backoff_bounds(self):
        if self.base_backoff_seconds <= 0:
            raise ValueError("base_backoff_seconds must be positive")
        if self.max_backoff_seconds < self.base_backoff_seconds:
            raise ValueError("max_backoff_seconds must be >= base_backoff_seconds")
        return self


class MonitoringConfig(BaseModel):
    """Monitoring and alerting configuration"""
    log_level: str = Field(default="INFO")
    log_dir: str = Field(default="logs")
    metrics_port: int = Field(default=8000)

    cloudwatch_enabled: bool = Field(default=False)
    cloudwatch_region: str = Field(default="us-east-1")
    cloudwatch_log_group: str = Field(default="LedgerSync")

    alert_topic_arn: Optional[str] = None
    alert_region: str = Field(default="us-east-1")


class CacheSyncConfig(BaseModel):
    """Main configuration model"""
    chain_id: int = Field(default=42161)
    network_name: str = Field(default="arbitrum")

    rpc: RPCConfig
    contracts: ContractsConfig = Field(default_factory=ContractsConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    worker_id: str = Field(default="cachesync-worker")
    confirmation_blocks: int = Field(default=2)


class ConfigLoader:
    """Configuration loader with hierarchical loading"""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or Path(os.getenv('CACHESYNC_CONFIG', 'config.yaml'))
        self._config: Optional[CacheSyncConfig] = None

    def load(self) -> CacheSyncConfig:
        """Load configuration from all sources"""
        config_data = self._load_yaml()
        config_data = self._apply_env_overrides(config_data)

        try:
            self._config = CacheSyncConfig(**config_data)
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        return self._config

    def _load_yaml(self) -> Dict[str, Any]:
        """Load configuration from YAML file"""
        if not self.config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides"""
        # Database
        if os.getenv('DB_URL'):
            config_data.setdefault('database', {})['url'] = os.getenv('DB_URL')
        if os.getenv('DB_USER'):
            config_data.setdefault('database', {})['user'] = os.getenv('DB_USER')
        if os.getenv('DB_PASSWORD'):
            config_data.setdefault('database', {})['password'] = os.getenv('DB_PASSWORD')
        if os.getenv('DB_HOST'):
            config_data.setdefault('database', {})['host'] = os.getenv('DB_HOST')

        # Redis
        if os.getenv('REDIS_HOST'):
            config_data.setdefault('redis', {})['host'] = os.getenv('REDIS_HOST')
        if os.getenv('REDIS_PASSWORD'):
            config_data.setdefault('redis', {})['password'] = os.getenv('REDIS_PASSWORD')

        # RPC endpoints
        if os.getenv('RPC_PRIMARY_HTTP'):
            config_data.setdefault('rpc', {})['primary_http'] = os.getenv('RPC_PRIMARY_HTTP')
        if os.getenv('RPC_PRIMARY_WS'):
            config_data.setdefault('rpc', {})['primary_ws'] = os.getenv('RPC_PRIMARY_WS')

        # Retry policy
        if os.getenv('RETRY_MAX_ATTEMPTS'):
            config_data.setdefault('retry', {})['max_attempts'] = int(os.getenv('RETRY_MAX_ATTEMPTS'))

        # Monitoring
        if os.getenv('ALERT_TOPIC_ARN'):
            config_data.setdefault('monitoring', {})['alert_topic_arn'] = os.getenv('ALERT_TOPIC_ARN')
        if os.getenv('LOG_LEVEL'):
            config_data.setdefault('monitoring', {})['log_level'] = os.getenv('LOG_LEVEL')

        return config_data

    @property
    def config(self) -> CacheSyncConfig:
        """Get loaded configuration"""
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")
        return self._config


# Global config instance
_config_loader: Optional[ConfigLoader] = None


def get_config() -> CacheSyncConfig:
    """Get global configuration instance"""
    global _config_loader
    if _config_loader is None:
        _config_loader = ConfigLoader()
        _config_loader.load()
    return _config_loader.config


def init_config(config_path: Optional[Path] = None) -> CacheSyncConfig:
    """Initialize configuration with custom path"""
    global _config_loader
    _config_loader = ConfigLoader(config_path)
    return _config_loader.load()
