"""
Configuration management for the crawler system.
"""

import logging
import socket
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

import yaml

from ..models import CrawlConfiguration
from ..errors import ConfigurationError


T = TypeVar('T')

DEFAULT_RETRYABLE_ERRORS = [
    'timeout',
    'net::',
    'connection reset',
    'socket hang up',
    'enotfound',
    'econnreset',
    'econnrefused',
]


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    monitoring_period: float = 300.0


@dataclass
class RetryConfig:
    """Configuration for retrying a whole crawl run."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    retryable_errors: List[str] = field(default_factory=lambda: list(DEFAULT_RETRYABLE_ERRORS))


@dataclass
class HealthCheckConfig:
    """Configuration for periodic health probes."""
    enabled: bool = True
    interval: float = 30.0
    timeout: float = 10.0


@dataclass
class FallbackConfig:
    """Which fallback strategies the resilient crawler may use."""
    use_backup_user_agent: bool = True
    reduce_parallelism: bool = True
    skip_problematic_domains: bool = True


@dataclass
class ResilienceConfig:
    """Configuration for the resilience layer."""
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    health_check: HealthCheckConfig = field(default_factory=HealthCheckConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass
class DistributedConfig:
    """Configuration for distributed workers and their coordination."""
    worker_id: str = field(default_factory=default_worker_id)
    concurrency: int = 3
    key_prefix: str = "sitecrawl"
    max_retries: int = 3
    retry_delay: float = 1.0
    priority_levels: int = 5
    heartbeat_interval: float = 10.0
    worker_timeout: int = 30
    result_sync_interval: float = 30.0
    result_ttl: int = 3600
    lease_ttl: int = 120
    lease_sweep_interval: float = 30.0
    poll_interval: float = 1.0
    idle_delay: float = 1.0
    completion_timeout: Optional[float] = 3600.0
    max_links_per_page: int = 50


@dataclass
class RedisConfig:
    """Configuration for Redis."""
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    file: str = "logs/crawler.log"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    json: bool = False


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int = 8000
    metrics_enabled: bool = False


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlConfiguration
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)
    distributed: DistributedConfig = field(default_factory=DistributedConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)


def _build(cls: Type[T], data: Optional[Dict[str, Any]], section: str) -> T:
    """Instantiate a config dataclass, rejecting unknown keys."""
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Section '{section}' must be a mapping")

    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"Unknown keys in '{section}': {', '.join(sorted(unknown))}")

    return cls(**data)


def parse_resilience(data: Optional[Dict[str, Any]]) -> ResilienceConfig:
    data = dict(data or {})
    return ResilienceConfig(
        circuit_breaker=_build(CircuitBreakerConfig, data.pop('circuit_breaker', None),
                               'resilience.circuit_breaker'),
        retry=_build(RetryConfig, data.pop('retry', None), 'resilience.retry'),
        health_check=_build(HealthCheckConfig, data.pop('health_check', None),
                            'resilience.health_check'),
        fallback=_build(FallbackConfig, data.pop('fallback', None), 'resilience.fallback'),
    )


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None
        self.logger = logging.getLogger(__name__)

    def load_config(self) -> Config:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            try:
                config_data = yaml.safe_load(file) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {self.config_path}: {e}") from e

        self._config = self.parse(config_data)
        return self._config

    def parse(self, config_data: Dict[str, Any]) -> Config:
        """Build and validate a Config from already-loaded data."""
        if 'crawler' not in config_data:
            raise ConfigurationError("Missing required section 'crawler'")

        self._config = Config(
            crawler=CrawlConfiguration.from_dict(config_data['crawler'] or {}),
            resilience=parse_resilience(config_data.get('resilience')),
            distributed=_build(DistributedConfig, config_data.get('distributed'), 'distributed'),
            redis=_build(RedisConfig, config_data.get('redis'), 'redis'),
            logging=_build(LoggingConfig, config_data.get('logging'), 'logging'),
            monitoring=_build(MonitoringConfig, config_data.get('monitoring'), 'monitoring'),
        )

        self._validate_config()
        return self._config

    def _validate_config(self):
        """Validate configuration values."""
        config = self._config
        config.crawler.validate()

        retry = config.resilience.retry
        if retry.max_retries < 0:
            raise ConfigurationError("retry.max_retries must be non-negative")
        if retry.base_delay < 0 or retry.max_delay < 0:
            raise ConfigurationError("retry delays must be non-negative")
        if retry.backoff_multiplier < 1:
            raise ConfigurationError("retry.backoff_multiplier must be at least 1")

        if config.resilience.circuit_breaker.failure_threshold < 1:
            raise ConfigurationError("circuit_breaker.failure_threshold must be at least 1")

        distributed = config.distributed
        if distributed.concurrency < 1:
            raise ConfigurationError("distributed.concurrency must be at least 1")
        if distributed.priority_levels < 1:
            raise ConfigurationError("distributed.priority_levels must be at least 1")
        if distributed.max_retries < 1:
            raise ConfigurationError("distributed.max_retries must be at least 1")
        if distributed.worker_timeout <= distributed.heartbeat_interval:
            raise ConfigurationError("distributed.worker_timeout must exceed heartbeat_interval")

        self.logger.info("Configuration validation passed")

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ConfigurationError("Configuration not loaded. Call load_config() first.")
        return self._config


# Global config manager instance
config_manager = ConfigManager()


def get_config() -> Config:
    """Get the global configuration instance."""
    return config_manager.config


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from file."""
    global config_manager
    config_manager = ConfigManager(config_path)
    return config_manager.load_config()
