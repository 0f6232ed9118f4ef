"""
Configuration management for zkpool

PoolConfig describes one pool namespace. It can be built directly, from a dict,
from a YAML file or from environment variables, and is validated before the
pool touches the coordinator.
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigurationError, ErrorCode

DEFAULT_CONNECT_STRING = "127.0.0.1:2181"
DEFAULT_MAX_IDLE_INTERVAL = 300
DEFAULT_ZOMBIE_DETECTION_INTERVAL = 30
DEFAULT_NUM_TESTS_PER_EVICTION = 3


class IntervalUnit(str, Enum):
    """Time unit applied to every configured interval"""
    MILLISECONDS = "milliseconds"
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"

    @property
    def seconds(self) -> float:
        return _UNIT_SECONDS[self]


_UNIT_SECONDS = {
    IntervalUnit.MILLISECONDS: 0.001,
    IntervalUnit.SECONDS: 1.0,
    IntervalUnit.MINUTES: 60.0,
    IntervalUnit.HOURS: 3600.0,
}


class PoolConfig(BaseModel):
    """Configuration for a distributed object pool"""

    # Identity
    name: str
    connect_string: str

    # Capacity
    size: int
    init_size: int = 0

    # Eviction
    evict_interval: Optional[float] = None
    max_idle_interval: float = DEFAULT_MAX_IDLE_INTERVAL
    num_tests_per_eviction: int = DEFAULT_NUM_TESTS_PER_EVICTION

    # Zombie reconciliation
    zombie_detection_interval: float = DEFAULT_ZOMBIE_DETECTION_INTERVAL

    # Metrics
    metric_interval: Optional[float] = None

    interval_unit: IntervalUnit = IntervalUnit.SECONDS

    # Coordinator session, always in seconds
    session_timeout: float = Field(default=10.0, gt=0)
    connect_timeout: float = Field(default=30.0, gt=0)

    # Logging
    log_level: str = "INFO"

    @property
    def eviction_enabled(self) -> bool:
        return self.evict_interval is not None and self.evict_interval > 0

    @property
    def metrics_enabled(self) -> bool:
        return self.metric_interval is not None and self.metric_interval > 0

    def to_seconds(self, value: float) -> float:
        """Convert an interval expressed in interval_unit to seconds"""
        return value * self.interval_unit.seconds

    def validate(self) -> bool:
        """Validate capacity settings"""
        if not self.name or "/" in self.name:
            raise ConfigurationError(
                "Pool name must be a non-empty single path segment",
                context={"name": self.name}
            )

        if self.size <= 0:
            raise ConfigurationError(
                "Please set size to a number greater than 0 to limit the pool size",
                context={"size": self.size}
            )

        if self.init_size < 0 or self.init_size > self.size:
            raise ConfigurationError(
                "init_size must be between 0 and size",
                context={"init_size": self.init_size, "size": self.size}
            )

        if self.num_tests_per_eviction < 0:
            raise ConfigurationError(
                "num_tests_per_eviction must be non-negative",
                context={"num_tests_per_eviction": self.num_tests_per_eviction}
            )

        if self.zombie_detection_interval <= 0:
            raise ConfigurationError(
                "zombie_detection_interval must be positive",
                context={"zombie_detection_interval": self.zombie_detection_interval}
            )

        return True

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PoolConfig':
        """Create configuration from dictionary"""
        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid pool configuration: {e}",
                error_code=ErrorCode.CONFIG_PARSE_ERROR,
                cause=e
            ) from e

    @classmethod
    def from_yaml(cls, path: Union[str, Path], **overrides) -> 'PoolConfig':
        """
        Load configuration from a YAML file

        The file may either hold the pool settings at the top level or under
        a ``pool`` key. Keyword overrides win over file values.
        """
        config_file = Path(path)
        if not config_file.exists():
            raise ConfigurationError(
                f"Configuration file not found: {config_file}",
                error_code=ErrorCode.CONFIG_FILE_NOT_FOUND
            )

        try:
            with open(config_file, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Failed to parse {config_file}: {e}",
                error_code=ErrorCode.CONFIG_PARSE_ERROR,
                cause=e
            ) from e

        if 'pool' in data and isinstance(data['pool'], dict):
            data = data['pool']

        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, name: str, **overrides) -> 'PoolConfig':
        """Create configuration from ZKPOOL_* environment variables"""
        data: Dict[str, Any] = {
            'name': name,
            'connect_string': os.getenv('ZKPOOL_CONNECT_STRING', DEFAULT_CONNECT_STRING),
            'size': int(os.getenv('ZKPOOL_SIZE', '0')),
            'init_size': int(os.getenv('ZKPOOL_INIT_SIZE', '0')),
            'log_level': os.getenv('ZKPOOL_LOG_LEVEL', 'INFO'),
        }
        data.update(overrides)
        return cls.from_dict(data)


def setup_logging(config: PoolConfig):
    """Setup logging based on configuration"""
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # The ZooKeeper client is chatty at INFO
    logging.getLogger('kazoo').setLevel(logging.WARNING)

    if config.log_level.upper() == 'DEBUG':
        logging.getLogger('zkpool').setLevel(logging.DEBUG)
