# File: src/lotsync/config.py
"""
Engine configuration

Settings come from three layers, later layers overriding earlier ones:
1. dataclass defaults
2. a YAML file (``EngineConfig.from_yaml``)
3. environment variables (``EngineConfig.from_env``), prefixed LOTSYNC_

Example YAML:

    backend: sqlalchemy
    database_url: postgresql+psycopg://lotsync@db/lotsync
    redis_url: redis://cache:6379/0
    store_timeout_seconds: 5
    billing:
      student_daily_rate: 200
      guest_hourly_rate: 50
      guest_free_minutes: 30
"""

from dataclasses import dataclass, fields, replace
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
import logging
import os

import yaml

from .domain.exceptions import InvalidArgumentError
from .domain.strategies import BillingRates, STUDENT_DAILY_RATE, GUEST_HOURLY_RATE, GUEST_FREE_MINUTES


BACKENDS = ('memory', 'sqlalchemy', 'mongo')

ENV_PREFIX = "LOTSYNC_"


@dataclass(frozen=True)
class EngineConfig:
    """Runtime settings for an engine instance"""
    backend: str = "memory"
    database_url: str = "sqlite:///./lotsync.db"
    mongo_url: str = "mongodb://localhost:27017"
    mongo_database: str = "lotsync"
    redis_url: Optional[str] = None
    redis_channel: str = "lotsync:changes"

    store_timeout_seconds: float = 10.0
    max_write_attempts: int = 5
    retry_base_delay: float = 0.05
    propagation_retry_attempts: int = 3

    student_daily_rate: Decimal = STUDENT_DAILY_RATE
    guest_hourly_rate: Decimal = GUEST_HOURLY_RATE
    guest_free_minutes: int = GUEST_FREE_MINUTES

    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        if self.backend not in BACKENDS:
            raise InvalidArgumentError(f"Unknown backend {self.backend!r}; expected one of {', '.join(BACKENDS)}")
        if self.store_timeout_seconds <= 0:
            raise InvalidArgumentError("store_timeout_seconds must be positive")
        if self.max_write_attempts < 1:
            raise InvalidArgumentError("max_write_attempts must be at least 1")
        if self.propagation_retry_attempts < 1:
            raise InvalidArgumentError("propagation_retry_attempts must be at least 1")
        if self.retry_base_delay < 0:
            raise InvalidArgumentError("retry_base_delay cannot be negative")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise InvalidArgumentError(f"Unknown log level {self.log_level!r}")
        # Validates and normalises the rate schedule
        rates = self.billing_rates
        object.__setattr__(self, 'student_daily_rate', rates.student_daily_rate)
        object.__setattr__(self, 'guest_hourly_rate', rates.guest_hourly_rate)

    @property
    def billing_rates(self) -> BillingRates:
        return BillingRates(
            student_daily_rate=self.student_daily_rate,
            guest_hourly_rate=self.guest_hourly_rate,
            guest_free_minutes=self.guest_free_minutes,
        )

    # ------------------------------------------------------------------
    # Loaders
    # ------------------------------------------------------------------

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], base: Optional['EngineConfig'] = None) -> 'EngineConfig':
        """Build a config from a (possibly nested) mapping of settings"""
        flat: Dict[str, Any] = {}
        for key, value in data.items():
            if key == 'billing' and isinstance(value, Mapping):
                flat.update(value)
            else:
                flat[key] = value

        known = {f.name for f in fields(cls)}
        unknown = set(flat) - known
        if unknown:
            raise InvalidArgumentError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        converted = {name: _convert(name, value) for name, value in flat.items()}
        return replace(base or cls(), **converted)

    @classmethod
    def from_yaml(cls, path: str, base: Optional['EngineConfig'] = None) -> 'EngineConfig':
        try:
            with open(path, 'r', encoding='utf-8') as handle:
                data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as e:
            raise InvalidArgumentError(f"Invalid YAML in {path}: {e}")
        if not isinstance(data, Mapping):
            raise InvalidArgumentError(f"{path} must contain a mapping at the top level")
        return cls.from_mapping(data, base)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None,
                 base: Optional['EngineConfig'] = None) -> 'EngineConfig':
        """Read LOTSYNC_<FIELD> variables; DATABASE_URL is honoured as well"""
        environ = os.environ if environ is None else environ
        data: Dict[str, Any] = {}
        if environ.get('DATABASE_URL'):
            data['database_url'] = environ['DATABASE_URL']
        for f in fields(cls):
            value = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if value is not None and value != "":
                data[f.name] = value
        return cls.from_mapping(data, base)

    @classmethod
    def load(cls, path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> 'EngineConfig':
        """Defaults, then the YAML file if given, then the environment"""
        config = cls.from_yaml(path) if path else cls()
        return cls.from_env(environ, base=config)


_CONVERTERS = {
    'store_timeout_seconds': float,
    'retry_base_delay': float,
    'max_write_attempts': int,
    'propagation_retry_attempts': int,
    'guest_free_minutes': int,
    'student_daily_rate': lambda value: Decimal(str(value)),
    'guest_hourly_rate': lambda value: Decimal(str(value)),
}


def _convert(name: str, value: Any) -> Any:
    if value is None:
        return None
    converter = _CONVERTERS.get(name, str)
    try:
        return converter(value)
    except (ArithmeticError, ValueError, TypeError):
        raise InvalidArgumentError(f"Invalid value for {name}: {value!r}")
