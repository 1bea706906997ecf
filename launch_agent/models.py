"""
Configuration models for the launch agent.

Every model is a frozen dataclass: a configuration load builds a complete
AgentConfig snapshot and a reload replaces it wholesale.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple


_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ms|s|m|h|d)')
_DURATION_UNITS = {
    'ms': 0.001,
    's': 1,
    'm': 60,
    'h': 3600,
    'd': 86400,
}
_SIZE_PATTERN = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([kmgt]?)i?b?\s*$', re.IGNORECASE)
_SIZE_UNITS = {'': 1, 'k': 1024, 'm': 1024 ** 2, 'g': 1024 ** 3, 't': 1024 ** 4}


def parse_duration(value: str) -> timedelta:
    """
    Parse a duration string such as '90s', '30m', '1h30m' or '1d'.

    Raises:
        ValueError: If the string is empty, malformed, or not positive
    """
    text = str(value).strip().lower()
    if not text:
        raise ValueError("Empty duration")

    position = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position != len(text):
        raise ValueError(f"Invalid duration: {value!r}")
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")

    return timedelta(seconds=seconds)


def parse_size(value: Any) -> int:
    """
    Parse a byte size such as 1048576, '512M' or '1GiB'.

    Returns 0 for empty values.
    """
    if value is None or value == '':
        return 0
    if isinstance(value, int):
        return value

    match = _SIZE_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"Invalid size: {value!r}")

    return int(float(match.group(1)) * _SIZE_UNITS[match.group(2).lower()])


@dataclass(frozen=True)
class ScheduleConfig:
    """When a model runs: a cron expression, or an interval with optional time of day."""
    enabled: bool = False
    cron: str = ''
    every: str = ''
    at: str = ''

    def __str__(self) -> str:
        if not self.enabled:
            return 'disabled'
        if self.cron:
            return f'cron {self.cron}'
        if self.at:
            return f'every {self.every} at {self.at}'
        return f'every {self.every}'


@dataclass(frozen=True)
class SubConfig:
    """A named, typed configuration block (database, notifier, ...)."""
    name: str
    type: str
    settings: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        value = self.settings.get(key)
        return default if value is None or value == '' else value


@dataclass(frozen=True)
class StorageConfig(SubConfig):
    """A storage target; keep == 0 means unlimited retention."""
    keep: int = 0


@dataclass(frozen=True)
class CompressConfig:
    type: str = 'tar'
    split: int = 0


@dataclass(frozen=True)
class ArchiveConfig:
    includes: Tuple[str, ...] = ()
    excludes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class WebhookConfig:
    url: str
    method: str = 'POST'
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PulseConfig:
    enabled: bool = False
    interval: int = 5
    webhook: Optional[WebhookConfig] = None


@dataclass(frozen=True)
class SupervisorConfig:
    enabled: bool = False
    socket_path: str = '/var/run/supervisor.sock'
    rpc_endpoint: str = 'http://localhost/RPC2'
    daemons: Tuple[str, ...] = ()
    interval: int = 5


@dataclass(frozen=True)
class ModelConfig:
    """Immutable snapshot of one backup target."""
    name: str
    work_dir: str
    temp_path: str
    dump_path: str
    storages: Tuple[StorageConfig, ...]
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    databases: Tuple[SubConfig, ...] = ()
    archive: Optional[ArchiveConfig] = None
    compress_with: CompressConfig = field(default_factory=CompressConfig)
    default_storage: str = ''
    webhook: Optional[WebhookConfig] = None
    use_temp_work_dir: bool = False

    def get_storage_by_name(self, name: str) -> Optional[StorageConfig]:
        for storage in self.storages:
            if storage.name == name:
                return storage
        return None

    def get_database_by_name(self, name: str) -> Optional[SubConfig]:
        for database in self.databases:
            if database.name == name:
                return database
        return None


@dataclass(frozen=True)
class AgentConfig:
    """One fully loaded configuration file."""
    models: Tuple[ModelConfig, ...] = ()
    pulse: PulseConfig = field(default_factory=PulseConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    webhook: Optional[WebhookConfig] = None
    work_dir: str = ''
    use_temp_work_dir: bool = False
    config_file: str = ''
    updated_at: Optional[datetime] = None

    @property
    def model_names(self) -> List[str]:
        return [model.name for model in self.models]

    def get_model(self, name: str) -> Optional[ModelConfig]:
        for model in self.models:
            if model.name == name:
                return model
        return None
