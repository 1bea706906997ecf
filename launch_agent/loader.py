"""
YAML configuration loading for the launch agent.

Search order when no file is given explicitly:
1. LAUNCH_AGENT_CONFIG env var
2. ./launch.yml
3. ~/.launch/launch.yml
4. /etc/launch-agent/launch.yml

A .env file next to the config file is loaded first and $VAR / ${VAR}
references in the YAML text are expanded before parsing.
"""

import logging
import os
import shutil
import stat
import tempfile
import threading
import time
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from launch_agent.errors import ConfigError
from launch_agent.models import (
    AgentConfig,
    ArchiveConfig,
    CompressConfig,
    ModelConfig,
    PulseConfig,
    ScheduleConfig,
    StorageConfig,
    SubConfig,
    SupervisorConfig,
    WebhookConfig,
    parse_duration,
    parse_size,
)


logger = logging.getLogger(__name__)


def find_config_file() -> Optional[Path]:
    """Return the first existing config file from the search path, or None."""
    explicit = os.environ.get('LAUNCH_AGENT_CONFIG')
    if explicit:
        path = Path(explicit).expanduser()
        return path if path.is_file() else None

    candidates = [
        Path.cwd() / 'launch.yml',
        Path.home() / '.launch' / 'launch.yml',
        Path('/etc/launch-agent/launch.yml'),
    ]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def _as_mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where} must be a mapping")
    return value


def parse_webhook(data: Any, where: str = 'webhook') -> Optional[WebhookConfig]:
    data = _as_mapping(data, where)
    if not data.get('url'):
        return None
    headers = _as_mapping(data.get('headers'), f"{where}.headers")
    return WebhookConfig(
        url=str(data['url']),
        method=str(data.get('method') or 'POST').upper(),
        headers={str(k): str(v) for k, v in headers.items()}
    )


def parse_schedule(data: Any, model_name: str) -> ScheduleConfig:
    """
    Parse a model's schedule block.

    A missing block means the model is not scheduled. When present,
    exactly one of cron / every must be set.
    """
    if data is None:
        return ScheduleConfig(enabled=False)

    data = _as_mapping(data, f"models.{model_name}.schedule")
    cron = str(data.get('cron') or '').strip()
    every = str(data.get('every') or '').strip()
    at = str(data.get('at') or '').strip()

    if bool(cron) == bool(every):
        raise ConfigError(
            f"Schedule of model {model_name} needs exactly one of 'cron' or 'every'"
        )
    if at and not every:
        raise ConfigError(f"Schedule of model {model_name}: 'at' requires 'every'")

    if every:
        try:
            parse_duration(every)
        except ValueError as e:
            raise ConfigError(f"Schedule of model {model_name}: {e}")

    return ScheduleConfig(enabled=True, cron=cron, every=every, at=at)


def _parse_sub_configs(data: Any, where: str) -> List[SubConfig]:
    configs = []
    for key, value in _as_mapping(data, where).items():
        settings = _as_mapping(value, f"{where}.{key}")
        configs.append(SubConfig(
            name=str(key),
            type=str(settings.get('type') or ''),
            settings=dict(settings)
        ))
    return configs


def _parse_storages(data: Any, model_name: str) -> List[StorageConfig]:
    where = f"models.{model_name}.storages"
    storages = []
    for key, value in _as_mapping(data, where).items():
        settings = _as_mapping(value, f"{where}.{key}")
        try:
            keep = int(settings.get('keep') or 0)
        except (TypeError, ValueError):
            raise ConfigError(f"{where}.{key}.keep must be an integer")
        storages.append(StorageConfig(
            name=str(key),
            type=str(settings.get('type') or ''),
            settings=dict(settings),
            keep=keep
        ))
    return storages


def _parse_interval(value: Any, default: int, where: str) -> int:
    try:
        interval = int(value or default)
    except (TypeError, ValueError):
        raise ConfigError(f"{where} must be an integer number of minutes")
    if interval <= 0:
        raise ConfigError(f"{where} must be positive")
    return interval


def load_model(name: str, data: Dict[str, Any], work_dir: str,
               use_temp_work_dir: bool = False) -> ModelConfig:
    """
    Build a ModelConfig from its YAML block.

    Raises:
        ConfigError: If the block is invalid or has no storages
    """
    data = _as_mapping(data, f"models.{name}")

    temp_path = os.path.join(work_dir, str(time.time_ns()))
    dump_path = os.path.join(temp_path, name)

    storages = _parse_storages(data.get('storages'), name)
    if not storages:
        raise ConfigError(f"No storage found in model {name}")

    default_storage = str(data.get('default_storage') or storages[0].name)

    compress_data = _as_mapping(data.get('compress_with'), f"models.{name}.compress_with")
    try:
        compress_with = CompressConfig(
            type=str(compress_data.get('type') or 'tar'),
            split=parse_size(compress_data.get('split'))
        )
    except ValueError as e:
        raise ConfigError(f"models.{name}.compress_with: {e}")

    archive = None
    if data.get('archive') is not None:
        archive_data = _as_mapping(data.get('archive'), f"models.{name}.archive")
        archive = ArchiveConfig(
            includes=tuple(str(p) for p in archive_data.get('includes') or []),
            excludes=tuple(str(p) for p in archive_data.get('excludes') or [])
        )

    return ModelConfig(
        name=name,
        work_dir=os.getcwd(),
        temp_path=temp_path,
        dump_path=dump_path,
        storages=tuple(storages),
        schedule=parse_schedule(data.get('schedule'), name),
        databases=tuple(_parse_sub_configs(data.get('databases'), f"models.{name}.databases")),
        archive=archive,
        compress_with=compress_with,
        default_storage=default_storage,
        webhook=parse_webhook(data.get('webhook'), f"models.{name}.webhook"),
        use_temp_work_dir=use_temp_work_dir
    )


def parse_config(raw: Dict[str, Any], config_file: str = '', temp_work_dir: Optional[str] = None) -> AgentConfig:
    """
    Build an AgentConfig snapshot from parsed YAML.

    Without a workdir the models share a temporary directory: temp_work_dir
    when given, otherwise a fresh one that is removed again if the
    configuration is rejected.

    Raises:
        ConfigError: If no model is configured or any model is invalid
    """
    raw = _as_mapping(raw, 'config')

    work_dir = str(raw.get('workdir') or '')
    if work_dir:
        return _build_config(raw, config_file, work_dir, False)

    if temp_work_dir:
        return _build_config(raw, config_file, temp_work_dir, True)

    work_dir = tempfile.mkdtemp(prefix='launch')
    try:
        return _build_config(raw, config_file, work_dir, True)
    except ConfigError:
        shutil.rmtree(work_dir, ignore_errors=True)
        raise


def _build_config(raw: Dict[str, Any], config_file: str, work_dir: str,
                  use_temp_work_dir: bool) -> AgentConfig:
    global_webhook = parse_webhook(raw.get('webhook'))

    models = []
    for name, data in _as_mapping(raw.get('models'), 'models').items():
        model = load_model(str(name), data, work_dir, use_temp_work_dir)
        if model.webhook is None and global_webhook is not None:
            model = _with_webhook(model, global_webhook)
        models.append(model)

    if not models:
        raise ConfigError(f"No model found in {config_file or 'config'}")

    pulse_data = _as_mapping(raw.get('pulse'), 'pulse')
    pulse = PulseConfig(
        enabled=bool(pulse_data.get('enabled', False)),
        interval=_parse_interval(pulse_data.get('interval'), 5, 'pulse.interval'),
        webhook=parse_webhook(pulse_data.get('webhook'), 'pulse.webhook') or global_webhook
    )

    supervisor_data = _as_mapping(raw.get('supervisor'), 'supervisor')
    defaults = SupervisorConfig()
    supervisor = SupervisorConfig(
        enabled=bool(supervisor_data.get('enabled', False)),
        socket_path=str(supervisor_data.get('socket_path') or defaults.socket_path),
        rpc_endpoint=str(supervisor_data.get('rpc_endpoint') or defaults.rpc_endpoint),
        daemons=tuple(str(d) for d in supervisor_data.get('daemons') or []),
        interval=_parse_interval(supervisor_data.get('interval'), defaults.interval, 'supervisor.interval')
    )

    return AgentConfig(
        models=tuple(models),
        pulse=pulse,
        supervisor=supervisor,
        webhook=global_webhook,
        work_dir=work_dir,
        use_temp_work_dir=use_temp_work_dir,
        config_file=config_file,
        updated_at=datetime.now()
    )


def _with_webhook(model: ModelConfig, webhook: WebhookConfig) -> ModelConfig:
    return replace(model, webhook=webhook)


def read_config_file(path: Path) -> Dict[str, Any]:
    """
    Read a config file, loading its sibling .env and expanding env vars.

    Raises:
        ConfigError: If the file cannot be read or parsed
    """
    try:
        mode = path.stat().st_mode
        if mode & stat.S_IROTH:
            logger.warning(f"Other users are able to access {path} with mode {stat.filemode(mode)}")
    except OSError as e:
        raise ConfigError(f"Cannot access config file {path}: {e}")

    dot_env = path.parent / '.env'
    if dot_env.is_file():
        load_dotenv(dot_env)

    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigError(f"Failed to read {path}: {e}")

    try:
        data = yaml.safe_load(os.path.expandvars(text))
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {path}: {e}")

    return _as_mapping(data, str(path))


class ConfigStore:
    """
    Holds the live AgentConfig snapshot.

    The snapshot is swapped atomically on reload; a failed reload keeps the
    previous snapshot. A single change subscriber is notified after every
    successful reload.
    """

    def __init__(self, config_file: Optional[str] = None):
        self.config_file = config_file
        self._snapshot = AgentConfig()
        self._lock = threading.Lock()
        self._on_change: Optional[Callable[[], Any]] = None

    @property
    def snapshot(self) -> AgentConfig:
        return self._snapshot

    @property
    def models(self):
        return self._snapshot.models

    @property
    def loaded(self) -> bool:
        return self._snapshot.updated_at is not None

    def get_model(self, name: str) -> Optional[ModelConfig]:
        return self._snapshot.get_model(name)

    def on_change(self, callback: Callable[[], Any]):
        """Register the change subscriber, replacing any previous one."""
        self._on_change = callback

    def _resolve_path(self) -> Path:
        if self.config_file:
            path = Path(self.config_file).expanduser().resolve()
            if not path.is_file():
                raise ConfigError(f"Config file not found: {self.config_file}")
            return path

        path = find_config_file()
        if path is None:
            raise ConfigError("No launch.yml found in the default search path")
        return path

    def load(self) -> AgentConfig:
        """
        Load the configuration file and replace the snapshot.

        Raises:
            ConfigError: If the file is missing or invalid
        """
        path = self._resolve_path()
        logger.info(f"Load config: {path}")

        with self._lock:
            current = self._snapshot
            temp_work_dir = current.work_dir if current.use_temp_work_dir else None
            snapshot = parse_config(read_config_file(path), str(path), temp_work_dir)
            self._snapshot = snapshot

        logger.info(f"Config loaded, found {len(snapshot.models)} models.")
        return snapshot

    def reload(self) -> bool:
        """
        Reload the configuration and notify the subscriber.

        Returns:
            True if the new configuration is active, False if it was rejected
        """
        try:
            self.load()
        except ConfigError as e:
            logger.error(f"Reload failed, keeping previous configuration: {e}")
            return False

        if self._on_change is not None:
            self._on_change()
        return True
