"""
Job Queue Configuration

Defaults, environment overrides and optional YAML configuration for the
job queue and its storage backend.

Precedence: dataclass defaults < YAML file < environment variables.

Example YAML:

    job_queue:
      concurrency: 4
      timeout_ms: 600000
      retries: 2
      autostart: true
    storage:
      type: file
      file_path: ./data
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from .exceptions import ConfigError

logger = logging.getLogger("job_config")

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
DEFAULT_CONCURRENCY = 2
DEFAULT_TIMEOUT_MS = 30 * 60 * 1000  # 30 minutes
DEFAULT_RETRIES = 3
DEFAULT_SWEEP_INTERVAL_MS = 1000
DEFAULT_STORAGE_TYPE = "file"
DEFAULT_STORAGE_PATH = "./data"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Environment variable -> config field
ENV_VARS = {
    "JOB_QUEUE_CONCURRENCY": "concurrency",
    "JOB_QUEUE_TIMEOUT": "timeout_ms",
    "JOB_QUEUE_RETRIES": "retries",
    "JOB_QUEUE_AUTOSTART": "autostart",
    "JOB_QUEUE_SWEEP_INTERVAL": "sweep_interval_ms",
    "STORAGE_TYPE": "storage_type",
    "STORAGE_FILE_PATH": "storage_path",
    "LOG_LEVEL": "log_level",
}

# YAML section/key -> config field
YAML_KEYS = {
    ("job_queue", "concurrency"): "concurrency",
    ("job_queue", "timeout_ms"): "timeout_ms",
    ("job_queue", "timeout"): "timeout_ms",
    ("job_queue", "retries"): "retries",
    ("job_queue", "autostart"): "autostart",
    ("job_queue", "sweep_interval_ms"): "sweep_interval_ms",
    ("storage", "type"): "storage_type",
    ("storage", "file_path"): "storage_path",
    ("logging", "level"): "log_level",
}


@dataclass
class QueueConfig:
    """Job queue settings."""
    concurrency: int = DEFAULT_CONCURRENCY
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    retries: int = DEFAULT_RETRIES
    autostart: bool = True
    sweep_interval_ms: int = DEFAULT_SWEEP_INTERVAL_MS
    storage_type: str = DEFAULT_STORAGE_TYPE
    storage_path: str = DEFAULT_STORAGE_PATH
    log_level: str = "INFO"

    def validate(self) -> "QueueConfig":
        """Raise ConfigError if any value is out of range."""
        errors = []
        if self.concurrency < 1:
            errors.append(f"concurrency must be >= 1 (got {self.concurrency})")
        if self.timeout_ms <= 0:
            errors.append(f"timeout_ms must be > 0 (got {self.timeout_ms})")
        if self.retries < 0:
            errors.append(f"retries must be >= 0 (got {self.retries})")
        if self.sweep_interval_ms <= 0:
            errors.append(f"sweep_interval_ms must be > 0 (got {self.sweep_interval_ms})")
        if not self.storage_type:
            errors.append("storage_type must not be empty")
        if not isinstance(logging.getLevelName(str(self.log_level).upper()), int):
            errors.append(f"log_level must be a logging level name (got {self.log_level!r})")
        if errors:
            raise ConfigError(errors)
        return self

    def with_overrides(self, **overrides: Any) -> "QueueConfig":
        """Return a copy with the given fields replaced (values are coerced)."""
        data = self.to_dict()
        for key, value in overrides.items():
            if key not in data:
                raise ConfigError([f"unknown config field: {key}"])
            data[key] = _coerce(key, value)
        return QueueConfig(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _coerce(field_name: str, value: Any) -> Any:
    """Coerce a raw (env/YAML) value to the type of the config field."""
    if field_name == "autostart":
        if isinstance(value, bool):
            return value
        # Only an explicit "false" disables autostart
        return str(value).strip().lower() not in ("false", "0", "no", "off")
    if field_name in ("concurrency", "timeout_ms", "retries", "sweep_interval_ms"):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError([f"{field_name} must be an integer (got {value!r})"])
    return str(value)


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Read config overrides from a YAML file."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError([f"cannot read config file {path}: {e}"])

    if not isinstance(data, dict):
        raise ConfigError([f"config file {path} must contain a mapping"])

    overrides: Dict[str, Any] = {}
    for (section, key), field_name in YAML_KEYS.items():
        section_data = data.get(section)
        if isinstance(section_data, dict) and key in section_data:
            overrides[field_name] = section_data[key]
    return overrides


def load_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> QueueConfig:
    """
    Build the queue configuration.

    Args:
        path: Optional YAML config file
        environ: Environment mapping (defaults to os.environ)

    Returns:
        A validated QueueConfig
    """
    env = os.environ if environ is None else environ
    config = QueueConfig()

    if path is not None:
        config = config.with_overrides(**_load_yaml(Path(path)))
        logger.debug(f"Loaded config file {path}")

    env_overrides = {
        field_name: env[var]
        for var, field_name in ENV_VARS.items()
        if env.get(var) not in (None, "")
    }
    if env_overrides:
        config = config.with_overrides(**env_overrides)

    return config.validate()


def configure_logging(config: Optional[QueueConfig] = None) -> None:
    """
    Configure root logging for an entrypoint at config.log_level.

    Without a config the level comes from load_config(), so LOG_LEVEL and
    the YAML logging section both apply.
    """
    config = config or load_config()
    level = logging.getLevelName(config.log_level.upper())
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # basicConfig is a no-op once handlers exist
    logging.getLogger().setLevel(level)
