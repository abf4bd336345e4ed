"""
Engine configuration with layered resolution.

Precedence (highest to lowest):
1. Explicit keyword arguments
2. Environment variables (LOOPGRAPH_*)
3. YAML file (``engine:`` section or a bare mapping)
4. Defaults

Example usage:
    >>> from loopgraph.config import EngineConfig
    >>> config = EngineConfig.resolve("loopgraph.yaml", max_workers=4)
    >>> engine = ExecutionEngine.from_config(definition, config)
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from loopgraph.events import ERROR_POLICIES
from loopgraph.exceptions import ConfigError

logger = logging.getLogger(__name__)

ENV_MAPPING = {
    "LOOPGRAPH_MAX_WORKERS": "max_workers",
    "LOOPGRAPH_LOG_LEVEL": "log_level",
    "LOOPGRAPH_LOG_STATE_VALUES": "log_state_values",
    "LOOPGRAPH_AUTO_CHECKPOINT": "auto_checkpoint",
    "LOOPGRAPH_CHECKPOINT_DIR": "checkpoint_dir",
}

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off", "")


@dataclass
class EngineConfig:
    """
    Settings used to build an ExecutionEngine.

    Attributes:
        max_workers: Thread pool size per fork (None = executor default).
        log_level: Engine log level, as an int or a level name.
        log_state_values: Log full state values (off by default, state may hold secrets).
        auto_checkpoint: Save a checkpoint after every main-path node.
        checkpoint_dir: Local path or fsspec URL for a FileCheckpointStore.
        interrupt_before: Node names to pause before.
        interrupt_after: Node names to pause after.
        listener_error_policy: EventBus policy for failing listeners.
    """

    max_workers: Optional[int] = None
    log_level: int = logging.WARNING
    log_state_values: bool = False
    auto_checkpoint: bool = False
    checkpoint_dir: Optional[str] = None
    interrupt_before: List[str] = field(default_factory=list)
    interrupt_after: List[str] = field(default_factory=list)
    listener_error_policy: str = "log"

    def __post_init__(self):
        self.max_workers = _as_workers(self.max_workers)
        self.log_level = _as_level(self.log_level)
        self.log_state_values = _as_bool("log_state_values", self.log_state_values)
        self.auto_checkpoint = _as_bool("auto_checkpoint", self.auto_checkpoint)
        self.interrupt_before = _as_names("interrupt_before", self.interrupt_before)
        self.interrupt_after = _as_names("interrupt_after", self.interrupt_after)
        if self.checkpoint_dir is not None:
            self.checkpoint_dir = str(self.checkpoint_dir)
        if self.listener_error_policy not in ERROR_POLICIES:
            raise ConfigError(
                f"listener_error_policy must be one of {ERROR_POLICIES}, "
                f"got '{self.listener_error_policy}'"
            )

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "EngineConfig":
        """
        Build a config from a mapping.

        Raises:
            ConfigError: On unknown keys or invalid values.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigError(f"Unknown engine configuration keys: {unknown}")
        return cls(**dict(values))

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "EngineConfig":
        """Load a config from a YAML file."""
        return cls.from_dict(load_yaml_settings(path))

    @classmethod
    def resolve(cls, path: Optional[Union[str, Path]] = None, **overrides: Any) -> "EngineConfig":
        """
        Resolve a config from defaults, an optional YAML file, the environment
        and explicit overrides (None overrides are ignored).
        """
        values: Dict[str, Any] = {}
        if path is not None:
            values.update(load_yaml_settings(path))

        for env_var, key in ENV_MAPPING.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                values[key] = env_value

        for key, value in overrides.items():
            if value is not None:
                values[key] = value

        config = cls.from_dict(values)
        logger.debug(
            f"Engine configuration resolved: max_workers={config.max_workers}, "
            f"log_level={logging.getLevelName(config.log_level)}, "
            f"auto_checkpoint={config.auto_checkpoint}, "
            f"checkpoint_dir={config.checkpoint_dir or 'none'}"
        )
        return config


def load_yaml_settings(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read the engine settings mapping from a YAML file.

    Raises:
        ConfigError: If the file is missing, unparsable or not a mapping.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Configuration file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigError(f"Configuration in {path} must be a mapping, got {type(document).__name__}")
    settings = document.get("engine", document)
    if not isinstance(settings, dict):
        raise ConfigError(f"'engine' section in {path} must be a mapping")
    return dict(settings)


def _as_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in _TRUE + _FALSE:
        return value.strip().lower() in _TRUE
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _as_workers(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        workers = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"max_workers must be an integer, got {value!r}") from e
    if isinstance(value, bool) or workers < 1:
        raise ConfigError(f"max_workers must be a positive integer, got {value!r}")
    return workers


def _as_level(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
        level = logging.getLevelName(text.upper())
        if isinstance(level, int):
            return level
    raise ConfigError(f"log_level must be a logging level, got {value!r}")


def _as_names(name: str, value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return list(value)
    raise ConfigError(f"{name} must be a list of node names, got {value!r}")
