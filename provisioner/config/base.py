"""Base configuration module for environment loading and overlays."""
from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional, Set, Type, TypeVar

from dotenv import load_dotenv

from ..utils.paths import read_json

logger = logging.getLogger(__name__)


# Configuration overlay priorities
class ConfigPriority(Enum):
    """Configuration priority levels for overlay system."""

    DEFAULTS = 0
    FILE = 1
    ENVIRONMENT = 2
    CLI = 3


T = TypeVar("T", bound="BaseConfig")


@dataclass
class ConfigurationSchema:
    """Schema definition for configuration validation."""

    name: str
    required_fields: Set[str] = field(default_factory=set)
    validators: Dict[str, Callable[[Any], bool]] = field(default_factory=dict)

    def validate(self, config: Dict[str, Any]) -> bool:
        """Validate configuration against schema.

        Args:
            config: Configuration dictionary to validate

        Returns:
            True if valid

        Raises:
            ValueError: If validation fails
        """
        for field_name in self.required_fields:
            if field_name not in config:
                raise ValueError(f"Required field '{field_name}' missing in {self.name}")

        for field_name, validator_fn in self.validators.items():
            if field_name in config and not validator_fn(config[field_name]):
                raise ValueError(
                    f"Validation failed for field '{field_name}' in {self.name}: "
                    f"{config[field_name]!r}"
                )

        return True


class BaseConfig(ABC):
    """Abstract base class for configuration modules.

    Values resolve from the highest overlay that defines them (CLI, then
    ENVIRONMENT, then FILE, then DEFAULTS), falling back to the process
    environment and finally to the caller's default.
    """

    _instances: Dict[Type, Any] = {}
    _lock = Lock()
    _config_overlays: Dict[ConfigPriority, Dict[str, Any]] = {}

    def __init__(self):
        """Initialize configuration with environment loading."""
        self._load_environment()
        self._schema: Optional[ConfigurationSchema] = None

    @classmethod
    def get_instance(cls: Type[T]) -> T:
        """Get singleton instance of configuration class (thread-safe).

        Returns:
            Singleton instance of the configuration class
        """
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    cls._instances[cls] = cls()
        return cls._instances[cls]

    @classmethod
    def reset(cls) -> None:
        """Drop cached instances and all overlays."""
        with cls._lock:
            cls._instances.clear()
            cls._config_overlays.clear()

    def _load_environment(self) -> None:
        """Load a .env file from the current or parent directory, if present."""
        for env_path in (Path(".env"), Path("../.env")):
            if env_path.exists():
                load_dotenv(env_path, override=False)
                logger.debug(f"Loaded environment from {env_path}")
                break

    @abstractmethod
    def get_schema(self) -> ConfigurationSchema:
        """Get configuration schema for validation."""

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""

    def validate(self) -> bool:
        """Validate configuration against schema.

        Raises:
            ValueError: If validation fails
        """
        if self._schema is None:
            self._schema = self.get_schema()
        return self._schema.validate(self.to_dict())

    @classmethod
    def set_overlay(cls, priority: ConfigPriority, config: Dict[str, Any]) -> None:
        """Set configuration overlay at specified priority.

        None values are dropped so an unset CLI option never hides a lower layer.
        """
        cls._config_overlays[priority] = {k: v for k, v in config.items() if v is not None}

    @classmethod
    def load_file(cls, path: Path) -> None:
        """Load a JSON settings file into the FILE overlay.

        Raises:
            ValueError: If the file is not a JSON object
        """
        data = read_json(Path(path))
        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {path} must contain a JSON object")
        cls.set_overlay(ConfigPriority.FILE, {str(k).upper(): v for k, v in data.items()})
        logger.debug(f"Loaded configuration file {path}")

    @classmethod
    def get_value(cls, key: str, default: Any = None) -> Any:
        """Get configuration value with overlay priority.

        Args:
            key: Configuration key (environment variable name)
            default: Default value if not found
        """
        for priority in (ConfigPriority.CLI, ConfigPriority.ENVIRONMENT):
            overlay = cls._config_overlays.get(priority, {})
            if key in overlay:
                return overlay[key]

        env_value = os.getenv(key.upper())
        if env_value is not None:
            return env_value

        for priority in (ConfigPriority.FILE, ConfigPriority.DEFAULTS):
            overlay = cls._config_overlays.get(priority, {})
            if key in overlay:
                return overlay[key]

        return default

    @staticmethod
    def parse_bool(value: Any) -> bool:
        """Parse boolean value from various formats."""
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on", "enabled")
        return bool(value)

    @staticmethod
    def parse_list(value: Any, delimiter: str = ",") -> list:
        """Parse list value from string or return as-is if already a list.

        Args:
            value: Value to parse
            delimiter: String delimiter

        Returns:
            List value
        """
        if isinstance(value, (list, tuple)):
            return list(value)
        if isinstance(value, str):
            return [item.strip() for item in value.split(delimiter) if item.strip()]
        return [value] if value is not None else []
