"""
Configuration Manager

Schema-driven configuration: every setting is declared once with its type,
default and environment variable. Values are merged from schema defaults, an
optional YAML/JSON file and the process environment (highest precedence), then
validated and coerced to the declared types.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import yaml

from utils.error_handling import ErrorCategory, ErrorSeverity, ControlTowerError

logger = logging.getLogger(__name__)


class ConfigValidationError(ControlTowerError):
    """Configuration validation error."""

    def __init__(self, message: str, config_key: str = None, config_value: Any = None):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION_ERROR,
            severity=ErrorSeverity.HIGH,
            details={"config_key": config_key, "config_value": str(config_value)},
            recoverable=False,
        )
        self.config_key = config_key


@dataclass
class ConfigSchema:
    """Configuration schema definition."""

    key: str
    required: bool = False
    data_type: type = str
    default_value: Any = None
    validator: Optional[Callable[[Any], bool]] = None
    description: str = ""
    env_var: Optional[str] = None

    def validate(self, value: Any) -> Any:
        """Validate configuration value."""
        if value is None:
            if self.required:
                raise ConfigValidationError(f"Required configuration key '{self.key}' is missing", self.key)
            return self.default_value

        try:
            if self.data_type == bool and isinstance(value, str):
                value = value.strip().lower() in ("true", "1", "yes", "on")
            elif self.data_type == int:
                value = int(value)
            elif self.data_type == float:
                value = float(value)
            elif self.data_type == list and isinstance(value, str):
                value = [item.strip() for item in value.split(",") if item.strip()]
            elif self.data_type == dict:
                if not isinstance(value, Mapping):
                    raise TypeError(f"expected mapping, got {type(value).__name__}")
                value = dict(value)
            else:
                value = self.data_type(value)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"Invalid type for '{self.key}': expected {self.data_type.__name__}, got {type(value).__name__}",
                self.key,
                value,
            )

        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Validation failed for '{self.key}' with value '{value}'", self.key, value)

        return value


def load_config_file(file_path: Union[str, Path]) -> Dict[str, Any]:
    """Load a YAML or JSON configuration file. A missing file yields an empty mapping."""
    path = Path(file_path)
    if not path.exists():
        logger.warning(f"Configuration file not found: {path}")
        return {}

    try:
        with open(path, 'r', encoding='utf-8') as f:
            if path.suffix == '.json':
                data = json.load(f)
            elif path.suffix in ('.yaml', '.yml'):
                data = yaml.safe_load(f) or {}
            else:
                raise ConfigValidationError(f"Unsupported config file format: {path}")
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        logger.error(f"Error loading config file {path}: {e}")
        raise ConfigValidationError(f"Failed to load config file: {path}") from e

    if not isinstance(data, dict):
        raise ConfigValidationError(f"Configuration file {path} must contain a mapping at the top level")
    return data


class ConfigManager:
    """Collects schemas and resolves their values."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.schemas: Dict[str, ConfigSchema] = {}
        self.environ = os.environ if environ is None else environ
        self.config_data: Dict[str, Any] = {}

    def register_schema(self, schema: ConfigSchema):
        """Register configuration schema."""
        self.schemas[schema.key] = schema

    def register_schemas(self, schemas: List[ConfigSchema]):
        """Register multiple configuration schemas."""
        for schema in schemas:
            self.register_schema(schema)

    def load(self, config_file: Optional[Union[str, Path]] = None, overrides: Optional[Dict[str, Any]] = None):
        """
        Resolve every registered schema.

        Nested file sections are flattened with ``_`` (``coordinator:
        heartbeat_interval`` becomes ``coordinator_heartbeat_interval``) unless
        the section itself is a registered dict-typed key.
        """
        merged: Dict[str, Any] = {}
        if config_file:
            merged.update(self._flatten(load_config_file(config_file)))

        merged.update(self._load_env_overrides())
        if overrides:
            merged.update(overrides)

        unknown = sorted(key for key in merged if key not in self.schemas)
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {', '.join(unknown)}")

        self.config_data = {key: schema.validate(merged.get(key)) for key, schema in self.schemas.items()}
        logger.debug(f"Loaded {len(self.config_data)} configuration values")
        return self.config_data

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self.config_data.get(key, default)

    def _flatten(self, data: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
        flat = {}
        for key, value in data.items():
            full_key = f"{prefix}{key}"
            if isinstance(value, dict) and full_key not in self.schemas:
                flat.update(self._flatten(value, f"{full_key}_"))
            else:
                flat[full_key] = value
        return flat

    def _load_env_overrides(self) -> Dict[str, Any]:
        """Load configuration overrides from environment variables."""
        overrides = {}

        for key, schema in self.schemas.items():
            if schema.env_var:
                env_value = self.environ.get(schema.env_var)
                if env_value is not None:
                    overrides[key] = env_value

        return overrides
