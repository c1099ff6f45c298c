"""
Configuration Management Package

Provides schema-driven configuration for the coordinator, orchestrator and logging.
"""

from .manager import ConfigManager, ConfigSchema, ConfigValidationError, load_config_file
from .settings import (
    CoordinatorSettings,
    LoggingSettings,
    OrchestratorSettings,
    Settings,
    build_config_manager,
    load_settings,
)

__all__ = [
    'ConfigManager',
    'ConfigSchema',
    'ConfigValidationError',
    'load_config_file',
    'CoordinatorSettings',
    'OrchestratorSettings',
    'LoggingSettings',
    'Settings',
    'build_config_manager',
    'load_settings',
]
