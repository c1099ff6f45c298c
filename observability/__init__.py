"""
Observability Package

Provides logging configuration for the coordinator, orchestrator and CLI.
"""

from .logging import ColoredFormatter, JSONFormatter, LogConfig, LogFormat, LogLevel, setup_logging

__all__ = [
    'LogConfig',
    'LogFormat',
    'LogLevel',
    'JSONFormatter',
    'ColoredFormatter',
    'setup_logging',
]
