"""
Utilities Package

Provides the shared error hierarchy.
"""

from .error_handling import (
    ControlTowerError,
    ErrorCategory,
    ErrorSeverity,
    OrchestratorStateError,
    ProcessLaunchError,
    ProcessStopError,
    ServerNotFoundError,
    ValidationError,
)

__all__ = [
    'ControlTowerError',
    'ValidationError',
    'ServerNotFoundError',
    'ProcessLaunchError',
    'ProcessStopError',
    'OrchestratorStateError',
    'ErrorCategory',
    'ErrorSeverity',
]
