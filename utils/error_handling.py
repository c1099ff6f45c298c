"""
Error Handling

Exception hierarchy shared by the agent coordinator, the MCP server orchestrator
and the configuration layer. Every error carries a category and severity so that
callers (CLI, dashboards) can surface it without parsing messages.
"""

import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(str, Enum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Error categories for classification."""

    VALIDATION_ERROR = "validation_error"
    NOT_FOUND_ERROR = "not_found_error"
    PROCESS_ERROR = "process_error"
    STATE_ERROR = "state_error"
    CONFIGURATION_ERROR = "configuration_error"
    UNKNOWN_ERROR = "unknown_error"


class ControlTowerError(Exception):
    """Base exception class for control tower errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN_ERROR,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        details: Dict[str, Any] = None,
        operation: str = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.operation = operation
        self.recoverable = recoverable
        self.timestamp = datetime.now()
        self.error_id = f"{category.value}_{int(time.time() * 1000)}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation"""
        return {
            "error_id": self.error_id,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "details": self.details,
            "operation": self.operation,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp.isoformat(),
        }


class ValidationError(ControlTowerError):
    """Malformed input to a registration, submission or configuration call."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION_ERROR,
            severity=ErrorSeverity.LOW,
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.field = field


class ServerNotFoundError(ControlTowerError):
    """Server name missing from the orchestrator registry."""

    def __init__(self, name: str, **kwargs):
        super().__init__(
            f"Server '{name}' not found in registry",
            category=ErrorCategory.NOT_FOUND_ERROR,
            details={"server": name},
            recoverable=False,
            **kwargs,
        )
        self.server = name


class ProcessLaunchError(ControlTowerError):
    """A server process could not be spawned or died while starting."""

    def __init__(self, message: str, server: str, exit_code: Optional[int] = None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.PROCESS_ERROR,
            severity=ErrorSeverity.HIGH,
            details={"server": server, "exit_code": exit_code},
            operation="start",
            **kwargs,
        )
        self.server = server
        self.exit_code = exit_code


class ProcessStopError(ControlTowerError):
    """A server process could not be signalled."""

    def __init__(self, message: str, server: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.PROCESS_ERROR,
            severity=ErrorSeverity.HIGH,
            details={"server": server},
            operation="stop",
            **kwargs,
        )
        self.server = server


class OrchestratorStateError(ControlTowerError):
    """Operation invoked in the wrong orchestrator lifecycle phase."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.STATE_ERROR, severity=ErrorSeverity.MEDIUM, **kwargs)
