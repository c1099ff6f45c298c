"""
Structured Logging Setup

Configures the root logger for the control tower processes. Console output is
colored (development), plain text or JSON; file output always uses JSON so it
can be shipped to log aggregation without further parsing.
"""

import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

# Attributes present on every LogRecord; anything else came in through ``extra=``.
_RESERVED_ATTRS = frozenset(
    [
        'name',
        'msg',
        'args',
        'levelname',
        'levelno',
        'pathname',
        'filename',
        'module',
        'lineno',
        'funcName',
        'created',
        'msecs',
        'relativeCreated',
        'thread',
        'threadName',
        'processName',
        'process',
        'message',
        'exc_info',
        'exc_text',
        'stack_info',
        'taskName',
    ]
)


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    TEXT = "text"
    COLORED = "colored"


@dataclass
class LogConfig:
    """Logging configuration."""

    level: LogLevel = LogLevel.INFO
    format: LogFormat = LogFormat.COLORED
    output_file: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    include_caller_info: bool = True
    custom_fields: Dict[str, Any] = field(default_factory=dict)


class JSONFormatter(logging.Formatter):
    """JSON log formatter with structured output."""

    def __init__(self, include_caller_info: bool = True, custom_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.include_caller_info = include_caller_info
        self.custom_fields = custom_fields or {}

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if self.include_caller_info:
            log_entry.update(
                {
                    "function": record.funcName,
                    "line_number": record.lineno,
                    "module": record.module,
                }
            )

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith('_')
        }
        if extra_fields:
            log_entry["extra"] = extra_fields

        if self.custom_fields:
            log_entry.update(self.custom_fields)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ColoredFormatter(logging.Formatter):
    """Colored console formatter for development."""

    COLORS = {
        'DEBUG': '\033[36m',  # Cyan
        'INFO': '\033[32m',  # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',  # Red
        'CRITICAL': '\033[35m',  # Magenta
        'ENDC': '\033[0m',
        'BOLD': '\033[1m',
    }

    def __init__(self):
        super().__init__()
        self.format_string = "{color}{bold}[{levelname:8}]{endc} {color}{timestamp}{endc} {bold}{logger}{endc} - {message}"

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')

        formatted_message = self.format_string.format(
            color=color,
            bold=self.COLORS['BOLD'],
            endc=self.COLORS['ENDC'],
            levelname=record.levelname,
            timestamp=datetime.fromtimestamp(record.created).strftime('%H:%M:%S'),
            logger=record.name,
            message=record.getMessage(),
        )

        if record.exc_info:
            formatted_message += "\n" + self.formatException(record.exc_info)

        return formatted_message


def _build_console_formatter(config: LogConfig) -> logging.Formatter:
    if config.format == LogFormat.JSON:
        return JSONFormatter(include_caller_info=config.include_caller_info, custom_fields=config.custom_fields)
    if config.format == LogFormat.COLORED:
        return ColoredFormatter()
    return logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')


def setup_logging(config: Optional[LogConfig] = None) -> logging.Logger:
    """
    Configure the root logger.

    Previously installed handlers are removed, so calling this again (for
    instance after ``--debug`` is parsed) replaces the configuration instead of
    duplicating output.
    """
    config = config or LogConfig()
    level = getattr(logging, LogLevel(config.level).value)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(_build_console_formatter(config))
    root_logger.addHandler(console_handler)

    if config.output_file:
        file_handler = RotatingFileHandler(
            config.output_file, maxBytes=config.max_file_size, backupCount=config.backup_count
        )
        file_handler.setLevel(level)
        # Always use JSON format for file output
        file_handler.setFormatter(
            JSONFormatter(include_caller_info=config.include_caller_info, custom_fields=config.custom_fields)
        )
        root_logger.addHandler(file_handler)

    # Subprocess transports are chatty at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return root_logger
