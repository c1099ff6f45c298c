"""
Application Settings

Structured settings for the agent coordinator, the MCP orchestrator and logging,
resolved through :class:`ConfigManager` schemas.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from orchestrator.models import DEFAULT_AUTO_START, ServerConfig, build_server_configs

from .manager import ConfigManager, ConfigSchema


def _positive(value) -> bool:
    return value > 0


def _non_negative(value) -> bool:
    return value >= 0


def _unit_interval(value) -> bool:
    return 0.0 <= value <= 1.0


@dataclass
class CoordinatorSettings:
    """Agent coordinator settings. Durations are in seconds."""

    heartbeat_interval: float = 10.0
    heartbeat_timeout: float = 30.0
    max_concurrent_tasks: int = 5
    emergence_threshold: float = 0.7
    emergence_check_interval: float = 30.0
    emergence_window: float = 300.0
    default_task_timeout: float = 60.0
    enforce_task_timeouts: bool = True
    shutdown_drain_timeout: float = 30.0
    shutdown_poll_interval: float = 1.0
    max_task_history: int = 1000
    max_emergence_events: int = 100

    @classmethod
    def get_schemas(cls) -> List[ConfigSchema]:
        """Get configuration schemas for coordinator settings."""
        return [
            ConfigSchema(
                "coordinator_heartbeat_interval",
                data_type=float,
                default_value=10.0,
                validator=_positive,
                env_var="COORDINATOR_HEARTBEAT_INTERVAL",
            ),
            ConfigSchema(
                "coordinator_heartbeat_timeout",
                data_type=float,
                default_value=30.0,
                validator=_positive,
                env_var="COORDINATOR_HEARTBEAT_TIMEOUT",
            ),
            ConfigSchema(
                "coordinator_max_concurrent_tasks",
                data_type=int,
                default_value=5,
                validator=_positive,
                env_var="COORDINATOR_MAX_CONCURRENT_TASKS",
            ),
            ConfigSchema(
                "coordinator_emergence_threshold",
                data_type=float,
                default_value=0.7,
                validator=_unit_interval,
                env_var="COORDINATOR_EMERGENCE_THRESHOLD",
            ),
            ConfigSchema(
                "coordinator_emergence_check_interval",
                data_type=float,
                default_value=30.0,
                validator=_positive,
                env_var="COORDINATOR_EMERGENCE_CHECK_INTERVAL",
            ),
            ConfigSchema(
                "coordinator_emergence_window",
                data_type=float,
                default_value=300.0,
                validator=_positive,
                env_var="COORDINATOR_EMERGENCE_WINDOW",
            ),
            ConfigSchema(
                "coordinator_default_task_timeout",
                data_type=float,
                default_value=60.0,
                validator=_non_negative,
                env_var="COORDINATOR_DEFAULT_TASK_TIMEOUT",
            ),
            ConfigSchema(
                "coordinator_enforce_task_timeouts",
                data_type=bool,
                default_value=True,
                env_var="COORDINATOR_ENFORCE_TASK_TIMEOUTS",
            ),
            ConfigSchema(
                "coordinator_shutdown_drain_timeout",
                data_type=float,
                default_value=30.0,
                validator=_non_negative,
                env_var="COORDINATOR_SHUTDOWN_DRAIN_TIMEOUT",
            ),
            ConfigSchema(
                "coordinator_shutdown_poll_interval",
                data_type=float,
                default_value=1.0,
                validator=_positive,
                env_var="COORDINATOR_SHUTDOWN_POLL_INTERVAL",
            ),
            ConfigSchema(
                "coordinator_max_task_history",
                data_type=int,
                default_value=1000,
                validator=_non_negative,
                env_var="COORDINATOR_MAX_TASK_HISTORY",
            ),
            ConfigSchema(
                "coordinator_max_emergence_events",
                data_type=int,
                default_value=100,
                validator=_positive,
                env_var="COORDINATOR_MAX_EMERGENCE_EVENTS",
            ),
        ]


@dataclass
class OrchestratorSettings:
    """MCP orchestrator settings. Durations are in seconds."""

    workspace_root: Path = field(default_factory=Path.cwd)
    state_file: Optional[Path] = None
    max_restarts: int = 3
    restart_delay: float = 5.0
    health_check_interval: float = 30.0
    settle_delay: float = 2.0
    stop_timeout: float = 5.0
    restart_pause: float = 2.0
    auto_start: List[str] = field(default_factory=lambda: list(DEFAULT_AUTO_START))
    servers: Optional[Dict[str, ServerConfig]] = None

    def __post_init__(self):
        self.workspace_root = Path(self.workspace_root)
        if self.state_file is None:
            self.state_file = self.control_tower_dir / "cache" / "mcp-state.json"
        self.state_file = Path(self.state_file)
        if self.servers is None:
            self.servers = build_server_configs(workspace_root=str(self.workspace_root))

    @property
    def control_tower_dir(self) -> Path:
        return self.workspace_root / "control-tower"

    @classmethod
    def get_schemas(cls) -> List[ConfigSchema]:
        """Get configuration schemas for orchestrator settings."""
        return [
            ConfigSchema("orchestrator_workspace_root", required=False, env_var="CONTROL_TOWER_WORKSPACE"),
            ConfigSchema("orchestrator_state_file", required=False, env_var="CONTROL_TOWER_STATE_FILE"),
            ConfigSchema(
                "orchestrator_max_restarts",
                data_type=int,
                default_value=3,
                validator=_non_negative,
                env_var="ORCHESTRATOR_MAX_RESTARTS",
            ),
            ConfigSchema(
                "orchestrator_restart_delay",
                data_type=float,
                default_value=5.0,
                validator=_non_negative,
                env_var="ORCHESTRATOR_RESTART_DELAY",
            ),
            ConfigSchema(
                "orchestrator_health_check_interval",
                data_type=float,
                default_value=30.0,
                validator=_positive,
                env_var="ORCHESTRATOR_HEALTH_CHECK_INTERVAL",
            ),
            ConfigSchema(
                "orchestrator_settle_delay",
                data_type=float,
                default_value=2.0,
                validator=_non_negative,
                env_var="ORCHESTRATOR_SETTLE_DELAY",
            ),
            ConfigSchema(
                "orchestrator_stop_timeout",
                data_type=float,
                default_value=5.0,
                validator=_positive,
                env_var="ORCHESTRATOR_STOP_TIMEOUT",
            ),
            ConfigSchema(
                "orchestrator_restart_pause",
                data_type=float,
                default_value=2.0,
                validator=_non_negative,
                env_var="ORCHESTRATOR_RESTART_PAUSE",
            ),
            ConfigSchema(
                "orchestrator_auto_start",
                data_type=list,
                default_value=list(DEFAULT_AUTO_START),
                env_var="ORCHESTRATOR_AUTO_START",
            ),
            ConfigSchema("orchestrator_servers", required=False, data_type=dict),
        ]


@dataclass
class LoggingSettings:
    """Logging settings."""

    level: str = "INFO"
    format: str = "colored"
    file: Optional[str] = None

    @classmethod
    def get_schemas(cls) -> List[ConfigSchema]:
        """Get configuration schemas for logging settings."""
        return [
            ConfigSchema(
                "logging_level",
                default_value="INFO",
                validator=lambda v: v.upper() in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"),
                env_var="LOG_LEVEL",
            ),
            ConfigSchema(
                "logging_format",
                default_value="colored",
                validator=lambda v: v in ("colored", "json", "text"),
                env_var="LOG_FORMAT",
            ),
            ConfigSchema("logging_file", required=False, env_var="LOG_FILE"),
        ]


@dataclass
class Settings:
    """Main application settings container."""

    coordinator: CoordinatorSettings = field(default_factory=CoordinatorSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_config_manager(cls, config_manager: ConfigManager) -> 'Settings':
        """Create settings from a loaded configuration manager."""
        config = config_manager.config_data
        workspace_root = Path(config.get("orchestrator_workspace_root") or os.getcwd()).resolve()

        server_definitions = config.get("orchestrator_servers")
        servers = build_server_configs(server_definitions, workspace_root=str(workspace_root))

        return cls(
            coordinator=CoordinatorSettings(
                heartbeat_interval=config["coordinator_heartbeat_interval"],
                heartbeat_timeout=config["coordinator_heartbeat_timeout"],
                max_concurrent_tasks=config["coordinator_max_concurrent_tasks"],
                emergence_threshold=config["coordinator_emergence_threshold"],
                emergence_check_interval=config["coordinator_emergence_check_interval"],
                emergence_window=config["coordinator_emergence_window"],
                default_task_timeout=config["coordinator_default_task_timeout"],
                enforce_task_timeouts=config["coordinator_enforce_task_timeouts"],
                shutdown_drain_timeout=config["coordinator_shutdown_drain_timeout"],
                shutdown_poll_interval=config["coordinator_shutdown_poll_interval"],
                max_task_history=config["coordinator_max_task_history"],
                max_emergence_events=config["coordinator_max_emergence_events"],
            ),
            orchestrator=OrchestratorSettings(
                workspace_root=workspace_root,
                state_file=config.get("orchestrator_state_file"),
                max_restarts=config["orchestrator_max_restarts"],
                restart_delay=config["orchestrator_restart_delay"],
                health_check_interval=config["orchestrator_health_check_interval"],
                settle_delay=config["orchestrator_settle_delay"],
                stop_timeout=config["orchestrator_stop_timeout"],
                restart_pause=config["orchestrator_restart_pause"],
                auto_start=config["orchestrator_auto_start"],
                servers=servers,
            ),
            logging=LoggingSettings(
                level=config["logging_level"].upper(),
                format=config["logging_format"],
                file=config.get("logging_file"),
            ),
        )


def build_config_manager(environ: Optional[Mapping[str, str]] = None) -> ConfigManager:
    manager = ConfigManager(environ=environ)
    manager.register_schemas(CoordinatorSettings.get_schemas())
    manager.register_schemas(OrchestratorSettings.get_schemas())
    manager.register_schemas(LoggingSettings.get_schemas())
    return manager


def load_settings(
    config_file: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Resolve settings from schema defaults, an optional file and the environment."""
    manager = build_config_manager(environ)
    manager.load(config_file, overrides)
    return Settings.from_config_manager(manager)
