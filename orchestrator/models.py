"""
MCP Server Data Models

Server lifecycle states, static launch configuration and the runtime entry the
orchestrator keeps for each server.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from utils.error_handling import ValidationError


class ServerState(str, Enum):
    """Server lifecycle states"""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"
    RESTARTING = "restarting"


@dataclass
class ServerConfig:
    """Static launch configuration of one MCP server"""

    command: str
    args: List[str] = field(default_factory=list)
    layer: int = 0
    critical: bool = False
    env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any], workspace_root: str = ".") -> 'ServerConfig':
        """Build a config from a mapping, substituting ``{workspace_root}`` in arguments."""
        if not isinstance(data, Mapping):
            raise ValidationError(f"Server '{name}' configuration must be a mapping", field=name)

        command = data.get("command")
        if not command or not isinstance(command, str):
            raise ValidationError(f"Server '{name}' requires a command", field=f"{name}.command")

        args = data.get("args", [])
        if not isinstance(args, (list, tuple)):
            raise ValidationError(f"Server '{name}' args must be a list", field=f"{name}.args")

        try:
            layer = int(data.get("layer", 0))
        except (TypeError, ValueError):
            raise ValidationError(f"Server '{name}' layer must be an integer", field=f"{name}.layer")
        if layer < 0:
            raise ValidationError(f"Server '{name}' layer must not be negative", field=f"{name}.layer")

        return cls(
            command=command,
            args=[str(arg).replace("{workspace_root}", workspace_root) for arg in args],
            layer=layer,
            critical=bool(data.get("critical", False)),
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'command': self.command,
            'args': list(self.args),
            'layer': self.layer,
            'critical': self.critical,
            'env': dict(self.env),
        }


@dataclass
class ServerEntry:
    """Runtime record of a configured server"""

    name: str
    config: ServerConfig
    state: ServerState = ServerState.STOPPED
    started_at: Optional[float] = None
    stopped_at: Optional[float] = None
    command_issued_at: Optional[float] = None
    last_exit_code: Optional[int] = None
    last_error: Optional[str] = None

    @property
    def uptime(self) -> float:
        """Seconds since the server was last marked running, 0 when not running"""
        if self.state == ServerState.RUNNING and self.started_at:
            return time.time() - self.started_at
        return 0.0


def layer_name(layer: int) -> str:
    return f"LAYER_{layer}"


def group_by_layer(configs: Mapping[str, ServerConfig]) -> Dict[int, List[str]]:
    """Map layer number to server names, layers ascending, names in configuration order"""
    tiers: Dict[int, List[str]] = {}
    for name, config in configs.items():
        tiers.setdefault(config.layer, []).append(name)
    return dict(sorted(tiers.items()))


# Built-in catalogue. Layer 0 primitives have no dependencies, layer 1 builds on
# layer 0, layer 2 on both.
DEFAULT_SERVER_DEFINITIONS: Dict[str, Dict[str, Any]] = {
    "filesystem": {
        "command": "npx",
        "args": ["-y", "@modelcontextprotocol/server-filesystem", "{workspace_root}"],
        "layer": 0,
        "critical": True,
    },
    "memory": {
        "command": "npx",
        "args": ["-y", "@modelcontextprotocol/server-memory"],
        "layer": 0,
        "critical": True,
    },
    "git": {
        "command": "npx",
        "args": ["-y", "@modelcontextprotocol/server-git", "--repository", "{workspace_root}"],
        "layer": 1,
        "critical": True,
    },
    "github": {
        "command": "npx",
        "args": ["-y", "@modelcontextprotocol/server-github"],
        "layer": 1,
        "critical": False,
    },
    "brave-search": {
        "command": "uvx",
        "args": ["mcp-server-brave-search"],
        "layer": 1,
        "critical": False,
    },
    "sequential-thinking": {
        "command": "npx",
        "args": ["-y", "@modelcontextprotocol/server-sequential-thinking"],
        "layer": 2,
        "critical": True,
    },
    "postgres": {
        "command": "uvx",
        "args": ["mcp-server-postgres"],
        "layer": 2,
        "critical": False,
    },
    "everything": {
        "command": "npx",
        "args": ["-y", "@modelcontextprotocol/server-everything"],
        "layer": 2,
        "critical": False,
    },
}

DEFAULT_AUTO_START = ["filesystem", "memory", "git"]


def build_server_configs(
    definitions: Optional[Mapping[str, Mapping[str, Any]]] = None, workspace_root: str = "."
) -> Dict[str, ServerConfig]:
    """Parse server definitions, falling back to the built-in catalogue"""
    definitions = DEFAULT_SERVER_DEFINITIONS if definitions is None else definitions
    return {name: ServerConfig.from_dict(name, data, workspace_root) for name, data in definitions.items()}
