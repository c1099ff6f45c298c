"""
MCP server orchestration: server models, process handling and state persistence.

The orchestrator itself lives in :mod:`orchestrator.mcp_orchestrator`.
"""

from .models import (
    DEFAULT_AUTO_START,
    DEFAULT_SERVER_DEFINITIONS,
    ServerConfig,
    ServerEntry,
    ServerState,
    build_server_configs,
    group_by_layer,
    layer_name,
)
from .process import ManagedProcess
from .state_store import PersistedState, StateStore

__all__ = [
    "ServerConfig",
    "ServerEntry",
    "ServerState",
    "DEFAULT_SERVER_DEFINITIONS",
    "DEFAULT_AUTO_START",
    "build_server_configs",
    "group_by_layer",
    "layer_name",
    "ManagedProcess",
    "PersistedState",
    "StateStore",
]
