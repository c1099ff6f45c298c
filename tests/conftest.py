"""
Pytest Configuration

Global pytest configuration, markers and shared fixtures.
"""

import sys
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from config.settings import CoordinatorSettings, OrchestratorSettings  # noqa: E402
from core.coordinator import AgentCoordinator  # noqa: E402
from orchestrator.models import build_server_configs  # noqa: E402


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on path."""
    for item in items:
        path = str(item.fspath)
        if "unit" in path:
            item.add_marker(pytest.mark.unit)
        elif "integration" in path:
            item.add_marker(pytest.mark.integration)


@pytest.fixture
def coordinator_settings():
    """Coordinator settings with short intervals."""
    return CoordinatorSettings(
        heartbeat_interval=0.05,
        heartbeat_timeout=30.0,
        max_concurrent_tasks=5,
        emergence_check_interval=0.05,
        shutdown_drain_timeout=0.2,
        shutdown_poll_interval=0.01,
    )


@pytest.fixture
def coordinator(coordinator_settings):
    """A coordinator without background loops."""
    return AgentCoordinator(coordinator_settings)


@pytest.fixture
def python_server():
    """Server definition factory running a Python snippet as the server process."""

    def _make(code: str = "import time; time.sleep(60)", layer: int = 0, critical: bool = False):
        return {"command": sys.executable, "args": ["-c", code], "layer": layer, "critical": critical}

    return _make


@pytest.fixture
def orchestrator_settings(tmp_path, python_server):
    """Orchestrator settings with three layers of sleeping servers and millisecond delays."""
    definitions = {
        "base-a": python_server(layer=0, critical=True),
        "base-b": python_server(layer=0, critical=True),
        "mid": python_server(layer=1, critical=True),
        "top": python_server(layer=2),
    }
    return OrchestratorSettings(
        workspace_root=tmp_path,
        max_restarts=2,
        restart_delay=0.05,
        health_check_interval=60.0,
        settle_delay=0.1,
        stop_timeout=2.0,
        restart_pause=0.01,
        auto_start=["base-a", "mid"],
        servers=build_server_configs(definitions, workspace_root=str(tmp_path)),
    )
