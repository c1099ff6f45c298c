"""
Integration Tests for the MCP Orchestrator

Servers are short-lived Python interpreters, so these tests exercise real
process spawning, signalling and exit supervision.
"""

import asyncio
import contextlib
import dataclasses
import json
import sys

import pytest

from orchestrator.mcp_orchestrator import MCPOrchestrator
from orchestrator.models import ServerState, build_server_configs
from utils.error_handling import OrchestratorStateError, ProcessLaunchError, ServerNotFoundError

SLEEP_FOREVER = "import time; time.sleep(60)"


@contextlib.asynccontextmanager
async def running_orchestrator(settings):
    orchestrator = MCPOrchestrator(settings)
    events = []
    orchestrator.on("*", lambda event: events.append((event.name, event.data)))
    await orchestrator.initialize()
    try:
        yield orchestrator, events
    finally:
        await orchestrator.shutdown()


async def wait_until(predicate, timeout: float = 10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


def with_servers(settings, definitions, **overrides):
    servers = build_server_configs(definitions, workspace_root=str(settings.workspace_root))
    return dataclasses.replace(settings, servers=servers, **overrides)


def server_events(events, name):
    return [event for event, data in events if isinstance(data, dict) and data.get("name") == name]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_requires_initialize(self, orchestrator_settings):
        orchestrator = MCPOrchestrator(orchestrator_settings)

        with pytest.raises(OrchestratorStateError):
            await orchestrator.start()

    @pytest.mark.asyncio
    async def test_initialize_creates_directories(self, orchestrator_settings):
        async with running_orchestrator(orchestrator_settings):
            base = orchestrator_settings.workspace_root / "control-tower"
            assert (base / "cache").is_dir()
            assert (base / "logs").is_dir()
            assert (base / "reports").is_dir()

    @pytest.mark.asyncio
    async def test_initialize_twice_and_concurrently(self, orchestrator_settings):
        orchestrator = MCPOrchestrator(orchestrator_settings)
        results = await asyncio.gather(orchestrator.initialize(), orchestrator.initialize(), return_exceptions=True)
        try:
            assert results[0] is None
            assert isinstance(results[1], OrchestratorStateError)

            await orchestrator.initialize()
            assert orchestrator.initialized is True
        finally:
            await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_tiers(self, orchestrator_settings):
        async with running_orchestrator(orchestrator_settings) as (orchestrator, _):
            assert orchestrator.tiers == {0: ["base-a", "base-b"], 1: ["mid"], 2: ["top"]}


class TestStartStop:
    @pytest.mark.asyncio
    async def test_start_all_is_layer_ordered(self, orchestrator_settings):
        async with running_orchestrator(orchestrator_settings) as (orchestrator, events):
            await orchestrator.start()

            servers = orchestrator.servers
            assert all(entry.state == ServerState.RUNNING for entry in servers.values())

            issued = {name: entry.command_issued_at for name, entry in servers.items()}
            assert max(issued["base-a"], issued["base-b"]) < issued["mid"] < issued["top"]

            started = [data["name"] for event, data in events if event == "server-started"]
            assert started.index("mid") > max(started.index("base-a"), started.index("base-b"))
            assert started.index("top") > started.index("mid")
            assert ("all-servers-started", {"servers": ["base-a", "base-b", "mid", "top"]}) in events

            report = orchestrator.health()
            assert report["overall"] == "healthy"
            assert report["servers"]["mid"]["pid"] == orchestrator.processes["mid"].pid
            assert report["servers"]["mid"]["resources"]["memory_mb"] > 0

    @pytest.mark.asyncio
    async def test_stop_all_is_reverse_layer_ordered(self, orchestrator_settings):
        async with running_orchestrator(orchestrator_settings) as (orchestrator, events):
            await orchestrator.start()
            events.clear()

            await orchestrator.stop()

            stopped = [data["name"] for event, data in events if event == "server-stopped"]
            assert stopped[0] == "top"
            assert stopped[1] == "mid"
            assert sorted(stopped[2:]) == ["base-a", "base-b"]
            assert orchestrator.processes == {}
            assert all(entry.state == ServerState.STOPPED for entry in orchestrator.servers.values())
            assert all(entry.stopped_at is not None for entry in orchestrator.servers.values())
            assert orchestrator.health()["overall"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_start_named_servers(self, orchestrator_settings):
        async with running_orchestrator(orchestrator_settings) as (orchestrator, _):
            await orchestrator.start(["top", "base-a"])

            running = {name for name, entry in orchestrator.servers.items() if entry.state == ServerState.RUNNING}
            assert running == {"top", "base-a"}

    @pytest.mark.asyncio
    async def test_start_auto(self, orchestrator_settings):
        async with running_orchestrator(orchestrator_settings) as (orchestrator, _):
            await orchestrator.start_auto()

            assert set(orchestrator.processes) == {"base-a", "mid"}

    @pytest.mark.asyncio
    async def test_start_unknown_server(self, orchestrator_settings):
        async with running_orchestrator(orchestrator_settings) as (orchestrator, _):
            with pytest.raises(ServerNotFoundError):
                await orchestrator.start("ghost")

    @pytest.mark.asyncio
    async def test_start_running_server_is_noop(self, orchestrator_settings):
        async with running_orchestrator(orchestrator_settings) as (orchestrator, _):
            await orchestrator.start("base-a")
            pid = orchestrator.processes["base-a"].pid

            await orchestrator.start("base-a")

            assert orchestrator.processes["base-a"].pid == pid

    @pytest.mark.asyncio
    async def test_restart_gives_new_process(self, orchestrator_settings):
        async with running_orchestrator(orchestrator_settings) as (orchestrator, _):
            await orchestrator.start("mid")
            pid = orchestrator.processes["mid"].pid

            await orchestrator.restart("mid")

            assert orchestrator.servers["mid"].state == ServerState.RUNNING
            assert orchestrator.processes["mid"].pid != pid

    @pytest.mark.asyncio
    async def test_stop_unknown_or_idle_server(self, orchestrator_settings):
        async with running_orchestrator(orchestrator_settings) as (orchestrator, _):
            await orchestrator.stop("ghost")
            await orchestrator.stop("base-a")

            assert orchestrator.servers["base-a"].state == ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_missing_executable(self, orchestrator_settings):
        settings = with_servers(orchestrator_settings, {"broken": {"command": "/nonexistent/server-binary"}})
        async with running_orchestrator(settings) as (orchestrator, events):
            with pytest.raises(ProcessLaunchError):
                await orchestrator.start()

            assert orchestrator.servers["broken"].state == ServerState.ERROR
            assert "server-error" in server_events(events, "broken")

    @pytest.mark.asyncio
    async def test_failed_layer_stops_higher_layers(self, orchestrator_settings, python_server):
        settings = with_servers(
            orchestrator_settings,
            {
                "crash": python_server("import sys; sys.exit(2)", layer=0),
                "ok": python_server(SLEEP_FOREVER, layer=0),
                "upper": python_server(SLEEP_FOREVER, layer=1),
            },
            settle_delay=1.0,
        )
        async with running_orchestrator(settings) as (orchestrator, _):
            with pytest.raises(ProcessLaunchError) as exc_info:
                await orchestrator.start()

            assert exc_info.value.exit_code == 2
            assert orchestrator.servers["crash"].state == ServerState.ERROR
            assert orchestrator.servers["ok"].state == ServerState.RUNNING
            assert orchestrator.servers["upper"].command_issued_at is None

    @pytest.mark.asyncio
    async def test_sigterm_ignored_escalates_to_kill(self, orchestrator_settings, python_server):
        code = "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(60)"
        settings = with_servers(
            orchestrator_settings, {"stubborn": python_server(code)}, settle_delay=1.0, stop_timeout=0.3
        )
        async with running_orchestrator(settings) as (orchestrator, _):
            await orchestrator.start()

            await orchestrator.stop("stubborn")

            entry = orchestrator.servers["stubborn"]
            assert entry.state == ServerState.STOPPED
            assert entry.last_exit_code == -9
            assert "stubborn" not in orchestrator.processes


    @pytest.mark.asyncio
    async def test_stop_after_long_output_line(self, orchestrator_settings, python_server):
        code = "import time; print('x' * 200000, flush=True); time.sleep(60)"
        settings = with_servers(orchestrator_settings, {"chatty": python_server(code)}, settle_delay=0.5)
        async with running_orchestrator(settings) as (orchestrator, events):
            await orchestrator.start()

            await orchestrator.stop("chatty")

            assert orchestrator.servers["chatty"].state == ServerState.STOPPED
            assert "chatty" not in orchestrator.processes
            assert "server-stopped" in server_events(events, "chatty")


class TestSupervision:
    @pytest.mark.asyncio
    async def test_critical_server_is_restarted(self, orchestrator_settings, python_server, tmp_path):
        marker = tmp_path / "ran-once"
        code = (
            "import os, sys, time\n"
            f"marker = {str(marker)!r}\n"
            "first = not os.path.exists(marker)\n"
            "open(marker, 'a').close()\n"
            "time.sleep(0.4 if first else 60)\n"
            "sys.exit(1)\n"
        )
        settings = with_servers(orchestrator_settings, {"flaky": python_server(code, critical=True)})
        async with running_orchestrator(settings) as (orchestrator, events):
            await orchestrator.start()
            first_pid = orchestrator.processes["flaky"].pid

            await wait_until(lambda: "flaky" in orchestrator.processes and orchestrator.processes["flaky"].pid != first_pid)
            await wait_until(lambda: orchestrator.servers["flaky"].state == ServerState.RUNNING)

            assert orchestrator.restart_counts["flaky"] == 1
            assert server_events(events, "flaky") == [
                "server-starting",
                "server-started",
                "server-restarting",
                "server-starting",
                "server-started",
            ]

            await wait_until(lambda: "flaky" in json.loads(settings.state_file.read_text())["runningServers"])
            persisted = json.loads(settings.state_file.read_text())
            assert persisted["restartCounts"]["flaky"] == 1

    @pytest.mark.asyncio
    async def test_long_output_line_then_crash_is_restarted(self, orchestrator_settings, python_server, tmp_path):
        marker = tmp_path / "ran-once"
        code = (
            "import os, sys, time\n"
            f"marker = {str(marker)!r}\n"
            "first = not os.path.exists(marker)\n"
            "open(marker, 'a').close()\n"
            "print('x' * 200000, flush=True)\n"
            "time.sleep(0.4 if first else 60)\n"
            "sys.exit(3)\n"
        )
        settings = with_servers(orchestrator_settings, {"chatty": python_server(code, critical=True)})
        async with running_orchestrator(settings) as (orchestrator, _):
            await orchestrator.start()

            await wait_until(lambda: orchestrator.restart_counts.get("chatty") == 1)
            await wait_until(lambda: orchestrator.servers["chatty"].state == ServerState.RUNNING)

            assert orchestrator.servers["chatty"].last_exit_code == 3
            assert orchestrator.health()["overall"] == "healthy"

    @pytest.mark.asyncio
    async def test_restart_cap_leaves_server_in_error(self, orchestrator_settings, python_server):
        code = "import sys, time; time.sleep(0.4); sys.exit(1)"
        settings = with_servers(orchestrator_settings, {"crashy": python_server(code, critical=True)})
        async with running_orchestrator(settings) as (orchestrator, events):
            await orchestrator.start()

            await wait_until(lambda: orchestrator.servers["crashy"].state == ServerState.ERROR)

            assert orchestrator.restart_counts["crashy"] == settings.max_restarts
            assert server_events(events, "crashy").count("server-restarting") == settings.max_restarts
            assert server_events(events, "crashy")[-1] == "server-error"

            # No further attempts once the cap is reached
            await asyncio.sleep(0.6)
            assert orchestrator.servers["crashy"].state == ServerState.ERROR
            assert "crashy" not in orchestrator.processes

    @pytest.mark.asyncio
    async def test_failed_relaunch_marks_error(self, orchestrator_settings, python_server, tmp_path):
        marker = tmp_path / "ran-once"
        code = (
            "import os, sys, time\n"
            f"marker = {str(marker)!r}\n"
            "if os.path.exists(marker):\n"
            "    sys.exit(3)\n"
            "open(marker, 'a').close()\n"
            "time.sleep(1.5)\n"
            "sys.exit(1)\n"
        )
        settings = with_servers(
            orchestrator_settings, {"fragile": python_server(code, critical=True)}, settle_delay=0.8
        )
        async with running_orchestrator(settings) as (orchestrator, _):
            await orchestrator.start()

            await wait_until(lambda: orchestrator.servers["fragile"].state == ServerState.ERROR)

            entry = orchestrator.servers["fragile"]
            assert orchestrator.restart_counts["fragile"] == 1
            assert entry.last_exit_code == 3
            assert "startup" in entry.last_error

    @pytest.mark.asyncio
    async def test_non_critical_server_is_not_restarted(self, orchestrator_settings, python_server):
        code = "import sys, time; time.sleep(0.3); sys.exit(4)"
        settings = with_servers(orchestrator_settings, {"optional": python_server(code, critical=False)})
        async with running_orchestrator(settings) as (orchestrator, _):
            await orchestrator.start()

            await wait_until(lambda: orchestrator.servers["optional"].state == ServerState.ERROR)

            assert orchestrator.restart_counts.get("optional", 0) == 0
            assert orchestrator.servers["optional"].last_exit_code == 4

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_restart(self, orchestrator_settings, python_server):
        code = "import sys, time; time.sleep(0.3); sys.exit(1)"
        settings = with_servers(
            orchestrator_settings, {"slow-restart": python_server(code, critical=True)}, restart_delay=5.0
        )
        async with running_orchestrator(settings) as (orchestrator, _):
            await orchestrator.start()
            await wait_until(lambda: orchestrator.servers["slow-restart"].state == ServerState.RESTARTING)

            await orchestrator.stop("slow-restart")

            assert orchestrator.servers["slow-restart"].state == ServerState.STOPPED
            assert "slow-restart" not in orchestrator.processes
            assert "slow-restart" not in orchestrator._watchers

    @pytest.mark.asyncio
    async def test_health_check_loop_reports_down_servers(self, orchestrator_settings):
        settings = dataclasses.replace(orchestrator_settings, health_check_interval=0.05)
        async with running_orchestrator(settings) as (orchestrator, events):
            await wait_until(lambda: any(event == "health-check-failed" for event, _ in events))

            down = next(data["down"] for event, data in events if event == "health-check-failed")
            assert down == ["base-a", "base-b", "mid"]


class TestPersistence:
    @pytest.mark.asyncio
    async def test_restart_counts_round_trip(self, orchestrator_settings):
        async with running_orchestrator(orchestrator_settings) as (orchestrator, _):
            orchestrator.restart_counts.update({"base-a": 2, "mid": 1})
            await orchestrator.start("base-a")

        persisted = json.loads(orchestrator_settings.state_file.read_text())
        assert persisted["restartCounts"] == {"base-a": 2, "mid": 1}
        assert persisted["runningServers"] == []

        async with running_orchestrator(orchestrator_settings) as (restored, _):
            assert restored.restart_counts == {"base-a": 2, "mid": 1}

    @pytest.mark.asyncio
    async def test_running_servers_are_recorded(self, orchestrator_settings):
        async with running_orchestrator(orchestrator_settings) as (orchestrator, _):
            await orchestrator.start(["base-a", "mid"])

            persisted = json.loads(orchestrator_settings.state_file.read_text())
            assert sorted(persisted["runningServers"]) == ["base-a", "mid"]

    @pytest.mark.asyncio
    async def test_shutdown_does_not_restart(self, orchestrator_settings):
        async with running_orchestrator(orchestrator_settings) as (orchestrator, events):
            await orchestrator.start()

        assert all(entry.state == ServerState.STOPPED for entry in orchestrator.servers.values())
        assert not any(event == "server-restarting" for event, _ in events)
        assert ("shutdown", None) in events
