"""
MCP Server Orchestrator

Manages the lifecycle of the MCP server processes. Servers are grouped into
dependency layers: layers start in ascending order and stop in reverse, with the
servers of one layer launched concurrently. Critical servers that exit
unexpectedly are restarted with a bounded budget, and the restart counters are
persisted so the budget survives an orchestrator restart.
"""

import asyncio
import contextlib
import dataclasses
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from config.settings import OrchestratorSettings
from core.events import EventBus
from utils.error_handling import (
    ControlTowerError,
    OrchestratorStateError,
    ProcessLaunchError,
    ProcessStopError,
    ServerNotFoundError,
)

from .models import ServerEntry, ServerState, group_by_layer, layer_name
from .process import ManagedProcess
from .state_store import StateStore

logger = logging.getLogger(__name__)

ALL = "all"


class MCPOrchestrator:
    """Tiered start/stop and supervision of MCP server processes."""

    def __init__(
        self, settings: Optional[OrchestratorSettings] = None, event_bus: Optional[EventBus] = None, **overrides
    ):
        settings = settings or OrchestratorSettings()
        if overrides:
            settings = dataclasses.replace(settings, **overrides)
        self.settings = settings
        self.events = event_bus or EventBus("orchestrator")
        self.state_store = StateStore(settings.state_file)

        self.servers: Dict[str, ServerEntry] = {}
        self.processes: Dict[str, ManagedProcess] = {}
        self.restart_counts: Dict[str, int] = {}

        self.is_shutting_down = False
        self._initialized = False
        self._initializing = False
        self._health_task: Optional[asyncio.Task] = None
        # Per-server task watching the running process (and driving its restart)
        self._watchers: Dict[str, asyncio.Task] = {}

    def on(self, event: str, handler):
        """Subscribe to an orchestrator event."""
        return self.events.on(event, handler)

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def tiers(self) -> Dict[int, List[str]]:
        """Layer number to server names, ascending."""
        return group_by_layer({name: entry.config for name, entry in self.servers.items()})

    def get_server(self, name: str) -> Optional[ServerEntry]:
        return self.servers.get(name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        if self._initialized:
            logger.warning("MCP Orchestrator already initialized")
            return
        if self._initializing:
            raise OrchestratorStateError("MCP Orchestrator initialization already in progress")

        self._initializing = True
        try:
            logger.info("Initializing MCP Orchestrator...")
            await asyncio.to_thread(self._ensure_directories)

            self.servers = {name: ServerEntry(name=name, config=config) for name, config in self.settings.servers.items()}

            state = await self.state_store.load()
            self.restart_counts = dict(state.restart_counts)
            if state.running_servers:
                logger.info(f"Previously running: {', '.join(state.running_servers)}")

            self.is_shutting_down = False
            self._health_task = asyncio.create_task(self._health_loop())
            self._initialized = True
        finally:
            self._initializing = False

        logger.info(f"MCP Orchestrator initialized with {len(self.servers)} servers in {len(self.tiers)} layers")
        self.events.emit("initialized", {"servers": list(self.servers)})

    async def shutdown(self) -> None:
        """Stop health checks and every server (reverse layer order), then persist state."""
        logger.info("Shutting down MCP Orchestrator...")
        self.is_shutting_down = True

        await self.stop_health_checks()

        try:
            await self.stop(ALL)
        finally:
            await self.save_state()
            self._initialized = False
            logger.info("MCP Orchestrator shutdown complete")
            self.events.emit("shutdown")

    async def stop_health_checks(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
            self._health_task = None

    # ------------------------------------------------------------------
    # Start / stop / restart
    # ------------------------------------------------------------------

    async def start(self, names: Union[str, Iterable[str]] = ALL) -> None:
        """
        Start ``"all"`` servers layer by layer, or the named server(s) in order.

        A failing server aborts the start after its layer has settled; higher
        layers are not started.
        """
        self._require_initialized()
        try:
            if names == ALL:
                logger.info("Starting MCP servers by layer...")
                await self._start_tiers(self.tiers)
                logger.info("All MCP servers started")
                self.events.emit("all-servers-started", {"servers": list(self.servers)})
            else:
                for name in self._as_list(names):
                    await self._start_server(name)
        finally:
            await self.save_state()

    async def start_auto(self) -> None:
        """Start the configured auto-start servers, grouped by layer."""
        self._require_initialized()
        for name in self.settings.auto_start:
            if name not in self.servers:
                raise ServerNotFoundError(name)

        tiers = group_by_layer({name: self.servers[name].config for name in self.settings.auto_start})
        logger.info(f"Auto-starting: {', '.join(self.settings.auto_start)}")
        try:
            await self._start_tiers(tiers)
        finally:
            await self.save_state()

    async def stop(self, names: Union[str, Iterable[str]] = ALL) -> None:
        """Stop ``"all"`` servers in reverse layer order, or the named server(s)."""
        errors: List[BaseException] = []
        try:
            if names == ALL:
                logger.info("Stopping MCP servers...")
                for layer, tier in reversed(list(self.tiers.items())):
                    logger.debug(f"Stopping {layer_name(layer)}: {', '.join(tier)}")
                    results = await asyncio.gather(*(self._stop_server(name) for name in tier), return_exceptions=True)
                    errors.extend(r for r in results if isinstance(r, BaseException))
                if not errors:
                    self.events.emit("all-servers-stopped")
            else:
                for name in self._as_list(names):
                    await self._stop_server(name)
        finally:
            await self.save_state()

        if errors:
            for error in errors:
                logger.error(f"Error stopping server: {error}")
            raise errors[0]

    async def restart(self, names: Union[str, Iterable[str]] = ALL) -> None:
        if names != ALL:
            names = self._as_list(names)
        logger.info(f"Restarting {names if names == ALL else ', '.join(names)}...")
        await self.stop(names)
        await asyncio.sleep(self.settings.restart_pause)
        await self.start(names)

    async def _start_tiers(self, tiers: Dict[int, List[str]]) -> None:
        for layer, tier in tiers.items():
            logger.info(f"Starting {layer_name(layer)}: {', '.join(tier)}")
            results = await asyncio.gather(*(self._start_server(name) for name in tier), return_exceptions=True)
            errors = [r for r in results if isinstance(r, BaseException)]
            if errors:
                logger.error(f"{layer_name(layer)}: {len(errors)} of {len(tier)} servers failed to start")
                raise errors[0]

    async def _start_server(self, name: str) -> None:
        entry = self.servers.get(name)
        if entry is None:
            raise ServerNotFoundError(name)

        if entry.state in (ServerState.RUNNING, ServerState.STARTING):
            logger.warning(f"Server {name} already {entry.state.value}")
            return

        config = entry.config
        logger.info(f"Starting {name}...")
        entry.state = ServerState.STARTING
        entry.command_issued_at = time.time()
        entry.last_error = None
        self.events.emit("server-starting", {"name": name, "layer": config.layer})

        try:
            process = await ManagedProcess.spawn(name, config, cwd=str(self.settings.workspace_root))
        except OSError as e:
            self._mark_error(entry, f"Failed to launch: {e}")
            raise ProcessLaunchError(f"Failed to start {name}: {e}", server=name) from e
        self.processes[name] = process

        # Settle delay as readiness proxy; an exit inside the window is a failed start
        exited = await process.wait(self.settings.settle_delay)
        if process.stop_requested:
            logger.info(f"Start of {name} interrupted by stop request")
            return
        if exited:
            await self._release_process(name, process)
            entry.last_exit_code = process.returncode
            self._mark_error(entry, f"Exited during startup with code {process.returncode}")
            raise ProcessLaunchError(
                f"Server {name} exited during startup with code {process.returncode}",
                server=name,
                exit_code=process.returncode,
            )

        entry.state = ServerState.RUNNING
        entry.started_at = time.time()
        entry.stopped_at = None
        self._watchers[name] = asyncio.create_task(self._watch_exit(name, process))

        logger.info(f"{name} started (PID: {process.pid})")
        self.events.emit("server-started", {"name": name, "pid": process.pid, "layer": config.layer})

    async def _stop_server(self, name: str) -> None:
        entry = self.servers.get(name)
        if entry is None:
            logger.warning(f"Server {name} not found")
            return

        watcher = self._watchers.pop(name, None)
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher

        process = self.processes.get(name)
        if process is None:
            if entry.state == ServerState.RESTARTING:
                logger.info(f"Cancelled pending restart of {name}")
                entry.state = ServerState.STOPPED
                entry.stopped_at = time.time()
                self.events.emit("server-stopped", {"name": name, "exit_code": entry.last_exit_code})
            else:
                logger.debug(f"Server {name} is not running")
            return

        logger.info(f"Stopping {name} (PID: {process.pid})...")
        entry.state = ServerState.STOPPING
        try:
            if not process.exited:
                process.terminate()
                if not await process.wait(self.settings.stop_timeout):
                    logger.warning(f"{name} did not exit within {self.settings.stop_timeout}s, sending SIGKILL")
                    process.kill()
                    if not await process.wait(self.settings.stop_timeout):
                        raise ProcessStopError(f"Server {name} (PID {process.pid}) did not exit after SIGKILL", name)
            entry.last_exit_code = process.returncode
        finally:
            await self._release_process(name, process)
            entry.state = ServerState.STOPPED
            entry.stopped_at = time.time()
            logger.info(f"{name} stopped")
            self.events.emit("server-stopped", {"name": name, "exit_code": entry.last_exit_code})

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    async def _watch_exit(self, name: str, process: ManagedProcess) -> None:
        await process.wait()
        if process.stop_requested or self.processes.get(name) is not process:
            return
        await self._handle_server_exit(name, process)

    async def _handle_server_exit(self, name: str, process: ManagedProcess) -> None:
        entry = self.servers[name]
        await self._release_process(name, process)
        entry.last_exit_code = process.returncode
        entry.stopped_at = time.time()

        if self.is_shutting_down:
            entry.state = ServerState.STOPPED
            return

        logger.warning(f"{name} exited unexpectedly with code {process.returncode}")

        attempts = self.restart_counts.get(name, 0)
        if not entry.config.critical or attempts >= self.settings.max_restarts:
            reason = "not critical" if not entry.config.critical else f"max restarts ({self.settings.max_restarts}) reached"
            logger.error(f"{name} will not be restarted: {reason}")
            self._mark_error(entry, f"Exited with code {process.returncode}, {reason}")
            return

        attempts += 1
        self.restart_counts[name] = attempts
        entry.state = ServerState.RESTARTING
        logger.info(f"Restarting {name} (attempt {attempts}/{self.settings.max_restarts})...")
        self.events.emit(
            "server-restarting",
            {"name": name, "attempt": attempts, "max_restarts": self.settings.max_restarts, "exit_code": process.returncode},
        )
        await self.save_state()

        await asyncio.sleep(self.settings.restart_delay)
        if self.is_shutting_down or entry.state != ServerState.RESTARTING:
            logger.info(f"Restart of {name} abandoned")
            return

        try:
            await self._start_server(name)
        except ControlTowerError as e:
            logger.error(f"Failed to restart {name}: {e}")
            if entry.state != ServerState.ERROR:
                self._mark_error(entry, str(e))
        await self.save_state()

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.health_check_interval)
            try:
                report = self.health()
                down = [
                    name
                    for name, server in report["servers"].items()
                    if server["critical"] and server["state"] != ServerState.RUNNING.value
                ]
                if down:
                    logger.warning(f"Health check failed, critical servers down: {', '.join(down)}")
                    self.events.emit("health-check-failed", {"down": down, "report": report})
                else:
                    logger.debug("Health check passed")
                    self.events.emit("health-check-passed", report)
            except Exception:
                logger.exception("Error in health check loop")

    # ------------------------------------------------------------------
    # Health / persistence
    # ------------------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        """Per-server status and the overall rollup."""
        servers = {}
        for name, entry in self.servers.items():
            process = self.processes.get(name)
            running = entry.state == ServerState.RUNNING
            servers[name] = {
                'state': entry.state.value,
                'pid': process.pid if process else None,
                'restarts': self.restart_counts.get(name, 0),
                'layer': entry.config.layer,
                'critical': entry.config.critical,
                'uptime': entry.uptime,
                'command': ' '.join([entry.config.command, *entry.config.args]),
                'resources': process.resources() if process and running else None,
                'last_exit_code': entry.last_exit_code,
                'last_error': entry.last_error,
            }

        unhealthy = any(s['critical'] and s['state'] != ServerState.RUNNING.value for s in servers.values())
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'overall': 'unhealthy' if unhealthy else 'healthy',
            'servers': servers,
        }

    def status(self) -> Dict[str, Any]:
        return self.health()

    async def save_state(self) -> bool:
        running = [name for name, entry in self.servers.items() if entry.state == ServerState.RUNNING]
        return await self.state_store.save(dict(self.restart_counts), running)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise OrchestratorStateError("MCP Orchestrator is not initialized")

    def _ensure_directories(self) -> None:
        base = self.settings.control_tower_dir
        for directory in (self.settings.state_file.parent, base / "logs", base / "reports"):
            directory.mkdir(parents=True, exist_ok=True)

    async def _release_process(self, name: str, process: ManagedProcess) -> None:
        await process.close()
        if self.processes.get(name) is process:
            del self.processes[name]

    def _mark_error(self, entry: ServerEntry, message: str) -> None:
        entry.state = ServerState.ERROR
        entry.last_error = message
        self.events.emit("server-error", {"name": entry.name, "error": message, "exit_code": entry.last_exit_code})

    @staticmethod
    def _as_list(names: Union[str, Iterable[str]]) -> List[str]:
        if isinstance(names, str):
            return [names]
        return list(names)
