"""
Managed Child Process

Wraps an asyncio subprocess for one MCP server: forwards its output to the log,
tracks its exit and signals the whole process tree through psutil.
"""

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

import psutil

from .models import ServerConfig

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
# Unterminated output is flushed to the log once it reaches this size
MAX_LINE_BYTES = 1024 * 1024
MAX_LOGGED_CHARS = 8192


class ManagedProcess:
    """A running server process and the tasks watching it."""

    def __init__(self, name: str, process: asyncio.subprocess.Process):
        self.name = name
        self.process = process
        self.stop_requested = False
        self._exited = asyncio.Event()
        self._ps_process: Optional[psutil.Process] = None
        self._tasks: List[asyncio.Task] = [
            asyncio.create_task(self._pump(process.stdout, logging.DEBUG)),
            asyncio.create_task(self._pump(process.stderr, logging.WARNING)),
        ]
        self._watcher = asyncio.create_task(self._watch())

    @classmethod
    async def spawn(cls, name: str, config: ServerConfig, cwd: Optional[str] = None) -> 'ManagedProcess':
        """
        Launch ``config.command`` with its arguments.

        stdin stays an open pipe: stdio MCP servers exit when it reaches EOF.
        Raises ``OSError`` when the executable cannot be launched.
        """
        env = dict(os.environ)
        env.update(config.env)

        process = await asyncio.create_subprocess_exec(
            config.command,
            *config.args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
        )
        logger.debug(f"[{name}] spawned PID {process.pid}: {config.command} {' '.join(config.args)}")
        return cls(name, process)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    @property
    def watcher(self) -> asyncio.Task:
        """Task that completes with the exit code once the process is gone."""
        return self._watcher

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for exit; returns False if ``timeout`` elapsed first."""
        try:
            await asyncio.wait_for(self._exited.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def terminate(self) -> None:
        """Ask the process and its children to stop (SIGTERM)."""
        self.stop_requested = True
        self._signal_tree(kill=False)

    def kill(self) -> None:
        """Force the process and its children to stop (SIGKILL)."""
        self.stop_requested = True
        self._signal_tree(kill=True)

    def resources(self) -> Optional[Dict[str, Any]]:
        """CPU and memory usage of the live process, None when unavailable."""
        if self.exited:
            return None
        try:
            if self._ps_process is None:
                self._ps_process = psutil.Process(self.pid)
            with self._ps_process.oneshot():
                return {
                    'cpu_percent': self._ps_process.cpu_percent(),
                    'memory_mb': self._ps_process.memory_info().rss / 1024 / 1024,
                    'num_threads': self._ps_process.num_threads(),
                }
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None

    async def close(self) -> None:
        """Release pipes and cancel the output pumps."""
        if self.process.stdin is not None and not self.process.stdin.is_closing():
            self.process.stdin.close()
        for task in self._tasks:
            task.cancel()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"[{self.name}] output forwarding failed: {result!r}")

    def _signal_tree(self, kill: bool) -> None:
        if self.exited:
            return
        try:
            parent = psutil.Process(self.pid)
            targets = [parent] + parent.children(recursive=True)
        except psutil.NoSuchProcess:
            return

        for proc in targets:
            try:
                if kill:
                    proc.kill()
                else:
                    proc.terminate()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                logger.warning(f"[{self.name}] access denied signalling PID {proc.pid}")

    async def _pump(self, stream: Optional[asyncio.StreamReader], level: int) -> None:
        # Chunked reads: a line longer than the StreamReader limit must not stop draining
        if stream is None:
            return
        pending = b""
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            *lines, pending = (pending + chunk).split(b"\n")
            for line in lines:
                self._log_line(level, line)
            if len(pending) >= MAX_LINE_BYTES:
                self._log_line(level, pending)
                pending = b""
        if pending:
            self._log_line(level, pending)

    def _log_line(self, level: int, line: bytes) -> None:
        text = line.decode(errors='replace').rstrip()
        if not text:
            return
        if len(text) > MAX_LOGGED_CHARS:
            text = f"{text[:MAX_LOGGED_CHARS]}... ({len(line)} bytes)"
        logger.log(level, f"[{self.name}] {text}")

    async def _watch(self) -> int:
        returncode = await self.process.wait()
        self._exited.set()
        logger.debug(f"[{self.name}] PID {self.pid} exited with code {returncode}")
        return returncode
