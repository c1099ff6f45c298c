#!/usr/bin/env python3
"""
Control Tower CLI

Command line entry point for the MCP server orchestrator.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

from config import Settings, load_settings
from observability import LogConfig, LogFormat, LogLevel, setup_logging
from orchestrator.mcp_orchestrator import ALL, MCPOrchestrator
from orchestrator.models import layer_name
from utils.error_handling import ControlTowerError

logger = logging.getLogger("control_tower")

COMMANDS = ("start", "stop", "restart", "status", "health")


def format_uptime(seconds: float) -> str:
    """Compact uptime: ``1d 2h``, ``3h 4m``, ``5m 6s`` or ``7s``."""
    seconds = int(seconds)
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)

    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def print_status(report: Dict[str, Any]) -> None:
    """Print the orchestrator status grouped by layer."""
    servers = report["servers"]
    layers: Dict[int, List[str]] = {}
    for name, server in servers.items():
        layers.setdefault(server["layer"], []).append(name)

    print("\n" + "=" * 60)
    print("MCP SERVER STATUS")
    print("=" * 60)
    print(f"Overall: {report['overall'].upper()}")

    for layer in sorted(layers):
        print(f"\n{layer_name(layer)}")
        for name in layers[layer]:
            server = servers[name]
            symbol = "✓" if server["state"] == "running" else "✗"
            critical = " [critical]" if server["critical"] else ""
            pid = server["pid"] if server["pid"] else "-"
            uptime = format_uptime(server["uptime"]) if server["state"] == "running" else "-"
            print(
                f"  {symbol} {name:22} {server['state']:11} "
                f"PID: {pid!s:7} Restarts: {server['restarts']}  Uptime: {uptime}{critical}"
            )

    print("=" * 60 + "\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="control-tower",
        description="Control Tower - MCP server orchestration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s start --all          # Start every server, layer by layer
  %(prog)s start --auto         # Start the auto-start servers
  %(prog)s start git memory     # Start specific servers
  %(prog)s restart github       # Restart one server
  %(prog)s status               # Show server status
  %(prog)s health               # Print the health report as JSON
        """,
    )
    parser.add_argument("command", nargs="?", help="Command to run: " + ", ".join(COMMANDS))
    parser.add_argument("servers", nargs="*", help="Server names (default: all)")
    parser.add_argument("--all", action="store_true", help="Apply the command to all servers")
    parser.add_argument("--auto", action="store_true", help="Start the configured auto-start servers")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--config", help="YAML or JSON settings file")
    return parser


def _targets(args: argparse.Namespace):
    if args.all or not args.servers:
        return ALL
    return args.servers


async def _wait_for_signal() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops; Ctrl+C surfaces as KeyboardInterrupt instead
            pass
    logger.info("Press Ctrl+C to stop")
    await stop_event.wait()
    logger.info("Shutdown signal received")


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    orchestrator = MCPOrchestrator(settings.orchestrator)
    await orchestrator.initialize()

    if args.command in ("status", "health"):
        await orchestrator.stop_health_checks()
        report = orchestrator.health()
        if args.command == "health":
            print(json.dumps(report, indent=2))
        else:
            print_status(report)
        return 0

    if args.command == "stop":
        await orchestrator.stop(_targets(args))
        await orchestrator.stop_health_checks()
        return 0

    try:
        if args.command == "start":
            if args.auto:
                await orchestrator.start_auto()
            else:
                await orchestrator.start(_targets(args))
        else:
            await orchestrator.restart(_targets(args))

        print_status(orchestrator.status())
        await _wait_for_signal()
    finally:
        await orchestrator.shutdown()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command not in COMMANDS:
        parser.print_usage()
        return 1

    try:
        settings = load_settings(args.config)
    except ControlTowerError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    level = LogLevel.DEBUG if args.debug else LogLevel(settings.logging.level)
    setup_logging(LogConfig(level=level, format=LogFormat(settings.logging.format), output_file=settings.logging.file))

    try:
        return asyncio.run(run_command(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0
    except ControlTowerError as e:
        logger.error(f"{e.category.value}: {e.message}")
        return 1
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
