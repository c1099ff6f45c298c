"""
Unit Tests for the Control Tower CLI
"""

import json
import sys
from unittest.mock import AsyncMock, patch

import pytest
import yaml

import control_tower
from control_tower import build_parser, format_uptime, main, print_status


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Settings file with one sleeping and one crashing Python server."""
    monkeypatch.setenv("CONTROL_TOWER_WORKSPACE", str(tmp_path))
    path = tmp_path / "control-tower.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "orchestrator": {
                    "settle_delay": 1.0,
                    "stop_timeout": 2,
                    "restart_pause": 0,
                    "auto_start": ["sleeper"],
                    "servers": {
                        "sleeper": {
                            "command": sys.executable,
                            "args": ["-c", "import time; time.sleep(30)"],
                            "layer": 0,
                            "critical": True,
                        },
                        "crasher": {
                            "command": sys.executable,
                            "args": ["-c", "import sys; sys.exit(1)"],
                            "layer": 1,
                        },
                    },
                }
            }
        )
    )
    with patch.object(control_tower, "setup_logging"):
        yield path


class TestFormatUptime:
    @pytest.mark.parametrize(
        "seconds,expected",
        [
            (0, "0s"),
            (7, "7s"),
            (5 * 60 + 6, "5m 6s"),
            (3 * 3600 + 4 * 60 + 59, "3h 4m"),
            (86400 + 2 * 3600 + 30, "1d 2h"),
            (12.9, "12s"),
        ],
    )
    def test_format(self, seconds, expected):
        assert format_uptime(seconds) == expected


class TestParser:
    def test_arguments(self):
        args = build_parser().parse_args(["start", "git", "memory", "--debug", "--config", "x.yaml"])

        assert args.command == "start"
        assert args.servers == ["git", "memory"]
        assert args.debug is True
        assert args.config == "x.yaml"
        assert args.all is False

    def test_missing_command(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_unknown_command(self, capsys):
        assert main(["launch"]) == 1
        assert "usage" in capsys.readouterr().out


class TestPrintStatus:
    def test_groups_by_layer(self, capsys):
        report = {
            "overall": "unhealthy",
            "servers": {
                "git": {"state": "running", "layer": 1, "critical": True, "pid": 42, "restarts": 1, "uptime": 65},
                "memory": {"state": "stopped", "layer": 0, "critical": False, "pid": None, "restarts": 0, "uptime": 0},
            },
        }

        print_status(report)

        out = capsys.readouterr().out
        assert "Overall: UNHEALTHY" in out
        assert out.index("LAYER_0") < out.index("memory") < out.index("LAYER_1") < out.index("git")
        assert "1m 5s" in out
        assert "[critical]" in out


class TestCommands:
    def test_health_prints_json(self, config_file, capsys):
        assert main(["health", "--config", str(config_file)]) == 0

        report = json.loads(capsys.readouterr().out)
        assert report["overall"] == "unhealthy"
        assert set(report["servers"]) == {"sleeper", "crasher"}
        assert report["servers"]["sleeper"]["state"] == "stopped"

    def test_status_prints_table(self, config_file, capsys):
        assert main(["status", "--config", str(config_file)]) == 0

        out = capsys.readouterr().out
        assert "MCP SERVER STATUS" in out
        assert "sleeper" in out

    def test_start_auto_runs_until_signal(self, config_file, capsys):
        with patch.object(control_tower, "_wait_for_signal", new=AsyncMock()) as wait:
            assert main(["start", "--auto", "--config", str(config_file)]) == 0

        wait.assert_awaited_once()
        out = capsys.readouterr().out
        assert "✓ sleeper" in out
        assert "✗ crasher" in out

        state = json.loads((config_file.parent / "control-tower" / "cache" / "mcp-state.json").read_text())
        assert state["runningServers"] == []

    def test_start_failure_exits_with_error(self, config_file):
        with patch.object(control_tower, "_wait_for_signal", new=AsyncMock()) as wait:
            assert main(["start", "--all", "--config", str(config_file)]) == 1

        wait.assert_not_awaited()

    def test_unknown_server(self, config_file):
        with patch.object(control_tower, "_wait_for_signal", new=AsyncMock()):
            assert main(["start", "ghost", "--config", str(config_file)]) == 1

    def test_invalid_config(self, tmp_path, capsys):
        path = tmp_path / "broken.yaml"
        path.write_text(yaml.safe_dump({"coordinator": {"max_concurrent_tasks": "many"}}))

        assert main(["status", "--config", str(path)]) == 1
        assert "Configuration error" in capsys.readouterr().err
