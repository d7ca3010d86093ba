"""Tests for CLI commands."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from cursor_guard.cli import main
from cursor_guard.config import Config, Role
from cursor_guard.errors import AlreadyRunning, TargetExecutableNotFound
from tests.conftest import FakeProcessTable, make_sample


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def home(patched_config_paths: Path, monkeypatch) -> Path:
    """Isolated HOME with Config paths under it."""
    monkeypatch.setenv("HOME", str(patched_config_paths))
    monkeypatch.setattr("cursor_guard.watchdog.PRIME_SECONDS", 0)
    return patched_config_paths


@pytest.fixture
def busy_table() -> FakeProcessTable:
    """A main process and a runaway utility."""
    return FakeProcessTable(
        [
            make_sample(pid=100, role=Role.MAIN, cpu=150.0, command="/opt/cursor/cursor"),
            make_sample(pid=200, role=Role.UTILITY, cpu=85.0),
            make_sample(pid=300, role=Role.GPU, cpu=2.0),
        ]
    )


class TestWatchCommand:
    """Tests for the watch command."""

    def test_watch_once_kills_runaway(self, runner, home, busy_table) -> None:
        """watch --once runs one cycle and signals only the heavy helper."""
        with patch("cursor_guard.collector.PsutilProcessTable", return_value=busy_table):
            result = runner.invoke(main, ["watch", "--once"])

        assert result.exit_code == 0, result.output
        assert busy_table.killed_pids == [200]
        assert busy_table.primed == 1

    def test_watch_once_dry_run(self, runner, home, busy_table) -> None:
        """watch --once --dry-run sends no signals."""
        with patch("cursor_guard.collector.PsutilProcessTable", return_value=busy_table):
            result = runner.invoke(main, ["watch", "--once", "--dry-run"])

        assert result.exit_code == 0, result.output
        assert busy_table.signals == []
        assert "Would kill" in result.output

    def test_watch_creates_config_and_log(self, runner, home, busy_table) -> None:
        """First run writes the default config and JSON action log."""
        with patch("cursor_guard.collector.PsutilProcessTable", return_value=busy_table):
            result = runner.invoke(main, ["watch", "--once", "--dry-run"])

        assert result.exit_code == 0, result.output
        assert Config().config_path.exists()
        assert Config().log_path.exists()

    def test_watch_threshold_override(self, runner, home, busy_table) -> None:
        """-t raises the bar for one run."""
        with patch("cursor_guard.collector.PsutilProcessTable", return_value=busy_table):
            result = runner.invoke(main, ["watch", "--once", "-t", "90"])

        assert result.exit_code == 0, result.output
        assert busy_table.signals == []

    def test_watch_rejects_bad_threshold(self, runner, home) -> None:
        """Out-of-bounds threshold exits 1 before doing anything."""
        result = runner.invoke(main, ["watch", "--once", "-t", "0"])
        assert result.exit_code == 1
        assert "cpu_threshold" in result.output

    def test_watch_already_running(self, runner, home) -> None:
        """A second watchdog exits 1."""
        with (
            patch("cursor_guard.collector.PsutilProcessTable", return_value=FakeProcessTable()),
            patch(
                "cursor_guard.watchdog.run_watchdog",
                new=AsyncMock(side_effect=AlreadyRunning(4242)),
            ),
        ):
            result = runner.invoke(main, ["watch"])

        assert result.exit_code == 1
        assert "already running" in result.output

    def test_watch_once_refuses_when_watchdog_running(self, runner, home, busy_table) -> None:
        """watch --once does not run alongside a live watchdog."""
        with (
            patch("cursor_guard.collector.PsutilProcessTable", return_value=busy_table),
            patch("cursor_guard.watchdog.read_pid_file", return_value=4242),
        ):
            result = runner.invoke(main, ["watch", "--once"])

        assert result.exit_code == 1
        assert "already running" in result.output
        assert busy_table.signals == []
        assert busy_table.primed == 0

    def test_watch_wrong_type_in_config_file(self, runner, home) -> None:
        """A config value of the wrong type exits 1 naming the key."""
        config_path = Config().config_path
        config_path.parent.mkdir(parents=True)
        config_path.write_text('[watchdog]\ncpu_threshold = "high"\n')

        result = runner.invoke(main, ["watch", "--once"])
        assert result.exit_code == 1
        assert "cpu_threshold" in result.output
        assert "Traceback" not in result.output

    def test_watch_bad_config_file(self, runner, home) -> None:
        """Malformed config exits 1."""
        config_path = Config().config_path
        config_path.parent.mkdir(parents=True)
        config_path.write_text("[watchdog\n")

        result = runner.invoke(main, ["watch", "--once"])
        assert result.exit_code == 1
        assert "Failed to parse" in result.output


class TestScanCommand:
    """Tests for the scan command."""

    def test_scan_lists_decisions(self, runner, home, busy_table) -> None:
        """scan shows each process with its would-be action and sends nothing."""
        with patch("cursor_guard.collector.PsutilProcessTable", return_value=busy_table):
            result = runner.invoke(main, ["scan", "-s", "0"])

        assert result.exit_code == 0, result.output
        assert busy_table.signals == []
        assert "skipped_protected" in result.output
        assert "skipped_below_threshold" in result.output
        assert "killed" in result.output

    def test_scan_no_processes(self, runner, home) -> None:
        """scan with nothing running says so."""
        with patch("cursor_guard.collector.PsutilProcessTable", return_value=FakeProcessTable()):
            result = runner.invoke(main, ["scan", "-s", "0"])

        assert result.exit_code == 0
        assert "No cursor processes running" in result.output


class TestStatusAndStop:
    """Tests for status and stop."""

    def test_status_stopped(self, runner, home, busy_table) -> None:
        """status reports a stopped watchdog and role counts."""
        with patch("cursor_guard.collector.PsutilProcessTable", return_value=busy_table):
            result = runner.invoke(main, ["status"])

        assert result.exit_code == 0, result.output
        assert "Watchdog: stopped" in result.output
        assert "cursor processes: 3" in result.output
        assert "utility: 1" in result.output

    def test_status_running(self, runner, home) -> None:
        """status shows the watchdog pid."""
        with (
            patch("cursor_guard.watchdog.read_pid_file", return_value=4242),
            patch("cursor_guard.collector.PsutilProcessTable", return_value=FakeProcessTable()),
        ):
            result = runner.invoke(main, ["status"])

        assert "running (PID 4242)" in result.output

    def test_stop_not_running(self, runner, home) -> None:
        """stop with no watchdog is a no-op."""
        result = runner.invoke(main, ["stop"])
        assert result.exit_code == 0
        assert "not running" in result.output

    def test_stop_sends_sigterm(self, runner, home) -> None:
        """stop terminates the recorded watchdog."""
        proc = MagicMock()
        with (
            patch("cursor_guard.watchdog.read_pid_file", return_value=4242),
            patch("psutil.Process", return_value=proc),
        ):
            result = runner.invoke(main, ["stop"])

        assert result.exit_code == 0
        proc.terminate.assert_called_once()
        assert "Sent SIGTERM to watchdog (PID 4242)" in result.output


class TestCleanCommand:
    """Tests for the clean command."""

    def _populate(self, home: Path) -> Path:
        cache = home / ".config" / "Cursor" / "GPUCache"
        cache.mkdir(parents=True)
        (cache / "index").write_bytes(b"x")
        return cache

    def test_clean_dry_run(self, runner, home) -> None:
        """clean --dry-run lists but keeps caches."""
        cache = self._populate(home)
        result = runner.invoke(main, ["clean", "--dry-run"])

        assert result.exit_code == 0, result.output
        assert "Would clear" in result.output
        assert cache.exists()

    def test_clean_removes_caches(self, runner, home) -> None:
        """clean deletes the safe cache set."""
        cache = self._populate(home)
        result = runner.invoke(main, ["clean"])

        assert result.exit_code == 0, result.output
        assert not cache.exists()
        assert "Cache reclaim" in result.output

    def test_clean_unknown_profile(self, runner, home) -> None:
        """Unknown cache profile exits 1."""
        result = runner.invoke(main, ["clean", "-p", "nuke"])
        assert result.exit_code == 1
        assert "Unknown cache profile" in result.output


class TestLaunchCommand:
    """Tests for the launch command."""

    def test_launch_refuses_root(self, runner, home) -> None:
        """Launching as root is refused without --allow-root."""
        with patch("os.geteuid", return_value=0):
            result = runner.invoke(main, ["launch"])

        assert result.exit_code == 1
        assert "Refusing to run as root" in result.output

    def test_launch_executable_missing(self, runner, home) -> None:
        """A missing executable exits 1 with a remediation hint."""
        with (
            patch("os.geteuid", return_value=1000),
            patch(
                "cursor_guard.launcher.resolve_executable",
                side_effect=TargetExecutableNotFound(["~/Downloads/Cursor*.AppImage"], "Get it"),
            ),
        ):
            result = runner.invoke(main, ["launch", "--no-clean"])

        assert result.exit_code == 1
        assert "not found" in result.output
        assert "Get it" in result.output

    def test_launch_detached(self, runner, home) -> None:
        """launch spawns detached with profile flags and forwarded args."""
        exe = home / "Downloads" / "Cursor-1.0.AppImage"
        spawn = MagicMock(return_value=MagicMock(pid=777))
        with (
            patch("os.geteuid", return_value=1000),
            patch("cursor_guard.launcher.resolve_executable", return_value=exe),
            patch("cursor_guard.launcher.spawn", spawn),
        ):
            result = runner.invoke(main, ["launch", "--no-clean", "-p", "crash-fix", "proj/"])

        assert result.exit_code == 0, result.output
        plan = spawn.call_args.args[0]
        assert spawn.call_args.kwargs["detach"] is True
        assert plan.argv[0] == str(exe)
        assert "--disable-renderer-backgrounding" in plan.argv
        assert plan.argv[-1] == "proj/"

    def test_launch_cleans_and_kills_existing(self, runner, home) -> None:
        """--kill-existing stops instances and caches are cleared before spawning."""
        cache = home / ".config" / "Cursor" / "Cache"
        cache.mkdir(parents=True)
        stop = MagicMock(return_value=2)
        with (
            patch("os.geteuid", return_value=1000),
            patch("cursor_guard.launcher.resolve_executable", return_value=home / "cursor"),
            patch("cursor_guard.launcher.spawn", MagicMock(return_value=MagicMock(pid=1))),
            patch("cursor_guard.launcher.stop_running_instances", stop),
        ):
            result = runner.invoke(main, ["launch", "--kill-existing"])

        assert result.exit_code == 0, result.output
        stop.assert_called_once_with("cursor", 3.0)
        assert not cache.exists()

    def test_launch_foreground_propagates_exit_code(self, runner, home) -> None:
        """--foreground waits and exits with the application's status."""
        proc = MagicMock(pid=5)
        proc.wait.return_value = 3
        spawn = MagicMock(return_value=proc)
        with (
            patch("os.geteuid", return_value=1000),
            patch("cursor_guard.launcher.resolve_executable", return_value=home / "cursor"),
            patch("cursor_guard.launcher.spawn", spawn),
        ):
            result = runner.invoke(main, ["launch", "--no-clean", "--foreground"])

        assert result.exit_code == 3
        assert spawn.call_args.kwargs["detach"] is False

    def test_launch_bad_heap(self, runner, home) -> None:
        """A non-positive heap exits 1."""
        with (
            patch("os.geteuid", return_value=1000),
            patch("cursor_guard.launcher.resolve_executable", return_value=home / "cursor"),
        ):
            result = runner.invoke(main, ["launch", "--no-clean", "--heap", "-5"])

        assert result.exit_code == 1
        assert "js_heap_mb" in result.output


class TestConfigCommands:
    """Tests for config subcommands."""

    def test_config_show_defaults(self, runner, home) -> None:
        """config show prints every section."""
        result = runner.invoke(main, ["config", "show"])

        assert result.exit_code == 0
        assert "Exists: False" in result.output
        assert "[watchdog]" in result.output
        assert "cpu_threshold = 20.0" in result.output
        assert "[launch]" in result.output

    def test_config_reset_with_confirmation(self, runner, home) -> None:
        """config reset writes defaults after confirmation."""
        config_path = Config().config_path
        config_path.parent.mkdir(parents=True)
        config_path.write_text("[watchdog]\ncpu_threshold = 55.0\n")

        result = runner.invoke(main, ["config", "reset", "--yes"])

        assert result.exit_code == 0
        assert Config.load().watchdog.cpu_threshold == 20.0

    def test_config_edit_creates_default(self, runner, home) -> None:
        """config edit creates the file before opening the editor."""
        with patch("subprocess.run") as mock_run:
            result = runner.invoke(main, ["config", "edit"], env={"EDITOR": "true"})

        assert result.exit_code == 0
        assert Config().config_path.exists()
        assert mock_run.call_args.args[0][0] == "true"
