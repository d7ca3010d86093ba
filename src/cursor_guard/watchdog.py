"""Process watchdog for cursor-guard.

Each cycle snapshots the target application's processes, applies the
protection policy, and terminates heavy non-protected processes. Cycles run
one at a time on a single asyncio loop until SIGTERM/SIGINT or request_stop().
"""

import asyncio
import os
import signal
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

import psutil

from cursor_guard import logging as console
from cursor_guard.collector import (
    ProcessSample,
    ProcessTable,
    is_self_command,
    system_memory_percent,
)
from cursor_guard.config import ProtectionPolicy, Role
from cursor_guard.errors import AlreadyRunning, PermissionDenied, ProcessNotFound

log = console.get_structlog()

# Seconds between priming CPU counters and the first cycle
PRIME_SECONDS = 1.0


class Action(str, Enum):
    """Outcome of evaluating one sample."""

    KILLED = "killed"
    SKIPPED_PROTECTED = "skipped_protected"
    SKIPPED_BELOW_THRESHOLD = "skipped_below_threshold"
    KILL_FAILED = "kill_failed"
    VANISHED = "vanished"


@dataclass(frozen=True)
class ActionLogEntry:
    """One record per evaluated sample, appended to the action log."""

    timestamp: float
    pid: int
    role: str
    cpu_percent: float
    action: Action
    command: str = ""
    memory_percent: float = 0.0
    dry_run: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "timestamp": self.timestamp,
            "pid": self.pid,
            "role": self.role,
            "cpu_percent": self.cpu_percent,
            "action": self.action.value,
            "command": self.command,
            "memory_percent": self.memory_percent,
            "dry_run": self.dry_run,
            "error": self.error,
        }


def decide(sample: ProcessSample, policy: ProtectionPolicy) -> Action:
    """Apply the decision rule to one sample.

    Order: protected role, then threshold (inclusive), then kill.
    """
    if policy.is_protected(sample.role):
        return Action.SKIPPED_PROTECTED
    if sample.cpu_percent < policy.cpu_threshold:
        return Action.SKIPPED_BELOW_THRESHOLD
    return Action.KILLED


@dataclass
class WatchdogState:
    """Runtime counters for the watchdog."""

    running: bool = False
    cycle_count: int = 0
    kill_count: int = 0
    last_cycle_time: datetime | None = None

    def update_cycle(self, kills: int) -> None:
        """Update state after a cycle."""
        self.cycle_count += 1
        self.kill_count += kills
        self.last_cycle_time = datetime.now()


class Watchdog:
    """Enforces a ProtectionPolicy against a ProcessTable."""

    def __init__(
        self,
        policy: ProtectionPolicy,
        table: ProcessTable,
        *,
        dry_run: bool = False,
        memory_probe=system_memory_percent,
    ):
        self.policy = policy
        self.table = table
        self.dry_run = dry_run
        self.state = WatchdogState()
        self._memory_probe = memory_probe
        self._shutdown_event = asyncio.Event()

    def run_cycle(self) -> list[ActionLogEntry]:
        """Run one sample-classify-act cycle.

        Returns one entry per evaluated sample, in pid order. Per-sample
        failures never abort the cycle.
        """
        samples = self.table.snapshot(self.policy.target)

        # Deterministic order, one evaluation per pid
        unique: dict[int, ProcessSample] = {}
        for sample in samples:
            unique.setdefault(sample.pid, sample)

        over_budget = self._language_servers_over_budget(unique.values())
        entries = [self._evaluate(unique[pid], pid in over_budget) for pid in sorted(unique)]

        kills = sum(1 for e in entries if e.action is Action.KILLED)
        protected = sum(1 for e in entries if e.action is Action.SKIPPED_PROTECTED)
        self.state.update_cycle(0 if self.dry_run else kills)

        log.info(
            "cycle_complete",
            cycle=self.state.cycle_count,
            processes=len(entries),
            killed=kills,
            protected=protected,
            dry_run=self.dry_run,
        )
        if kills:
            console.cycle_summary(len(entries), kills, protected)

        self._check_memory()
        return entries

    def _language_servers_over_budget(self, samples) -> set[int]:
        """Return pids of unprotected language servers whose summed CPU reaches the budget."""
        budget = self.policy.language_server_budget
        if not budget or self.policy.is_protected(Role.LANGUAGE_SERVER):
            return set()

        servers = [s for s in samples if s.role is Role.LANGUAGE_SERVER]
        total = sum(s.cpu_percent for s in servers)
        if not servers or total < budget:
            return set()

        log.warning(
            "language_server_budget",
            total_cpu=total,
            limit=budget,
            pids=sorted(s.pid for s in servers),
        )
        console.language_server_budget(total, budget, len(servers))
        return {s.pid for s in servers}

    def _evaluate(self, sample: ProcessSample, over_budget: bool = False) -> ActionLogEntry:
        action = decide(sample, self.policy)
        if over_budget and action is Action.SKIPPED_BELOW_THRESHOLD:
            action = Action.KILLED
        error = None

        if action is Action.KILLED and not self.dry_run:
            try:
                self.table.terminate(sample.pid, self.policy.kill_signal)
            except ProcessNotFound as e:
                action, error = Action.VANISHED, str(e)
            except PermissionDenied as e:
                action, error = Action.KILL_FAILED, str(e)

        entry = ActionLogEntry(
            timestamp=time.time(),
            pid=sample.pid,
            role=sample.role.value,
            cpu_percent=sample.cpu_percent,
            action=action,
            command=sample.command,
            memory_percent=sample.memory_percent,
            dry_run=self.dry_run,
            error=error,
        )
        self._report(entry)
        return entry

    def _report(self, entry: ActionLogEntry) -> None:
        """Append the entry to the action log and echo destructive outcomes."""
        log.info("watchdog_action", **entry.to_dict())

        if entry.action is Action.KILLED:
            console.process_killed(
                entry.command, entry.pid, entry.role, entry.cpu_percent, dry_run=entry.dry_run
            )
        elif entry.action in (Action.KILL_FAILED, Action.VANISHED):
            console.kill_failed(entry.command, entry.pid, entry.error or "unknown error")
        elif (
            entry.action is Action.SKIPPED_PROTECTED
            and entry.cpu_percent >= self.policy.cpu_threshold
        ):
            console.process_protected(entry.command, entry.pid, entry.role, entry.cpu_percent)

    def _check_memory(self) -> None:
        try:
            percent = self._memory_probe()
        except OSError as e:
            log.warning("memory_probe_failed", error=str(e))
            return
        if percent >= self.policy.memory_warn_percent:
            log.warning(
                "memory_pressure", percent=percent, limit=self.policy.memory_warn_percent
            )
            console.memory_pressure(percent, self.policy.memory_warn_percent)

    def request_stop(self) -> None:
        """Ask the loop to exit after the current cycle."""
        self._shutdown_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self.request_stop()

    async def _sleep(self, seconds: float) -> None:
        """Sleep, returning early if a stop was requested."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self, *, once: bool = False, install_signal_handlers: bool = True) -> None:
        """Run cycles every check_interval until stopped.

        Args:
            once: Run a single cycle and return
            install_signal_handlers: Stop on SIGTERM/SIGINT
        """
        loop = asyncio.get_running_loop()
        handled: list[signal.Signals] = []
        if install_signal_handlers:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))
                handled.append(sig)

        self.state.running = True
        log.info(
            "watchdog_started",
            target=self.policy.target,
            cpu_threshold=self.policy.cpu_threshold,
            check_interval=self.policy.check_interval,
            protected_roles=sorted(r.value for r in self.policy.protected_roles),
            protect_unknown=self.policy.protect_unknown,
            kill_signal=self.policy.kill_signal.name,
            dry_run=self.dry_run,
        )

        try:
            # First CPU reading of a process is always 0.0
            self.table.prime()
            await self._sleep(PRIME_SECONDS)

            while not self._shutdown_event.is_set():
                try:
                    self.run_cycle()
                except Exception as e:
                    log.exception("cycle_failed", error=str(e))
                    console.cycle_failed(str(e))

                if once:
                    break
                await self._sleep(self.policy.check_interval)
        finally:
            for sig in handled:
                loop.remove_signal_handler(sig)
            self.state.running = False
            log.info(
                "watchdog_stopped",
                cycles=self.state.cycle_count,
                kills=self.state.kill_count,
            )


# ─────────────────────────────────────────────────────────────────────────────
# PID file
# ─────────────────────────────────────────────────────────────────────────────


def read_pid_file(pid_path: Path) -> int | None:
    """Return the pid of a live watchdog recorded in pid_path, or None.

    Verifies not just that the process exists but that it is a cursor-guard
    process, so a reused pid after reboot is not mistaken for the watchdog.
    Stale or invalid PID files are removed.
    """
    if not pid_path.exists():
        return None

    try:
        pid = int(pid_path.read_text().strip())
    except ValueError:
        log.warning("pid_file_invalid", reason="not a number")
        remove_pid_file(pid_path)
        return None

    try:
        cmdline = " ".join(psutil.Process(pid).cmdline())
    except psutil.NoSuchProcess:
        log.info("stale_pid_file", pid=pid, reason="not found")
        remove_pid_file(pid_path)
        return None
    except psutil.AccessDenied:
        log.warning("pid_verify_failed", pid=pid)
        return pid

    if pid != os.getpid() and is_self_command(cmdline):
        return pid

    log.info("stale_pid_file", pid=pid, actual_process=cmdline[:60])
    console.stale_pid_file(pid)
    remove_pid_file(pid_path)
    return None


def write_pid_file(pid_path: Path) -> None:
    """Write this process's pid, refusing if another watchdog is live.

    Raises:
        AlreadyRunning: A live watchdog owns the PID file.
    """
    existing = read_pid_file(pid_path)
    if existing is not None:
        raise AlreadyRunning(existing)
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text(str(os.getpid()))
    log.debug("pid_file_written", path=str(pid_path))


def remove_pid_file(pid_path: Path) -> None:
    """Remove PID file."""
    if pid_path.exists():
        pid_path.unlink()
        log.debug("pid_file_removed")


async def run_watchdog(
    policy: ProtectionPolicy,
    table: ProcessTable,
    pid_path: Path,
    *,
    dry_run: bool = False,
) -> WatchdogState:
    """Run the watchdog until shutdown, holding the PID file for its lifetime.

    Raises:
        AlreadyRunning: Another watchdog is live.
    """
    write_pid_file(pid_path)
    watchdog = Watchdog(policy, table, dry_run=dry_run)
    console.watchdog_started(policy)
    try:
        await watchdog.run()
    except Exception as e:
        log.exception("watchdog_crashed", error=str(e))
        raise
    finally:
        console.watchdog_stopping()
        remove_pid_file(pid_path)
        console.watchdog_stopped(watchdog.state.cycle_count, watchdog.state.kill_count)
    return watchdog.state
