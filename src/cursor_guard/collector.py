"""Process table access via psutil.

Enumerates the target application's processes, classifies each by role from
its command line, and delivers termination signals.
"""

import os
import signal
from dataclasses import dataclass
from typing import Protocol

import psutil

from cursor_guard.config import Role
from cursor_guard.errors import PermissionDenied, ProcessNotFound

# Matched against the basename of the executable or of a node entry script,
# never against arbitrary path arguments such as a folder opened in the editor.
# First match wins: terminal hosts and language servers also run as
# --type=utility node services.
SCRIPT_MARKERS: tuple[tuple[str, Role], ...] = (
    ("ptyhost", Role.TERMINAL_HOST),
    ("tsserver", Role.LANGUAGE_SERVER),
    ("typingsinstaller", Role.LANGUAGE_SERVER),
    ("languageserver", Role.LANGUAGE_SERVER),
    ("language-server", Role.LANGUAGE_SERVER),
    ("crashpad", Role.UTILITY),
)

# Chromium --type= values
TYPE_ROLES: dict[str, Role] = {
    "gpu-process": Role.GPU,
    "renderer": Role.RENDERER,
    "utility": Role.UTILITY,
    "zygote": Role.UTILITY,
}

SCRIPT_SUFFIXES = (".js", ".mjs", ".cjs")

# A node entry script run by the application lives under one of these
CODE_DIRS = ("/node_modules/", "/extensions/", "/resources/app/")

# Command-line substrings of cursor-guard itself, never part of the target family
SELF_MARKERS = ("cursor-guard", "cursor_guard")

_PROCESS_ATTRS = ["pid", "name", "cmdline", "cpu_percent", "memory_percent"]


@dataclass(frozen=True)
class ProcessSample:
    """Point-in-time view of one target process. Recreated every cycle."""

    pid: int
    command: str
    cpu_percent: float  # Summed across cores, may exceed 100
    memory_percent: float
    role: Role

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "pid": self.pid,
            "command": self.command,
            "cpu_percent": self.cpu_percent,
            "memory_percent": self.memory_percent,
            "role": self.role.value,
        }


def _script_args(args: list[str], has_type: bool) -> list[str]:
    """Arguments that may name the code a process runs.

    Chromium child processes (``--type=``) never take user paths, so every
    positional argument counts. Otherwise only a leading node entry script
    does, and only from the application's own code directories: the main
    process's positional arguments are files and folders the user opened.
    """
    positional = [a for a in args if not a.startswith("-")]
    if has_type:
        return positional
    if positional:
        entry = positional[0]
        if entry.endswith(SCRIPT_SUFFIXES) and any(d in entry for d in CODE_DIRS):
            return [entry]
    return []


def classify_role(command: str, target: str) -> Role:
    """Classify a process from its full command line.

    Args:
        command: Full command line, arguments joined by spaces
        target: Substring identifying the application (e.g. "cursor")

    Returns:
        The first role whose marker appears in the executable or entry
        script name, then the role for the ``--type=`` switch. A command
        with no ``--type=`` switch whose executable name contains the
        target is the main process; anything else is UNKNOWN.
    """
    tokens = command.lower().split()
    if not tokens:
        return Role.UNKNOWN

    executable = os.path.basename(tokens[0])
    args = tokens[1:]
    process_type = next((a[len("--type=") :] for a in args if a.startswith("--type=")), None)

    names = [executable] + [
        os.path.basename(a) for a in _script_args(args, process_type is not None)
    ]
    for name in names:
        for marker, role in SCRIPT_MARKERS:
            if marker in name:
                return role

    if process_type is not None:
        return TYPE_ROLES.get(process_type, Role.UNKNOWN)
    if target.lower() in executable:
        return Role.MAIN
    return Role.UNKNOWN


def matches_target(command: str, target: str) -> bool:
    """Check whether a command line belongs to the target application family."""
    return target.lower() in command.lower()


def is_self_command(command: str) -> bool:
    """Check whether a command line is a cursor-guard process."""
    return any(marker in command for marker in SELF_MARKERS)


class ProcessTable(Protocol):
    """Read processes and deliver signals. Implemented by PsutilProcessTable and test fakes."""

    def prime(self) -> None: ...

    def snapshot(self, target: str) -> list[ProcessSample]: ...

    def terminate(self, pid: int, sig: signal.Signals) -> None: ...


class PsutilProcessTable:
    """Process table backed by psutil.

    psutil caches Process objects across process_iter() calls, so CPU
    percentages are deltas since the previous snapshot. The very first
    reading for a process is 0.0; call prime() once before the first cycle.
    """

    def __init__(self, exclude_pids: set[int] | None = None):
        self._exclude = {os.getpid()} | (exclude_pids or set())

    def prime(self) -> None:
        """Seed per-process CPU counters so the next snapshot has real values."""
        for _ in psutil.process_iter(attrs=["cpu_percent"]):
            pass

    def snapshot(self, target: str) -> list[ProcessSample]:
        """Collect samples for every process whose command line contains target.

        Processes that exit mid-read, deny access, or are zombies are skipped.
        """
        samples: list[ProcessSample] = []

        for proc in psutil.process_iter(attrs=_PROCESS_ATTRS):
            try:
                info = proc.info
                pid = info.get("pid", proc.pid)
                if pid in self._exclude:
                    continue

                cmdline = info.get("cmdline") or []
                command = " ".join(cmdline) if cmdline else info.get("name") or ""
                if not matches_target(command, target) or is_self_command(command):
                    continue

                samples.append(
                    ProcessSample(
                        pid=pid,
                        command=command,
                        cpu_percent=info.get("cpu_percent") or 0.0,
                        memory_percent=info.get("memory_percent") or 0.0,
                        role=classify_role(command, target),
                    )
                )
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        return samples

    def terminate(self, pid: int, sig: signal.Signals) -> None:
        """Send sig to pid.

        Raises:
            ProcessNotFound: The process already exited.
            PermissionDenied: The signal was not permitted.
        """
        try:
            psutil.Process(pid).send_signal(sig)
        except psutil.NoSuchProcess as e:
            raise ProcessNotFound(pid) from e
        except psutil.AccessDenied as e:
            raise PermissionDenied(f"PID {pid}", "signal not permitted") from e

    def pids_for(self, target: str) -> list[int]:
        """Return the pids of every running target process."""
        return [s.pid for s in self.snapshot(target)]

    def wait_gone(self, pids: list[int], timeout: float) -> list[int]:
        """Wait for pids to exit, returning those still alive after timeout."""
        procs = []
        for pid in pids:
            try:
                procs.append(psutil.Process(pid))
            except psutil.NoSuchProcess:
                continue
        _, alive = psutil.wait_procs(procs, timeout=timeout)
        return [p.pid for p in alive]


def system_memory_percent() -> float:
    """Return system-wide memory usage percentage."""
    return psutil.virtual_memory().percent
