"""Shared test fixtures for cursor-guard."""

import signal
from contextlib import ExitStack
from pathlib import Path
from typing import Iterator
from unittest.mock import patch

import pytest

from cursor_guard.collector import ProcessSample
from cursor_guard.config import Config, ProtectionPolicy, Role
from cursor_guard.errors import PermissionDenied, ProcessNotFound


def make_sample(
    pid: int = 123,
    role: Role = Role.UTILITY,
    cpu: float = 25.0,
    mem: float = 1.5,
    command: str | None = None,
) -> ProcessSample:
    """Create a ProcessSample for testing."""
    return ProcessSample(
        pid=pid,
        command=command or f"/opt/cursor/cursor --type={role.value}",
        cpu_percent=cpu,
        memory_percent=mem,
        role=role,
    )


def make_policy(
    protected: set[Role] | None = None,
    threshold: float = 20.0,
    interval: float = 30.0,
    protect_unknown: bool = True,
    memory_warn_percent: float = 101.0,
    language_server_budget: float = 0.0,
) -> ProtectionPolicy:
    """Create a ProtectionPolicy for testing.

    memory_warn_percent defaults above 100 so memory warnings stay quiet.
    """
    return ProtectionPolicy(
        protected_roles=frozenset(protected if protected is not None else {Role.MAIN}),
        cpu_threshold=threshold,
        check_interval=interval,
        protect_unknown=protect_unknown,
        kill_signal=signal.SIGTERM,
        target="cursor",
        memory_warn_percent=memory_warn_percent,
        language_server_budget=language_server_budget,
    )


class FakeProcessTable:
    """In-memory ProcessTable recording every signal sent."""

    def __init__(
        self,
        samples: list[ProcessSample] | None = None,
        vanished: set[int] | None = None,
        denied: set[int] | None = None,
    ):
        self.samples = list(samples or [])
        self.vanished = vanished or set()
        self.denied = denied or set()
        self.signals: list[tuple[int, signal.Signals]] = []
        self.primed = 0
        self.snapshots = 0

    def prime(self) -> None:
        self.primed += 1

    def snapshot(self, target: str) -> list[ProcessSample]:
        self.snapshots += 1
        return list(self.samples)

    def terminate(self, pid: int, sig: signal.Signals) -> None:
        self.signals.append((pid, sig))
        if pid in self.vanished:
            raise ProcessNotFound(pid)
        if pid in self.denied:
            raise PermissionDenied(f"PID {pid}", "signal not permitted")

    @property
    def killed_pids(self) -> list[int]:
        return [pid for pid, _ in self.signals]


@pytest.fixture
def fake_table() -> FakeProcessTable:
    """Empty fake process table."""
    return FakeProcessTable()


def _patch_config_paths(stack: ExitStack, base_path: Path) -> None:
    """Point every Config path property at base_path."""
    # fmt: off
    stack.enter_context(patch.object(
        Config, "config_dir",
        new_callable=lambda: property(lambda self: base_path / "config")
    ))
    stack.enter_context(patch.object(
        Config, "state_dir",
        new_callable=lambda: property(lambda self: base_path / "state")
    ))
    stack.enter_context(patch.object(
        Config, "runtime_dir",
        new_callable=lambda: property(lambda self: base_path / "run")
    ))
    # fmt: on


@pytest.fixture
def patched_config_paths(tmp_path: Path) -> Iterator[Path]:
    """Patch Config paths to live under tmp_path, yielding the base path."""
    with ExitStack() as stack:
        _patch_config_paths(stack, tmp_path)
        yield tmp_path
