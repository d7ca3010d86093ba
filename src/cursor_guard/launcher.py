"""Launch wrapper: locate the application and start it with stabilising flags."""

import os
import shutil
import signal
import stat
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from cursor_guard import logging as console
from cursor_guard.collector import PsutilProcessTable
from cursor_guard.errors import (
    PermissionDenied,
    PolicyMisconfiguration,
    ProcessNotFound,
    TargetExecutableNotFound,
)

log = console.get_structlog()

APPIMAGE_PATTERNS = ("Cursor*.AppImage", "cursor*.AppImage")
PATH_COMMAND = "cursor"
REMEDIATION = (
    "Download the Cursor AppImage to ~/Downloads/ or set [launch] executable "
    "in the cursor-guard config."
)


@dataclass(frozen=True)
class LaunchProfile:
    """Static flag and environment table for one launch mode.

    "{js_heap_mb}" in flags or env values is replaced with the configured heap size.
    """

    flags: tuple[str, ...]
    env: dict[str, str] = field(default_factory=dict)


_SAFE_FLAGS = (
    "--disable-gpu",
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-features=VizDisplayCompositor",
    "--js-flags=--max-old-space-size={js_heap_mb}",
)

PROFILES: dict[str, LaunchProfile] = {
    "safe": LaunchProfile(flags=_SAFE_FLAGS),
    # For "Render frame was disposed" crashes
    "crash-fix": LaunchProfile(
        flags=(
            "--disable-gpu",
            "--no-sandbox",
            "--disable-dev-shm-usage",
            "--disable-features=VizDisplayCompositor,TranslateUI,BlinkGenPropertyTrees",
            "--disable-background-timer-throttling",
            "--disable-renderer-backgrounding",
            "--disable-backgrounding-occluded-windows",
            "--disable-ipc-flooding-protection",
            "--memory-pressure-off",
            "--js-flags=--max-old-space-size={js_heap_mb}",
        ),
    ),
    # Intel HD 2500/4000: software rendering only, capped GPU memory
    "ivy-bridge": LaunchProfile(
        flags=(
            "--disable-gpu",
            "--disable-software-rasterizer",
            "--disable-dev-shm-usage",
            "--no-sandbox",
            "--disable-setuid-sandbox",
            "--disable-features=VizDisplayCompositor",
            "--disable-background-timer-throttling",
            "--disable-backgrounding-occluded-windows",
            "--disable-renderer-backgrounding",
            "--disable-field-trial-config",
            "--disable-ipc-flooding-protection",
            "--force-gpu-mem-available-mb=128",
            "--js-flags=--max-old-space-size={js_heap_mb}",
        ),
        env={
            "ELECTRON_DISABLE_GPU": "1",
            "ELECTRON_DISABLE_SOFTWARE_RASTERIZER": "1",
            "ELECTRON_DISABLE_GPU_SANDBOX": "1",
            "ELECTRON_DISABLE_GPU_PROCESS": "1",
            "ELECTRON_DISABLE_GPU_MEMORY_BUFFER": "1",
            "CURSOR_DISABLE_GPU": "1",
            "CURSOR_DISABLE_SOFTWARE_RASTERIZER": "1",
            "ELECTRON_DISABLE_DEV_SHM_USAGE": "1",
            "ELECTRON_DISABLE_FEATURES": "VizDisplayCompositor",
            "ELECTRON_FORCE_GPU_MEM_AVAILABLE_MB": "128",
            "ELECTRON_GPU_MEMORY_LIMIT": "256",
            "ELECTRON_MAX_OLD_SPACE_SIZE": "{js_heap_mb}",
            "NODE_OPTIONS": "--max-old-space-size={js_heap_mb}",
            "ELECTRON_DISABLE_BACKGROUND_TIMER_THROTTLING": "1",
            "ELECTRON_DISABLE_BACKGROUNDING_OCCLUDED_WINDOWS": "1",
            "ELECTRON_DISABLE_RENDERER_BACKGROUNDING": "1",
            "ELECTRON_DISABLE_FIELD_TRIAL_CONFIG": "1",
            "ELECTRON_DISABLE_IPC_FLOODING_PROTECTION": "1",
        },
    ),
}


@dataclass(frozen=True)
class LaunchPlan:
    """Everything needed to spawn the application."""

    executable: Path
    argv: list[str]
    env: dict[str, str]  # Overrides applied on top of os.environ


def get_profile(name: str) -> LaunchProfile:
    """Look up a launch profile by name.

    Raises:
        PolicyMisconfiguration: Unknown profile name.
    """
    try:
        return PROFILES[name]
    except KeyError:
        raise PolicyMisconfiguration(
            f"Unknown launch profile: {name!r}. Valid profiles: {sorted(PROFILES)}"
        ) from None


def _ensure_executable(path: Path) -> None:
    """chmod +x an AppImage that was downloaded without the execute bit."""
    if os.access(path, os.X_OK):
        return
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    log.info("executable_chmod", path=str(path))


def find_appimage(search_dirs: list[str]) -> Path | None:
    """Return the most recently modified Cursor AppImage in search_dirs."""
    candidates: list[Path] = []
    for raw in search_dirs:
        directory = Path(raw).expanduser()
        if not directory.is_dir():
            continue
        for pattern in APPIMAGE_PATTERNS:
            candidates.extend(p for p in directory.glob(pattern) if p.is_file())

    if not candidates:
        return None
    return max(candidates, key=lambda p: (p.stat().st_mtime, p.name))


def resolve_executable(
    configured: str,
    search_dirs: list[str],
    which=shutil.which,
) -> Path:
    """Locate the application executable.

    Order: explicit configured path, newest AppImage in search_dirs, then
    ``cursor`` on PATH.

    Raises:
        TargetExecutableNotFound: Nothing usable was found.
    """
    searched: list[str] = []

    if configured:
        path = Path(configured).expanduser()
        if path.is_file():
            _ensure_executable(path)
            return path
        raise TargetExecutableNotFound([str(path)], REMEDIATION)

    appimage = find_appimage(search_dirs)
    if appimage is not None:
        _ensure_executable(appimage)
        return appimage
    searched.extend(f"{d}/{APPIMAGE_PATTERNS[0]}" for d in search_dirs)

    on_path = which(PATH_COMMAND)
    if on_path:
        return Path(on_path)
    searched.append(f"$PATH/{PATH_COMMAND}")

    raise TargetExecutableNotFound(searched, REMEDIATION)


def build_plan(
    executable: Path,
    profile: str,
    js_heap_mb: int,
    extra_flags: list[str] | None = None,
    args: list[str] | tuple[str, ...] = (),
) -> LaunchPlan:
    """Compose argv and environment for a launch.

    Order: executable, profile flags, configured extra flags, caller args.

    Raises:
        PolicyMisconfiguration: Unknown profile or non-positive heap size.
    """
    if js_heap_mb <= 0:
        raise PolicyMisconfiguration(f"js_heap_mb must be > 0, got {js_heap_mb}")

    chosen = get_profile(profile)
    flags = [f.format(js_heap_mb=js_heap_mb) for f in chosen.flags]
    env = {k: v.format(js_heap_mb=js_heap_mb) for k, v in chosen.env.items()}
    argv = [str(executable), *flags, *(extra_flags or []), *args]
    return LaunchPlan(executable=executable, argv=argv, env=env)


def spawn(plan: LaunchPlan, *, detach: bool = True, popen=subprocess.Popen) -> subprocess.Popen:
    """Start the application.

    Detached: new session, stdio on /dev/null; the caller does not wait.
    Foreground: inherits the terminal; the caller should wait() on the result.
    """
    env = {**os.environ, **plan.env}
    if detach:
        proc = popen(
            plan.argv,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    else:
        proc = popen(plan.argv, env=env)

    log.info(
        "launch_spawned",
        executable=str(plan.executable),
        pid=proc.pid,
        detached=detach,
        argv=plan.argv,
        env=sorted(plan.env),
    )
    console.launch_spawned(plan.executable.name, proc.pid, detach)
    return proc


def stop_running_instances(
    target: str,
    grace_seconds: float,
    table: PsutilProcessTable | None = None,
) -> int:
    """Terminate every running target process, escalating to SIGKILL after grace_seconds.

    Returns:
        Number of processes signalled.
    """
    table = table or PsutilProcessTable()
    pids = table.pids_for(target)
    if not pids:
        return 0

    for pid in pids:
        _send_quietly(table, pid, signal.SIGTERM)

    survivors = table.wait_gone(pids, timeout=grace_seconds)
    for pid in survivors:
        _send_quietly(table, pid, signal.SIGKILL)

    log.info("instances_stopped", count=len(pids), killed=len(survivors))
    console.info(f"Stopped [cyan]{len(pids)}[/] running {target} processes")
    return len(pids)


def _send_quietly(table: PsutilProcessTable, pid: int, sig: signal.Signals) -> None:
    """Signal pid, logging rather than raising on failure."""
    try:
        table.terminate(pid, sig)
    except ProcessNotFound:
        log.debug("instance_gone", pid=pid)
    except PermissionDenied as e:
        log.warning("instance_signal_failed", pid=pid, signal=sig.name, error=str(e))
        console.warn(f"Could not signal PID {pid}: {e}")
