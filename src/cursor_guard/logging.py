"""Console output and the action log.

Two channels, kept apart:

- Human output: Rich-formatted lines with a timestamp, level tag and icon,
  emitted through small per-event helpers (process_killed, cache_cleared, ...).
- Action log: structlog events rendered as JSON Lines into a rotating file,
  set up by configure(). No colors, one object per line.
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console
from rich.markup import escape

from cursor_guard.formatting import truncate_command

if TYPE_CHECKING:
    from cursor_guard.config import Config, ProtectionPolicy

_console = Console(highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    KILL = "[bold red]☠[/]"
    SHIELD = "[green]🛡[/]"
    SKIP = "[dim]·[/]"
    CLEAN = "🧹"
    LAUNCH = "🚀"
    SIGNAL = "⚡"
    MEMORY = "[yellow]▲[/]"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print one console line: time, level tag, optional icon, then msg.

    msg may contain Rich markup; callers escape untrusted text.
    """
    stamp = datetime.now().strftime("%H:%M:%S")
    tag = _LEVEL_STYLES.get(level, f"[{level}]")
    prefix = f"{tag} {icon}" if icon else tag
    _console.print(f"[dim]{stamp}[/] {prefix} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Informational console line."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Warning console line."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Error console line."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def _proc(command: str, pid: int) -> str:
    return f"[cyan]{escape(truncate_command(command))}[/] [dim]({pid})[/]"


def watchdog_started(policy: ProtectionPolicy) -> None:
    """Log watchdog startup with the effective policy."""
    roles = ", ".join(sorted(r.value for r in policy.protected_roles)) or "none"
    info(
        f"Watching [bold]{escape(policy.target)}[/]: cpu≥[cyan]{policy.cpu_threshold:g}%[/] "
        f"every [cyan]{policy.check_interval:g}s[/] [dim](protected: {roles}"
        f"{', unknown' if policy.protect_unknown else ''})[/]",
        Icon.OK,
    )


def watchdog_stopping() -> None:
    """Log watchdog shutdown initiated."""
    info("Watchdog stopping...", Icon.WAIT)


def watchdog_stopped(cycles: int, kills: int) -> None:
    """Log watchdog shutdown complete."""
    info(f"Watchdog stopped [dim]({cycles} cycles, {kills} kills)[/]", Icon.OK)


def signal_received(name: str) -> None:
    """Log a shutdown signal."""
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def process_killed(command: str, pid: int, role: str, cpu: float, dry_run: bool = False) -> None:
    """Log a terminated (or would-be terminated) process."""
    verb = "Would kill" if dry_run else "Killed"
    info(f"{verb} {_proc(command, pid)} [dim]{role}[/] cpu [bright_red]{cpu:.1f}%[/]", Icon.KILL)


def process_protected(command: str, pid: int, role: str, cpu: float) -> None:
    """Log a heavy process left alone because its role is protected."""
    info(f"Skipping {_proc(command, pid)} [dim]{role}, protected, cpu {cpu:.1f}%[/]", Icon.SHIELD)


def kill_failed(command: str, pid: int, reason: str) -> None:
    """Log a failed termination attempt."""
    warn(f"Failed to kill {_proc(command, pid)}: {escape(reason)}", Icon.FAIL)


def cycle_summary(total: int, killed: int, protected: int) -> None:
    """Log a cycle that did something worth reporting."""
    info(f"[dim]{total} processes, {killed} killed, {protected} protected[/]")


def cycle_failed(error_msg: str) -> None:
    """Log a cycle that raised unexpectedly."""
    error(f"Cycle failed: {escape(error_msg)}", Icon.FAIL)


def memory_pressure(percent: float, limit: float) -> None:
    """Log high system memory usage."""
    warn(f"High memory usage: [yellow]{percent:.1f}%[/] [dim](≥{limit:g}%)[/]", Icon.MEMORY)


def language_server_budget(total: float, limit: float, count: int) -> None:
    """Log language servers killed together for exceeding their shared CPU budget."""
    warn(
        f"Language servers over budget: [yellow]{total:.1f}%[/] across {count} "
        f"[dim](≥{limit:g}%)[/]",
        Icon.KILL,
    )


def cache_cleared(path: str) -> None:
    """Log a removed cache directory."""
    info(f"Cleared [cyan]{escape(path)}[/]", Icon.CLEAN)


def cache_would_clear(path: str) -> None:
    """Log a cache directory that a dry run would remove."""
    info(f"Would clear [cyan]{escape(path)}[/]", Icon.CLEAN)


def cache_clear_failed(path: str, reason: str) -> None:
    """Log a cache directory that could not be removed."""
    warn(f"Failed to clear [cyan]{escape(path)}[/]: {escape(reason)}", Icon.FAIL)


def cache_summary(cleared: int, total: int) -> None:
    """Log the cache reclaim result."""
    info(f"Cache reclaim: [cyan]{cleared}[/] of {total} paths cleared", Icon.OK)


def launch_spawned(executable: str, pid: int, detached: bool) -> None:
    """Log application launched."""
    mode = "detached" if detached else "foreground"
    info(f"Launched [cyan]{escape(executable)}[/] [dim](PID {pid}, {mode})[/]", Icon.LAUNCH)


def executable_found(path: str) -> None:
    """Log resolved executable."""
    info(f"Using [cyan]{escape(path)}[/]")


def executable_missing(message: str, remediation: str) -> None:
    """Log a missing application executable with the suggested fix."""
    error(escape(message), Icon.FAIL)
    info(escape(remediation))


def refuse_root() -> None:
    """Log refusal to launch as root."""
    error("Refusing to run as root [dim](use --allow-root to override)[/]", Icon.FAIL)


def already_running(pid: int) -> None:
    """Log watchdog already running error."""
    error(f"Another watchdog already running [dim](PID {pid})[/]", Icon.FAIL)


def stale_pid_file(pid: int) -> None:
    """Log stale PID file removed."""
    info(f"[dim]Stale PID file: PID {pid} is not a watchdog[/]")


def config_created(path: str) -> None:
    """Log a newly written default config."""
    info(f"Created config at [cyan]{escape(path)}[/]")


def misconfigured(message: str) -> None:
    """Log a configuration error."""
    error(escape(message), Icon.FAIL)


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Build a processor stamping every event with the emitting command."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config, source: str = "watchdog") -> None:
    """Configure structlog to write JSON Lines to the rotating action log.

    Console output is handled by Rich (see log functions above); structlog
    only writes to the file for machine parsing. Timestamps are local time.

    Args:
        config: Application config with paths
        source: Value of the ``source`` field on every record
    """
    config.state_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(logging.INFO)
    stdlib_root.handlers.clear()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source(source),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            _add_source(source),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_structlog() -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance for the JSON action log."""
    return structlog.get_logger()
