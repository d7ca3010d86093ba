"""Configuration system for cursor-guard."""

import signal
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from pathlib import Path

import tomlkit

from cursor_guard.errors import PolicyMisconfiguration

# Sanity bounds; a tiny threshold or interval turns the watchdog into a kill loop
MIN_CPU_THRESHOLD = 1.0
MAX_CPU_THRESHOLD = 10_000.0  # cpu_percent is per-core summed, so >100 is legal
MIN_CHECK_INTERVAL = 1.0
MAX_CHECK_INTERVAL = 3600.0

ALLOWED_SIGNALS = ("SIGTERM", "SIGKILL", "SIGINT", "SIGHUP")


class Role(str, Enum):
    """Coarse classification of a process in the target application family."""

    MAIN = "main"
    RENDERER = "renderer"
    UTILITY = "utility"
    GPU = "gpu"
    LANGUAGE_SERVER = "language_server"
    TERMINAL_HOST = "terminal_host"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ProtectionPolicy:
    """Immutable watchdog policy, built once at startup.

    A role in ``protected_roles`` is never a termination target. When
    ``protect_unknown`` is set, unclassified processes are protected too.
    The CPU comparison is inclusive: ``cpu_percent >= cpu_threshold`` kills.
    A non-zero ``language_server_budget`` also kills every unprotected
    language server once their summed CPU reaches it, even if none crosses
    the per-process threshold alone.
    """

    protected_roles: frozenset[Role]
    cpu_threshold: float
    check_interval: float
    protect_unknown: bool = True
    kill_signal: signal.Signals = signal.SIGTERM
    target: str = "cursor"
    memory_warn_percent: float = 80.0
    language_server_budget: float = 0.0

    def __post_init__(self) -> None:
        if not MIN_CPU_THRESHOLD <= self.cpu_threshold <= MAX_CPU_THRESHOLD:
            raise PolicyMisconfiguration(
                f"cpu_threshold must be between {MIN_CPU_THRESHOLD} and "
                f"{MAX_CPU_THRESHOLD}, got {self.cpu_threshold}"
            )
        if not MIN_CHECK_INTERVAL <= self.check_interval <= MAX_CHECK_INTERVAL:
            raise PolicyMisconfiguration(
                f"check_interval must be between {MIN_CHECK_INTERVAL} and "
                f"{MAX_CHECK_INTERVAL} seconds, got {self.check_interval}"
            )
        if not self.target.strip():
            raise PolicyMisconfiguration("target must not be empty")
        if self.language_server_budget and not (
            MIN_CPU_THRESHOLD <= self.language_server_budget <= MAX_CPU_THRESHOLD
        ):
            raise PolicyMisconfiguration(
                f"language_server_budget must be 0 (off) or between {MIN_CPU_THRESHOLD} "
                f"and {MAX_CPU_THRESHOLD}, got {self.language_server_budget}"
            )

    def is_protected(self, role: Role) -> bool:
        """Return True if processes with this role must never be killed."""
        if role in self.protected_roles:
            return True
        return role is Role.UNKNOWN and self.protect_unknown


def parse_roles(names: list[str]) -> frozenset[Role]:
    """Convert role names to a frozenset of Role, rejecting unknown names."""
    roles = set()
    for name in names:
        try:
            roles.add(Role(name))
        except ValueError:
            valid = [r.value for r in Role]
            raise PolicyMisconfiguration(
                f"Unknown role: {name!r}. Valid roles: {valid}"
            ) from None
    return frozenset(roles)


def parse_signal(name: str) -> signal.Signals:
    """Convert a signal name to signal.Signals."""
    name = name.upper()
    if not name.startswith("SIG"):
        name = f"SIG{name}"
    if name not in ALLOWED_SIGNALS:
        raise PolicyMisconfiguration(
            f"Unsupported kill_signal: {name!r}. Must be one of {list(ALLOWED_SIGNALS)}"
        )
    return signal.Signals[name]


@dataclass
class WatchdogConfig:
    """Process watchdog configuration."""

    target: str = "cursor"  # Substring identifying the application in command lines
    cpu_threshold: float = 20.0  # Percent, inclusive
    check_interval: float = 30.0  # Seconds between cycles
    protected_roles: list[str] = field(
        default_factory=lambda: ["main", "renderer", "terminal_host"]
    )
    protect_unknown: bool = True
    kill_signal: str = "SIGTERM"
    memory_warn_percent: float = 80.0  # Log a warning at or above this system memory use
    language_server_budget: float = 30.0  # Summed language server CPU that kills them all; 0 = off


@dataclass
class CacheConfig:
    """Cache reclaim configuration."""

    app_config_dir: str = "~/.config/Cursor"
    profile: str = "safe"  # "safe" or "deep"
    extra_paths: list[str] = field(default_factory=list)


@dataclass
class LaunchConfig:
    """Application launch configuration."""

    executable: str = ""  # Empty = search
    search_dirs: list[str] = field(
        default_factory=lambda: ["~/Downloads", "~/Applications", "~/.local/bin"]
    )
    profile: str = "safe"
    js_heap_mb: int = 1024
    extra_flags: list[str] = field(default_factory=list)
    kill_grace_seconds: float = 3.0


@dataclass
class SystemConfig:
    """Logging and housekeeping configuration."""

    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


def _coerce(section: str, name: str, value: object, default: object) -> object:
    """Check a TOML value against the type of its dataclass default."""
    if isinstance(default, bool):
        ok = isinstance(value, bool)
        expected = "a boolean"
    elif isinstance(default, float):
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        expected = "a number"
        if ok:
            value = float(value)  # type: ignore[arg-type]
    elif isinstance(default, int):
        ok = isinstance(value, int) and not isinstance(value, bool)
        expected = "an integer"
    elif isinstance(default, str):
        ok = isinstance(value, str)
        expected = "a string"
    elif isinstance(default, list):
        ok = isinstance(value, list) and all(isinstance(v, str) for v in value)
        expected = "a list of strings"
    else:
        return value

    if not ok:
        raise PolicyMisconfiguration(f"[{section}] {name} must be {expected}, got {value!r}")
    return value


def _load_section(cls: type, data: object, section: str) -> object:
    """Build a section dataclass from TOML data, using dataclass defaults for missing keys.

    Raises:
        PolicyMisconfiguration: If the section is not a table or a value has the wrong type.
    """
    if not isinstance(data, Mapping):
        raise PolicyMisconfiguration(f"[{section}] must be a table, got {data!r}")

    defaults = cls()
    kwargs = {}
    for f in fields(cls):
        default = getattr(defaults, f.name)
        if f.name not in data:
            kwargs[f.name] = default
            continue
        value = data[f.name]
        # tomlkit containers unwrap to plain Python values
        if hasattr(value, "unwrap"):
            value = value.unwrap()
        kwargs[f.name] = _coerce(section, f.name, value, default)
    return cls(**kwargs)


@dataclass
class Config:
    """Main configuration container."""

    watchdog: WatchdogConfig = field(default_factory=WatchdogConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    launch: LaunchConfig = field(default_factory=LaunchConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "cursor-guard"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "cursor-guard"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for the PID file.

        Stored in /tmp/ so it's cleared on reboot, avoiding stale file issues.
        """
        return Path("/tmp/cursor-guard")

    @property
    def log_path(self) -> Path:
        """Action log path (JSON Lines)."""
        return self.state_dir / "watchdog.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "watchdog.pid"

    @property
    def app_config_dir(self) -> Path:
        """Target application's configuration root."""
        return Path(self.cache.app_config_dir).expanduser()

    def policy(
        self,
        cpu_threshold: float | None = None,
        check_interval: float | None = None,
    ) -> ProtectionPolicy:
        """Build the immutable protection policy, with optional one-off overrides.

        Raises:
            PolicyMisconfiguration: If any value is outside sane bounds.
        """
        wd = self.watchdog
        return ProtectionPolicy(
            protected_roles=parse_roles(wd.protected_roles),
            cpu_threshold=float(cpu_threshold if cpu_threshold is not None else wd.cpu_threshold),
            check_interval=float(
                check_interval if check_interval is not None else wd.check_interval
            ),
            protect_unknown=bool(wd.protect_unknown),
            kill_signal=parse_signal(wd.kill_signal),
            target=wd.target,
            memory_warn_percent=float(wd.memory_warn_percent),
            language_server_budget=float(wd.language_server_budget),
        )

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("watchdog", "cache", "launch", "system"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() agree.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise PolicyMisconfiguration(f"Failed to parse config file {path}: {e}") from e

        return cls(
            watchdog=_load_section(WatchdogConfig, data.get("watchdog", {}), "watchdog"),
            cache=_load_section(CacheConfig, data.get("cache", {}), "cache"),
            launch=_load_section(LaunchConfig, data.get("launch", {}), "launch"),
            system=_load_section(SystemConfig, data.get("system", {}), "system"),
        )
