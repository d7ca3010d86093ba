"""Cache reclaim for the target application's rebuildable on-disk caches."""

import glob
import os
import shutil
from pathlib import Path

from cursor_guard import logging as console
from cursor_guard.errors import PolicyMisconfiguration

log = console.get_structlog()

# "{app}" expands to the application config root (~/.config/Cursor)
SAFE_PATHS: tuple[str, ...] = (
    "~/.cache/fontconfig",
    "{app}/Cache",
    "{app}/CachedData",
    "{app}/Code Cache",
    "{app}/GPUCache",
    "{app}/User/globalStorage/ms-vscode.vscode-typescript-next",
    "{app}/User/workspaceStorage/*/ms-vscode.vscode-typescript-next",
)

# Crash recovery: also drops service workers, per-workspace state, logs and
# extension global storage
DEEP_PATHS: tuple[str, ...] = SAFE_PATHS + (
    "{app}/Service Worker",
    "{app}/User/workspaceStorage",
    "{app}/logs",
    "{app}/User/globalStorage",
)

PROFILES: dict[str, tuple[str, ...]] = {
    "safe": SAFE_PATHS,
    "deep": DEEP_PATHS,
}


def _has_magic(pattern: str) -> bool:
    return any(c in pattern for c in "*?[")


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return path != root


def _real(path: Path) -> Path:
    """Resolve ".." and symlinked parents, leaving the final component as is."""
    return Path(os.path.realpath(path.parent)) / path.name


def expand_patterns(patterns: list[str] | tuple[str, ...], app_dir: Path) -> list[Path]:
    """Expand "{app}", "~" and glob patterns into concrete paths.

    Patterns without glob characters are returned even if they don't exist;
    glob patterns only yield existing matches. Paths nested inside another
    returned path are dropped, since deleting the parent removes them.
    """
    expanded: set[Path] = set()
    for pattern in patterns:
        text = os.path.normpath(os.path.expanduser(pattern.replace("{app}", str(app_dir))))
        if _has_magic(text):
            expanded.update(Path(p) for p in glob.glob(text))
        else:
            expanded.add(Path(text))

    ordered = sorted(expanded)
    result: list[Path] = []
    for path in ordered:
        if any(_is_within(path, parent) for parent in result):
            continue
        result.append(path)
    return result


def resolve_cache_paths(
    profile: str,
    app_dir: Path,
    extra_paths: list[str] | None = None,
    home: Path | None = None,
) -> list[Path]:
    """Resolve a cache profile plus extra patterns to deletable paths.

    Every path must sit strictly inside the home directory or the app root.

    Raises:
        PolicyMisconfiguration: Unknown profile or a path outside the allowed roots.
    """
    if profile not in PROFILES:
        raise PolicyMisconfiguration(
            f"Unknown cache profile: {profile!r}. Valid profiles: {sorted(PROFILES)}"
        )

    home = home or Path.home()
    patterns = list(PROFILES[profile]) + list(extra_paths or [])
    paths = expand_patterns(patterns, app_dir)

    roots = (Path(os.path.realpath(home)), Path(os.path.realpath(app_dir)))
    for path in paths:
        real = _real(path)
        if not any(_is_within(real, root) for root in roots):
            raise PolicyMisconfiguration(
                f"Refusing to clear {path}: outside {home} and {app_dir}"
            )
    return paths


def reclaim(paths: list[Path] | list[str], *, dry_run: bool = False) -> int:
    """Recursively delete each path.

    A missing path is not an error. Permission and other OS failures are
    logged and skipped. Running twice is a no-op the second time.

    Returns:
        Number of paths removed (or that would be removed, for a dry run).
    """
    cleared = 0
    for raw in paths:
        path = Path(raw)
        if not path.exists() and not path.is_symlink():
            log.debug("cache_missing", path=str(path))
            continue

        if dry_run:
            console.cache_would_clear(str(path))
            cleared += 1
            continue

        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            log.warning("cache_clear_failed", path=str(path), error=str(e))
            console.cache_clear_failed(str(path), e.strerror or str(e))
            continue

        cleared += 1
        log.info("cache_cleared", path=str(path))
        console.cache_cleared(str(path))

    return cleared
