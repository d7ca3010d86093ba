"""CLI commands for cursor-guard."""

import click


def _load_config():
    """Load config, exiting with status 1 on a malformed file."""
    from cursor_guard import logging as console
    from cursor_guard.config import Config
    from cursor_guard.errors import PolicyMisconfiguration

    try:
        return Config.load()
    except PolicyMisconfiguration as e:
        console.misconfigured(str(e))
        raise SystemExit(1)


def _load_policy(config, threshold: float | None = None, interval: float | None = None):
    """Build the protection policy, exiting with status 1 if it is out of bounds."""
    from cursor_guard import logging as console
    from cursor_guard.errors import PolicyMisconfiguration

    try:
        return config.policy(cpu_threshold=threshold, check_interval=interval)
    except PolicyMisconfiguration as e:
        console.misconfigured(str(e))
        raise SystemExit(1)


@click.group()
@click.version_option(package_name="cursor-guard")
def main() -> None:
    """Keep a struggling Electron IDE responsive on weak hardware."""
    pass


@main.command()
@click.option("--once", is_flag=True, help="Run a single cycle and exit")
@click.option("--dry-run", is_flag=True, help="Log decisions without sending signals")
@click.option("--threshold", "-t", type=float, default=None, help="CPU percent that triggers a kill")
@click.option("--interval", "-i", type=float, default=None, help="Seconds between cycles")
def watch(once: bool, dry_run: bool, threshold: float | None, interval: float | None) -> None:
    """Kill runaway helper processes on a fixed interval."""
    import asyncio

    from cursor_guard import logging as console
    from cursor_guard.collector import PsutilProcessTable
    from cursor_guard.errors import AlreadyRunning
    from cursor_guard.watchdog import Watchdog, read_pid_file, run_watchdog

    config = _load_config()
    policy = _load_policy(config, threshold, interval)

    if not config.config_path.exists():
        config.save()
        console.config_created(str(config.config_path))

    console.configure(config)
    table = PsutilProcessTable()

    if once:
        existing = read_pid_file(config.pid_path)
        if existing is not None:
            console.already_running(existing)
            raise SystemExit(1)
        watchdog = Watchdog(policy, table, dry_run=dry_run)
        asyncio.run(watchdog.run(once=True))
        return

    try:
        asyncio.run(run_watchdog(policy, table, config.pid_path, dry_run=dry_run))
    except AlreadyRunning as e:
        console.already_running(e.pid)
        raise SystemExit(1)


@main.command()
@click.option("--threshold", "-t", type=float, default=None, help="CPU percent that triggers a kill")
@click.option("--sample", "-s", type=float, default=1.0, help="Seconds to measure CPU over")
def scan(threshold: float | None, sample: float) -> None:
    """Show target processes and what the watchdog would do (no signals sent)."""
    import time

    from cursor_guard import logging as console
    from cursor_guard.collector import PsutilProcessTable
    from cursor_guard.formatting import format_percent, truncate_command
    from cursor_guard.watchdog import Watchdog

    config = _load_config()
    policy = _load_policy(config, threshold)
    console.configure(config, source="scan")

    table = PsutilProcessTable()
    watchdog = Watchdog(policy, table, dry_run=True)

    table.prime()
    time.sleep(max(sample, 0.1))
    entries = watchdog.run_cycle()

    if not entries:
        click.echo(f"No {policy.target} processes running.")
        return

    click.echo(f"{'PID':>7}  {'Role':15}  {'CPU':>7}  {'Mem':>7}  {'Action':24}  Command")
    click.echo("-" * 100)
    for entry in entries:
        click.echo(
            f"{entry.pid:>7}  {entry.role:15}  {format_percent(entry.cpu_percent):>7}  "
            f"{format_percent(entry.memory_percent):>7}  {entry.action.value:24}  "
            f"{truncate_command(entry.command, 36)}"
        )


@main.command()
def status() -> None:
    """Quick health check."""
    from collections import Counter

    import psutil

    from cursor_guard.collector import PsutilProcessTable
    from cursor_guard.formatting import format_bytes
    from cursor_guard.watchdog import read_pid_file

    config = _load_config()
    target = config.watchdog.target

    pid = read_pid_file(config.pid_path)
    click.echo(f"Watchdog: {'running (PID ' + str(pid) + ')' if pid else 'stopped'}")

    mem = psutil.virtual_memory()
    click.echo(f"Memory: {mem.percent:.1f}% ({format_bytes(mem.used)} of {format_bytes(mem.total)})")

    samples = PsutilProcessTable().snapshot(target)
    if not samples:
        click.echo(f"No {target} processes running.")
        return

    click.echo(f"\n{target} processes: {len(samples)}")
    roles = Counter(s.role.value for s in samples)
    mem_by_role: Counter[str] = Counter()
    for s in samples:
        mem_by_role[s.role.value] += s.memory_percent
    for role, count in sorted(roles.items()):
        click.echo(f"  - {role}: {count} ({mem_by_role[role]:.1f}% memory)")


@main.command()
def stop() -> None:
    """Stop a running watchdog."""
    import psutil

    from cursor_guard.watchdog import read_pid_file

    config = _load_config()
    pid = read_pid_file(config.pid_path)
    if pid is None:
        click.echo("Watchdog is not running.")
        return

    try:
        psutil.Process(pid).terminate()
    except psutil.NoSuchProcess:
        click.echo(f"Watchdog (PID {pid}) already exited.")
        return
    except psutil.AccessDenied:
        click.echo(f"Error: not permitted to stop watchdog (PID {pid})", err=True)
        raise SystemExit(1)

    click.echo(f"Sent SIGTERM to watchdog (PID {pid})")


@main.command()
@click.option("--profile", "-p", default=None, help="Cache set to clear: safe or deep")
@click.option("--dry-run", is_flag=True, help="Show what would be deleted")
def clean(profile: str | None, dry_run: bool) -> None:
    """Delete the application's rebuildable caches."""
    from cursor_guard import logging as console
    from cursor_guard.cache import reclaim, resolve_cache_paths
    from cursor_guard.errors import PolicyMisconfiguration

    config = _load_config()
    console.configure(config, source="clean")

    try:
        paths = resolve_cache_paths(
            profile or config.cache.profile,
            config.app_config_dir,
            config.cache.extra_paths,
        )
    except PolicyMisconfiguration as e:
        console.misconfigured(str(e))
        raise SystemExit(1)

    cleared = reclaim(paths, dry_run=dry_run)
    console.cache_summary(cleared, len(paths))


@main.command(context_settings={"ignore_unknown_options": True})
@click.option("--profile", "-p", default=None, help="Launch profile: safe, crash-fix or ivy-bridge")
@click.option("--heap", "js_heap_mb", type=int, default=None, help="JS heap size in MB")
@click.option("--foreground", is_flag=True, help="Keep the terminal attached and wait")
@click.option("--no-clean", is_flag=True, help="Skip clearing caches before launch")
@click.option("--kill-existing", is_flag=True, help="Stop running instances first")
@click.option("--allow-root", is_flag=True, help="Allow launching as root")
@click.argument("app_args", nargs=-1, type=click.UNPROCESSED)
def launch(
    profile: str | None,
    js_heap_mb: int | None,
    foreground: bool,
    no_clean: bool,
    kill_existing: bool,
    allow_root: bool,
    app_args: tuple[str, ...],
) -> None:
    """Start the application with stabilising flags.

    Extra arguments are forwarded to the application.
    """
    import os

    from cursor_guard import logging as console
    from cursor_guard.cache import reclaim, resolve_cache_paths
    from cursor_guard.errors import PolicyMisconfiguration, TargetExecutableNotFound
    from cursor_guard.launcher import (
        build_plan,
        resolve_executable,
        spawn,
        stop_running_instances,
    )

    config = _load_config()
    console.configure(config, source="launch")
    launch_cfg = config.launch
    profile = profile or launch_cfg.profile

    if os.geteuid() == 0 and not allow_root:
        console.refuse_root()
        raise SystemExit(1)

    try:
        executable = resolve_executable(launch_cfg.executable, launch_cfg.search_dirs)
    except TargetExecutableNotFound as e:
        console.executable_missing(str(e), e.remediation)
        raise SystemExit(1)
    console.executable_found(str(executable))

    try:
        plan = build_plan(
            executable,
            profile,
            js_heap_mb if js_heap_mb is not None else launch_cfg.js_heap_mb,
            launch_cfg.extra_flags,
            app_args,
        )
        cache_paths = []
        if not no_clean:
            cache_profile = "deep" if profile == "crash-fix" else config.cache.profile
            cache_paths = resolve_cache_paths(
                cache_profile, config.app_config_dir, config.cache.extra_paths
            )
    except PolicyMisconfiguration as e:
        console.misconfigured(str(e))
        raise SystemExit(1)

    if kill_existing:
        stop_running_instances(config.watchdog.target, launch_cfg.kill_grace_seconds)

    if cache_paths:
        reclaim(cache_paths)

    proc = spawn(plan, detach=not foreground)
    if foreground:
        rc = proc.wait()
        if rc:
            raise SystemExit(rc)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from dataclasses import asdict

    cfg = _load_config()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    for section in ("watchdog", "cache", "launch", "system"):
        click.echo()
        click.echo(f"[{section}]")
        for key, value in asdict(getattr(cfg, section)).items():
            click.echo(f"  {key} = {value!r}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    cfg = _load_config()

    if not cfg.config_path.exists():
        cfg.save()
        click.echo(f"Created default config at {cfg.config_path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from cursor_guard.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")
