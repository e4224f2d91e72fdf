"""Daemon control commands — start, stop, status, restart, reload, check.

Each command returns a process exit code:
0 success, 1 generic error, 3 daemon not running.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
import time
from datetime import datetime, timezone

from rich.console import Console
from rich.table import Table

from ..config import settings
from ..errors import ConfigurationError, LifecycleError, StateStoreError
from ..services.registry import ServiceRegistry, service_to_dict
from ..state.models import DaemonState, Health
from ..state.store import StateStore
from .pidfile import PidLock, is_process_alive
from .scheduler import WatchdogScheduler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NOT_RUNNING = 3

_RESTART_PAUSE = 2.0
_DETACH_GRACE = 5.0

_HEALTH_STYLE = {
    Health.HEALTHY: "green",
    Health.UNHEALTHY: "yellow",
    Health.RESTARTING: "cyan",
    Health.FAILED: "bold red",
    Health.UNKNOWN: "dim",
}

console = Console()


def _fmt_ts(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _blocked_services(state: DaemonState, window: float, now: float) -> list[str]:
    """Services still failed inside their restart window."""
    return [
        name for name, s in state.items()
        if s.health == Health.FAILED and not s.window_expired(now, window)
    ]


# ── start ────────────────────────────────────────────────────────────────────


def start_daemon(
    registry: ServiceRegistry,
    store: StateStore,
    lock: PidLock,
    force: bool = False,
    detach: bool = False,
    out: Console = console,
) -> int:
    """Validate, take the identity lock and run the monitoring loop in this process."""
    try:
        config = registry.load()
    except ConfigurationError as e:
        out.print(f"[red]{e}[/red]")
        return EXIT_ERROR

    holder = lock.holder()
    if holder is not None:
        out.print(f"[red]Watchdog already running (PID: {holder})[/red]")
        return EXIT_ERROR

    state = store.load()
    state.sync(config.services)
    blocked = _blocked_services(state, config.options.restart_window, time.time())
    if blocked and not force:
        out.print(
            f"[red]Restart limit exceeded for: {', '.join(blocked)}. "
            "Fix the services or start with --force to reset their counters.[/red]"
        )
        return EXIT_ERROR
    for name in blocked:
        logger.warning("Resetting restart budget of %s (--force)", name)
        state.reset(name)

    if detach:
        return _spawn_detached(registry, store, lock, force, out)

    try:
        lock.acquire()
    except LifecycleError as e:
        out.print(f"[red]{e}[/red]")
        return EXIT_ERROR

    try:
        scheduler = WatchdogScheduler(
            registry, store, state=state, recovery_timeout=settings.recovery_timeout,
        )
        logger.info("Daemon started (PID: %d)", os.getpid())
        asyncio.run(scheduler.run())
    finally:
        lock.release()
    logger.info("Daemon stopped cleanly")
    return EXIT_OK


def _spawn_detached(
    registry: ServiceRegistry, store: StateStore, lock: PidLock, force: bool, out: Console,
) -> int:
    """Re-launch `start` in a new session and wait for it to take the lock."""
    cmd = [
        sys.executable, "-m", "svcguard",
        "--config", str(registry.path),
        "--state-file", str(store.path),
        "--pid-file", str(lock.path),
        "start",
    ]
    if force:
        cmd.append("--force")
    process = subprocess.Popen(
        cmd,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        stdin=subprocess.DEVNULL,
        start_new_session=True,
        env=os.environ.copy(),
    )

    deadline = time.monotonic() + _DETACH_GRACE
    while time.monotonic() < deadline:
        if lock.read_pid() == process.pid:
            out.print(f"[green]Daemon started (PID: {process.pid})[/green]")
            return EXIT_OK
        if process.poll() is not None:
            break
        time.sleep(0.1)

    out.print(f"[red]Daemon failed to start (exit code {process.poll()})[/red]")
    return EXIT_ERROR


# ── stop / reload ────────────────────────────────────────────────────────────


def stop_daemon(lock: PidLock, timeout: float | None = None, out: Console = console) -> int:
    """SIGTERM the live instance, escalate to SIGKILL after ``timeout`` seconds."""
    timeout = settings.stop_timeout if timeout is None else timeout
    pid = lock.holder()
    if pid is None:
        if lock.path.exists():
            logger.warning("Removing stale PID file %s", lock.path)
            lock.clear()
        out.print("[yellow]Daemon is not running[/yellow]")
        return EXIT_NOT_RUNNING

    out.print(f"Sending SIGTERM to PID {pid}...")
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        lock.clear()
        out.print("[green]Daemon stopped[/green]")
        return EXIT_OK
    except PermissionError as e:
        out.print(f"[red]Cannot signal PID {pid}: {e}[/red]")
        return EXIT_ERROR

    deadline = time.monotonic() + timeout
    while is_process_alive(pid) and time.monotonic() < deadline:
        time.sleep(0.5)

    if is_process_alive(pid):
        out.print("[yellow]Daemon did not stop gracefully, forcing...[/yellow]")
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    lock.clear()
    out.print("[green]Daemon stopped[/green]")
    return EXIT_OK


def reload_daemon(lock: PidLock, out: Console = console) -> int:
    """Ask the live instance to re-read its configuration at the next cycle."""
    pid = lock.holder()
    if pid is None:
        out.print("[yellow]Daemon is not running[/yellow]")
        return EXIT_NOT_RUNNING
    try:
        os.kill(pid, signal.SIGHUP)
    except OSError as e:
        out.print(f"[red]Cannot signal PID {pid}: {e}[/red]")
        return EXIT_ERROR
    out.print(f"Reload requested (PID {pid})")
    return EXIT_OK


def restart_daemon(
    registry: ServiceRegistry,
    store: StateStore,
    lock: PidLock,
    force: bool = False,
    detach: bool = False,
    out: Console = console,
) -> int:
    code = stop_daemon(lock, out=out)
    if code == EXIT_ERROR:
        return code
    if code == EXIT_OK:
        time.sleep(_RESTART_PAUSE)
    return start_daemon(registry, store, lock, force=force, detach=detach, out=out)


# ── status / check ───────────────────────────────────────────────────────────


def status_daemon(lock: PidLock, store: StateStore, out: Console = console) -> int:
    """Print liveness and the per-service summary from the last snapshot.

    Output depends only on the PID and state files, so repeated calls between
    cycles print the same thing.
    """
    pid = lock.holder()
    if pid is None:
        out.print("[yellow]Daemon is not running[/yellow]")
        return EXIT_NOT_RUNNING

    out.print(f"[green]Daemon is running (PID: {pid})[/green]")
    try:
        state = store.read()
    except StateStoreError as e:
        out.print(f"[red]{e}[/red]")
        return EXIT_ERROR

    if not len(state):
        out.print("No service state recorded yet")
        return EXIT_ERROR

    table = Table(title="Service states")
    table.add_column("Service", style="bold")
    table.add_column("Health")
    table.add_column("Restarts", justify="right")
    table.add_column("Last restart (UTC)")
    table.add_column("Last check (UTC)")
    table.add_column("Detail", overflow="fold")
    for name, s in state.items():
        style = _HEALTH_STYLE.get(s.health, "")
        table.add_row(
            name,
            f"[{style}]{s.health.value}[/{style}]",
            str(s.restart_count),
            _fmt_ts(s.last_restart),
            _fmt_ts(s.last_checked),
            s.detail,
        )
    out.print(table)

    failed = [name for name, s in state.items() if s.health == Health.FAILED]
    if failed:
        out.print(
            f"[bold red]Manual intervention required: {', '.join(failed)} "
            "(restart budget exhausted)[/bold red]"
        )
    return EXIT_OK if state.all_healthy() else EXIT_ERROR


def check_config(registry: ServiceRegistry, out: Console = console) -> int:
    """Validate the configuration file and list the services it defines."""
    try:
        config = registry.load()
    except ConfigurationError as e:
        out.print(f"[red]{e}[/red]")
        return EXIT_ERROR

    table = Table(title=f"Services in {registry.path}")
    for column in ("Service", "Check", "Target", "Recover", "Timeout"):
        table.add_column(column)
    for service in config.services:
        d = service_to_dict(service)
        table.add_row(d["name"], d["check"], d["target"], d["recover"] or "-", f"{d['timeout']:g}s")
    out.print(table)

    o = config.options
    out.print(
        f"interval {o.check_interval:g}s · restart limit {o.restart_limit} per "
        f"{o.restart_window:g}s · alert cooldown {o.alert_cooldown:g}s · "
        f"webhook {'set' if o.alert_webhook else 'unset'}"
    )
    return EXIT_OK
