"""Entry point for the svcguard service watchdog."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel

from svcguard import __version__
from svcguard.config import settings
from svcguard.daemon import control
from svcguard.daemon.pidfile import PidLock
from svcguard.services.registry import ServiceRegistry
from svcguard.state.store import StateStore

console = Console()

EPILOG = """\
environment:
  CONFIG_FILE                  service configuration (YAML)
  WATCHDOG_CHECK_INTERVAL      check interval in seconds (default: 60)
  WATCHDOG_RESTART_LIMIT       max restarts per window (default: 3)
  WATCHDOG_RESTART_WINDOW      restart window in seconds (default: 300)
  WATCHDOG_ALERT_COOLDOWN      alert cooldown in seconds (default: 600)
  ALERT_WEBHOOK                webhook URL for alerts (optional)
"""


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        log_file = Path(settings.log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="svcguard",
        description="Service watchdog daemon for monitoring and auto-recovery",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", help=f"config file (default: {settings.config_file})")
    parser.add_argument("--state-file", help=f"state snapshot (default: {settings.state_file})")
    parser.add_argument("--pid-file", help=f"identity file (default: {settings.pid_file})")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command")

    for name, help_text in (
        ("start", "Start the watchdog daemon"),
        ("restart", "Restart the watchdog daemon"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument(
            "--force", action="store_true",
            help="Start even if services exhausted their restart budget (resets them)",
        )
        p.add_argument("--detach", action="store_true", help="Run in the background")

    sub.add_parser("stop", help="Stop the watchdog daemon")
    sub.add_parser("status", help="Check daemon status")
    sub.add_parser("reload", help="Reload configuration at the next cycle")
    sub.add_parser("check", help="Validate the configuration file")
    return parser


def run(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return control.EXIT_ERROR

    setup_logging(args.verbose)

    registry = ServiceRegistry(args.config)
    store = StateStore(args.state_file)
    lock = PidLock(args.pid_file)

    if args.command == "start":
        console.print(Panel(f"svcguard {__version__}", style="bold green"))
        return control.start_daemon(registry, store, lock, force=args.force, detach=args.detach)
    if args.command == "restart":
        return control.restart_daemon(registry, store, lock, force=args.force, detach=args.detach)
    if args.command == "stop":
        return control.stop_daemon(lock)
    if args.command == "status":
        return control.status_daemon(lock, store)
    if args.command == "reload":
        return control.reload_daemon(lock)
    if args.command == "check":
        return control.check_config(registry)

    parser.print_help()
    return control.EXIT_ERROR


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
