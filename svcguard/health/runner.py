"""Command runner — the one place the daemon spawns external commands.

Custom checks and recovery actions take a ``CommandRunner`` so tests can
substitute a fake instead of touching the host.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

_MAX_OUTPUT = 4000  # chars of combined output kept for logs / alerts


@dataclass
class CommandResult:
    """Outcome of one external command."""

    success: bool
    exit_code: int
    output: str
    elapsed: float  # seconds


class CommandRunner(Protocol):
    def run(self, command: str | list[str], timeout: float) -> CommandResult: ...


class SubprocessRunner:
    """Run commands with ``subprocess.run`` (no shell) and a hard timeout."""

    def run(self, command: str | list[str], timeout: float) -> CommandResult:
        try:
            argv = shlex.split(command) if isinstance(command, str) else list(command)
        except ValueError as e:
            return CommandResult(success=False, exit_code=-1, output=f"Bad command: {e}", elapsed=0.0)
        if not argv:
            return CommandResult(success=False, exit_code=-1, output="Empty command", elapsed=0.0)

        t0 = time.perf_counter()
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout,
                encoding="utf-8",
                errors="replace",
            )
            elapsed = time.perf_counter() - t0
            output = (result.stdout + result.stderr).strip()[-_MAX_OUTPUT:]
            return CommandResult(
                success=result.returncode == 0,
                exit_code=result.returncode,
                output=output,
                elapsed=elapsed,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                success=False,
                exit_code=-1,
                output=f"Command timed out after {timeout:g}s",
                elapsed=time.perf_counter() - t0,
            )
        except FileNotFoundError as e:
            return CommandResult(
                success=False,
                exit_code=-1,
                output=f"Command not found: {e}",
                elapsed=time.perf_counter() - t0,
            )
        except OSError as e:
            logger.warning("Could not run %s: %s", argv[0], e)
            return CommandResult(
                success=False,
                exit_code=-1,
                output=f"{type(e).__name__}: {e}",
                elapsed=time.perf_counter() - t0,
            )
