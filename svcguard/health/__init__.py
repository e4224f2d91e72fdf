"""Health subsystem: check executor and command runner."""

from .engine import CheckExecutor, HealthResult
from .runner import CommandResult, CommandRunner, SubprocessRunner
