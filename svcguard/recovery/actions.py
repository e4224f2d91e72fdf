"""Recovery actions: ask the host to restart a service."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ..errors import RecoveryActionError
from ..health.runner import CommandRunner, SubprocessRunner
from ..services.registry import ServiceDefinition

logger = logging.getLogger(__name__)

# Restart command per init system, "{service}" is the service name
INIT_COMMANDS = {
    "systemd": "systemctl restart {service}",
    "openrc": "rc-service {service} restart",
    "sysvinit": "/etc/init.d/{service} restart",
}


def detect_init_system(root: Path = Path("/")) -> str:
    """Best-effort detection of the host's init system."""
    if (root / "run" / "systemd" / "system").is_dir():
        return "systemd"
    if (root / "sbin" / "openrc").exists() or (root / "sbin" / "openrc-run").exists():
        return "openrc"
    if (root / "etc" / "init.d").is_dir():
        return "sysvinit"
    return "unknown"


@dataclass
class RecoveryResult:
    success: bool
    elapsed: float
    output: str = ""


class RecoveryAction:
    """Runs the recovery command for a service through a CommandRunner.

    The command is the service's own ``recover`` template, else the
    daemon-wide template, else the init system's restart command.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        default_command: str = "",
        timeout: float = 30.0,
        init_detector: Callable[[], str] = detect_init_system,
    ) -> None:
        self.runner = runner or SubprocessRunner()
        self.default_command = default_command
        self.timeout = timeout
        self._init_detector = init_detector
        self._init_system: str | None = None

    def command_for(self, service: ServiceDefinition) -> str:
        template = service.recover or self.default_command
        if not template:
            if self._init_system is None:
                self._init_system = self._init_detector()
                logger.info("Detected init system: %s", self._init_system)
            template = INIT_COMMANDS.get(self._init_system, "")
        if not template:
            raise RecoveryActionError(
                f"No recovery command for {service.name} (init system: {self._init_system})"
            )
        return template.replace("{service}", service.name)

    def run(self, service: ServiceDefinition) -> RecoveryResult:
        """Invoke host recovery. Raises RecoveryActionError if no command applies."""
        command = self.command_for(service)
        logger.info("Executing recovery for %s: %s", service.name, command)
        result = self.runner.run(command, self.timeout)
        if result.output:
            for line in result.output.splitlines()[-10:]:
                logger.info("[%s] %s", service.name, line)
        return RecoveryResult(success=result.success, elapsed=result.elapsed, output=result.output)

