"""Shared test fixtures."""

from __future__ import annotations

from collections import defaultdict, deque
from pathlib import Path
from typing import Any

import pytest
import yaml

from svcguard.health.engine import HealthResult
from svcguard.health.runner import CommandResult
from svcguard.notifications import AlertDispatcher
from svcguard.recovery.actions import RecoveryAction
from svcguard.recovery.controller import RestartController, RestartPolicy
from svcguard.services.registry import (
    HttpTarget,
    PortTarget,
    ServiceDefinition,
    ServiceRegistry,
)


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRunner:
    """CommandRunner that records commands instead of running them."""

    def __init__(self, success: bool = True, output: str = "") -> None:
        self.success = success
        self.output = output
        self.commands: list[str] = []

    def run(self, command: str | list[str], timeout: float) -> CommandResult:
        self.commands.append(command if isinstance(command, str) else " ".join(command))
        return CommandResult(
            success=self.success,
            exit_code=0 if self.success else 1,
            output=self.output,
            elapsed=0.01,
        )


class StubExecutor:
    """Check executor returning scripted verdicts per service.

    Each service pops from its queue; once empty, ``default[name]`` is used.
    """

    def __init__(self) -> None:
        self.queues: dict[str, deque[bool]] = defaultdict(deque)
        self.default: dict[str, bool] = {}
        self.calls: list[str] = []

    def script(self, name: str, *verdicts: bool, then: bool | None = None) -> None:
        self.queues[name].extend(verdicts)
        if then is not None:
            self.default[name] = then

    def evaluate(self, service: ServiceDefinition) -> HealthResult:
        self.calls.append(service.name)
        queue = self.queues[service.name]
        healthy = queue.popleft() if queue else self.default.get(service.name, True)
        return HealthResult(healthy, "ok" if healthy else "connection refused")

    def shutdown(self) -> None:
        pass


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def executor() -> StubExecutor:
    return StubExecutor()


@pytest.fixture
def policy() -> RestartPolicy:
    return RestartPolicy(limit=3, window=300, settle=5)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def controller(executor, runner, policy, clock, sleeps) -> RestartController:
    return RestartController(
        executor=executor,
        recovery=RecoveryAction(runner, default_command="restart {service}"),
        policy=policy,
        clock=clock,
        sleep=sleeps.append,
    )


@pytest.fixture
def alert_log(tmp_path: Path) -> Path:
    return tmp_path / "alerts.log"


@pytest.fixture
def dispatcher(alert_log: Path, clock: FakeClock) -> AlertDispatcher:
    """Dispatcher writing only to a temp alert log."""
    return AlertDispatcher(
        cooldown=600, syslog_enabled=False, alert_log=alert_log, clock=clock,
    )


@pytest.fixture
def web() -> ServiceDefinition:
    return ServiceDefinition(name="web", target=PortTarget(port=8080))


@pytest.fixture
def app() -> ServiceDefinition:
    return ServiceDefinition(name="app", target=HttpTarget(url="http://localhost/health"))


SAMPLE_CONFIG: dict[str, Any] = {
    "options": {
        "check_interval": 10,
        "restart_limit": 3,
        "restart_window": 300,
        "alert_cooldown": 600,
        "settle_seconds": 0,
    },
    "services": [
        {"name": "web", "check": "port", "port": 8080},
        {"name": "app", "check": "http", "url": "http://localhost/health", "expected_status": 200},
        {"name": "cache", "check": "process", "process": "redis-server"},
    ],
}


@pytest.fixture
def write_config(tmp_path: Path):
    """Write a config document and return its path."""
    path = tmp_path / "services.yaml"

    def _write(data: dict[str, Any] | None = None) -> Path:
        path.write_text(yaml.dump(data if data is not None else SAMPLE_CONFIG, sort_keys=False))
        return path

    return _write


@pytest.fixture
def registry(write_config) -> ServiceRegistry:
    return ServiceRegistry(write_config())
