"""Restart controller — the per-service recovery state machine.

    healthy/unknown ──fail──▶ unhealthy ──budget left──▶ restarting
         ▲                       ▲  │                       │
         └──────── pass ─────────┼──┼─── re-check passes ◀──┤
                                 └──┼─── re-check fails ◀───┤
                                    └─ budget spent ─▶ failed (until the window elapses)

The restart budget (``limit`` attempts per ``window`` seconds) is what keeps a
flapping service from being restarted in a tight loop.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..errors import RecoveryActionError
from ..health.engine import CheckExecutor
from ..services.registry import ServiceDefinition
from ..state.models import Health, ServiceRuntimeState
from .actions import RecoveryAction

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


_SEVERITY = {
    Health.UNHEALTHY: Severity.WARNING,
    Health.RESTARTING: Severity.WARNING,
    Health.FAILED: Severity.CRITICAL,
}


@dataclass
class Transition:
    """A change of health for one service, as seen by the alert dispatcher."""

    service: str
    previous: Health
    current: Health
    message: str
    severity: Severity = Severity.INFO
    restart_count: int = 0
    timestamp: float = field(default_factory=time.time)

    @property
    def iso_timestamp(self) -> str:
        return datetime.fromtimestamp(self.timestamp, timezone.utc).isoformat()


@dataclass
class RestartPolicy:
    limit: int = 3
    window: float = 300.0
    settle: float = 5.0  # seconds between a recovery action and its re-check


class RestartController:
    """Decides whether and how to recover a service, one evaluation at a time."""

    def __init__(
        self,
        executor: CheckExecutor,
        recovery: RecoveryAction,
        policy: RestartPolicy | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.executor = executor
        self.recovery = recovery
        self.policy = policy or RestartPolicy()
        self._clock = clock
        self._sleep = sleep

    def evaluate(self, service: ServiceDefinition, state: ServiceRuntimeState) -> list[Transition]:
        """Check the service, recover it if allowed, and return the transitions made."""
        transitions: list[Transition] = []
        result = self.executor.evaluate(service)
        now = self._clock()
        state.last_checked = now
        state.detail = result.detail

        if result.healthy:
            if state.health != Health.HEALTHY:
                if state.health != Health.UNKNOWN:
                    logger.info("Service %s recovered", service.name)
                self._move(service, state, Health.HEALTHY, result.detail, transitions)
            return transitions

        logger.warning("Service %s: FAILED CHECK: %s", service.name, result.detail)

        if state.health == Health.FAILED:
            if not state.window_expired(now, self.policy.window):
                logger.debug(
                    "Service %s is failed, restart budget exhausted (%d/%d), waiting for window",
                    service.name, state.restart_count, self.policy.limit,
                )
                return transitions

        if state.health != Health.UNHEALTHY:
            self._move(service, state, Health.UNHEALTHY, result.detail, transitions)

        self._attempt_recovery(service, state, transitions)
        return transitions

    # -- internals -------------------------------------------------------------

    def _attempt_recovery(
        self,
        service: ServiceDefinition,
        state: ServiceRuntimeState,
        transitions: list[Transition],
    ) -> None:
        now = self._clock()
        if state.window_expired(now, self.policy.window):
            state.restart_count = 0
            state.window_start = now

        if state.restart_count >= self.policy.limit:
            self._fail(service, state, transitions)
            return

        state.restart_count += 1
        state.last_restart = now
        self._move(
            service, state, Health.RESTARTING,
            f"Restarting (attempt {state.restart_count}/{self.policy.limit})",
            transitions,
        )

        try:
            outcome = self.recovery.run(service)
            if not outcome.success:
                raise RecoveryActionError(outcome.output or "recovery command failed")
        except RecoveryActionError as e:
            logger.error("Failed to restart service %s: %s", service.name, e)
            state.detail = f"Restart failed: {e}"
            if state.restart_count >= self.policy.limit:
                self._fail(service, state, transitions)
            else:
                self._move(
                    service, state, Health.UNHEALTHY, state.detail, transitions,
                    severity=Severity.CRITICAL,
                )
            return

        logger.info(
            "Service %s restart command succeeded in %.1fs (attempt %d/%d)",
            service.name, outcome.elapsed, state.restart_count, self.policy.limit,
        )
        if self.policy.settle > 0:
            self._sleep(self.policy.settle)

        recheck = self.executor.evaluate(service)
        state.last_checked = self._clock()
        state.detail = recheck.detail
        if recheck.healthy:
            logger.info("Service %s is now healthy", service.name)
            self._move(service, state, Health.HEALTHY, recheck.detail, transitions)
        elif state.restart_count >= self.policy.limit:
            logger.error("Service %s restart failed verification", service.name)
            self._fail(service, state, transitions)
        else:
            logger.error("Service %s restart failed verification", service.name)
            self._move(service, state, Health.UNHEALTHY, recheck.detail, transitions)

    def _fail(
        self,
        service: ServiceDefinition,
        state: ServiceRuntimeState,
        transitions: list[Transition],
    ) -> None:
        message = (
            f"Restart limit exceeded ({self.policy.limit} in {self.policy.window:g}s), "
            "manual intervention required"
        )
        logger.error("Service %s: %s", service.name, message)
        self._move(service, state, Health.FAILED, message, transitions)

    def _move(
        self,
        service: ServiceDefinition,
        state: ServiceRuntimeState,
        health: Health,
        message: str,
        transitions: list[Transition],
        severity: Severity | None = None,
    ) -> None:
        previous = state.health
        state.health = health
        transitions.append(
            Transition(
                service=service.name,
                previous=previous,
                current=health,
                message=message,
                severity=severity or _SEVERITY.get(health, Severity.INFO),
                restart_count=state.restart_count,
                timestamp=self._clock(),
            )
        )
