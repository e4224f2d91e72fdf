"""Per-service runtime state and the daemon-wide state container."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from ..services.registry import ServiceDefinition

logger = logging.getLogger(__name__)


class Health(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    RESTARTING = "restarting"
    FAILED = "failed"


@dataclass
class ServiceRuntimeState:
    """Mutable counters for one service. Timestamps are epoch seconds."""

    health: Health = Health.UNKNOWN
    restart_count: int = 0
    window_start: float | None = None
    last_restart: float | None = None
    last_alert: float | None = None
    check: str = ""
    last_checked: float | None = None
    detail: str = ""

    def window_expired(self, now: float, window: float) -> bool:
        return self.window_start is None or now - self.window_start >= window

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["health"] = self.health.value
        return d

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> ServiceRuntimeState:
        def opt_float(key: str) -> float | None:
            value = row.get(key)
            return None if value is None else float(value)

        count = int(row.get("restart_count", 0))
        if count < 0:
            raise ValueError(f"negative restart_count {count}")
        return cls(
            health=Health(row.get("health", Health.UNKNOWN.value)),
            restart_count=count,
            window_start=opt_float("window_start"),
            last_restart=opt_float("last_restart"),
            last_alert=opt_float("last_alert"),
            check=str(row.get("check", "")),
            last_checked=opt_float("last_checked"),
            detail=str(row.get("detail", "")),
        )


class DaemonState:
    """Mapping service name → ServiceRuntimeState; the unit of persistence.

    Owned by the scheduler and passed by reference to the controller,
    dispatcher and store.
    """

    def __init__(self, services: dict[str, ServiceRuntimeState] | None = None) -> None:
        self._services: dict[str, ServiceRuntimeState] = dict(services or {})

    def __contains__(self, name: object) -> bool:
        return name in self._services

    def __iter__(self) -> Iterator[str]:
        return iter(self._services)

    def __len__(self) -> int:
        return len(self._services)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DaemonState):
            return NotImplemented
        return self._services == other._services

    def get(self, name: str) -> ServiceRuntimeState | None:
        return self._services.get(name)

    def items(self) -> list[tuple[str, ServiceRuntimeState]]:
        return list(self._services.items())

    def get_or_create(self, service: ServiceDefinition) -> ServiceRuntimeState:
        """Return the service's state, creating an Unknown entry on first sight."""
        state = self._services.get(service.name)
        if state is None:
            state = ServiceRuntimeState(check=service.kind.value)
            self._services[service.name] = state
        return state

    def sync(self, services: Iterable[ServiceDefinition]) -> None:
        """Reconcile with a (re)loaded service list.

        Kept services retain their counters; a changed check variant starts
        over from Unknown; services no longer configured are pruned. The
        result is ordered like the configuration.
        """
        synced: dict[str, ServiceRuntimeState] = {}
        for service in services:
            state = self._services.get(service.name)
            if state is not None and state.check and state.check != service.kind.value:
                logger.info(
                    "Service %s changed check type %s → %s, resetting state",
                    service.name, state.check, service.kind.value,
                )
                state = None
            if state is None:
                state = ServiceRuntimeState()
            state.check = service.kind.value
            synced[service.name] = state

        for name in self._services.keys() - synced.keys():
            logger.info("Service %s no longer configured, dropping its state", name)
        self._services = synced

    def reset(self, name: str) -> None:
        """Forget a service's counters, keeping only its check variant."""
        old = self._services.get(name)
        if old is not None:
            self._services[name] = ServiceRuntimeState(check=old.check)

    def all_healthy(self) -> bool:
        return bool(self._services) and all(
            s.health == Health.HEALTHY for s in self._services.values()
        )

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {name: s.to_dict() for name, s in self._services.items()}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DaemonState:
        """Build from a decoded snapshot, skipping malformed entries."""
        services: dict[str, ServiceRuntimeState] = {}
        for name, row in raw.items():
            try:
                if not isinstance(row, dict):
                    raise TypeError(f"expected an object, got {type(row).__name__}")
                services[str(name)] = ServiceRuntimeState.from_dict(row)
            except (TypeError, ValueError) as e:
                logger.warning("Skipping malformed state entry %r: %s", name, e)
        return cls(services)
