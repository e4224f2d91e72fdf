"""Error taxonomy for the watchdog daemon."""

from __future__ import annotations


class WatchdogError(Exception):
    """Base class for all svcguard errors."""


class ConfigurationError(WatchdogError):
    """Raised when the service configuration is malformed.

    Carries every problem found so the operator can fix them in one pass.
    """

    def __init__(self, problems: list[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__(
            "Invalid configuration:\n" + "\n".join(f"  - {p}" for p in self.problems)
        )


class CheckExecutionError(WatchdogError):
    """A probe errored or timed out. Always treated as an unhealthy verdict."""


class RecoveryActionError(WatchdogError):
    """The external recovery action could not be run or failed."""


class AlertDeliveryError(WatchdogError):
    """A webhook / syslog / alert-log delivery failed."""


class StateStoreError(WatchdogError):
    """Reading or writing the state snapshot failed."""


class LifecycleError(WatchdogError):
    """Another instance holds the identity file, or a control command was misused."""

    def __init__(self, message: str, pid: int | None = None) -> None:
        self.pid = pid
        super().__init__(message)
