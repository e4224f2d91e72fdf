"""Service registry — loads services.yaml and provides typed service definitions.

Single source of truth for which services the daemon watches and how.
Every malformed entry is collected before failing, so a bad file is reported
in one pass and the daemon never starts with a partial service list.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..config import settings
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)


# ── Data models ──────────────────────────────────────────────────────────────


class CheckKind(str, Enum):
    PROCESS = "process"
    PORT = "port"
    HTTP = "http"
    CUSTOM = "custom"


@dataclass(frozen=True)
class ProcessTarget:
    """Healthy while a process with this exact name is running."""

    process: str
    kind: CheckKind = field(default=CheckKind.PROCESS, init=False)


@dataclass(frozen=True)
class PortTarget:
    """Healthy while host:port accepts TCP connections."""

    port: int
    host: str = "localhost"
    kind: CheckKind = field(default=CheckKind.PORT, init=False)


@dataclass(frozen=True)
class HttpTarget:
    """Healthy while a GET on the URL returns the expected status."""

    url: str
    expected_status: int = 200
    kind: CheckKind = field(default=CheckKind.HTTP, init=False)


@dataclass(frozen=True)
class CustomTarget:
    """Healthy while the command exits 0."""

    command: str
    kind: CheckKind = field(default=CheckKind.CUSTOM, init=False)


CheckTarget = Union[ProcessTarget, PortTarget, HttpTarget, CustomTarget]


@dataclass(frozen=True)
class ServiceDefinition:
    """A watched service: a unique name plus the probe that judges it."""

    name: str
    target: CheckTarget
    recover: str = ""  # recovery command template, "{service}" is substituted
    timeout: float = 5.0

    @property
    def kind(self) -> CheckKind:
        return self.target.kind


class WatchdogOptions(BaseModel):
    """Daemon-wide options from the `options:` block of the config file."""

    check_interval: float = Field(default_factory=lambda: settings.watchdog_check_interval, ge=1)
    restart_limit: int = Field(default_factory=lambda: settings.watchdog_restart_limit, ge=0)
    restart_window: float = Field(default_factory=lambda: settings.watchdog_restart_window, gt=0)
    alert_cooldown: float = Field(default_factory=lambda: settings.watchdog_alert_cooldown, ge=0)
    alert_webhook: str = Field(default_factory=lambda: settings.alert_webhook)
    settle_seconds: float = Field(default_factory=lambda: settings.settle_seconds, ge=0)
    check_timeout: float = Field(default_factory=lambda: settings.check_timeout, gt=0)
    recover_command: str = Field(default_factory=lambda: settings.recover_command)

    model_config = {"extra": "forbid"}


@dataclass
class WatchdogConfig:
    """A fully validated configuration: options plus ordered services."""

    options: WatchdogOptions
    services: list[ServiceDefinition] = field(default_factory=list)

    def get(self, name: str) -> ServiceDefinition | None:
        return next((s for s in self.services if s.name == name), None)


# ── Registry ─────────────────────────────────────────────────────────────────


class ServiceRegistry:
    """Loads and caches the watchdog configuration from a YAML file."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path or settings.config_file)
        self._config: WatchdogConfig | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> WatchdogConfig:
        """Parse the config file. Raises ConfigurationError listing every problem."""
        if self._config is not None and not force:
            return self._config

        if not self._path.exists():
            raise ConfigurationError(f"Configuration file not found: {self._path}")

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to parse {self._path}: {e}") from e

        self._config = parse_config(raw)
        logger.info("Loaded %d services from %s", len(self._config.services), self._path)
        return self._config

    @property
    def config(self) -> WatchdogConfig:
        return self.load()

    def reload(self) -> WatchdogConfig:
        """Force reload from disk."""
        return self.load(force=True)


# ── Parsers ──────────────────────────────────────────────────────────────────


def parse_config(raw: Any) -> WatchdogConfig:
    """Validate a decoded config document, collecting all problems."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError("Top level of the configuration must be a mapping")

    problems: list[str] = []

    options = WatchdogOptions()
    raw_options = raw.get("options") or {}
    if not isinstance(raw_options, dict):
        problems.append("options: must be a mapping")
    else:
        try:
            options = WatchdogOptions(**raw_options)
        except ValidationError as e:
            for err in e.errors():
                loc = ".".join(str(p) for p in err["loc"])
                problems.append(f"options.{loc}: {err['msg']}")

    services: list[ServiceDefinition] = []
    raw_services = raw.get("services") or []
    if not isinstance(raw_services, list):
        problems.append("services: must be a list")
        raw_services = []

    seen: set[str] = set()
    for index, entry in enumerate(raw_services):
        service, entry_problems = _parse_service(index, entry, options.check_timeout)
        problems.extend(entry_problems)
        if service is None:
            continue
        if service.name in seen:
            problems.append(f"services[{index}] ({service.name}): duplicate service name")
            continue
        seen.add(service.name)
        services.append(service)

    if problems:
        raise ConfigurationError(problems)

    if not services:
        logger.warning("No services configured, daemon will idle")
    return WatchdogConfig(options=options, services=services)


def _expand_compact(entry: str) -> dict[str, Any]:
    """Expand the compact ``name:check:arg`` form into a mapping."""
    parts = entry.split(":", 2)
    data: dict[str, Any] = {"name": parts[0]}
    if len(parts) > 1:
        data["check"] = parts[1]
    if len(parts) > 2:
        kind, arg = parts[1], parts[2]
        key = {"process": "process", "port": "port", "http": "url", "custom": "command"}.get(kind)
        if key:
            data[key] = arg
    return data


def _parse_service(
    index: int, entry: Any, default_timeout: float,
) -> tuple[ServiceDefinition | None, list[str]]:
    if isinstance(entry, str):
        entry = _expand_compact(entry)
    if not isinstance(entry, dict):
        return None, [f"services[{index}]: expected a mapping or 'name:check:arg' string"]

    problems: list[str] = []
    name = entry.get("name")
    if not isinstance(name, str) or not name.strip():
        problems.append(f"services[{index}]: missing 'name'")
        label = f"services[{index}]"
    else:
        name = name.strip()
        label = f"services[{index}] ({name})"

    def require(key: str, kind: str) -> Any:
        value = entry.get(key)
        if value is None or value == "":
            problems.append(f"{label}: {kind} check requires '{key}'")
        return value

    def as_int(key: str, value: Any) -> int | None:
        try:
            number = int(value)
        except (TypeError, ValueError):
            problems.append(f"{label}: '{key}' must be an integer, got {value!r}")
            return None
        return number

    target: CheckTarget | None = None
    check = entry.get("check", entry.get("type"))
    if check is None:
        problems.append(f"{label}: missing 'check' (one of process, port, http, custom)")
    elif check == CheckKind.PROCESS.value:
        process = require("process", check)
        if process:
            target = ProcessTarget(process=str(process))
    elif check == CheckKind.PORT.value:
        port = require("port", check)
        if port is not None and port != "":
            number = as_int("port", port)
            if number is not None and not 0 < number < 65536:
                problems.append(f"{label}: port {number} out of range")
            elif number is not None:
                target = PortTarget(port=number, host=str(entry.get("host") or "localhost"))
    elif check == CheckKind.HTTP.value:
        url = require("url", check)
        expected = as_int("expected_status", entry.get("expected_status", 200))
        if url and expected is not None:
            target = HttpTarget(url=str(url), expected_status=expected)
    elif check == CheckKind.CUSTOM.value:
        command = require("command", check)
        if command:
            target = CustomTarget(command=str(command))
    else:
        problems.append(f"{label}: unknown check type {check!r}")

    timeout = entry.get("timeout", default_timeout)
    try:
        timeout = float(timeout)
        if timeout <= 0:
            raise ValueError
    except (TypeError, ValueError):
        problems.append(f"{label}: 'timeout' must be a positive number, got {timeout!r}")

    if problems or target is None:
        return None, problems
    return ServiceDefinition(
        name=name,
        target=target,
        recover=str(entry.get("recover") or ""),
        timeout=timeout,
    ), []


def service_to_dict(service: ServiceDefinition) -> dict[str, Any]:
    """Flatten a definition for display."""
    target = service.target
    if isinstance(target, ProcessTarget):
        where = target.process
    elif isinstance(target, PortTarget):
        where = f"{target.host}:{target.port}"
    elif isinstance(target, HttpTarget):
        where = f"{target.url} (expect {target.expected_status})"
    else:
        where = target.command
    return {
        "name": service.name,
        "check": service.kind.value,
        "target": where,
        "recover": service.recover,
        "timeout": service.timeout,
    }
