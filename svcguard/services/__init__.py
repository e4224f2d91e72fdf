"""Service configuration: typed definitions loaded from YAML."""

from .registry import (
    CheckKind,
    CustomTarget,
    HttpTarget,
    PortTarget,
    ProcessTarget,
    ServiceDefinition,
    ServiceRegistry,
    WatchdogConfig,
    WatchdogOptions,
    parse_config,
)
