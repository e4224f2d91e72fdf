from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Files
    config_file: str = "/etc/svcguard/services.yaml"
    state_file: str = "/var/lib/svcguard/state.json"
    pid_file: str = "/var/run/svcguard.pid"
    alert_log_file: str = "/var/log/svcguard/alerts.log"  # empty = disabled

    # Logging
    log_level: str = "INFO"
    log_file: str = ""  # empty = stderr only

    # Daemon-wide defaults (overridable from the `options:` block of the config file)
    watchdog_check_interval: int = 60
    watchdog_restart_limit: int = 3
    watchdog_restart_window: int = 300
    watchdog_alert_cooldown: int = 600
    alert_webhook: str = ""

    # Timeouts (seconds)
    settle_seconds: float = 5.0  # wait after a recovery action before re-checking
    check_timeout: float = 5.0
    recovery_timeout: float = 30.0
    webhook_timeout: float = 10.0
    stop_timeout: float = 30.0

    # Recovery command template; empty = derive from the init system
    recover_command: str = ""

    # Syslog
    syslog_enabled: bool = True
    syslog_address: str = "/dev/log"


settings = Settings()
