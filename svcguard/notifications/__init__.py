"""Alert dispatch — webhook, syslog and alert-log notifications.

Fires on transitions into unhealthy, restarting or failed. Alerts for one
service are throttled by a cooldown so a flapping service cannot flood the
channels. Every delivery target is attempted independently and any failure
is logged and dropped; alerting never blocks the check cycle.
"""

from __future__ import annotations

import asyncio
import json
import logging
import logging.handlers
import socket
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import httpx

from ..config import settings
from ..errors import AlertDeliveryError
from ..recovery.controller import Severity, Transition
from ..state.models import Health, ServiceRuntimeState

logger = logging.getLogger(__name__)

ALERTABLE = frozenset({Health.UNHEALTHY, Health.RESTARTING, Health.FAILED})

_SYSLOG_LEVEL = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.CRITICAL: logging.CRITICAL,
}


@dataclass
class AlertEvent:
    """One notification; built per delivery and never stored."""

    timestamp: str
    hostname: str
    service: str
    severity: str
    message: str
    restart_count: int

    @classmethod
    def from_transition(cls, transition: Transition, hostname: str | None = None) -> AlertEvent:
        return cls(
            timestamp=transition.iso_timestamp,
            hostname=hostname or socket.gethostname(),
            service=transition.service,
            severity=transition.severity.value,
            message=transition.message,
            restart_count=transition.restart_count,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AlertDispatcher:
    """Cooldown-gated dispatcher for all configured alert targets."""

    def __init__(
        self,
        cooldown: float = 600.0,
        webhook_url: str = "",
        syslog_enabled: bool | None = None,
        syslog_address: str | None = None,
        alert_log: Path | str | None = None,
        timeout: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cooldown = cooldown
        self.webhook_url = webhook_url
        self.syslog_enabled = settings.syslog_enabled if syslog_enabled is None else syslog_enabled
        self.syslog_address = syslog_address or settings.syslog_address
        alert_log = settings.alert_log_file if alert_log is None else alert_log
        self.alert_log = Path(alert_log) if alert_log else None
        self.timeout = timeout or settings.webhook_timeout
        self._clock = clock
        self._syslog: logging.handlers.SysLogHandler | None = None

    def status(self) -> dict[str, Any]:
        return {
            "cooldown": self.cooldown,
            "webhook_configured": bool(self.webhook_url),
            "syslog_enabled": self.syslog_enabled,
            "alert_log": str(self.alert_log) if self.alert_log else None,
        }

    # -- public API --------------------------------------------------------------

    def should_alert(self, state: ServiceRuntimeState, now: float) -> bool:
        return state.last_alert is None or now - state.last_alert >= self.cooldown

    async def dispatch(self, transition: Transition, state: ServiceRuntimeState) -> bool:
        """Deliver an alert for the transition unless it is not alertable or cooling down.

        Returns True when an alert went out (to whichever targets accepted it).
        """
        if transition.current not in ALERTABLE:
            return False

        now = self._clock()
        if not self.should_alert(state, now):
            logger.debug("Alert throttled for %s (cooldown active)", transition.service)
            return False

        state.last_alert = now
        event = AlertEvent.from_transition(transition)
        logger.warning("ALERT [%s] %s: %s", event.severity, event.service, event.message)
        await self._send(event)
        return True

    # -- low-level dispatch --------------------------------------------------------

    async def _send(self, event: AlertEvent) -> None:
        loop = asyncio.get_running_loop()
        deliveries = []
        if self.webhook_url:
            deliveries.append(("webhook", self._send_webhook(event)))
        if self.syslog_enabled:
            deliveries.append(
                ("syslog", loop.run_in_executor(None, self._send_syslog, event))
            )
        if self.alert_log:
            deliveries.append(
                ("alert log", loop.run_in_executor(None, self._append_alert_log, event))
            )
        if not deliveries:
            return

        results = await asyncio.gather(
            *(asyncio.wait_for(d, timeout=self.timeout) for _, d in deliveries),
            return_exceptions=True,
        )
        for (target, _), outcome in zip(deliveries, results):
            if isinstance(outcome, asyncio.TimeoutError):
                logger.warning("Alert delivery via %s timed out after %gs", target, self.timeout)
            elif isinstance(outcome, Exception):
                logger.warning("Alert delivery via %s failed: %s", target, outcome)

    async def _send_webhook(self, event: AlertEvent) -> None:
        """POST the JSON payload to the webhook."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.webhook_url, json=event.to_dict())
        except httpx.HTTPError as exc:
            raise AlertDeliveryError(f"webhook error: {exc}") from exc
        if resp.status_code >= 300:
            raise AlertDeliveryError(
                f"webhook returned {resp.status_code}: {resp.text[:200]}"
            )

    def _send_syslog(self, event: AlertEvent) -> None:
        try:
            handler = self._get_syslog()
            record = logging.LogRecord(
                name="svcguard.syslog",
                level=_SYSLOG_LEVEL.get(Severity(event.severity), logging.INFO),
                pathname=__file__,
                lineno=0,
                msg="%s: %s",
                args=(event.service, event.message),
                exc_info=None,
            )
            handler.handle(record)
        except (OSError, ValueError) as exc:
            raise AlertDeliveryError(f"syslog error: {exc}") from exc

    def _get_syslog(self) -> logging.handlers.SysLogHandler:
        # Private to this dispatcher, never attached to a logger
        if self._syslog is None:
            handler = logging.handlers.SysLogHandler(
                address=self.syslog_address,
                facility=logging.handlers.SysLogHandler.LOG_DAEMON,
            )
            handler.ident = "svcguard: "
            self._syslog = handler
        return self._syslog

    def _append_alert_log(self, event: AlertEvent) -> None:
        try:
            self.alert_log.parent.mkdir(parents=True, exist_ok=True)
            with self.alert_log.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict()) + "\n")
        except OSError as exc:
            raise AlertDeliveryError(f"alert log error: {exc}") from exc

    def close(self) -> None:
        if self._syslog is not None:
            self._syslog.close()
            self._syslog = None
