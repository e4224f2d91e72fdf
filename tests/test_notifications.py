"""Tests for the alert dispatcher: cooldown, payload, isolation of targets."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx

from svcguard.notifications import AlertDispatcher, AlertEvent
from svcguard.recovery.controller import Severity, Transition
from svcguard.state.models import Health, ServiceRuntimeState


def _transition(
    current: Health = Health.UNHEALTHY,
    previous: Health = Health.HEALTHY,
    severity: Severity = Severity.WARNING,
    timestamp: float = 1_700_000_000.0,
) -> Transition:
    return Transition(
        service="web",
        previous=previous,
        current=current,
        message="connection refused",
        severity=severity,
        restart_count=1,
        timestamp=timestamp,
    )


def _lines(path: Path) -> list[dict]:
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines()]


def _mock_webhook(mock_client_cls: MagicMock, status_code: int = 200) -> AsyncMock:
    post = AsyncMock(return_value=SimpleNamespace(status_code=status_code, text="nope"))
    mock_client_cls.return_value.__aenter__.return_value = SimpleNamespace(post=post)
    return post


class TestCooldown:
    def test_second_alert_inside_cooldown_is_suppressed(self, dispatcher, clock, alert_log) -> None:
        state = ServiceRuntimeState()
        assert asyncio.run(dispatcher.dispatch(_transition(), state))
        clock.advance(599)
        assert not asyncio.run(dispatcher.dispatch(_transition(), state))
        assert len(_lines(alert_log)) == 1

    def test_alert_after_cooldown(self, dispatcher, clock, alert_log) -> None:
        state = ServiceRuntimeState()
        asyncio.run(dispatcher.dispatch(_transition(), state))
        clock.advance(601)
        assert asyncio.run(dispatcher.dispatch(_transition(), state))
        assert len(_lines(alert_log)) == 2
        assert state.last_alert == clock.now

    def test_cooldown_boundary_is_inclusive(self, dispatcher, clock) -> None:
        state = ServiceRuntimeState(last_alert=clock.now)
        clock.advance(600)
        assert dispatcher.should_alert(state, clock.now)

    def test_cooldown_is_per_service(self, dispatcher, alert_log) -> None:
        web, app = ServiceRuntimeState(), ServiceRuntimeState()
        assert asyncio.run(dispatcher.dispatch(_transition(), web))
        assert asyncio.run(dispatcher.dispatch(_transition(), app))
        assert len(_lines(alert_log)) == 2

    def test_healthy_transitions_are_not_alerted(self, dispatcher, alert_log) -> None:
        state = ServiceRuntimeState()
        sent = asyncio.run(dispatcher.dispatch(
            _transition(current=Health.HEALTHY, previous=Health.UNHEALTHY, severity=Severity.INFO),
            state,
        ))
        assert not sent
        assert state.last_alert is None
        assert _lines(alert_log) == []


class TestPayload:
    def test_alert_log_line(self, dispatcher, alert_log) -> None:
        asyncio.run(dispatcher.dispatch(
            _transition(current=Health.FAILED, severity=Severity.CRITICAL), ServiceRuntimeState(),
        ))
        (line,) = _lines(alert_log)
        assert set(line) == {"timestamp", "hostname", "service", "severity", "message", "restart_count"}
        assert line["service"] == "web"
        assert line["severity"] == "critical"
        assert line["restart_count"] == 1
        assert line["timestamp"].startswith("2023-11-14T22:13:20")

    def test_event_from_transition(self) -> None:
        event = AlertEvent.from_transition(_transition(), hostname="box1")
        assert event.hostname == "box1"
        assert event.severity == "warning"
        assert event.message == "connection refused"


class TestWebhook:
    @patch("svcguard.notifications.httpx.AsyncClient")
    def test_posts_json(self, mock_client_cls: MagicMock, clock, alert_log) -> None:
        post = _mock_webhook(mock_client_cls)
        dispatcher = AlertDispatcher(
            cooldown=600, webhook_url="http://hooks.local/alert",
            syslog_enabled=False, alert_log="", clock=clock,
        )
        assert asyncio.run(dispatcher.dispatch(_transition(), ServiceRuntimeState()))
        post.assert_awaited_once()
        args, kwargs = post.call_args
        assert args == ("http://hooks.local/alert",)
        assert kwargs["json"]["service"] == "web"
        assert not alert_log.exists()

    @patch("svcguard.notifications.httpx.AsyncClient")
    def test_webhook_failure_does_not_block_other_targets(
        self, mock_client_cls: MagicMock, clock, alert_log,
    ) -> None:
        post = _mock_webhook(mock_client_cls)
        post.side_effect = httpx.ConnectError("refused")
        dispatcher = AlertDispatcher(
            cooldown=600, webhook_url="http://hooks.local/alert",
            syslog_enabled=False, alert_log=alert_log, clock=clock,
        )
        state = ServiceRuntimeState()
        assert asyncio.run(dispatcher.dispatch(_transition(), state))
        assert len(_lines(alert_log)) == 1
        assert state.last_alert == clock.now

    @patch("svcguard.notifications.httpx.AsyncClient")
    def test_webhook_error_status_is_logged(
        self, mock_client_cls: MagicMock, clock, caplog,
    ) -> None:
        _mock_webhook(mock_client_cls, status_code=500)
        dispatcher = AlertDispatcher(
            webhook_url="http://hooks.local/alert", syslog_enabled=False, alert_log="", clock=clock,
        )
        asyncio.run(dispatcher.dispatch(_transition(), ServiceRuntimeState()))
        assert "webhook returned 500" in caplog.text

    @patch("svcguard.notifications.httpx.AsyncClient")
    def test_slow_webhook_times_out(self, mock_client_cls: MagicMock, clock, alert_log) -> None:
        async def slow_post(*args, **kwargs):
            await asyncio.sleep(5)

        mock_client_cls.return_value.__aenter__.return_value = SimpleNamespace(post=slow_post)
        dispatcher = AlertDispatcher(
            webhook_url="http://hooks.local/alert", syslog_enabled=False,
            alert_log=alert_log, timeout=0.1, clock=clock,
        )
        assert asyncio.run(dispatcher.dispatch(_transition(), ServiceRuntimeState()))
        assert len(_lines(alert_log)) == 1


class TestSyslog:
    def test_unreachable_syslog_is_isolated(self, tmp_path: Path, clock, alert_log) -> None:
        dispatcher = AlertDispatcher(
            syslog_enabled=True, syslog_address=str(tmp_path / "no-such-socket"),
            alert_log=alert_log, clock=clock,
        )
        assert asyncio.run(dispatcher.dispatch(_transition(), ServiceRuntimeState()))
        assert len(_lines(alert_log)) == 1
        dispatcher.close()

    @patch("svcguard.notifications.logging.handlers.SysLogHandler")
    def test_each_dispatcher_sends_once(self, mock_handler_cls: MagicMock, clock) -> None:
        handlers: list[MagicMock] = []

        def make_handler(**kwargs) -> MagicMock:
            handlers.append(MagicMock())
            return handlers[-1]

        mock_handler_cls.side_effect = make_handler
        first = AlertDispatcher(syslog_enabled=True, alert_log="", clock=clock)
        second = AlertDispatcher(syslog_enabled=True, alert_log="", clock=clock)

        asyncio.run(first.dispatch(_transition(), ServiceRuntimeState()))
        asyncio.run(second.dispatch(
            _transition(current=Health.FAILED, severity=Severity.CRITICAL), ServiceRuntimeState(),
        ))

        assert len(handlers) == 2
        for handler, level in zip(handlers, (logging.WARNING, logging.CRITICAL)):
            handler.handle.assert_called_once()
            (record,) = handler.handle.call_args.args
            assert record.levelno == level
            assert record.getMessage() == "web: connection refused"

        first.close()
        second.close()
        handlers[0].close.assert_called_once()

    def test_status(self, dispatcher) -> None:
        status = dispatcher.status()
        assert status["cooldown"] == 600
        assert status["webhook_configured"] is False
        assert status["syslog_enabled"] is False
