"""Health check engine — one probe per service, always bounded by a timeout.

Supports: process presence, TCP connect, HTTP status, custom command.
Each check returns a HealthResult; any error or timeout is an unhealthy
verdict, never an exception escaping to the scheduler.
"""

from __future__ import annotations

import logging
import os
import socket
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, ClassVar

import httpx
import psutil

from ..errors import CheckExecutionError
from ..services.registry import (
    CheckKind,
    CustomTarget,
    HttpTarget,
    PortTarget,
    ProcessTarget,
    ServiceDefinition,
)
from .runner import CommandRunner, SubprocessRunner

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


# ── Models ───────────────────────────────────────────────────────────────────


@dataclass
class HealthResult:
    """Verdict of a single check execution."""

    healthy: bool
    detail: str = ""
    latency_ms: float = 0.0


# ── Checks ───────────────────────────────────────────────────────────────────


class Check:
    """A probe for one kind of target."""

    kind: ClassVar[CheckKind]

    def evaluate(self, target: Any, timeout: float) -> HealthResult:
        raise NotImplementedError


class ProcessCheck(Check):
    """Healthy iff a running process has exactly the configured name."""

    kind = CheckKind.PROCESS

    def evaluate(self, target: ProcessTarget, timeout: float) -> HealthResult:
        matches = 0
        for proc in psutil.process_iter(["name", "status"]):
            info = proc.info
            if info.get("name") == target.process and info.get("status") != psutil.STATUS_ZOMBIE:
                matches += 1
        if matches:
            return HealthResult(True, f"{matches} process(es) named {target.process}")
        return HealthResult(False, f"No running process named {target.process}")


class PortCheck(Check):
    """Raw TCP port connectivity check."""

    kind = CheckKind.PORT

    def evaluate(self, target: PortTarget, timeout: float) -> HealthResult:
        try:
            sock = socket.create_connection((target.host, target.port), timeout=timeout)
            sock.close()
        except OSError as e:
            return HealthResult(False, f"TCP connect to {target.host}:{target.port} failed: {e}")
        return HealthResult(True, f"Port {target.port} open")


class HttpCheck(Check):
    """HTTP(S) GET, healthy iff the status code matches."""

    kind = CheckKind.HTTP

    def evaluate(self, target: HttpTarget, timeout: float) -> HealthResult:
        try:
            with httpx.Client(timeout=timeout, follow_redirects=True) as client:
                resp = client.get(target.url)
        except httpx.TimeoutException:
            return HealthResult(False, f"Request timed out ({timeout:g}s)")
        except httpx.ConnectError as e:
            return HealthResult(False, f"Connection error: {e}")

        if resp.status_code == target.expected_status:
            return HealthResult(True, f"{resp.status_code} OK")
        return HealthResult(False, f"Expected {target.expected_status}, got {resp.status_code}")


class CustomCheck(Check):
    """Run an external script; exit status 0 means healthy."""

    kind = CheckKind.CUSTOM

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def evaluate(self, target: CustomTarget, timeout: float) -> HealthResult:
        program = target.command.split()[0]
        if os.path.sep in program and not os.access(program, os.X_OK):
            raise CheckExecutionError(f"Custom check script not executable: {program}")

        result = self.runner.run(target.command, timeout)
        if result.success:
            return HealthResult(True, "Custom check passed")
        detail = f"Custom check exited {result.exit_code}"
        if result.output:
            detail += f": {result.output.splitlines()[-1][:200]}"
        return HealthResult(False, detail)


# ── Executor ─────────────────────────────────────────────────────────────────


class CheckExecutor:
    """Dispatches a service to its check and enforces the timeout.

    Probes run on a small thread pool; the caller waits at most the service
    timeout even if the probe itself ignores it.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        checks: dict[CheckKind, Check] | None = None,
        max_workers: int = 4,
    ) -> None:
        runner = runner or SubprocessRunner()
        if checks is None:
            checks = {
                CheckKind.PROCESS: ProcessCheck(),
                CheckKind.PORT: PortCheck(),
                CheckKind.HTTP: HttpCheck(),
                CheckKind.CUSTOM: CustomCheck(runner),
            }
        self.checks = checks
        self.max_workers = max_workers
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="check")
        # Timed-out probes whose threads are still running
        self._overrun: set[Future] = set()

    def evaluate(self, service: ServiceDefinition) -> HealthResult:
        """Run the service's check. Never raises."""
        check = self.checks.get(service.kind)
        if check is None:
            return HealthResult(False, f"Unknown check type: {service.kind}")

        timeout = service.timeout or DEFAULT_TIMEOUT
        t0 = time.perf_counter()
        try:
            future = self._pool.submit(check.evaluate, service.target, timeout)
            result = future.result(timeout=timeout)
        except FutureTimeout:
            self._track_overrun(service, future)
            result = HealthResult(False, f"Check timed out after {timeout:g}s")
        except CheckExecutionError as e:
            result = HealthResult(False, str(e))
        except Exception as e:
            logger.debug("Check %s raised", service.name, exc_info=True)
            result = HealthResult(False, f"Error: {type(e).__name__}: {e}")

        result.latency_ms = round((time.perf_counter() - t0) * 1000, 1)
        logger.debug(
            "Check %s (%s): %s: %s",
            service.name, service.kind.value,
            "healthy" if result.healthy else "unhealthy", result.detail,
        )
        return result

    def _track_overrun(self, service: ServiceDefinition, future: Future) -> None:
        if future.cancel():
            return
        self._overrun.add(future)
        future.add_done_callback(self._overrun.discard)
        if len(self._overrun) >= self.max_workers:
            logger.warning(
                "All %d check workers are busy with probes that outlived their timeout "
                "(latest: %s); further checks will time out until they finish",
                self.max_workers, service.name,
            )

    @property
    def overrunning(self) -> int:
        return len(self._overrun)

    def shutdown(self) -> None:
        if self._overrun:
            logger.warning("%d probe(s) still running at shutdown", len(self._overrun))
        self._pool.shutdown(wait=False, cancel_futures=True)
