"""Watchdog scheduler — drives one check cycle per interval.

Each cycle walks the configured services in order; every evaluation runs in
a worker thread so the event loop stays free for signal handling. Stop and
reload requests only set flags and never interrupt a check or a restart
sequence. A reload is applied at the start of the next cycle; a stop lets
the service being evaluated finish, skips the rest and persists the state.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from concurrent.futures import ThreadPoolExecutor

from ..errors import ConfigurationError, StateStoreError
from ..health.engine import CheckExecutor
from ..health.runner import CommandRunner, SubprocessRunner
from ..notifications import AlertDispatcher
from ..recovery.actions import RecoveryAction
from ..recovery.controller import RestartController, RestartPolicy, Transition
from ..services.registry import ServiceRegistry, WatchdogConfig
from ..state.models import DaemonState, Health
from ..state.store import StateStore

logger = logging.getLogger(__name__)


class WatchdogScheduler:
    """Owns the daemon state and everything that mutates it.

    Lifecycle:
        scheduler = WatchdogScheduler(registry, store)
        await scheduler.run()       # until request_stop() / SIGTERM
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        store: StateStore,
        state: DaemonState | None = None,
        runner: CommandRunner | None = None,
        controller: RestartController | None = None,
        dispatcher: AlertDispatcher | None = None,
        recovery_timeout: float = 30.0,
    ) -> None:
        self.registry = registry
        self.store = store
        self.config: WatchdogConfig = registry.config
        self.state = state if state is not None else store.load()
        self.state.sync(self.config.services)

        options = self.config.options
        runner = runner or SubprocessRunner()
        self.controller = controller or RestartController(
            executor=CheckExecutor(runner),
            recovery=RecoveryAction(
                runner, default_command=options.recover_command, timeout=recovery_timeout,
            ),
            policy=RestartPolicy(
                limit=options.restart_limit,
                window=options.restart_window,
                settle=options.settle_seconds,
            ),
        )
        self.dispatcher = dispatcher or AlertDispatcher(
            cooldown=options.alert_cooldown, webhook_url=options.alert_webhook,
        )
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cycle")
        self._stop = asyncio.Event()
        self._reload_pending = False
        self.cycles = 0

    # -- control flags ---------------------------------------------------------

    def request_stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Shutdown requested, finishing current cycle")
        self._stop.set()

    def request_reload(self) -> None:
        logger.info("Reload requested, applying at next cycle")
        self._reload_pending = True

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    @property
    def reload_pending(self) -> bool:
        return self._reload_pending

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGTERM, self.request_stop)
        loop.add_signal_handler(signal.SIGINT, self.request_stop)
        loop.add_signal_handler(signal.SIGHUP, self.request_reload)

    # -- cycle -----------------------------------------------------------------

    def apply_reload(self) -> bool:
        """Re-read configuration; keep the old one if the new one is invalid."""
        self._reload_pending = False
        try:
            config = self.registry.reload()
        except ConfigurationError as e:
            logger.error("Reload rejected, keeping previous configuration: %s", e)
            return False

        self.config = config
        self.state.sync(config.services)
        options = config.options
        self.controller.policy = RestartPolicy(
            limit=options.restart_limit,
            window=options.restart_window,
            settle=options.settle_seconds,
        )
        self.controller.recovery.default_command = options.recover_command
        self.dispatcher.cooldown = options.alert_cooldown
        self.dispatcher.webhook_url = options.alert_webhook
        logger.info("Configuration reloaded: %d services", len(config.services))
        return True

    async def run_cycle(self) -> list[Transition]:
        """Evaluate every service once, dispatch alerts, persist state."""
        if self._reload_pending:
            self.apply_reload()

        loop = asyncio.get_running_loop()
        transitions: list[Transition] = []
        logger.debug("Running service checks...")

        for service in self.config.services:
            if self._stop.is_set():
                logger.info("Stop requested, skipping remaining services this cycle")
                break
            state = self.state.get_or_create(service)
            try:
                changes = await loop.run_in_executor(
                    self._executor, self.controller.evaluate, service, state,
                )
            except Exception:
                logger.exception("Evaluation of %s failed", service.name)
                continue

            for change in changes:
                try:
                    await self.dispatcher.dispatch(change, state)
                except Exception:
                    logger.exception("Alert dispatch for %s failed", service.name)
            transitions.extend(changes)

            if state.health == Health.HEALTHY and not changes:
                logger.debug("Service %s: OK", service.name)

        self.persist()
        self.cycles += 1
        return transitions

    def persist(self) -> bool:
        try:
            self.store.save(self.state)
        except StateStoreError as e:
            logger.error("%s (will retry next cycle)", e)
            return False
        return True

    async def run(self, install_signals: bool = True) -> None:
        """Main loop: cycle, then sleep until the interval elapses or stop is requested."""
        if install_signals:
            self.install_signal_handlers()

        options = self.config.options
        logger.info(
            "Starting service monitoring loop: %d services, interval %gs, "
            "restart limit %d per %gs",
            len(self.config.services), options.check_interval,
            options.restart_limit, options.restart_window,
        )

        try:
            while not self._stop.is_set():
                await self.run_cycle()
                if self._stop.is_set():
                    break
                try:
                    await asyncio.wait_for(
                        self._stop.wait(), timeout=self.config.options.check_interval,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            self.persist()
            self.controller.executor.shutdown()
            self._executor.shutdown(wait=False)
            self.dispatcher.close()
            logger.info("Monitoring loop stopped")
