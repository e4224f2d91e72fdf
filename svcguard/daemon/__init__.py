"""Daemon lifecycle: identity lock, scheduler loop and control commands."""

from .pidfile import PidLock, is_process_alive
from .scheduler import WatchdogScheduler
