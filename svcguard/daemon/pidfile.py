"""PID file used as an advisory single-instance lock.

The lock is stale when the recorded process is no longer alive; a stale
file is removed and may be taken over.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import psutil

from ..config import settings
from ..errors import LifecycleError

logger = logging.getLogger(__name__)


def is_process_alive(pid: int) -> bool:
    """Check a PID with psutil, treating zombies as dead."""
    if pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to someone else
        return True


class PidLock:
    """Identity file holding the PID of the live daemon."""

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path or settings.pid_file)
        self._pid: int | None = None

    def read_pid(self) -> int | None:
        try:
            return int(self.path.read_text(encoding="utf-8").strip())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Unreadable PID file %s: %s", self.path, e)
            return None

    def holder(self) -> int | None:
        """PID of the live instance holding the lock, if any."""
        pid = self.read_pid()
        if pid is not None and is_process_alive(pid):
            return pid
        return None

    def acquire(self, pid: int | None = None) -> None:
        """Record ``pid`` (default: ours). Raises LifecycleError if another instance is live."""
        pid = pid or os.getpid()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._create(pid)
        except FileExistsError:
            self._take_over(pid)
        self._pid = pid
        logger.info("Created PID file: %s (PID: %d)", self.path, pid)

    def _take_over(self, pid: int) -> None:
        """Replace an existing file, which must name a dead process (or us)."""
        stale = self.read_pid()
        if stale is not None and stale != pid and is_process_alive(stale):
            raise LifecycleError(f"Watchdog already running with PID {stale}", pid=stale)

        # Another instance may have replaced the file since it was read
        current = self.read_pid()
        if current != stale:
            raise LifecycleError(
                f"Watchdog already starting (PID file {self.path} changed to {current})",
                pid=current,
            )

        logger.warning("Removing stale PID file %s (PID: %s)", self.path, stale)
        self.path.unlink(missing_ok=True)
        try:
            self._create(pid)
        except FileExistsError as e:
            raise LifecycleError(
                f"Watchdog already starting (PID file {self.path} appeared)",
                pid=self.read_pid(),
            ) from e

    def _create(self, pid: int) -> None:
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"{pid}\n")

    def release(self) -> None:
        """Remove the file, but only if it still names this process."""
        if self._pid is None:
            return
        if self.read_pid() == self._pid:
            self.path.unlink(missing_ok=True)
            logger.info("Removed PID file")
        self._pid = None

    def clear(self) -> None:
        """Unconditionally remove the file (used by `stop` after the daemon is gone)."""
        self.path.unlink(missing_ok=True)
