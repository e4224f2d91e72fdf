"""State snapshot storage: JSON file replaced atomically.

Snapshots are written to a temporary file in the same directory, fsynced
and renamed over the previous one, so a reader sees either the old or the
new complete snapshot and never a partial one.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from ..config import settings
from ..errors import StateStoreError
from .models import DaemonState

logger = logging.getLogger(__name__)


class StateStore:
    """Loads and saves the DaemonState snapshot."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path or settings.state_file)

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> DaemonState:
        """Read the snapshot. Missing file → empty state; bad file → StateStoreError."""
        if not self._path.exists():
            return DaemonState()
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StateStoreError(f"Could not read state file {self._path}: {e}") from e
        if not isinstance(raw, dict):
            raise StateStoreError(f"State file {self._path} does not hold a JSON object")
        return DaemonState.from_dict(raw)

    def load(self) -> DaemonState:
        """Like read(), but a broken snapshot is logged and replaced by empty state."""
        try:
            state = self.read()
        except StateStoreError as e:
            logger.error("%s, starting with empty state", e)
            return DaemonState()
        if len(state):
            logger.info("Loaded state for %d services from %s", len(state), self._path)
        return state

    def save(self, state: DaemonState) -> None:
        """Atomically replace the snapshot."""
        payload = json.dumps(state.to_dict(), indent=2)
        tmp_name = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent,
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
            tmp_name = None
        except OSError as e:
            raise StateStoreError(f"Could not write state file {self._path}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
        logger.debug("State saved to %s", self._path)
