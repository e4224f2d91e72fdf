"""Runtime state and its crash-safe snapshot."""

from .models import DaemonState, Health, ServiceRuntimeState
from .store import StateStore
