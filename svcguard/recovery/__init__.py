"""Recovery subsystem: host recovery actions and the restart state machine."""

from .actions import RecoveryAction, RecoveryResult, detect_init_system
from .controller import RestartController, RestartPolicy, Severity, Transition
