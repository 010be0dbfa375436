"""Centralized state enums for the fleet orchestrator.

Process states are never persisted; they are inferred on demand by
querying the container runtime on each node. Valid transitions are
defined in state_machine.py.
"""

from enum import Enum


class NodeRole(str, Enum):
    """Role of a node in the fleet."""

    AGGREGATOR = "aggregator"
    WORKER = "worker"


class FleetScope(str, Enum):
    """Which part of the fleet a verb targets."""

    ALL = "all"
    AGGREGATOR = "aggregator"
    WORKERS = "workers"

    @property
    def includes_aggregator(self) -> bool:
        return self in (FleetScope.ALL, FleetScope.AGGREGATOR)

    @property
    def includes_workers(self) -> bool:
        return self in (FleetScope.ALL, FleetScope.WORKERS)


class ProcessState(str, Enum):
    """Observed state of a node's managed container."""

    ABSENT = "absent"  # Never created, or stopped and removed
    STOPPED = "stopped"  # Exists but not running
    RUNNING = "running"  # Exists and running
    ZOMBIE = "zombie"  # Ignored a graceful stop (only seen during a stop attempt)


class StopOutcome(str, Enum):
    """Result of a graceful stop with retry."""

    CONVERGED = "converged"
    ZOMBIE = "zombie"


class StopSignal(str, Enum):
    """How the runtime answered a single stop request."""

    STOPPED = "stopped"
    ABSENT = "absent"
    ZOMBIE = "zombie"
    ERROR = "error"


class LogCapture(str, Enum):
    """Outcome of saving container logs."""

    SAVED = "saved"
    SKIPPED = "skipped"  # Container did not exist (or vanished mid-capture)


class NodeStatus(str, Enum):
    """Operator-facing status of a node."""

    RUNNING = "running"
    STOPPED = "stopped"  # Container exists but is not running
    ABSENT = "absent"
    CONNECTION_FAILED = "connection_failed"

    @property
    def label(self) -> str:
        """Operator-facing label used in status output."""
        if self is NodeStatus.STOPPED:
            return "STOPPED-BUT-EXISTS"
        return self.value.upper().replace("_", "-")


class RecoveryPhase(str, Enum):
    """Phases of the chunked-retry recovery workflow."""

    CAPTURING_LOGS = "capturing_logs"
    FORCE_CONVERGING = "force_converging"
    MUTATING_CONFIG = "mutating_config"
    WAITING = "waiting"
    RESTARTING = "restarting"
    DONE = "done"
    FAILED = "failed"
