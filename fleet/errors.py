"""Exception hierarchy for fleet operations.

TransportFailure is the only error the remote execution gateway retries.
CommandFailure is surfaced immediately: re-running a remote command that
already ran could re-apply a destructive action.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fleet.sweep import FleetResult


class FleetError(Exception):
    """Base exception for fleet orchestration errors."""

    def __init__(self, message: str, node_id: str | None = None, retriable: bool = False):
        super().__init__(message)
        self.message = message
        self.node_id = node_id
        self.retriable = retriable


class TransportFailure(FleetError):
    """The connection to a node could not be established or was lost."""

    def __init__(self, message: str, node_id: str | None = None):
        super().__init__(message, node_id, retriable=True)


class CommandFailure(FleetError):
    """The remote command ran but reported an error."""

    def __init__(
        self,
        message: str,
        node_id: str | None = None,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message, node_id, retriable=False)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class ConvergenceFailure(FleetError):
    """A verify step did not observe the expected terminal state."""

    def __init__(self, message: str, node_id: str | None = None):
        super().__init__(message, node_id, retriable=True)


class PartialFleetFailure(FleetError):
    """One or more nodes failed while the rest of the sweep completed."""

    def __init__(self, message: str, result: "FleetResult"):
        super().__init__(message)
        self.result = result


class ArtifactError(FleetError):
    """A local image archive required for deployment is missing."""


class ConfigError(FleetError):
    """The fleet definition or tunables are invalid."""
