"""Abstract remote execution gateway."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, AsyncIterator

from fleet.commands import RemoteCommand
from fleet.runtime import CommandResult

if TYPE_CHECKING:
    from fleet.registry import Node


class RemoteExecutor(ABC):
    """Runs commands on fleet nodes.

    Implementations distinguish two kinds of failure:

    - TransportFailure: the node could not be reached or the channel broke.
      Retried internally up to the configured bound, then raised.
    - A command that ran and exited non-zero. Returned as a CommandResult
      with ``ok == False`` and never retried here, since re-running a
      destructive command is not safe.
    """

    @abstractmethod
    async def execute(
        self,
        node: Node,
        command: RemoteCommand,
        input: str | None = None,
    ) -> CommandResult:
        """Run a command on a node.

        Args:
            node: Target node
            command: Command to run
            input: Optional text fed to the command's stdin

        Returns:
            CommandResult with exit code and captured output

        Raises:
            TransportFailure: If the node stays unreachable
        """
        ...

    @abstractmethod
    async def copy(self, local_path: str, node: Node, remote_path: str) -> None:
        """Upload a local file to a node.

        Raises:
            TransportFailure: If the node stays unreachable
            CommandFailure: If the transfer itself failed
        """
        ...

    @abstractmethod
    def stream(self, node: Node, command: RemoteCommand) -> AsyncIterator[str]:
        """Yield output lines of a long-running command (``logs -f``)."""
        ...

    async def close(self) -> None:
        """Release pooled connections."""
        return None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
