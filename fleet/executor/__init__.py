"""Remote execution gateways."""

from fleet.executor.base import RemoteExecutor
from fleet.executor.ssh import SSHExecutor

__all__ = ["RemoteExecutor", "SSHExecutor"]
