"""SSH remote execution gateway built on asyncssh."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import TYPE_CHECKING, AsyncIterator

import asyncssh

from fleet.commands import RemoteCommand
from fleet.config import Settings
from fleet.errors import ArtifactError, CommandFailure, TransportFailure
from fleet.executor.base import RemoteExecutor
from fleet.metrics import remote_command_duration, transport_retries
from fleet.retry import RetryPolicy
from fleet.runtime import CommandResult
from fleet.timing import AsyncTimedOperation

if TYPE_CHECKING:
    from fleet.registry import Node

logger = logging.getLogger(__name__)

# Errors that mean the connection, not the remote command, failed
_TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, asyncssh.Error)

# Exit code reported when a remote command was terminated by a signal
SIGNAL_EXIT_CODE = -1


class SSHExecutor(RemoteExecutor):
    """Execute commands on nodes over pooled SSH connections.

    One connection is kept per ``(user, host, port)`` and reused for every
    call to that node. A per-key lock serializes connection setup, so
    concurrent callers share a single handshake. When a call fails at the
    transport level the pooled connection is dropped and the call is
    retried on a fresh one, up to ``ssh_max_retries`` attempts.
    """

    def __init__(self, settings: Settings, retry: RetryPolicy | None = None):
        self.settings = settings
        self.retry = retry or RetryPolicy(
            max_attempts=settings.ssh_max_retries,
            delay=settings.ssh_retry_delay,
            retry_on=(TransportFailure,),
        )
        self._connections: dict[tuple[str, str, int], asyncssh.SSHClientConnection] = {}
        self._locks: dict[tuple[str, str, int], asyncio.Lock] = {}

    @staticmethod
    def _key(node: Node) -> tuple[str, str, int]:
        return (node.user, node.host, node.port)

    def _connect_options(self, node: Node) -> dict:
        options = {
            "port": node.port,
            "username": node.user,
            "known_hosts": None,
            "connect_timeout": self.settings.ssh_connect_timeout,
            "keepalive_interval": self.settings.ssh_keepalive_interval,
            "keepalive_count_max": self.settings.ssh_keepalive_count_max,
        }
        if node.ssh_key:
            options["client_keys"] = [os.path.expanduser(node.ssh_key)]
        return options

    async def _connection(self, node: Node) -> asyncssh.SSHClientConnection:
        key = self._key(node)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            conn = self._connections.get(key)
            if conn is not None:
                return conn
            try:
                conn = await asyncssh.connect(node.host, **self._connect_options(node))
            except _TRANSPORT_ERRORS as e:
                raise TransportFailure(
                    f"Cannot connect to {node}: {e}", node_id=node.node_id
                ) from e
            logger.debug(f"SSH connection opened to {node.address}")
            self._connections[key] = conn
            return conn

    async def _discard(self, node: Node) -> None:
        conn = self._connections.pop(self._key(node), None)
        if conn is None:
            return
        try:
            conn.close()
            await conn.wait_closed()
        except _TRANSPORT_ERRORS as e:
            logger.debug(f"Error closing broken connection to {node.address}: {e}")

    async def _with_retry(self, node: Node, func, description: str):
        attempt = 0

        async def _attempt():
            nonlocal attempt
            attempt += 1
            if attempt > 1:
                transport_retries.labels(role=node.role.value).inc()
            return await func()

        return await self.retry.run(_attempt, description=description)

    # --- RemoteExecutor ---

    async def execute(
        self,
        node: Node,
        command: RemoteCommand,
        input: str | None = None,
    ) -> CommandResult:
        line = command.render()

        async def _run_once() -> CommandResult:
            conn = await self._connection(node)
            try:
                result = await conn.run(line, input=input, check=False)
            except _TRANSPORT_ERRORS as e:
                await self._discard(node)
                raise TransportFailure(
                    f"Connection to {node} lost while running command: {e}",
                    node_id=node.node_id,
                ) from e
            exit_code = result.exit_status
            if exit_code is None:
                exit_code = SIGNAL_EXIT_CODE
            return CommandResult(
                exit_code=exit_code,
                stdout=str(result.stdout or ""),
                stderr=str(result.stderr or ""),
            )

        logger.debug(f"[{node.node_id}] $ {line}")
        async with AsyncTimedOperation(remote_command_duration, node.node_id, "execute", role=node.role.value):
            return await self._with_retry(node, _run_once, f"'{line}' on {node}")

    async def copy(self, local_path: str, node: Node, remote_path: str) -> None:
        if not os.path.isfile(local_path):
            raise ArtifactError(f"Local file not found: {local_path}", node_id=node.node_id)

        async def _copy_once() -> None:
            conn = await self._connection(node)
            try:
                await asyncssh.scp(local_path, (conn, remote_path))
            except asyncssh.SFTPError as e:
                raise CommandFailure(
                    f"Copy of {local_path} to {node}:{remote_path} failed: {e}",
                    node_id=node.node_id,
                    stderr=str(e),
                ) from e
            except _TRANSPORT_ERRORS as e:
                await self._discard(node)
                raise TransportFailure(
                    f"Connection to {node} lost during copy: {e}", node_id=node.node_id
                ) from e

        logger.info(f"[{node.node_id}] Copying {local_path} -> {remote_path}")
        async with AsyncTimedOperation(remote_command_duration, node.node_id, "copy", role=node.role.value):
            await self._with_retry(node, _copy_once, f"copy to {node}")

    async def stream(self, node: Node, command: RemoteCommand) -> AsyncIterator[str]:
        line = command.render()

        async def _open():
            conn = await self._connection(node)
            try:
                return await conn.create_process(line, stderr=asyncssh.STDOUT)
            except _TRANSPORT_ERRORS as e:
                await self._discard(node)
                raise TransportFailure(
                    f"Cannot open channel to {node}: {e}", node_id=node.node_id
                ) from e

        process = await self._with_retry(node, _open, f"'{line}' on {node}")
        try:
            async for output in process.stdout:
                yield output.rstrip("\n")
        except _TRANSPORT_ERRORS as e:
            await self._discard(node)
            raise TransportFailure(
                f"Stream from {node} interrupted: {e}", node_id=node.node_id
            ) from e
        finally:
            process.close()

    async def close(self) -> None:
        for key in list(self._connections):
            conn = self._connections.pop(key)
            try:
                conn.close()
                await conn.wait_closed()
            except _TRANSPORT_ERRORS as e:
                logger.debug(f"Error closing connection to {key[1]}: {e}")
        self._locks.clear()
