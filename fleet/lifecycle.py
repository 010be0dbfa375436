"""Lifecycle orchestrator: fleet-wide verbs built from container operations.

Every verb sweeps the targeted nodes sequentially (aggregator first),
collects per-node failures into a FleetResult and never stops early.
Verbs do not raise for per-node failures; callers inspect ``result.ok``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Callable

from fleet import naming
from fleet.containers import ContainerOps
from fleet.envfile import update_remote_tunable
from fleet.errors import ArtifactError, CommandFailure, ConvergenceFailure, FleetError
from fleet.executor.base import RemoteExecutor
from fleet.registry import FleetConfig, Node
from fleet.runtime import CommandResult, is_image_in_use
from fleet.state import FleetScope, NodeRole, NodeStatus, ProcessState
from fleet.state_machine import ProcessStateMachine
from fleet.sweep import FleetResult, NodeOperation, for_each_node

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeStatusReport:
    node_id: str
    role: NodeRole
    address: str
    status: NodeStatus
    detail: str = ""

    @property
    def state(self) -> ProcessState | None:
        return ProcessStateMachine.from_status(self.status)

    def format(self) -> str:
        line = f"{self.node_id:<16} {self.address:<32} {self.status.label}"
        if self.detail:
            line = f"{line} ({self.detail})"
        return line


@dataclass
class FleetStatus:
    """Status of every targeted node, aggregator first."""
    reports: list[NodeStatusReport] = field(default_factory=list)

    def get(self, node_id: str) -> NodeStatusReport:
        for report in self.reports:
            if report.node_id == node_id:
                return report
        raise KeyError(node_id)

    @property
    def unreachable(self) -> list[str]:
        return [r.node_id for r in self.reports if r.status == NodeStatus.CONNECTION_FAILED]

    def converged(self, desired: ProcessState) -> bool:
        """True if every node was reached and matches ``desired``."""
        return all(
            r.state is not None and ProcessStateMachine.matches_desired(r.state, desired)
            for r in self.reports
        )

    def format(self) -> str:
        return "\n".join(report.format() for report in self.reports)


@dataclass(frozen=True)
class DeployOptions:
    """Per-run deploy settings.

    Attributes:
        aggregator_archive: Local image archive for the aggregator
        worker_archive: Local image archive for workers
        skip_image_cleanup: Keep the old image (the old container is still removed)
        keep_archive: Leave the uploaded archive on the node after loading
    """
    aggregator_archive: str = naming.DEFAULT_ARCHIVE_AGGREGATOR
    worker_archive: str = naming.DEFAULT_ARCHIVE_WORKER
    skip_image_cleanup: bool = False
    keep_archive: bool = False

    def archive_for(self, node: Node) -> str:
        if node.role == NodeRole.AGGREGATOR:
            return self.aggregator_archive
        return self.worker_archive


class Orchestrator:
    """High-level verbs over an immutable fleet.

    Args:
        fleet: Registry, tunables and runtime options resolved at startup
        executor: Remote execution gateway
        ops: Container operations (built from ``executor`` if omitted)
    """

    def __init__(
        self,
        fleet: FleetConfig,
        executor: RemoteExecutor,
        ops: ContainerOps | None = None,
    ):
        self.fleet = fleet
        self.registry = fleet.registry
        self.settings = fleet.settings
        self.executor = executor
        self.ops = ops or ContainerOps(executor, fleet.settings, fleet.runtime)

    async def _sweep(
        self,
        nodes: list[Node],
        operation: NodeOperation,
        name: str,
    ) -> FleetResult:
        return await for_each_node(
            nodes,
            operation,
            inter_node_delay=self.settings.worker_operation_delay,
            name=name,
        )

    # --- Logs ---

    async def save_logs(self, scope: FleetScope = FleetScope.ALL, tag: str | None = "manual") -> FleetResult:
        """Capture every targeted container's logs without stopping it."""
        timestamp = self.ops.timestamp()

        async def _save(node: Node):
            return await self.ops.save_logs(node, tag=tag, timestamp=timestamp)

        return await self._sweep(self.registry.select(scope), _save, "save_logs")

    async def logs(
        self,
        target: str,
        save: bool = False,
        follow: bool = False,
        tail: int | None = None,
        on_line: Callable[[str], None] | None = None,
    ) -> FleetResult:
        """Show, follow or save the logs of a single node.

        Args:
            target: ``aggregator`` or ``workerN`` (1-based) or a worker id
            save: Write logs to a file on the node (tag ``live``)
            follow: Stream logs until cancelled
            tail: Only the last N lines
            on_line: Receives output lines (defaults to the module logger)

        Raises:
            KeyError: If the target does not name a node
        """
        node = self.registry.resolve_target(target)
        emit = on_line or logger.info

        async def _logs(node: Node):
            if save:
                return await self.ops.save_logs(node, tag="live")
            if follow:
                async for line in self.ops.follow_logs(node, tail=tail):
                    emit(line)
                return None
            output = await self.ops.read_logs(node, tail=tail)
            for line in output.splitlines():
                emit(line)
            return output

        return await self._sweep([node], _logs, "logs")

    # --- Stop / kill ---

    async def _stop_node(self, node: Node, save_logs: bool, tag: str | None) -> None:
        if save_logs:
            try:
                await self.ops.save_logs(node, tag=tag)
            except CommandFailure as e:
                logger.warning(f"[{node.node_id}] Log capture failed, stopping anyway: {e.message}")

        stop = await self.ops.stop_with_retry(node)
        if not stop.converged:
            raise ConvergenceFailure(
                f"{node.container_name} on {node} is still running after {stop.attempts} stop attempts and kill",
                node_id=node.node_id,
            )
        await self.ops.remove_after_stop(node)
        if await self.ops.exists(node):
            raise ConvergenceFailure(
                f"{node.container_name} on {node} still exists after removal", node_id=node.node_id
            )

    async def stop(
        self,
        scope: FleetScope = FleetScope.ALL,
        save_logs: bool = True,
        tag: str | None = None,
    ) -> FleetResult:
        """Stop and remove targeted containers, capturing logs first unless disabled."""

        async def _stop(node: Node):
            await self._stop_node(node, save_logs, tag)

        return await self._sweep(self.registry.select(scope), _stop, "stop")

    async def _force_kill_node(self, node: Node) -> None:
        if not await self.ops.force_kill_with_verify(node):
            raise ConvergenceFailure(
                f"{node.container_name} on {node} survived force kill", node_id=node.node_id
            )

    async def force_kill(self, scope: FleetScope = FleetScope.ALL) -> FleetResult:
        """Kill and remove targeted containers without log capture."""
        return await self._sweep(self.registry.select(scope), self._force_kill_node, "force_kill")

    async def cleanup(self, scope: FleetScope = FleetScope.ALL) -> FleetResult:
        """Force-kill the targeted nodes to guarantee a clean slate."""
        return await self._sweep(self.registry.select(scope), self._force_kill_node, "cleanup")

    async def verify_absent(self, scope: FleetScope = FleetScope.ALL) -> FleetResult:
        """Independently confirm that no targeted container exists."""

        async def _verify(node: Node):
            if await self.ops.exists(node):
                raise ConvergenceFailure(
                    f"{node.container_name} still exists on {node}", node_id=node.node_id
                )

        return await self._sweep(self.registry.select(scope), _verify, "verify_absent")

    # --- Start / restart ---

    async def start(self, scope: FleetScope = FleetScope.ALL, cleanup_first: bool = False) -> FleetResult:
        """Start the aggregator, wait for it to listen, then start workers.

        The startup wait applies only when both roles are targeted. A failed
        aggregator does not stop the worker sweep; workers retry connecting.
        """
        result = FleetResult(operation="start")
        if cleanup_first:
            result = result.merge(await self.cleanup(scope))
            await asyncio.sleep(self.settings.cleanup_settle_time)

        if scope.includes_aggregator:
            aggregator = await self._sweep([self.registry.aggregator], self.ops.start, "start")
            result = result.merge(aggregator)
            if not aggregator.ok:
                logger.warning("Aggregator failed to start, starting workers anyway")

        if scope.includes_workers:
            if scope.includes_aggregator:
                wait = self.settings.aggregator_startup_wait
                logger.info(f"Waiting {wait}s for the aggregator to accept connections")
                await asyncio.sleep(wait)
            workers = await self._sweep(list(self.registry.workers), self.ops.start, "start")
            result = result.merge(workers)

        return result

    async def restart(
        self,
        scope: FleetScope = FleetScope.ALL,
        save_logs: bool = True,
        wait_time: float | None = None,
    ) -> FleetResult:
        """Stop, wait, start."""
        stopped = await self.stop(scope, save_logs=save_logs)
        wait = self.settings.restart_wait_time if wait_time is None else wait_time
        logger.info(f"Waiting {wait}s before starting")
        await asyncio.sleep(wait)
        started = await self.start(scope)
        return stopped.merge(started)

    # --- Deploy / images ---

    async def _remove_old_container(self, node: Node, skip_image_cleanup: bool) -> None:
        stop = await self.ops.stop_with_retry(node)
        if stop.converged:
            await self.ops.remove_after_stop(node)
        if await self.ops.exists(node):
            await self._force_kill_node(node)

        if skip_image_cleanup:
            return
        try:
            await self.ops.remove_image(node)
        except CommandFailure as e:
            # Lenient: the new load retags the image
            logger.warning(f"[{node.node_id}] Could not remove old image {node.image}: {e.message}")

    async def deploy(
        self,
        scope: FleetScope = FleetScope.ALL,
        options: DeployOptions | None = None,
    ) -> FleetResult:
        """Ship and load a new image; nodes end Absent with the image available.

        Per node: copy the archive, remove the old container (and image),
        load the archive, verify the image is listed, remove the archive.
        Old container removal runs even if the archive is missing or the
        copy failed, but the old image is then kept; the node is reported
        failed.
        """
        options = options or DeployOptions()

        async def _deploy(node: Node):
            archive = options.archive_for(node)
            remote_archive = naming.archive_remote_path(node.remote_dir, archive)

            copy_error: FleetError | None = None
            if not os.path.isfile(archive):
                copy_error = ArtifactError(f"Image archive not found: {archive}", node_id=node.node_id)
            else:
                try:
                    await self.ops.copy_artifact(node, archive, remote_archive)
                except FleetError as e:
                    copy_error = e

            # Keep the old image when there is nothing to replace it with
            await self._remove_old_container(node, options.skip_image_cleanup or copy_error is not None)
            if copy_error is not None:
                raise copy_error

            await self.ops.load_image(node, remote_archive)
            if not await self.ops.image_present(node):
                raise CommandFailure(
                    f"Image {node.image} not listed on {node} after load", node_id=node.node_id
                )
            logger.info(f"[{node.node_id}] Image verified: {node.image}")
            if not options.keep_archive:
                await self.ops.remove_archive(node, remote_archive)

        return await self._sweep(self.registry.select(scope), _deploy, "deploy")

    async def remove_images(self, scope: FleetScope = FleetScope.ALL) -> FleetResult:
        """Remove the role image; if a container still uses it, remove that first."""

        async def _remove(node: Node):
            try:
                await self.ops.remove_image(node)
            except CommandFailure as e:
                result = CommandResult(e.exit_code or 1, e.stdout, e.stderr)
                if not is_image_in_use(result):
                    raise
                logger.warning(f"[{node.node_id}] {node.image} in use, removing {node.container_name}")
                await self._stop_node(node, save_logs=False, tag=None)
                await self.ops.remove_image(node)

        return await self._sweep(self.registry.select(scope), _remove, "remove_images")

    # --- Runtime configuration ---

    async def set_tunable(self, value: object, scope: FleetScope = FleetScope.ALL) -> FleetResult:
        """Write the tunable into every targeted env file.

        ``values`` of the result holds each node's previous file text.
        """
        key = self.settings.tunable_key

        async def _set(node: Node):
            return await update_remote_tunable(self.executor, node, key, value)

        return await self._sweep(self.registry.select(scope), _set, "set_tunable")

    async def reset_tunable(
        self,
        scope: FleetScope = FleetScope.ALL,
        value: object | None = None,
        restart: bool = False,
    ) -> FleetResult:
        """Put the tunable back to its normal value, optionally restarting."""
        value = self.settings.chunk_size_normal if value is None else value
        logger.info(f"Resetting {self.settings.tunable_key} to {value}")
        result = await self.set_tunable(value, scope)
        if not restart:
            return result
        if not result.ok:
            logger.error("Not restarting: tunable update failed on some nodes")
            return result
        return result.merge(await self.restart(scope))

    # --- Status ---

    async def _status_of(self, node: Node) -> NodeStatusReport:
        try:
            state = await self.ops.observe(node)
        except FleetError as e:
            return NodeStatusReport(
                node.node_id, node.role, node.address, NodeStatus.CONNECTION_FAILED, e.message
            )
        return NodeStatusReport(
            node.node_id, node.role, node.address, ProcessStateMachine.to_status(state)
        )

    async def status(self, scope: FleetScope = FleetScope.ALL) -> FleetStatus:
        """Probe each node; unreachable nodes are CONNECTION_FAILED, never ABSENT."""
        result = await self._sweep(self.registry.select(scope), self._status_of, "status")
        return FleetStatus(reports=[result.values[node_id] for node_id in result.succeeded])

    async def converged(self, desired: ProcessState, scope: FleetScope = FleetScope.ALL) -> bool:
        return (await self.status(scope)).converged(desired)
