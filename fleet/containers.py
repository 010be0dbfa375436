"""Process handle operations for a node's managed container.

Every operation here is idempotent: repeating it after its goal already
holds (stopping an absent container, removing a missing image, saving
logs for a container that is gone) reports success instead of an error.
Remote calls go through a RemoteExecutor; runtime output is interpreted
only by fleet.runtime.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator

from fleet import naming
from fleet.commands import CommandBuilder, RemoteCommand
from fleet.config import Settings
from fleet.errors import CommandFailure, ConvergenceFailure
from fleet.executor.base import RemoteExecutor
from fleet.registry import Node, RuntimeOptions
from fleet.retry import RetryPolicy
from fleet.runtime import (
    CommandResult,
    classify_stop,
    image_listed,
    is_missing_container,
    is_missing_image,
    parse_names,
)
from fleet.state import LogCapture, ProcessState, StopOutcome, StopSignal
from fleet.state_machine import ProcessStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StopResult:
    """Outcome of a graceful stop with retry."""
    outcome: StopOutcome
    attempts: int
    escalated: bool = False
    state: ProcessState = ProcessState.STOPPED

    @property
    def converged(self) -> bool:
        return self.outcome == StopOutcome.CONVERGED


@dataclass(frozen=True)
class LogSaveResult:
    capture: LogCapture
    path: str | None = None


class ContainerOps:
    """Primitive operations on the single container a node runs.

    Args:
        executor: Remote execution gateway
        settings: Retry counts, delays and settle times
        runtime_options: Resource isolation and mounts passed to ``docker run``
        commands: Command builder (defaults to one for ``settings.docker_prefix``)
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        settings: Settings,
        runtime_options: RuntimeOptions,
        commands: CommandBuilder | None = None,
    ):
        self.executor = executor
        self.settings = settings
        self.runtime_options = runtime_options
        self.commands = commands or CommandBuilder(settings.docker_prefix)

    @property
    def stop_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.settings.stop_max_retries,
            delay=self.settings.stop_retry_delay,
        )

    @property
    def force_kill_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.settings.force_kill_max_retries,
            delay=self.settings.force_kill_retry_delay,
        )

    async def _run(
        self, node: Node, command: RemoteCommand, input: str | None = None
    ) -> CommandResult:
        return await self.executor.execute(node, command, input=input)

    @staticmethod
    def _failure(node: Node, action: str, result: CommandResult) -> CommandFailure:
        detail = result.output.strip() or f"exit code {result.exit_code}"
        return CommandFailure(
            f"{action} failed on {node}: {detail}",
            node_id=node.node_id,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    # --- Queries ---

    async def _names(self, node: Node, include_stopped: bool) -> set[str]:
        result = await self._run(node, self.commands.ps_names(include_stopped))
        if not result.ok:
            raise self._failure(node, "Container listing", result)
        return parse_names(result.stdout)

    async def exists(self, node: Node) -> bool:
        """True if the container is known to the runtime (running or stopped)."""
        return node.container_name in await self._names(node, include_stopped=True)

    async def is_running(self, node: Node) -> bool:
        return node.container_name in await self._names(node, include_stopped=False)

    async def observe(self, node: Node) -> ProcessState:
        """Probe running first, then existence."""
        running = await self.is_running(node)
        exists = running or await self.exists(node)
        return ProcessStateMachine.observe(exists, running)

    @staticmethod
    def _advance(node: Node, current: ProcessState, target: ProcessState) -> ProcessState:
        if not ProcessStateMachine.can_transition(current, target):
            logger.warning(f"[{node.node_id}] Unexpected transition {current.value} -> {target.value}")
        return target

    # --- Stop / remove / kill ---

    async def stop_with_retry(self, node: Node) -> StopResult:
        """Gracefully stop the container, retrying while it reports zombie.

        On exhaustion the container is killed once, given a settle time, and
        the outcome reflects whether it is still running. An absent
        container short-circuits to CONVERGED.

        Raises:
            CommandFailure: If the runtime rejects the stop for another reason
        """
        name = node.container_name
        state = await self.observe(node)
        if state == ProcessState.ABSENT:
            logger.info(f"[{node.node_id}] {name} does not exist, nothing to stop")
            return StopResult(StopOutcome.CONVERGED, attempts=0, state=state)

        policy = self.stop_policy
        for attempt in policy.attempts():
            result = await self._run(node, self.commands.stop(name))
            signal = classify_stop(result)
            if signal in (StopSignal.STOPPED, StopSignal.ABSENT):
                target = ProcessState.STOPPED if signal == StopSignal.STOPPED else ProcessState.ABSENT
                state = self._advance(node, state, target)
                logger.info(f"[{node.node_id}] Stopped {name} (attempt {attempt})")
                return StopResult(StopOutcome.CONVERGED, attempts=attempt, state=state)
            if signal == StopSignal.ERROR:
                raise self._failure(node, f"Stop of {name}", result)

            state = self._advance(node, state, ProcessState.ZOMBIE)
            logger.warning(
                f"[{node.node_id}] {name} ignored stop (zombie), "
                f"attempt {attempt}/{policy.max_attempts}"
            )
            if attempt < policy.max_attempts:
                await asyncio.sleep(policy.delay_for(attempt))

        logger.warning(f"[{node.node_id}] Stop retries exhausted for {name}, sending kill")
        kill = await self._run(node, self.commands.kill(name))
        if not kill.ok:
            logger.warning(f"[{node.node_id}] kill {name}: {kill.output.strip()}")
        await asyncio.sleep(self.settings.escalation_settle_time)

        if await self.is_running(node):
            logger.error(f"[{node.node_id}] {name} still running after kill")
            return StopResult(StopOutcome.ZOMBIE, attempts=policy.max_attempts, escalated=True, state=state)
        state = self._advance(node, state, ProcessState.STOPPED)
        return StopResult(StopOutcome.CONVERGED, attempts=policy.max_attempts, escalated=True, state=state)

    async def remove_after_stop(self, node: Node) -> None:
        """Remove a stopped container; an already removed one is fine."""
        result = await self._run(node, self.commands.rm(node.container_name))
        if result.ok or is_missing_container(result):
            return
        raise self._failure(node, f"Removal of {node.container_name}", result)

    async def force_kill_with_verify(self, node: Node) -> bool:
        """Kill and force-remove the container until it is verifiably gone.

        Each attempt sends kill, waits, force-removes, waits, then re-queries
        existence. Exit codes of kill and rm are not trusted on their own.

        Returns:
            True once the container no longer exists, False if it survived
            every attempt
        """
        name = node.container_name
        state = await self.observe(node)
        if state == ProcessState.ABSENT:
            logger.info(f"[{node.node_id}] {name} already absent")
            return True

        policy = self.force_kill_policy
        settle = self.settings.kill_settle_time
        for attempt in policy.attempts():
            logger.info(f"[{node.node_id}] Force killing {name} (attempt {attempt}/{policy.max_attempts})")
            await self._run(node, self.commands.kill(name))
            await asyncio.sleep(settle)
            await self._run(node, self.commands.rm(name, force=True))
            await asyncio.sleep(settle)

            if not await self.exists(node):
                self._advance(node, state, ProcessState.ABSENT)
                logger.info(f"[{node.node_id}] {name} removed")
                return True

            logger.warning(f"[{node.node_id}] {name} still exists after force kill")
            if attempt < policy.max_attempts:
                await asyncio.sleep(policy.delay_for(attempt))

        logger.error(f"[{node.node_id}] Failed to remove {name} after {policy.max_attempts} attempts")
        return False

    # --- Logs ---

    def timestamp(self) -> str:
        return datetime.now().strftime(self.settings.timestamp_format)

    async def save_logs(
        self,
        node: Node,
        tag: str | None = None,
        timestamp: str | None = None,
    ) -> LogSaveResult:
        """Write the container's accumulated output to a file on the node.

        A container that does not exist, or disappears while its logs are
        being read, yields SKIPPED.
        """
        name = node.container_name
        logs_root = posixpath.join(node.remote_dir, self.settings.logs_dir)
        mkdir = await self._run(node, self.commands.mkdir_p(logs_root))
        if not mkdir.ok:
            raise self._failure(node, f"Creating {logs_root}", mkdir)

        if not await self.exists(node):
            logger.info(f"[{node.node_id}] {name} does not exist, skipping log capture")
            return LogSaveResult(LogCapture.SKIPPED)

        path = naming.log_file_path(
            node.role,
            node.remote_dir,
            self.settings.logs_dir,
            timestamp or self.timestamp(),
            worker_id=node.worker_id,
            tag=tag,
        )
        result = await self._run(node, self.commands.logs_to_file(name, path))
        if result.ok:
            logger.info(f"[{node.node_id}] Logs saved to {path}")
            return LogSaveResult(LogCapture.SAVED, path)

        if is_missing_container(result) or not await self.exists(node):
            logger.info(f"[{node.node_id}] {name} disappeared during log capture, skipping")
            return LogSaveResult(LogCapture.SKIPPED)
        raise self._failure(node, f"Log capture for {name}", result)

    async def read_logs(self, node: Node, tail: int | None = None) -> str:
        result = await self._run(node, self.commands.logs(node.container_name, tail=tail))
        if not result.ok:
            raise self._failure(node, f"Reading logs of {node.container_name}", result)
        return result.output

    def follow_logs(self, node: Node, tail: int | None = None) -> AsyncIterator[str]:
        return self.executor.stream(
            node, self.commands.logs(node.container_name, tail=tail, follow=True)
        )

    # --- Start ---

    async def start(self, node: Node) -> bool:
        """Run the container bound to the node's runtime configuration file.

        Returns:
            True if a container was started, False if it was already running

        Raises:
            CommandFailure: If ``docker run`` fails
            ConvergenceFailure: If the container is not running afterwards
        """
        name = node.container_name
        state = await self.observe(node)
        if not ProcessStateMachine.can_start(state):
            logger.info(f"[{node.node_id}] {name} already {state.value}")
            return False
        if state == ProcessState.STOPPED:
            logger.info(f"[{node.node_id}] Removing stale stopped container {name}")
            await self.remove_after_stop(node)
            state = self._advance(node, state, ProcessState.ABSENT)

        command = self.commands.run(
            name,
            node.image,
            env_file=node.env_file,
            run_args=self.runtime_options.run_args(),
        )
        result = await self._run(node, command)
        if not result.ok:
            raise self._failure(node, f"Start of {name}", result)

        if not await self.is_running(node):
            raise ConvergenceFailure(
                f"{name} on {node} is not running after start", node_id=node.node_id
            )
        self._advance(node, state, ProcessState.RUNNING)
        logger.info(f"[{node.node_id}] Started {name}")
        return True

    # --- Images and artifacts ---

    async def image_present(self, node: Node, image: str | None = None) -> bool:
        image = image or node.image
        result = await self._run(node, self.commands.images(naming.image_repository(image)))
        if not result.ok:
            raise self._failure(node, "Image listing", result)
        return image_listed(result.stdout, image)

    async def remove_image(self, node: Node, image: str | None = None) -> bool:
        """Remove an image.

        Returns:
            True if removed, False if it was not present

        Raises:
            CommandFailure: For any other runtime error (including image in use)
        """
        image = image or node.image
        result = await self._run(node, self.commands.rmi(image))
        if result.ok:
            logger.info(f"[{node.node_id}] Removed image {image}")
            return True
        if is_missing_image(result):
            logger.debug(f"[{node.node_id}] Image {image} not present")
            return False
        raise self._failure(node, f"Removal of image {image}", result)

    async def copy_artifact(self, node: Node, local_path: str, remote_path: str) -> None:
        await self.executor.copy(local_path, node, remote_path)

    async def load_image(self, node: Node, archive: str) -> None:
        result = await self._run(node, self.commands.load(archive))
        if not result.ok:
            raise self._failure(node, f"Loading {archive}", result)
        logger.info(f"[{node.node_id}] Loaded {archive}")

    async def remove_archive(self, node: Node, archive: str) -> bool:
        result = await self._run(node, self.commands.remove_file(archive))
        if not result.ok:
            logger.warning(f"[{node.node_id}] Could not remove {archive}: {result.output.strip()}")
        return result.ok
