"""Chunked-retry recovery workflow.

Used when the managed process fails mid-task and the fleet must be
restarted with a smaller chunk size:

    CAPTURING_LOGS -> FORCE_CONVERGING -> MUTATING_CONFIG -> WAITING
        -> RESTARTING -> DONE | FAILED

The env files are only touched once every node has been verified absent,
so no running container can still be holding the old value. If the fleet
never converges, nothing is rewritten and nothing is started.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from fleet.envfile import restore_remote_file
from fleet.errors import FleetError
from fleet.lifecycle import Orchestrator
from fleet.metrics import recovery_attempts
from fleet.retry import RetryPolicy
from fleet.state import FleetScope, RecoveryPhase
from fleet.sweep import FleetResult

logger = logging.getLogger(__name__)

# Tag for log files captured before recovery
FAILED_LOG_TAG = "failed"

DEFAULT_CLEANUP_RETRIES = 3
DEFAULT_CLEANUP_RETRY_DELAY = 2.0


@dataclass
class RecoveryOutcome:
    """Single success/failure signal plus what happened.

    Attributes:
        success: True only if the fleet was converged, reconfigured and restarted
        phase: Terminal phase (DONE) or the phase that failed
        attempts: Force-converge attempts used
        failed_nodes: Nodes that blocked the failing phase
        message: Human-readable summary
    """
    success: bool
    phase: RecoveryPhase
    attempts: int = 0
    failed_nodes: list[str] = field(default_factory=list)
    message: str = ""

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1


class ChunkRetryWorkflow:
    """Bounded force-converge, reconfigure and restart of the whole fleet."""

    def __init__(self, orchestrator: Orchestrator):
        self.orchestrator = orchestrator
        self.settings = orchestrator.settings
        self.phase: RecoveryPhase | None = None
        self.history: list[RecoveryPhase] = []

    def _enter(self, phase: RecoveryPhase) -> None:
        self.phase = phase
        self.history.append(phase)
        logger.info(f"Recovery phase: {phase.value}")

    def _finish(self, outcome: RecoveryOutcome) -> RecoveryOutcome:
        if not outcome.success:
            self.history.append(RecoveryPhase.FAILED)
            logger.error(f"Recovery failed in {outcome.phase.value}: {outcome.message}")
        else:
            self._enter(RecoveryPhase.DONE)
            logger.info(outcome.message)
        recovery_attempts.labels(outcome="success" if outcome.success else "failure").inc()
        return outcome

    async def _capture_logs(self) -> None:
        result = await self.orchestrator.save_logs(FleetScope.ALL, tag=FAILED_LOG_TAG)
        if not result.ok:
            logger.warning(f"Log capture incomplete, continuing: {result.summary()}")

    async def _force_converge(self, policy: RetryPolicy) -> tuple[bool, int, list[str]]:
        failed: list[str] = []
        for attempt in policy.attempts():
            logger.info(f"Force-converging fleet (attempt {attempt}/{policy.max_attempts})")
            killed = await self.orchestrator.force_kill(FleetScope.ALL)
            if not killed.ok:
                logger.warning(f"Force kill incomplete: {killed.summary()}")
            verified = await self.orchestrator.verify_absent(FleetScope.ALL)
            if verified.ok:
                logger.info("All containers verified absent")
                return True, attempt, []
            failed = verified.failed_nodes
            logger.warning(f"Containers remain on {', '.join(failed)}")
            if attempt < policy.max_attempts:
                await asyncio.sleep(policy.delay_for(attempt))
        return False, policy.max_attempts, failed

    async def _rollback(self, mutated: FleetResult) -> list[str]:
        """Restore env files already rewritten; returns nodes that could not be restored."""
        executor = self.orchestrator.executor
        unrestored: list[str] = []
        for node_id in mutated.succeeded:
            node = self.orchestrator.registry.get(node_id)
            try:
                await restore_remote_file(executor, node, node.env_file, mutated.values.get(node_id))
                logger.info(f"[{node_id}] Restored {node.env_file}")
            except FleetError as e:
                logger.error(f"[{node_id}] Could not restore {node.env_file}: {e.message}")
                unrestored.append(node_id)
        return unrestored

    async def run(
        self,
        chunk_size: int | None = None,
        wait_time: float | None = None,
        cleanup_retries: int = DEFAULT_CLEANUP_RETRIES,
        cleanup_retry_delay: float = DEFAULT_CLEANUP_RETRY_DELAY,
    ) -> RecoveryOutcome:
        """Run the workflow once.

        Args:
            chunk_size: Value for the tunable (defaults to ``chunk_size_retry``)
            wait_time: Settle delay before restarting (defaults to ``restart_wait_time``)
            cleanup_retries: Force-converge attempts
            cleanup_retry_delay: Seconds between force-converge attempts

        Returns:
            RecoveryOutcome; ``success`` is the only signal callers need
        """
        chunk_size = self.settings.chunk_size_retry if chunk_size is None else chunk_size
        wait_time = self.settings.restart_wait_time if wait_time is None else wait_time
        policy = RetryPolicy(max_attempts=cleanup_retries, delay=cleanup_retry_delay)
        key = self.settings.tunable_key
        self.history = []

        logger.info(f"Starting chunked retry with {key}={chunk_size}")

        self._enter(RecoveryPhase.CAPTURING_LOGS)
        await self._capture_logs()

        self._enter(RecoveryPhase.FORCE_CONVERGING)
        converged, attempts, failed = await self._force_converge(policy)
        if not converged:
            return self._finish(RecoveryOutcome(
                success=False,
                phase=RecoveryPhase.FORCE_CONVERGING,
                attempts=attempts,
                failed_nodes=failed,
                message=f"Fleet did not converge to absent after {attempts} attempts; "
                        f"configuration untouched, nothing started",
            ))

        self._enter(RecoveryPhase.MUTATING_CONFIG)
        mutated = await self.orchestrator.set_tunable(chunk_size, FleetScope.ALL)
        if not mutated.ok:
            unrestored = await self._rollback(mutated)
            message = f"Could not set {key} on {', '.join(mutated.failed_nodes)}; previous values restored"
            if unrestored:
                message = f"{message} except on {', '.join(unrestored)}"
            return self._finish(RecoveryOutcome(
                success=False,
                phase=RecoveryPhase.MUTATING_CONFIG,
                attempts=attempts,
                failed_nodes=mutated.failed_nodes,
                message=message,
            ))

        self._enter(RecoveryPhase.WAITING)
        await asyncio.sleep(wait_time)

        self._enter(RecoveryPhase.RESTARTING)
        started = await self.orchestrator.start(FleetScope.ALL)
        if not started.ok:
            return self._finish(RecoveryOutcome(
                success=False,
                phase=RecoveryPhase.RESTARTING,
                attempts=attempts,
                failed_nodes=started.failed_nodes,
                message=f"Restart failed: {started.summary()}",
            ))

        return self._finish(RecoveryOutcome(
            success=True,
            phase=RecoveryPhase.DONE,
            attempts=attempts,
            message=f"Fleet restarted with {key}={chunk_size}",
        ))
