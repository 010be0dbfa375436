"""Fleet sweep: apply one per-node operation across targeted nodes."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from fleet.errors import FleetError, PartialFleetFailure
from fleet.metrics import node_operation_duration, node_operation_errors
from fleet.registry import Node
from fleet.state import NodeRole
from fleet.timing import AsyncTimedOperation

logger = logging.getLogger(__name__)

NodeOperation = Callable[[Node], Awaitable[Any]]


@dataclass
class FleetResult:
    """Partition of a sweep's nodes into succeeded and failed.

    Attributes:
        operation: Name of the swept operation
        succeeded: Node ids that completed, in sweep order
        failed: Node id -> error for every node that did not
        values: Node id -> return value of the operation (succeeded nodes)
    """
    operation: str = ""
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, FleetError] = field(default_factory=dict)
    values: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def failed_nodes(self) -> list[str]:
        return list(self.failed)

    def merge(self, other: FleetResult) -> FleetResult:
        """Combine two sweeps; a node that failed in either one is failed."""
        failed = {**self.failed, **other.failed}
        succeeded: list[str] = []
        for node_id in self.succeeded + other.succeeded:
            if node_id not in failed and node_id not in succeeded:
                succeeded.append(node_id)
        operation = "+".join(op for op in (self.operation, other.operation) if op)
        return FleetResult(
            operation=operation,
            succeeded=succeeded,
            failed=failed,
            values={**self.values, **other.values},
        )

    def raise_for_failures(self) -> None:
        if self.failed:
            raise PartialFleetFailure(self.summary(), result=self)

    def summary(self) -> str:
        name = self.operation or "operation"
        if self.ok:
            return f"{name}: {len(self.succeeded)} node(s) succeeded"
        failures = ", ".join(f"{node_id} ({err.message})" for node_id, err in self.failed.items())
        return f"{name}: {len(self.succeeded)} succeeded, {len(self.failed)} failed: {failures}"


def aggregator_first(nodes: Iterable[Node]) -> list[Node]:
    """Aggregator before workers; workers keep registry order."""
    return sorted(nodes, key=lambda node: node.role != NodeRole.AGGREGATOR)


async def for_each_node(
    nodes: Iterable[Node],
    operation: NodeOperation,
    inter_node_delay: float = 0.0,
    name: str = "operation",
) -> FleetResult:
    """Apply ``operation`` to every node, never stopping on a failure.

    The delay throttles consecutive worker operations only; it is not
    applied after the aggregator or after the last worker.

    Args:
        nodes: Targeted nodes
        operation: Coroutine function taking a node
        inter_node_delay: Seconds between worker operations
        name: Operation name for logs, metrics and the result

    Returns:
        FleetResult with every targeted node in exactly one partition
    """
    result = FleetResult(operation=name)
    workers_done = 0
    for node in aggregator_first(nodes):
        if node.role == NodeRole.WORKER:
            if workers_done and inter_node_delay > 0:
                await asyncio.sleep(inter_node_delay)
            workers_done += 1
        try:
            async with AsyncTimedOperation(node_operation_duration, node.node_id, name):
                value = await operation(node)
        except FleetError as e:
            logger.error(f"[{node.node_id}] {name} failed: {e.message}")
            node_operation_errors.labels(operation=name, error_type=type(e).__name__).inc()
            result.failed[node.node_id] = e
        else:
            result.succeeded.append(node.node_id)
            result.values[node.node_id] = value

    if result.ok:
        logger.debug(result.summary())
    else:
        logger.warning(result.summary())
    return result
