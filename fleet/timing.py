"""Per-node operation timing.

Each timed block observes one sample in a histogram labelled with the
operation, any extra labels, and a ``status`` of ``success`` or
``error``, then writes one DEBUG line tagged with the node id.

Usage:
    async with AsyncTimedOperation(node_operation_duration, node.node_id, "stop"):
        await ops.stop_with_retry(node)
"""
from __future__ import annotations

import logging
import time

from prometheus_client import Histogram

logger = logging.getLogger(__name__)


class AsyncTimedOperation:
    """Async context manager timing one operation against one node.

    Instrumentation errors are logged and dropped; the block's own
    exception always propagates.
    """

    def __init__(self, histogram: Histogram, node_id: str, operation: str, **labels: str):
        self.histogram = histogram
        self.node_id = node_id
        self.operation = operation
        self.labels = labels
        self.elapsed: float = 0.0
        self.success: bool = True
        self._start: float = 0.0

    @property
    def status(self) -> str:
        return "success" if self.success else "error"

    async def __aenter__(self) -> AsyncTimedOperation:
        self._start = time.monotonic()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.elapsed = time.monotonic() - self._start
        self.success = exc_type is None

        try:
            self.histogram.labels(operation=self.operation, status=self.status, **self.labels).observe(self.elapsed)
        except Exception as e:
            logger.warning(f"Failed to record {self.operation} duration: {e}")

        duration_ms = int(self.elapsed * 1000)
        outcome = "done" if self.success else f"failed ({exc_val})"
        logger.debug(
            f"[{self.node_id}] {self.operation} {outcome} in {duration_ms}ms",
            extra={"node_id": self.node_id, "operation": self.operation, "duration_ms": duration_ms, "status": self.status},
        )
        return False
