"""Prometheus metrics for the fleet orchestrator.

The orchestrator is a short-lived CLI, so metrics are not served over
HTTP. ``write_textfile`` dumps the registry for the node-exporter
text-file collector when ``PICO_FLEET_METRICS_TEXTFILE`` is set.
"""
from __future__ import annotations

import logging

from prometheus_client import REGISTRY, Counter, Histogram, write_to_textfile

logger = logging.getLogger(__name__)


remote_command_duration = Histogram(
    "pico_fleet_remote_command_seconds",
    "Duration of remote commands and copies",
    ["operation", "role", "status"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 300, float("inf")),
)

node_operation_duration = Histogram(
    "pico_fleet_node_operation_seconds",
    "Duration of per-node lifecycle operations",
    ["operation", "status"],
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, float("inf")),
)

node_operation_errors = Counter(
    "pico_fleet_node_operation_errors_total",
    "Total per-node lifecycle operation failures",
    ["operation", "error_type"],
)

transport_retries = Counter(
    "pico_fleet_transport_retries_total",
    "Remote calls retried after a transport failure",
    ["role"],
)

recovery_attempts = Counter(
    "pico_fleet_recovery_runs_total",
    "Chunked-retry recovery workflow runs",
    ["outcome"],
)


def write_textfile(path: str) -> None:
    """Write all metrics to ``path`` in Prometheus exposition format."""
    if not path:
        return
    try:
        write_to_textfile(path, REGISTRY)
    except OSError as e:
        logger.warning(f"Failed to write metrics textfile {path}: {e}")
