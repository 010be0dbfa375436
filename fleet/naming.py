"""Centralized naming conventions for fleet containers, images and files.

All fleet components that construct container names, image references,
runtime configuration paths or log paths MUST use these functions so the
aggregator and worker roles stay consistent across verbs.
"""

from __future__ import annotations

import posixpath
import re

from fleet.state import NodeRole

CONTAINER_NAME_AGGREGATOR = "pico-aggregator"
CONTAINER_NAME_WORKER = "pico-subblock-worker"

IMAGE_NAME_AGGREGATOR = "pico-aggregator:latest"
IMAGE_NAME_WORKER = "pico-subblock-worker:latest"

ENV_FILE_AGGREGATOR = ".env.aggregator"
ENV_FILE_WORKER = ".env.subblock"

# Log file stem per role: aggregator-<ts>.log, subblock-<worker_id>-<ts>.log
_LOG_STEM_AGGREGATOR = "aggregator"
_LOG_STEM_WORKER = "subblock"


def sanitize_id(value: str, max_len: int = 0) -> str:
    """Sanitize a string for use in file names.

    Strips all characters except alphanumeric, underscore, and dash.
    Optionally truncates to max_len if > 0.
    """
    safe = re.sub(r"[^a-zA-Z0-9_-]", "", value)
    if max_len > 0:
        safe = safe[:max_len]
    return safe


def container_name(role: NodeRole) -> str:
    """Container name for a role (fixed for every node of that role)."""
    if role == NodeRole.AGGREGATOR:
        return CONTAINER_NAME_AGGREGATOR
    return CONTAINER_NAME_WORKER


def image_name(role: NodeRole) -> str:
    """Image reference for a role."""
    if role == NodeRole.AGGREGATOR:
        return IMAGE_NAME_AGGREGATOR
    return IMAGE_NAME_WORKER


def image_repository(image: str) -> str:
    """Strip the tag from an image reference (``repo:tag`` -> ``repo``)."""
    repo, sep, tag = image.rpartition(":")
    if sep and "/" not in tag:
        return repo
    return image


def env_file_path(role: NodeRole, remote_dir: str) -> str:
    """Runtime configuration file for a node's container."""
    name = ENV_FILE_AGGREGATOR if role == NodeRole.AGGREGATOR else ENV_FILE_WORKER
    return posixpath.join(remote_dir, name)


def log_file_path(
    role: NodeRole,
    remote_dir: str,
    logs_dir: str,
    timestamp: str,
    worker_id: str | None = None,
    tag: str | None = None,
) -> str:
    """Remote path for a captured container log.

    Format:
        {remote_dir}/{logs_dir}/aggregator[-{tag}]-{timestamp}.log
        {remote_dir}/{logs_dir}/subblock-{worker_id}[-{tag}]-{timestamp}.log
    """
    if role == NodeRole.AGGREGATOR:
        parts = [_LOG_STEM_AGGREGATOR]
    else:
        parts = [_LOG_STEM_WORKER, sanitize_id(worker_id or "")]
    if tag:
        parts.append(sanitize_id(tag))
    parts.append(timestamp)
    return posixpath.join(remote_dir, logs_dir, "-".join(parts) + ".log")


def archive_remote_path(remote_dir: str, local_archive: str) -> str:
    """Destination of an uploaded image archive on a node."""
    return posixpath.join(remote_dir, posixpath.basename(local_archive.replace("\\", "/")))


# Local image archives produced by the packaging step
DEFAULT_ARCHIVE_AGGREGATOR = "pico-aggregator.tar.gz"
DEFAULT_ARCHIVE_WORKER = "pico-subblock-worker.tar.gz"
