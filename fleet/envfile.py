"""Runtime configuration file (``.env.*``) mutation.

The file is line-oriented ``KEY=value`` text read by the container at
start. Updates touch the one key being changed and leave every other
byte of the file as it was.
"""

from __future__ import annotations

import logging
import re

from fleet.commands import CommandBuilder
from fleet.errors import CommandFailure
from fleet.executor.base import RemoteExecutor
from fleet.registry import Node
from fleet.runtime import is_missing_file

logger = logging.getLogger(__name__)


def _line_ending(line: str) -> str:
    if line.endswith("\r\n"):
        return "\r\n"
    if line.endswith("\n"):
        return "\n"
    return ""


def apply_key_update(text: str, key: str, value: object) -> str:
    """Set ``key`` to ``value`` in env-file text.

    Update-in-place rule:
        1. Every active ``KEY=...`` line is rewritten.
        2. Otherwise every commented placeholder ``# KEY=...`` (one space
           after the hash) is rewritten as an active line.
        3. Otherwise ``KEY=value`` is appended, adding a newline first if
           the text does not end with one.
    """
    active = re.compile(rf"^{re.escape(key)}=")
    placeholder = re.compile(rf"^# {re.escape(key)}=")
    assignment = f"{key}={value}"

    lines = text.splitlines(keepends=True)
    for pattern in (active, placeholder):
        hits = [i for i, line in enumerate(lines) if pattern.match(line)]
        if hits:
            for i in hits:
                lines[i] = assignment + _line_ending(lines[i])
            return "".join(lines)

    if text and not text.endswith("\n"):
        text += "\n"
    return f"{text}{assignment}\n"


def read_key(text: str, key: str) -> str | None:
    """Value of the last active ``KEY=`` line, or None."""
    value = None
    prefix = f"{key}="
    for line in text.splitlines():
        if line.startswith(prefix):
            value = line[len(prefix):]
    return value


async def read_remote_file(executor: RemoteExecutor, node: Node, path: str) -> str | None:
    """Read a text file on a node; None if it does not exist."""
    result = await executor.execute(node, CommandBuilder.read_file(path))
    if result.ok:
        return result.stdout
    if is_missing_file(result):
        return None
    raise CommandFailure(
        f"Reading {path} failed on {node}: {result.output.strip()}",
        node_id=node.node_id,
        exit_code=result.exit_code,
        stdout=result.stdout,
        stderr=result.stderr,
    )


async def write_remote_file(executor: RemoteExecutor, node: Node, path: str, text: str) -> None:
    result = await executor.execute(node, CommandBuilder.write_file(path), input=text)
    if not result.ok:
        raise CommandFailure(
            f"Writing {path} failed on {node}: {result.output.strip()}",
            node_id=node.node_id,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        )


async def restore_remote_file(
    executor: RemoteExecutor, node: Node, path: str, previous: str | None
) -> None:
    """Put back text returned by ``update_remote_tunable``.

    ``None`` means the file did not exist before and is removed again.
    """
    if previous is None:
        result = await executor.execute(node, CommandBuilder.remove_file(path))
        if not result.ok:
            raise CommandFailure(
                f"Removing {path} failed on {node}: {result.output.strip()}",
                node_id=node.node_id,
                exit_code=result.exit_code,
            )
        return
    await write_remote_file(executor, node, path, previous)


async def update_remote_tunable(
    executor: RemoteExecutor,
    node: Node,
    key: str,
    value: object,
    path: str | None = None,
) -> str | None:
    """Apply the update-in-place rule to a node's runtime configuration file.

    Args:
        executor: Remote execution gateway
        node: Target node
        key: Tunable name (e.g. ``CHUNK_SIZE``)
        value: New value
        path: File to edit (defaults to the node's role env file)

    Returns:
        The file's previous text (None if it did not exist), for rollback
    """
    path = path or node.env_file
    previous = await read_remote_file(executor, node, path)
    updated = apply_key_update(previous or "", key, value)
    if updated == (previous or ""):
        logger.info(f"[{node.node_id}] {key} already {value} in {path}")
        return previous
    await write_remote_file(executor, node, path, updated)
    logger.info(f"[{node.node_id}] Set {key}={value} in {path}")
    return previous
