from __future__ import annotations

import os
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import asyncssh
import pytest

from fleet.commands import CommandBuilder
from fleet.config import Settings
from fleet.errors import ArtifactError, CommandFailure, TransportFailure
from fleet.executor.ssh import SSHExecutor
from fleet.registry import Node
from fleet.state import NodeRole


def _completed(exit_status=0, stdout="", stderr=""):
    return SimpleNamespace(exit_status=exit_status, stdout=stdout, stderr=stderr)


def _connection(**run_kwargs):
    conn = MagicMock()
    conn.run = AsyncMock(**run_kwargs)
    conn.close = MagicMock()
    conn.wait_closed = AsyncMock()
    return conn


@pytest.fixture
def executor():
    return SSHExecutor(Settings())


@pytest.fixture
def ps():
    return CommandBuilder("sudo docker").ps_names()


# ---------------------------------------------------------------------------
# execute
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_execute_returns_command_result(executor, aggregator, ps):
    conn = _connection(return_value=_completed(0, "pico-aggregator\n"))
    connect = AsyncMock(return_value=conn)

    with patch("asyncssh.connect", connect):
        result = await executor.execute(aggregator, ps)

    assert result.ok
    assert result.stdout == "pico-aggregator\n"
    conn.run.assert_awaited_once_with("sudo docker ps --format '{{.Names}}'", input=None, check=False)
    args, kwargs = connect.call_args
    assert args == ("10.0.0.1",)
    assert kwargs["username"] == "pico"
    assert kwargs["port"] == 22
    assert kwargs["known_hosts"] is None
    assert kwargs["connect_timeout"] == 30.0
    assert kwargs["keepalive_interval"] == 60.0
    assert kwargs["keepalive_count_max"] == 3
    assert "client_keys" not in kwargs


@pytest.mark.asyncio
async def test_connection_is_reused_per_node(executor, aggregator, ps):
    conn = _connection(return_value=_completed(0))
    connect = AsyncMock(return_value=conn)

    with patch("asyncssh.connect", connect):
        await executor.execute(aggregator, ps)
        await executor.execute(aggregator, ps)

    assert connect.await_count == 1
    assert conn.run.await_count == 2


@pytest.mark.asyncio
async def test_command_failure_is_not_retried(executor, aggregator, ps, sleeps):
    conn = _connection(return_value=_completed(1, "", "permission denied"))

    with patch("asyncssh.connect", AsyncMock(return_value=conn)):
        result = await executor.execute(aggregator, ps)

    assert result.exit_code == 1
    assert result.stderr == "permission denied"
    assert conn.run.await_count == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_signal_exit_reported_as_failure(executor, aggregator, ps):
    conn = _connection(return_value=_completed(None))

    with patch("asyncssh.connect", AsyncMock(return_value=conn)):
        result = await executor.execute(aggregator, ps)

    assert not result.ok


@pytest.mark.asyncio
async def test_connect_failure_retried_then_succeeds(executor, aggregator, ps, sleeps):
    conn = _connection(return_value=_completed(0))
    connect = AsyncMock(side_effect=[OSError("No route to host"), OSError("No route to host"), conn])

    with patch("asyncssh.connect", connect):
        result = await executor.execute(aggregator, ps)

    assert result.ok
    assert connect.await_count == 3
    assert sleeps == [2.0, 2.0]


@pytest.mark.asyncio
async def test_connect_failure_exhausts_to_transport_failure(executor, aggregator, ps):
    connect = AsyncMock(side_effect=asyncssh.PermissionDenied("denied"))

    with patch("asyncssh.connect", connect):
        with pytest.raises(TransportFailure) as exc:
            await executor.execute(aggregator, ps)

    assert connect.await_count == 3
    assert exc.value.node_id == "aggregator"
    assert exc.value.retriable


@pytest.mark.asyncio
async def test_lost_connection_is_discarded_and_reopened(executor, aggregator, ps):
    broken = _connection(side_effect=asyncssh.ConnectionLost("reset by peer"))
    fresh = _connection(return_value=_completed(0))
    connect = AsyncMock(side_effect=[broken, fresh])

    with patch("asyncssh.connect", connect):
        result = await executor.execute(aggregator, ps)

    assert result.ok
    broken.close.assert_called_once()
    assert connect.await_count == 2


@pytest.mark.asyncio
async def test_stdin_input_passed_through(executor, aggregator):
    conn = _connection(return_value=_completed(0))

    with patch("asyncssh.connect", AsyncMock(return_value=conn)):
        await executor.execute(aggregator, CommandBuilder.write_file("/opt/pico/.env.aggregator"), input="A=1\n")

    assert conn.run.call_args.kwargs["input"] == "A=1\n"


@pytest.mark.asyncio
async def test_client_key_used_when_configured(executor, ps):
    node = Node(role=NodeRole.AGGREGATOR, host="h", user="u", remote_dir="/r", ssh_key="~/.ssh/fleet")
    connect = AsyncMock(return_value=_connection(return_value=_completed(0)))

    with patch("asyncssh.connect", connect):
        await executor.execute(node, ps)

    assert connect.call_args.kwargs["client_keys"] == [os.path.expanduser("~/.ssh/fleet")]


# ---------------------------------------------------------------------------
# copy / close
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_copy_uses_scp_over_pooled_connection(executor, aggregator, tmp_path):
    archive = tmp_path / "pico-aggregator.tar.gz"
    archive.write_bytes(b"x")
    conn = _connection()
    scp = AsyncMock()

    with patch("asyncssh.connect", AsyncMock(return_value=conn)), patch("asyncssh.scp", scp):
        await executor.copy(str(archive), aggregator, "/opt/pico/pico-aggregator.tar.gz")

    scp.assert_awaited_once_with(str(archive), (conn, "/opt/pico/pico-aggregator.tar.gz"))


@pytest.mark.asyncio
async def test_copy_missing_local_file(executor, aggregator, tmp_path):
    with pytest.raises(ArtifactError):
        await executor.copy(str(tmp_path / "missing.tar.gz"), aggregator, "/opt/pico/x")


@pytest.mark.asyncio
async def test_copy_sftp_error_is_command_failure(executor, aggregator, tmp_path):
    archive = tmp_path / "a.tar"
    archive.write_bytes(b"x")
    scp = AsyncMock(side_effect=asyncssh.SFTPError(4, "No space left on device"))

    with patch("asyncssh.connect", AsyncMock(return_value=_connection())), patch("asyncssh.scp", scp):
        with pytest.raises(CommandFailure):
            await executor.copy(str(archive), aggregator, "/opt/pico/a.tar")

    assert scp.await_count == 1


@pytest.mark.asyncio
async def test_close_closes_pooled_connections(aggregator, worker, ps):
    conns = [_connection(return_value=_completed(0)), _connection(return_value=_completed(0))]

    with patch("asyncssh.connect", AsyncMock(side_effect=conns)):
        async with SSHExecutor(Settings()) as executor:
            await executor.execute(aggregator, ps)
            await executor.execute(worker, ps)

    for conn in conns:
        conn.close.assert_called_once()
        conn.wait_closed.assert_awaited_once()
