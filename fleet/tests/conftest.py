from __future__ import annotations

import asyncio
import copy
import os
import posixpath
import shlex
from dataclasses import dataclass, field

import pytest

from fleet.commands import RemoteCommand
from fleet.config import Settings
from fleet.errors import ArtifactError, CommandFailure, TransportFailure
from fleet.executor.base import RemoteExecutor
from fleet.lifecycle import Orchestrator
from fleet.registry import build_fleet
from fleet.runtime import CommandResult

FLEET_DOCUMENT = {
    "aggregator": {"host": "10.0.0.1", "user": "pico", "remote_dir": "/opt/pico"},
    "workers": [
        {"host": "10.0.0.2", "user": "pico", "remote_dir": "/opt/pico", "worker_id": "sub-0", "index": 0},
        {"host": "10.0.0.3", "user": "pico", "remote_dir": "/opt/pico", "worker_id": "sub-1", "index": 1},
    ],
    "paths": {"perf_data_dir": "/data/perf", "program_cache_file": "/data/program_cache.bin"},
}

AGGREGATOR_ENV = "RUST_LOG=info\nCHUNK_SIZE=4194304\nLISTEN_ADDR=0.0.0.0:50051\n"
WORKER_ENV = "RUST_LOG=info\n# CHUNK_SIZE=4194304\nAGGREGATOR_ADDR=10.0.0.1:50051"

NODE_IDS = ["aggregator", "sub-0", "sub-1"]


def _missing(kind: str, name: str) -> CommandResult:
    return CommandResult(1, "", f"Error response from daemon: No such {kind}: {name}\n")


def _archive_image(archive: str) -> str:
    stem = posixpath.basename(archive)
    for suffix in (".tar.gz", ".tgz", ".tar"):
        if stem.endswith(suffix):
            stem = stem[: -len(suffix)]
            break
    return f"{stem}:latest"


@dataclass
class FakeNode:
    """Simulated state of one node.

    Attributes:
        containers: name -> "running" | "stopped"
        container_images: name -> image the container was created from
        images: image references present on the node
        files: path -> text
        logs: container name -> accumulated output
        zombie_stops: next N ``docker stop`` calls report a zombie
        sticky: container survives kill and rm -f (both still report success)
        unreachable: every call raises TransportFailure
        fail: docker verb -> scripted result returned instead of running it
        fail_paths: file paths whose writes fail
        run_env: name -> env file text seen at ``docker run``
    """
    containers: dict[str, str] = field(default_factory=dict)
    container_images: dict[str, str] = field(default_factory=dict)
    images: set[str] = field(default_factory=set)
    files: dict[str, str] = field(default_factory=dict)
    logs: dict[str, str] = field(default_factory=dict)
    zombie_stops: int = 0
    sticky: bool = False
    unreachable: bool = False
    fail: dict[str, CommandResult] = field(default_factory=dict)
    fail_paths: set[str] = field(default_factory=set)
    copy_error: bool = False
    run_env: dict[str, str] = field(default_factory=dict)


class FakeExecutor(RemoteExecutor):
    """In-memory fleet that interprets the commands the orchestrator sends."""

    def __init__(self, docker_prefix: str = "sudo docker"):
        self.prefix = tuple(shlex.split(docker_prefix))
        self.nodes: dict[str, FakeNode] = {}
        self.events: list[tuple] = []
        self.copies: list[tuple[str, str, str]] = []
        self.closed = False

    def node(self, node_id: str) -> FakeNode:
        return self.nodes.setdefault(node_id, FakeNode())

    # --- inspection helpers ---

    def commands(self, node_id: str | None = None) -> list[str]:
        return [e[2] for e in self.events if e[0] == "cmd" and (node_id is None or e[1] == node_id)]

    def docker_calls(self, node_id: str, verb: str) -> list[str]:
        prefix = shlex.join(self.prefix) + f" {verb}"
        return [c for c in self.commands(node_id) if c.startswith(prefix)]

    def run_index(self, node_id: str) -> int:
        """Position of the node's ``docker run`` in the event timeline."""
        prefix = shlex.join(self.prefix) + " run"
        for i, event in enumerate(self.events):
            if event[0] == "cmd" and event[1] == node_id and event[2].startswith(prefix):
                return i
        raise AssertionError(f"no docker run on {node_id}")

    def set_running(self, node_id: str, name: str, image: str) -> None:
        state = self.node(node_id)
        state.containers[name] = "running"
        state.container_images[name] = image
        state.images.add(image)

    # --- RemoteExecutor ---

    async def execute(self, node, command: RemoteCommand, input: str | None = None) -> CommandResult:
        state = self.node(node.node_id)
        self.events.append(("cmd", node.node_id, command.render()))
        if state.unreachable:
            raise TransportFailure(f"Cannot connect to {node}: unreachable", node_id=node.node_id)
        return self._interpret(state, command, input)

    async def copy(self, local_path: str, node, remote_path: str) -> None:
        state = self.node(node.node_id)
        self.events.append(("copy", node.node_id, remote_path))
        if state.unreachable:
            raise TransportFailure(f"Cannot connect to {node}: unreachable", node_id=node.node_id)
        if not os.path.isfile(local_path):
            raise ArtifactError(f"Local file not found: {local_path}", node_id=node.node_id)
        if state.copy_error:
            raise CommandFailure(f"Copy to {node} failed: disk full", node_id=node.node_id)
        self.copies.append((node.node_id, local_path, remote_path))
        state.files[remote_path] = f"<image archive {posixpath.basename(local_path)}>"

    async def stream(self, node, command: RemoteCommand):
        state = self.node(node.node_id)
        self.events.append(("stream", node.node_id, command.render()))
        if state.unreachable:
            raise TransportFailure(f"Cannot connect to {node}: unreachable", node_id=node.node_id)
        name = command.argv[-1]
        for line in state.logs.get(name, "").splitlines():
            yield line

    async def close(self) -> None:
        self.closed = True

    # --- interpreter ---

    def _interpret(self, state: FakeNode, command: RemoteCommand, input: str | None) -> CommandResult:
        result = self._run_one(state, command, input)
        if command.stdout_to and command.stdout_to != "/dev/null":
            state.files[command.stdout_to] = result.output
            result = CommandResult(result.exit_code)
        if result.ok and command.then is not None:
            return self._interpret(state, command.then, input)
        return result

    def _run_one(self, state: FakeNode, command: RemoteCommand, input: str | None) -> CommandResult:
        argv = list(command.argv)
        if tuple(argv[: len(self.prefix)]) == self.prefix:
            return self._docker(state, argv[len(self.prefix):], command)

        program, args = argv[0], argv[1:]
        if program == "mkdir":
            return CommandResult(0)
        if program == "rm":
            state.files.pop(args[-1], None)
            return CommandResult(0)
        if program == "cat":
            path = args[-1]
            if path not in state.files:
                return CommandResult(1, "", f"cat: {path}: No such file or directory\n")
            return CommandResult(0, state.files[path])
        if program == "tee":
            state.files[args[-1]] = input or ""
            return CommandResult(0)
        if program == "mv":
            src, dst = args[-2], args[-1]
            if dst in state.fail_paths:
                return CommandResult(1, "", f"mv: cannot move '{src}' to '{dst}': Read-only file system\n")
            state.files[dst] = state.files.pop(src)
            return CommandResult(0)
        return CommandResult(127, "", f"{program}: command not found\n")

    def _docker(self, state: FakeNode, args: list[str], command: RemoteCommand) -> CommandResult:
        verb = args[0]
        if verb in state.fail:
            return state.fail[verb]

        if verb == "ps":
            if "-a" in args:
                names = list(state.containers)
            else:
                names = [n for n, s in state.containers.items() if s == "running"]
            return CommandResult(0, "".join(f"{n}\n" for n in names))

        if verb == "stop":
            name = args[-1]
            if name not in state.containers:
                return _missing("container", name)
            if state.zombie_stops > 0:
                state.zombie_stops -= 1
                return CommandResult(1, "", f"Error response from daemon: cannot stop container: {name}: zombie process\n")
            state.containers[name] = "stopped"
            return CommandResult(0, f"{name}\n")

        if verb == "kill":
            name = args[-1]
            if name not in state.containers:
                return _missing("container", name)
            if state.sticky:
                return CommandResult(0, f"{name}\n")
            if state.containers[name] != "running":
                return CommandResult(1, "", f"Error response from daemon: container {name} is not running\n")
            state.containers[name] = "stopped"
            return CommandResult(0, f"{name}\n")

        if verb == "rm":
            name = args[-1]
            force = "-f" in args
            if name not in state.containers:
                return _missing("container", name)
            if state.sticky and force:
                return CommandResult(0, f"{name}\n")
            if state.containers[name] == "running" and not force:
                return CommandResult(1, "", "Error response from daemon: You cannot remove a running container\n")
            del state.containers[name]
            state.container_images.pop(name, None)
            return CommandResult(0, f"{name}\n")

        if verb == "run":
            name = args[args.index("--name") + 1]
            image = args[-1]
            env_file = args[args.index("--env-file") + 1] if "--env-file" in args else None
            if name in state.containers:
                return CommandResult(125, "", f'docker: Error response from daemon: Conflict. The container name "/{name}" is already in use.\n')
            if image not in state.images:
                return CommandResult(125, "", f"Unable to find image '{image}' locally\n")
            state.containers[name] = "running"
            state.container_images[name] = image
            state.run_env[name] = state.files.get(env_file, "") if env_file else ""
            return CommandResult(0, "3f2a9c\n")

        if verb == "logs":
            name = args[-1]
            if name not in state.containers:
                return _missing("container", name)
            return CommandResult(0, state.logs.get(name, ""))

        if verb == "images":
            repository = args[-1]
            refs = [i for i in sorted(state.images) if i.rpartition(":")[0] == repository]
            return CommandResult(0, "".join(f"{r}\n" for r in refs))

        if verb == "rmi":
            image = args[-1]
            if image not in state.images:
                return _missing("image", image)
            users = [n for n, i in state.container_images.items() if i == image]
            if users:
                return CommandResult(
                    1, "",
                    f"Error response from daemon: conflict: unable to remove repository reference "
                    f'"{image}" (must force) - container {users[0]} is using its referenced image\n',
                )
            state.images.discard(image)
            return CommandResult(0, f"Untagged: {image}\n")

        if verb == "load":
            archive = args[-1] if "-i" in args else command.stdin_from[-1]
            if archive not in state.files:
                return CommandResult(1, "", f"open {archive}: no such file or directory\n")
            image = _archive_image(archive)
            state.images.add(image)
            return CommandResult(0, f"Loaded image: {image}\n")

        return CommandResult(1, "", f"unknown docker verb {verb}\n")


# --- fixtures ---


@pytest.fixture
def fake():
    executor = FakeExecutor()
    for node_id in NODE_IDS:
        executor.node(node_id)
    return executor


@pytest.fixture(autouse=True)
def sleeps(monkeypatch, fake):
    """Record asyncio.sleep delays (also into the fake's event timeline) without waiting."""
    recorded: list[float] = []

    async def _sleep(delay, result=None):
        recorded.append(delay)
        fake.events.append(("sleep", delay))
        return result

    monkeypatch.setattr(asyncio, "sleep", _sleep)
    return recorded


@pytest.fixture
def fleet_document():
    return copy.deepcopy(FLEET_DOCUMENT)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def fleet_config(fleet_document, settings):
    return build_fleet(fleet_document, settings)


@pytest.fixture
def orchestrator(fleet_config, fake):
    return Orchestrator(fleet_config, fake)


@pytest.fixture
def ops(orchestrator):
    return orchestrator.ops


@pytest.fixture
def aggregator(fleet_config):
    return fleet_config.registry.aggregator


@pytest.fixture
def worker(fleet_config):
    return fleet_config.registry.workers[0]


@pytest.fixture
def running_fleet(fake, fleet_config):
    """Every node running its role container, images present, env files in place."""
    for node in fleet_config.registry.select():
        fake.set_running(node.node_id, node.container_name, node.image)
        state = fake.node(node.node_id)
        state.logs[node.container_name] = f"{node.node_id} line 1\n{node.node_id} line 2\n"
        state.files[node.env_file] = AGGREGATOR_ENV if node.node_id == "aggregator" else WORKER_ENV
    return fake
