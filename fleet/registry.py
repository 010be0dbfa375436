"""Immutable node registry and fleet file loader.

The registry is built once per run and handed to the orchestrator
explicitly. Nothing here keeps module-level state, so several
orchestrators (for example in tests) never interfere with each other.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from pydantic import ValidationError

from fleet import naming
from fleet.config import Settings
from fleet.errors import ConfigError
from fleet.schemas import FleetFile
from fleet.state import FleetScope, NodeRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Node:
    """One addressable machine in the fleet."""
    role: NodeRole
    host: str
    user: str
    remote_dir: str
    port: int = 22
    ssh_key: str | None = None
    worker_id: str | None = None
    index: int | None = None

    @property
    def node_id(self) -> str:
        """Stable identifier used in reports (``aggregator`` or the worker id)."""
        if self.role == NodeRole.AGGREGATOR:
            return "aggregator"
        return self.worker_id or f"worker-{self.index}"

    @property
    def address(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"

    @property
    def container_name(self) -> str:
        return naming.container_name(self.role)

    @property
    def image(self) -> str:
        return naming.image_name(self.role)

    @property
    def env_file(self) -> str:
        return naming.env_file_path(self.role, self.remote_dir)

    def __str__(self) -> str:
        return f"{self.node_id} ({self.address})"


@dataclass(frozen=True)
class NodeRegistry:
    """The aggregator plus workers in registry order."""
    aggregator: Node
    workers: tuple[Node, ...] = ()

    def select(self, scope: FleetScope = FleetScope.ALL) -> list[Node]:
        """Nodes targeted by a scope, aggregator first."""
        nodes: list[Node] = []
        if scope.includes_aggregator:
            nodes.append(self.aggregator)
        if scope.includes_workers:
            nodes.extend(self.workers)
        return nodes

    def get(self, node_id: str) -> Node:
        for node in self.select(FleetScope.ALL):
            if node.node_id == node_id:
                return node
        raise KeyError(node_id)

    def resolve_target(self, target: str) -> Node:
        """Resolve an operator target: ``aggregator``/``agg``, ``workerN`` (1-based) or a worker id."""
        if target in ("aggregator", "agg"):
            return self.aggregator
        for worker in self.workers:
            if worker.worker_id == target:
                return worker
        if target.startswith("worker") and target[len("worker"):].isdigit():
            number = int(target[len("worker"):])
            if 1 <= number <= len(self.workers):
                return self.workers[number - 1]
            raise KeyError(f"Invalid worker number: {number} (max: {len(self.workers)})")
        raise KeyError(f"Unknown target: {target} (use 'aggregator' or 'worker1', 'worker2', ...)")


@dataclass(frozen=True)
class RuntimeOptions:
    """Resource isolation and mount parameters for ``docker run``.

    Supplied by configuration and passed through as opaque arguments by
    the container operations.
    """
    perf_data_dir: str
    program_cache_file: str
    container_data_mount: str = "/app/perf/bench_data"
    container_cache_mount: str = "/app/program_cache.bin"
    cpuset_cpus: str = "62-123"
    cpuset_mems: str = "1"
    gpus: str = "all"
    network: str = "host"
    ipc: str = "host"
    cap_add: tuple[str, ...] = ("SYS_NICE",)
    ulimits: tuple[str, ...] = ("memlock=-1:-1",)
    extra_args: tuple[str, ...] = field(default_factory=tuple)

    def run_args(self) -> list[str]:
        args = [
            "--gpus", self.gpus,
            "--network", self.network,
            f"--ipc={self.ipc}",
        ]
        for cap in self.cap_add:
            args.append(f"--cap-add={cap}")
        for ulimit in self.ulimits:
            args.extend(["--ulimit", ulimit])
        args.extend([
            "-v", f"{self.perf_data_dir}:{self.container_data_mount}:ro",
            "-v", f"{self.program_cache_file}:{self.container_cache_mount}:rw",
            f"--cpuset-cpus={self.cpuset_cpus}",
            f"--cpuset-mems={self.cpuset_mems}",
        ])
        args.extend(self.extra_args)
        return args


@dataclass(frozen=True)
class FleetConfig:
    """Everything the orchestrator needs, resolved once at startup."""
    registry: NodeRegistry
    settings: Settings
    runtime: RuntimeOptions


def build_fleet(document: dict, settings: Settings) -> FleetConfig:
    """Validate a parsed fleet document and build the registry."""
    try:
        parsed = FleetFile.model_validate(document)
    except ValidationError as e:
        raise ConfigError(f"Invalid fleet definition: {e}") from e

    aggregator = Node(
        role=NodeRole.AGGREGATOR,
        host=parsed.aggregator.host,
        user=parsed.aggregator.user,
        port=parsed.aggregator.port,
        remote_dir=parsed.aggregator.remote_dir,
        ssh_key=parsed.aggregator.ssh_key,
    )
    workers = tuple(
        Node(
            role=NodeRole.WORKER,
            host=w.host,
            user=w.user,
            port=w.port,
            remote_dir=w.remote_dir,
            ssh_key=w.ssh_key,
            worker_id=w.worker_id,
            index=w.index,
        )
        for w in parsed.workers
    )
    runtime = RuntimeOptions(
        perf_data_dir=parsed.paths.perf_data_dir,
        program_cache_file=parsed.paths.program_cache_file,
        container_data_mount=parsed.paths.container_data_mount,
        container_cache_mount=parsed.paths.container_cache_mount,
        cpuset_cpus=parsed.numa.cpuset_cpus,
        cpuset_mems=parsed.numa.cpuset_mems,
    )
    overrides = parsed.settings_overrides()
    if overrides:
        settings = settings.model_copy(update=overrides)

    return FleetConfig(
        registry=NodeRegistry(aggregator=aggregator, workers=workers),
        settings=settings,
        runtime=runtime,
    )


def load_fleet(path: str | Path, settings: Settings | None = None) -> FleetConfig:
    """Load and validate the YAML fleet file.

    Args:
        path: Path to the fleet file
        settings: Base tunables (environment defaults if None)

    Returns:
        FleetConfig with the immutable registry and resolved tunables

    Raises:
        ConfigError: If the file is missing, unparsable or invalid
    """
    settings = settings or Settings()
    config_path = Path(path)
    try:
        document = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigError(f"Fleet file not found: {config_path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Fleet file {config_path} is not valid YAML: {e}") from e

    if not isinstance(document, dict):
        raise ConfigError(f"Fleet file {config_path} must contain a mapping")

    fleet_config = build_fleet(document, settings)
    logger.info(
        f"Loaded fleet from {config_path}: aggregator={fleet_config.registry.aggregator.address}, "
        f"workers={len(fleet_config.registry.workers)}"
    )
    return fleet_config
