"""Fleet definition schemas.

These Pydantic models validate the YAML fleet file (``config.yaml``)
before anything is turned into the immutable node registry.
"""

from pydantic import BaseModel, Field, field_validator, model_validator


class NodeSpec(BaseModel):
    """Connection details shared by every node."""
    host: str = Field(min_length=1)
    user: str = Field(min_length=1)
    port: int = Field(22, ge=1, le=65535)
    remote_dir: str = Field(min_length=1)
    ssh_key: str | None = None  # Path to a private key; agent/default keys otherwise


class WorkerSpec(NodeSpec):
    """A worker node."""
    worker_id: str = Field(min_length=1)
    index: int = Field(ge=0)  # Zero-based position the aggregator expects


class PathsSpec(BaseModel):
    """Host paths mounted into every container."""
    perf_data_dir: str
    program_cache_file: str
    container_data_mount: str = "/app/perf/bench_data"
    container_cache_mount: str = "/app/program_cache.bin"
    logs_dir: str | None = None

    @field_validator("perf_data_dir", "program_cache_file")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value


class DockerSpec(BaseModel):
    prefix: str | None = None


class NumaSpec(BaseModel):
    """CPU/memory affinity for the managed containers."""
    cpuset_cpus: str = "62-123"
    cpuset_mems: str = "1"


class SSHSpec(BaseModel):
    connect_timeout: float | None = None
    keepalive_interval: float | None = None
    keepalive_count_max: int | None = None
    max_retries: int | None = Field(None, ge=1)
    retry_delay: float | None = Field(None, ge=0)
    worker_operation_delay: float | None = Field(None, ge=0)


class ContainerManagementSpec(BaseModel):
    stop_max_retries: int | None = Field(None, ge=1)
    stop_retry_delay: float | None = Field(None, ge=0)
    aggregator_startup_wait: float | None = Field(None, ge=0)
    restart_wait_time: float | None = Field(None, ge=0)


class PerformanceSpec(BaseModel):
    timestamp_format: str | None = None


class FleetFile(BaseModel):
    """Top-level fleet file."""
    aggregator: NodeSpec
    workers: list[WorkerSpec] = Field(min_length=1)
    paths: PathsSpec
    docker: DockerSpec = Field(default_factory=DockerSpec)
    numa: NumaSpec = Field(default_factory=NumaSpec)
    ssh: SSHSpec = Field(default_factory=SSHSpec)
    container_management: ContainerManagementSpec = Field(default_factory=ContainerManagementSpec)
    performance: PerformanceSpec = Field(default_factory=PerformanceSpec)

    @model_validator(mode="after")
    def _unique_workers(self) -> "FleetFile":
        ids = [w.worker_id for w in self.workers]
        if len(set(ids)) != len(ids):
            raise ValueError(f"duplicate worker_id in {ids}")
        indices = [w.index for w in self.workers]
        if len(set(indices)) != len(indices):
            raise ValueError(f"duplicate worker index in {indices}")
        return self

    def settings_overrides(self) -> dict:
        """Map file sections onto ``Settings`` field names (unset keys skipped)."""
        mapping = {
            "docker_prefix": self.docker.prefix,
            "logs_dir": self.paths.logs_dir,
            "ssh_connect_timeout": self.ssh.connect_timeout,
            "ssh_keepalive_interval": self.ssh.keepalive_interval,
            "ssh_keepalive_count_max": self.ssh.keepalive_count_max,
            "ssh_max_retries": self.ssh.max_retries,
            "ssh_retry_delay": self.ssh.retry_delay,
            "worker_operation_delay": self.ssh.worker_operation_delay,
            "stop_max_retries": self.container_management.stop_max_retries,
            "stop_retry_delay": self.container_management.stop_retry_delay,
            "aggregator_startup_wait": self.container_management.aggregator_startup_wait,
            "restart_wait_time": self.container_management.restart_wait_time,
            "timestamp_format": self.performance.timestamp_format,
        }
        return {key: value for key, value in mapping.items() if value is not None}
