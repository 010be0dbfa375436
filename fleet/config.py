"""Fleet tunables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Orchestrator tunables loaded from environment variables.

    Values from the fleet YAML file (``ssh``, ``container_management`` and
    ``performance`` sections) override these defaults, see
    ``fleet.registry.load_fleet``.
    """

    # Fleet definition
    config_file: str = "config.yaml"

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # text or json

    # Optional Prometheus text-file collector output
    metrics_textfile: str = ""

    # Container runtime invocation on remote nodes
    docker_prefix: str = "sudo docker"

    # SSH transport
    ssh_connect_timeout: float = 30.0
    ssh_keepalive_interval: float = 60.0
    ssh_keepalive_count_max: int = 3
    ssh_max_retries: int = 3
    ssh_retry_delay: float = 2.0
    worker_operation_delay: float = 0.1  # throttle between worker operations

    # Container management
    stop_max_retries: int = 5
    stop_retry_delay: float = 3.0
    aggregator_startup_wait: float = 5.0
    restart_wait_time: float = 3.0
    kill_settle_time: float = 1.0
    escalation_settle_time: float = 2.0
    force_kill_max_retries: int = 3
    force_kill_retry_delay: float = 2.0
    cleanup_settle_time: float = 2.0

    # Log capture
    timestamp_format: str = "%Y%m%d-%H%M%S"
    logs_dir: str = "docker-logs"

    # Chunked retry tunable
    tunable_key: str = "CHUNK_SIZE"
    chunk_size_normal: int = 1 << 22
    chunk_size_retry: int = 1 << 21

    class Config:
        env_prefix = "PICO_FLEET_"
