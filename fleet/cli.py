"""pico-fleet: manage the aggregator and worker containers of a fleet.

Examples:
    pico-fleet deploy
    pico-fleet start --cleanup
    pico-fleet stop --workers-only --no-logs
    pico-fleet retry --chunk-size 2097152
    pico-fleet reset-tunable --restart
    pico-fleet logs worker2 --follow
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from fleet import __version__
from fleet.config import Settings
from fleet.errors import ConfigError
from fleet.executor.ssh import SSHExecutor
from fleet.lifecycle import DeployOptions, Orchestrator
from fleet.logging_config import setup_fleet_logging
from fleet.metrics import write_textfile
from fleet.recovery import DEFAULT_CLEANUP_RETRIES, DEFAULT_CLEANUP_RETRY_DELAY, ChunkRetryWorkflow
from fleet.registry import load_fleet
from fleet.state import FleetScope
from fleet.sweep import FleetResult
from fleet.timeouts import DEFAULT_VERB_TIMEOUT, with_timeout

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_NODE_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def _non_negative_float(value: str) -> float:
    number = float(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {value}")
    return number


def _scope_parent() -> argparse.ArgumentParser:
    parent = argparse.ArgumentParser(add_help=False)
    group = parent.add_mutually_exclusive_group()
    group.add_argument("--aggregator-only", action="store_true", help="Only target the aggregator")
    group.add_argument("--workers-only", action="store_true", help="Only target the workers")
    return parent


def scope_from_args(args: argparse.Namespace) -> FleetScope:
    if getattr(args, "aggregator_only", False):
        return FleetScope.AGGREGATOR
    if getattr(args, "workers_only", False):
        return FleetScope.WORKERS
    return FleetScope.ALL


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pico-fleet",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="Fleet file (default: $PICO_FLEET_CONFIG_FILE or config.yaml)")
    parser.add_argument("--log-level", help="Log level (default: INFO)")
    parser.add_argument("--log-format", choices=["text", "json"], help="Log format (default: text)")
    parser.add_argument(
        "--timeout",
        type=_non_negative_float,
        default=DEFAULT_VERB_TIMEOUT,
        help="Abort the verb after N seconds (0 waits indefinitely)",
    )

    scope = _scope_parent()
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("deploy", parents=[scope], help="Copy and load images (does not start)")
    p.add_argument("--aggregator-image", help="Aggregator image archive (.tar, .tar.gz, .tgz)")
    p.add_argument("--worker-image", help="Worker image archive (.tar, .tar.gz, .tgz)")
    p.add_argument("--skip-cleanup", action="store_true", help="Keep the old image on the node")
    p.add_argument("--keep-archive", action="store_true", help="Keep the archive on the node after loading")

    p = sub.add_parser("start", parents=[scope], help="Start containers (aggregator first)")
    p.add_argument("--cleanup", action="store_true", help="Force-kill existing containers first")

    p = sub.add_parser("stop", parents=[scope], help="Stop and remove containers")
    p.add_argument("--no-logs", action="store_true", help="Do not save logs before stopping")

    sub.add_parser("force-kill", parents=[scope], help="Kill and remove containers, no log capture")

    p = sub.add_parser("restart", parents=[scope], help="Stop, wait, start")
    p.add_argument("--wait-time", type=_non_negative_float, help="Seconds between stop and start")
    p.add_argument("--no-logs", action="store_true", help="Do not save logs before stopping")

    p = sub.add_parser("retry", help="Restart the whole fleet with a smaller chunk size")
    p.add_argument("--chunk-size", type=_positive_int, help="Chunk size to apply (default: retry value)")
    p.add_argument("--wait-time", type=_non_negative_float, help="Seconds to wait before starting")
    p.add_argument("--cleanup-retries", type=_positive_int, default=DEFAULT_CLEANUP_RETRIES,
                   help="Force-converge attempts")
    p.add_argument("--cleanup-retry-delay", type=_non_negative_float, default=DEFAULT_CLEANUP_RETRY_DELAY,
                   help="Seconds between force-converge attempts")

    p = sub.add_parser("reset-tunable", aliases=["reset-chunk-size"], parents=[scope],
                       help="Set the chunk size back to its normal value")
    p.add_argument("--chunk-size", type=_positive_int, help="Value to apply (default: normal value)")
    p.add_argument("--restart", action="store_true", help="Restart after updating")

    sub.add_parser("status", parents=[scope], help="Show container status on every node")

    p = sub.add_parser("logs", help="Show logs of one node")
    p.add_argument("target", nargs="?", default="aggregator", help="aggregator or workerN (1-based)")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("--save", action="store_true", help="Save logs to a file on the node")
    mode.add_argument("--follow", "-f", action="store_true", help="Follow log output")
    p.add_argument("--tail", type=int, help="Only the last N lines")

    p = sub.add_parser("save-logs", parents=[scope], help="Save logs without stopping")
    p.add_argument("--tag", default="manual", help="Tag in the log file name")

    sub.add_parser("cleanup", parents=[scope], help="Force-kill everything for a clean slate")
    sub.add_parser("remove-images", parents=[scope], help="Remove images from the nodes")

    return parser


def print_result(result: FleetResult) -> None:
    if result.ok:
        print(f"OK: {result.summary()}")
        return
    print(f"FAILED: {result.summary()}")
    for node_id, error in result.failed.items():
        print(f"  {node_id}: {error.message}")


async def print_status(orchestrator: Orchestrator, scope: FleetScope = FleetScope.ALL) -> None:
    status = await orchestrator.status(scope)
    print("Fleet status:")
    print(status.format())


async def dispatch(args: argparse.Namespace, orchestrator: Orchestrator) -> int:
    """Run one verb and print the status of every targeted node."""
    command = args.command
    scope = scope_from_args(args)
    settings = orchestrator.settings

    if command == "logs":
        try:
            result = await orchestrator.logs(
                args.target, save=args.save, follow=args.follow, tail=args.tail, on_line=print,
            )
        except KeyError as e:
            print(f"Error: {e.args[0]}", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        if args.save and result.ok:
            saved = result.values.get(orchestrator.registry.resolve_target(args.target).node_id)
            if saved is not None and saved.path:
                print(f"Logs saved to {saved.path}")
        if not result.ok:
            print_result(result)
        return EXIT_OK if result.ok else EXIT_NODE_FAILURE

    if command == "status":
        status = await orchestrator.status(scope)
        print("Fleet status:")
        print(status.format())
        return EXIT_NODE_FAILURE if status.unreachable else EXIT_OK

    if command == "retry":
        workflow = ChunkRetryWorkflow(orchestrator)
        outcome = await workflow.run(
            chunk_size=args.chunk_size,
            wait_time=args.wait_time,
            cleanup_retries=args.cleanup_retries,
            cleanup_retry_delay=args.cleanup_retry_delay,
        )
        print(("OK: " if outcome.success else "FAILED: ") + outcome.message)
        await print_status(orchestrator)
        return outcome.exit_code

    if command == "deploy":
        defaults = DeployOptions()
        result = await orchestrator.deploy(scope, DeployOptions(
            aggregator_archive=args.aggregator_image or defaults.aggregator_archive,
            worker_archive=args.worker_image or defaults.worker_archive,
            skip_image_cleanup=args.skip_cleanup,
            keep_archive=args.keep_archive,
        ))
    elif command == "start":
        result = await orchestrator.start(scope, cleanup_first=args.cleanup)
    elif command == "stop":
        result = await orchestrator.stop(scope, save_logs=not args.no_logs)
    elif command == "force-kill":
        result = await orchestrator.force_kill(scope)
    elif command == "restart":
        result = await orchestrator.restart(scope, save_logs=not args.no_logs, wait_time=args.wait_time)
    elif command in ("reset-tunable", "reset-chunk-size"):
        value = args.chunk_size if args.chunk_size is not None else settings.chunk_size_normal
        result = await orchestrator.reset_tunable(scope, value=value, restart=args.restart)
    elif command == "save-logs":
        result = await orchestrator.save_logs(scope, tag=args.tag)
    elif command == "cleanup":
        result = await orchestrator.cleanup(scope)
    elif command == "remove-images":
        result = await orchestrator.remove_images(scope)
    else:
        raise ValueError(f"Unknown command: {command}")

    print_result(result)
    await print_status(orchestrator, scope)
    return EXIT_OK if result.ok else EXIT_NODE_FAILURE


async def _run(args: argparse.Namespace, fleet_config) -> int:
    async with SSHExecutor(fleet_config.settings) as executor:
        orchestrator = Orchestrator(fleet_config, executor)
        return await with_timeout(
            dispatch(args, orchestrator), args.timeout, description=f"pico-fleet {args.command}"
        )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = Settings()
    setup_fleet_logging(args.log_level or settings.log_level, args.log_format or settings.log_format)

    try:
        fleet_config = load_fleet(args.config or settings.config_file, settings)
    except ConfigError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        return asyncio.run(_run(args, fleet_config))
    except asyncio.TimeoutError:
        print(f"Timed out after {args.timeout}s", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130
    finally:
        write_textfile(fleet_config.settings.metrics_textfile)


if __name__ == "__main__":
    raise SystemExit(main())
