#!/usr/bin/env python3
"""
Daily Data Processing Pipeline CLI

Entry point for operators and for the local scheduler.

Usage:
    dataproc run                              # one manual run now
    dataproc fire --at 2024-03-01T22:00:00Z   # one scheduled firing (external cron)
    dataproc serve                            # local scheduler loop
    dataproc status [RUN_ID]                  # latest or given run
    dataproc history --limit 10
    dataproc abandon RUN_ID                   # clear a run left by a dead process

Exit codes for run/fire:
    0 SUCCEEDED (or firing skipped), 2 PARTIAL_FAILURE, 1 FAILED / error
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from dataproc.src.config import ConfigError, PipelineConfig, load_config
from dataproc.src.connectors.local_store import LocalArtifactStore
from dataproc.src.database.repository import RunRepository, open_repository
from dataproc.src.execution.ecs_substrate import EcsTaskSubstrate
from dataproc.src.execution.lambda_invoker import (
    LambdaFunctionInvoker,
    LocalFunctionInvoker,
    make_local_prepare_handler,
)
from dataproc.src.execution.local_substrate import LocalSubstrate
from dataproc.src.interfaces import ExecutionSubstrate, FunctionInvoker, StorageLocation
from dataproc.src.lambdas.notify_completion import SnsNotifier
from dataproc.src.models import RunStage, WorkflowRun
from dataproc.src.orchestrate.workflow_orchestrator import WorkflowOrchestrator
from dataproc.src.stages.processing import ProcessingStage
from dataproc.src.trigger.schedule import DailySchedule, ScheduleTrigger

logger = logging.getLogger(__name__)

RUN_EXIT_CODES = {
    RunStage.SUCCEEDED: 0,
    RunStage.FAILED: 1,
    RunStage.PARTIAL_FAILURE: 2,
}


# =============================================================================
# Wiring
# =============================================================================


def storage_location(config: PipelineConfig) -> StorageLocation:
    return StorageLocation(
        bucket=config.storage.input_bucket,
        prefix=config.storage.input_prefix,
        processed_prefix=config.storage.processed_prefix,
        results_prefix=config.storage.results_prefix,
    )


def build_collaborators(config: PipelineConfig) -> Tuple[FunctionInvoker, ExecutionSubstrate]:
    """
    Create the invoker and substrate for the configured backend.

    local: in-process preparation handler + worker threads over a directory
    ecs:   PrepareData Lambda + one Fargate task per item
    """
    if config.execution.backend == "local":
        if not config.storage.input_bucket:
            raise ConfigError("storage.input_bucket (a directory) is required for local runs")
        store = LocalArtifactStore()
        location = storage_location(config)
        invoker = LocalFunctionInvoker(
            {config.preparation.function_name: make_local_prepare_handler(store, location)}
        )
        substrate = LocalSubstrate(
            ProcessingStage(store, location).process,
            max_workers=config.processing.max_concurrency,
        )
        return invoker, substrate

    invoker = LambdaFunctionInvoker(region=config.region)
    substrate = EcsTaskSubstrate(
        cluster=config.execution.cluster,
        task_definition=config.execution.task_definition,
        container_name=config.execution.container_name,
        subnets=config.execution.subnets,
        security_groups=config.execution.security_groups,
        assign_public_ip=config.execution.assign_public_ip,
        poll_interval=config.execution.poll_interval,
        extra_environment={
            "INPUT_PREFIX": config.storage.input_prefix,
            "PROCESSED_PREFIX": config.storage.processed_prefix,
            "RESULTS_PREFIX": config.storage.results_prefix,
            "AWS_REGION": config.region,
        },
        region=config.region,
    )
    return invoker, substrate


def build_orchestrator(
    config: PipelineConfig,
    repository: Optional[RunRepository] = None,
) -> WorkflowOrchestrator:
    invoker, substrate = build_collaborators(config)
    notifier = None
    if config.notifications.sns_topic_arn:
        notifier = SnsNotifier(config.notifications.sns_topic_arn, region=config.region)
    return WorkflowOrchestrator(
        invoker=invoker,
        substrate=substrate,
        config=config,
        repository=repository,
        notifier=notifier,
    )


def shutdown_substrate(orchestrator: WorkflowOrchestrator) -> None:
    if isinstance(orchestrator.substrate, LocalSubstrate):
        orchestrator.substrate.shutdown()


def load_settings(args: argparse.Namespace) -> PipelineConfig:
    config = load_config(args.config)
    if args.backend:
        config.execution.backend = args.backend
        config.validate()
    return config


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def parse_timestamp(value: str) -> datetime:
    """ISO-8601 timestamp; a trailing Z is accepted."""
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid ISO timestamp: {value}")


def exit_code_for(run: Optional[WorkflowRun]) -> int:
    if run is None:
        return 0
    return RUN_EXIT_CODES.get(run.stage, 1)


# =============================================================================
# Commands
# =============================================================================


def cmd_run(args: argparse.Namespace) -> int:
    """Start one manual run and wait for it to finish."""
    config = load_settings(args)
    repository = open_repository(config.database.url)
    orchestrator = build_orchestrator(config, repository)

    foreign = orchestrator.stored_active_run()
    if foreign is not None:
        logger.error(
            f"Run {foreign['run_id']} is still {foreign['stage']}; "
            f"refusing to start another (use 'abandon' if its process died)"
        )
        return 1

    try:
        run = asyncio.run(orchestrator.start())
    finally:
        shutdown_substrate(orchestrator)

    print_json(run.summary())
    return exit_code_for(run)


def cmd_fire(args: argparse.Namespace) -> int:
    """Handle one scheduled firing, honoring the overlap policy."""
    config = load_settings(args)
    schedule = DailySchedule.parse(config.schedule.expression)
    repository = open_repository(config.database.url)
    orchestrator = build_orchestrator(config, repository)
    trigger = ScheduleTrigger(orchestrator, schedule, config.schedule.overlap_policy)

    try:
        run = asyncio.run(trigger.fire(args.at))
    finally:
        shutdown_substrate(orchestrator)

    if run is None:
        print_json({"skipped": True})
        return 0

    print_json(run.summary())
    return exit_code_for(run)


async def _serve(trigger: ScheduleTrigger) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await trigger.run_forever(stop_event)


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the local scheduler until SIGINT/SIGTERM."""
    config = load_settings(args)
    schedule = DailySchedule.parse(config.schedule.expression)
    repository = open_repository(config.database.url)
    orchestrator = build_orchestrator(config, repository)
    trigger = ScheduleTrigger(orchestrator, schedule, config.schedule.overlap_policy)

    try:
        asyncio.run(_serve(trigger))
    finally:
        shutdown_substrate(orchestrator)
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Print one run (the latest if no id is given)."""
    config = load_settings(args)
    repository = open_repository(config.database.url)

    run: Optional[Dict[str, Any]]
    if args.run_id:
        run = repository.get_run(args.run_id)
    else:
        run = repository.get_latest_run()

    if run is None:
        print(f"No run found{': ' + args.run_id if args.run_id else ''}", file=sys.stderr)
        return 1

    print_json(run)
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    """Print the most recent runs."""
    config = load_settings(args)
    repository = open_repository(config.database.url)
    print_json(repository.list_runs(args.limit))
    return 0


def cmd_abandon(args: argparse.Namespace) -> int:
    """Mark a run whose process died as FAILED so new runs can start."""
    config = load_settings(args)
    repository = open_repository(config.database.url)

    if not repository.abandon_run(args.run_id, args.reason):
        print(f"Run {args.run_id} is unknown or already finished", file=sys.stderr)
        return 1

    repository.session.commit()
    logger.warning(f"Run {args.run_id} marked FAILED: {args.reason}")
    return 0


# =============================================================================
# Parser
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dataproc",
        description="Daily data processing pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Process everything in the incoming bucket now
  dataproc run

  # Same, against a local directory with worker threads
  dataproc --backend local --config dataproc/config/local.yaml run

  # Called by an external scheduler at 22:00 UTC
  dataproc fire

  # Inspect the last run
  dataproc status
        """,
    )
    parser.add_argument("--config", "-c", help="Path to YAML config (default: CONFIG_PATH or dataproc/config/)")
    parser.add_argument("--backend", choices=["ecs", "local"], help="Override execution.backend")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Start one manual run now")
    run_parser.set_defaults(func=cmd_run)

    fire_parser = subparsers.add_parser("fire", help="Handle one scheduled firing")
    fire_parser.add_argument(
        "--at",
        type=parse_timestamp,
        default=None,
        help="Firing time, ISO-8601 (default: now)",
    )
    fire_parser.set_defaults(func=cmd_fire)

    serve_parser = subparsers.add_parser("serve", help="Run the local scheduler loop")
    serve_parser.set_defaults(func=cmd_serve)

    status_parser = subparsers.add_parser("status", help="Show a run")
    status_parser.add_argument("run_id", nargs="?", help="Run id (default: latest)")
    status_parser.set_defaults(func=cmd_status)

    history_parser = subparsers.add_parser("history", help="List recent runs")
    history_parser.add_argument("--limit", "-n", type=int, default=20, help="Number of runs (default: 20)")
    history_parser.set_defaults(func=cmd_history)

    abandon_parser = subparsers.add_parser("abandon", help="Mark a stale run as FAILED")
    abandon_parser.add_argument("run_id", help="Run id")
    abandon_parser.add_argument(
        "--reason",
        default="abandoned by operator",
        help="Error message recorded on the run",
    )
    abandon_parser.set_defaults(func=cmd_abandon)

    return parser


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except (ConfigError, ValueError) as e:
        logger.error(f"Configuration error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
