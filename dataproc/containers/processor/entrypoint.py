#!/usr/bin/env python3
"""
ECS Fargate Entrypoint - Process One Work Item

This script runs inside the data-processor container. One task processes
exactly one WorkDescriptor:
1. Reads the descriptor from environment variables (set per task by
   EcsTaskSubstrate container overrides)
2. Runs ProcessingStage against S3 (result document + archive move)
3. Exits with a code the orchestrator maps to an ExecutionOutcome

Environment Variables:
    ITEM_ID: WorkDescriptor id
    INPUT_BUCKET: Bucket holding the artifact
    INPUT_KEY: Key of the artifact
    ITEM_PARAMS: JSON object of extra parameters (default: {})
    ITEM_VERSION: Artifact version the result is keyed on (optional)
    ATTEMPT: Attempt number, for logging (default: 1)
    RUN_ID: Owning run, for logging (optional)
    INPUT_PREFIX: Incoming prefix (default: incoming/)
    PROCESSED_PREFIX: Archive prefix (default: processed/)
    RESULTS_PREFIX: Result prefix (default: results/)
    AWS_REGION: AWS region (default: us-east-1)

Exit codes:
    0  success
    75 retryable failure (EX_TEMPFAIL)
    1  terminal failure
"""

import json
import logging
import os
import sys
from typing import Any, Dict, Optional

# Configure logging before imports that may log
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

# Import project modules (PYTHONPATH=/app set in Dockerfile)
from dataproc.src.config import (
    DEFAULT_INPUT_PREFIX,
    DEFAULT_PROCESSED_PREFIX,
    DEFAULT_REGION,
    DEFAULT_RESULTS_PREFIX,
)
from dataproc.src.connectors.s3_store import S3ArtifactStore
from dataproc.src.execution.ecs_substrate import EXIT_SUCCESS, EXIT_TEMPFAIL
from dataproc.src.interfaces import StorageLocation
from dataproc.src.models import OutcomeStatus, WorkDescriptor
from dataproc.src.stages.processing import ProcessingStage

EXIT_FAILURE = 1

EXIT_CODES = {
    OutcomeStatus.SUCCESS: EXIT_SUCCESS,
    OutcomeStatus.RETRYABLE_FAILURE: EXIT_TEMPFAIL,
    OutcomeStatus.TERMINAL_FAILURE: EXIT_FAILURE,
}


def get_env_required(name: str) -> str:
    """Get required environment variable or fail fast."""
    value = os.environ.get(name)
    if not value:
        raise ValueError(f"Required environment variable {name} not set")
    return value


def get_env_optional(name: str, default: str) -> str:
    """Get optional environment variable with default."""
    return os.environ.get(name, default)


def descriptor_from_env() -> WorkDescriptor:
    """
    Build the WorkDescriptor for this task.

    Raises:
        ValueError: If a required variable is missing or ITEM_PARAMS is not
            a JSON object
    """
    raw_params = get_env_optional("ITEM_PARAMS", "{}") or "{}"
    try:
        params: Dict[str, Any] = json.loads(raw_params)
    except json.JSONDecodeError as e:
        raise ValueError(f"ITEM_PARAMS is not valid JSON: {e}")
    if not isinstance(params, dict):
        raise ValueError("ITEM_PARAMS must be a JSON object")

    return WorkDescriptor(
        item_id=get_env_required("ITEM_ID"),
        bucket=get_env_required("INPUT_BUCKET"),
        key=get_env_required("INPUT_KEY"),
        params=params,
        version=os.environ.get("ITEM_VERSION") or None,
    )


def location_from_env(bucket: str) -> StorageLocation:
    return StorageLocation(
        bucket=bucket,
        prefix=get_env_optional("INPUT_PREFIX", DEFAULT_INPUT_PREFIX),
        processed_prefix=get_env_optional("PROCESSED_PREFIX", DEFAULT_PROCESSED_PREFIX),
        results_prefix=get_env_optional("RESULTS_PREFIX", DEFAULT_RESULTS_PREFIX),
    )


def main(s3_client=None) -> int:
    """
    Main entrypoint for one processing task.

    Args:
        s3_client: Optional S3 client (for testing)

    Returns:
        Process exit code
    """
    try:
        descriptor = descriptor_from_env()
    except ValueError as e:
        logger.error(f"Invalid task environment: {e}")
        return EXIT_FAILURE

    run_id: Optional[str] = os.environ.get("RUN_ID")
    attempt = get_env_optional("ATTEMPT", "1")
    logger.info(
        f"Processing {descriptor.item_id} (s3://{descriptor.bucket}/{descriptor.key}), "
        f"attempt {attempt}" + (f", run {run_id}" if run_id else "")
    )

    store = S3ArtifactStore(
        region=get_env_optional("AWS_REGION", DEFAULT_REGION),
        s3_client=s3_client,
    )
    stage = ProcessingStage(store, location_from_env(descriptor.bucket))
    outcome = stage.process(descriptor)

    exit_code = EXIT_CODES[outcome.status]
    logger.info(
        f"Item {descriptor.item_id} finished {outcome.status} (exit {exit_code})"
        + (f": {outcome.diagnostic}" if outcome.diagnostic else "")
    )
    return exit_code


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(EXIT_FAILURE)
