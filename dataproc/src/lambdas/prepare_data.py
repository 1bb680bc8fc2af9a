"""
Prepare Data Lambda - List new input artifacts and return the run manifest.

This Lambda is invoked once per run by the orchestrator (Preparation Stage).
It scans the incoming bucket, writes an audit copy of the manifest as JSONL
and returns the manifest inline.

Input:
    {
        "run_id": "run-20231201T2200Z",
        "bucket": "data-processing-incoming-bucket",  # optional, else input_bucket env var
        "prefix": "incoming/",                         # optional
        "params": {}                                   # optional, copied into each item
    }

Output:
    {
        "run_id": "run-20231201T2200Z",
        "created_at": "2023-12-01T22:00:03+00:00",
        "manifest_s3_key": "manifests/run-20231201T2200Z.jsonl",
        "n_items": 2,
        "items": [
            {"item_id": "a.csv-1f2e3d4c5b", "bucket": "...", "key": "incoming/a.csv", "params": {}},
            ...
        ]
    }
"""

import json
import logging
import os
from typing import Any, Dict

import boto3

from dataproc.src import s3_utils
from dataproc.src.connectors.s3_store import S3ArtifactStore
from dataproc.src.interfaces import StorageLocation
from dataproc.src.stages.preparation import PreparationStage

logger = logging.getLogger()
logger.setLevel(logging.INFO)

DEFAULT_PREFIX = "incoming/"


def get_manifest_key(run_id: str) -> str:
    """Get S3 key for the manifest audit copy."""
    return f"manifests/{run_id}.jsonl"


def build_manifest(
    s3_client,
    bucket: str,
    run_id: str,
    prefix: str = DEFAULT_PREFIX,
    params: Dict[str, Any] = None,
) -> Dict[str, Any]:
    """
    Scan the bucket, write the JSONL audit copy and return the manifest dict.

    Args:
        s3_client: Boto3 S3 client
        bucket: Incoming bucket name
        run_id: Run identifier
        prefix: Prefix to scan
        params: Extra parameters for every work item

    Returns:
        Manifest as a dict (see module docstring)
    """
    store = S3ArtifactStore(s3_client=s3_client)
    stage = PreparationStage(store, StorageLocation(bucket=bucket, prefix=prefix), params)
    manifest = stage.prepare(run_id)

    manifest_key = get_manifest_key(run_id)
    s3_utils.upload_jsonl(bucket, manifest_key, manifest.to_jsonl(), s3_client=s3_client)

    result = manifest.to_dict()
    result["manifest_s3_key"] = manifest_key
    return result


def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Lambda handler for the Preparation Stage.

    Args:
        event: Lambda event with run_id and optional bucket/prefix/params
        context: Lambda context (unused)

    Returns:
        Manifest dict with items inline

    Raises:
        ValueError: If run_id or bucket is missing
    """
    logger.info(f"Prepare data event: {json.dumps(event)}")

    run_id = event.get("run_id")
    bucket = event.get("bucket") or os.environ.get("input_bucket") or os.environ.get(
        "INPUT_BUCKET"
    )
    prefix = event.get("prefix") or os.environ.get("INPUT_PREFIX", DEFAULT_PREFIX)

    if not run_id:
        raise ValueError("Missing required field: run_id")

    if not bucket:
        raise ValueError("Missing required field: bucket (or input_bucket env var)")

    s3_client = boto3.client("s3")

    result = build_manifest(s3_client, bucket, run_id, prefix, event.get("params"))

    logger.info(
        f"Prepared manifest for {run_id}: {result['n_items']} items "
        f"-> s3://{bucket}/{result['manifest_s3_key']}"
    )
    return result


# Deployed handler name is prepareData.lambda_handler
lambda_handler = handler
