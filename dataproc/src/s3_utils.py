"""
S3 utility functions for the daily data processing pipeline.

Provides simple helpers for JSON/JSONL upload, listing and moving objects. Keeps S3 interactions isolated for easier testing with moto.

Every helper accepts an optional client so callers that already hold one
(and tests) can inject it.
"""

import json
import logging
from typing import Any, Dict, Iterator

import boto3

logger = logging.getLogger(__name__)


def _client(s3_client=None):
    return s3_client or boto3.client("s3")


def upload_json(bucket: str, key: str, data: Dict[str, Any], s3_client=None) -> None:
    """
    Upload a dict as JSON to S3.

    Args:
        bucket: S3 bucket name
        key: S3 object key
        data: Dict to serialize as JSON
        s3_client: Optional boto3 S3 client

    Raises:
        botocore.exceptions.ClientError: On S3 errors
    """
    s3 = _client(s3_client)

    # Serialize with default=str to handle datetime and other non-serializable types
    json_body = json.dumps(data, default=str, indent=2)

    s3.put_object(
        Bucket=bucket,
        Key=key,
        Body=json_body.encode("utf-8"),
        ContentType="application/json",
    )

    logger.info(f"Uploaded JSON to s3://{bucket}/{key}")


def upload_jsonl(bucket: str, key: str, content: str, s3_client=None) -> None:
    """Upload newline-delimited JSON content to S3."""
    s3 = _client(s3_client)
    s3.put_object(
        Bucket=bucket,
        Key=key,
        Body=content.encode("utf-8"),
        ContentType="application/x-ndjson",
    )
    logger.info(f"Uploaded JSONL to s3://{bucket}/{key}")


def iter_objects(
    bucket: str,
    prefix: str,
    s3_client=None,
) -> Iterator[Dict[str, Any]]:
    """
    Yield list_objects_v2 entries under a prefix, across all pages.

    Folder placeholder keys (ending in "/") are skipped.
    """
    s3 = _client(s3_client)
    paginator = s3.get_paginator("list_objects_v2")

    for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
        for obj in page.get("Contents", []):
            if obj["Key"].endswith("/"):
                continue
            yield obj


def object_exists(bucket: str, key: str, s3_client=None) -> bool:
    """HEAD an object; False on 404, re-raise anything else."""
    from botocore.exceptions import ClientError

    s3 = _client(s3_client)
    try:
        s3.head_object(Bucket=bucket, Key=key)
        return True
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "")
        if error_code in ("404", "NoSuchKey", "NotFound"):
            return False
        raise


def move_object(bucket: str, source_key: str, dest_key: str, s3_client=None) -> bool:
    """
    Move an object within a bucket (copy, then delete).

    Safe to repeat: if the source is already gone but the destination
    exists, the move is treated as done.

    Returns:
        True if an object was moved, False if it had already been moved

    Raises:
        botocore.exceptions.ClientError: If neither source nor destination exist
    """
    s3 = _client(s3_client)

    if not object_exists(bucket, source_key, s3_client=s3):
        if object_exists(bucket, dest_key, s3_client=s3):
            logger.info(f"s3://{bucket}/{source_key} already moved to {dest_key}")
            return False

    s3.copy_object(
        Bucket=bucket,
        Key=dest_key,
        CopySource={"Bucket": bucket, "Key": source_key},
    )
    s3.delete_object(Bucket=bucket, Key=source_key)

    logger.info(f"Moved s3://{bucket}/{source_key} -> {dest_key}")
    return True
