"""
S3ArtifactStore - Incoming-bucket storage for cloud deployment.

Layout inside the bucket (prefixes are configurable via StorageLocation):
    incoming/<name>           new artifacts, scanned by the Preparation Stage
    processed/<name>          artifacts after successful processing
    results/<item_id>.json    one result document per processed item
"""

import json
import logging
from typing import Any, Dict, List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from dataproc.src import s3_utils
from dataproc.src.interfaces import (
    ArtifactStore,
    FatalError,
    StorageLocation,
    TransientError,
    classify_client_error,
)
from dataproc.src.models import ArtifactRef

logger = logging.getLogger(__name__)


class S3ArtifactStore(ArtifactStore):
    """
    S3 implementation of ArtifactStore.

    All botocore errors are translated to TransientError / FatalError so the
    stages never have to know about boto3.

    Args:
        region: AWS region (default: us-east-1)
        s3_client: Optional S3 client (for testing)
    """

    def __init__(self, region: str = "us-east-1", s3_client=None):
        self.region = region
        self._s3_client = s3_client or boto3.client("s3", region_name=region)

    def list_new_artifacts(self, location: StorageLocation) -> List[ArtifactRef]:
        """
        List every object under location.prefix.

        Objects are considered new until the Processing Stage archives them,
        so this scan is read-only.
        """
        try:
            artifacts = [
                ArtifactRef(
                    bucket=location.bucket,
                    key=obj["Key"],
                    size=obj.get("Size", 0),
                    last_modified=obj.get("LastModified"),
                    etag=(obj.get("ETag") or "").strip('"') or None,
                )
                for obj in s3_utils.iter_objects(
                    location.bucket, location.prefix, s3_client=self._s3_client
                )
            ]
        except ClientError as e:
            raise classify_client_error(e, f"list s3://{location.bucket}/{location.prefix}")
        except BotoCoreError as e:
            raise TransientError(f"list s3://{location.bucket}/{location.prefix}: {e}")

        artifacts.sort(key=lambda a: a.key)
        logger.info(
            f"Found {len(artifacts)} new artifacts under "
            f"s3://{location.bucket}/{location.prefix}"
        )
        return artifacts

    def read_artifact(self, artifact: ArtifactRef) -> bytes:
        try:
            response = self._s3_client.get_object(Bucket=artifact.bucket, Key=artifact.key)
            return response["Body"].read()
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code in ("404", "NoSuchKey"):
                raise FatalError(f"Artifact not found: {artifact.uri}")
            raise classify_client_error(e, f"read {artifact.uri}")
        except BotoCoreError as e:
            raise TransientError(f"read {artifact.uri}: {e}")

    def write_result(self, location: StorageLocation, key: str, data: Dict[str, Any]) -> None:
        result_key = f"{location.results_prefix}{key}"
        try:
            s3_utils.upload_json(location.bucket, result_key, data, s3_client=self._s3_client)
        except ClientError as e:
            raise classify_client_error(e, f"write s3://{location.bucket}/{result_key}")
        except BotoCoreError as e:
            raise TransientError(f"write s3://{location.bucket}/{result_key}: {e}")

    def result_exists(self, location: StorageLocation, key: str) -> bool:
        result_key = f"{location.results_prefix}{key}"
        try:
            return s3_utils.object_exists(location.bucket, result_key, s3_client=self._s3_client)
        except ClientError as e:
            raise classify_client_error(e, f"head s3://{location.bucket}/{result_key}")
        except BotoCoreError as e:
            raise TransientError(f"head s3://{location.bucket}/{result_key}: {e}")

    def read_result(self, location: StorageLocation, key: str) -> Dict[str, Any]:
        """Read back a result document (used by tooling and tests)."""
        result_key = f"{location.results_prefix}{key}"
        response = self._s3_client.get_object(Bucket=location.bucket, Key=result_key)
        return json.loads(response["Body"].read().decode("utf-8"))

    def archive_artifact(self, artifact: ArtifactRef, location: StorageLocation) -> None:
        relative = artifact.key[len(location.prefix):] if artifact.key.startswith(
            location.prefix
        ) else artifact.key
        dest_key = f"{location.processed_prefix}{relative}"
        try:
            s3_utils.move_object(
                artifact.bucket, artifact.key, dest_key, s3_client=self._s3_client
            )
        except ClientError as e:
            raise classify_client_error(e, f"archive {artifact.uri}")
        except BotoCoreError as e:
            raise TransientError(f"archive {artifact.uri}: {e}")
