"""
Unit tests for S3ArtifactStore.

Uses moto for the happy paths and MagicMock clients for error mapping.
"""

from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from moto import mock_aws

from dataproc.src.interfaces import FatalError, StorageLocation, TransientError
from dataproc.src.models import ArtifactRef

LOCATION = StorageLocation(bucket="test-bucket")


def make_store():
    from dataproc.src.connectors.s3_store import S3ArtifactStore

    s3 = boto3.client("s3", region_name="us-east-1")
    s3.create_bucket(Bucket="test-bucket")
    return s3, S3ArtifactStore(s3_client=s3)


def client_error(code, status=400, operation="GetObject"):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class TestListNewArtifacts:
    """Tests for the read-only incoming scan."""

    @mock_aws
    def test_lists_only_incoming_sorted(self):
        """Objects under incoming/ are returned sorted by key."""
        s3, store = make_store()
        for key in ["incoming/b.csv", "incoming/a.csv", "processed/old.csv", "results/x.json"]:
            s3.put_object(Bucket="test-bucket", Key=key, Body=b"1,2\n")

        artifacts = store.list_new_artifacts(LOCATION)

        assert [a.key for a in artifacts] == ["incoming/a.csv", "incoming/b.csv"]
        assert artifacts[0].bucket == "test-bucket"
        assert artifacts[0].size == 4
        assert artifacts[0].etag

    @mock_aws
    def test_scan_does_not_mutate(self):
        """Listing twice returns the same artifacts."""
        s3, store = make_store()
        s3.put_object(Bucket="test-bucket", Key="incoming/a.csv", Body=b"x")

        assert store.list_new_artifacts(LOCATION) == store.list_new_artifacts(LOCATION)

    @mock_aws
    def test_empty_bucket(self):
        _, store = make_store()
        assert store.list_new_artifacts(LOCATION) == []

    def test_missing_bucket_is_fatal(self):
        """NoSuchBucket will not fix itself."""
        from dataproc.src.connectors.s3_store import S3ArtifactStore

        s3 = MagicMock()
        s3.get_paginator.return_value.paginate.side_effect = client_error(
            "NoSuchBucket", 404, "ListObjectsV2"
        )
        with pytest.raises(FatalError):
            S3ArtifactStore(s3_client=s3).list_new_artifacts(LOCATION)

    def test_throttling_is_transient(self):
        from dataproc.src.connectors.s3_store import S3ArtifactStore

        s3 = MagicMock()
        s3.get_paginator.return_value.paginate.side_effect = client_error(
            "SlowDown", 503, "ListObjectsV2"
        )
        with pytest.raises(TransientError):
            S3ArtifactStore(s3_client=s3).list_new_artifacts(LOCATION)


class TestReadArtifact:
    """Tests for read_artifact."""

    @mock_aws
    def test_reads_bytes(self):
        s3, store = make_store()
        s3.put_object(Bucket="test-bucket", Key="incoming/a.csv", Body=b"hello")

        assert store.read_artifact(ArtifactRef("test-bucket", "incoming/a.csv")) == b"hello"

    @mock_aws
    def test_missing_artifact_is_fatal(self):
        _, store = make_store()
        with pytest.raises(FatalError, match="not found"):
            store.read_artifact(ArtifactRef("test-bucket", "incoming/none.csv"))

    def test_connection_error_is_transient(self):
        from dataproc.src.connectors.s3_store import S3ArtifactStore

        s3 = MagicMock()
        s3.get_object.side_effect = EndpointConnectionError(endpoint_url="https://s3")
        with pytest.raises(TransientError):
            S3ArtifactStore(s3_client=s3).read_artifact(ArtifactRef("b", "k"))


class TestResultsAndArchive:
    """Tests for write_result, result_exists and archive_artifact."""

    @mock_aws
    def test_write_and_read_result(self):
        _, store = make_store()

        assert store.result_exists(LOCATION, "a.json") is False
        store.write_result(LOCATION, "a.json", {"bytes": 5})

        assert store.result_exists(LOCATION, "a.json") is True
        assert store.read_result(LOCATION, "a.json") == {"bytes": 5}

    @mock_aws
    def test_archive_moves_under_processed(self):
        """incoming/x/a.csv -> processed/x/a.csv"""
        s3, store = make_store()
        s3.put_object(Bucket="test-bucket", Key="incoming/x/a.csv", Body=b"data")

        store.archive_artifact(ArtifactRef("test-bucket", "incoming/x/a.csv"), LOCATION)

        keys = [o["Key"] for o in s3.list_objects_v2(Bucket="test-bucket")["Contents"]]
        assert keys == ["processed/x/a.csv"]

    @mock_aws
    def test_archive_is_idempotent(self):
        s3, store = make_store()
        s3.put_object(Bucket="test-bucket", Key="incoming/a.csv", Body=b"data")
        artifact = ArtifactRef("test-bucket", "incoming/a.csv")

        store.archive_artifact(artifact, LOCATION)
        store.archive_artifact(artifact, LOCATION)

        assert store.list_new_artifacts(LOCATION) == []

    @mock_aws
    def test_archive_missing_everywhere_is_fatal(self):
        _, store = make_store()
        with pytest.raises(FatalError):
            store.archive_artifact(ArtifactRef("test-bucket", "incoming/none"), LOCATION)
