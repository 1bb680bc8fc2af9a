"""
Unit tests for the function invokers.

Lambda client is a MagicMock; responses mimic lambda.invoke.
"""

import io
import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, ReadTimeoutError
from moto import mock_aws

from dataproc.src.execution.lambda_invoker import (
    LambdaFunctionInvoker,
    LocalFunctionInvoker,
    classify_function_error,
    make_local_prepare_handler,
)
from dataproc.src.interfaces import FatalError, TransientError


def lambda_response(payload, status_code=200, function_error=None):
    response = {
        "StatusCode": status_code,
        "Payload": io.BytesIO(json.dumps(payload).encode("utf-8")),
    }
    if function_error:
        response["FunctionError"] = function_error
    return response


@pytest.fixture
def mock_lambda_client():
    return MagicMock()


class TestClassifyFunctionError:
    """Tests for classify_function_error."""

    def test_task_timeout_is_transient(self):
        error = classify_function_error(
            {"errorType": "Sandbox.Timedout", "errorMessage": "Task timed out after 900.00 seconds"}
        )
        assert isinstance(error, TransientError)

    def test_throttling_inside_handler_is_transient(self):
        error = classify_function_error({
            "errorType": "ClientError",
            "errorMessage": "An error occurred (SlowDown) when calling the ListObjectsV2 operation",
        })
        assert isinstance(error, TransientError)

    def test_value_error_is_fatal(self):
        error = classify_function_error(
            {"errorType": "ValueError", "errorMessage": "Missing required field: bucket"}
        )
        assert isinstance(error, FatalError)
        assert "Missing required field" in str(error)


class TestLambdaFunctionInvoker:
    """Tests for LambdaFunctionInvoker.invoke."""

    def test_returns_decoded_payload(self, mock_lambda_client):
        mock_lambda_client.invoke.return_value = lambda_response({"run_id": "run-1", "items": []})
        invoker = LambdaFunctionInvoker(lambda_client=mock_lambda_client)

        result = invoker.invoke("PrepareData", {"run_id": "run-1"})

        assert result == {"run_id": "run-1", "items": []}
        call = mock_lambda_client.invoke.call_args[1]
        assert call["FunctionName"] == "PrepareData"
        assert call["InvocationType"] == "RequestResponse"
        assert json.loads(call["Payload"]) == {"run_id": "run-1"}

    def test_handled_error_is_fatal(self, mock_lambda_client):
        mock_lambda_client.invoke.return_value = lambda_response(
            {"errorType": "ValueError", "errorMessage": "bad"}, function_error="Unhandled"
        )
        with pytest.raises(FatalError):
            LambdaFunctionInvoker(lambda_client=mock_lambda_client).invoke("PrepareData", {})

    def test_function_timeout_is_transient(self, mock_lambda_client):
        mock_lambda_client.invoke.return_value = lambda_response(
            {"errorMessage": "2024-03-01 Task timed out after 900.00 seconds"},
            function_error="Unhandled",
        )
        with pytest.raises(TransientError):
            LambdaFunctionInvoker(lambda_client=mock_lambda_client).invoke("PrepareData", {})

    def test_throttled_invoke_is_transient(self, mock_lambda_client):
        mock_lambda_client.invoke.side_effect = ClientError(
            {"Error": {"Code": "TooManyRequestsException"}, "ResponseMetadata": {"HTTPStatusCode": 429}},
            "Invoke",
        )
        with pytest.raises(TransientError):
            LambdaFunctionInvoker(lambda_client=mock_lambda_client).invoke("PrepareData", {})

    def test_missing_function_is_fatal(self, mock_lambda_client):
        mock_lambda_client.invoke.side_effect = ClientError(
            {"Error": {"Code": "ResourceNotFoundException"}, "ResponseMetadata": {"HTTPStatusCode": 404}},
            "Invoke",
        )
        with pytest.raises(FatalError):
            LambdaFunctionInvoker(lambda_client=mock_lambda_client).invoke("PrepareData", {})

    def test_read_timeout_is_transient(self, mock_lambda_client):
        mock_lambda_client.invoke.side_effect = ReadTimeoutError(endpoint_url="https://lambda")
        with pytest.raises(TransientError):
            LambdaFunctionInvoker(lambda_client=mock_lambda_client).invoke("PrepareData", {})

    @mock_aws
    def test_client_waits_for_long_preparation(self):
        """A synchronous invoke may run 900s; botocore must not time out or retry first."""
        config = LambdaFunctionInvoker(region="us-east-1")._lambda_client.meta.config

        assert config.read_timeout == 900
        assert config.retries["total_max_attempts"] == 1

    def test_non_object_result_is_fatal(self, mock_lambda_client):
        mock_lambda_client.invoke.return_value = lambda_response([1, 2, 3])
        with pytest.raises(FatalError):
            LambdaFunctionInvoker(lambda_client=mock_lambda_client).invoke("PrepareData", {})

    def test_invalid_json_is_fatal(self, mock_lambda_client):
        mock_lambda_client.invoke.return_value = {"StatusCode": 200, "Payload": io.BytesIO(b"not json")}
        with pytest.raises(FatalError):
            LambdaFunctionInvoker(lambda_client=mock_lambda_client).invoke("PrepareData", {})


class TestLocalFunctionInvoker:
    """Tests for LocalFunctionInvoker."""

    def test_calls_registered_handler(self):
        handler = MagicMock(return_value={"ok": True})
        invoker = LocalFunctionInvoker({"PrepareData": handler})

        assert invoker.invoke("PrepareData", {"run_id": "r"}) == {"ok": True}
        handler.assert_called_once_with({"run_id": "r"}, None)

    def test_unknown_function_is_fatal(self):
        with pytest.raises(FatalError):
            LocalFunctionInvoker({}).invoke("PrepareData", {})

    def test_pipeline_errors_pass_through(self):
        handler = MagicMock(side_effect=TransientError("busy"))
        with pytest.raises(TransientError):
            LocalFunctionInvoker({"PrepareData": handler}).invoke("PrepareData", {})

    def test_other_errors_become_fatal(self):
        handler = MagicMock(side_effect=KeyError("run_id"))
        with pytest.raises(FatalError, match="KeyError"):
            LocalFunctionInvoker({"PrepareData": handler}).invoke("PrepareData", {})

    def test_local_prepare_handler(self, local_root, local_location):
        from dataproc.src.connectors.local_store import LocalArtifactStore

        handler = make_local_prepare_handler(LocalArtifactStore(), local_location)
        result = LocalFunctionInvoker({"PrepareData": handler}).invoke(
            "PrepareData", {"run_id": "run-1"}
        )

        assert result["run_id"] == "run-1"
        assert result["n_items"] == 3

    def test_local_prepare_handler_requires_run_id(self, local_location):
        from dataproc.src.connectors.local_store import LocalArtifactStore

        handler = make_local_prepare_handler(LocalArtifactStore(), local_location)
        with pytest.raises(FatalError, match="run_id"):
            LocalFunctionInvoker({"PrepareData": handler}).invoke("PrepareData", {})
