"""
Function invokers for the Preparation Stage.

- LambdaFunctionInvoker: synchronous (RequestResponse) AWS Lambda invocation
- LocalFunctionInvoker: calls registered handlers in-process

Both translate failures into TransientError / FatalError so the orchestrator
can apply its bounded retry policy.
"""

import json
import logging
from typing import Any, Callable, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from dataproc.src.interfaces import (
    ArtifactStore,
    FatalError,
    FunctionInvoker,
    PipelineError,
    StorageLocation,
    TRANSIENT_ERROR_CODES,
    TransientError,
    classify_client_error,
)
from dataproc.src.stages.preparation import PreparationStage

logger = logging.getLogger(__name__)

# Function error types that are worth retrying
TRANSIENT_FUNCTION_ERRORS = {
    "TransientError",
    "Sandbox.Timedout",
    "Runtime.ExitError",
    "EndpointConnectionError",
    "ReadTimeoutError",
    "ConnectTimeoutError",
} | TRANSIENT_ERROR_CODES


# A synchronous invoke waits for the whole function run (Lambda caps it at
# 900s). Retries are left to the orchestrator so a slow run is not re-invoked
# behind its back.
LAMBDA_CLIENT_CONFIG = Config(
    read_timeout=900,
    connect_timeout=10,
    retries={"max_attempts": 0},
)

Handler = Callable[[Dict[str, Any], Any], Dict[str, Any]]


def classify_function_error(payload: Dict[str, Any]) -> PipelineError:
    """
    Classify a Lambda function error payload.

    Lambda returns {"errorType": ..., "errorMessage": ...} when the handler
    raises or the sandbox dies. Timeouts show up as "Task timed out".
    """
    error_type = payload.get("errorType", "")
    error_message = payload.get("errorMessage", "")

    if error_type in TRANSIENT_FUNCTION_ERRORS or "Task timed out" in error_message:
        return TransientError(f"{error_type}: {error_message}")

    # botocore ClientError messages carry the AWS error code in parentheses
    for code in TRANSIENT_ERROR_CODES:
        if f"({code})" in error_message:
            return TransientError(f"{error_type}: {error_message}")

    return FatalError(f"{error_type or 'FunctionError'}: {error_message}")


class LambdaFunctionInvoker(FunctionInvoker):
    """
    Invoke the preparation function on AWS Lambda.

    Attributes:
        region: AWS region
    """

    def __init__(self, region: str = "us-east-1", lambda_client=None):
        """
        Initialize the invoker.

        Args:
            region: AWS region
            lambda_client: Optional Lambda client (for testing)
        """
        self.region = region
        self._lambda_client = lambda_client or boto3.client(
            "lambda", region_name=region, config=LAMBDA_CLIENT_CONFIG
        )

    def invoke(self, entrypoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Invoke a function synchronously.

        Args:
            entrypoint: Function name or ARN
            payload: JSON-serializable event

        Returns:
            Decoded JSON result

        Raises:
            TransientError: Throttling, service errors, function timeout
            FatalError: Handler raised, function missing, invalid payload
        """
        try:
            response = self._lambda_client.invoke(
                FunctionName=entrypoint,
                InvocationType="RequestResponse",
                Payload=json.dumps(payload, default=str).encode("utf-8"),
            )
        except ClientError as e:
            raise classify_client_error(e, f"invoke {entrypoint}")
        except BotoCoreError as e:
            raise TransientError(f"invoke {entrypoint}: {e}")

        status_code = response.get("StatusCode", 200)
        body = response["Payload"].read()

        try:
            result = json.loads(body.decode("utf-8")) if body else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise FatalError(f"{entrypoint} returned invalid JSON: {e}")

        if response.get("FunctionError"):
            error = classify_function_error(result if isinstance(result, dict) else {})
            logger.warning(f"{entrypoint} function error: {error}")
            raise error

        if status_code >= 500:
            raise TransientError(f"{entrypoint} returned status {status_code}")

        if not isinstance(result, dict):
            raise FatalError(f"{entrypoint} returned {type(result).__name__}, expected object")

        return result


class LocalFunctionInvoker(FunctionInvoker):
    """
    Invoke handlers in-process.

    Usage:
        invoker = LocalFunctionInvoker({"PrepareData": make_local_prepare_handler(store, loc)})
        invoker.invoke("PrepareData", {"run_id": "run-1"})
    """

    def __init__(self, handlers: Dict[str, Handler]):
        self.handlers = dict(handlers)

    def invoke(self, entrypoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        handler = self.handlers.get(entrypoint)
        if handler is None:
            raise FatalError(f"No local handler registered for {entrypoint}")

        try:
            return handler(payload, None)
        except PipelineError:
            raise
        except Exception as e:
            raise FatalError(f"{type(e).__name__}: {e}")


def make_local_prepare_handler(
    store: ArtifactStore,
    location: StorageLocation,
    params: Optional[Dict[str, Any]] = None,
) -> Handler:
    """
    Build a Lambda-shaped preparation handler over any ArtifactStore.

    Used with LocalFunctionInvoker for local runs; the deployed function is
    dataproc.src.lambdas.prepare_data.handler.
    """
    stage = PreparationStage(store, location, params)

    def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
        run_id = event.get("run_id")
        if not run_id:
            raise ValueError("Missing required field: run_id")
        return stage.prepare(run_id).to_dict()

    return handler
